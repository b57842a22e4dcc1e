from __future__ import annotations

import os
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text

ALEMBIC_DIR = Path(__file__).resolve().parents[1] / "alembic"
DISPATCH_COLUMNS = {"intento_count", "last_error", "claimed_at", "sent_at"}


def _alembic_config(url: str) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("sqlalchemy.url", url)
    return config


def _run(url: str, action: str) -> None:
    previous = os.environ.pop("DATABASE_URL", None)
    try:
        if action == "upgrade":
            command.upgrade(_alembic_config(url), "head")
        else:
            command.downgrade(_alembic_config(url), "base")
    finally:
        if previous is not None:
            os.environ["DATABASE_URL"] = previous


def _columns(url: str) -> set[str]:
    return {column["name"] for column in inspect(create_engine(url, future=True)).get_columns("recordatorios")}


def _indexes(url: str) -> set[str]:
    return {index["name"] for index in inspect(create_engine(url, future=True)).get_indexes("recordatorios")}


def test_upgrade_and_downgrade_on_a_legacy_table(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'legacy.db'}"
    engine = create_engine(url, future=True)
    with engine.begin() as connection:
        connection.execute(
            text(
                "CREATE TABLE recordatorios (id INTEGER PRIMARY KEY, organizacion_id TEXT NOT NULL, "
                "titulo TEXT, mensaje TEXT, enviar_en DATETIME NOT NULL, estado TEXT NOT NULL)"
            )
        )
        connection.execute(
            text(
                "INSERT INTO recordatorios (organizacion_id, titulo, mensaje, enviar_en, estado) "
                "VALUES ('acme', 'Legacy', 'Old schema', '2026-10-01 09:00:00.000000', 'pending')"
            )
        )
    legacy_columns = _columns(url)

    _run(url, "upgrade")

    assert DISPATCH_COLUMNS <= _columns(url)
    assert "ix_recordatorios_due" in _indexes(url)
    with engine.connect() as connection:
        assert connection.execute(text("SELECT intento_count FROM recordatorios")).scalar_one() == 0

    _run(url, "downgrade")

    assert _columns(url) == legacy_columns
    assert "ix_recordatorios_due" not in _indexes(url)
    with engine.connect() as connection:
        assert connection.execute(text("SELECT titulo, estado FROM recordatorios")).one() == ("Legacy", "pending")


def test_downgrade_keeps_a_table_created_by_upgrade(tmp_path: Path) -> None:
    url = f"sqlite:///{tmp_path / 'fresh.db'}"

    _run(url, "upgrade")
    assert DISPATCH_COLUMNS <= _columns(url)

    _run(url, "downgrade")

    columns = _columns(url)
    assert not DISPATCH_COLUMNS & columns
    assert {"id", "organizacion_id", "enviar_en", "estado"} <= columns
    assert "ix_recordatorios_due" not in _indexes(url)

    _run(url, "upgrade")
    assert DISPATCH_COLUMNS <= _columns(url)
