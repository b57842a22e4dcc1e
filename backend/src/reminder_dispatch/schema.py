"""Schema catalog and the per-cycle capability descriptor.

Tenant databases are migrated independently, so the reminder tables and some
of their columns may be missing. Everything that builds a query asks a
:class:`SchemaCapabilities` snapshot first instead of assuming the latest
schema.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

REMINDERS_TABLE = "recordatorios"
TASKS_TABLE = "tareas"
CLIENTS_TABLE = "clientes"
CHANNEL_CONFIG_TABLE = "integraciones"

REMINDER_COLUMNS = (
    "id",
    "organizacion_id",
    "titulo",
    "mensaje",
    "enviar_en",
    "cliente_id",
    "tarea_id",
    "estado",
    "intento_count",
    "last_error",
    "created_at",
    "claimed_at",
    "sent_at",
)
TASK_COLUMNS = ("id", "titulo", "vence_en", "organizacion_id", "cliente_id")
CLIENT_COLUMNS = ("id", "nombre", "telefono", "organizacion_id")
CHANNEL_CONFIG_COLUMNS = ("organizacion_id", "slack_webhook_url", "whatsapp_meta_token", "whatsapp_phone_id")

# Without these the reminder module is considered not installed.
REQUIRED_REMINDER_COLUMNS = frozenset({"id", "organizacion_id", "estado", "enviar_en"})


class SchemaCatalog(Protocol):
    def table_exists(self, name: str) -> bool: ...

    def columns(self, table: str) -> frozenset[str]: ...


class SqlAlchemySchemaCatalog:
    """Catalog backed by SQLAlchemy's runtime inspector.

    Lookup errors are logged and reported as "absent"; they never propagate.
    """

    def __init__(self, engine: Engine, *, schema: str | None = None) -> None:
        self._engine = engine
        self._schema = schema

    def table_exists(self, name: str) -> bool:
        try:
            return bool(inspect(self._engine).has_table(name, schema=self._schema))
        except SQLAlchemyError as exc:
            logger.warning("schema catalog: table lookup failed for %s: %s", name, exc)
            return False

    def columns(self, table: str) -> frozenset[str]:
        try:
            inspector = inspect(self._engine)
            if not inspector.has_table(table, schema=self._schema):
                return frozenset()
            return frozenset(str(column["name"]).lower() for column in inspector.get_columns(table, schema=self._schema))
        except SQLAlchemyError as exc:
            logger.warning("schema catalog: column lookup failed for %s: %s", table, exc)
            return frozenset()


class InMemorySchemaCatalog:
    def __init__(self, tables: Mapping[str, Iterable[str]]) -> None:
        self._tables = {name: frozenset(columns) for name, columns in tables.items()}

    def table_exists(self, name: str) -> bool:
        return name in self._tables

    def columns(self, table: str) -> frozenset[str]:
        return self._tables.get(table, frozenset())


def full_schema_catalog() -> InMemorySchemaCatalog:
    """Catalog describing a deployment on the latest schema."""
    return InMemorySchemaCatalog(
        {
            REMINDERS_TABLE: REMINDER_COLUMNS,
            TASKS_TABLE: TASK_COLUMNS,
            CLIENTS_TABLE: CLIENT_COLUMNS,
            CHANNEL_CONFIG_TABLE: CHANNEL_CONFIG_COLUMNS,
        }
    )


class CachedSchemaCatalog:
    """Memoizes another catalog for the lifetime of one dispatch cycle."""

    def __init__(self, inner: SchemaCatalog) -> None:
        self._inner = inner
        self._exists: dict[str, bool] = {}
        self._columns: dict[str, frozenset[str]] = {}

    def table_exists(self, name: str) -> bool:
        if name not in self._exists:
            self._exists[name] = self._inner.table_exists(name)
        return self._exists[name]

    def columns(self, table: str) -> frozenset[str]:
        if table not in self._columns:
            self._columns[table] = self._inner.columns(table) if self.table_exists(table) else frozenset()
        return self._columns[table]


@dataclass(frozen=True)
class SchemaCapabilities:
    reminder_columns: frozenset[str]
    task_columns: frozenset[str]
    client_columns: frozenset[str]
    channel_config_columns: frozenset[str]

    @property
    def installed(self) -> bool:
        return REQUIRED_REMINDER_COLUMNS <= self.reminder_columns

    def has_reminder_column(self, name: str) -> bool:
        return name in self.reminder_columns

    @property
    def tracks_attempts(self) -> bool:
        return "intento_count" in self.reminder_columns

    @property
    def tracks_claims(self) -> bool:
        return "claimed_at" in self.reminder_columns

    @property
    def joins_task(self) -> bool:
        return "tarea_id" in self.reminder_columns and "id" in self.task_columns

    @property
    def joins_client(self) -> bool:
        if "id" not in self.client_columns:
            return False
        return "cliente_id" in self.reminder_columns or self.task_supplies_client

    @property
    def task_supplies_client(self) -> bool:
        """A task's client is used when the reminder itself names none."""
        return self.joins_task and "cliente_id" in self.task_columns

    @property
    def joins_channel_config(self) -> bool:
        return "organizacion_id" in self.channel_config_columns


def describe_schema(catalog: SchemaCatalog) -> SchemaCapabilities:
    def _columns(table: str) -> frozenset[str]:
        if not catalog.table_exists(table):
            return frozenset()
        return frozenset(catalog.columns(table))

    return SchemaCapabilities(
        reminder_columns=_columns(REMINDERS_TABLE),
        task_columns=_columns(TASKS_TABLE),
        client_columns=_columns(CLIENTS_TABLE),
        channel_config_columns=_columns(CHANNEL_CONFIG_TABLE),
    )
