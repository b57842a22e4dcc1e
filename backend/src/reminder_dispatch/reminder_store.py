from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    cast,
    create_engine,
    func,
    insert,
    null,
    select,
    update,
)
from sqlalchemy import column as sa_column
from sqlalchemy import table as sa_table
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.sql.expression import ColumnElement, TableClause

from .models import ReminderCreateRequest
from .schema import (
    CHANNEL_CONFIG_TABLE,
    CLIENTS_TABLE,
    REMINDERS_TABLE,
    TASKS_TABLE,
    SchemaCapabilities,
    SchemaCatalog,
    SqlAlchemySchemaCatalog,
    full_schema_catalog,
)

logger = logging.getLogger(__name__)

LAST_ERROR_MAX_CHARS = 1000


class ReminderNotFoundError(KeyError):
    """Raised when a reminder id does not exist for the caller's tenant."""


class ReminderModuleNotInstalledError(RuntimeError):
    """Raised when the reminder table is absent for this deployment."""


def _coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _clip_error(error: str) -> str:
    return error[:LAST_ERROR_MAX_CHARS]


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: int
    tenant_id: str
    title: str | None
    message: str | None
    scheduled_at: datetime
    client_id: int | None
    task_id: int | None
    state: str
    attempt_count: int
    last_error: str | None
    created_at: datetime | None
    claimed_at: datetime | None
    sent_at: datetime | None


@dataclass(frozen=True)
class ClaimedReminder:
    """A claimed reminder joined to its task, client and tenant channel config."""

    reminder_id: int
    tenant_id: str
    title: str | None
    message: str | None
    scheduled_at: datetime | None
    attempt_count: int
    task_title: str | None = None
    task_due_at: datetime | None = None
    client_name: str | None = None
    client_phone: str | None = None
    chat_webhook_url: str | None = None
    text_token: str | None = None
    text_sender_id: str | None = None


@dataclass(frozen=True)
class TaskRecord:
    task_id: int
    tenant_id: str
    title: str | None
    due_at: datetime | None
    client_id: int | None


@dataclass(frozen=True)
class ClientRecord:
    client_id: int
    tenant_id: str
    name: str | None
    phone: str | None


@dataclass(frozen=True)
class ChannelConfigRecord:
    tenant_id: str
    chat_webhook_url: str | None
    text_token: str | None
    text_sender_id: str | None


class ReminderStore(Protocol):
    def schema_catalog(self) -> SchemaCatalog: ...

    def claim_due(
        self,
        tenant_id: str,
        *,
        limit: int,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> list[ClaimedReminder]: ...

    def mark_sent(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        sent_at: datetime,
        capabilities: SchemaCapabilities,
    ) -> None: ...

    def mark_failed(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        error: str,
        capabilities: SchemaCapabilities,
        requeue_at: datetime | None = None,
    ) -> None: ...

    def release_stale_claims(
        self,
        tenant_id: str,
        *,
        older_than: datetime,
        capabilities: SchemaCapabilities,
    ) -> int: ...

    def create_reminder(
        self,
        tenant_id: str,
        payload: ReminderCreateRequest,
        *,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord: ...

    def list_reminders(
        self,
        tenant_id: str,
        *,
        capabilities: SchemaCapabilities,
        state: str | None = None,
    ) -> list[ReminderRecord]: ...

    def get_reminder(
        self,
        tenant_id: str,
        reminder_id: int,
        *,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord: ...


class InMemoryReminderStore:
    """Lock-protected store used for local runs and tests.

    The schema catalog handed in decides which joined fields are visible, so
    lagging deployments can be simulated without a database.
    """

    def __init__(self, catalog: SchemaCatalog | None = None) -> None:
        self._lock = Lock()
        self._catalog = catalog or full_schema_catalog()
        self._reminder_ids = count(1)
        self._task_ids = count(1)
        self._client_ids = count(1)
        self._reminders: dict[int, ReminderRecord] = {}
        self._tasks: dict[int, TaskRecord] = {}
        self._clients: dict[int, ClientRecord] = {}
        self._channel_configs: dict[str, ChannelConfigRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._reminder_ids = count(1)
            self._task_ids = count(1)
            self._client_ids = count(1)
            self._reminders.clear()
            self._tasks.clear()
            self._clients.clear()
            self._channel_configs.clear()

    def schema_catalog(self) -> SchemaCatalog:
        return self._catalog

    def add_task(
        self,
        tenant_id: str,
        *,
        title: str,
        due_at: datetime | None = None,
        client_id: int | None = None,
    ) -> int:
        with self._lock:
            task_id = next(self._task_ids)
            self._tasks[task_id] = TaskRecord(
                task_id=task_id,
                tenant_id=tenant_id,
                title=title,
                due_at=_coerce_utc(due_at),
                client_id=client_id,
            )
            return task_id

    def add_client(self, tenant_id: str, *, name: str, phone: str | None = None) -> int:
        with self._lock:
            client_id = next(self._client_ids)
            self._clients[client_id] = ClientRecord(client_id=client_id, tenant_id=tenant_id, name=name, phone=phone)
            return client_id

    def upsert_channel_config(
        self,
        tenant_id: str,
        *,
        chat_webhook_url: str | None = None,
        text_token: str | None = None,
        text_sender_id: str | None = None,
    ) -> None:
        with self._lock:
            self._channel_configs[tenant_id] = ChannelConfigRecord(
                tenant_id=tenant_id,
                chat_webhook_url=chat_webhook_url,
                text_token=text_token,
                text_sender_id=text_sender_id,
            )

    def claim_due(
        self,
        tenant_id: str,
        *,
        limit: int,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> list[ClaimedReminder]:
        cutoff = _coerce_utc(now)
        with self._lock:
            due = sorted(
                (
                    row
                    for row in self._reminders.values()
                    if row.tenant_id == tenant_id and row.state == "pending" and row.scheduled_at <= cutoff
                ),
                key=lambda row: (row.scheduled_at, row.reminder_id),
            )[:limit]
            claimed: list[ClaimedReminder] = []
            for row in due:
                updated = ReminderRecord(
                    **{
                        **row.__dict__,
                        "state": "claimed",
                        "claimed_at": cutoff if capabilities.tracks_claims else row.claimed_at,
                    }
                )
                self._reminders[row.reminder_id] = updated
                claimed.append(self._joined(updated, capabilities))
            return claimed

    def _joined(self, row: ReminderRecord, capabilities: SchemaCapabilities) -> ClaimedReminder:
        def _field(columns: frozenset[str], name: str, value):
            return value if name in columns else None

        reminder_cols = capabilities.reminder_columns
        task = None
        if capabilities.joins_task and row.task_id is not None:
            candidate = self._tasks.get(row.task_id)
            if candidate is not None and candidate.tenant_id == row.tenant_id:
                task = candidate

        client_id = _field(reminder_cols, "cliente_id", row.client_id)
        if client_id is None and task is not None and capabilities.task_supplies_client:
            client_id = task.client_id
        client = None
        if capabilities.joins_client and client_id is not None:
            candidate = self._clients.get(client_id)
            if candidate is not None and candidate.tenant_id == row.tenant_id:
                client = candidate

        config = self._channel_configs.get(row.tenant_id) if capabilities.joins_channel_config else None
        task_cols = capabilities.task_columns
        client_cols = capabilities.client_columns
        config_cols = capabilities.channel_config_columns
        return ClaimedReminder(
            reminder_id=row.reminder_id,
            tenant_id=row.tenant_id,
            title=_field(reminder_cols, "titulo", row.title),
            message=_field(reminder_cols, "mensaje", row.message),
            scheduled_at=row.scheduled_at,
            attempt_count=_field(reminder_cols, "intento_count", row.attempt_count) or 0,
            task_title=_field(task_cols, "titulo", task.title) if task else None,
            task_due_at=_field(task_cols, "vence_en", task.due_at) if task else None,
            client_name=_field(client_cols, "nombre", client.name) if client else None,
            client_phone=_field(client_cols, "telefono", client.phone) if client else None,
            chat_webhook_url=_field(config_cols, "slack_webhook_url", config.chat_webhook_url) if config else None,
            text_token=_field(config_cols, "whatsapp_meta_token", config.text_token) if config else None,
            text_sender_id=_field(config_cols, "whatsapp_phone_id", config.text_sender_id) if config else None,
        )

    def _owned_claim(self, reminder_id: int, tenant_id: str) -> ReminderRecord | None:
        row = self._reminders.get(reminder_id)
        if row is None or row.tenant_id != tenant_id or row.state != "claimed":
            return None
        return row

    def mark_sent(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        sent_at: datetime,
        capabilities: SchemaCapabilities,
    ) -> None:
        with self._lock:
            row = self._owned_claim(reminder_id, tenant_id)
            if row is None:
                logger.warning("mark_sent skipped: reminder %s is no longer claimed", reminder_id)
                return
            self._reminders[reminder_id] = ReminderRecord(
                **{
                    **row.__dict__,
                    "state": "sent",
                    "sent_at": _coerce_utc(sent_at) if capabilities.has_reminder_column("sent_at") else row.sent_at,
                    "last_error": None,
                }
            )

    def mark_failed(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        error: str,
        capabilities: SchemaCapabilities,
        requeue_at: datetime | None = None,
    ) -> None:
        with self._lock:
            row = self._owned_claim(reminder_id, tenant_id)
            if row is None:
                logger.warning("mark_failed skipped: reminder %s is no longer claimed", reminder_id)
                return
            changes: dict[str, object] = {"state": "failed", "last_error": _clip_error(error)}
            if capabilities.tracks_attempts:
                changes["attempt_count"] = row.attempt_count + 1
            if requeue_at is not None:
                changes["state"] = "pending"
                changes["scheduled_at"] = _coerce_utc(requeue_at)
            self._reminders[reminder_id] = ReminderRecord(**{**row.__dict__, **changes})

    def release_stale_claims(
        self,
        tenant_id: str,
        *,
        older_than: datetime,
        capabilities: SchemaCapabilities,
    ) -> int:
        if not capabilities.tracks_claims:
            return 0
        cutoff = _coerce_utc(older_than)
        released = 0
        with self._lock:
            for reminder_id, row in list(self._reminders.items()):
                if row.tenant_id != tenant_id or row.state != "claimed":
                    continue
                if row.claimed_at is None or row.claimed_at >= cutoff:
                    continue
                self._reminders[reminder_id] = ReminderRecord(**{**row.__dict__, "state": "pending"})
                released += 1
        return released

    def create_reminder(
        self,
        tenant_id: str,
        payload: ReminderCreateRequest,
        *,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord:
        with self._lock:
            reminder_id = next(self._reminder_ids)
            record = ReminderRecord(
                reminder_id=reminder_id,
                tenant_id=tenant_id,
                title=payload.title,
                message=payload.message,
                scheduled_at=payload.scheduled_at,
                client_id=payload.client_id,
                task_id=payload.task_id,
                state="pending",
                attempt_count=0,
                last_error=None,
                created_at=_coerce_utc(now),
                claimed_at=None,
                sent_at=None,
            )
            self._reminders[reminder_id] = record
            return record

    def list_reminders(
        self,
        tenant_id: str,
        *,
        capabilities: SchemaCapabilities,
        state: str | None = None,
    ) -> list[ReminderRecord]:
        with self._lock:
            rows = [
                row
                for row in self._reminders.values()
                if row.tenant_id == tenant_id and (state is None or row.state == state)
            ]
        return sorted(rows, key=lambda row: (row.scheduled_at, row.reminder_id))

    def get_reminder(
        self,
        tenant_id: str,
        reminder_id: int,
        *,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord:
        with self._lock:
            row = self._reminders.get(reminder_id)
        if row is None or row.tenant_id != tenant_id:
            raise ReminderNotFoundError(reminder_id)
        return row


class ReminderDispatchBase(DeclarativeBase):
    pass


class _ReminderRow(ReminderDispatchBase):
    __tablename__ = REMINDERS_TABLE
    __table_args__ = (Index("ix_recordatorios_due", "organizacion_id", "estado", "enviar_en"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organizacion_id: Mapped[str] = mapped_column(Text, nullable=False)
    titulo: Mapped[str | None] = mapped_column(Text, nullable=True)
    mensaje: Mapped[str | None] = mapped_column(Text, nullable=True)
    enviar_en: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cliente_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tarea_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estado: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    intento_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


_COLUMN_TYPES = {
    REMINDERS_TABLE: {
        "id": Integer(),
        "organizacion_id": Text(),
        "titulo": Text(),
        "mensaje": Text(),
        "enviar_en": DateTime(timezone=True),
        "cliente_id": Integer(),
        "tarea_id": Integer(),
        "estado": String(16),
        "intento_count": Integer(),
        "last_error": Text(),
        "created_at": DateTime(timezone=True),
        "claimed_at": DateTime(timezone=True),
        "sent_at": DateTime(timezone=True),
    },
    TASKS_TABLE: {
        "id": Integer(),
        "titulo": Text(),
        "vence_en": DateTime(timezone=True),
        "organizacion_id": Text(),
        "cliente_id": Integer(),
    },
    CLIENTS_TABLE: {
        "id": Integer(),
        "nombre": Text(),
        "telefono": Text(),
        "organizacion_id": Text(),
    },
    CHANNEL_CONFIG_TABLE: {
        "organizacion_id": Text(),
        "slack_webhook_url": Text(),
        "whatsapp_meta_token": Text(),
        "whatsapp_phone_id": Text(),
    },
}


def _present_table(name: str, columns: frozenset[str]) -> TableClause:
    """Lightweight table limited to the columns the catalog reported."""
    types = _COLUMN_TYPES[name]
    return sa_table(name, *(sa_column(col, col_type) for col, col_type in types.items() if col in columns))


def _optional(source: TableClause | None, name: str, label: str, col_type) -> ColumnElement:
    if source is not None and name in source.c:
        return source.c[name].label(label)
    return cast(null(), col_type).label(label)


def _tenant_matches(source: TableClause, tenant_id: str) -> ColumnElement[bool]:
    return cast(source.c.organizacion_id, Text) == str(tenant_id)


class SqlAlchemyReminderStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderDispatchBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @property
    def engine(self) -> Engine:
        return self._engine

    def schema_catalog(self) -> SchemaCatalog:
        return SqlAlchemySchemaCatalog(self._engine)

    def claim_due(
        self,
        tenant_id: str,
        *,
        limit: int,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> list[ClaimedReminder]:
        cutoff = _coerce_utc(now)
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        candidates = (
            select(reminders.c.id)
            .where(_tenant_matches(reminders, tenant_id))
            .where(reminders.c.estado == "pending")
            .where(reminders.c.enviar_en <= cutoff)
            .order_by(reminders.c.enviar_en.asc(), reminders.c.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claim_values: dict[str, object] = {"estado": "claimed"}
        if capabilities.tracks_claims:
            claim_values["claimed_at"] = cutoff

        with self._session() as session:
            with session.begin():
                claimed_ids: list[int] = []
                for reminder_id in session.execute(candidates).scalars().all():
                    # Compare-and-swap keeps the claim exclusive on engines without SKIP LOCKED.
                    result = session.execute(
                        update(reminders)
                        .where(reminders.c.id == reminder_id)
                        .where(reminders.c.estado == "pending")
                        .values(**claim_values)
                    )
                    if result.rowcount == 1:
                        claimed_ids.append(reminder_id)
                if not claimed_ids:
                    return []
                rows = session.execute(
                    self._joined_select(reminders, claimed_ids, tenant_id, capabilities)
                ).mappings().all()

        claimed: list[ClaimedReminder] = []
        seen: set[int] = set()
        for row in rows:
            if row["reminder_id"] in seen:
                continue
            seen.add(row["reminder_id"])
            claimed.append(
                ClaimedReminder(
                    reminder_id=row["reminder_id"],
                    tenant_id=row["tenant_id"],
                    title=row["title"],
                    message=row["message"],
                    scheduled_at=_coerce_utc(row["scheduled_at"]),
                    attempt_count=row["attempt_count"] or 0,
                    task_title=row["task_title"],
                    task_due_at=_coerce_utc(row["task_due_at"]),
                    client_name=row["client_name"],
                    client_phone=row["client_phone"],
                    chat_webhook_url=row["chat_webhook_url"],
                    text_token=row["text_token"],
                    text_sender_id=row["text_sender_id"],
                )
            )
        return claimed

    def _joined_select(
        self,
        reminders: TableClause,
        reminder_ids: list[int],
        tenant_id: str,
        capabilities: SchemaCapabilities,
    ):
        tasks = _present_table(TASKS_TABLE, capabilities.task_columns) if capabilities.joins_task else None
        clients = _present_table(CLIENTS_TABLE, capabilities.client_columns) if capabilities.joins_client else None
        configs = (
            _present_table(CHANNEL_CONFIG_TABLE, capabilities.channel_config_columns)
            if capabilities.joins_channel_config
            else None
        )

        source = reminders
        if tasks is not None:
            on_task = tasks.c.id == reminders.c.tarea_id
            if "organizacion_id" in tasks.c:
                on_task = and_(on_task, _tenant_matches(tasks, tenant_id))
            source = source.outerjoin(tasks, on_task)
        if clients is not None:
            client_refs = []
            if "cliente_id" in reminders.c:
                client_refs.append(reminders.c.cliente_id)
            if tasks is not None and "cliente_id" in tasks.c:
                client_refs.append(tasks.c.cliente_id)
            client_ref = client_refs[0] if len(client_refs) == 1 else func.coalesce(*client_refs)
            on_client = clients.c.id == client_ref
            if "organizacion_id" in clients.c:
                on_client = and_(on_client, _tenant_matches(clients, tenant_id))
            source = source.outerjoin(clients, on_client)
        if configs is not None:
            source = source.outerjoin(configs, _tenant_matches(configs, tenant_id))

        return (
            select(
                reminders.c.id.label("reminder_id"),
                cast(reminders.c.organizacion_id, Text).label("tenant_id"),
                _optional(reminders, "titulo", "title", Text()),
                _optional(reminders, "mensaje", "message", Text()),
                reminders.c.enviar_en.label("scheduled_at"),
                _optional(reminders, "intento_count", "attempt_count", Integer()),
                _optional(tasks, "titulo", "task_title", Text()),
                _optional(tasks, "vence_en", "task_due_at", DateTime(timezone=True)),
                _optional(clients, "nombre", "client_name", Text()),
                _optional(clients, "telefono", "client_phone", Text()),
                _optional(configs, "slack_webhook_url", "chat_webhook_url", Text()),
                _optional(configs, "whatsapp_meta_token", "text_token", Text()),
                _optional(configs, "whatsapp_phone_id", "text_sender_id", Text()),
            )
            .select_from(source)
            .where(reminders.c.id.in_(reminder_ids))
            .order_by(reminders.c.enviar_en.asc(), reminders.c.id.asc())
        )

    def _write_outcome(
        self,
        reminders: TableClause,
        reminder_id: int,
        tenant_id: str,
        values: dict[str, object],
    ) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(reminders)
                    .where(reminders.c.id == reminder_id)
                    .where(_tenant_matches(reminders, tenant_id))
                    .where(reminders.c.estado == "claimed")
                    .values(**values)
                )
        if result.rowcount != 1:
            logger.warning("outcome write skipped: reminder %s is no longer claimed", reminder_id)

    def mark_sent(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        sent_at: datetime,
        capabilities: SchemaCapabilities,
    ) -> None:
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        values: dict[str, object] = {"estado": "sent"}
        if "sent_at" in reminders.c:
            values["sent_at"] = _coerce_utc(sent_at)
        if "last_error" in reminders.c:
            values["last_error"] = None
        self._write_outcome(reminders, reminder_id, tenant_id, values)

    def mark_failed(
        self,
        reminder_id: int,
        *,
        tenant_id: str,
        error: str,
        capabilities: SchemaCapabilities,
        requeue_at: datetime | None = None,
    ) -> None:
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        values: dict[str, object] = {"estado": "failed" if requeue_at is None else "pending"}
        if "intento_count" in reminders.c:
            values["intento_count"] = func.coalesce(reminders.c.intento_count, 0) + 1
        if "last_error" in reminders.c:
            values["last_error"] = _clip_error(error)
        if requeue_at is not None:
            values["enviar_en"] = _coerce_utc(requeue_at)
        self._write_outcome(reminders, reminder_id, tenant_id, values)

    def release_stale_claims(
        self,
        tenant_id: str,
        *,
        older_than: datetime,
        capabilities: SchemaCapabilities,
    ) -> int:
        if not capabilities.tracks_claims:
            return 0
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(reminders)
                    .where(_tenant_matches(reminders, tenant_id))
                    .where(reminders.c.estado == "claimed")
                    .where(reminders.c.claimed_at < _coerce_utc(older_than))
                    .values(estado="pending")
                )
        return int(result.rowcount or 0)

    def create_reminder(
        self,
        tenant_id: str,
        payload: ReminderCreateRequest,
        *,
        now: datetime,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord:
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        created_at = _coerce_utc(now)
        wanted: dict[str, object] = {
            "organizacion_id": tenant_id,
            "titulo": payload.title,
            "mensaje": payload.message,
            "enviar_en": payload.scheduled_at,
            "cliente_id": payload.client_id,
            "tarea_id": payload.task_id,
            "estado": "pending",
            "intento_count": 0,
            "created_at": created_at,
        }
        values = {name: value for name, value in wanted.items() if name in reminders.c}
        with self._session() as session:
            with session.begin():
                reminder_id = session.execute(insert(reminders).values(**values).returning(reminders.c.id)).scalar_one()
        return ReminderRecord(
            reminder_id=reminder_id,
            tenant_id=tenant_id,
            title=values.get("titulo"),  # type: ignore[arg-type]
            message=values.get("mensaje"),  # type: ignore[arg-type]
            scheduled_at=payload.scheduled_at,
            client_id=values.get("cliente_id"),  # type: ignore[arg-type]
            task_id=values.get("tarea_id"),  # type: ignore[arg-type]
            state="pending",
            attempt_count=0,
            last_error=None,
            created_at=values.get("created_at"),  # type: ignore[arg-type]
            claimed_at=None,
            sent_at=None,
        )

    def _record_select(self, reminders: TableClause, tenant_id: str):
        return select(
            reminders.c.id.label("reminder_id"),
            cast(reminders.c.organizacion_id, Text).label("tenant_id"),
            _optional(reminders, "titulo", "title", Text()),
            _optional(reminders, "mensaje", "message", Text()),
            reminders.c.enviar_en.label("scheduled_at"),
            _optional(reminders, "cliente_id", "client_id", Integer()),
            _optional(reminders, "tarea_id", "task_id", Integer()),
            reminders.c.estado.label("state"),
            _optional(reminders, "intento_count", "attempt_count", Integer()),
            _optional(reminders, "last_error", "last_error", Text()),
            _optional(reminders, "created_at", "created_at", DateTime(timezone=True)),
            _optional(reminders, "claimed_at", "claimed_at", DateTime(timezone=True)),
            _optional(reminders, "sent_at", "sent_at", DateTime(timezone=True)),
        ).where(_tenant_matches(reminders, tenant_id))

    @staticmethod
    def _to_record(row) -> ReminderRecord:
        return ReminderRecord(
            reminder_id=row["reminder_id"],
            tenant_id=row["tenant_id"],
            title=row["title"],
            message=row["message"],
            scheduled_at=_coerce_utc(row["scheduled_at"]),
            client_id=row["client_id"],
            task_id=row["task_id"],
            state=row["state"],
            attempt_count=row["attempt_count"] or 0,
            last_error=row["last_error"],
            created_at=_coerce_utc(row["created_at"]),
            claimed_at=_coerce_utc(row["claimed_at"]),
            sent_at=_coerce_utc(row["sent_at"]),
        )

    def list_reminders(
        self,
        tenant_id: str,
        *,
        capabilities: SchemaCapabilities,
        state: str | None = None,
    ) -> list[ReminderRecord]:
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        query = self._record_select(reminders, tenant_id)
        if state is not None:
            query = query.where(reminders.c.estado == state)
        query = query.order_by(reminders.c.enviar_en.asc(), reminders.c.id.asc())
        with self._session() as session:
            rows = session.execute(query).mappings().all()
        return [self._to_record(row) for row in rows]

    def get_reminder(
        self,
        tenant_id: str,
        reminder_id: int,
        *,
        capabilities: SchemaCapabilities,
    ) -> ReminderRecord:
        reminders = _present_table(REMINDERS_TABLE, capabilities.reminder_columns)
        query = self._record_select(reminders, tenant_id).where(reminders.c.id == reminder_id)
        with self._session() as session:
            row = session.execute(query).mappings().one_or_none()
        if row is None:
            raise ReminderNotFoundError(reminder_id)
        return self._to_record(row)


def create_reminder_store(*, backend: str, database_url: str) -> ReminderStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderStore(database_url)
    if normalized == "inmemory":
        return InMemoryReminderStore()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
