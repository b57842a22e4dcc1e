from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ReminderState = Literal["pending", "claimed", "sent", "failed"]
JobOutcome = Literal["sent", "failed", "requeued"]
DeliveryChannel = Literal["chat", "text"]


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=4000)
    scheduled_at: datetime
    client_id: int | None = Field(default=None, ge=1)
    task_id: int | None = Field(default=None, ge=1)

    @field_validator("title", "message")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("title and message cannot be blank")
        return normalized

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value: datetime) -> datetime:
        return _coerce_utc(value)


class ReminderItem(BaseModel):
    reminder_id: int
    tenant_id: str
    title: str | None
    message: str | None
    scheduled_at: datetime
    client_id: int | None = None
    task_id: int | None = None
    # Raw estado value; rows written outside this service may use another vocabulary.
    state: str
    attempt_count: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    claimed_at: datetime | None = None
    sent_at: datetime | None = None


class ReminderListResponse(BaseModel):
    items: list[ReminderItem]


class DispatchJobResult(BaseModel):
    reminder_id: int
    outcome: JobOutcome
    channel: DeliveryChannel | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None


class DispatchResponse(BaseModel):
    succeeded: int
    failed: int
    total_claimed: int
    limit: int
    deferred: int = 0
    requeued: int = 0
    reaped: int = 0
    run_at: datetime
    results: list[DispatchJobResult] = Field(default_factory=list)


class ModuleNotInstalledResponse(BaseModel):
    installed: Literal[False] = False
    module: str = "recordatorios"
    detail: str = "reminder module is not installed for this deployment"


class ReapResponse(BaseModel):
    released: int
    older_than: datetime
    supported: bool = True


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
