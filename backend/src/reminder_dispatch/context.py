from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .channels import is_valid_chat_webhook, normalize_phone
from .reminder_store import ClaimedReminder

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Reminder"
DUE_FORMAT = "%Y-%m-%d %H:%M"


@dataclass(frozen=True)
class NotificationContext:
    reminder_id: int
    tenant_id: str
    subject: str
    audience: str | None
    due_text: str | None
    message: str | None
    chat_webhook_url: str | None = None
    text_token: str | None = None
    text_sender_id: str | None = None
    destination_phone: str = ""

    @property
    def chat_usable(self) -> bool:
        return is_valid_chat_webhook(self.chat_webhook_url)

    @property
    def text_usable(self) -> bool:
        return bool(self.text_token and self.text_sender_id and self.destination_phone)


def display_zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name.strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown DISPLAY_TIMEZONE %r; rendering due times in UTC", name)
        return timezone.utc


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def format_due(value: datetime | None, zone: tzinfo) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(zone).strftime(DUE_FORMAT)


def resolve_context(claimed: ClaimedReminder, *, zone: tzinfo = timezone.utc) -> NotificationContext:
    """Shape a claimed, already-joined reminder into something renderable.

    Subject falls back from the task title to the reminder title to
    ``"Reminder"``. The due string prefers the task due time over the
    reminder's own scheduled time. No I/O happens here.
    """
    subject = _clean(claimed.task_title) or _clean(claimed.title) or DEFAULT_SUBJECT
    return NotificationContext(
        reminder_id=claimed.reminder_id,
        tenant_id=claimed.tenant_id,
        subject=subject,
        audience=_clean(claimed.client_name),
        due_text=format_due(claimed.task_due_at or claimed.scheduled_at, zone),
        message=_clean(claimed.message),
        chat_webhook_url=_clean(claimed.chat_webhook_url),
        text_token=_clean(claimed.text_token),
        text_sender_id=_clean(claimed.text_sender_id),
        destination_phone=normalize_phone(claimed.client_phone),
    )


def compose_text(context: NotificationContext) -> str:
    lines = [f"Reminder: {context.subject}"]
    if context.audience:
        lines.append(f"Client: {context.audience}")
    if context.due_text:
        lines.append(f"Due: {context.due_text}")
    if context.message and context.message != context.subject:
        lines.append("")
        lines.append(context.message)
    return "\n".join(lines)
