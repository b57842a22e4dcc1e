from __future__ import annotations

import json
import re
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Protocol
from urllib.parse import urlsplit

ChannelName = Literal["chat", "text"]

CHAT_WEBHOOK_HOST = "hooks.slack.com"
CHAT_WEBHOOK_PATH_PREFIX = "/services/"
TEXT_MESSAGE_MAX_CHARS = 4000

_NON_PHONE_CHARS = re.compile(r"[^\d+]")


@dataclass(frozen=True)
class ChannelSendResult:
    channel: ChannelName
    delivered: bool
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ChatSender(Protocol):
    def send(self, webhook_url: str, text: str) -> ChannelSendResult: ...


class TextMessageSender(Protocol):
    def send(self, *, token: str, sender_id: str, phone: str, text: str) -> ChannelSendResult: ...


def is_valid_chat_webhook(url: str | None) -> bool:
    if not url:
        return False
    try:
        parts = urlsplit(str(url).strip())
    except ValueError:
        return False
    if parts.scheme != "https":
        return False
    if parts.hostname != CHAT_WEBHOOK_HOST or parts.port is not None:
        return False
    if parts.username or parts.password:
        return False
    if not parts.path.startswith(CHAT_WEBHOOK_PATH_PREFIX):
        return False
    if parts.query or parts.fragment or "?" in str(url) or "#" in str(url):
        return False
    return len(parts.path) > len(CHAT_WEBHOOK_PATH_PREFIX)


def normalize_phone(raw: str | None) -> str:
    """Keep digits and one leading ``+``; any other ``+`` is dropped."""
    if not raw:
        return ""
    kept = _NON_PHONE_CHARS.sub("", str(raw).strip())
    leading_plus = kept.startswith("+")
    digits = kept.replace("+", "")
    if not digits:
        return ""
    return f"+{digits}" if leading_plus else digits


def mask_phone(phone: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    return "***"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class _ChannelSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _post_json(url: str, body: dict[str, object], *, headers: dict[str, str], timeout_seconds: float) -> bytes:
    request = urllib.request.Request(
        url,
        data=json.dumps(body).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            return response.read()
    except urllib.error.HTTPError as exc:
        raise _ChannelSendError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {_provider_error_detail(exc) or exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise _ChannelSendError(
                error_code="timeout",
                message=f"Request timed out: {exc.reason}",
            ) from exc
        raise _ChannelSendError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise _ChannelSendError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc


def _provider_error_detail(exc: urllib.error.HTTPError) -> str | None:
    try:
        raw = exc.read() if exc.fp is not None else b""
    except OSError:
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError:
        return raw.decode("utf-8", errors="replace")[:200] or None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return None


class HttpChatSender:
    """Posts plain text to a chat provider incoming webhook."""

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._timeout_seconds = timeout_seconds

    def send(self, webhook_url: str, text: str) -> ChannelSendResult:
        attempted_at = _now_utc()
        if not is_valid_chat_webhook(webhook_url):
            return ChannelSendResult(
                channel="chat",
                delivered=False,
                attempted_at=attempted_at,
                error_code="invalid_webhook",
                error_message="chat webhook URL failed validation",
            )
        try:
            _post_json(webhook_url.strip(), {"text": text}, headers={}, timeout_seconds=self._timeout_seconds)
        except _ChannelSendError as exc:
            return ChannelSendResult(
                channel="chat",
                delivered=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"chat: {exc.message}",
            )
        return ChannelSendResult(channel="chat", delivered=True, attempted_at=attempted_at)


class HttpTextMessageSender:
    """Sends a text message through the WhatsApp Cloud API."""

    def __init__(
        self,
        *,
        graph_base: str = "https://graph.facebook.com",
        graph_version: str = "v20.0",
        timeout_seconds: float = 5.0,
    ) -> None:
        stripped_base = graph_base.strip().rstrip("/")
        if not stripped_base:
            raise ValueError("graph_base must not be empty")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._graph_base = stripped_base
        self._graph_version = graph_version.strip().strip("/")
        self._timeout_seconds = timeout_seconds

    def send(self, *, token: str, sender_id: str, phone: str, text: str) -> ChannelSendResult:
        attempted_at = _now_utc()
        destination = normalize_phone(phone)
        if not token or not sender_id:
            return ChannelSendResult(
                channel="text",
                delivered=False,
                attempted_at=attempted_at,
                error_code="not_configured",
                error_message="text channel credentials missing",
            )
        if not destination:
            return ChannelSendResult(
                channel="text",
                delivered=False,
                attempted_at=attempted_at,
                error_code="phone_unusable",
                error_message="destination phone is empty after normalization",
            )

        url = f"{self._graph_base}/{self._graph_version}/{sender_id.strip()}/messages"
        body = {
            "messaging_product": "whatsapp",
            "to": destination,
            "type": "text",
            "text": {"body": text[:TEXT_MESSAGE_MAX_CHARS]},
        }
        try:
            raw = _post_json(
                url,
                body,
                headers={"Authorization": f"Bearer {token.strip()}"},
                timeout_seconds=self._timeout_seconds,
            )
        except _ChannelSendError as exc:
            return ChannelSendResult(
                channel="text",
                delivered=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"text: {exc.message} (recipient: {mask_phone(destination)})",
            )
        return ChannelSendResult(
            channel="text",
            delivered=True,
            attempted_at=attempted_at,
            provider_message_id=_first_message_id(raw),
        )


def _first_message_id(raw: bytes) -> str | None:
    try:
        data = json.loads(raw.decode("utf-8"))
    except ValueError:
        return None
    messages = data.get("messages") if isinstance(data, dict) else None
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        message_id = messages[0].get("id")
        return message_id if isinstance(message_id, str) else None
    return None


class StubChatSender:
    """Records calls; webhook URLs containing ``fail`` report a delivery error."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def send(self, webhook_url: str, text: str) -> ChannelSendResult:
        attempted_at = _now_utc()
        self.calls.append((webhook_url, text))
        if "fail" in webhook_url.lower():
            return ChannelSendResult(
                channel="chat",
                delivered=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="chat: stub sender forced failure",
            )
        return ChannelSendResult(channel="chat", delivered=True, attempted_at=attempted_at)


class StubTextMessageSender:
    """Records calls; sender ids containing ``fail`` report a delivery error."""

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []

    def send(self, *, token: str, sender_id: str, phone: str, text: str) -> ChannelSendResult:
        attempted_at = _now_utc()
        self.calls.append({"token": token, "sender_id": sender_id, "phone": phone, "text": text})
        if "fail" in sender_id.lower():
            return ChannelSendResult(
                channel="text",
                delivered=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="text: stub sender forced failure",
            )
        return ChannelSendResult(
            channel="text",
            delivered=True,
            attempted_at=attempted_at,
            provider_message_id=f"stub-{mask_phone(phone)}-{int(attempted_at.timestamp())}",
        )
