from __future__ import annotations

import io
import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from reminder_dispatch.channels import (
    TEXT_MESSAGE_MAX_CHARS,
    HttpChatSender,
    HttpTextMessageSender,
    StubChatSender,
    StubTextMessageSender,
    is_valid_chat_webhook,
    mask_phone,
    normalize_phone,
)

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"


def _mock_response(body: bytes = b"ok", status: int = 200) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = status
    response.read.return_value = body
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int, body: dict[str, object] | None = None) -> urllib.error.HTTPError:
    raw = json.dumps(body).encode("utf-8") if body is not None else b""
    return urllib.error.HTTPError(
        url="https://example.test",
        code=code,
        msg="error",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(raw),
    )


@pytest.mark.parametrize(
    "url",
    [
        WEBHOOK,
        "https://hooks.slack.com/services/abc",
    ],
)
def test_valid_chat_webhooks(url: str) -> None:
    assert is_valid_chat_webhook(url) is True


@pytest.mark.parametrize(
    "url",
    [
        None,
        "",
        "http://hooks.slack.com/services/T000/B000/XXXX",
        "https://hooks.slack.com.evil.test/services/T000/B000",
        "https://evil.test/services/T000/B000",
        "https://hooks.slack.com/api/T000/B000",
        "https://hooks.slack.com/services/",
        "https://hooks.slack.com/services/T000?x=1",
        "https://hooks.slack.com/services/T000#frag",
        "https://hooks.slack.com:8443/services/T000",
        "https://user:pw@hooks.slack.com/services/T000",
        "not a url",
    ],
)
def test_invalid_chat_webhooks(url: str | None) -> None:
    assert is_valid_chat_webhook(url) is False


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+1 (555) 123-4567 ext", "+15551234567"),
        ("555.123.4567", "5551234567"),
        ("+52+1 55 1234", "+521551234"),
        ("00 44 20 7946 0958", "00442079460958"),
        ("call me maybe", ""),
        ("+", ""),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_phone(raw: str | None, expected: str) -> None:
    assert normalize_phone(raw) == expected


def test_mask_phone() -> None:
    assert mask_phone("+15551234567") == "***4567"
    assert mask_phone("12") == "***"


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_chat_sender_posts_text(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(b"ok")
    sender = HttpChatSender(timeout_seconds=3)

    result = sender.send(WEBHOOK, "Reminder: Call back")

    assert result.delivered is True
    assert result.channel == "chat"
    assert result.attempted_at.tzinfo == timezone.utc
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == WEBHOOK
    assert request_arg.get_header("Content-type") == "application/json"
    assert json.loads(request_arg.data.decode("utf-8")) == {"text": "Reminder: Call back"}
    assert mock_urlopen.call_args[1]["timeout"] == 3


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_chat_sender_rejects_invalid_webhook_without_network(mock_urlopen: MagicMock) -> None:
    sender = HttpChatSender()

    result = sender.send("http://hooks.slack.com/services/T000", "hi")

    assert result.delivered is False
    assert result.error_code == "invalid_webhook"
    mock_urlopen.assert_not_called()


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_chat_sender_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(404)

    result = HttpChatSender().send(WEBHOOK, "hi")

    assert result.delivered is False
    assert result.error_code == "http_404"
    assert result.error_message is not None and result.error_message.startswith("chat: HTTP 404")


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_chat_sender_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError(socket.timeout("timed out"))

    result = HttpChatSender().send(WEBHOOK, "hi")

    assert result.delivered is False
    assert result.error_code == "timeout"


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_chat_sender_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    result = HttpChatSender().send(WEBHOOK, "hi")

    assert result.error_code == "connection_error"
    assert "Name or service not known" in (result.error_message or "")


def test_senders_require_positive_timeout() -> None:
    with pytest.raises(ValueError):
        HttpChatSender(timeout_seconds=0)
    with pytest.raises(ValueError):
        HttpTextMessageSender(timeout_seconds=-1)
    with pytest.raises(ValueError):
        HttpTextMessageSender(graph_base="  ")


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_text_sender_builds_graph_request(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(json.dumps({"messages": [{"id": "wamid.123"}]}).encode("utf-8"))
    sender = HttpTextMessageSender(graph_base="https://graph.example.test/", graph_version="v20.0")

    result = sender.send(token="tok-1", sender_id="1098", phone="+1 (555) 123-4567", text="x" * 5000)

    assert result.delivered is True
    assert result.channel == "text"
    assert result.provider_message_id == "wamid.123"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.example.test/v20.0/1098/messages"
    assert request_arg.get_header("Authorization") == "Bearer tok-1"
    body = json.loads(request_arg.data.decode("utf-8"))
    assert body["messaging_product"] == "whatsapp"
    assert body["to"] == "+15551234567"
    assert body["type"] == "text"
    assert len(body["text"]["body"]) == TEXT_MESSAGE_MAX_CHARS


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_text_sender_surfaces_provider_error_message(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = _http_error(400, {"error": {"message": "Invalid parameter"}})

    result = HttpTextMessageSender().send(token="tok", sender_id="1098", phone="+15551234567", text="hi")

    assert result.delivered is False
    assert result.error_code == "http_400"
    assert "Invalid parameter" in (result.error_message or "")
    assert "4567" in (result.error_message or "")
    assert "+15551234567" not in (result.error_message or "")


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_text_sender_unusable_phone_skips_network(mock_urlopen: MagicMock) -> None:
    result = HttpTextMessageSender().send(token="tok", sender_id="1098", phone="no phone", text="hi")

    assert result.delivered is False
    assert result.error_code == "phone_unusable"
    mock_urlopen.assert_not_called()


@patch("reminder_dispatch.channels.urllib.request.urlopen")
def test_text_sender_missing_credentials(mock_urlopen: MagicMock) -> None:
    result = HttpTextMessageSender().send(token="", sender_id="1098", phone="+15551234567", text="hi")

    assert result.error_code == "not_configured"
    mock_urlopen.assert_not_called()


def test_stub_senders_record_and_fail_on_marker() -> None:
    chat = StubChatSender()
    text = StubTextMessageSender()

    assert chat.send(WEBHOOK, "hi").delivered is True
    assert chat.send("https://hooks.slack.com/services/fail", "hi").delivered is False
    assert text.send(token="t", sender_id="1098", phone="+15551234567", text="hi").delivered is True
    assert text.send(token="t", sender_id="fail-1", phone="+15551234567", text="hi").error_code == "stub_delivery_failed"
    assert len(chat.calls) == 2
    assert text.calls[0]["phone"] == "+15551234567"
