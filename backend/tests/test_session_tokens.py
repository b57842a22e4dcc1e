from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from reminder_dispatch.session_tokens import (
    MissingTenantError,
    PermissionDeniedError,
    SessionTokenError,
    _sign,
    create_session_token,
    decode_session_token,
    encode_session_token,
    require_dispatch_principal,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _forge(payload: dict[str, object], secret: str) -> str:
    payload_b64 = base64.urlsafe_b64encode(json.dumps(payload).encode("utf-8")).decode("ascii").rstrip("=")
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def test_session_token_round_trip() -> None:
    principal = create_session_token(tenant_id=" acme ", role="Admin", subject="ops@acme", ttl_minutes=60, now=NOW)
    token = encode_session_token(principal, secret="secret-123")

    decoded = decode_session_token(token, secret="secret-123", now=NOW + timedelta(minutes=30))

    assert decoded.tenant_id == "acme"
    assert decoded.role == "admin"
    assert decoded.subject == "ops@acme"
    assert decoded.expires_at == NOW + timedelta(minutes=60)
    assert decoded.is_admin is True


def test_session_token_keeps_tenant_case() -> None:
    principal = create_session_token(tenant_id="Acme-EU", role="owner", subject="x", ttl_minutes=5, now=NOW)
    decoded = decode_session_token(encode_session_token(principal, secret="s"), secret="s", now=NOW)
    assert decoded.tenant_id == "Acme-EU"


def test_session_token_expired() -> None:
    principal = create_session_token(tenant_id="acme", role="admin", subject="x", ttl_minutes=1, now=NOW)
    token = encode_session_token(principal, secret="secret-123")

    with pytest.raises(SessionTokenError, match="token expired"):
        decode_session_token(token, secret="secret-123", now=NOW + timedelta(minutes=2))


def test_session_token_signature_mismatch() -> None:
    principal = create_session_token(tenant_id="acme", role="admin", subject="x", ttl_minutes=5, now=NOW)
    token = encode_session_token(principal, secret="secret-123")

    with pytest.raises(SessionTokenError, match="signature mismatch"):
        decode_session_token(token, secret="other-secret", now=NOW)


def test_session_token_invalid_format() -> None:
    with pytest.raises(SessionTokenError, match="invalid token format"):
        decode_session_token("not-a-token", secret="secret-123", now=NOW)


@pytest.mark.parametrize("token", ["\u00e9\u00e9.abc", "payload.sign\u00e9", "p\u00e4yload.signature"])
def test_session_token_with_non_ascii_text_is_an_invalid_format(token: str) -> None:
    with pytest.raises(SessionTokenError, match="invalid token format"):
        decode_session_token(token, secret="secret-123", now=NOW)


def test_session_token_without_tenant_is_rejected() -> None:
    token = _forge({"tenant_id": "  ", "role": "admin", "exp": int((NOW + timedelta(hours=1)).timestamp())}, "s")

    with pytest.raises(MissingTenantError):
        decode_session_token(token, secret="s", now=NOW)

    with pytest.raises(MissingTenantError):
        create_session_token(tenant_id="", role="admin", subject="x", ttl_minutes=5, now=NOW)


def test_session_token_without_expiration_is_rejected() -> None:
    token = _forge({"tenant_id": "acme", "role": "admin"}, "s")

    with pytest.raises(SessionTokenError, match="expiration missing"):
        decode_session_token(token, secret="s", now=NOW)


@pytest.mark.parametrize("role", ["owner", "admin", "superadmin"])
def test_admin_roles_may_dispatch(role: str) -> None:
    principal = create_session_token(tenant_id="acme", role=role, subject="x", ttl_minutes=5, now=NOW)
    assert require_dispatch_principal(principal) is principal


@pytest.mark.parametrize("role", ["member", "viewer", ""])
def test_other_roles_may_not_dispatch(role: str) -> None:
    principal = create_session_token(tenant_id="acme", role=role, subject="x", ttl_minutes=5, now=NOW)
    with pytest.raises(PermissionDeniedError):
        require_dispatch_principal(principal)
