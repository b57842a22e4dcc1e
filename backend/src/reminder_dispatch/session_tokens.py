from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .config import ADMIN_ROLES


class SessionTokenError(ValueError):
    """Raised when a caller session token is malformed, forged, or expired."""


class MissingTenantError(SessionTokenError):
    """Raised when a well-formed session carries no tenant identifier."""


class PermissionDeniedError(PermissionError):
    """Raised when a valid session lacks the role an operation requires."""


@dataclass(frozen=True)
class SessionPrincipal:
    tenant_id: str
    role: str
    subject: str
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def create_session_token(
    *,
    tenant_id: str,
    role: str,
    subject: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> SessionPrincipal:
    issued_at = now or datetime.now(timezone.utc)
    # Tenant ids are opaque text; only surrounding whitespace is dropped.
    normalized_tenant = str(tenant_id).strip()
    if not normalized_tenant:
        raise MissingTenantError("tenant_id is required")
    return SessionPrincipal(
        tenant_id=normalized_tenant,
        role=role.strip().lower(),
        subject=subject.strip(),
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
    )


def encode_session_token(principal: SessionPrincipal, *, secret: str) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_json = json.dumps(
        {
            "tenant_id": principal.tenant_id,
            "role": principal.role,
            "sub": principal.subject,
            "exp": int(principal.expires_at.timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> SessionPrincipal:
    # compare_digest and the ascii encode in _sign only accept ASCII text.
    if not token or "." not in token or not token.isascii():
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
        raise SessionTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token payload decoding failed") from exc
    if not isinstance(payload_obj, dict):
        raise SessionTokenError("token payload decoding failed")

    tenant_raw = payload_obj.get("tenant_id")
    tenant_id = "" if tenant_raw is None else str(tenant_raw).strip()
    if not tenant_id:
        raise MissingTenantError("token tenant_id missing")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise SessionTokenError("token expired")

    return SessionPrincipal(
        tenant_id=tenant_id,
        role=str(payload_obj.get("role") or "").strip().lower(),
        subject=str(payload_obj.get("sub") or "").strip(),
        expires_at=expires_at,
    )


def require_dispatch_principal(principal: SessionPrincipal) -> SessionPrincipal:
    if not principal.is_admin:
        raise PermissionDeniedError(f"role '{principal.role or 'none'}' may not dispatch reminders")
    return principal
