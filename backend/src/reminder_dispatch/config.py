from __future__ import annotations

import os
from dataclasses import dataclass

ADMIN_ROLES = frozenset({"owner", "admin", "superadmin"})
DISPATCH_LIMIT_FLOOR = 1
DISPATCH_CONCURRENCY_MAX = 10


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_list(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(item.strip().rstrip("/") for item in value.split(",") if item.strip())


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reminder Dispatch"
    api_prefix: str = "/api/v1"
    cors_allowed_origins: tuple[str, ...] = ()
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    dispatch_default_limit: int = 50
    dispatch_max_limit: int = 200
    dispatch_concurrency: int = 1
    dispatch_deadline_seconds: float = 25.0
    channel_sender_type: str = "http"
    channel_timeout_seconds: float = 5.0
    stale_claim_minutes: int = 15
    reap_stale_claims_on_dispatch: bool = True
    reminder_max_attempts: int = 1
    reminder_retry_base_seconds: int = 60
    display_timezone: str = "UTC"
    whatsapp_graph_base: str = "https://graph.facebook.com"
    whatsapp_graph_version: str = "v20.0"
    session_token_secret: str = "dev-session-secret"
    session_token_ttl_minutes: int = 480
    runtime_secret_guard_mode: str = "warn"

    def clamp_limit(self, requested: int | None) -> int:
        """Effective batch size for a dispatch request."""
        if requested is None:
            requested = self.dispatch_default_limit
        return max(DISPATCH_LIMIT_FLOOR, min(int(requested), self.dispatch_max_limit))

    def effective_concurrency(self) -> int:
        return max(1, min(self.dispatch_concurrency, DISPATCH_CONCURRENCY_MAX))


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("DISPATCH_APP_NAME", "Reminder Dispatch"),
        api_prefix=os.getenv("DISPATCH_API_PREFIX", "/api/v1"),
        cors_allowed_origins=_as_list(os.getenv("DISPATCH_CORS_ORIGINS")),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        dispatch_default_limit=_as_int(os.getenv("DISPATCH_DEFAULT_LIMIT"), 50),
        dispatch_max_limit=_as_int(os.getenv("DISPATCH_MAX_LIMIT"), 200),
        dispatch_concurrency=_as_int(os.getenv("DISPATCH_CONCURRENCY"), 1),
        dispatch_deadline_seconds=_as_float(os.getenv("DISPATCH_DEADLINE_SECONDS"), 25.0),
        channel_sender_type=_normalize_mode(
            os.getenv("CHANNEL_SENDER_TYPE"),
            default="http",
            allowed={"http", "stub"},
        ),
        channel_timeout_seconds=_as_float(os.getenv("CHANNEL_TIMEOUT_SECONDS"), 5.0),
        stale_claim_minutes=_as_int(os.getenv("STALE_CLAIM_MINUTES"), 15),
        reap_stale_claims_on_dispatch=_as_bool(os.getenv("REAP_STALE_CLAIMS_ON_DISPATCH"), True),
        reminder_max_attempts=_as_int(os.getenv("REMINDER_MAX_ATTEMPTS"), 1),
        reminder_retry_base_seconds=_as_int(os.getenv("REMINDER_RETRY_BASE_SECONDS"), 60),
        display_timezone=os.getenv("DISPLAY_TIMEZONE", "UTC"),
        whatsapp_graph_base=os.getenv("WHATSAPP_GRAPH_BASE", "https://graph.facebook.com"),
        whatsapp_graph_version=os.getenv("WHATSAPP_GRAPH_VERSION", "v20.0"),
        session_token_secret=os.getenv("SESSION_TOKEN_SECRET", "dev-session-secret"),
        session_token_ttl_minutes=_as_int(os.getenv("SESSION_TOKEN_TTL_MINUTES"), 480),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.session_token_secret,
        defaults={"dev-session-secret", "change-me-in-production"},
    ):
        issues.append("SESSION_TOKEN_SECRET is empty or uses a development placeholder")
    backend = settings.reminder_store_backend.strip().lower()
    if backend not in {"inmemory", "postgres"}:
        issues.append(f"REMINDER_STORE_BACKEND must be inmemory or postgres, got {settings.reminder_store_backend!r}")
    if backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres")
    if settings.dispatch_max_limit < DISPATCH_LIMIT_FLOOR:
        issues.append("DISPATCH_MAX_LIMIT must be at least 1")
    if settings.channel_timeout_seconds <= 0:
        issues.append("CHANNEL_TIMEOUT_SECONDS must be positive")
    return tuple(issues)
