from __future__ import annotations

import os

from reminder_dispatch.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = (
        "DISPATCH_DEFAULT_LIMIT",
        "DISPATCH_MAX_LIMIT",
        "DISPATCH_CONCURRENCY",
        "CHANNEL_TIMEOUT_SECONDS",
        "REMINDER_MAX_ATTEMPTS",
        "CHANNEL_SENDER_TYPE",
    )
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.dispatch_default_limit == 50
        assert settings.dispatch_max_limit == 200
        assert settings.dispatch_concurrency == 1
        assert settings.channel_timeout_seconds == 5.0
        assert settings.reminder_max_attempts == 1
        assert settings.channel_sender_type == "http"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_get_settings_ignores_malformed_numbers_and_modes() -> None:
    previous = {
        "DISPATCH_DEFAULT_LIMIT": _set_env("DISPATCH_DEFAULT_LIMIT", "lots"),
        "CHANNEL_TIMEOUT_SECONDS": _set_env("CHANNEL_TIMEOUT_SECONDS", "fast"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "panic"),
        "REAP_STALE_CLAIMS_ON_DISPATCH": _set_env("REAP_STALE_CLAIMS_ON_DISPATCH", "off"),
        "DISPATCH_CORS_ORIGINS": _set_env("DISPATCH_CORS_ORIGINS", "https://crm.example.com/, ,https://ops.example.com"),
    }
    try:
        settings = get_settings()
        assert settings.dispatch_default_limit == 50
        assert settings.channel_timeout_seconds == 5.0
        assert settings.runtime_secret_guard_mode == "warn"
        assert settings.reap_stale_claims_on_dispatch is False
        assert settings.cors_allowed_origins == ("https://crm.example.com", "https://ops.example.com")
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_clamp_limit_bounds() -> None:
    settings = Settings()
    assert settings.clamp_limit(None) == 50
    assert settings.clamp_limit(0) == 1
    assert settings.clamp_limit(-5) == 1
    assert settings.clamp_limit(10000) == 200
    assert settings.clamp_limit(10) == 10


def test_effective_concurrency_is_bounded() -> None:
    assert Settings(dispatch_concurrency=0).effective_concurrency() == 1
    assert Settings(dispatch_concurrency=4).effective_concurrency() == 4
    assert Settings(dispatch_concurrency=64).effective_concurrency() == 10


def test_runtime_secret_issues_flags_placeholders_and_backend() -> None:
    issues = runtime_secret_issues(Settings(reminder_store_backend="postgres", database_url=""))
    assert any("SESSION_TOKEN_SECRET" in issue for issue in issues)
    assert any("DATABASE_URL is required" in issue for issue in issues)

    issues = runtime_secret_issues(Settings(reminder_store_backend="redis"))
    assert any("REMINDER_STORE_BACKEND" in issue for issue in issues)


def test_runtime_secret_issues_clean_configuration() -> None:
    settings = Settings(
        session_token_secret="prod-session-secret-001",
        reminder_store_backend="postgres",
        database_url="postgresql://crm@db/crm",
    )
    assert runtime_secret_issues(settings) == ()
