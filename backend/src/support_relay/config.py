from __future__ import annotations

import os
from dataclasses import dataclass


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    return normalized.lower() in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Support Relay"
    api_prefix: str = ""
    # Slack side: inbound events and threaded replies.
    slack_bot_token: str = ""
    slack_bot_user_id: str = ""
    slack_api_base_url: str = "https://slack.com/api"
    slack_default_channel_id: str = ""
    slack_client_type: str = "stub"
    # Intercom side: conversation creation and reply webhooks.
    intercom_access_token: str = ""
    intercom_admin_id: str = ""
    intercom_sender_type: str = "user"
    intercom_api_base_url: str = "https://api.intercom.io"
    intercom_api_version: str = ""
    intercom_client_type: str = "stub"
    remote_timeout_seconds: float = 10.0
    relay_store_backend: str = "sqlalchemy"
    database_url: str = "sqlite:///./support_relay.db"
    runtime_secret_guard_mode: str = "warn"
    log_level: str = "INFO"
    port: int = 3000

    def resolve_channel(self, channel_id: str | None) -> str | None:
        value = (channel_id or "").strip() or self.slack_default_channel_id.strip()
        return value or None


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("RELAY_APP_NAME", "Support Relay"),
        api_prefix=os.getenv("RELAY_API_PREFIX", ""),
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN", ""),
        slack_bot_user_id=os.getenv("SLACK_BOT_USER_ID", ""),
        slack_api_base_url=os.getenv("SLACK_API_BASE_URL", "https://slack.com/api"),
        slack_default_channel_id=os.getenv("SLACK_DEFAULT_CHANNEL_ID", ""),
        slack_client_type=_normalize_mode(
            os.getenv("SLACK_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        intercom_access_token=os.getenv("INTERCOM_ACCESS_TOKEN", ""),
        intercom_admin_id=os.getenv("INTERCOM_ADMIN_ID", ""),
        intercom_sender_type=os.getenv("INTERCOM_SENDER_TYPE", "user"),
        intercom_api_base_url=os.getenv("INTERCOM_API_BASE_URL", "https://api.intercom.io"),
        intercom_api_version=os.getenv("INTERCOM_API_VERSION", ""),
        intercom_client_type=_normalize_mode(
            os.getenv("INTERCOM_CLIENT_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        remote_timeout_seconds=_as_float(os.getenv("REMOTE_TIMEOUT_SECONDS"), 10.0),
        relay_store_backend=os.getenv("RELAY_STORE_BACKEND", "sqlalchemy"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./support_relay.db"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        port=_as_int(os.getenv("PORT"), 3000),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.slack_client_type == "http":
        if _is_placeholder(settings.slack_bot_token):
            issues.append("SLACK_BOT_TOKEN is required when SLACK_CLIENT_TYPE=http")
        if not settings.slack_bot_user_id.strip():
            issues.append(
                "SLACK_BOT_USER_ID is empty; the relay cannot ignore its own messages "
                "and may loop replies back into Intercom"
            )
    if settings.intercom_client_type == "http":
        if _is_placeholder(settings.intercom_access_token):
            issues.append("INTERCOM_ACCESS_TOKEN is required when INTERCOM_CLIENT_TYPE=http")
        if not settings.intercom_admin_id.strip():
            issues.append("INTERCOM_ADMIN_ID is required when INTERCOM_CLIENT_TYPE=http")
    if settings.remote_timeout_seconds <= 0:
        issues.append("REMOTE_TIMEOUT_SECONDS must be positive")
    return tuple(issues)
