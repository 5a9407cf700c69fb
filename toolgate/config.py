from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from toolgate.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Durable store implementations the runtime can be wired with."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authorization gateway."""

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(
        None,
        "JWT_REFRESH_SECRET",
        description="Signing secret for refresh tokens; defaults to JWT_SECRET",
    )
    jwt_issuer: str = env_field("toolgate", "JWT_ISSUER")
    jwt_audience: str = env_field("toolgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    token_refresh_threshold_seconds: int = env_field(
        300,
        "TOKEN_REFRESH_THRESHOLD_SECONDS",
        description="Access tokens closer than this to expiry are reported as expiring soon",
    )

    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    remember_me_session_ttl_days: int = env_field(30, "REMEMBER_ME_SESSION_TTL_DAYS")
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER", ge=1)

    max_concurrent_executions: int = env_field(20, "MAX_CONCURRENT_EXECUTIONS", ge=1)
    max_concurrent_executions_per_user: int = env_field(
        3, "MAX_CONCURRENT_EXECUTIONS_PER_USER", ge=1
    )
    default_tool_timeout_seconds: float = env_field(30.0, "DEFAULT_TOOL_TIMEOUT_SECONDS", gt=0)
    max_tool_timeout_seconds: float = env_field(
        30 * 60.0,
        "MAX_TOOL_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound applied to per-tool timeouts from the catalog",
    )

    approval_timeout_seconds: float = env_field(300.0, "APPROVAL_TIMEOUT_SECONDS", gt=0)
    max_escalation_levels: int = env_field(3, "MAX_ESCALATION_LEVELS", ge=0)
    approval_retention_hours: int = env_field(24, "APPROVAL_RETENTION_HOURS")
    execution_history_retention_hours: int = env_field(24, "EXECUTION_HISTORY_RETENTION_HOURS")
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS", ge=1)
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key_prefix: str = env_field("toolgate", "REDIS_KEY_PREFIX")

    tool_catalog_path: str | None = env_field(
        None,
        "TOOL_CATALOG_PATH",
        description="JSON file with tool definitions loaded at startup",
    )
    tool_permission_overrides: dict[str, str] = env_field(
        {},
        "TOOL_PERMISSION_OVERRIDES",
        description='JSON object mapping tool id to permission level, e.g. {"git": "auto"}',
    )
    event_queue_size: int = env_field(256, "EVENT_QUEUE_SIZE", ge=1)

    bootstrap_admin_username: str | None = env_field(None, "BOOTSTRAP_ADMIN_USERNAME")
    bootstrap_admin_password: str | None = env_field(None, "BOOTSTRAP_ADMIN_PASSWORD")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("tool_permission_overrides", mode="before")
    @classmethod
    def _parse_overrides(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        allowed = {"auto", "user_approval", "admin_approval", "denied"}
        for tool_id, level in (value or {}).items():
            if level not in allowed:
                raise ValueError(f"invalid permission level {level!r} for tool {tool_id!r}")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with an ephemeral secret do not survive a restart
        logger.warning("jwt_secret_generated", message="set JWT_SECRET to keep sessions across restarts")
        return secrets.token_urlsafe(64)

    @property
    def refresh_secret(self) -> str:
        return self.jwt_refresh_secret or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
