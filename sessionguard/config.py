from __future__ import annotations

import os
import re
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Any) -> int:
    """Convert ``"30d"``/``"15m"``/``"12h"``/``"45s"`` or a bare number to seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '30d'")
    if isinstance(value, (int, float)):
        seconds = int(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration '{value}'; expected e.g. '15m' or '30d'")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    else:
        raise ValueError("duration must be a number or a string like '30d'")
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and refresh-token lifecycle manager."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the synchronous Redis client and relax startup requirements.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("marketplace", "JWT_AUDIENCE")
    access_token_expires_in: int = env_field(
        "15m",
        "ACCESS_TOKEN_EXPIRES_IN",
        validate_default=True,
        description="Access token lifetime in seconds (accepts '15m' style strings)",
    )
    refresh_token_expires_in: int = env_field(
        "30d",
        "REFRESH_TOKEN_EXPIRES_IN",
        validate_default=True,
        description="Refresh token lifetime in seconds (accepts '30d' style strings)",
    )
    session_expires_in: int = env_field(
        "30d",
        "SESSION_EXPIRES_IN",
        validate_default=True,
        description="Session lifetime in seconds (accepts '30d' style strings)",
    )
    max_sessions_per_user: int = env_field(
        5, "MAX_SESSIONS_PER_USER", ge=1, description="Concurrent active sessions per user"
    )
    inactive_cleanup_days: int = env_field(
        30,
        "INACTIVE_CLEANUP_DAYS",
        ge=0,
        description="Age in days after which inactive tokens and sessions are purged",
    )
    cleanup_grace_minutes: int = env_field(
        0,
        "CLEANUP_GRACE_MINUTES",
        ge=0,
        description="Minutes past expiry before expired rows become eligible for deletion",
    )
    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")
    cleanup_hourly_cron: str = env_field("0 * * * *", "CLEANUP_HOURLY_CRON")
    cleanup_daily_cron: str = env_field("0 2 * * *", "CLEANUP_DAILY_CRON")

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

    @field_validator(
        "access_token_expires_in",
        "refresh_token_expires_in",
        "session_expires_in",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cleanup_hourly_cron", "cleanup_daily_cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError(f"cron expression '{value}' must have five fields")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so token hashes stay verifiable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (e.g., in container)
            pass
        except Exception as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated


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
