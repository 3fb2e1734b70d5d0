from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionward.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Shared key-value store implementations."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session-security core."""

    store_backend: StoreBackend = env_field(StoreBackend.REDIS, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    key_prefix: str = env_field(
        "sessionward:",
        "KEY_PREFIX",
        description="Namespace prepended to every key written to the shared store",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory store, no sink).",
    )
    shared_fs_root: str = env_field("/srv/sessionward", "SHARED_FS_ROOT")

    # Login lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: float = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)

    # Session lifetime and idle timeout
    session_lifetime_minutes: float = env_field(
        8 * 60,
        "SESSION_LIFETIME_MINUTES",
        gt=0,
        description="Absolute lifetime of a session record from creation",
    )
    session_timeout_minutes: float = env_field(
        30,
        "SESSION_TIMEOUT_MINUTES",
        gt=0,
        description="Idle timeout used by the health monitor",
    )
    warning_lead_minutes: float = env_field(5, "WARNING_LEAD_MINUTES", ge=0)
    closed_grace_minutes: float = env_field(
        5,
        "CLOSED_GRACE_MINUTES",
        ge=0,
        description="How long a closed context may stay away before its session counts as expired",
    )
    session_signing_key: str = env_field(
        None, "SESSION_SIGNING_KEY", validate_default=True
    )
    fingerprint_salt: str | None = env_field(None, "FINGERPRINT_SALT")
    admin_token: str | None = env_field(
        None,
        "ADMIN_TOKEN",
        description="Bearer token for lockout, session and audit administration; unset disables those routes",
    )

    # Audit log
    audit_max_logs: int = env_field(1000, "AUDIT_MAX_LOGS", ge=1)
    audit_max_persisted: int = env_field(100, "AUDIT_MAX_PERSISTED", ge=0)
    audit_sink_url: str | None = env_field(
        None,
        "AUDIT_SINK_URL",
        description="Optional HTTP endpoint receiving audit entries for long-term storage",
    )
    audit_sink_timeout_seconds: float = env_field(5.0, "AUDIT_SINK_TIMEOUT_SECONDS", gt=0)

    # Cross-tab events
    event_cleanup_seconds: float = env_field(1.0, "EVENT_CLEANUP_SECONDS", ge=0)

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
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("audit_max_persisted")
    @classmethod
    def _validate_persisted_tail(cls, value: int, info) -> int:
        max_logs = info.data.get("audit_max_logs")
        if max_logs is not None and value >= max_logs:
            raise ValueError("audit_max_persisted must be smaller than audit_max_logs")
        return value

    @field_validator("session_signing_key", mode="before")
    @classmethod
    def _ensure_signing_key(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated key so stored sessions stay verifiable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionward"))
        key_path = fs_root / ".session_signing_key"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "signing_key_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if key_path.exists() and not key_path.is_symlink():
            try:
                persisted = key_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "signing_key_read_failed", error=str(exc), path=str(key_path)
                )

        generated = secrets.token_urlsafe(48)
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".session_signing_key_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(key_path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "signing_key_persist_failed", error=str(exc), path=str(key_path)
            )
            raise RuntimeError(
                "Unable to persist session signing key; set SESSION_SIGNING_KEY or make SHARED_FS_ROOT writable"
            ) from exc
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
