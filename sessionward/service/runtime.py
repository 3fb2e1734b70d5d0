from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from sessionward.config import Settings, StoreBackend, get_settings
from sessionward.logging import get_logger
from sessionward.service.activity import ActivityTracker, SuspiciousActivityMonitor
from sessionward.service.audit import AuditLogStore, AuditSink, HttpAuditSink
from sessionward.service.auth import LoginGate
from sessionward.service.events import CrossTabEventBus, Scheduler
from sessionward.service.fingerprint import (
    DeviceFingerprint,
    FingerprintProvider,
    HostFingerprintProvider,
)
from sessionward.service.health import SessionHealthMonitor
from sessionward.service.login_guard import LoginAttemptGuard
from sessionward.service.session import SessionValidator
from sessionward.storage.common import Clock, utc_now
from sessionward.storage.kv import KeyValueStore, MemoryKeyValueStore
from sessionward.storage.redis_store import RedisKeyValueStore

logger = get_logger(__name__)

# Host-supplied credential check: (account, secret) -> claims, or None on bad credentials
Authenticator = Callable[[str, str], Optional[Dict[str, Any]]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Explicitly constructed container for one context's services.

    Callers own the lifecycle: ``init()`` before use, ``close()`` on shutdown.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        fingerprint_provider: Optional[FingerprintProvider] = None,
        audit_sink: Optional[AuditSink] = None,
        scheduler: Optional[Scheduler] = None,
        authenticator: Optional[Authenticator] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        self.authenticator = authenticator
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )

        self.store: KeyValueStore = store if store is not None else self._build_store()

        if audit_sink is None and self.settings.audit_sink_url and not self.settings.test_mode:
            audit_sink = HttpAuditSink(
                self.settings.audit_sink_url,
                timeout=self.settings.audit_sink_timeout_seconds,
            )
        self.audit = AuditLogStore(
            self.store,
            max_logs=self.settings.audit_max_logs,
            max_persisted=self.settings.audit_max_persisted,
            clock=clock,
            sink=audit_sink,
        )
        self.fingerprint = DeviceFingerprint(
            self.store,
            fingerprint_provider or HostFingerprintProvider(salt=self.settings.fingerprint_salt),
        )
        self.guard = LoginAttemptGuard(
            self.store,
            audit=self.audit,
            max_attempts=self.settings.max_login_attempts,
            lockout_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
            clock=clock,
        )
        self.sessions = SessionValidator(
            self.store,
            self.fingerprint,
            signing_key=self.settings.session_signing_key,
            lifetime=timedelta(minutes=self.settings.session_lifetime_minutes),
            audit=self.audit,
            clock=clock,
        )
        self.health_monitor = SessionHealthMonitor(
            timedelta(minutes=self.settings.session_timeout_minutes),
            warning_lead_time=timedelta(minutes=self.settings.warning_lead_minutes),
            clock=clock,
        )
        self.activity = ActivityTracker(
            self.store,
            self.health_monitor,
            audit=self.audit,
            closed_grace=timedelta(minutes=self.settings.closed_grace_minutes),
            clock=clock,
        )
        self.suspicious = SuspiciousActivityMonitor(self.store, audit=self.audit, clock=clock)
        self.events = CrossTabEventBus(
            self.store,
            cleanup_delay=self.settings.event_cleanup_seconds,
            scheduler=scheduler,
            clock=clock,
        )
        self.login_gate = LoginGate(
            self.guard, self.sessions, audit=self.audit, activity=self.activity
        )
        self._initialized = False

    def _build_store(self) -> KeyValueStore:
        if self.settings.test_mode or self.settings.store_backend is StoreBackend.MEMORY:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryKeyValueStore()

        redis_error: Exception | None = None
        store: Optional[RedisKeyValueStore] = None
        try:
            store = RedisKeyValueStore(self.settings.redis_url, prefix=self.settings.key_prefix)
            store.verify_connection()
        except Exception as exc:
            redis_error = exc
            if store is not None:
                store.close()
            store = None
        if store is not None:
            logger.info(
                "runtime_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
            )
            return store

        if not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the shared session store; start Redis or set "
                "STORE_BACKEND=memory / ALLOW_REDIS_FALLBACK_DEV=true for a process-local store."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
            message="Running with a process-local store; sibling processes will not see each other's state.",
        )
        return MemoryKeyValueStore()

    def init(self) -> "Runtime":
        if self._initialized:
            return self
        self.audit.init()
        self.events.init()
        self._initialized = True
        self.audit.log_system_event("runtime_started", {"context_id": self.store.context_id})
        logger.info("runtime_initialized", context_id=self.store.context_id)
        return self

    def close(self) -> None:
        if not self._initialized:
            self.store.close()
            return
        self._initialized = False
        self.events.close()
        self.audit.close()
        self.store.close()
        logger.info("runtime_closed", context_id=self.store.context_id)

    def __enter__(self) -> "Runtime":
        return self.init()

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = ["Authenticator", "Runtime"]
