"""Bounded audit log of security-relevant events.

The in-memory buffer is newest-first and capped at ``max_logs``. A shorter
tail (``max_persisted``) is mirrored into the shared store so a restarted
context can reload recent history; that mirror is best-effort and the
in-memory copy stays authoritative for the running process. Entries may also
be forwarded to an external sink on a background thread.
"""

from __future__ import annotations

import json
import os
import platform
import queue
import socket
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Protocol

import httpx

from sessionward.logging import get_logger
from sessionward.storage.common import (
    Clock,
    generate_uuid,
    read_json,
    safe_remove,
    utc_now,
)
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import KeyValueStore
from sessionward.storage.models import AuditLogEntry

logger = get_logger(__name__)

AUDIT_LOG_KEY = "audit_logs"

DEFAULT_MAX_LOGS = 1000
DEFAULT_MAX_PERSISTED = 100

# Optimistic retries before falling back to a blind write of the persisted tail
_PERSIST_CAS_ATTEMPTS = 3


def default_origin(user_agent: Optional[str] = None) -> Dict[str, Any]:
    """Describe the environment an entry was produced in."""
    origin: Dict[str, Any] = {
        "host": socket.gethostname(),
        "pid": os.getpid(),
        "platform": platform.platform(terse=True),
    }
    if user_agent:
        origin["user_agent"] = user_agent
    return origin


class AuditSink(Protocol):
    def send(self, entry: Dict[str, Any]) -> None: ...


class HttpAuditSink:
    """Posts each entry as JSON to a logging/analytics collector."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, entry: Dict[str, Any]) -> None:
        response = self._client.post(self.url, json=entry)
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class BackgroundSinkWriter:
    """Non-blocking hand-off of audit entries to a sink.

    Entries are queued and delivered by a daemon thread. A full queue drops the
    entry (and counts it); sink failures are logged and never reach the caller.
    """

    def __init__(self, sink: AuditSink, *, max_queue_size: int = 1000, flush_timeout: float = 5.0):
        self.sink = sink
        self.flush_timeout = flush_timeout
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue(maxsize=max_queue_size)
        self._thread: Optional[threading.Thread] = None
        self._stats_lock = threading.Lock()
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="AuditSinkWriter", daemon=True)
        self._thread.start()

    def submit(self, entry: Dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            with self._stats_lock:
                self.dropped += 1
            logger.warning("audit_sink_queue_full", entry_id=entry.get("id"))
            return False
        return True

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is None:
                    return
                self._deliver(entry)
            finally:
                self._queue.task_done()

    def _deliver(self, entry: Dict[str, Any]) -> None:
        try:
            self.sink.send(entry)
        except Exception as exc:
            with self._stats_lock:
                self.failed += 1
            logger.warning(
                "audit_sink_send_failed",
                entry_id=entry.get("id"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        with self._stats_lock:
            self.delivered += 1

    def close(self) -> None:
        """Deliver what is queued (bounded by ``flush_timeout``) and stop the thread."""
        thread = self._thread
        if thread is None:
            return
        self._thread = None
        try:
            self._queue.put(None, timeout=self.flush_timeout)
        except queue.Full:
            logger.warning("audit_sink_flush_timeout", pending=self._queue.qsize())
            return
        thread.join(timeout=self.flush_timeout)
        close = getattr(self.sink, "close", None)
        if callable(close):
            close()


class AuditLogStore:
    """Newest-first ring buffer of audit entries with a persisted tail."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_logs: int = DEFAULT_MAX_LOGS,
        max_persisted: int = DEFAULT_MAX_PERSISTED,
        clock: Clock = utc_now,
        origin: Optional[Dict[str, Any]] = None,
        sink: Optional[AuditSink] = None,
        key: str = AUDIT_LOG_KEY,
    ) -> None:
        if max_logs < 1:
            raise ValueError("max_logs must be at least 1")
        if not 0 <= max_persisted < max_logs:
            raise ValueError("max_persisted must be between 0 and max_logs - 1")
        self.store = store
        self.max_logs = max_logs
        self.max_persisted = max_persisted
        self.clock = clock
        self.origin = origin if origin is not None else default_origin()
        self.key = key
        self._logs: List[AuditLogEntry] = []
        self._lock = threading.Lock()
        self._writer = BackgroundSinkWriter(sink) if sink is not None else None

    def init(self) -> None:
        """Reload the persisted tail and start forwarding to the sink."""
        self.load_persisted()
        if self._writer is not None:
            self._writer.start()

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Record an entry, filling in id/timestamp/origin when absent."""
        entry = replace(
            entry,
            id=entry.id or generate_uuid(),
            timestamp=entry.timestamp or self.clock(),
            origin=entry.origin or dict(self.origin),
        )
        with self._lock:
            self._logs.insert(0, entry)
            if len(self._logs) > self.max_logs:
                del self._logs[self.max_logs:]

        logger.debug(
            "audit_event",
            audit_action=entry.action,
            resource=entry.resource,
            actor_id=entry.actor_id,
        )
        self._persist(entry)
        if self._writer is not None:
            self._writer.submit(entry.to_dict())
        return entry

    def log(
        self,
        action: str,
        resource: str,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        return self.append(
            AuditLogEntry(
                action=action,
                resource=resource,
                actor_id=actor_id,
                details=dict(details or {}),
            )
        )

    def _persist(self, entry: AuditLogEntry) -> None:
        # Read-modify-write against the shared tail; sibling contexts append to
        # the same list, so a concurrent writer can still lose an entry here.
        if self.max_persisted == 0:
            return
        encoded = entry.to_dict()
        try:
            for _ in range(_PERSIST_CAS_ATTEMPTS):
                raw = self.store.get(self.key)
                updated = json.dumps([encoded] + self._decode_tail(raw)[: self.max_persisted - 1])
                if self.store.compare_and_set(self.key, raw, updated):
                    return
            self.store.set(self.key, updated)
        except StoreError as exc:
            logger.warning(
                "audit_persist_failed",
                entry_id=entry.id,
                error=exc.message,
                detail=exc.detail,
            )

    @staticmethod
    def _decode_tail(raw: Optional[str]) -> List[Dict[str, Any]]:
        if not raw:
            return []
        try:
            decoded = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return []
        if not isinstance(decoded, list):
            return []
        return [item for item in decoded if isinstance(item, dict)]

    def load_persisted(self) -> int:
        """Replace the in-memory buffer with the persisted tail; returns the entry count."""
        raw = read_json(self.store, self.key)
        entries: List[AuditLogEntry] = []
        if isinstance(raw, list):
            for item in raw:
                try:
                    entries.append(AuditLogEntry.from_dict(item))
                except (ValueError, TypeError, AttributeError) as exc:
                    logger.warning("audit_persisted_entry_skipped", error=str(exc))
        elif raw is not None:
            logger.warning("audit_persisted_tail_corrupt", value_type=type(raw).__name__)
        with self._lock:
            self._logs = entries[: self.max_logs]
            return len(self._logs)

    def query(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        resource: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        """Filter the in-memory buffer, newest first."""
        with self._lock:
            snapshot = list(self._logs)
        matches = [
            entry
            for entry in snapshot
            if (user_id is None or entry.actor_id == user_id)
            and (action is None or entry.action == action)
            and (resource is None or entry.resource == resource)
        ]
        if limit is not None:
            matches = matches[: max(0, limit)]
        return matches

    def persisted(self) -> List[Dict[str, Any]]:
        """Raw view of the tail currently mirrored in the shared store."""
        raw = read_json(self.store, self.key)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict)]

    def count(self) -> int:
        with self._lock:
            return len(self._logs)

    def clear(self) -> None:
        with self._lock:
            self._logs = []
        safe_remove(self.store, self.key)

    # Convenience emitters

    def log_user_action(
        self,
        action: str,
        resource: str,
        actor_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        return self.log(action, resource, actor_id, {**(details or {}), "type": "user_action"})

    def log_system_event(
        self, event: str, details: Optional[Dict[str, Any]] = None
    ) -> AuditLogEntry:
        return self.log(
            "SYSTEM_EVENT",
            "system",
            "system",
            {"event": event, **(details or {}), "type": "system_event"},
        )

    def log_query_performance(
        self,
        query: str,
        duration_ms: float,
        actor_id: str,
        record_count: int = 0,
    ) -> AuditLogEntry:
        if duration_ms > 1000:
            performance = "slow"
        elif duration_ms > 500:
            performance = "moderate"
        else:
            performance = "fast"
        return self.log(
            "QUERY_PERFORMANCE",
            "database",
            actor_id,
            {
                "query": query,
                "duration_ms": duration_ms,
                "record_count": record_count,
                "performance": performance,
            },
        )


__all__ = [
    "AUDIT_LOG_KEY",
    "AuditLogStore",
    "AuditSink",
    "BackgroundSinkWriter",
    "HttpAuditSink",
    "default_origin",
]
