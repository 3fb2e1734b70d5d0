from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sessionward.logging import get_logger
from sessionward.service.audit import AuditLogStore
from sessionward.service.health import HealthReport, SessionHealthMonitor
from sessionward.storage.common import (
    Clock,
    format_timestamp,
    parse_timestamp,
    read_json,
    safe_get,
    safe_remove,
    safe_set,
    utc_now,
)
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import KeyValueStore

logger = get_logger(__name__)

LAST_ACTIVITY_KEY = "session:last_activity"
CLOSED_AT_KEY = "session:closed_at"
TAB_COUNT_KEY = "tab_count"
NAV_HISTORY_KEY = "nav_history"

DEFAULT_CLOSED_GRACE = timedelta(minutes=5)


def _update(store: KeyValueStore, key: str, fn: Callable[[Optional[str]], str], attempts: int = 3) -> str:
    """Optimistic read-modify-write; the final attempt writes unconditionally."""
    for _ in range(attempts):
        raw = store.get(key)
        updated = fn(raw)
        if store.compare_and_set(key, raw, updated):
            return updated
    store.set(key, updated)
    return updated


class ActivityTracker:
    """Last-activity bookkeeping shared by every context of one session."""

    def __init__(
        self,
        store: KeyValueStore,
        monitor: SessionHealthMonitor,
        *,
        audit: Optional[AuditLogStore] = None,
        closed_grace: timedelta = DEFAULT_CLOSED_GRACE,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.audit = audit
        self.closed_grace = closed_grace
        self.clock = clock

    def record_activity(self) -> datetime:
        now = self.clock()
        safe_set(self.store, LAST_ACTIVITY_KEY, format_timestamp(now))
        return now

    def last_activity(self) -> Optional[datetime]:
        return parse_timestamp(safe_get(self.store, LAST_ACTIVITY_KEY))

    def extend(self, actor_id: str = "anonymous") -> datetime:
        now = self.record_activity()
        if self.audit is not None:
            self.audit.log("SESSION_EXTENDED", "session", actor_id, {})
        return now

    def mark_closed(self) -> None:
        safe_set(self.store, CLOSED_AT_KEY, format_timestamp(self.clock()))

    def closed_too_long(self) -> bool:
        """Consume the close marker; true when it is older than the grace period."""
        closed_at = parse_timestamp(safe_get(self.store, CLOSED_AT_KEY))
        if closed_at is None:
            return False
        safe_remove(self.store, CLOSED_AT_KEY)
        return self.clock() - closed_at > self.closed_grace

    def health(self) -> Optional[HealthReport]:
        last = self.last_activity()
        if last is None:
            return None
        return self.monitor.check(last)

    def clear(self) -> None:
        safe_remove(self.store, LAST_ACTIVITY_KEY)
        safe_remove(self.store, CLOSED_AT_KEY)


class SuspiciousActivityMonitor:
    """Advisory heuristics over tab count and navigation speed.

    A positive check is audited; nothing is blocked.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        audit: Optional[AuditLogStore] = None,
        clock: Clock = utc_now,
        max_tabs: int = 5,
        rapid_interval: timedelta = timedelta(seconds=1),
        rapid_limit: int = 3,
        window: int = 10,
        history_size: int = 50,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.max_tabs = max_tabs
        self.rapid_interval = rapid_interval
        self.rapid_limit = rapid_limit
        self.window = window
        self.history_size = history_size

    def tab_count(self) -> int:
        raw = safe_get(self.store, TAB_COUNT_KEY)
        try:
            return max(0, int(raw)) if raw is not None else 0
        except ValueError:
            return 0

    def _adjust_tabs(self, delta: int) -> int:
        def bump(raw: Optional[str]) -> str:
            try:
                current = int(raw) if raw is not None else 0
            except ValueError:
                current = 0
            return str(max(0, current + delta))

        try:
            return int(_update(self.store, TAB_COUNT_KEY, bump))
        except StoreError as exc:
            logger.warning("tab_count_update_failed", error=exc.message)
            return self.tab_count()

    def register_tab(self) -> int:
        return self._adjust_tabs(1)

    def unregister_tab(self) -> int:
        return self._adjust_tabs(-1)

    def navigation_history(self) -> List[Dict[str, Any]]:
        raw = read_json(self.store, NAV_HISTORY_KEY)
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, dict) and "timestamp" in item]

    def record_navigation(self, tab: str) -> None:
        stamp = format_timestamp(self.clock())

        def append(raw: Optional[str]) -> str:
            try:
                history = json.loads(raw) if raw else []
            except json.JSONDecodeError:
                history = []
            if not isinstance(history, list):
                history = []
            history.append({"tab": tab, "timestamp": stamp})
            return json.dumps(history[-self.history_size:])

        try:
            _update(self.store, NAV_HISTORY_KEY, append)
        except StoreError as exc:
            logger.warning("navigation_record_failed", tab=tab, error=exc.message)

    def _rapid_changes(self) -> int:
        recent = self.navigation_history()[-self.window:]
        stamps = [parse_timestamp(item.get("timestamp")) for item in recent]
        rapid = 0
        for previous, current in zip(stamps, stamps[1:]):
            if previous is None or current is None:
                continue
            if current - previous < self.rapid_interval:
                rapid += 1
        return rapid

    def check(self, actor_id: str = "anonymous") -> bool:
        reasons: Dict[str, Any] = {}
        tabs = self.tab_count()
        if tabs > self.max_tabs:
            reasons["tab_count"] = tabs
        rapid = self._rapid_changes()
        if rapid > self.rapid_limit:
            reasons["rapid_navigations"] = rapid
        if not reasons:
            return False
        logger.info("suspicious_activity_detected", actor_id=actor_id, **reasons)
        if self.audit is not None:
            self.audit.log("SUSPICIOUS_ACTIVITY", "session", actor_id, reasons)
        return True


__all__ = [
    "ActivityTracker",
    "DEFAULT_CLOSED_GRACE",
    "SuspiciousActivityMonitor",
]
