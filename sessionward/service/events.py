"""Best-effort publish/subscribe across contexts sharing one store.

Publishing writes the event under ``realtime:<type>``, calls local
subscribers straight away and removes the key again after a short delay.
Sibling contexts learn about the event only through the store's change
notification during that window; a context that is not listening then misses
the event for good. Delivery is at most once per subscriber per publish.
"""

from __future__ import annotations

import itertools
import json
import threading
from typing import Any, Callable, Dict, Optional, Protocol

from sessionward.logging import get_logger
from sessionward.storage.common import Clock, utc_now
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import KeyValueStore, StoreChange
from sessionward.storage.models import BusEvent

logger = get_logger(__name__)

EVENT_KEY_PREFIX = "realtime:"
DEFAULT_CLEANUP_DELAY = 1.0

LEAVE_UPDATE = "leave_update"
ALLOCATION_UPDATE = "allocation_update"
USER_ACTION = "user_action"
DATA_REFRESH = "data_refresh"

EventCallback = Callable[[BusEvent], None]


class Scheduler(Protocol):
    def call_later(self, delay: float, fn: Callable[[], None]) -> Callable[[], None]:
        """Run ``fn`` after ``delay`` seconds; return a cancel callable."""
        ...


class TimerScheduler:
    def call_later(self, delay: float, fn: Callable[[], None]) -> Callable[[], None]:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer.cancel


def event_key(event_type: str) -> str:
    return f"{EVENT_KEY_PREFIX}{event_type}"


class CrossTabEventBus:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        cleanup_delay: float = DEFAULT_CLEANUP_DELAY,
        scheduler: Optional[Scheduler] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.cleanup_delay = cleanup_delay
        self.scheduler = scheduler or TimerScheduler()
        self.clock = clock
        self._listeners: Dict[str, list[EventCallback]] = {}
        self._lock = threading.Lock()
        self._store_unsubscribe: Optional[Callable[[], None]] = None
        self._pending: Dict[int, tuple[str, str]] = {}
        self._cancels: Dict[int, Callable[[], None]] = {}
        self._tokens = itertools.count()
        self._closed = False

    @property
    def is_listening(self) -> bool:
        return self._store_unsubscribe is not None

    def init(self) -> None:
        with self._lock:
            self._closed = False

    def subscribe(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback`` for ``event_type``; returns an idempotent unsubscribe."""
        with self._lock:
            self._listeners.setdefault(event_type, []).append(callback)
            if self._store_unsubscribe is None:
                self._store_unsubscribe = self.store.subscribe(self._handle_change)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._listeners.get(event_type)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._listeners[event_type]

        return unsubscribe

    def subscriber_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._listeners.get(event_type, ()))

    def publish(
        self, event_type: str, payload: Any = None, origin_actor_id: Optional[str] = None
    ) -> BusEvent:
        if not event_type:
            raise ValueError("event_type is required")
        event = BusEvent(
            type=event_type,
            payload=payload,
            timestamp=self.clock(),
            origin_actor_id=origin_actor_id,
        )
        key = event_key(event_type)
        encoded = json.dumps(event.to_dict(), default=str)
        written = False
        try:
            self.store.set(key, encoded)
            written = True
        except StoreError as exc:
            logger.warning("event_publish_store_failed", event_type=event_type, error=exc.message)

        self._notify(event)

        if written:
            self._schedule_cleanup(key, encoded)
        return event

    def _schedule_cleanup(self, key: str, encoded: str) -> None:
        with self._lock:
            if self._closed:
                token = None
            else:
                token = next(self._tokens)
                self._pending[token] = (key, encoded)
        if token is None:
            self._remove(key, encoded)
            return

        def run() -> None:
            with self._lock:
                entry = self._pending.pop(token, None)
                self._cancels.pop(token, None)
            if entry is not None:
                self._remove(*entry)

        cancel = self.scheduler.call_later(self.cleanup_delay, run)
        with self._lock:
            if token in self._pending:
                self._cancels[token] = cancel

    def _remove(self, key: str, encoded: str) -> None:
        # Leave the key alone if a later publish of the same type replaced it
        try:
            self.store.compare_and_set(key, encoded, None)
        except StoreError as exc:
            logger.warning("event_cleanup_failed", key=key, error=exc.message)

    def _handle_change(self, change: StoreChange) -> None:
        if not change.key.startswith(EVENT_KEY_PREFIX) or change.new_value is None:
            return
        if change.origin == self.store.context_id:
            # Local subscribers were already called synchronously by publish()
            return
        event_type = change.key[len(EVENT_KEY_PREFIX):]
        try:
            event = BusEvent.from_dict(json.loads(change.new_value))
        except (json.JSONDecodeError, ValueError, TypeError) as exc:
            logger.warning("event_payload_malformed", key=change.key, error=str(exc))
            return
        if event.type != event_type:
            logger.warning("event_type_mismatch", key=change.key, event_type=event.type)
            return
        self._notify(event)

    def _notify(self, event: BusEvent) -> None:
        with self._lock:
            callbacks = list(self._listeners.get(event.type, ()))
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:
                logger.error(
                    "event_callback_failed",
                    event_type=event.type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def close(self) -> None:
        """Cancel pending cleanups (removing their keys now) and stop listening."""
        with self._lock:
            self._closed = True
            pending = list(self._pending.items())
            cancels = dict(self._cancels)
            self._pending.clear()
            self._cancels.clear()
            store_unsubscribe = self._store_unsubscribe
            self._store_unsubscribe = None
            self._listeners.clear()
        for token, (key, encoded) in pending:
            cancel = cancels.get(token)
            if cancel is not None:
                cancel()
            self._remove(key, encoded)
        if store_unsubscribe is not None:
            store_unsubscribe()

    # Convenience events

    def notify_leave_update(
        self, leave_id: str, status: str, origin_actor_id: Optional[str] = None
    ) -> BusEvent:
        return self.publish(LEAVE_UPDATE, {"leaveId": leave_id, "status": status}, origin_actor_id)

    def notify_allocation_update(
        self, allocation_id: str, hours: float, origin_actor_id: Optional[str] = None
    ) -> BusEvent:
        return self.publish(
            ALLOCATION_UPDATE, {"allocationId": allocation_id, "hours": hours}, origin_actor_id
        )

    def notify_user_action(
        self,
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]] = None,
        origin_actor_id: Optional[str] = None,
    ) -> BusEvent:
        return self.publish(
            USER_ACTION,
            {"action": action, "resource": resource, "details": details or {}},
            origin_actor_id,
        )

    def notify_data_refresh(
        self, resource: str, origin_actor_id: Optional[str] = None
    ) -> BusEvent:
        return self.publish(DATA_REFRESH, {"resource": resource}, origin_actor_id)


__all__ = [
    "ALLOCATION_UPDATE",
    "CrossTabEventBus",
    "DATA_REFRESH",
    "EVENT_KEY_PREFIX",
    "LEAVE_UPDATE",
    "Scheduler",
    "TimerScheduler",
    "USER_ACTION",
    "event_key",
]
