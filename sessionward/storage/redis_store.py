from __future__ import annotations

import json
import threading
import uuid
from typing import Any, Callable, List, Optional

from redis import Redis
from redis.exceptions import RedisError, WatchError

from sessionward.logging import get_logger
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import ChangeListener, StoreChange

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Shared store backed by Redis, with change notifications over pub/sub.

    Each handle stamps its writes with its ``context_id``; the pub/sub listener
    drops notifications carrying its own id unless ``notify_self`` is set.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        prefix: str = "sessionward:",
        context_id: Optional[str] = None,
        notify_self: bool = False,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.prefix = prefix
        self.context_id = context_id or str(uuid.uuid4())
        self.notify_self = notify_self
        self._channel = f"{prefix}__changes__"
        self._listeners: List[ChangeListener] = []
        self._lock = threading.Lock()
        self._pubsub = None
        self._pubsub_thread = None

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        self.client.ping()

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except RedisError as exc:
            raise StoreError("store read failed", {"key": key, "error": str(exc)}) from exc

    def set(self, key: str, value: str) -> None:
        try:
            old = self.client.set(self._key(key), value, get=True)
        except RedisError as exc:
            raise StoreError("store write failed", {"key": key, "error": str(exc)}) from exc
        self._announce(key, old, value)

    def remove(self, key: str) -> None:
        try:
            old = self.client.getdel(self._key(key))
        except RedisError as exc:
            raise StoreError("store delete failed", {"key": key, "error": str(exc)}) from exc
        if old is not None:
            self._announce(key, old, None)

    def compare_and_set(
        self, key: str, expected: Optional[str], value: Optional[str]
    ) -> bool:
        """Optimistic write guarded by WATCH; returns False when the key moved underneath."""
        full_key = self._key(key)
        try:
            with self.client.pipeline() as pipe:
                pipe.watch(full_key)
                current = pipe.get(full_key)
                if current != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                if value is None:
                    pipe.delete(full_key)
                else:
                    pipe.set(full_key, value)
                pipe.execute()
        except WatchError:
            return False
        except RedisError as exc:
            raise StoreError("store write failed", {"key": key, "error": str(exc)}) from exc
        self._announce(key, current, value)
        return True

    def _announce(self, key: str, old: Optional[str], new: Optional[str]) -> None:
        if old == new:
            return
        message = json.dumps(
            {"key": key, "old": old, "new": new, "origin": self.context_id}
        )
        try:
            self.client.publish(self._channel, message)
        except RedisError as exc:
            # The write itself landed; only sibling notification is lost
            logger.warning("store_change_publish_failed", key=key, error=str(exc))

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)
            if self._pubsub_thread is None:
                self._start_listening()

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _start_listening(self) -> None:
        try:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self._channel: self._handle_message})
            self._pubsub_thread = self._pubsub.run_in_thread(sleep_time=0.1, daemon=True)
        except RedisError as exc:
            self._pubsub = None
            self._pubsub_thread = None
            logger.warning("store_change_listen_failed", channel=self._channel, error=str(exc))

    def _handle_message(self, message: dict[str, Any]) -> None:
        try:
            parsed = json.loads(message.get("data") or "")
            change = StoreChange(
                key=parsed["key"],
                old_value=parsed.get("old"),
                new_value=parsed.get("new"),
                origin=parsed["origin"],
            )
        except (json.JSONDecodeError, TypeError, KeyError) as exc:
            logger.warning("store_change_malformed", channel=self._channel, error=str(exc))
            return
        if change.origin == self.context_id and not self.notify_self:
            return
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as exc:
                logger.error(
                    "store_listener_failed",
                    key=change.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def close(self) -> None:
        """Stop the pub/sub thread and release the connection pool."""
        with self._lock:
            self._listeners.clear()
            thread, pubsub = self._pubsub_thread, self._pubsub
            self._pubsub_thread = None
            self._pubsub = None
        if thread is not None:
            thread.stop()
        if pubsub is not None:
            pubsub.close()
        self.client.close()


__all__ = ["RedisKeyValueStore"]
