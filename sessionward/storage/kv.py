"""Shared key-value store contract and the in-process implementation.

Every context (tab, worker, process) talks to the shared store through its own
``KeyValueStore`` handle. Writes made through one handle are announced to the
change listeners of the *other* handles attached to the same backend, the way
a browser fires storage events in sibling tabs only. ``notify_self`` widens
that to the writing handle as well.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

from sessionward.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoreChange:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]
    origin: str  # context_id of the writing handle


ChangeListener = Callable[[StoreChange], None]


class KeyValueStore(Protocol):
    context_id: str

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def compare_and_set(
        self, key: str, expected: Optional[str], value: Optional[str]
    ) -> bool: ...

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]: ...

    def close(self) -> None: ...


class SharedMemoryBackend:
    """Process-local backing dict shared by several ``MemoryKeyValueStore`` handles."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._handles: List["MemoryKeyValueStore"] = []

    def attach(
        self, context_id: Optional[str] = None, *, notify_self: bool = False
    ) -> "MemoryKeyValueStore":
        """Open a new context handle on this backend."""
        return MemoryKeyValueStore(self, context_id=context_id, notify_self=notify_self)

    def _register(self, handle: "MemoryKeyValueStore") -> None:
        with self._lock:
            self._handles.append(handle)

    def _unregister(self, handle: "MemoryKeyValueStore") -> None:
        with self._lock:
            if handle in self._handles:
                self._handles.remove(handle)

    def _write(self, key: str, value: Optional[str], origin: "MemoryKeyValueStore") -> None:
        with self._lock:
            old = self._data.get(key)
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            handles = list(self._handles)
        if old == value:
            return
        self._broadcast(StoreChange(key, old, value, origin.context_id), origin, handles)

    def _compare_and_write(
        self,
        key: str,
        expected: Optional[str],
        value: Optional[str],
        origin: "MemoryKeyValueStore",
    ) -> bool:
        with self._lock:
            old = self._data.get(key)
            if old != expected:
                return False
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            handles = list(self._handles)
        if old != value:
            self._broadcast(StoreChange(key, old, value, origin.context_id), origin, handles)
        return True

    def _read(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    @staticmethod
    def _broadcast(
        change: StoreChange,
        origin: "MemoryKeyValueStore",
        handles: List["MemoryKeyValueStore"],
    ) -> None:
        # Dispatch outside the lock so listeners may write back into the store
        for handle in handles:
            if handle is origin and not handle.notify_self:
                continue
            handle._dispatch(change)


class MemoryKeyValueStore:
    """One context's view of a ``SharedMemoryBackend``."""

    def __init__(
        self,
        backend: Optional[SharedMemoryBackend] = None,
        *,
        context_id: Optional[str] = None,
        notify_self: bool = False,
    ) -> None:
        self.backend = backend or SharedMemoryBackend()
        self.context_id = context_id or str(uuid.uuid4())
        self.notify_self = notify_self
        self._listeners: List[ChangeListener] = []
        self._listener_lock = threading.Lock()
        self._closed = False
        self.backend._register(self)

    def get(self, key: str) -> Optional[str]:
        return self.backend._read(key)

    def set(self, key: str, value: str) -> None:
        self.backend._write(key, value, self)

    def remove(self, key: str) -> None:
        self.backend._write(key, None, self)

    def compare_and_set(
        self, key: str, expected: Optional[str], value: Optional[str]
    ) -> bool:
        """Write ``value`` only if the key still holds ``expected``; ``None`` removes."""
        return self.backend._compare_and_write(key, expected, value, self)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        with self._listener_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _dispatch(self, change: StoreChange) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(change)
            except Exception as exc:
                logger.error(
                    "store_listener_failed",
                    key=change.key,
                    context_id=self.context_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._listener_lock:
            self._listeners.clear()
        self.backend._unregister(self)


__all__ = [
    "ChangeListener",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SharedMemoryBackend",
    "StoreChange",
]
