"""Helpers shared by every component that reads or writes the shared store.

Reads degrade instead of raising: an unreachable store or an unparsable
value is reported as absent, and the failure is logged.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sessionward.logging import get_logger
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import KeyValueStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""
    return datetime.now(timezone.utc)


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or epoch milliseconds) into an aware UTC datetime.

    Values that cannot name a real instant (NaN, infinity, out of range) parse as None.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        try:
            return datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(raw, str):
        try:
            value = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def safe_get(store: KeyValueStore, key: str) -> Optional[str]:
    try:
        return store.get(key)
    except StoreError as exc:
        logger.warning("store_read_degraded", key=key, error=exc.message, detail=exc.detail)
        return None


def safe_set(store: KeyValueStore, key: str, value: str) -> bool:
    try:
        store.set(key, value)
    except StoreError as exc:
        logger.warning("store_write_failed", key=key, error=exc.message, detail=exc.detail)
        return False
    return True


def safe_remove(store: KeyValueStore, key: str) -> bool:
    try:
        store.remove(key)
    except StoreError as exc:
        logger.warning("store_remove_failed", key=key, error=exc.message, detail=exc.detail)
        return False
    return True


def read_json(store: KeyValueStore, key: str) -> Optional[Any]:
    """Read and decode a JSON value; missing, unreachable or corrupt values read as None."""
    raw = safe_get(store, key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        logger.warning("store_value_corrupt", key=key, error=str(exc))
        return None


def write_json(store: KeyValueStore, key: str, value: Any) -> bool:
    return safe_set(store, key, json.dumps(value, separators=(",", ":"), default=str))


__all__ = [
    "Clock",
    "format_timestamp",
    "generate_uuid",
    "parse_timestamp",
    "read_json",
    "safe_get",
    "safe_remove",
    "safe_set",
    "utc_now",
    "write_json",
]
