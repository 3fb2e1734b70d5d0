from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the shared key-value store is unreachable or rejects an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StoreError"]
