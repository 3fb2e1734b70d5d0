"""Fingerprint-bound session records.

The record is kept in the shared store as plaintext JSON next to an
HMAC-SHA256 tag computed with a locally held key. The tag detects tampering
and corruption; it does not hide the contents, so claims should not carry
secrets.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import timedelta
from typing import Any, Dict, Optional

from sessionward.logging import get_logger
from sessionward.service.audit import AuditLogStore
from sessionward.service.errors import SessionExpiredError
from sessionward.service.fingerprint import DeviceFingerprint
from sessionward.storage.common import (
    Clock,
    generate_uuid,
    read_json,
    safe_remove,
    utc_now,
    write_json,
)
from sessionward.storage.kv import KeyValueStore
from sessionward.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_KEY = "session"
DEFAULT_SESSION_LIFETIME = timedelta(hours=8)
_CODEC_VERSION = 1


def _canonical(record: Dict[str, Any]) -> bytes:
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class SessionCodec:
    """Signs and verifies stored session payloads."""

    def __init__(self, signing_key: str) -> None:
        if not signing_key:
            raise ValueError("signing_key is required")
        self._key = signing_key.encode("utf-8")

    def sign(self, record: Dict[str, Any]) -> str:
        return hmac.new(self._key, _canonical(record), hashlib.sha256).hexdigest()

    def encode(self, record: SessionRecord) -> Dict[str, Any]:
        body = record.to_dict()
        return {"v": _CODEC_VERSION, "record": body, "sig": self.sign(body)}

    def decode(self, payload: Any) -> SessionRecord:
        if not isinstance(payload, dict) or payload.get("v") != _CODEC_VERSION:
            raise ValueError("unsupported session payload")
        body = payload.get("record")
        signature = payload.get("sig")
        if not isinstance(body, dict) or not isinstance(signature, str):
            raise ValueError("session payload incomplete")
        if not hmac.compare_digest(self.sign(body), signature):
            raise ValueError("session signature mismatch")
        return SessionRecord.from_dict(body)


class SessionValidator:
    def __init__(
        self,
        store: KeyValueStore,
        fingerprint: DeviceFingerprint,
        *,
        signing_key: str,
        lifetime: timedelta = DEFAULT_SESSION_LIFETIME,
        audit: Optional[AuditLogStore] = None,
        clock: Clock = utc_now,
        key: str = SESSION_KEY,
    ) -> None:
        self.store = store
        self.fingerprint = fingerprint
        self.codec = SessionCodec(signing_key)
        self.lifetime = lifetime
        self.audit = audit
        self.clock = clock
        self.key = key

    @staticmethod
    def _actor(record: Optional[SessionRecord]) -> str:
        if record is None:
            return "anonymous"
        claims = record.claims or {}
        return str(claims.get("user_id") or claims.get("sub") or "anonymous")

    def _audit(self, action: str, record: Optional[SessionRecord], **details: Any) -> None:
        if self.audit is None:
            return
        if record is not None:
            details.setdefault("session_id", record.session_id)
        self.audit.log(action, "session", self._actor(record), details)

    def create(self, claims: Optional[Dict[str, Any]] = None) -> SessionRecord:
        """Mint a session bound to this context's fingerprint."""
        now = self.clock()
        fingerprint = self.fingerprint.store()
        record = SessionRecord(
            session_id=generate_uuid(),
            fingerprint=fingerprint,
            created_at=now,
            expires_at=now + self.lifetime,
            claims=dict(claims or {}),
        )
        if not write_json(self.store, self.key, self.codec.encode(record)):
            logger.error("session_persist_failed", session_id=record.session_id)
        self._audit("SESSION_CREATED", record, expires_at=record.expires_at.isoformat())
        logger.info("session_created", session_id=record.session_id)
        return record

    def current(self) -> Optional[SessionRecord]:
        """Stored record without expiry/fingerprint checks; None when absent or unreadable."""
        payload = read_json(self.store, self.key)
        if payload is None:
            return None
        try:
            return self.codec.decode(payload)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("session_record_unreadable", error=str(exc))
            return None

    def validate(self) -> bool:
        """True only for an unexpired session created on this device; failures destroy it."""
        record = self.current()
        if record is None:
            return False

        fresh = self.fingerprint.generate()
        last_known = self.fingerprint.stored()
        if fresh != record.fingerprint or (last_known is not None and last_known != fresh):
            logger.warning("session_fingerprint_mismatch", session_id=record.session_id)
            self._audit("SESSION_FINGERPRINT_MISMATCH", record)
            self._remove()
            return False

        if record.is_expired(self.clock()):
            logger.info("session_expired", session_id=record.session_id)
            self._audit("SESSION_EXPIRED", record, expires_at=record.expires_at.isoformat())
            self._remove()
            return False
        return True

    def require(self) -> SessionRecord:
        if not self.validate():
            raise SessionExpiredError("session expired or invalid")
        record = self.current()
        if record is None:
            raise SessionExpiredError("session expired or invalid")
        return record

    def destroy(self) -> None:
        """Remove the session and the stored fingerprint; safe to call repeatedly."""
        record = self.current()
        self._remove()
        if record is not None:
            self._audit("SESSION_DESTROYED", record)
            logger.info("session_destroyed", session_id=record.session_id)

    def _remove(self) -> None:
        safe_remove(self.store, self.key)
        self.fingerprint.clear()


__all__ = [
    "DEFAULT_SESSION_LIFETIME",
    "SESSION_KEY",
    "SessionCodec",
    "SessionValidator",
]
