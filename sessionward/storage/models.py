from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sessionward.storage.common import format_timestamp, generate_uuid, parse_timestamp


@dataclass
class LoginAttemptRecord:
    account: str
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "last_attempt_at": (
                format_timestamp(self.last_attempt_at) if self.last_attempt_at else None
            ),
        }

    @classmethod
    def from_dict(cls, account: str, data: Dict[str, Any]) -> "LoginAttemptRecord":
        attempts = data.get("attempts", 0)
        if isinstance(attempts, bool) or not isinstance(attempts, int) or attempts < 0:
            raise ValueError("attempts must be a non-negative integer")
        return cls(
            account=account,
            attempts=attempts,
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
        )


@dataclass
class SessionRecord:
    session_id: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    claims: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "fingerprint": self.fingerprint,
            "created_at": format_timestamp(self.created_at),
            "expires_at": format_timestamp(self.expires_at),
            "claims": self.claims,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        created_at = parse_timestamp(data.get("created_at"))
        expires_at = parse_timestamp(data.get("expires_at"))
        if not data.get("session_id") or not isinstance(data.get("fingerprint"), str):
            raise ValueError("session record missing identity fields")
        if created_at is None or expires_at is None:
            raise ValueError("session record missing timestamps")
        claims = data.get("claims") or {}
        if not isinstance(claims, dict):
            raise ValueError("session claims must be an object")
        return cls(
            session_id=str(data["session_id"]),
            fingerprint=data["fingerprint"],
            created_at=created_at,
            expires_at=expires_at,
            claims=claims,
        )


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    resource: str
    actor_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    origin: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "resource": self.resource,
            "actor_id": self.actor_id,
            "timestamp": format_timestamp(self.timestamp) if self.timestamp else None,
            "details": self.details,
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditLogEntry":
        for required in ("action", "resource", "actor_id"):
            if not isinstance(data.get(required), str):
                raise ValueError(f"audit entry missing {required}")
        details = data.get("details") or {}
        origin = data.get("origin") or {}
        if not isinstance(details, dict) or not isinstance(origin, dict):
            raise ValueError("audit entry details/origin must be objects")
        return cls(
            id=data.get("id") or generate_uuid(),
            action=data["action"],
            resource=data["resource"],
            actor_id=data["actor_id"],
            timestamp=parse_timestamp(data.get("timestamp")),
            details=details,
            origin=origin,
        )


@dataclass(frozen=True)
class BusEvent:
    type: str
    payload: Any
    timestamp: datetime
    origin_actor_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": format_timestamp(self.timestamp),
            "origin_actor_id": self.origin_actor_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BusEvent":
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            raise ValueError("event missing type")
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            raise ValueError("event missing timestamp")
        origin = data.get("origin_actor_id")
        return cls(
            type=data["type"],
            payload=data.get("payload"),
            timestamp=timestamp,
            origin_actor_id=str(origin) if origin is not None else None,
        )
