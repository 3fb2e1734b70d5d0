"""Failed-login tracking and temporary lockout.

States per account:

- Clear: no record, or ``attempts == 0``
- Tracking: ``0 < attempts < max_attempts``
- Locked: ``attempts >= max_attempts`` and the last failure is younger than
  ``lockout_duration``

Lockout ends by time alone. The counter is kept until ``reset``, so one more
failure after the lockout window re-locks immediately.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sessionward.logging import get_logger
from sessionward.service.audit import AuditLogStore
from sessionward.storage.common import Clock, read_json, safe_remove, utc_now
from sessionward.storage.errors import StoreError
from sessionward.storage.kv import KeyValueStore
from sessionward.storage.models import LoginAttemptRecord

logger = get_logger(__name__)

LOGIN_ATTEMPTS_PREFIX = "login_attempts:"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCKOUT_DURATION = timedelta(minutes=15)

_UPDATE_CAS_ATTEMPTS = 3


@dataclass(frozen=True)
class AttemptStatus:
    attempts: int
    locked: bool


class LoginAttemptGuard:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        audit: Optional[AuditLogStore] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lockout_duration: timedelta = DEFAULT_LOCKOUT_DURATION,
        clock: Clock = utc_now,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.audit = audit
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration
        self.clock = clock

    @staticmethod
    def _key(account: str) -> str:
        return f"{LOGIN_ATTEMPTS_PREFIX}{account.strip().lower()}"

    def get_record(self, account: str) -> Optional[LoginAttemptRecord]:
        raw = read_json(self.store, self._key(account))
        if raw is None:
            return None
        try:
            return LoginAttemptRecord.from_dict(account, raw)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("login_attempt_record_corrupt", account=account, error=str(exc))
            return None

    def _locked(self, record: Optional[LoginAttemptRecord]) -> bool:
        if record is None or record.last_attempt_at is None:
            return False
        if record.attempts < self.max_attempts:
            return False
        return self.clock() - record.last_attempt_at < self.lockout_duration

    def is_locked(self, account: str) -> bool:
        return self._locked(self.get_record(account))

    def remaining_lockout(self, account: str) -> timedelta:
        """Time left before the account unlocks; zero when it is not locked."""
        record = self.get_record(account)
        if not self._locked(record):
            return timedelta(0)
        remaining = self.lockout_duration - (self.clock() - record.last_attempt_at)
        return max(timedelta(0), remaining)

    def record_failure(self, account: str) -> AttemptStatus:
        """Count a failed credential check unless the account is already locked."""
        key = self._key(account)
        status: Optional[AttemptStatus] = None
        updated: Optional[str] = None
        try:
            for _ in range(_UPDATE_CAS_ATTEMPTS):
                raw = self.store.get(key)
                status, updated = self._next_state(account, raw)
                if updated is None or self.store.compare_and_set(key, raw, updated):
                    break
            else:
                # Lost every race; last computed state wins
                self.store.set(key, updated)
        except StoreError as exc:
            logger.warning(
                "login_attempt_persist_failed", account=account, error=exc.message, detail=exc.detail
            )
            if status is None:
                status = AttemptStatus(attempts=0, locked=False)

        if self.audit is not None:
            if status.locked and updated is None:
                self.audit.log(
                    "LOGIN_LOCKOUT",
                    "auth",
                    account,
                    {
                        "attempts": status.attempts,
                        "remaining_seconds": int(self.remaining_lockout(account).total_seconds()),
                    },
                )
            else:
                self.audit.log(
                    "LOGIN_FAILURE",
                    "auth",
                    account,
                    {"attempts": status.attempts, "locked": status.locked},
                )
        if status.locked:
            logger.warning("login_account_locked", account=account, attempts=status.attempts)
        return status

    def _next_state(
        self, account: str, raw: Optional[str]
    ) -> tuple[AttemptStatus, Optional[str]]:
        record = self._parse(account, raw)
        if self._locked(record):
            return AttemptStatus(attempts=record.attempts, locked=True), None
        attempts = (record.attempts if record else 0) + 1
        updated = LoginAttemptRecord(account=account, attempts=attempts, last_attempt_at=self.clock())
        status = AttemptStatus(attempts=attempts, locked=attempts >= self.max_attempts)
        return status, json.dumps(updated.to_dict())

    @staticmethod
    def _parse(account: str, raw: Optional[str]) -> Optional[LoginAttemptRecord]:
        if raw is None:
            return None
        try:
            return LoginAttemptRecord.from_dict(account, json.loads(raw))
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
            return None

    def reset(self, account: str) -> None:
        """Clear the counter; called after a successful login or by an administrator."""
        had_record = self.get_record(account) is not None
        safe_remove(self.store, self._key(account))
        if self.audit is not None:
            self.audit.log("LOGIN_LOCKOUT_CLEARED", "auth", account, {"had_record": had_record})


__all__ = [
    "AttemptStatus",
    "DEFAULT_LOCKOUT_DURATION",
    "DEFAULT_MAX_ATTEMPTS",
    "LoginAttemptGuard",
]
