from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sessionward.logging import get_logger
from sessionward.service.activity import ActivityTracker
from sessionward.service.audit import AuditLogStore
from sessionward.service.login_guard import LoginAttemptGuard
from sessionward.service.session import SessionValidator
from sessionward.storage.models import SessionRecord

logger = get_logger(__name__)

# External credential check: returns session claims on success, None on bad credentials
Authenticate = Callable[[], Optional[Dict[str, Any]]]


class LoginStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    LOCKED = "locked"


@dataclass(frozen=True)
class LoginOutcome:
    status: LoginStatus
    account: str
    attempts: int = 0
    remaining_lockout: timedelta = timedelta(0)
    session: Optional[SessionRecord] = None

    @property
    def ok(self) -> bool:
        return self.status is LoginStatus.SUCCESS


class LoginGate:
    """Guards an external authentication call with lockout, session binding and audit."""

    def __init__(
        self,
        guard: LoginAttemptGuard,
        sessions: SessionValidator,
        *,
        audit: Optional[AuditLogStore] = None,
        activity: Optional[ActivityTracker] = None,
    ) -> None:
        self.guard = guard
        self.sessions = sessions
        self.audit = audit
        self.activity = activity

    def attempt(self, account: str, authenticate: Authenticate) -> LoginOutcome:
        if self.guard.is_locked(account):
            record = self.guard.get_record(account)
            remaining = self.guard.remaining_lockout(account)
            logger.info("login_rejected_locked", account=account)
            return LoginOutcome(
                status=LoginStatus.LOCKED,
                account=account,
                attempts=record.attempts if record else 0,
                remaining_lockout=remaining,
            )

        claims = authenticate()
        if claims is None:
            status = self.guard.record_failure(account)
            return LoginOutcome(
                status=LoginStatus.LOCKED if status.locked else LoginStatus.FAILED,
                account=account,
                attempts=status.attempts,
                remaining_lockout=self.guard.remaining_lockout(account),
            )

        self.guard.reset(account)
        session_claims = {"user_id": account, **claims}
        session = self.sessions.create(session_claims)
        if self.activity is not None:
            self.activity.record_activity()
        if self.audit is not None:
            self.audit.log("LOGIN_SUCCESS", "auth", str(session_claims["user_id"]), {"session_id": session.session_id})
        return LoginOutcome(status=LoginStatus.SUCCESS, account=account, session=session)

    def logout(self, actor_id: str = "anonymous") -> None:
        self.sessions.destroy()
        if self.activity is not None:
            self.activity.clear()
        if self.audit is not None:
            self.audit.log("LOGOUT", "auth", actor_id, {})


__all__ = ["Authenticate", "LoginGate", "LoginOutcome", "LoginStatus"]
