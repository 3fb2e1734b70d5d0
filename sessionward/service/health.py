"""Idle-timeout classification.

Everything here is a pure function of the last activity time, the idle
timeout and the current time. Callers decide what to do with the result
(show a warning, force logout) and when to check again.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sessionward.storage.common import Clock, utc_now

CRITICAL_MINUTES = 5
WARNING_MINUTES = 15
DEFAULT_WARNING_LEAD_TIME = timedelta(minutes=5)


class SessionHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def time_until_timeout(
    last_activity_at: datetime, session_timeout: timedelta, now: datetime
) -> timedelta:
    """Signed time left before the idle timeout; negative once it has passed."""
    return session_timeout - (now - last_activity_at)


def minutes_remaining(
    last_activity_at: datetime, session_timeout: timedelta, now: datetime
) -> int:
    remaining = time_until_timeout(last_activity_at, session_timeout, now)
    return math.floor(remaining.total_seconds() / 60)


def classify_minutes(minutes: float) -> SessionHealth:
    # Boundaries fall into the stricter bucket
    if minutes <= CRITICAL_MINUTES:
        return SessionHealth.CRITICAL
    if minutes <= WARNING_MINUTES:
        return SessionHealth.WARNING
    return SessionHealth.HEALTHY


def session_health(
    last_activity_at: datetime, session_timeout: timedelta, now: datetime
) -> SessionHealth:
    return classify_minutes(minutes_remaining(last_activity_at, session_timeout, now))


def time_until_warning(
    last_activity_at: datetime,
    session_timeout: timedelta,
    now: datetime,
    warning_lead_time: timedelta = DEFAULT_WARNING_LEAD_TIME,
) -> timedelta:
    """Delay before the warning should show; schedule one check at this offset."""
    remaining = time_until_timeout(last_activity_at, session_timeout, now)
    return max(timedelta(0), remaining - warning_lead_time)


def is_expiring_soon(
    last_activity_at: datetime,
    session_timeout: timedelta,
    now: datetime,
    warning_lead_time: timedelta = DEFAULT_WARNING_LEAD_TIME,
) -> bool:
    return time_until_warning(last_activity_at, session_timeout, now, warning_lead_time) <= timedelta(0)


def format_time_remaining(remaining: timedelta) -> str:
    """Render as ``M:SS``; negative durations render as ``0:00``."""
    total_ms = max(0, int(remaining.total_seconds() * 1000))
    minutes, rest_ms = divmod(total_ms, 60_000)
    return f"{minutes}:{rest_ms // 1000:02d}"


@dataclass(frozen=True)
class HealthReport:
    health: SessionHealth
    minutes_remaining: int
    time_until_timeout: timedelta
    time_until_warning: timedelta
    expiring_soon: bool
    should_logout: bool

    def to_dict(self) -> dict:
        return {
            "health": self.health.value,
            "minutes_remaining": self.minutes_remaining,
            "seconds_until_timeout": max(0, int(self.time_until_timeout.total_seconds())),
            "seconds_until_warning": int(self.time_until_warning.total_seconds()),
            "time_remaining": format_time_remaining(self.time_until_timeout),
            "expiring_soon": self.expiring_soon,
            "should_logout": self.should_logout,
        }


class SessionHealthMonitor:
    """Binds a timeout and clock to the pure classification functions."""

    def __init__(
        self,
        session_timeout: timedelta,
        *,
        warning_lead_time: timedelta = DEFAULT_WARNING_LEAD_TIME,
        clock: Clock = utc_now,
    ) -> None:
        self.session_timeout = session_timeout
        self.warning_lead_time = warning_lead_time
        self.clock = clock

    def check(self, last_activity_at: datetime) -> HealthReport:
        now = self.clock()
        remaining = time_until_timeout(last_activity_at, self.session_timeout, now)
        minutes = minutes_remaining(last_activity_at, self.session_timeout, now)
        until_warning = time_until_warning(
            last_activity_at, self.session_timeout, now, self.warning_lead_time
        )
        return HealthReport(
            health=classify_minutes(minutes),
            minutes_remaining=minutes,
            time_until_timeout=remaining,
            time_until_warning=until_warning,
            expiring_soon=until_warning <= timedelta(0),
            should_logout=remaining <= timedelta(0),
        )


__all__ = [
    "HealthReport",
    "SessionHealth",
    "SessionHealthMonitor",
    "classify_minutes",
    "format_time_remaining",
    "is_expiring_soon",
    "minutes_remaining",
    "session_health",
    "time_until_timeout",
    "time_until_warning",
]
