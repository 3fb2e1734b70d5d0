from datetime import timedelta

import pytest

from sessionward.service.health import (
    SessionHealth,
    SessionHealthMonitor,
    format_time_remaining,
    is_expiring_soon,
    minutes_remaining,
    session_health,
    time_until_timeout,
    time_until_warning,
)

TIMEOUT = timedelta(minutes=30)


@pytest.mark.parametrize(
    "remaining_minutes, expected",
    [
        (4, SessionHealth.CRITICAL),
        (5, SessionHealth.CRITICAL),
        (10, SessionHealth.WARNING),
        (15, SessionHealth.WARNING),
        (16, SessionHealth.HEALTHY),
        (30, SessionHealth.HEALTHY),
        (-2, SessionHealth.CRITICAL),
    ],
)
def test_classification(clock, remaining_minutes, expected):
    """Boundaries fall into the stricter bucket."""
    last_activity = clock.now - (TIMEOUT - timedelta(minutes=remaining_minutes))
    assert session_health(last_activity, TIMEOUT, clock.now) is expected


def test_minutes_are_floored(clock):
    """5 min 59 s left counts as 5 minutes."""
    last_activity = clock.now - (TIMEOUT - timedelta(minutes=5, seconds=59))
    assert minutes_remaining(last_activity, TIMEOUT, clock.now) == 5
    assert session_health(last_activity, TIMEOUT, clock.now) is SessionHealth.CRITICAL


def test_time_until_timeout_goes_negative(clock):
    last_activity = clock.now - timedelta(minutes=31)
    assert time_until_timeout(last_activity, TIMEOUT, clock.now) == timedelta(minutes=-1)


class TestWarning:
    def test_time_until_warning(self, clock):
        """Warning fires five minutes before the timeout."""
        last_activity = clock.now - timedelta(minutes=10)
        assert time_until_warning(last_activity, TIMEOUT, clock.now) == timedelta(minutes=15)
        assert is_expiring_soon(last_activity, TIMEOUT, clock.now) is False

    def test_warning_clamps_at_zero(self, clock):
        last_activity = clock.now - timedelta(minutes=27)
        assert time_until_warning(last_activity, TIMEOUT, clock.now) == timedelta(0)
        assert is_expiring_soon(last_activity, TIMEOUT, clock.now) is True

    def test_custom_lead_time(self, clock):
        last_activity = clock.now
        lead = timedelta(minutes=10)
        assert time_until_warning(last_activity, TIMEOUT, clock.now, lead) == timedelta(minutes=20)


class TestFormat:
    @pytest.mark.parametrize(
        "delta, text",
        [
            (timedelta(minutes=4, seconds=5), "4:05"),
            (timedelta(seconds=59), "0:59"),
            (timedelta(minutes=30), "30:00"),
            (timedelta(seconds=-10), "0:00"),
        ],
    )
    def test_format_time_remaining(self, delta, text):
        assert format_time_remaining(delta) == text


class TestMonitor:
    def test_check_reports_logout(self, clock):
        """Past the timeout the report asks for logout."""
        monitor = SessionHealthMonitor(TIMEOUT, clock=clock)
        last_activity = clock.now
        clock.advance(minutes=31)
        report = monitor.check(last_activity)
        assert report.should_logout is True
        assert report.health is SessionHealth.CRITICAL
        assert report.to_dict()["time_remaining"] == "0:00"
        assert report.to_dict()["seconds_until_timeout"] == 0

    def test_check_healthy(self, clock):
        monitor = SessionHealthMonitor(TIMEOUT, clock=clock)
        report = monitor.check(clock.now)
        assert report.health is SessionHealth.HEALTHY
        assert report.minutes_remaining == 30
        assert report.expiring_soon is False
        assert report.to_dict()["seconds_until_warning"] == 25 * 60
