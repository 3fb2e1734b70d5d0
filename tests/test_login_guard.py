from datetime import timedelta

import pytest

from sessionward.service.audit import AuditLogStore
from sessionward.service.login_guard import LOGIN_ATTEMPTS_PREFIX, LoginAttemptGuard
from sessionward.storage.errors import StoreError


class _BrokenStore:
    context_id = "broken"

    def get(self, key):
        raise StoreError("store read failed", {"key": key})

    def set(self, key, value):
        raise StoreError("store write failed", {"key": key})

    def remove(self, key):
        raise StoreError("store delete failed", {"key": key})

    def compare_and_set(self, key, expected, value):
        raise StoreError("store write failed", {"key": key})

    def subscribe(self, listener):
        return lambda: None

    def close(self):
        pass


@pytest.fixture
def audit(store, clock):
    return AuditLogStore(store, clock=clock, origin={"host": "test"})


@pytest.fixture
def guard(store, clock, audit):
    return LoginAttemptGuard(store, audit=audit, clock=clock)


class TestLockout:
    def test_locks_after_max_attempts(self, guard):
        """Five failures inside the window lock the account."""
        for expected in range(1, 5):
            status = guard.record_failure("alice")
            assert status.attempts == expected
            assert status.locked is False
        status = guard.record_failure("alice")
        assert status.attempts == 5
        assert status.locked is True
        assert guard.is_locked("alice")

    def test_failure_while_locked_does_not_increment(self, guard, audit):
        """Failures during lockout keep the counter and are audited as lockouts."""
        for _ in range(5):
            guard.record_failure("alice")
        status = guard.record_failure("alice")
        assert status.attempts == 5
        assert status.locked is True
        assert guard.get_record("alice").attempts == 5
        assert audit.query(action="LOGIN_LOCKOUT", user_id="alice")

    def test_reset_clears_counter(self, guard, store):
        """A single reset returns the account to Clear."""
        for _ in range(5):
            guard.record_failure("alice")
        guard.reset("alice")
        assert guard.is_locked("alice") is False
        assert guard.get_record("alice") is None
        assert store.get(f"{LOGIN_ATTEMPTS_PREFIX}alice") is None
        assert guard.remaining_lockout("alice") == timedelta(0)

    def test_lockout_expires_without_clearing_counter(self, guard, clock):
        """Elapsed lockout unlocks, but one more failure re-locks immediately."""
        for _ in range(5):
            guard.record_failure("alice")
        clock.advance(minutes=15)
        assert guard.is_locked("alice") is False
        assert guard.get_record("alice").attempts == 5

        status = guard.record_failure("alice")
        assert status.attempts == 6
        assert status.locked is True

    def test_account_key_is_case_insensitive(self, guard):
        """Accounts are normalized before keying the record."""
        for _ in range(5):
            guard.record_failure("Alice@Example.com ")
        assert guard.is_locked("alice@example.com")

    def test_remaining_lockout_zero_when_not_locked(self, guard):
        """Unlocked accounts report no remaining lockout."""
        guard.record_failure("bob")
        assert guard.remaining_lockout("bob") == timedelta(0)
        assert guard.remaining_lockout("nobody") == timedelta(0)

    def test_custom_threshold(self, store, clock):
        """The threshold and duration come from the constructor."""
        guard = LoginAttemptGuard(
            store, max_attempts=2, lockout_duration=timedelta(minutes=1), clock=clock
        )
        guard.record_failure("carol")
        assert guard.record_failure("carol").locked is True
        clock.advance(seconds=61)
        assert guard.is_locked("carol") is False

    def test_rejects_invalid_threshold(self, store):
        with pytest.raises(ValueError):
            LoginAttemptGuard(store, max_attempts=0)


class TestScenario:
    def test_five_failures_in_a_minute_then_unlock(self, guard, clock):
        """a@x.com: five failures in one minute lock for fifteen minutes from the last one."""
        started = clock.now
        for i in range(5):
            if i:
                clock.advance(seconds=12)
            guard.record_failure("a@x.com")
        assert guard.is_locked("a@x.com")
        last_failure = clock.now

        clock.advance(minutes=2)
        remaining = guard.remaining_lockout("a@x.com")
        assert remaining == timedelta(minutes=15) - (clock.now - last_failure)
        assert timedelta(minutes=12) < remaining < timedelta(minutes=15)

        clock.now = started + timedelta(minutes=16)
        assert guard.is_locked("a@x.com") is False


class TestDegradation:
    def test_corrupt_record_reads_as_clear(self, guard, store):
        """Unparsable records are treated as absent."""
        store.set(f"{LOGIN_ATTEMPTS_PREFIX}bob", "{not json")
        assert guard.get_record("bob") is None
        assert guard.is_locked("bob") is False
        assert guard.record_failure("bob").attempts == 1

    def test_negative_attempts_read_as_clear(self, guard, store):
        store.set(f"{LOGIN_ATTEMPTS_PREFIX}bob", '{"attempts": -3, "last_attempt_at": null}')
        assert guard.get_record("bob") is None

    @pytest.mark.parametrize("stamp", ["1e300", "Infinity", "-Infinity", "NaN"])
    def test_unrepresentable_timestamp_reads_as_unlocked(self, guard, store, stamp):
        """An epoch value no datetime can hold degrades instead of raising."""
        store.set(f"{LOGIN_ATTEMPTS_PREFIX}a@x.com", '{"attempts": 5, "last_attempt_at": %s}' % stamp)
        record = guard.get_record("a@x.com")
        assert record.attempts == 5
        assert record.last_attempt_at is None
        assert guard.is_locked("a@x.com") is False
        assert guard.remaining_lockout("a@x.com") == timedelta(0)
        assert guard.record_failure("a@x.com").attempts == 6
        assert guard.is_locked("a@x.com") is True

    def test_unreachable_store_never_locks(self, clock):
        """Store failures degrade to Clear instead of raising."""
        guard = LoginAttemptGuard(_BrokenStore(), clock=clock)
        status = guard.record_failure("alice")
        assert status.attempts == 0
        assert status.locked is False
        assert guard.is_locked("alice") is False
        guard.reset("alice")


class TestAuditTrail:
    def test_failures_and_reset_are_audited(self, guard, audit):
        """Every transition leaves an audit entry."""
        guard.record_failure("dave")
        guard.reset("dave")
        actions = [entry.action for entry in audit.query(user_id="dave")]
        assert actions == ["LOGIN_LOCKOUT_CLEARED", "LOGIN_FAILURE"]
        failure = audit.query(action="LOGIN_FAILURE")[0]
        assert failure.details == {"attempts": 1, "locked": False}
