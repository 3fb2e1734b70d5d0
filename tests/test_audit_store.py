import json
import threading

import httpx
import pytest

from sessionward.service.audit import (
    AUDIT_LOG_KEY,
    AuditLogStore,
    BackgroundSinkWriter,
    HttpAuditSink,
)
from sessionward.storage.errors import StoreError
from sessionward.storage.models import AuditLogEntry


class _RecordingSink:
    def __init__(self, fail=False):
        self.fail = fail
        self.entries = []
        self.closed = False
        self.delivered = threading.Event()

    def send(self, entry):
        if self.fail:
            raise RuntimeError("collector down")
        self.entries.append(entry)
        self.delivered.set()

    def close(self):
        self.closed = True


class _WriteFailingStore:
    """Reads work, writes fail: mirrors a full or read-only backend."""

    def __init__(self, inner):
        self.inner = inner
        self.context_id = inner.context_id

    def get(self, key):
        return self.inner.get(key)

    def set(self, key, value):
        raise StoreError("quota exceeded", {"key": key})

    def remove(self, key):
        raise StoreError("quota exceeded", {"key": key})

    def compare_and_set(self, key, expected, value):
        raise StoreError("quota exceeded", {"key": key})

    def subscribe(self, listener):
        return self.inner.subscribe(listener)

    def close(self):
        pass


def _make(store, clock, **kwargs):
    kwargs.setdefault("origin", {"host": "test"})
    return AuditLogStore(store, clock=clock, **kwargs)


class TestRingBuffer:
    def test_keeps_newest_max_logs(self, store, clock):
        """max_logs + k appends keep exactly the newest max_logs entries."""
        audit = _make(store, clock, max_logs=10, max_persisted=3)
        for i in range(15):
            audit.log("ACTION", "thing", "alice", {"n": i})
        entries = audit.query()
        assert audit.count() == 10
        assert [entry.details["n"] for entry in entries] == list(range(14, 4, -1))

    def test_append_fills_identity(self, store, clock):
        audit = _make(store, clock)
        entry = audit.append(AuditLogEntry(action="X", resource="r", actor_id="a"))
        assert entry.id
        assert entry.timestamp == clock.now
        assert entry.origin == {"host": "test"}

    def test_append_keeps_supplied_id(self, store, clock):
        audit = _make(store, clock)
        entry = audit.append(AuditLogEntry(action="X", resource="r", actor_id="a", id="fixed"))
        assert entry.id == "fixed"

    def test_invalid_limits(self, store):
        with pytest.raises(ValueError):
            AuditLogStore(store, max_logs=0)
        with pytest.raises(ValueError):
            AuditLogStore(store, max_logs=10, max_persisted=10)


class TestPersistence:
    def test_persisted_tail_is_capped(self, store, clock):
        audit = _make(store, clock, max_logs=10, max_persisted=3)
        for i in range(5):
            audit.log("ACTION", "thing", "alice", {"n": i})
        tail = audit.persisted()
        assert [item["details"]["n"] for item in tail] == [4, 3, 2]

    def test_load_persisted_replaces_memory(self, store, clock):
        """A restarted context reloads the persisted tail."""
        first = _make(store, clock, max_logs=10, max_persisted=3)
        for i in range(5):
            first.log("ACTION", "thing", "alice", {"n": i})

        second = _make(store, clock, max_logs=10, max_persisted=3)
        second.init()
        assert second.count() == 3
        assert second.query()[0].details["n"] == 4
        second.close()

    def test_load_persisted_skips_bad_entries(self, store, clock):
        store.set(
            AUDIT_LOG_KEY,
            json.dumps([{"action": "OK", "resource": "r", "actor_id": "a"}, {"action": 7}, "junk"]),
        )
        audit = _make(store, clock)
        assert audit.load_persisted() == 1

    def test_load_persisted_tolerates_out_of_range_timestamp(self, store, clock):
        store.set(
            AUDIT_LOG_KEY,
            '[{"action": "OK", "resource": "r", "actor_id": "a", "timestamp": 1e300},'
            ' {"action": "OK", "resource": "r", "actor_id": "b", "timestamp": Infinity}]',
        )
        audit = _make(store, clock)
        assert audit.load_persisted() == 2
        assert [entry.timestamp for entry in audit.query()] == [None, None]

    def test_init_survives_out_of_range_timestamp(self, store, clock):
        store.set(AUDIT_LOG_KEY, '[{"action": "OK", "resource": "r", "actor_id": "a", "timestamp": 1e300}]')
        audit = _make(store, clock)
        audit.init()
        assert audit.count() == 1
        audit.close()

    def test_load_persisted_corrupt_is_empty(self, store, clock):
        store.set(AUDIT_LOG_KEY, "{broken")
        audit = _make(store, clock)
        assert audit.load_persisted() == 0
        store.set(AUDIT_LOG_KEY, '{"not": "a list"}')
        assert audit.load_persisted() == 0

    def test_persist_failure_keeps_memory(self, store, clock):
        """Write failures are logged; the in-memory log stays authoritative."""
        audit = _make(_WriteFailingStore(store), clock)
        audit.log("ACTION", "thing", "alice")
        assert audit.count() == 1
        assert store.get(AUDIT_LOG_KEY) is None

    def test_clear_empties_memory_and_store(self, store, clock):
        audit = _make(store, clock)
        audit.log("ACTION", "thing", "alice")
        audit.clear()
        assert audit.count() == 0
        assert audit.persisted() == []
        assert store.get(AUDIT_LOG_KEY) is None

    def test_zero_persisted_writes_nothing(self, store, clock):
        audit = _make(store, clock, max_persisted=0)
        audit.log("ACTION", "thing", "alice")
        assert store.get(AUDIT_LOG_KEY) is None


class TestQuery:
    def test_filters_newest_first(self, store, clock):
        audit = _make(store, clock)
        audit.log("LOGIN_FAILURE", "auth", "alice")
        audit.log("LOGIN_FAILURE", "auth", "bob")
        audit.log("SESSION_CREATED", "session", "alice")

        assert [e.action for e in audit.query(user_id="alice")] == [
            "SESSION_CREATED",
            "LOGIN_FAILURE",
        ]
        assert [e.actor_id for e in audit.query(action="LOGIN_FAILURE")] == ["bob", "alice"]
        assert len(audit.query(resource="session")) == 1
        assert len(audit.query(limit=2)) == 2
        assert audit.query(user_id="nobody") == []


class TestConvenienceEmitters:
    @pytest.mark.parametrize(
        "duration, bucket",
        [(1500, "slow"), (1000, "moderate"), (501, "moderate"), (500, "fast"), (12, "fast")],
    )
    def test_query_performance_buckets(self, store, clock, duration, bucket):
        audit = _make(store, clock)
        entry = audit.log_query_performance("select 1", duration, "alice", record_count=3)
        assert entry.action == "QUERY_PERFORMANCE"
        assert entry.resource == "database"
        assert entry.details["performance"] == bucket

    def test_system_event(self, store, clock):
        audit = _make(store, clock)
        entry = audit.log_system_event("cache_flushed", {"items": 3})
        assert (entry.action, entry.resource, entry.actor_id) == ("SYSTEM_EVENT", "system", "system")
        assert entry.details == {"event": "cache_flushed", "items": 3, "type": "system_event"}

    def test_user_action(self, store, clock):
        audit = _make(store, clock)
        entry = audit.log_user_action("APPROVE", "leave", "alice", {"leave_id": "L1"})
        assert entry.details == {"leave_id": "L1", "type": "user_action"}


class TestSinkForwarding:
    def test_entries_reach_sink(self, store, clock):
        sink = _RecordingSink()
        audit = _make(store, clock, sink=sink)
        audit.init()
        audit.log("ACTION", "thing", "alice")
        assert sink.delivered.wait(timeout=5)
        audit.close()
        assert sink.entries[0]["action"] == "ACTION"
        assert sink.closed is True

    def test_sink_failure_never_reaches_caller(self, store, clock):
        sink = _RecordingSink(fail=True)
        writer = BackgroundSinkWriter(sink)
        writer.start()
        assert writer.submit({"id": "1"}) is True
        writer.close()
        assert writer.failed == 1
        assert writer.delivered == 0

    def test_full_queue_drops(self):
        writer = BackgroundSinkWriter(_RecordingSink(), max_queue_size=1)
        assert writer.submit({"id": "1"}) is True
        assert writer.submit({"id": "2"}) is False
        assert writer.dropped == 1

    def test_http_sink_posts_json(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        sink = HttpAuditSink("https://collector.test/audit", client=client)
        sink.send({"id": "1", "action": "X"})
        assert seen == [{"id": "1", "action": "X"}]

    def test_http_sink_raises_on_error_status(self):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        sink = HttpAuditSink("https://collector.test/audit", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            sink.send({"id": "1"})
