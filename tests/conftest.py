import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionward_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_SIGNING_KEY", "test-signing-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionward.config import reset_settings_cache, get_settings  # noqa: E402
from sessionward.service.fingerprint import StaticFingerprintProvider  # noqa: E402
from sessionward.service.runtime import Runtime  # noqa: E402
from sessionward.storage.kv import SharedMemoryBackend  # noqa: E402

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
GOOD_PASSWORD = "correct-horse-battery"
ADMIN_TOKEN = os.environ["ADMIN_TOKEN"]


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ManualScheduler:
    """Scheduler that runs callbacks only when the test flushes it."""

    def __init__(self):
        self.pending = []

    def call_later(self, delay, fn):
        entry = [delay, fn, False]
        self.pending.append(entry)

        def cancel():
            entry[2] = True

        return cancel

    def run_all(self):
        due, self.pending = self.pending, []
        ran = 0
        for _delay, fn, cancelled in due:
            if not cancelled:
                fn()
                ran += 1
        return ran


def fake_authenticator(account, password):
    if password == GOOD_PASSWORD:
        return {"role": "staff"}
    return None


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def backend():
    return SharedMemoryBackend()


@pytest.fixture
def store(backend):
    handle = backend.attach("ctx-a")
    yield handle
    handle.close()


@pytest.fixture
def runtime(backend, clock, scheduler):
    rt = Runtime(
        get_settings(),
        store=backend.attach("ctx-runtime"),
        fingerprint_provider=StaticFingerprintProvider("device-1"),
        scheduler=scheduler,
        authenticator=fake_authenticator,
        clock=clock,
    )
    rt.init()
    yield rt
    rt.close()


@pytest.fixture
def good_password():
    return GOOD_PASSWORD


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
