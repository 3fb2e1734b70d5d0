import getpass

from sessionward.service.fingerprint import (
    FINGERPRINT_KEY,
    UNKNOWN_FINGERPRINT,
    DeviceFingerprint,
    HostFingerprintProvider,
    StaticFingerprintProvider,
)


class _ExplodingProvider:
    def generate(self):
        raise RuntimeError("no environment")


class TestHostFingerprintProvider:
    def test_deterministic(self):
        """Same environment and salt give the same digest."""
        first = HostFingerprintProvider(salt="s1").generate()
        second = HostFingerprintProvider(salt="s1").generate()
        assert first == second
        assert len(first) == 32

    def test_salt_and_user_agent_change_digest(self):
        base = HostFingerprintProvider().generate()
        assert HostFingerprintProvider(salt="other").generate() != base
        assert HostFingerprintProvider(user_agent="Firefox").generate() != base

    def test_unreadable_environment_yields_sentinel(self, monkeypatch):
        """A missing login name degrades to the sentinel."""

        def _fail():
            raise OSError("no login name")

        monkeypatch.setattr(getpass, "getuser", _fail)
        assert HostFingerprintProvider().generate() == UNKNOWN_FINGERPRINT


class TestDeviceFingerprint:
    def test_store_and_validate(self, store):
        fingerprint = DeviceFingerprint(store, StaticFingerprintProvider("abc"))
        assert fingerprint.validate() is False
        assert fingerprint.store() == "abc"
        assert store.get(FINGERPRINT_KEY) == "abc"
        assert fingerprint.validate() is True

    def test_validate_fails_after_environment_change(self, store):
        """A different device no longer matches the stored value."""
        fingerprint = DeviceFingerprint(store, StaticFingerprintProvider("abc"))
        fingerprint.store()
        fingerprint.provider = StaticFingerprintProvider("xyz")
        assert fingerprint.validate() is False

    def test_provider_failure_is_sentinel(self, store):
        fingerprint = DeviceFingerprint(store, _ExplodingProvider())
        assert fingerprint.generate() == UNKNOWN_FINGERPRINT

    def test_sentinel_only_matches_sentinel(self, store):
        """Fail-closed: the sentinel never equals a real fingerprint."""
        fingerprint = DeviceFingerprint(store, _ExplodingProvider())
        fingerprint.store("abc")
        assert fingerprint.validate() is False
        fingerprint.store(UNKNOWN_FINGERPRINT)
        assert fingerprint.validate() is True

    def test_clear(self, store):
        fingerprint = DeviceFingerprint(store, StaticFingerprintProvider("abc"))
        fingerprint.store()
        fingerprint.clear()
        assert fingerprint.stored() is None
