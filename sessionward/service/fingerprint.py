"""Device fingerprinting for session binding.

A fingerprint is a deterministic, low-entropy digest of stable environment
signals. It adds friction to replaying a stolen session from another machine;
it is not an identity and is not secret.
"""

from __future__ import annotations

import getpass
import hashlib
import platform
import socket
from typing import Optional, Protocol

from sessionward.logging import get_logger
from sessionward.storage.common import safe_get, safe_remove, safe_set
from sessionward.storage.kv import KeyValueStore

logger = get_logger(__name__)

# Returned whenever the environment cannot be read. Two contexts that both fall
# back to it compare equal; anything else never matches it.
UNKNOWN_FINGERPRINT = "unknown"

FINGERPRINT_KEY = "device_fingerprint"


class FingerprintProvider(Protocol):
    def generate(self) -> str: ...


class StaticFingerprintProvider:
    """Fixed fingerprint for hosts that supply their own device identifier."""

    def __init__(self, value: str) -> None:
        self.value = value

    def generate(self) -> str:
        return self.value or UNKNOWN_FINGERPRINT


class HostFingerprintProvider:
    """Hash of hostname, OS, architecture, interpreter and login user.

    ``user_agent`` lets an HTTP front end mix the client's declared agent into
    the digest so that a session minted in one browser fails in another.
    """

    def __init__(self, salt: Optional[str] = None, user_agent: Optional[str] = None) -> None:
        self.salt = salt
        self.user_agent = user_agent

    def _signals(self) -> list[str]:
        return [
            socket.gethostname(),
            platform.system(),
            platform.release(),
            platform.machine(),
            platform.python_implementation(),
            getpass.getuser(),
            self.user_agent or "",
            self.salt or "",
        ]

    def generate(self) -> str:
        try:
            signals = self._signals()
        except (OSError, KeyError, ImportError) as exc:
            # getpass.getuser raises when no login name is resolvable
            logger.warning("fingerprint_unavailable", error_type=type(exc).__name__, error=str(exc))
            return UNKNOWN_FINGERPRINT
        digest = hashlib.sha256("\x1f".join(signals).encode("utf-8")).hexdigest()
        return digest[:32]


class DeviceFingerprint:
    """Stores the last-known fingerprint for the active session and re-checks it."""

    def __init__(
        self, store: KeyValueStore, provider: FingerprintProvider, *, key: str = FINGERPRINT_KEY
    ) -> None:
        self.kv = store
        self.provider = provider
        self.key = key

    def generate(self) -> str:
        try:
            value = self.provider.generate()
        except Exception as exc:
            logger.warning(
                "fingerprint_provider_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return UNKNOWN_FINGERPRINT
        return value or UNKNOWN_FINGERPRINT

    def store(self, fingerprint: Optional[str] = None) -> str:
        """Persist ``fingerprint`` (or a freshly generated one) as the last-known value."""
        fingerprint = fingerprint or self.generate()
        safe_set(self.kv, self.key, fingerprint)
        return fingerprint

    def stored(self) -> Optional[str]:
        return safe_get(self.kv, self.key)

    def validate(self) -> bool:
        stored = self.stored()
        if stored is None:
            return False
        return stored == self.generate()

    def clear(self) -> None:
        safe_remove(self.kv, self.key)
