"""Key material for the audit engine.

The engine never generates or stores the root secret. A provider
supplies it, and every working key is derived from it with HKDF using
fixed, versioned context strings:

    audit-engine/chain/v{n}      integrity chain MAC key
    audit-engine/envelope/v{n}   AES-256-GCM envelope key
    audit-engine/report/v{n}     compliance report signing key

Old envelopes keep opening after a version bump because each one
records the version it was sealed with.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import stat
import threading
from enum import Enum
from pathlib import Path
from typing import Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from packages.audit_engine.errors import KeyUnavailableError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
MIN_ROOT_SECRET_BYTES = 32
KDF_SALT = b"audit-engine-kdf-salt-v1"


class KeyPurpose(str, Enum):
    """Independent keys derived from the root secret."""

    CHAIN = "chain"
    ENVELOPE = "envelope"
    REPORT = "report"


class RootSecretProvider(Protocol):
    """Capability that supplies the device-protected root secret.

    Implementations may front an OS keystore, an HSM or a
    software-protected file.
    """

    def provide_root_secret(self) -> bytes:
        """Return the root secret bytes."""
        ...


class StaticSecretProvider:
    """Provider holding a secret in process memory (tests, embedding)."""

    def __init__(self, secret: bytes):
        self._secret = bytes(secret)

    def provide_root_secret(self) -> bytes:
        return self._secret


class EnvironmentSecretProvider:
    """Reads a base64 or hex encoded root secret from an environment variable."""

    def __init__(self, variable: str = "AUDIT_ROOT_SECRET"):
        self.variable = variable

    def provide_root_secret(self) -> bytes:
        raw = os.getenv(self.variable)
        if not raw:
            raise KeyUnavailableError(f"{self.variable} is not set")
        try:
            return bytes.fromhex(raw)
        except ValueError:
            pass
        try:
            return base64.b64decode(raw, validate=True)
        except binascii.Error as e:
            raise KeyUnavailableError(
                f"{self.variable} is neither hex nor base64"
            ) from e


class FileSecretProvider:
    """Reads the root secret from a file only its owner can access."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def provide_root_secret(self) -> bytes:
        try:
            mode = self.path.stat().st_mode
        except FileNotFoundError as e:
            raise KeyUnavailableError(f"Secret file {self.path} not found") from e

        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            raise KeyUnavailableError(
                f"Secret file {self.path} is accessible by group or others"
            )
        return self.path.read_bytes()


class KeyRing:
    """Derives and caches working keys from a root secret provider."""

    def __init__(self, provider: RootSecretProvider, current_version: int = 1):
        if current_version < 1:
            raise ValueError("Key version must be >= 1")
        self._provider = provider
        self.current_version = current_version
        self._cache: dict[tuple[KeyPurpose, int], bytes] = {}
        self._lock = threading.Lock()

    def _root_secret(self) -> bytes:
        try:
            secret = self._provider.provide_root_secret()
        except KeyUnavailableError:
            raise
        except Exception as e:
            raise KeyUnavailableError(f"Secret provider failed: {e}") from e

        if not secret or len(secret) < MIN_ROOT_SECRET_BYTES:
            raise KeyUnavailableError(
                f"Root secret must be at least {MIN_ROOT_SECRET_BYTES} bytes"
            )
        return secret

    @staticmethod
    def context_for(purpose: KeyPurpose, version: int) -> bytes:
        return f"audit-engine/{purpose.value}/v{version}".encode("ascii")

    def key(self, purpose: KeyPurpose, version: int | None = None) -> bytes:
        """Return the derived key for a purpose at a version (default current)."""
        version = version or self.current_version
        cache_key = (purpose, version)

        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

            hkdf = HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_BYTES,
                salt=KDF_SALT,
                info=self.context_for(purpose, version),
            )
            derived = hkdf.derive(self._root_secret())
            self._cache[cache_key] = derived

        logger.debug("Derived %s key for version %d", purpose.value, version)
        return derived

    def chain_key(self, version: int | None = None) -> bytes:
        return self.key(KeyPurpose.CHAIN, version)

    def envelope_key(self, version: int | None = None) -> bytes:
        return self.key(KeyPurpose.ENVELOPE, version)

    def report_key(self, version: int | None = None) -> bytes:
        return self.key(KeyPurpose.REPORT, version)

    def forget(self) -> None:
        """Drop cached key material."""
        with self._lock:
            self._cache.clear()
