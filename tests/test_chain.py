"""Tests for the integrity chain and key derivation."""

import base64
import os

import pytest

from packages.audit_engine.chain import (
    GENESIS_CHAIN_VALUE,
    ChainCursor,
    IntegrityChain,
    canonical_bytes,
)
from packages.audit_engine.errors import KeyUnavailableError, TamperDetectedError
from packages.audit_engine.keys import (
    EnvironmentSecretProvider,
    FileSecretProvider,
    KeyPurpose,
    KeyRing,
    StaticSecretProvider,
)
from packages.audit_engine.models import EventDraft, EventType, OperationResult, RiskLevel


def _stamp_many(chain, count):
    events = []
    prior = GENESIS_CHAIN_VALUE
    for i in range(1, count + 1):
        draft = EventDraft(event_type=EventType.DATA_ACCESS, user_id=f"user-{i}")
        event, prior = chain.stamp(draft, prior, sequence_number=i)
        events.append(event)
    return events


# =============================================================================
# Key derivation
# =============================================================================


class TestKeyRing:
    """Test HKDF key derivation from the root secret."""

    def test_purposes_get_distinct_keys(self, keyring):
        """Test chain, envelope and report keys are independent."""
        keys = {keyring.key(purpose) for purpose in KeyPurpose}
        assert len(keys) == 3
        assert all(len(k) == 32 for k in keys)

    def test_derivation_is_deterministic(self, provider):
        """Test two rings over the same secret agree."""
        assert KeyRing(provider).chain_key() == KeyRing(provider).chain_key()

    def test_versions_get_distinct_keys(self, keyring):
        """Test a version bump changes the derived key."""
        assert keyring.envelope_key(1) != keyring.envelope_key(2)

    def test_short_root_secret_rejected(self):
        """Test a root secret below 32 bytes is unusable."""
        ring = KeyRing(StaticSecretProvider(b"too short"))
        with pytest.raises(KeyUnavailableError):
            ring.chain_key()

    def test_failing_provider_reported_as_key_unavailable(self):
        """Test arbitrary provider failures surface as KeyUnavailableError."""

        class BrokenProvider:
            def provide_root_secret(self):
                raise RuntimeError("keystore locked")

        with pytest.raises(KeyUnavailableError) as exc_info:
            KeyRing(BrokenProvider()).envelope_key()
        assert exc_info.value.code == "key_unavailable"

    def test_environment_provider_accepts_hex_and_base64(self, monkeypatch):
        """Test the environment provider decodes both encodings."""
        secret = os.urandom(32)

        monkeypatch.setenv("AUDIT_ROOT_SECRET", secret.hex())
        assert EnvironmentSecretProvider().provide_root_secret() == secret

        monkeypatch.setenv("AUDIT_ROOT_SECRET", base64.b64encode(secret).decode())
        assert EnvironmentSecretProvider().provide_root_secret() == secret

    def test_environment_provider_missing_variable(self, monkeypatch):
        """Test an unset variable is reported, not defaulted."""
        monkeypatch.delenv("AUDIT_ROOT_SECRET", raising=False)
        with pytest.raises(KeyUnavailableError):
            EnvironmentSecretProvider().provide_root_secret()

    def test_file_provider_rejects_shared_file(self, tmp_path):
        """Test a secret file readable by others is refused."""
        path = tmp_path / "root.key"
        path.write_bytes(os.urandom(32))

        path.chmod(0o644)
        with pytest.raises(KeyUnavailableError):
            FileSecretProvider(path).provide_root_secret()

        path.chmod(0o600)
        assert len(FileSecretProvider(path).provide_root_secret()) == 32


# =============================================================================
# Chain
# =============================================================================


class TestIntegrityChain:
    """Test chain stamping and verification."""

    def test_first_event_links_to_genesis(self, chain):
        """Test the first event's prior value is the genesis value."""
        event, value = chain.stamp(
            EventDraft(event_type=EventType.SYSTEM_STARTUP), GENESIS_CHAIN_VALUE, 1
        )

        assert event.prior_chain_value == GENESIS_CHAIN_VALUE
        assert event.chain_value == value
        assert len(value) == 64
        assert chain.verify(event, GENESIS_CHAIN_VALUE)

    def test_events_link_to_predecessor(self, chain):
        """Test each event's prior value equals the previous chain value."""
        events = _stamp_many(chain, 4)

        for previous, current in zip(events, events[1:]):
            assert current.prior_chain_value == previous.chain_value
            assert chain.verify(current, previous.chain_value)

    def test_field_change_breaks_verification(self, chain):
        """Test altering any covered field invalidates the chain value."""
        event = _stamp_many(chain, 1)[0]

        for update in (
            {"user_id": "someone-else"},
            {"result": OperationResult.FAILURE},
            {"risk_level": RiskLevel.CRITICAL},
            {"context": {"note": "added"}},
            {"sequence_number": 2},
        ):
            forged = event.model_copy(update=update)
            assert not chain.verify(forged, GENESIS_CHAIN_VALUE)

    def test_wrong_key_fails_verification(self, chain):
        """Test a chain value forged without the key does not verify."""
        event = _stamp_many(chain, 1)[0]
        other = IntegrityChain(b"\x42" * 32)

        assert not other.verify(event, GENESIS_CHAIN_VALUE)

    def test_canonical_bytes_ignore_mapping_order(self, chain):
        """Test context insertion order does not change the encoding."""
        first = EventDraft(event_type=EventType.DATA_ACCESS, context={"a": "1", "b": "2"})
        second = first.model_copy(update={"context": {"b": "2", "a": "1"}})

        left, _ = chain.stamp(first, GENESIS_CHAIN_VALUE, 1)
        right, _ = chain.stamp(second, GENESIS_CHAIN_VALUE, 1)

        assert canonical_bytes(left) == canonical_bytes(right)
        assert left.chain_value == right.chain_value

    def test_short_key_rejected(self):
        """Test a chain key shorter than the MAC output is refused."""
        with pytest.raises(ValueError):
            IntegrityChain(b"short")


class TestChainCursor:
    """Test sequential verification."""

    def test_walks_valid_chain(self, chain):
        """Test a valid chain advances without error."""
        cursor = ChainCursor(chain, GENESIS_CHAIN_VALUE, 1)
        for event in _stamp_many(chain, 5):
            cursor.advance(event)

        assert cursor.verified == 5
        assert cursor.next_sequence == 6

    def test_gap_is_tamper(self, chain):
        """Test a missing event is detected as a sequence gap."""
        events = _stamp_many(chain, 3)
        cursor = ChainCursor(chain, GENESIS_CHAIN_VALUE, 1)
        cursor.advance(events[0])

        with pytest.raises(TamperDetectedError) as exc_info:
            cursor.advance(events[2])
        assert exc_info.value.sequence_number == 3

    def test_broken_link_is_tamper(self, chain):
        """Test an event re-chained onto a different predecessor is detected."""
        events = _stamp_many(chain, 2)
        cursor = ChainCursor(chain, "ab" * 32, 1)

        with pytest.raises(TamperDetectedError):
            cursor.advance(events[0])
