"""Tests for the encryption envelope."""

import pytest

from packages.audit_engine.chain import GENESIS_CHAIN_VALUE
from packages.audit_engine.envelope import NONCE_BYTES, TAG_BYTES, EnvelopeCipher
from packages.audit_engine.errors import EncryptionError, TamperDetectedError
from packages.audit_engine.keys import KeyRing, StaticSecretProvider
from packages.audit_engine.models import EncryptedEnvelope, EventDraft, EventType


@pytest.fixture
def event(chain):
    draft = EventDraft(
        event_type=EventType.CREDENTIAL_ACCESS,
        user_id="alice@example.com",
        resource="vault/item/7",
        context={"credential_type": "password_entry"},
    )
    event, _ = chain.stamp(draft, GENESIS_CHAIN_VALUE, 1)
    return event


class TestEnvelopeCipher:
    """Test sealing and opening envelopes."""

    def test_seal_then_open_returns_event(self, cipher, event):
        """Test an envelope opens back to the identical event."""
        envelope = cipher.seal(event)

        assert envelope.sequence_number == 1
        assert envelope.key_version == 1
        assert len(EncryptedEnvelope.decode(envelope.nonce)) == NONCE_BYTES
        assert len(EncryptedEnvelope.decode(envelope.authentication_tag)) == TAG_BYTES
        assert cipher.open(envelope) == event

    def test_envelope_hides_plaintext(self, cipher, event):
        """Test no identifying field appears in the persisted form."""
        record = cipher.seal(event).model_dump_json()

        assert "alice@example.com" not in record
        assert "vault/item/7" not in record
        assert "password_entry" not in record
        assert event.chain_value not in record

    def test_nonces_are_fresh(self, cipher, event):
        """Test sealing twice never reuses a nonce."""
        nonces = {cipher.seal(event).nonce for _ in range(50)}
        assert len(nonces) == 50

    def test_flipped_ciphertext_is_tamper(self, cipher, event):
        """Test a single bit flip fails authentication."""
        envelope = cipher.seal(event)
        raw = bytearray(EncryptedEnvelope.decode(envelope.ciphertext))
        raw[-1] ^= 0x80
        forged = envelope.model_copy(update={"ciphertext": EncryptedEnvelope.encode(bytes(raw))})

        with pytest.raises(TamperDetectedError):
            cipher.open(forged)

    def test_relabelled_sequence_is_tamper(self, cipher, event):
        """Test moving an envelope to another position fails authentication."""
        forged = cipher.seal(event).model_copy(update={"sequence_number": 2})

        with pytest.raises(TamperDetectedError) as exc_info:
            cipher.open(forged)
        assert exc_info.value.sequence_number == 2

    def test_malformed_encoding_is_tamper(self, cipher, event):
        """Test undecodable binary fields are treated as tampering."""
        forged = cipher.seal(event).model_copy(update={"nonce": "***"})

        with pytest.raises(TamperDetectedError):
            cipher.open(forged)

    def test_wrong_root_secret_cannot_open(self, cipher, event):
        """Test a different installation cannot read the envelope."""
        envelope = cipher.seal(event)
        stranger = EnvelopeCipher(KeyRing(StaticSecretProvider(b"\x07" * 32)))

        with pytest.raises(TamperDetectedError):
            stranger.open(envelope)

    def test_old_envelopes_open_after_key_version_bump(self, provider, event):
        """Test envelopes record their key version and keep opening."""
        old = EnvelopeCipher(KeyRing(provider, current_version=1)).seal(event)
        rotated = EnvelopeCipher(KeyRing(provider, current_version=2))

        assert rotated.seal(event).key_version == 2
        assert rotated.open(old) == event

    def test_key_unavailable_fails_seal(self, event):
        """Test sealing without key material raises before anything is produced."""
        cipher = EnvelopeCipher(KeyRing(StaticSecretProvider(b"")))

        with pytest.raises(EncryptionError):
            cipher.seal(event)
