"""Shared fixtures for audit engine tests."""

from datetime import timedelta

import pytest

from packages.audit_engine.alerts import AlertDispatcher, CallbackAlertListener
from packages.audit_engine.chain import IntegrityChain
from packages.audit_engine.config import AuditSettings
from packages.audit_engine.envelope import EnvelopeCipher
from packages.audit_engine.keys import KeyRing, StaticSecretProvider
from packages.audit_engine.models import EncryptedEnvelope, utc_now
from packages.audit_engine.storage import InMemorySegmentStorage
from packages.audit_engine.store import AppendOnlyStore

ROOT_SECRET = bytes(range(32))


@pytest.fixture
def provider():
    return StaticSecretProvider(ROOT_SECRET)


@pytest.fixture
def keyring(provider):
    return KeyRing(provider)


@pytest.fixture
def chain(keyring):
    return IntegrityChain(keyring.chain_key(1))


@pytest.fixture
def cipher(keyring):
    return EnvelopeCipher(keyring)


@pytest.fixture
def memory_storage():
    return InMemorySegmentStorage()


@pytest.fixture
def alerts():
    """Dispatcher recording every (sequence_number, risk_level) it delivers."""
    received = []
    dispatcher = AlertDispatcher(
        [CallbackAlertListener(lambda event, risk: received.append((event.sequence_number, risk)))]
    )
    dispatcher.received = received
    return dispatcher


@pytest.fixture
def make_store(chain, cipher):
    """Factory building a store over a given substrate."""

    def _make(storage, max_segment_bytes=1_000_000, alerts=None):
        return AppendOnlyStore(storage, chain, cipher, max_segment_bytes, alerts=alerts)

    return _make


@pytest.fixture
def store(make_store, memory_storage, alerts):
    return make_store(memory_storage, alerts=alerts)


@pytest.fixture
def settings():
    return AuditSettings(
        storage_backend="memory",
        log_lifecycle_events=False,
        _env_file=None,
    )


@pytest.fixture
def window():
    """A window wide enough to hold every event written during a test."""
    now = utc_now()
    return now - timedelta(hours=1), now + timedelta(hours=1)


def _tamper_ciphertext(storage, segment_index, position):
    record = storage._segments[segment_index][position]
    envelope = EncryptedEnvelope.model_validate_json(record)
    raw = bytearray(EncryptedEnvelope.decode(envelope.ciphertext))
    raw[0] ^= 0x01
    forged = envelope.model_copy(update={"ciphertext": EncryptedEnvelope.encode(bytes(raw))})
    storage._segments[segment_index][position] = forged.model_dump_json().encode("utf-8")


@pytest.fixture
def tamper_ciphertext():
    """Flip one ciphertext bit of an envelope held in memory storage."""
    return _tamper_ciphertext
