"""Encryption envelope.

Seals chained events with AES-256-GCM. The sequence number, key
version and creation instant travel in the clear but are bound as
associated data, so an envelope cannot be moved to another position
or re-labelled without failing authentication.
"""

from __future__ import annotations

import logging
import secrets
import struct
from datetime import datetime

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import ValidationError

from packages.audit_engine.errors import (
    AuditError,
    EncryptionError,
    TamperDetectedError,
)
from packages.audit_engine.keys import KeyRing
from packages.audit_engine.models import (
    AuditEvent,
    EncryptedEnvelope,
    to_epoch_micros,
    utc_now,
)

logger = logging.getLogger(__name__)

NONCE_BYTES = 12  # 96-bit nonce for GCM
TAG_BYTES = 16
AAD_FORMAT = ">QIq"
AAD_LABEL = b"audit-engine/envelope"


def associated_data(sequence_number: int, key_version: int, created_at: datetime) -> bytes:
    """Associated data binding an envelope to its position and key."""
    return AAD_LABEL + struct.pack(
        AAD_FORMAT, sequence_number, key_version, to_epoch_micros(created_at)
    )


class EnvelopeCipher:
    """Seals and opens envelopes with keys from a KeyRing."""

    def __init__(self, keyring: KeyRing):
        self.keyring = keyring

    def _new_nonce(self) -> bytes:
        try:
            nonce = secrets.token_bytes(NONCE_BYTES)
        except Exception as e:
            raise EncryptionError(f"nonce generation failed: {e}") from e
        if len(nonce) != NONCE_BYTES:
            raise EncryptionError("nonce generation returned short output")
        return nonce

    def seal(self, event: AuditEvent, created_at: datetime | None = None) -> EncryptedEnvelope:
        """Encrypt a chained event into an envelope.

        Raises:
            EncryptionError: key unavailable, nonce or AEAD failure.
                Nothing is returned, so nothing can be persisted.
        """
        created_at = created_at or utc_now()
        key_version = self.keyring.current_version

        try:
            key = self.keyring.envelope_key(key_version)
            nonce = self._new_nonce()
            aad = associated_data(event.sequence_number, key_version, created_at)
            plaintext = event.model_dump_json().encode("utf-8")
            sealed = AESGCM(key).encrypt(nonce, plaintext, aad)
        except AuditError:
            raise
        except Exception as e:
            raise EncryptionError(str(e)) from e

        # AESGCM.encrypt returns ciphertext + tag concatenated
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]

        return EncryptedEnvelope(
            sequence_number=event.sequence_number,
            key_version=key_version,
            nonce=EncryptedEnvelope.encode(nonce),
            ciphertext=EncryptedEnvelope.encode(ciphertext),
            authentication_tag=EncryptedEnvelope.encode(tag),
            created_at=created_at,
        )

    def open(self, envelope: EncryptedEnvelope, segment_index: int | None = None) -> AuditEvent:
        """Decrypt and authenticate an envelope.

        Fails closed: any failure raises, partial plaintext is never returned.
        """
        seq = envelope.sequence_number

        try:
            nonce = EncryptedEnvelope.decode(envelope.nonce)
            ciphertext = EncryptedEnvelope.decode(envelope.ciphertext)
            tag = EncryptedEnvelope.decode(envelope.authentication_tag)
        except ValueError as e:
            raise TamperDetectedError("malformed envelope encoding", seq, segment_index) from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise TamperDetectedError("malformed nonce or tag", seq, segment_index)

        key = self.keyring.envelope_key(envelope.key_version)
        aad = associated_data(seq, envelope.key_version, envelope.created_at)

        try:
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, aad)
        except InvalidTag as e:
            logger.critical("Envelope authentication failed: seq=%d", seq)
            raise TamperDetectedError("envelope authentication failed", seq, segment_index) from e

        try:
            event = AuditEvent.model_validate_json(plaintext)
        except ValidationError as e:
            raise TamperDetectedError("decrypted payload is not an event", seq, segment_index) from e

        if event.sequence_number != seq:
            raise TamperDetectedError("envelope and event sequence differ", seq, segment_index)

        return event
