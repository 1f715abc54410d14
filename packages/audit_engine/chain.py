"""Integrity chain.

Each event's chain value is an HMAC-SHA256 over its canonical bytes
followed by the previous event's chain value, so altering, dropping or
reordering any event breaks every link after it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any

from packages.audit_engine.errors import TamperDetectedError
from packages.audit_engine.models import (
    AuditEvent,
    EventDraft,
    to_epoch_micros,
)

logger = logging.getLogger(__name__)

MAC_BYTES = hashlib.sha256().digest_size
GENESIS_CHAIN_VALUE = "00" * MAC_BYTES

# Fixed serialisation order. Never derived from mapping iteration.
CANONICAL_FIELDS = (
    "id",
    "sequence_number",
    "timestamp",
    "event_type",
    "result",
    "risk_level",
    "user_id",
    "session_id",
    "operation",
    "resource",
    "duration_ms",
    "error_code",
    "error_message",
    "context",
    "metadata",
)


def compute_tag(key: bytes, message: bytes) -> str:
    """HMAC-SHA256 of a message as lowercase hex."""
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def tags_equal(left: str, right: str) -> bool:
    """Constant-time comparison of two hex tags."""
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def _canonical_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_epoch_micros(value)
    if isinstance(value, dict):
        return [[k, value[k]] for k in sorted(value)]
    if hasattr(value, "value"):
        return value.value
    return value


def canonical_bytes(event: AuditEvent) -> bytes:
    """Deterministic byte encoding of an event, excluding chain fields."""
    pairs = [
        [name, _canonical_value(getattr(event, name))]
        for name in CANONICAL_FIELDS
    ]
    return json.dumps(pairs, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _prior_bytes(prior_chain_value: str) -> bytes:
    try:
        raw = bytes.fromhex(prior_chain_value)
    except ValueError as e:
        raise ValueError("Chain value must be hex encoded") from e
    if len(raw) != MAC_BYTES:
        raise ValueError(f"Chain value must be {MAC_BYTES} bytes")
    return raw


class IntegrityChain:
    """Stamps and verifies chain values with a dedicated MAC key.

    Usage:
        chain = IntegrityChain(keyring.chain_key())
        event, value = chain.stamp(draft, GENESIS_CHAIN_VALUE, sequence_number=1)
        assert chain.verify(event, GENESIS_CHAIN_VALUE)
    """

    def __init__(self, key: bytes):
        if len(key) < MAC_BYTES:
            raise ValueError(f"Chain key must be at least {MAC_BYTES} bytes")
        self._key = key

    def compute_chain_value(self, event: AuditEvent, prior_chain_value: str) -> str:
        message = canonical_bytes(event) + _prior_bytes(prior_chain_value)
        return compute_tag(self._key, message)

    def stamp(
        self,
        draft: EventDraft,
        prior_chain_value: str,
        sequence_number: int,
        timestamp: datetime | None = None,
    ) -> tuple[AuditEvent, str]:
        """Build the immutable event for a draft and link it to the chain.

        Returns:
            Tuple of (event, chain_value)
        """
        unsigned = AuditEvent(
            id=draft.id,
            sequence_number=sequence_number,
            timestamp=timestamp or draft.timestamp,
            event_type=draft.event_type,
            result=draft.result,
            risk_level=draft.effective_risk,
            user_id=draft.user_id,
            session_id=draft.session_id,
            operation=draft.operation,
            resource=draft.resource,
            duration_ms=draft.duration_ms,
            error_code=draft.error_code,
            error_message=draft.error_message,
            context=dict(draft.context),
            metadata=dict(draft.metadata),
            prior_chain_value=prior_chain_value,
            chain_value="",
        )
        chain_value = self.compute_chain_value(unsigned, prior_chain_value)
        event = unsigned.model_copy(update={"chain_value": chain_value})
        return event, chain_value

    def verify(self, event: AuditEvent, expected_prior_chain_value: str) -> bool:
        """Recompute an event's chain value against its expected predecessor."""
        try:
            computed = self.compute_chain_value(event, expected_prior_chain_value)
        except ValueError:
            return False

        link_ok = tags_equal(event.prior_chain_value, expected_prior_chain_value)
        value_ok = tags_equal(computed, event.chain_value)
        return link_ok and value_ok

    def sign(self, message: bytes) -> str:
        """MAC arbitrary bytes with the chain key (retention anchors)."""
        return compute_tag(self._key, message)


class ChainCursor:
    """Walks events in sequence order, checking every link.

    Raises TamperDetectedError on a sequence gap, a broken link or a
    chain value that does not re-derive.
    """

    def __init__(
        self,
        chain: IntegrityChain,
        expected_prior_chain_value: str,
        expected_sequence: int,
    ):
        self.chain = chain
        self.prior_chain_value = expected_prior_chain_value
        self.next_sequence = expected_sequence
        self.verified = 0

    def advance(self, event: AuditEvent, segment_index: int | None = None) -> None:
        if event.sequence_number != self.next_sequence:
            logger.critical(
                "Audit chain sequence gap: expected=%d got=%d",
                self.next_sequence,
                event.sequence_number,
            )
            raise TamperDetectedError(
                f"sequence gap, expected {self.next_sequence}",
                event.sequence_number,
                segment_index,
            )

        if not self.chain.verify(event, self.prior_chain_value):
            logger.critical(
                "Audit chain break: seq=%d prior=%s",
                event.sequence_number,
                self.prior_chain_value[:16],
            )
            raise TamperDetectedError(
                "chain value mismatch",
                event.sequence_number,
                segment_index,
            )

        self.prior_chain_value = event.chain_value
        self.next_sequence += 1
        self.verified += 1
