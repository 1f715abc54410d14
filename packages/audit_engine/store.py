"""Append-only segmented audit store.

`append` is the single serialization point of the engine: it assigns
the next sequence number, stamps the event into the integrity chain,
seals it, persists the envelope and only then advances the running
chain state. Rotation and retention operate on whole segments.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from pydantic import TypeAdapter, ValidationError

from packages.audit_engine.alerts import AlertDispatcher
from packages.audit_engine.chain import GENESIS_CHAIN_VALUE, IntegrityChain, tags_equal
from packages.audit_engine.envelope import EnvelopeCipher
from packages.audit_engine.config import COMPLIANCE_FLOOR_DAYS
from packages.audit_engine.errors import (
    RetentionViolationError,
    StorageContentionError,
    StorageError,
    TamperDetectedError,
)
from packages.audit_engine.models import (
    AuditEvent,
    EncryptedEnvelope,
    EventDraft,
    RetentionAnchor,
    ensure_utc,
    to_epoch_micros,
    utc_now,
)
from packages.audit_engine.storage import SegmentStorage

logger = logging.getLogger(__name__)

RotationCallback = Callable[[int, int], None]

_ANCHOR_LIST = TypeAdapter(list[RetentionAnchor])


@dataclass(frozen=True)
class SegmentInfo:
    """Bounds of one segment, read from envelope headers (no decryption)."""

    index: int
    sealed: bool
    size_bytes: int
    record_count: int
    first_sequence: int | None
    last_sequence: int | None
    first_created_at: datetime | None
    last_created_at: datetime | None

    @property
    def is_empty(self) -> bool:
        return self.record_count == 0


@dataclass(frozen=True)
class ChainState:
    """Running chain state owned by the store."""

    last_sequence: int
    last_chain_value: str
    last_timestamp: datetime | None
    last_created_at: datetime | None


@dataclass(frozen=True)
class PurgeResult:
    """Outcome of a retention purge."""

    erased_segments: list[int]
    events_removed: int
    cutoff: datetime


def parse_envelope(record: bytes, segment_index: int | None = None) -> EncryptedEnvelope:
    """Decode one stored record; malformed records count as tampering."""
    try:
        return EncryptedEnvelope.model_validate_json(record)
    except ValidationError as e:
        raise TamperDetectedError("unreadable envelope record", None, segment_index) from e


class AppendOnlyStore:
    """Ordered, segmented persistence of encrypted envelopes.

    Usage:
        store = AppendOnlyStore(storage, chain, cipher, max_segment_bytes=1_000_000)
        seq = store.append(EventDraft(event_type=EventType.DATA_ACCESS))
        for envelope in store.read_range(1, seq):
            ...
    """

    def __init__(
        self,
        storage: SegmentStorage,
        chain: IntegrityChain,
        cipher: EnvelopeCipher,
        max_segment_bytes: int,
        alerts: AlertDispatcher | None = None,
        contention_retries: int = 5,
        retry_delay_seconds: float = 0.01,
    ):
        if max_segment_bytes <= 0:
            raise ValueError("max_segment_bytes must be positive")

        self.storage = storage
        self.chain = chain
        self.cipher = cipher
        self.max_segment_bytes = max_segment_bytes
        self.alerts = alerts or AlertDispatcher()
        self.contention_retries = contention_retries
        self.retry_delay_seconds = retry_delay_seconds

        self._append_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._segment_locks: dict[int, threading.Lock] = {}
        self._info_cache: dict[int, SegmentInfo] = {}
        self._rotation_callbacks: list[RotationCallback] = []

        self._active_segment = 0
        self._active_bytes = 0
        self._state = ChainState(0, GENESIS_CHAIN_VALUE, None, None)
        self._anchors: list[RetentionAnchor] = []
        self._purge_lock = threading.Lock()
        self.recovery_tamper: TamperDetectedError | None = None

        self._recover()

    # =========================================================================
    # Startup recovery
    # =========================================================================

    def _recover(self) -> None:
        """Re-derive chain state from the last persisted envelope."""
        self._anchors = self._load_anchors()
        segments = self.storage.list_segments()

        if not segments:
            self._open_segment(1)
            if self._anchors:
                newest = self._anchors[-1]
                self._state = ChainState(
                    newest.sequence_number, newest.chain_value, None, None
                )
            logger.info("Audit store initialized empty, segment=1")
            return

        recover_tail = getattr(self.storage, "recover", None)
        if recover_tail is not None:
            recover_tail(segments[-1])

        tampered = False
        for index in reversed(segments):
            record = self.storage.last_record(index)
            if record is None:
                continue
            try:
                self._state = self._state_from_record(record, index)
            except TamperDetectedError as e:
                logger.critical("Tampered tail found on startup: %s", e.message)
                self.recovery_tamper = e
                self._state = self._salvage_state(segments)
                tampered = True
            break
        else:
            if self._anchors:
                newest = self._anchors[-1]
                self._state = ChainState(
                    newest.sequence_number, newest.chain_value, None, None
                )

        active = segments[-1]
        if tampered:
            # Never append after a record that fails verification
            if not self.storage.is_sealed(active):
                self.storage.seal(active)
            self._open_segment(active + 1)
        elif self.storage.is_sealed(active):
            # Crashed between sealing and opening the next segment
            active += 1
            self._open_segment(active)
        else:
            self._active_segment = active
            self._active_bytes = self.storage.size(active)

        logger.info(
            "Audit store recovered: segments=%d active=%d last_seq=%d",
            len(segments),
            self._active_segment,
            self._state.last_sequence,
        )

    def _state_from_record(self, record: bytes, index: int) -> ChainState:
        envelope = parse_envelope(record, index)
        event = self.cipher.open(envelope, index)
        if not self.chain.verify(event, event.prior_chain_value):
            raise TamperDetectedError(
                "last persisted event fails its own chain check",
                event.sequence_number,
                index,
            )
        return ChainState(
            event.sequence_number,
            event.chain_value,
            event.timestamp,
            envelope.created_at,
        )

    def _salvage_state(self, segments: list[int]) -> ChainState:
        """Chain state after a tampered tail.

        Continues from the newest event that still verifies on its own,
        numbered past every sequence seen in a readable envelope header
        so no sequence number is issued twice.
        """
        highest = 0
        newest_created: datetime | None = None

        for index in reversed(segments):
            for record in reversed(list(self.storage.read(index))):
                try:
                    envelope = parse_envelope(record, index)
                except TamperDetectedError:
                    continue
                highest = max(highest, envelope.sequence_number)
                if newest_created is None or envelope.created_at > newest_created:
                    newest_created = envelope.created_at

                try:
                    state = self._state_from_record(record, index)
                except TamperDetectedError:
                    continue
                return ChainState(
                    max(highest, state.last_sequence),
                    state.last_chain_value,
                    state.last_timestamp,
                    max(newest_created, state.last_created_at),
                )

        if self._anchors:
            newest = self._anchors[-1]
            return ChainState(
                max(highest, newest.sequence_number), newest.chain_value, None, newest_created
            )
        return ChainState(highest, GENESIS_CHAIN_VALUE, None, newest_created)

    def _open_segment(self, index: int) -> None:
        self.storage.create_segment(index)
        self._active_segment = index
        self._active_bytes = 0

    # =========================================================================
    # Locks and state
    # =========================================================================

    def _segment_lock(self, index: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._segment_locks.get(index)
            if lock is None:
                lock = threading.Lock()
                self._segment_locks[index] = lock
            return lock

    @property
    def state(self) -> ChainState:
        return self._state

    @property
    def last_sequence(self) -> int:
        return self._state.last_sequence

    @property
    def last_chain_value(self) -> str:
        return self._state.last_chain_value

    @property
    def active_segment(self) -> int:
        return self._active_segment

    def add_rotation_callback(self, callback: RotationCallback) -> None:
        """Register a callback invoked (old_index, new_index) after rotation."""
        self._rotation_callbacks.append(callback)

    # =========================================================================
    # Append
    # =========================================================================

    def append(self, draft: EventDraft) -> int:
        """Commit one event and return its sequence number.

        Raises:
            EncryptionError: nothing persisted, state unchanged
            StorageError: nothing persisted, state unchanged
        """
        rotations: list[tuple[int, int]] = []

        with self._append_lock:
            attempt = 0
            while True:
                try:
                    event = self._append_locked(draft, rotations)
                    break
                except StorageContentionError:
                    if attempt >= self.contention_retries:
                        raise
                    time.sleep(self.retry_delay_seconds * (2 ** attempt))
                    attempt += 1

        # Post-commit notifications run outside the critical section
        for old_index, new_index in rotations:
            for callback in list(self._rotation_callbacks):
                try:
                    callback(old_index, new_index)
                except Exception:
                    logger.warning("Rotation callback failed", exc_info=True)

        self.alerts.dispatch(event)
        return event.sequence_number

    def _append_locked(self, draft: EventDraft, rotations: list[tuple[int, int]]) -> AuditEvent:
        state = self._state
        sequence = state.last_sequence + 1

        # Clock skew must never reorder the chain
        timestamp = draft.timestamp
        if state.last_timestamp is not None and timestamp < state.last_timestamp:
            timestamp = state.last_timestamp
        # created_at bounds the segment's event timestamps from above
        created_at = max(utc_now(), timestamp)
        if state.last_created_at is not None and created_at < state.last_created_at:
            created_at = state.last_created_at

        event, chain_value = self.chain.stamp(
            draft, state.last_chain_value, sequence, timestamp
        )
        envelope = self.cipher.seal(event, created_at)
        record = envelope.model_dump_json().encode("utf-8")
        record_size = len(record) + 1

        rotated = self._rotate_locked(record_size)
        if rotated is not None:
            rotations.append(rotated)

        index = self._active_segment
        with self._segment_lock(index):
            self.storage.append(index, record)

        # Commit: advance state only after successful persistence
        self._active_bytes += record_size
        self._state = ChainState(sequence, chain_value, event.timestamp, created_at)

        logger.debug(
            "Appended audit event: seq=%d type=%s segment=%d chain=%s",
            sequence,
            event.event_type.value,
            index,
            chain_value[:16] + "...",
        )
        return event

    # =========================================================================
    # Rotation
    # =========================================================================

    def rotate_if_needed(self, incoming_bytes: int = 0, force: bool = False) -> bool:
        """Open a new segment if the active one would exceed its bound.

        Returns:
            True if a rotation happened
        """
        with self._append_lock:
            rotated = self._rotate_locked(incoming_bytes, force)

        if rotated is None:
            return False
        for callback in list(self._rotation_callbacks):
            try:
                callback(*rotated)
            except Exception:
                logger.warning("Rotation callback failed", exc_info=True)
        return True

    def _rotate_locked(self, incoming_bytes: int, force: bool = False) -> tuple[int, int] | None:
        if self._active_bytes == 0:
            return None
        if not force and self._active_bytes + incoming_bytes <= self.max_segment_bytes:
            return None

        old_index = self._active_segment
        with self._segment_lock(old_index):
            self.storage.seal(old_index)
        self._open_segment(old_index + 1)

        logger.info(
            "Rotated audit segment: sealed=%d active=%d",
            old_index,
            self._active_segment,
        )
        return old_index, self._active_segment

    # =========================================================================
    # Reading
    # =========================================================================

    def _snapshot(self, index: int) -> list[bytes]:
        with self._segment_lock(index):
            return list(self.storage.read(index))

    def iter_segment(self, index: int) -> Iterator[EncryptedEnvelope]:
        """Envelopes of one segment in append order."""
        for record in self._snapshot(index):
            yield parse_envelope(record, index)

    def segment_info(self, index: int) -> SegmentInfo:
        cached = self._info_cache.get(index)
        if cached is not None:
            return cached

        records = self._snapshot(index)
        sealed = self.storage.is_sealed(index)
        if records:
            first = parse_envelope(records[0], index)
            last = parse_envelope(records[-1], index)
            bounds = (first.sequence_number, last.sequence_number, first.created_at, last.created_at)
        else:
            bounds = (None, None, None, None)

        info = SegmentInfo(
            index,
            sealed,
            sum(len(r) + 1 for r in records),
            len(records),
            *bounds,
        )
        if sealed:
            self._info_cache[index] = info
        return info

    def segments(self) -> list[SegmentInfo]:
        return [self.segment_info(index) for index in self.storage.list_segments()]

    def read_range(self, from_sequence: int = 1, to_sequence: int | None = None) -> Iterator[EncryptedEnvelope]:
        """Envelopes with from_sequence <= seq <= to_sequence, ascending."""
        upper = to_sequence if to_sequence is not None else self._state.last_sequence

        for index in self.storage.list_segments():
            info = self.segment_info(index)
            if info.is_empty or info.last_sequence < from_sequence:
                continue
            if info.first_sequence > upper:
                break
            for envelope in self.iter_segment(index):
                if envelope.sequence_number < from_sequence:
                    continue
                if envelope.sequence_number > upper:
                    return
                yield envelope

    def open_envelope(self, envelope: EncryptedEnvelope, segment_index: int | None = None) -> AuditEvent:
        return self.cipher.open(envelope, segment_index)

    def predecessor_chain_value(self, segment_index: int) -> str:
        """Chain value the first event of a segment must link to.

        Uses the last event of the preceding segment, the retention
        anchor when that segment was purged, or genesis.
        """
        indices = self.storage.list_segments()
        info = self.segment_info(segment_index)
        first_sequence = info.first_sequence or (self._state.last_sequence + 1)

        if first_sequence == 1:
            return GENESIS_CHAIN_VALUE

        position = indices.index(segment_index)
        for previous in reversed(indices[:position]):
            record = self.storage.last_record(previous)
            if record is None:
                continue
            envelope = parse_envelope(record, previous)
            event = self.cipher.open(envelope, previous)
            if not self.chain.verify(event, event.prior_chain_value):
                raise TamperDetectedError("predecessor fails its chain check", event.sequence_number, previous)
            return event.chain_value

        anchor = self.anchor_for(first_sequence - 1)
        if anchor is None:
            raise TamperDetectedError(
                "no trusted predecessor for first retained event",
                first_sequence,
                segment_index,
            )
        return anchor.chain_value

    # =========================================================================
    # Retention
    # =========================================================================

    def _anchor_message(self, sequence_number: int, chain_value: str, purged_at: datetime) -> bytes:
        return f"anchor:{sequence_number}:{chain_value}:{to_epoch_micros(purged_at)}".encode("ascii")

    def _load_anchors(self) -> list[RetentionAnchor]:
        raw = self.storage.load_anchor()
        if not raw:
            return []
        try:
            anchors = _ANCHOR_LIST.validate_json(raw)
        except ValidationError as e:
            raise TamperDetectedError("retention anchor unreadable") from e

        for anchor in anchors:
            expected = self.chain.sign(
                self._anchor_message(anchor.sequence_number, anchor.chain_value, anchor.last_purged_at)
            )
            if not tags_equal(expected, anchor.tag):
                logger.critical("Retention anchor tag mismatch: seq=%d", anchor.sequence_number)
                raise TamperDetectedError("retention anchor tag mismatch", anchor.sequence_number)
        return anchors

    def _save_anchors(self) -> None:
        self.storage.save_anchor(_ANCHOR_LIST.dump_json(self._anchors))

    def anchor_for(self, sequence_number: int) -> RetentionAnchor | None:
        for anchor in self._anchors:
            if anchor.sequence_number == sequence_number:
                return anchor
        return None

    def purge_expired(self, retention_days: int, now: datetime | None = None) -> PurgeResult:
        """Securely erase sealed segments whose newest envelope is past retention.

        Purge passes run one at a time. Within a pass only the segment
        being erased is locked; appends to the active segment continue
        meanwhile.

        Raises:
            RetentionViolationError: retention_days is below the compliance floor
        """
        if retention_days < COMPLIANCE_FLOOR_DAYS:
            raise RetentionViolationError(retention_days, COMPLIANCE_FLOOR_DAYS)

        with self._purge_lock:
            return self._purge_locked(retention_days, now)

    def _purge_locked(self, retention_days: int, now: datetime | None) -> PurgeResult:
        now = ensure_utc(now) if now else utc_now()
        cutoff = now - timedelta(days=retention_days)
        erased: list[int] = []
        removed = 0

        # A fully expired active segment is sealed so it becomes eligible
        active = self.segment_info(self._active_segment)
        if not active.is_empty and active.last_created_at < cutoff:
            self.rotate_if_needed(force=True)

        for index in self.storage.list_segments():
            if index == self._active_segment:
                break
            info = self.segment_info(index)
            if not info.sealed or info.is_empty:
                break
            if info.last_created_at >= cutoff:
                break

            with self._segment_lock(index):
                record = self.storage.last_record(index)
                if record is None:
                    # Already gone
                    self._info_cache.pop(index, None)
                    continue
                envelope = parse_envelope(record, index)
                event = self.cipher.open(envelope, index)
                anchor = RetentionAnchor(
                    sequence_number=event.sequence_number,
                    chain_value=event.chain_value,
                    last_purged_at=now,
                    tag=self.chain.sign(
                        self._anchor_message(event.sequence_number, event.chain_value, now)
                    ),
                )
                # Anchor first: a crash after this leaves an extra anchor, not a gap
                if self.anchor_for(anchor.sequence_number) is None:
                    self._anchors.append(anchor)
                    self._save_anchors()
                self.storage.erase(index)

            self._info_cache.pop(index, None)
            erased.append(index)
            removed += info.record_count

        if erased:
            remaining = self.storage.list_segments()
            first_kept = self.segment_info(remaining[0]).first_sequence if remaining else None
            if first_kept is not None:
                self._anchors = [a for a in self._anchors if a.sequence_number >= first_kept - 1]
                self._save_anchors()
            logger.info(
                "Retention purge erased segments=%s events=%d cutoff=%s",
                erased,
                removed,
                cutoff.isoformat(),
            )

        return PurgeResult(erased, removed, cutoff)

    @property
    def retained_floor(self) -> int:
        """Sequence number of the newest event removed by retention (0 if none)."""
        return self._anchors[-1].sequence_number if self._anchors else 0
