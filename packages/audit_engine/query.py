"""Query and filter engine.

Reads envelopes in sequence order, opens each one and re-verifies its
chain link against the previous event of the same pass before it is
yielded. Any failure aborts the pass with TamperDetectedError; events
are never silently skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Iterator

from packages.audit_engine.chain import ChainCursor
from packages.audit_engine.errors import TamperDetectedError
from packages.audit_engine.models import (
    AuditEvent,
    ChainStatus,
    EventType,
    RiskLevel,
    ensure_utc,
)
from packages.audit_engine.store import AppendOnlyStore, SegmentInfo

logger = logging.getLogger(__name__)

TamperHandler = Callable[[TamperDetectedError], None]


class EventStream:
    """Lazy, forward-only, restartable sequence of verified events.

    Each `iter()` starts a fresh verification pass. Stopping early
    leaves later envelopes unread.
    """

    def __init__(
        self,
        engine: QueryEngine,
        start: datetime | None,
        end: datetime | None,
        event_types: frozenset[EventType] | None,
        risk_levels: frozenset[RiskLevel] | None,
    ):
        self._engine = engine
        self.start = start
        self.end = end
        self.event_types = event_types
        self.risk_levels = risk_levels

    def __iter__(self) -> Iterator[AuditEvent]:
        try:
            yield from self._engine._iter_verified(
                self.start, self.end, self.event_types, self.risk_levels
            )
        except TamperDetectedError as e:
            self._engine.report_tamper(e)
            raise

    def collect(self) -> list[AuditEvent]:
        """Materialise the whole range: every event or an exception, never part."""
        return list(self)


class QueryEngine:
    """Filters decrypted, chain-verified events by time, type and risk.

    Usage:
        engine = QueryEngine(store)
        for event in engine.query(start, end, risk_levels=[RiskLevel.HIGH]):
            ...
    """

    def __init__(self, store: AppendOnlyStore):
        self.store = store
        self._tamper_handlers: list[TamperHandler] = []

    def add_tamper_handler(self, handler: TamperHandler) -> None:
        """Register a callback run whenever a pass detects tampering."""
        self._tamper_handlers.append(handler)

    def report_tamper(self, error: TamperDetectedError) -> None:
        logger.critical("AUDIT TAMPER DETECTED: %s", error.message)
        for handler in list(self._tamper_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Tamper handler failed")

    def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: Iterable[EventType] | None = None,
        risk_levels: Iterable[RiskLevel] | None = None,
    ) -> EventStream:
        """Build a lazy stream of events with start <= timestamp <= end."""
        start = ensure_utc(start) if start else None
        end = ensure_utc(end) if end else None
        if start and end and start > end:
            raise ValueError("Query start must not be after end")

        return EventStream(
            self,
            start,
            end,
            frozenset(EventType(t) for t in event_types) if event_types is not None else None,
            frozenset(RiskLevel(r) for r in risk_levels) if risk_levels is not None else None,
        )

    def _check_tail(self, found_last: int, expected_last: int) -> None:
        """Every committed sequence up to the store's last one must be present."""
        if found_last < expected_last:
            logger.critical(
                "Audit log truncated: last committed=%d last found=%d",
                expected_last,
                found_last,
            )
            raise TamperDetectedError(
                f"committed events missing after sequence {found_last}",
                found_last + 1,
            )

    def _iter_verified(
        self,
        start: datetime | None,
        end: datetime | None,
        event_types: frozenset[EventType] | None,
        risk_levels: frozenset[RiskLevel] | None,
    ) -> Iterator[AuditEvent]:
        # Snapshot before listing, so in-flight appends only add records
        expected_last = self.store.last_sequence
        segments = [info for info in self.store.segments() if not info.is_empty]
        self._check_tail(
            segments[-1].last_sequence if segments else self.store.retained_floor,
            expected_last,
        )

        # Envelope creation instants never precede event timestamps, so a
        # segment whose newest envelope is before `start` holds nothing in range
        if start is not None:
            segments = [info for info in segments if info.last_created_at >= start]
        if not segments:
            return

        first = segments[0]
        cursor = ChainCursor(
            self.store.chain,
            self.store.predecessor_chain_value(first.index),
            first.first_sequence,
        )

        for info in segments:
            for envelope in self.store.iter_segment(info.index):
                event = self.store.open_envelope(envelope, info.index)
                cursor.advance(event, info.index)

                # Timestamps are non-decreasing in sequence order
                if end is not None and event.timestamp > end:
                    return
                if start is not None and event.timestamp < start:
                    continue
                if event_types is not None and event.event_type not in event_types:
                    continue
                if risk_levels is not None and event.risk_level not in risk_levels:
                    continue
                yield event

        self._check_tail(cursor.next_sequence - 1, expected_last)

    def verify_chain(self) -> ChainStatus:
        """Walk every retained envelope and re-derive each chain value."""
        expected_last = self.store.last_sequence
        segments: list[SegmentInfo] = []
        first_sequence: int | None = None
        cursor = ChainCursor(self.store.chain, "", 1)

        try:
            segments = self.store.segments()
            non_empty = [info for info in segments if not info.is_empty]
            if not non_empty:
                self._check_tail(self.store.retained_floor, expected_last)
                return ChainStatus(
                    total_events=0,
                    first_sequence=None,
                    last_sequence=expected_last,
                    segments=len(segments),
                    valid=True,
                )

            first_sequence = non_empty[0].first_sequence
            cursor.next_sequence = first_sequence
            cursor.prior_chain_value = self.store.predecessor_chain_value(non_empty[0].index)
            for info in non_empty:
                for envelope in self.store.iter_segment(info.index):
                    cursor.advance(self.store.open_envelope(envelope, info.index), info.index)
            self._check_tail(cursor.next_sequence - 1, expected_last)
        except TamperDetectedError as e:
            self.report_tamper(e)
            return ChainStatus(
                total_events=cursor.verified,
                first_sequence=first_sequence,
                last_sequence=expected_last,
                segments=len(segments),
                valid=False,
                error_message=e.message,
            )

        logger.info(
            "Chain verification passed: events=%d segments=%d",
            cursor.verified,
            len(segments),
        )
        return ChainStatus(
            total_events=cursor.verified,
            first_sequence=first_sequence,
            last_sequence=cursor.next_sequence - 1,
            segments=len(segments),
            valid=True,
        )
