"""Tests for the query/filter engine and chain verification."""

from datetime import timedelta

import pytest

from packages.audit_engine.errors import TamperDetectedError
from packages.audit_engine.models import EventDraft, EventType, RiskLevel, utc_now
from packages.audit_engine.query import QueryEngine


@pytest.fixture
def engine(store):
    return QueryEngine(store)


def _append(store, event_type=EventType.DATA_ACCESS, risk=None, **kwargs):
    return store.append(EventDraft(event_type=event_type, risk_level=risk, **kwargs))


class TestQueryFilters:
    """Test time, type and risk filtering."""

    def test_returns_events_in_sequence_order(self, store, engine, window):
        """Test a query yields every matching event in ascending order."""
        for _ in range(5):
            _append(store)

        events = engine.query(*window).collect()

        assert [e.sequence_number for e in events] == [1, 2, 3, 4, 5]

    def test_filters_by_risk_level(self, store, engine, window):
        """Test only the requested risk levels are returned."""
        for risk in (RiskLevel.INFO, RiskLevel.LOW, RiskLevel.HIGH, RiskLevel.INFO, RiskLevel.CRITICAL):
            _append(store, risk=risk)

        events = engine.query(*window, risk_levels=[RiskLevel.HIGH, RiskLevel.CRITICAL]).collect()

        assert [e.sequence_number for e in events] == [3, 5]

    def test_filters_by_event_type(self, store, engine, window):
        """Test only the requested event types are returned."""
        _append(store, EventType.AUTHENTICATION_SUCCESS)
        _append(store, EventType.AUTHENTICATION_FAILURE)
        _append(store, EventType.DATA_ACCESS)

        events = engine.query(*window, event_types=[EventType.AUTHENTICATION_FAILURE]).collect()

        assert len(events) == 1
        assert events[0].event_type == EventType.AUTHENTICATION_FAILURE
        assert events[0].risk_level == RiskLevel.HIGH

    def test_window_bounds_are_inclusive(self, store, engine):
        """Test events exactly on start or end are included."""
        base = utc_now()
        for minutes in (0, 1, 2, 3):
            _append(store, timestamp=base + timedelta(minutes=minutes))

        events = engine.query(base + timedelta(minutes=1), base + timedelta(minutes=2)).collect()

        assert [e.sequence_number for e in events] == [2, 3]

    def test_no_filters_returns_everything(self, store, engine):
        """Test an open query returns the whole retained store."""
        for _ in range(3):
            _append(store)

        assert len(engine.query().collect()) == 3

    def test_start_after_end_rejected(self, engine):
        """Test an inverted window is a caller error."""
        now = utc_now()
        with pytest.raises(ValueError):
            engine.query(now, now - timedelta(seconds=1))

    def test_empty_store(self, engine, window):
        """Test querying an empty store yields nothing."""
        assert engine.query(*window).collect() == []

    def test_window_spans_rotation_boundary(self, make_store, memory_storage, window):
        """Test a query across several segments is complete and verified."""
        store = make_store(memory_storage, max_segment_bytes=1)
        for _ in range(6):
            _append(store)

        events = QueryEngine(store).query(*window).collect()

        assert len(store.segments()) == 6
        assert [e.sequence_number for e in events] == [1, 2, 3, 4, 5, 6]

    def test_stream_is_restartable(self, store, engine, window):
        """Test iterating a stream twice runs two full passes."""
        for _ in range(3):
            _append(store)
        stream = engine.query(*window)

        assert [e.sequence_number for e in stream] == [1, 2, 3]
        assert [e.sequence_number for e in stream] == [1, 2, 3]

    def test_plain_string_filters_accepted(self, store, engine, window):
        """Test filters given as wire values match like their enum members."""
        _append(store, EventType.AUTHENTICATION_FAILURE)
        _append(store, EventType.DATA_ACCESS, risk=RiskLevel.HIGH)
        _append(store, EventType.DATA_ACCESS, risk=RiskLevel.LOW)

        by_type = engine.query(*window, event_types=["data.access"]).collect()
        by_risk = engine.query(*window, risk_levels=["HIGH"]).collect()

        assert [e.sequence_number for e in by_type] == [2, 3]
        assert [e.sequence_number for e in by_risk] == [1, 2]

    def test_unknown_filter_value_rejected(self, engine):
        """Test a filter naming no known event type is a caller error."""
        with pytest.raises(ValueError):
            engine.query(event_types=["data.teleport"])


class TestTamperDetection:
    """Test that reads fail closed on tampering."""

    def test_corrupted_ciphertext_fails_whole_query(self, store, engine, memory_storage, window, tamper_ciphertext):
        """Test corrupting event 2 makes collect() raise with zero events returned."""
        for _ in range(3):
            _append(store)
        tamper_ciphertext(memory_storage, 1, 1)

        result = None
        with pytest.raises(TamperDetectedError) as exc_info:
            result = engine.query(*window).collect()

        assert result is None
        assert exc_info.value.sequence_number == 2

    def test_lazy_iteration_stops_at_tampered_event(self, store, engine, memory_storage, window, tamper_ciphertext):
        """Test a lazy pass yields verified events then raises, never skips."""
        for _ in range(3):
            _append(store)
        tamper_ciphertext(memory_storage, 1, 1)

        seen = []
        with pytest.raises(TamperDetectedError):
            for event in engine.query(*window):
                seen.append(event.sequence_number)

        assert seen == [1]

    def test_filtered_out_tampered_event_still_fails(self, store, engine, memory_storage, window, tamper_ciphertext):
        """Test tampering outside the filter still aborts the pass."""
        _append(store, risk=RiskLevel.INFO)
        _append(store, risk=RiskLevel.INFO)
        _append(store, risk=RiskLevel.HIGH)
        tamper_ciphertext(memory_storage, 1, 0)

        with pytest.raises(TamperDetectedError):
            engine.query(*window, risk_levels=[RiskLevel.HIGH]).collect()

    def test_deleted_event_detected(self, store, engine, memory_storage, window):
        """Test removing an envelope breaks the chain."""
        for _ in range(4):
            _append(store)
        del memory_storage._segments[1][2]

        with pytest.raises(TamperDetectedError):
            engine.query(*window).collect()

    def test_dropped_tail_detected(self, store, engine, memory_storage, window):
        """Test removing the newest envelope is caught, not read as a shorter log."""
        for _ in range(3):
            _append(store)
        memory_storage._segments[1].pop()

        with pytest.raises(TamperDetectedError) as exc:
            engine.query(*window).collect()
        assert exc.value.sequence_number == 3

        with pytest.raises(TamperDetectedError):
            engine.query().collect()

    def test_dropped_tail_detected_by_bounded_query(self, store, engine, memory_storage):
        """Test a window ending before the missing events still fails."""
        base = utc_now()
        for minutes in (0, 1, 2):
            _append(store, timestamp=base + timedelta(minutes=minutes))
        memory_storage._segments[1].pop()

        with pytest.raises(TamperDetectedError):
            engine.query(base, base + timedelta(seconds=30)).collect()

    def test_dropped_trailing_segment_detected(self, make_store, memory_storage, window):
        """Test deleting the newest segment outright is caught."""
        store = make_store(memory_storage, max_segment_bytes=1)
        for _ in range(3):
            _append(store)
        del memory_storage._segments[3]

        with pytest.raises(TamperDetectedError):
            QueryEngine(store).query(*window).collect()

    def test_reordered_events_detected(self, store, engine, memory_storage, window):
        """Test swapping two envelopes breaks the chain."""
        for _ in range(4):
            _append(store)
        records = memory_storage._segments[1]
        records[1], records[2] = records[2], records[1]

        with pytest.raises(TamperDetectedError):
            engine.query(*window).collect()

    def test_unparseable_record_detected(self, store, engine, memory_storage, window):
        """Test garbage in a segment is tampering, not a skipped line."""
        _append(store)
        _append(store)
        memory_storage._segments[1][1] = b"not an envelope"

        with pytest.raises(TamperDetectedError):
            engine.query(*window).collect()

    def test_tamper_handlers_are_notified(self, store, engine, memory_storage, window, tamper_ciphertext):
        """Test registered handlers see the detected tamper."""
        _append(store)
        _append(store)
        tamper_ciphertext(memory_storage, 1, 1)
        reported = []
        engine.add_tamper_handler(reported.append)

        with pytest.raises(TamperDetectedError):
            engine.query(*window).collect()

        assert len(reported) == 1
        assert reported[0].sequence_number == 2


class TestVerifyChain:
    """Test full-store verification."""

    def test_valid_chain_status(self, make_store, memory_storage):
        """Test a clean store verifies across segments."""
        store = make_store(memory_storage, max_segment_bytes=1)
        for _ in range(4):
            _append(store)

        status = QueryEngine(store).verify_chain()

        assert status.valid
        assert status.total_events == 4
        assert status.first_sequence == 1
        assert status.last_sequence == 4
        assert status.segments == 4
        assert status.error_message is None

    def test_empty_store_is_valid(self, engine):
        """Test an empty store has nothing to contradict."""
        status = engine.verify_chain()

        assert status.valid
        assert status.total_events == 0

    def test_tampered_chain_status(self, store, engine, memory_storage, tamper_ciphertext):
        """Test verification reports where the chain breaks."""
        for _ in range(5):
            _append(store)
        tamper_ciphertext(memory_storage, 1, 3)

        status = engine.verify_chain()

        assert not status.valid
        assert status.total_events == 3
        assert "sequence 4" in status.error_message

    def test_truncated_chain_status(self, store, engine, memory_storage):
        """Test verification fails when committed events are missing at the end."""
        for _ in range(3):
            _append(store)
        memory_storage._segments[1].pop()

        status = engine.verify_chain()

        assert not status.valid
        assert status.total_events == 2
        assert status.last_sequence == 3
        assert "sequence 3" in status.error_message

    def test_fully_truncated_store_status(self, store, engine, memory_storage):
        """Test emptying every segment does not pass as an empty store."""
        for _ in range(2):
            _append(store)
        memory_storage._segments[1].clear()

        status = engine.verify_chain()

        assert not status.valid
        assert status.total_events == 0
