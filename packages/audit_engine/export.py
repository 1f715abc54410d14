"""Compliance export engine.

Produces signed reports for a time window. The report's integrity tag
is an HMAC-SHA256, keyed with the report-signing key, over the
canonical JSON of every other report field. No key material is ever
written into a report.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Iterable

from packages.audit_engine.chain import compute_tag, tags_equal
from packages.audit_engine.errors import ExportIntegrityError
from packages.audit_engine.keys import KeyRing
from packages.audit_engine.models import (
    AuditEvent,
    ComplianceReport,
    ComplianceSummary,
    EventType,
    ReportPeriod,
    RiskLevel,
    ensure_utc,
)
from packages.audit_engine.query import QueryEngine

logger = logging.getLogger(__name__)


def summarize(events: Iterable[AuditEvent]) -> ComplianceSummary:
    """Compute report aggregates in a single pass."""
    summary = ComplianceSummary()
    users: set[str] = set()
    sessions: set[str] = set()

    for event in events:
        summary.total_events += 1

        # By type
        event_type = event.event_type.value
        summary.events_by_type[event_type] = summary.events_by_type.get(event_type, 0) + 1

        # By risk
        risk = event.risk_level.value
        summary.events_by_risk[risk] = summary.events_by_risk.get(risk, 0) + 1

        # By result
        result = event.result.value
        summary.events_by_result[result] = summary.events_by_result.get(result, 0) + 1

        if event.risk_level.is_at_least(RiskLevel.HIGH):
            summary.high_risk_events += 1
        if event.result.is_failed:
            summary.failed_operations += 1
        if event.user_id:
            users.add(event.user_id)
        if event.session_id:
            sessions.add(event.session_id)

    summary.unique_users = len(users)
    summary.unique_sessions = len(sessions)
    return summary


def canonical_report_bytes(report: ComplianceReport) -> bytes:
    """Deterministic serialisation of everything except the integrity tag."""
    content = report.model_dump(mode="json", by_alias=True, exclude={"integrity_tag"})
    return json.dumps(
        content, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class ComplianceExporter:
    """Builds and verifies signed compliance reports.

    Usage:
        exporter = ComplianceExporter(QueryEngine(store), keyring)
        report = exporter.export(start, end, risk_levels=[RiskLevel.HIGH])
        exporter.verify_report(report)
    """

    EXPORT_FORMAT = "JSON"

    def __init__(
        self,
        query_engine: QueryEngine,
        keyring: KeyRing,
        generator: str = "Audit Engine v1.0",
        compliance_standards: str = "SOC2, HIPAA",
    ):
        self.query_engine = query_engine
        self.keyring = keyring
        self.generator = generator
        self.compliance_standards = compliance_standards

    def export(
        self,
        window_start: datetime,
        window_end: datetime,
        event_types: Iterable[EventType] | None = None,
        risk_levels: Iterable[RiskLevel] | None = None,
        generated_by: str = "system",
    ) -> ComplianceReport:
        """Generate a signed report for events inside the window.

        Raises:
            TamperDetectedError: the underlying range failed verification
        """
        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)
        # Plain strings are accepted for either filter
        event_types = [EventType(t) for t in event_types] if event_types is not None else None
        risk_levels = [RiskLevel(r) for r in risk_levels] if risk_levels is not None else None

        events = self.query_engine.query(
            window_start, window_end, event_types, risk_levels
        ).collect()

        filters: dict[str, list[str]] = {}
        if event_types is not None:
            filters["event_types"] = sorted(t.value for t in event_types)
        if risk_levels is not None:
            filters["risk_levels"] = sorted(r.value for r in risk_levels)

        report = ComplianceReport(
            report_period=ReportPeriod(from_=window_start, to=window_end),
            events=events,
            summary=summarize(events),
            metadata={
                "total_events": str(len(events)),
                "generator": self.generator,
                "generated_by": generated_by,
                "compliance_standards": self.compliance_standards,
                "export_format": self.EXPORT_FORMAT,
            },
            filters_applied=filters,
            key_version=self.keyring.current_version,
        )
        report = report.model_copy(update={"integrity_tag": self._tag(report)})

        logger.info(
            "Compliance report generated: id=%s events=%d high_risk=%d",
            report.report_id,
            report.summary.total_events,
            report.summary.high_risk_events,
        )
        return report

    def _tag(self, report: ComplianceReport) -> str:
        key = self.keyring.report_key(report.key_version)
        return compute_tag(key, canonical_report_bytes(report))

    def verify_report(self, report: ComplianceReport) -> bool:
        """Re-check a report's integrity tag.

        Raises:
            ExportIntegrityError: the report was altered after export
        """
        if not report.integrity_tag:
            raise ExportIntegrityError("Report carries no integrity tag")

        if not tags_equal(self._tag(report), report.integrity_tag):
            logger.critical("Compliance report integrity failure: id=%s", report.report_id)
            raise ExportIntegrityError()
        return True

    @staticmethod
    def to_json(report: ComplianceReport, indent: int | None = 2) -> str:
        return report.model_dump_json(by_alias=True, indent=indent)

    def load_and_verify(self, data: str | bytes) -> ComplianceReport:
        """Parse an exported report and verify it before returning it."""
        report = ComplianceReport.model_validate_json(data)
        self.verify_report(report)
        return report
