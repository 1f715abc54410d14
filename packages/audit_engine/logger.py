"""Audit logger façade.

Wires keys, chain, envelope cipher, store, alerts, query and export
into one engine instance and exposes the caller-facing logging
methods. Construct one per installation and pass it to whoever needs
to record events; there is no module-level singleton.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from packages.audit_engine.alerts import AlertDispatcher, AlertListener, LoggingAlertListener
from packages.audit_engine.chain import IntegrityChain
from packages.audit_engine.config import AuditSettings
from packages.audit_engine.envelope import EnvelopeCipher
from packages.audit_engine.errors import SensitiveContextError, TamperDetectedError
from packages.audit_engine.export import ComplianceExporter
from packages.audit_engine.keys import KeyRing, RootSecretProvider
from packages.audit_engine.models import (
    AuditEvent,
    ChainStatus,
    ComplianceReport,
    EventDraft,
    EventType,
    OperationResult,
    RiskLevel,
)
from packages.audit_engine.query import EventStream, QueryEngine
from packages.audit_engine.storage import SegmentStorage, get_segment_storage
from packages.audit_engine.store import AppendOnlyStore, PurgeResult

logger = logging.getLogger(__name__)

# The chain key is derived once per installation and never rotated;
# rotating it would orphan every chain value already on disk.
CHAIN_KEY_VERSION = 1

AUDIT_VERSION = "1.0"


def hash_device_id(installation_id: str) -> str:
    """SHA-256 of the installation identifier, so the raw id never lands in a log."""
    return hashlib.sha256(installation_id.encode("utf-8")).hexdigest()


class AuditLogger:
    """Tamper-evident, encrypted audit logging engine.

    Usage:
        settings = AuditSettings(storage_path="/var/lib/app/audit")
        audit = AuditLogger(settings, EnvironmentSecretProvider())

        audit.log_authentication(
            EventType.AUTHENTICATION_FAILURE,
            user_id="user-42",
            result=OperationResult.FAILURE,
            method="password",
        )

        report = audit.export_compliance_report(start, end)
        audit.close()
    """

    def __init__(
        self,
        settings: AuditSettings,
        secret_provider: RootSecretProvider,
        storage: SegmentStorage | None = None,
        listeners: list[AlertListener] | None = None,
        installation_id: str | None = None,
    ):
        self.settings = settings
        self.keyring = KeyRing(secret_provider, settings.key_version)
        self.chain = IntegrityChain(self.keyring.chain_key(CHAIN_KEY_VERSION))
        self.cipher = EnvelopeCipher(self.keyring)
        if listeners is None:
            listeners = [LoggingAlertListener()]
        self.alerts = AlertDispatcher(
            listeners,
            threshold=settings.alert_threshold,
            enabled=settings.enable_realtime_alerts,
        )

        if storage is None:
            storage = get_segment_storage(settings.storage_backend, settings.storage_path)
        self.store = AppendOnlyStore(
            storage,
            self.chain,
            self.cipher,
            settings.max_segment_bytes,
            alerts=self.alerts,
        )
        self.queries = QueryEngine(self.store)
        self.exporter = ComplianceExporter(
            self.queries,
            self.keyring,
            generator=settings.report_generator,
            compliance_standards=settings.compliance_standards,
        )

        self.session_id = str(uuid4())
        self.device_id = hash_device_id(installation_id or str(uuid4()))
        self._closed = False

        # Engine-originated events must not re-enter themselves
        # (a maintenance event can itself trigger a rotation)
        self._internal = threading.local()

        self.store.add_rotation_callback(self._on_rotation)
        self.queries.add_tamper_handler(self._on_tamper)

        # Recovery already moved writes to a fresh segment; record the incident there
        if self.store.recovery_tamper is not None:
            self.queries.report_tamper(self.store.recovery_tamper)

        if settings.log_lifecycle_events:
            self._log_internal(
                EventType.SYSTEM_STARTUP,
                {"app_launch": "true", "last_sequence": str(self.store.last_sequence)},
            )

        logger.info(
            "Audit logger started: session=%s last_seq=%d",
            self.session_id,
            self.store.last_sequence,
        )

    # =========================================================================
    # Context
    # =========================================================================

    def _check_context(self, details: dict[str, Any]) -> None:
        if not self.settings.reject_sensitive_context:
            return
        offending = [key for key in details if self.settings.is_sensitive_key(key)]
        if offending:
            logger.warning("Rejected audit event carrying sensitive keys: %s", sorted(offending))
            raise SensitiveContextError(offending)

    def _build_context(self, details: dict[str, Any] | None, **typed: Any) -> dict[str, str]:
        details = details or {}
        self._check_context(details)
        self._check_context(typed)

        context = {str(k): str(v) for k, v in details.items()}
        for key, value in typed.items():
            if value is not None:
                context[key] = str(value)
        context["device_id"] = self.device_id
        context["session_id"] = self.session_id
        return context

    @staticmethod
    def _compliance_metadata() -> dict[str, str]:
        return {
            "compliance_relevant": "true",
            "retention_required": "true",
            "encryption_level": "AES256",
            "integrity_protected": "true",
            "audit_version": AUDIT_VERSION,
        }

    # =========================================================================
    # Logging methods
    # =========================================================================

    def log_event(
        self,
        event_type: EventType,
        result: OperationResult = OperationResult.SUCCESS,
        user_id: str | None = None,
        operation: str = "system",
        resource: str | None = None,
        details: dict[str, Any] | None = None,
        risk_level: RiskLevel | None = None,
        duration_ms: float | None = None,
        error: BaseException | None = None,
        timestamp: datetime | None = None,
        **typed: Any,
    ) -> int:
        """Record one event and return its sequence number.

        `risk_level` defaults to the event type's risk. Context keys
        configured as sensitive are rejected before anything is written.

        Raises:
            SensitiveContextError: details carry a sensitive key
            EncryptionError: the envelope could not be sealed
            StorageError: the envelope could not be persisted
        """
        draft_fields: dict[str, Any] = {}
        if timestamp is not None:
            draft_fields["timestamp"] = timestamp
        if error is not None:
            draft_fields["error_code"] = str(getattr(error, "code", type(error).__name__))
            draft_fields["error_message"] = str(error)

        draft = EventDraft(
            event_type=event_type,
            result=result,
            risk_level=risk_level,
            user_id=user_id,
            session_id=self.session_id,
            operation=operation,
            resource=resource,
            duration_ms=duration_ms,
            context=self._build_context(details, **typed),
            metadata=self._compliance_metadata(),
            **draft_fields,
        )
        return self.store.append(draft)

    def log_authentication(
        self,
        event_type: EventType,
        user_id: str | None,
        result: OperationResult,
        method: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        """Log an authentication attempt, success, failure or lockout."""
        return self.log_event(
            event_type,
            result=result,
            user_id=user_id,
            operation="authentication",
            details=details,
            authentication_method=method,
            user_provided=str(user_id is not None).lower(),
            **kwargs,
        )

    def log_credential_operation(
        self,
        event_type: EventType,
        user_id: str | None,
        result: OperationResult,
        credential_type: str,
        operation: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        """Log creation, access, modification or deletion of a credential."""
        return self.log_event(
            event_type,
            result=result,
            user_id=user_id,
            operation="credential_management",
            details=details,
            credential_type=credential_type,
            operation_type=operation,
            **kwargs,
        )

    def log_key_operation(
        self,
        event_type: EventType,
        user_id: str | None,
        result: OperationResult,
        key_type: str,
        operation: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        return self.log_event(
            event_type,
            result=result,
            user_id=user_id,
            operation="key_management",
            details=details,
            key_type=key_type,
            operation_type=operation,
            **kwargs,
        )

    def log_data_access(
        self,
        event_type: EventType,
        user_id: str | None,
        result: OperationResult,
        data_type: str,
        operation: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        return self.log_event(
            event_type,
            result=result,
            user_id=user_id,
            operation="data_access",
            details=details,
            data_type=data_type,
            operation_type=operation,
            **kwargs,
        )

    def log_security_event(
        self,
        event_type: EventType,
        user_id: str | None,
        result: OperationResult,
        threat_level: RiskLevel,
        description: str,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        """Log a security event; the threat level becomes the event's risk."""
        return self.log_event(
            event_type,
            result=result,
            user_id=user_id,
            operation="security_monitoring",
            details=details,
            risk_level=threat_level,
            threat_description=description,
            requires_investigation=str(threat_level.is_at_least(RiskLevel.HIGH)).lower(),
            **kwargs,
        )

    def log_system_event(
        self,
        event_type: EventType,
        details: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> int:
        return self.log_event(
            event_type,
            result=OperationResult.SUCCESS,
            operation="system",
            details=details,
            **kwargs,
        )

    def _log_internal(self, event_type: EventType, details: dict[str, str], **kwargs: Any) -> int | None:
        if getattr(self._internal, "active", False):
            return None
        self._internal.active = True
        try:
            return self.log_system_event(event_type, details, **kwargs)
        finally:
            self._internal.active = False

    # =========================================================================
    # Reading and export
    # =========================================================================

    def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: Iterable[EventType] | None = None,
        risk_levels: Iterable[RiskLevel] | None = None,
    ) -> EventStream:
        """Lazy stream of verified events in the window, in sequence order."""
        return self.queries.query(start, end, event_types, risk_levels)

    def export_compliance_report(
        self,
        start: datetime,
        end: datetime,
        event_types: Iterable[EventType] | None = None,
        risk_levels: Iterable[RiskLevel] | None = None,
        generated_by: str = "system",
    ) -> ComplianceReport:
        """Generate a signed compliance report.

        The export itself is recorded afterwards, so it is not part of
        the report it produced.
        """
        report = self.exporter.export(
            start, end, event_types, risk_levels, generated_by=generated_by
        )

        if self.settings.log_lifecycle_events:
            self._log_internal(
                EventType.COMPLIANCE_EXPORT,
                {
                    "report_id": report.report_id,
                    "date_range": f"{report.window_start.isoformat()} to {report.window_end.isoformat()}",
                    "event_count": str(report.summary.total_events),
                    "export_format": ComplianceExporter.EXPORT_FORMAT,
                },
                user_id=generated_by,
            )
        return report

    def verify_report(self, report: ComplianceReport) -> bool:
        """Re-check a previously exported report's integrity tag."""
        return self.exporter.verify_report(report)

    def verify_chain(self) -> ChainStatus:
        return self.queries.verify_chain()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def purge_expired(self, now: datetime | None = None) -> PurgeResult:
        """Erase whole segments older than the configured retention period."""
        result = self.store.purge_expired(self.settings.retention_days, now)

        if result.erased_segments and self.settings.log_lifecycle_events:
            self._log_internal(
                EventType.SYSTEM_MAINTENANCE,
                {
                    "maintenance_type": "retention_policy",
                    "retention_days": str(self.settings.retention_days),
                    "segments_erased": str(len(result.erased_segments)),
                    "events_removed": str(result.events_removed),
                    "cutoff": result.cutoff.isoformat(),
                },
            )
        return result

    def _on_rotation(self, old_index: int, new_index: int) -> None:
        if not self.settings.log_lifecycle_events:
            return
        self._log_internal(
            EventType.SYSTEM_MAINTENANCE,
            {
                "maintenance_type": "log_rotation",
                "sealed_segment": str(old_index),
                "active_segment": str(new_index),
            },
        )

    def _on_tamper(self, error: TamperDetectedError) -> None:
        """Record a detected tamper as a security incident in a healthy segment."""
        if getattr(self._internal, "active", False):
            return

        if error.segment_index is not None and error.segment_index == self.store.active_segment:
            self.store.rotate_if_needed(force=True)

        details = {"reason": error.message}
        if error.sequence_number is not None:
            details["sequence_number"] = str(error.sequence_number)
        if error.segment_index is not None:
            details["segment_index"] = str(error.segment_index)

        self._internal.active = True
        try:
            self.log_security_event(
                EventType.SECURITY_VIOLATION,
                user_id=None,
                result=OperationResult.FAILURE,
                threat_level=RiskLevel.CRITICAL,
                description="audit log tamper detected",
                details=details,
            )
        finally:
            self._internal.active = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Record shutdown and drop cached key material."""
        if self._closed:
            return
        if self.settings.log_lifecycle_events:
            self._log_internal(
                EventType.SYSTEM_SHUTDOWN,
                {"app_termination": "true", "last_sequence": str(self.store.last_sequence)},
            )
        self.keyring.forget()
        self._closed = True
        logger.info("Audit logger closed: session=%s", self.session_id)

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class AsyncAuditLogger:
    """Coroutine surface over AuditLogger.

    Each call runs the synchronous engine in a worker thread, so the
    event loop never blocks on storage I/O. The store serializes
    appends across threads.
    """

    def __init__(self, audit_logger: AuditLogger):
        self.audit = audit_logger

    async def log_event(self, event_type: EventType, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_event, event_type, **kwargs)

    async def log_authentication(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_authentication, *args, **kwargs)

    async def log_credential_operation(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_credential_operation, *args, **kwargs)

    async def log_key_operation(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_key_operation, *args, **kwargs)

    async def log_data_access(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_data_access, *args, **kwargs)

    async def log_security_event(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_security_event, *args, **kwargs)

    async def log_system_event(self, *args: Any, **kwargs: Any) -> int:
        return await asyncio.to_thread(self.audit.log_system_event, *args, **kwargs)

    async def query(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        event_types: Iterable[EventType] | None = None,
        risk_levels: Iterable[RiskLevel] | None = None,
    ) -> list[AuditEvent]:
        """Collected query: every event in range, or TamperDetectedError."""
        stream = self.audit.query(start, end, event_types, risk_levels)
        return await asyncio.to_thread(stream.collect)

    async def export_compliance_report(self, *args: Any, **kwargs: Any) -> ComplianceReport:
        return await asyncio.to_thread(self.audit.export_compliance_report, *args, **kwargs)

    async def verify_chain(self) -> ChainStatus:
        return await asyncio.to_thread(self.audit.verify_chain)

    async def purge_expired(self, now: datetime | None = None) -> PurgeResult:
        return await asyncio.to_thread(self.audit.purge_expired, now)

    async def close(self) -> None:
        await asyncio.to_thread(self.audit.close)


class RetentionScheduler:
    """Background scheduler running retention purges."""

    def __init__(self, audit_logger: AuditLogger, check_interval_seconds: int | None = None):
        self.audit = audit_logger
        self.check_interval = (
            check_interval_seconds
            if check_interval_seconds is not None
            else audit_logger.settings.maintenance_interval_seconds
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: PurgeResult | None = None

    def run_once(self) -> PurgeResult:
        result = self.audit.purge_expired()
        self.last_result = result
        return result

    def _run_loop(self) -> None:
        """Main scheduler loop."""
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduled retention purge failed")

            # Wakes immediately on stop()
            self._stop.wait(self.check_interval)

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self.is_running():
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="audit-retention", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the scheduler."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
