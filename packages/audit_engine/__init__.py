"""Audit Engine Package.

Tamper-evident, encrypted audit logging for security and compliance
events.

Features:
- HMAC integrity chain across every event, verified on read
- AES-256-GCM envelopes bound to sequence number and key version
- Segmented append-only storage with rotation and retention purge
- Real-time alerts for high-risk events
- Signed compliance reports

Usage:
    from packages.audit_engine import AuditLogger, AuditSettings, EventType

    audit = AuditLogger(AuditSettings(), EnvironmentSecretProvider())

    # Record an event
    seq = audit.log_security_event(
        EventType.SUSPICIOUS_ACTIVITY,
        user_id="user-42",
        result=OperationResult.DENIED,
        threat_level=RiskLevel.HIGH,
        description="repeated unlock attempts",
    )

    # Read it back (fails closed on tampering)
    events = audit.query(start, end, risk_levels=[RiskLevel.HIGH]).collect()
"""

from packages.audit_engine.alerts import (
    AlertDispatcher,
    AlertListener,
    CallbackAlertListener,
    LoggingAlertListener,
)
from packages.audit_engine.config import COMPLIANCE_FLOOR_DAYS, AuditSettings
from packages.audit_engine.errors import (
    AuditError,
    EncryptionError,
    ExportIntegrityError,
    KeyUnavailableError,
    RetentionViolationError,
    SensitiveContextError,
    StorageContentionError,
    StorageError,
    TamperDetectedError,
)
from packages.audit_engine.keys import (
    EnvironmentSecretProvider,
    FileSecretProvider,
    KeyRing,
    StaticSecretProvider,
)
from packages.audit_engine.logger import AsyncAuditLogger, AuditLogger, RetentionScheduler
from packages.audit_engine.models import (
    AuditEvent,
    ChainStatus,
    ComplianceReport,
    EncryptedEnvelope,
    EventDraft,
    EventType,
    OperationResult,
    RiskLevel,
)
from packages.audit_engine.storage import FileSegmentStorage, InMemorySegmentStorage

__all__ = [
    # Engine
    "AuditLogger",
    "AsyncAuditLogger",
    "RetentionScheduler",
    "AuditSettings",
    "COMPLIANCE_FLOOR_DAYS",
    # Models
    "AuditEvent",
    "EventDraft",
    "EventType",
    "OperationResult",
    "RiskLevel",
    "EncryptedEnvelope",
    "ComplianceReport",
    "ChainStatus",
    # Keys
    "KeyRing",
    "StaticSecretProvider",
    "EnvironmentSecretProvider",
    "FileSecretProvider",
    # Storage
    "FileSegmentStorage",
    "InMemorySegmentStorage",
    # Alerts
    "AlertListener",
    "AlertDispatcher",
    "LoggingAlertListener",
    "CallbackAlertListener",
    # Errors
    "AuditError",
    "TamperDetectedError",
    "EncryptionError",
    "KeyUnavailableError",
    "StorageError",
    "StorageContentionError",
    "RetentionViolationError",
    "ExportIntegrityError",
    "SensitiveContextError",
]
