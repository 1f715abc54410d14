"""Audit data models.

Immutable audit events, the encrypted envelopes that persist them,
and the compliance report produced for auditors.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_epoch_micros(value: datetime) -> int:
    """Integer microseconds since the epoch, stable across serialisation."""
    return (ensure_utc(value) - EPOCH) // timedelta(microseconds=1)


class RiskLevel(str, Enum):
    """Ordered risk levels. Ordering drives filtering and alerting."""

    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def is_at_least(self, other: RiskLevel) -> bool:
        return self.rank >= other.rank


_RISK_ORDER = [
    RiskLevel.INFO,
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
]


class OperationResult(str, Enum):
    """Outcome of the audited operation."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"
    DENIED = "DENIED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_failed(self) -> bool:
        return self in (OperationResult.FAILURE, OperationResult.DENIED)


class EventType(str, Enum):
    """Types of auditable security events."""

    # Authentication events
    AUTHENTICATION_ATTEMPT = "auth.attempt"
    AUTHENTICATION_SUCCESS = "auth.success"
    AUTHENTICATION_FAILURE = "auth.failure"
    BIOMETRIC_AUTHENTICATION = "auth.biometric"
    ACCOUNT_LOCKOUT = "auth.lockout"
    PASSWORD_RESET = "auth.password_reset"

    # Credential management
    CREDENTIAL_CREATION = "cred.create"
    CREDENTIAL_ACCESS = "cred.access"
    CREDENTIAL_MODIFICATION = "cred.modify"
    CREDENTIAL_DELETION = "cred.delete"
    CREDENTIAL_ROTATION = "cred.rotate"
    CREDENTIAL_EXPORT = "cred.export"

    # Key management
    KEY_GENERATION = "key.generate"
    KEY_ROTATION = "key.rotate"
    KEY_DELETION = "key.delete"
    KEY_ACCESS = "key.access"
    KEY_EXPORT = "key.export"

    # Data access
    DATA_ACCESS = "data.access"
    DATA_MODIFICATION = "data.modify"
    DATA_EXPORT = "data.export"
    DATA_IMPORT = "data.import"
    DATA_DELETION = "data.delete"

    # Security events
    SECURITY_VIOLATION = "security.violation"
    UNAUTHORIZED_ACCESS = "security.unauthorized"
    SUSPICIOUS_ACTIVITY = "security.suspicious"
    CONFIGURATION_CHANGE = "security.config_change"
    PRIVILEGE_ESCALATION = "security.privilege_escalation"

    # System events
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    BACKUP_CREATION = "system.backup"
    SYSTEM_MAINTENANCE = "system.maintenance"
    COMPLIANCE_EXPORT = "system.compliance_export"

    @property
    def default_risk(self) -> RiskLevel:
        """Risk level assigned when the caller does not supply one."""
        return _DEFAULT_RISK.get(self, RiskLevel.INFO)


_DEFAULT_RISK = {
    EventType.AUTHENTICATION_FAILURE: RiskLevel.HIGH,
    EventType.ACCOUNT_LOCKOUT: RiskLevel.HIGH,
    EventType.SECURITY_VIOLATION: RiskLevel.HIGH,
    EventType.UNAUTHORIZED_ACCESS: RiskLevel.HIGH,
    EventType.SUSPICIOUS_ACTIVITY: RiskLevel.HIGH,
    EventType.PRIVILEGE_ESCALATION: RiskLevel.HIGH,
    EventType.CREDENTIAL_ACCESS: RiskLevel.MEDIUM,
    EventType.CREDENTIAL_MODIFICATION: RiskLevel.MEDIUM,
    EventType.CREDENTIAL_DELETION: RiskLevel.MEDIUM,
    EventType.KEY_ACCESS: RiskLevel.MEDIUM,
    EventType.KEY_DELETION: RiskLevel.MEDIUM,
    EventType.DATA_EXPORT: RiskLevel.MEDIUM,
    EventType.AUTHENTICATION_SUCCESS: RiskLevel.LOW,
    EventType.BIOMETRIC_AUTHENTICATION: RiskLevel.LOW,
    EventType.CREDENTIAL_CREATION: RiskLevel.LOW,
    EventType.KEY_GENERATION: RiskLevel.LOW,
    EventType.DATA_ACCESS: RiskLevel.LOW,
}


class EventDraft(BaseModel):
    """An event as supplied by a caller, before sequencing and chaining."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier, never reused"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="Creation instant (UTC)"
    )
    event_type: EventType
    result: OperationResult = OperationResult.SUCCESS
    risk_level: RiskLevel | None = Field(
        default=None,
        description="Overrides the event type's default risk when set"
    )

    # Actor
    user_id: str | None = None
    session_id: str | None = None

    # Operation details
    operation: str = "system"
    resource: str | None = None
    duration_ms: float | None = None
    error_code: str | None = None
    error_message: str | None = None

    context: dict[str, str] = Field(
        default_factory=dict,
        description="Free-form operation metadata; must not carry secrets"
    )
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def effective_risk(self) -> RiskLevel:
        return self.risk_level or self.event_type.default_risk


class AuditEvent(BaseModel):
    """One committed, integrity-chained audit record.

    Chain integrity:
    - `chain_value` is a MAC over the canonical event bytes and `prior_chain_value`
    - `prior_chain_value` equals the previous event's `chain_value`
    - the first event of a store links to the genesis value
    """

    model_config = ConfigDict(frozen=True)

    id: str
    sequence_number: int = Field(
        ge=1,
        description="Store-assigned ordering key, contiguous across segments"
    )
    timestamp: datetime
    event_type: EventType
    result: OperationResult
    risk_level: RiskLevel

    user_id: str | None = None
    session_id: str | None = None

    operation: str
    resource: str | None = None
    duration_ms: float | None = None
    error_code: str | None = None
    error_message: str | None = None

    context: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)

    prior_chain_value: str
    chain_value: str

    @field_validator("timestamp")
    @classmethod
    def _normalise_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class EncryptedEnvelope(BaseModel):
    """Opaque persisted form of one AuditEvent.

    Binary fields are base64 text so envelopes serialise as JSON lines.
    `sequence_number`, `key_version` and `created_at` are authenticated
    but not encrypted.
    """

    model_config = ConfigDict(frozen=True)

    sequence_number: int = Field(ge=1)
    key_version: int = Field(ge=1)
    nonce: str
    ciphertext: str
    authentication_tag: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _normalise_created_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @staticmethod
    def encode(raw: bytes) -> str:
        return base64.b64encode(raw).decode("ascii")

    @staticmethod
    def decode(text: str) -> bytes:
        return base64.b64decode(text.encode("ascii"), validate=True)


class RetentionAnchor(BaseModel):
    """Authenticated record of the last event removed by retention.

    Lets the first surviving event verify against a trusted predecessor.
    """

    sequence_number: int
    chain_value: str
    last_purged_at: datetime
    tag: str


class ReportPeriod(BaseModel):
    """Window covered by a compliance report."""

    model_config = ConfigDict(populate_by_name=True)

    from_: datetime = Field(alias="from")
    to: datetime


class ComplianceSummary(BaseModel):
    """Aggregates over the events of a compliance report."""

    total_events: int = 0
    high_risk_events: int = 0
    failed_operations: int = 0
    unique_users: int = 0
    unique_sessions: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
    events_by_risk: dict[str, int] = Field(default_factory=dict)
    events_by_result: dict[str, int] = Field(default_factory=dict)


class ComplianceReport(BaseModel):
    """Signed compliance export.

    `integrity_tag` is a MAC over the canonical serialisation of every
    other field, so a recipient can check the report was not altered.
    """

    model_config = ConfigDict(populate_by_name=True)

    report_id: str = Field(
        default_factory=lambda: str(uuid4()),
        alias="reportId"
    )
    generated_at: datetime = Field(default_factory=utc_now, alias="generatedAt")
    report_period: ReportPeriod = Field(alias="reportPeriod")
    events: list[AuditEvent] = Field(default_factory=list)
    summary: ComplianceSummary
    metadata: dict[str, str] = Field(default_factory=dict)
    filters_applied: dict[str, Any] = Field(
        default_factory=dict,
        alias="filtersApplied"
    )
    key_version: int = Field(default=1, alias="keyVersion")
    integrity_tag: str = Field(default="", alias="integrityTag")

    @property
    def window_start(self) -> datetime:
        return self.report_period.from_

    @property
    def window_end(self) -> datetime:
        return self.report_period.to


class ChainStatus(BaseModel):
    """Result of a full verification pass over the store."""

    total_events: int
    first_sequence: int | None
    last_sequence: int
    segments: int
    valid: bool
    verified_at: datetime = Field(default_factory=utc_now)
    error_message: str | None = None
