"""Audit engine configuration via pydantic-settings.

Retention below the compliance floor is rejected when the settings
are built, never clamped silently.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from packages.audit_engine.errors import RetentionViolationError
from packages.audit_engine.models import RiskLevel

COMPLIANCE_FLOOR_DAYS = 90

DEFAULT_SENSITIVE_KEYS = [
    "password",
    "secret",
    "token",
    "private_key",
    "api_key",
    "pin",
    "passcode",
    "seed",
    "mnemonic",
]


class AuditSettings(BaseSettings):
    """Engine settings loaded from environment (AUDIT_*) or keyword args."""

    model_config = SettingsConfigDict(
        env_prefix="AUDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    storage_backend: Literal["file", "memory"] = "file"
    storage_path: str = "data/audit"
    max_segment_bytes: int = Field(
        default=100_000_000,
        gt=0,
        description="Segment rotates before an append would exceed this size"
    )

    # Retention (SOC2/HIPAA minimum)
    retention_days: int = COMPLIANCE_FLOOR_DAYS
    maintenance_interval_seconds: int = Field(default=86_400, gt=0)

    # Alerting
    enable_realtime_alerts: bool = True
    alert_threshold: RiskLevel = RiskLevel.HIGH

    # Context hygiene
    reject_sensitive_context: bool = True
    sensitive_context_keys: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SENSITIVE_KEYS)
    )

    # Key derivation
    key_version: int = Field(default=1, ge=1)

    # Lifecycle and maintenance events (startup, shutdown, rotation, purge, export)
    log_lifecycle_events: bool = True

    # Report metadata
    report_generator: str = "Audit Engine v1.0"
    compliance_standards: str = "SOC2, HIPAA"

    @model_validator(mode="after")
    def enforce_retention_floor(self) -> "AuditSettings":
        """Reject retention periods below the compliance floor."""
        if self.retention_days < COMPLIANCE_FLOOR_DAYS:
            raise RetentionViolationError(self.retention_days, COMPLIANCE_FLOOR_DAYS)
        return self

    def is_sensitive_key(self, key: str) -> bool:
        """Check a context key against the configured sensitive names."""
        lowered = key.lower()
        return any(name.lower() == lowered for name in self.sensitive_context_keys)
