"""Audit engine error taxonomy.

Every failure is returned to the caller. The only condition recovered
internally is transient storage contention on append.
"""


class AuditError(Exception):
    """Base class for audit engine failures."""

    def __init__(self, message: str, code: str = "audit_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class TamperDetectedError(AuditError):
    """Raised when chain or envelope verification fails on read."""

    def __init__(
        self,
        reason: str,
        sequence_number: int | None = None,
        segment_index: int | None = None,
    ):
        self.sequence_number = sequence_number
        self.segment_index = segment_index
        location = ""
        if sequence_number is not None:
            location = f" at sequence {sequence_number}"
        super().__init__(f"Tamper detected{location}: {reason}", "tamper_detected")


class EncryptionError(AuditError):
    """Raised when an envelope cannot be sealed."""

    def __init__(self, reason: str):
        super().__init__(f"Encryption failed: {reason}", "encryption_failed")


class KeyUnavailableError(EncryptionError):
    """Raised when the root secret or a derived key cannot be obtained."""

    def __init__(self, reason: str = "Root secret unavailable"):
        super().__init__(reason)
        self.code = "key_unavailable"


class StorageError(AuditError):
    """Raised when the persistence substrate fails."""

    def __init__(self, reason: str, code: str = "storage_failed"):
        super().__init__(f"Storage failure: {reason}", code)


class StorageContentionError(StorageError):
    """Transient contention on the substrate; append retries these."""

    def __init__(self, reason: str = "Storage is busy"):
        super().__init__(reason, "storage_contention")


class RetentionViolationError(AuditError):
    """Raised when a retention period below the compliance floor is configured."""

    def __init__(self, requested_days: int, floor_days: int):
        self.requested_days = requested_days
        self.floor_days = floor_days
        super().__init__(
            f"Retention of {requested_days} days is below the compliance "
            f"floor of {floor_days} days",
            "retention_violation",
        )


class ExportIntegrityError(AuditError):
    """Raised when a compliance report fails its integrity check."""

    def __init__(self, reason: str = "Report integrity tag mismatch"):
        super().__init__(reason, "export_integrity_failed")


class SensitiveContextError(AuditError):
    """Raised when event context carries a key configured as sensitive."""

    def __init__(self, keys: list[str]):
        self.keys = keys
        super().__init__(
            f"Context contains sensitive keys: {', '.join(sorted(keys))}",
            "sensitive_context",
        )
