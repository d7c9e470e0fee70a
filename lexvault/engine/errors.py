"""
LexVault Error Hierarchy — Structured exceptions for the document repository.

Every failure raised by the repository maps to exactly one of these classes;
collaborator errors (SQLAlchemy, OSError) are wrapped, never leaked.
All context is serializable to JSON for the structured audit log.

Hierarchy:
    LexVaultError
    ├── LexVaultValidationError   — Missing / malformed input (InvalidArgument)
    ├── LexVaultNotFoundError     — Document, version or folder absent
    ├── LexVaultLockedError       — Checkout on an already-locked document
    ├── LexVaultPermissionError   — Check-in / upload by a non-holder, unauthorized override
    ├── LexVaultNotEmptyError     — Non-recursive delete of a populated folder
    ├── LexVaultIOError           — Filesystem failure
    ├── LexVaultDatabaseError     — Transactional store failure
    ├── LexVaultResourceError     — Out of memory / disk full
    ├── LexVaultCancelledError    — Cancelled before any byte was copied
    └── LexVaultConfigError       — Invalid lexvault.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class LexVaultError(Exception):
    """
    Base error for all LexVault failures.

    ``retryable`` tells an orchestrator whether retrying the same call can
    succeed (lock contention, transient store/filesystem failures) or whether
    the error must be surfaced as-is.
    """

    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.object_ref: Optional[str] = context.get("object_ref")
        self.record_type: Optional[str] = context.get("record_type")
        self.record_id: Optional[str] = context.get("record_id")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "object_ref": self.object_ref,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("object_ref", "record_type", "record_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.object_ref:
            parts.append(f"object_ref={self.object_ref}")
        if self.record_id:
            parts.append(f"record_id={self.record_id}")
        return " | ".join(parts)


class LexVaultValidationError(LexVaultError):
    """
    Input validation failed (missing field, bad name, upload too large).
    Includes field-level error details.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[list] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class LexVaultNotFoundError(LexVaultError):
    """Document, version or folder does not exist."""
    pass


class LexVaultLockedError(LexVaultError):
    """Checkout attempted on a document somebody already holds."""

    retryable = True

    def __init__(self, message: str, **context: Any):
        self.locked_by: Optional[str] = context.get("locked_by")
        self.locked_at: Optional[datetime] = context.get("locked_at")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["locked_by"] = self.locked_by
        d["locked_at"] = self.locked_at.isoformat() if self.locked_at else None
        return d


class LexVaultPermissionError(LexVaultError):
    """
    Caller does not hold the lock it needs, or an administrative override
    arrived without a valid authorization decision.
    """

    def __init__(self, message: str, **context: Any):
        self.user_id: Optional[str] = context.get("user_id")
        self.required_permission: Optional[str] = context.get("required_permission")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["user_id"] = self.user_id
        d["required_permission"] = self.required_permission
        return d


class LexVaultNotEmptyError(LexVaultError):
    """Non-recursive delete of a folder that still has documents or subfolders."""

    def __init__(self, message: str, **context: Any):
        self.document_count: int = context.get("document_count", 0)
        self.subfolder_count: int = context.get("subfolder_count", 0)
        super().__init__(message, **context)


class LexVaultIOError(LexVaultError):
    """Filesystem operation failed."""

    retryable = True

    def __init__(self, message: str, **context: Any):
        self.path: Optional[str] = context.get("path")
        super().__init__(message, **context)


class LexVaultDatabaseError(LexVaultError):
    """Transactional store failed; relational writes were rolled back."""

    retryable = True

    def __init__(self, message: str, **context: Any):
        self.operation: Optional[str] = context.get("operation")
        super().__init__(message, **context)


class LexVaultResourceError(LexVaultError):
    """Memory or disk space exhausted."""

    retryable = True


class LexVaultCancelledError(LexVaultError):
    """Operation cancelled before any content was copied."""
    pass


class LexVaultConfigError(LexVaultError):
    """Configuration error — invalid lexvault.yaml."""
    pass
