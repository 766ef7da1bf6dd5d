"""
Exceptions raised by the security core.

Only failures that must not pass silently are exceptions: a lost audit
record and a corrupted sensitive value. Validation failures, permission
denials and rate-limit rejections are reported as return values.
"""

from typing import Any


class SecurityCoreError(Exception):
    """Base exception for the security core."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuditLogError(SecurityCoreError):
    """An audit entry could not be recorded."""


class SensitiveDataError(SecurityCoreError):
    """Encoding or decoding a sensitive value failed."""


class BootstrapError(SecurityCoreError):
    """The security core was used outside its initialized lifetime."""
