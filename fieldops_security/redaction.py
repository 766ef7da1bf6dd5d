"""
Sensitive-field redaction.

Used wherever state leaves its owner: audit snapshots, sanitized request
input and event payloads written to debug logs.
"""

from collections.abc import Mapping
from typing import Any

REDACTION_MARKER = "[REDACTED]"

SENSITIVE_FIELDS: tuple[str, ...] = ("password", "token", "secret", "key", "auth")


def is_sensitive_field(name: Any) -> bool:
    """True when a key contains one of the sensitive names (case-insensitive)."""
    lowered = str(name).lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def redact_sensitive(value: Any) -> Any:
    """
    Return a copy of value with sensitive keys replaced at any depth.

    Mappings come back as plain dicts, tuples as lists. Scalars are
    returned unchanged.
    """
    if isinstance(value, Mapping):
        return {
            k: REDACTION_MARKER if is_sensitive_field(k) else redact_sensitive(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact_sensitive(item) for item in value]
    return value
