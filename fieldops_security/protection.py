"""
Protective Control Service.

Request-boundary controls that run before any business logic:
- Fixed-window rate limiting per (actor, action class)
- Input validation (size limits, suspicious patterns, pydantic schemas)
- Input sanitization (the permissive counterpart of validation)
- File upload screening (extension, size, embedded script signatures)
- A tagged reversible transform for sensitive values

Rejections are reported as False and logged; nothing here raises except
the sensitive-value transform.
"""

import base64
import binascii
import logging
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .config import SecurityConfig
from .events import EventBus, EventName, SecurityEvent
from .exceptions import SensitiveDataError
from .redaction import REDACTION_MARKER, is_sensitive_field
from .timers import PeriodicTask
from .timeutil import isoformat_z, utc_now

logger = logging.getLogger("fieldops.protection")

SUSPICIOUS_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"on\w+=",
        r"eval\(",
        r"exec\(",
        r"system\(",
        r"\.\./\.\./",
        r"/etc/passwd",
        r"cmd\.exe",
        r"powershell",
    )
)

MALICIOUS_FILE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<%[\s\S]*?%>"),
    re.compile(r"<\?php", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"eval\(", re.IGNORECASE),
    re.compile(r"exec\(", re.IGNORECASE),
)

_STRIP_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[<>]"),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"on\w+=", re.IGNORECASE),
)

ENCRYPTED_PREFIX = "encrypted:"

# Bytes of an upload screened for script signatures
_FILE_SCAN_BYTES = 1024


@lru_cache(maxsize=256)
def _adapter(schema: Any) -> TypeAdapter:
    return TypeAdapter(schema)


@dataclass
class RateLimitWindow:
    """Counter for one (actor, action class) window. Times are clock seconds."""
    count: int
    reset_time: float
    first_request_time: float


@dataclass
class RateLimitStatus:
    """Current standing of an actor in a window."""
    limit: int           # Max requests allowed
    remaining: int       # Requests remaining in window
    reset_at: float      # Clock time when the window resets
    retry_after: int     # Seconds until retry is allowed (0 when not blocked)


class ProtectiveControlService:
    """
    Rate limiting, input screening and file screening for one process.

    Args:
        config: Limits and allow-lists
        event_bus: Receives rate-limit and breach events when given
        clock: Seconds source for rate-limit windows
    """

    def __init__(
        self,
        config: SecurityConfig,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._event_bus = event_bus
        self._clock = clock
        self._windows: dict[tuple[str, str], RateLimitWindow] = {}
        self._lock = threading.Lock()
        self._cleanup_task = PeriodicTask(
            "rate-limit-cleanup",
            config.rate_limit_cleanup_seconds,
            self.cleanup_rate_limit_store,
        )

    def start(self) -> None:
        self._cleanup_task.start()

    def stop(self) -> None:
        self._cleanup_task.stop()

    def _emit(self, event: EventName, payload: SecurityEvent) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event, payload)

    # =========================================================================
    # RATE LIMITING
    # =========================================================================

    def check_rate_limit(self, actor_id: str, action_class: str = "default") -> bool:
        """
        Count a request against the actor's window for ``action_class``.

        Unknown action classes use the ``default`` rule. A rejected request
        does not increment the counter.

        Returns:
            True if the request is allowed
        """
        rule = self.config.rate_limit_rule(action_class)
        key = (actor_id, action_class)
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_time:
                self._windows[key] = RateLimitWindow(
                    count=1,
                    reset_time=now + rule.window_seconds,
                    first_request_time=now,
                )
                return True

            if window.count < rule.max_requests:
                window.count += 1
                return True

            count = window.count
            reset_time = window.reset_time

        logger.warning(
            f"[RATE_LIMIT] Exceeded for {actor_id} ({action_class}): {count}/{rule.max_requests}",
            extra={"actor_id": actor_id, "action_class": action_class},
        )
        self._emit(
            EventName.RATE_LIMIT_EXCEEDED,
            SecurityEvent(
                actor_id=actor_id,
                action_class=action_class,
                reason="rate limit exceeded",
                metadata={"count": count, "limit": rule.max_requests, "reset_time": reset_time},
            ),
        )
        return False

    def get_rate_limit_status(self, actor_id: str, action_class: str = "default") -> RateLimitStatus:
        """Read-only view of a window; does not count a request."""
        rule = self.config.rate_limit_rule(action_class)
        now = self._clock()
        with self._lock:
            window = self._windows.get((actor_id, action_class))
            if window is None or now > window.reset_time:
                return RateLimitStatus(
                    limit=rule.max_requests,
                    remaining=rule.max_requests,
                    reset_at=now + rule.window_seconds,
                    retry_after=0,
                )
            remaining = max(0, rule.max_requests - window.count)
            return RateLimitStatus(
                limit=rule.max_requests,
                remaining=remaining,
                reset_at=window.reset_time,
                retry_after=0 if remaining else max(1, int(window.reset_time - now) + 1),
            )

    def cleanup_rate_limit_store(self) -> int:
        """
        Delete windows whose reset time has passed.

        Returns:
            Number of windows removed
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, window in list(self._windows.items()) if now > window.reset_time]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"[RATE_LIMIT] Cleaned up {len(expired)} expired windows")
        return len(expired)

    # =========================================================================
    # INPUT VALIDATION
    # =========================================================================

    def validate_input(self, data: Any, schema: Any = None) -> bool:
        """
        Screen input, then validate it against a schema.

        Args:
            data: Decoded request input
            schema: A pydantic model or any type a pydantic TypeAdapter accepts

        Returns:
            True if the input passed every check
        """
        if not self._passes_basic_checks(data):
            return False

        if schema is None:
            return True

        try:
            _adapter(schema).validate_python(data)
        except ValidationError as e:
            logger.warning(
                f"[SECURITY] Input validation failed: {e.error_count()} error(s)",
                extra={"errors": [err["msg"] for err in e.errors()][:5]},
            )
            return False
        return True

    def _passes_basic_checks(self, data: Any) -> bool:
        if data is None:
            return True

        if isinstance(data, str):
            if len(data) > self.config.max_string_length:
                logger.warning(f"[SECURITY] String too long: {len(data)}")
                return False
            for pattern in SUSPICIOUS_PATTERNS:
                if pattern.search(data):
                    logger.warning(f"[SECURITY] Suspicious pattern detected: {pattern.pattern}")
                    return False
            return True

        if isinstance(data, Mapping):
            return all(
                self._passes_basic_checks(k) and self._passes_basic_checks(v)
                for k, v in data.items()
            )

        if isinstance(data, (list, tuple)):
            if len(data) > self.config.max_array_length:
                logger.warning(f"[SECURITY] Array too long: {len(data)}")
                return False
            return all(self._passes_basic_checks(item) for item in data)

        return True

    def sanitize_string(self, value: str) -> str:
        for pattern in _STRIP_PATTERNS:
            value = pattern.sub("", value)
        return value.strip()[:self.config.max_string_length]

    def sanitize_input(self, data: Any) -> Any:
        """
        Clean input instead of rejecting it.

        Strings are stripped of markup and script protocols and truncated,
        sequences are truncated, mapping keys and values are cleaned
        recursively and sensitive fields are redacted.
        """
        if isinstance(data, str):
            return self.sanitize_string(data)
        if isinstance(data, (list, tuple)):
            return [self.sanitize_input(item) for item in data[:self.config.max_array_length]]
        if isinstance(data, Mapping):
            sanitized = {}
            for key, value in data.items():
                clean_key = self.sanitize_string(key) if isinstance(key, str) else key
                if is_sensitive_field(clean_key):
                    sanitized[clean_key] = REDACTION_MARKER
                else:
                    sanitized[clean_key] = self.sanitize_input(value)
            return sanitized
        return data

    # =========================================================================
    # FILE UPLOADS
    # =========================================================================

    def validate_file_upload(self, filename: str, content: bytes) -> bool:
        """Accept an upload only if its extension, size and leading bytes are clean."""
        extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if not extension or extension not in self.config.allowed_file_types:
            logger.warning(
                f"[SECURITY] Invalid file type attempted: {filename}",
                extra={"upload_filename": filename, "extension": extension},
            )
            return False

        if len(content) > self.config.max_file_size:
            logger.warning(
                f"[SECURITY] File too large: {filename} ({len(content)} bytes)",
                extra={"size": len(content), "max_size": self.config.max_file_size},
            )
            return False

        header = content[:_FILE_SCAN_BYTES].decode("ascii", errors="ignore")
        for pattern in MALICIOUS_FILE_PATTERNS:
            if pattern.search(header):
                logger.error(
                    f"[SECURITY] Malicious content detected in file: {filename}",
                    extra={"upload_filename": filename, "pattern": pattern.pattern},
                )
                self._emit(
                    EventName.SECURITY_BREACH_DETECTED,
                    SecurityEvent(
                        filename=filename,
                        reason="malicious file content",
                        metadata={"pattern": pattern.pattern},
                    ),
                )
                return False

        return True

    # =========================================================================
    # SENSITIVE VALUES
    # =========================================================================

    def encrypt_sensitive_data(self, data: str) -> str:
        """
        Tag and encode a sensitive value.

        This is an encoding, not encryption: the output is reversible by
        anyone. Callers get the tagged shape so a real cipher can be
        dropped in without changing the contract.

        Raises:
            SensitiveDataError: If the value cannot be encoded
        """
        try:
            encoded = base64.b64encode(data.encode("utf-8")).decode("ascii")
        except (UnicodeEncodeError, AttributeError) as e:
            logger.error(f"[SECURITY] Failed to encode sensitive data: {e}")
            raise SensitiveDataError("Failed to encrypt sensitive data") from e
        return f"{ENCRYPTED_PREFIX}{encoded}"

    def decrypt_sensitive_data(self, encrypted: str) -> str:
        """
        Reverse encrypt_sensitive_data.

        Raises:
            SensitiveDataError: If the value is untagged or corrupt
        """
        if not isinstance(encrypted, str) or not encrypted.startswith(ENCRYPTED_PREFIX):
            logger.warning("[SECURITY] Rejected untagged sensitive value")
            raise SensitiveDataError("Invalid encrypted data format")
        try:
            raw = base64.b64decode(encrypted[len(ENCRYPTED_PREFIX):], validate=True)
            return raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.error(f"[SECURITY] Failed to decode sensitive data: {e}")
            raise SensitiveDataError("Failed to decrypt sensitive data") from e

    # =========================================================================
    # REPORTING
    # =========================================================================

    def generate_security_report(self) -> dict[str, Any]:
        now = self._clock()
        with self._lock:
            windows = list(self._windows.items())

        stats = [
            {
                "actor_id": actor_id,
                "action_class": action_class,
                "count": window.count,
                "time_remaining": max(0.0, window.reset_time - now),
                "is_active": window.reset_time > now,
            }
            for (actor_id, action_class), window in windows
        ]
        stats.sort(key=lambda s: s["count"], reverse=True)

        return {
            "timestamp": isoformat_z(utc_now()),
            "rate_limiting": {
                "active_entries": sum(1 for s in stats if s["is_active"]),
                "total_entries": len(stats),
                "top_users": stats[:10],
            },
            "configuration": {
                "rate_limits": {
                    name: rule.model_dump() for name, rule in self.config.rate_limits.items()
                },
                "input_validation": {
                    "max_string_length": self.config.max_string_length,
                    "max_array_length": self.config.max_array_length,
                    "allowed_file_types": list(self.config.allowed_file_types),
                    "max_file_size": self.config.max_file_size,
                },
            },
        }

    def window_snapshot(self) -> dict[tuple[str, str], dict[str, Any]]:
        """Copy of every live window, keyed by (actor, action class)."""
        with self._lock:
            return {key: asdict(window) for key, window in self._windows.items()}
