"""
Audit Trail Engine.

Records entity-level state changes with an automatically derived risk
level. Entries live in a bounded append-only ring buffer; high and
critical entries are also queued for escalation, which a background timer
drains through an injected alert sink.

Writing an entry is fail-loud: any failure raises AuditLogError.
"""

import json
import logging
import secrets
import string
import threading
from collections import Counter, deque
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python

from .exceptions import AuditLogError
from .redaction import redact_sensitive
from .timers import PeriodicTask
from .timeutil import as_utc, isoformat_z, utc_now

logger = logging.getLogger("fieldops.audit")


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# RISK SCORING
# =============================================================================

HIGH_RISK_ENTITY_TYPES = frozenset({"user", "company", "security", "permission", "role"})

HIGH_RISK_ACTIONS: tuple[str, ...] = (
    "delete",
    "create",
    "login_failed",
    "permission_denied",
    "role_changed",
    "impersonation",
    "data_export",
)

CRITICAL_ACTIONS: tuple[str, ...] = (
    "delete_user",
    "delete_company",
    "security_breach",
    "unauthorized_access",
    "data_breach",
)

SECURITY_ACTIONS: tuple[str, ...] = (
    "login",
    "logout",
    "authentication_failed",
    "authorization_denied",
    "role_changed",
    "impersonation_started",
    "impersonation_stopped",
    "password_changed",
    "account_locked",
    "account_unlocked",
    "permission_escalation",
    "sensitive_data_access",
)


def calculate_risk_score(
    entity_type: str,
    action: str,
    performed_by: str,
    metadata: Mapping[str, Any] | None = None,
    bypass_role: str = "operations_director",
) -> int:
    """
    Additive risk score for an audit event.

    +20 for a high-risk entity type, +30 when the action mentions a
    high-risk verb, +50 when it mentions a critical one, +15 when the
    performer acts through the bypass role.
    """
    score = 0
    entity = entity_type.lower()
    action_text = action.lower()

    if entity in HIGH_RISK_ENTITY_TYPES:
        score += 20
    if any(a in action_text for a in HIGH_RISK_ACTIONS):
        score += 30
    if any(a in action_text for a in CRITICAL_ACTIONS):
        score += 50
    if performed_by == bypass_role or (metadata or {}).get("role") == bypass_role:
        score += 15
    return score


def risk_level_for_score(score: int) -> RiskLevel:
    if score >= 70:
        return RiskLevel.CRITICAL
    if score >= 40:
        return RiskLevel.HIGH
    if score >= 20:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# =============================================================================
# MODELS
# =============================================================================

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_audit_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"audit_{int(now.timestamp() * 1000)}_{suffix}"


class AuditEntry(BaseModel):
    """One immutable audit record. Serializes with camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    timestamp: datetime
    entity_type: str
    entity_id: str
    action: str
    performed_by: str
    previous_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None
    reason: str | None = None
    metadata: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    risk_level: RiskLevel = RiskLevel.LOW

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return isoformat_z(value)

    def to_dict(self) -> dict[str, Any]:
        """Export shape: camelCase keys, unset optionals omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AuditQuery(BaseModel):
    """Filter for audit trail queries. All filters are exact matches."""

    entity_type: str | None = None
    entity_id: str | None = None
    action: str | None = None
    performed_by: str | None = None
    risk_level: RiskLevel | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("date_from", "date_to")
    @classmethod
    def _bounds_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    def matches(self, entry: AuditEntry) -> bool:
        if self.entity_type and entry.entity_type != self.entity_type:
            return False
        if self.entity_id and entry.entity_id != self.entity_id:
            return False
        if self.action and entry.action != self.action:
            return False
        if self.performed_by and entry.performed_by != self.performed_by:
            return False
        if self.risk_level and entry.risk_level != self.risk_level:
            return False
        if self.date_from and entry.timestamp < self.date_from:
            return False
        if self.date_to and entry.timestamp > self.date_to:
            return False
        return True


AlertSink = Callable[[AuditEntry], object]

CSV_HEADER = "timestamp,entityType,entityId,action,performedBy,riskLevel,reason,metadata"


def log_alert(entry: AuditEntry) -> None:
    """Default alert sink: a high-severity log line per escalated entry."""
    logger.error(
        f"[AUDIT] ALERT {entry.risk_level.value} {entry.action} on "
        f"{entry.entity_type}/{entry.entity_id} by {entry.performed_by}",
        extra={"audit_entry": entry.to_dict()},
    )


def _newest_first(entries: Iterable[AuditEntry]) -> list[AuditEntry]:
    # Stable sort over reversed insertion order keeps later inserts first on ties
    return sorted(reversed(list(entries)), key=lambda e: e.timestamp, reverse=True)


def _csv_quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


class AuditTrail:
    """
    Bounded, risk-scored audit trail.

    Args:
        max_entries: Ring buffer capacity; the oldest entry is evicted on overflow
        alert_sink: Called for every drained high/critical entry
        drain_interval_seconds: Period of the escalation drain timer
        bypass_role: Role name that adds risk when it performs an action
        clock: Source of entry timestamps
    """

    def __init__(
        self,
        max_entries: int = 50_000,
        alert_sink: AlertSink | None = None,
        drain_interval_seconds: float = 5.0,
        bypass_role: str = "operations_director",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_entries = max_entries
        self.bypass_role = bypass_role
        self._alert_sink = alert_sink or log_alert
        self._clock = clock
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._critical_queue: list[AuditEntry] = []
        self._lock = threading.Lock()
        self._drain_task = PeriodicTask(
            "audit-critical-drain", drain_interval_seconds, self.process_critical_queue
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        self._drain_task.start()
        logger.info(
            f"[AUDIT] Audit trail started (capacity {self.max_entries})",
            extra={"max_entries": self.max_entries},
        )

    def stop(self) -> None:
        """Stop the drain timer and flush whatever is still queued."""
        self._drain_task.stop()
        self.process_critical_queue()

    # =========================================================================
    # RECORDING
    # =========================================================================

    def log_event(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        performed_by: str,
        previous_state: Mapping[str, Any] | None = None,
        new_state: Mapping[str, Any] | None = None,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> AuditEntry:
        """
        Record an audit event.

        State snapshots are deep-copied and have sensitive fields redacted
        before storage.

        Returns:
            The stored entry

        Raises:
            AuditLogError: If the entry could not be built or stored
        """
        try:
            now = self._clock()
            score = calculate_risk_score(
                entity_type, action, performed_by, metadata, self.bypass_role
            )
            entry = AuditEntry(
                id=generate_audit_id(now),
                timestamp=now,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                performed_by=performed_by,
                previous_state=self._sanitize_state(previous_state),
                new_state=self._sanitize_state(new_state),
                reason=reason,
                metadata=self._jsonable(dict(metadata)) if metadata is not None else None,
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=session_id,
                risk_level=risk_level_for_score(score),
            )

            with self._lock:
                self._entries.append(entry)
                if entry.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                    self._critical_queue.append(entry)
        except Exception as exc:
            logger.exception(
                f"[AUDIT] Failed to log audit event {action} on {entity_type}/{entity_id}"
            )
            raise AuditLogError(
                "Failed to log audit event",
                details={"entity_type": entity_type, "entity_id": entity_id, "action": action},
            ) from exc

        logger.info(
            f"[AUDIT] {entry.action} on {entry.entity_type}/{entry.entity_id} "
            f"by {entry.performed_by} ({entry.risk_level.value})",
            extra={"audit_id": entry.id, "risk_level": entry.risk_level.value},
        )

        if entry.risk_level == RiskLevel.CRITICAL:
            logger.critical(
                f"[AUDIT] Critical audit event: {entry.action} on "
                f"{entry.entity_type}/{entry.entity_id} by {entry.performed_by}",
                extra={"audit_entry": entry.to_dict()},
            )

        return entry

    @staticmethod
    def _sanitize_state(state: Mapping[str, Any] | None) -> dict[str, Any] | None:
        if state is None:
            return None
        return AuditTrail._jsonable(redact_sensitive(state))

    @staticmethod
    def _jsonable(value: Any) -> Any:
        # Fresh containers; values JSON cannot carry are stored as str()
        return to_jsonable_python(value, fallback=str)

    def process_critical_queue(self) -> int:
        """
        Hand every queued high/critical entry to the alert sink.

        Returns:
            Number of entries drained
        """
        with self._lock:
            pending = self._critical_queue
            self._critical_queue = []

        for entry in pending:
            try:
                self._alert_sink(entry)
            except Exception:
                logger.exception(f"[AUDIT] Alert sink failed for {entry.id}")
        return len(pending)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _snapshot(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def critical_queue_size(self) -> int:
        with self._lock:
            return len(self._critical_queue)

    def query_audit_logs(self, query: AuditQuery | None = None) -> list[AuditEntry]:
        """Matching entries, newest first, paginated by query.offset/limit."""
        query = query or AuditQuery()
        matching = _newest_first(e for e in self._snapshot() if query.matches(e))
        return matching[query.offset:query.offset + query.limit]

    def get_security_audit_trail(
        self,
        performed_by: str | None = None,
        hours: float = 24,
    ) -> list[AuditEntry]:
        """Security-relevant or high-risk entries from the last ``hours``, newest first."""
        since = as_utc(self._clock()) - timedelta(hours=hours)
        result = []
        for entry in self._snapshot():
            if entry.timestamp < since:
                continue
            if performed_by and entry.performed_by != performed_by:
                continue
            is_security_action = any(a in entry.action for a in SECURITY_ACTIONS)
            is_high_risk = entry.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
            if is_security_action or is_high_risk:
                result.append(entry)
        return _newest_first(result)

    # =========================================================================
    # REPORTING
    # =========================================================================

    @staticmethod
    def _risk_distribution(entries: Iterable[AuditEntry]) -> dict[str, int]:
        distribution = {level.value: 0 for level in RiskLevel}
        for entry in entries:
            distribution[entry.risk_level.value] += 1
        return distribution

    def generate_compliance_report(self, date_from: datetime, date_to: datetime) -> dict[str, Any]:
        """
        Aggregate the entries recorded in [date_from, date_to].

        Returns:
            {
                "reportPeriod": {"from", "to"},
                "summary": {"totalEvents", "criticalEvents", "highRiskEvents",
                            "uniqueUsers", "entityTypes"},
                "riskDistribution": {level: count},
                "topUsers": [{"userId", "activityCount"}] (top 10),
                "criticalEvents": newest 20 critical entries,
                "securityEvents": [...],
                "dataAccessEvents": [...]
            }
        """
        date_from, date_to = as_utc(date_from), as_utc(date_to)
        entries = _newest_first(
            e for e in self._snapshot() if date_from <= e.timestamp <= date_to
        )
        critical = [e for e in entries if e.risk_level == RiskLevel.CRITICAL]
        high = [e for e in entries if e.risk_level == RiskLevel.HIGH]
        activity = Counter(e.performed_by for e in entries)

        report = {
            "reportPeriod": {"from": isoformat_z(date_from), "to": isoformat_z(date_to)},
            "summary": {
                "totalEvents": len(entries),
                "criticalEvents": len(critical),
                "highRiskEvents": len(high),
                "uniqueUsers": len(activity),
                "entityTypes": len({e.entity_type for e in entries}),
            },
            "riskDistribution": self._risk_distribution(entries),
            "topUsers": [
                {"userId": user, "activityCount": count}
                for user, count in activity.most_common(10)
            ],
            "criticalEvents": [e.to_dict() for e in critical[:20]],
            "securityEvents": [
                e.to_dict() for e in entries
                if "security" in e.action or "auth" in e.action
                or e.risk_level == RiskLevel.CRITICAL
            ],
            "dataAccessEvents": [
                e.to_dict() for e in entries
                if "access" in e.action or "read" in e.action or "export" in e.action
            ],
        }

        logger.info(
            f"[AUDIT] Compliance report generated: {len(entries)} events, {len(critical)} critical",
            extra={"report_period": report["reportPeriod"]},
        )
        return report

    def get_audit_statistics(self) -> dict[str, Any]:
        entries = self._snapshot()
        return {
            "totalEntries": len(entries),
            "maxCapacity": self.max_entries,
            "utilizationPercentage": len(entries) / self.max_entries * 100,
            "criticalQueueSize": self.critical_queue_size,
            "oldestEntry": isoformat_z(entries[0].timestamp) if entries else None,
            "newestEntry": isoformat_z(entries[-1].timestamp) if entries else None,
            "riskLevelDistribution": self._risk_distribution(entries),
        }

    def export_audit_trail(
        self,
        format: Literal["json", "csv"] = "json",
        query: AuditQuery | None = None,
    ) -> str:
        """
        Export entries newest first.

        Without a query the whole trail is exported; with one, only the
        query's page.
        """
        if query is not None:
            entries = self.query_audit_logs(query)
        else:
            entries = _newest_first(self._snapshot())

        if format == "json":
            return json.dumps([e.to_dict() for e in entries], indent=2)
        if format != "csv":
            raise ValueError(f"Unsupported export format: {format}")

        rows = [CSV_HEADER]
        for e in entries:
            metadata = json.dumps(e.metadata or {}, separators=(",", ":"), default=str)
            rows.append(",".join([
                isoformat_z(e.timestamp),
                e.entity_type,
                e.entity_id,
                e.action,
                e.performed_by,
                e.risk_level.value,
                _csv_quote(e.reason or ""),
                _csv_quote(metadata),
            ]))
        return "\n".join(rows)
