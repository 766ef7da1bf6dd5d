"""
Event Bus.

Synchronous publish/subscribe over a closed set of named events. Each
event name has exactly one payload model; handlers receive an
EventEnvelope carrying the validated payload plus the event name and the
emit timestamp.

Usage:
    from fieldops_security.events import EventBus, EventName, SecurityEvent

    bus = EventBus()
    bus.on(EventName.RATE_LIMIT_EXCEEDED, lambda env: print(env.payload.actor_id))
    bus.emit(EventName.RATE_LIMIT_EXCEEDED, {"actor_id": "u-1", "action_class": "auth"})
"""

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .redaction import redact_sensitive
from .timeutil import isoformat_z, utc_now

logger = logging.getLogger("fieldops.events")


class EventName(str, Enum):
    """Every event the bus can carry."""

    # Work orders
    WORK_ORDER_CREATED = "workOrder.created"
    WORK_ORDER_ASSIGNED = "workOrder.assigned"
    WORK_ORDER_STATUS_CHANGED = "workOrder.statusChanged"
    WORK_ORDER_COMPLETED = "workOrder.completed"

    # Users
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_ROLE_CHANGED = "user.roleChanged"
    USER_SUSPENDED = "user.suspended"

    # Security
    SECURITY_BREACH_DETECTED = "security.breachDetected"
    RATE_LIMIT_EXCEEDED = "security.rateLimitExceeded"
    UNAUTHORIZED_ACCESS = "security.unauthorizedAccess"

    # Role impersonation
    ROLE_IMPERSONATION_STARTED = "roleImpersonation.started"
    ROLE_IMPERSONATION_STOPPED = "roleImpersonation.stopped"

    # Documents
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_ACCESSED = "document.accessed"

    # Issues
    ISSUE_CREATED = "issue.created"
    ISSUE_ESCALATED = "issue.escalated"
    ISSUE_RESOLVED = "issue.resolved"


# =============================================================================
# PAYLOADS
# =============================================================================


class EventPayload(BaseModel):
    """Fields shared by every payload."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    actor_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkOrderEvent(EventPayload):
    work_order_id: str
    status: str | None = None
    previous_status: str | None = None
    assignee_id: str | None = None


class UserEvent(EventPayload):
    user_id: str
    previous_role: str | None = None
    new_role: str | None = None
    ip_address: str | None = None


class SecurityEvent(EventPayload):
    resource: str | None = None
    action: str | None = None
    action_class: str | None = None
    filename: str | None = None
    reason: str | None = None


class ImpersonationEvent(EventPayload):
    impersonated_role: str
    company_type: str | None = None


class DocumentEvent(EventPayload):
    document_id: str
    filename: str | None = None
    size_bytes: int | None = None


class IssueEvent(EventPayload):
    issue_id: str
    work_order_id: str | None = None
    severity: str | None = None


EVENT_PAYLOADS: dict[EventName, type[EventPayload]] = {
    EventName.WORK_ORDER_CREATED: WorkOrderEvent,
    EventName.WORK_ORDER_ASSIGNED: WorkOrderEvent,
    EventName.WORK_ORDER_STATUS_CHANGED: WorkOrderEvent,
    EventName.WORK_ORDER_COMPLETED: WorkOrderEvent,
    EventName.USER_LOGIN: UserEvent,
    EventName.USER_LOGOUT: UserEvent,
    EventName.USER_ROLE_CHANGED: UserEvent,
    EventName.USER_SUSPENDED: UserEvent,
    EventName.SECURITY_BREACH_DETECTED: SecurityEvent,
    EventName.RATE_LIMIT_EXCEEDED: SecurityEvent,
    EventName.UNAUTHORIZED_ACCESS: SecurityEvent,
    EventName.ROLE_IMPERSONATION_STARTED: ImpersonationEvent,
    EventName.ROLE_IMPERSONATION_STOPPED: ImpersonationEvent,
    EventName.DOCUMENT_UPLOADED: DocumentEvent,
    EventName.DOCUMENT_ACCESSED: DocumentEvent,
    EventName.ISSUE_CREATED: IssueEvent,
    EventName.ISSUE_ESCALATED: IssueEvent,
    EventName.ISSUE_RESOLVED: IssueEvent,
}


@dataclass(frozen=True)
class EventEnvelope:
    """A payload as delivered to handlers."""

    event_name: EventName
    timestamp: datetime
    payload: EventPayload

    def to_dict(self) -> dict[str, Any]:
        data = self.payload.model_dump()
        data["timestamp"] = isoformat_z(self.timestamp)
        data["eventName"] = self.event_name.value
        return data


Handler = Callable[[EventEnvelope], object]


def _lookup(event: EventName | str) -> EventName | None:
    if isinstance(event, EventName):
        return event
    try:
        return EventName(event)
    except ValueError:
        return None


class EventBus:
    """
    Synchronous event bus.

    Handlers run in registration order on the emitting thread. A handler
    that raises is logged and skipped; the remaining handlers still run.
    """

    def __init__(self):
        self._handlers: dict[EventName, list[Handler]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def on(self, event: EventName | str, handler: Handler) -> None:
        """
        Subscribe a handler.

        Raises:
            ValueError: If the event name is not part of EventName
        """
        name = _lookup(event)
        if name is None:
            raise ValueError(f"Unknown event: {event}")
        with self._lock:
            self._handlers.setdefault(name, []).append(handler)
        logger.debug(f"[EVENTS] Handler registered for {name.value}")

    def once(self, event: EventName | str, handler: Handler) -> None:
        """Subscribe a handler that unsubscribes itself after its first call."""

        def wrapper(envelope: EventEnvelope) -> object:
            self.off(event, wrapper)
            return handler(envelope)

        wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        self.on(event, wrapper)

    def off(self, event: EventName | str, handler: Handler) -> None:
        """Remove the first registration of handler (or of a once() wrapper around it)."""
        name = _lookup(event)
        if name is None:
            return
        with self._lock:
            handlers = self._handlers.get(name, [])
            for i, registered in enumerate(handlers):
                if registered is handler or getattr(registered, "__wrapped__", None) is handler:
                    del handlers[i]
                    break
            if not handlers:
                self._handlers.pop(name, None)

    def remove_all_listeners(self, event: EventName | str | None = None) -> None:
        with self._lock:
            if event is None:
                self._handlers.clear()
                return
            name = _lookup(event)
            if name is not None:
                self._handlers.pop(name, None)

    # =========================================================================
    # PUBLISHING
    # =========================================================================

    def emit(
        self,
        event: EventName | str,
        payload: EventPayload | Mapping[str, Any] | None = None,
    ) -> int:
        """
        Deliver an event to its handlers.

        Args:
            event: Event name
            payload: The event's payload model, or a mapping validated into it

        Returns:
            Number of handlers invoked

        Raises:
            TypeError: If payload is a model of the wrong variant
            pydantic.ValidationError: If a mapping payload does not fit the variant
        """
        name = _lookup(event)
        if name is None:
            logger.debug(f"[EVENTS] No handlers for unknown event {event}")
            return 0

        with self._lock:
            handlers = list(self._handlers.get(name, ()))
        if not handlers:
            return 0

        envelope = EventEnvelope(
            event_name=name,
            timestamp=utc_now(),
            payload=self._build_payload(name, payload),
        )
        logger.debug(
            f"[EVENTS] Emitting {name.value} to {len(handlers)} handler(s)",
            extra={"event_data": redact_sensitive(envelope.payload.model_dump())},
        )

        for handler in handlers:
            try:
                handler(envelope)
            except Exception:
                logger.exception(f"[EVENTS] Handler failed for {name.value}")
        return len(handlers)

    @staticmethod
    def _build_payload(
        name: EventName,
        payload: EventPayload | Mapping[str, Any] | None,
    ) -> EventPayload:
        payload_cls = EVENT_PAYLOADS[name]
        if payload is None:
            return payload_cls()
        if isinstance(payload, Mapping):
            return payload_cls.model_validate(dict(payload))
        if type(payload) is not payload_cls:
            raise TypeError(
                f"{name.value} expects {payload_cls.__name__}, got {type(payload).__name__}"
            )
        return payload

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_registered_events(self) -> list[EventName]:
        with self._lock:
            return [name for name, handlers in self._handlers.items() if handlers]

    def get_handler_count(self, event: EventName | str) -> int:
        name = _lookup(event)
        if name is None:
            return 0
        with self._lock:
            return len(self._handlers.get(name, ()))
