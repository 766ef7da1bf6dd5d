"""
Tests for the event bus.

These tests verify:
- Handlers run in registration order and a failing handler is isolated
- Payloads are validated against the event's model
- once/off subscription management
- Debug logs never carry sensitive payload fields
"""

import logging

import pytest
from pydantic import ValidationError

from fieldops_security.events import (
    EventBus,
    EventEnvelope,
    EventName,
    SecurityEvent,
    WorkOrderEvent,
)
from fieldops_security.redaction import REDACTION_MARKER


class TestEmit:
    """Test suite for publishing."""

    def test_emit_without_handlers(self, event_bus: EventBus):
        """Test that emitting with no subscribers is a no-op."""
        assert event_bus.emit(EventName.ISSUE_CREATED, {"issue_id": "i-1"}) == 0

    def test_emit_without_handlers_skips_validation(self, event_bus: EventBus):
        """Test that an unsubscribed event does not validate its payload."""
        assert event_bus.emit(EventName.ISSUE_CREATED, {"unexpected": True}) == 0

    def test_emit_unknown_name(self, event_bus: EventBus):
        """Test that an unknown event name is ignored."""
        assert event_bus.emit("billing.invoiced", {"anything": 1}) == 0

    def test_emit_by_string_name(self, event_bus: EventBus):
        """Test that the wire name resolves to the enum member."""
        received = []
        event_bus.on("issue.created", received.append)

        assert event_bus.emit("issue.created", {"issue_id": "i-1"}) == 1
        assert received[0].event_name is EventName.ISSUE_CREATED

    def test_handlers_run_in_order(self, event_bus: EventBus):
        """Test registration order."""
        calls = []
        event_bus.on(EventName.USER_LOGIN, lambda env: calls.append("first"))
        event_bus.on(EventName.USER_LOGIN, lambda env: calls.append("second"))
        event_bus.on(EventName.USER_LOGIN, lambda env: calls.append("third"))

        event_bus.emit(EventName.USER_LOGIN, {"user_id": "u-1"})

        assert calls == ["first", "second", "third"]

    def test_failing_handler_isolated(self, event_bus: EventBus, caplog):
        """Test that one failing handler does not stop the others."""
        calls = []

        def broken(envelope):
            raise RuntimeError("handler bug")

        event_bus.on(EventName.USER_LOGIN, broken)
        event_bus.on(EventName.USER_LOGIN, lambda env: calls.append(env.payload.user_id))

        with caplog.at_level(logging.ERROR, logger="fieldops.events"):
            count = event_bus.emit(EventName.USER_LOGIN, {"user_id": "u-1"})

        assert count == 2
        assert calls == ["u-1"]
        assert any("Handler failed" in r.getMessage() for r in caplog.records)

    def test_envelope(self, event_bus: EventBus):
        """Test the delivered envelope shape."""
        received: list[EventEnvelope] = []
        event_bus.on(EventName.WORK_ORDER_ASSIGNED, received.append)

        event_bus.emit(
            EventName.WORK_ORDER_ASSIGNED,
            WorkOrderEvent(work_order_id="wo-9", assignee_id="agent-1", actor_id="manager-1"),
        )

        data = received[0].to_dict()
        assert data["eventName"] == "workOrder.assigned"
        assert data["work_order_id"] == "wo-9"
        assert data["assignee_id"] == "agent-1"
        assert data["timestamp"].endswith("Z")


class TestPayloadValidation:
    """Test suite for payload models."""

    def test_mapping_coerced_to_model(self, event_bus: EventBus, captured_events):
        """Test that a mapping becomes the event's model."""
        event_bus.emit(EventName.RATE_LIMIT_EXCEEDED, {"actor_id": "u-1", "action_class": "auth"})

        assert isinstance(captured_events[0].payload, SecurityEvent)

    def test_mapping_with_unknown_field_rejected(self, event_bus: EventBus, captured_events):
        """Test extra fields are refused."""
        with pytest.raises(ValidationError):
            event_bus.emit(EventName.WORK_ORDER_CREATED, {"work_order_id": "wo-1", "colour": "red"})

    def test_missing_required_field_rejected(self, event_bus: EventBus, captured_events):
        """Test required fields are enforced."""
        with pytest.raises(ValidationError):
            event_bus.emit(EventName.DOCUMENT_UPLOADED, {"filename": "a.pdf"})

    def test_wrong_model_rejected(self, event_bus: EventBus, captured_events):
        """Test that a payload of another variant raises TypeError."""
        with pytest.raises(TypeError):
            event_bus.emit(EventName.WORK_ORDER_CREATED, SecurityEvent(reason="nope"))

    def test_missing_payload_uses_defaults(self, event_bus: EventBus, captured_events):
        """Test that a payload model without required fields can be omitted."""
        event_bus.emit(EventName.SECURITY_BREACH_DETECTED)

        assert captured_events[0].payload == SecurityEvent()

    def test_payload_is_immutable(self, event_bus: EventBus, captured_events):
        """Test handlers cannot modify a shared payload."""
        event_bus.emit(EventName.ISSUE_ESCALATED, {"issue_id": "i-1"})

        with pytest.raises(ValidationError):
            captured_events[0].payload.issue_id = "i-2"


class TestSubscription:
    """Test suite for subscription management."""

    def test_on_unknown_name_raises(self, event_bus: EventBus):
        """Test that subscribing to an unknown name fails."""
        with pytest.raises(ValueError):
            event_bus.on("billing.invoiced", print)

    def test_once(self, event_bus: EventBus):
        """Test that a once handler runs a single time."""
        calls = []
        event_bus.once(EventName.USER_LOGOUT, calls.append)

        event_bus.emit(EventName.USER_LOGOUT, {"user_id": "u-1"})
        event_bus.emit(EventName.USER_LOGOUT, {"user_id": "u-1"})

        assert len(calls) == 1
        assert event_bus.get_handler_count(EventName.USER_LOGOUT) == 0

    def test_off(self, event_bus: EventBus):
        """Test handler removal, including once wrappers."""
        calls = []
        event_bus.on(EventName.USER_LOGOUT, calls.append)
        event_bus.once(EventName.USER_SUSPENDED, calls.append)

        event_bus.off(EventName.USER_LOGOUT, calls.append)
        event_bus.off(EventName.USER_SUSPENDED, calls.append)

        assert event_bus.emit(EventName.USER_LOGOUT, {"user_id": "u-1"}) == 0
        assert event_bus.emit(EventName.USER_SUSPENDED, {"user_id": "u-1"}) == 0
        assert calls == []

    def test_off_removes_one_registration(self, event_bus: EventBus):
        """Test that a handler registered twice is removed once per call."""
        calls = []
        event_bus.on(EventName.USER_LOGIN, calls.append)
        event_bus.on(EventName.USER_LOGIN, calls.append)

        event_bus.off(EventName.USER_LOGIN, calls.append)

        assert event_bus.emit(EventName.USER_LOGIN, {"user_id": "u-1"}) == 1

    def test_remove_all_listeners(self, event_bus: EventBus):
        """Test bulk removal, per event and globally."""
        event_bus.on(EventName.USER_LOGIN, print)
        event_bus.on(EventName.ISSUE_CREATED, print)

        event_bus.remove_all_listeners(EventName.USER_LOGIN)
        assert event_bus.get_registered_events() == [EventName.ISSUE_CREATED]

        event_bus.remove_all_listeners()
        assert event_bus.get_registered_events() == []

    def test_introspection(self, event_bus: EventBus):
        """Test handler counts."""
        event_bus.on(EventName.ISSUE_RESOLVED, print)
        event_bus.on(EventName.ISSUE_RESOLVED, repr)

        assert event_bus.get_handler_count("issue.resolved") == 2
        assert event_bus.get_handler_count("billing.invoiced") == 0


class TestRedaction:
    """Test suite for sensitive data in event logs."""

    def test_debug_log_redacts_sensitive_fields(self, event_bus: EventBus, caplog):
        """Test that secrets in metadata never reach the debug log."""
        event_bus.on(EventName.USER_LOGIN, lambda env: None)

        with caplog.at_level(logging.DEBUG, logger="fieldops.events"):
            event_bus.emit(
                EventName.USER_LOGIN,
                {"user_id": "u-1", "metadata": {"session_token": "abc123", "device": "ios"}},
            )

        record = next(r for r in caplog.records if hasattr(r, "event_data"))
        assert record.event_data["metadata"] == {"session_token": REDACTION_MARKER, "device": "ios"}
        assert "abc123" not in caplog.text

    def test_handlers_receive_unredacted_payload(self, event_bus: EventBus, captured_events):
        """Test that redaction only applies to the log."""
        event_bus.emit(EventName.USER_LOGIN, {"user_id": "u-1", "metadata": {"session_token": "abc123"}})

        assert captured_events[0].payload.metadata == {"session_token": "abc123"}
