"""
Pytest configuration and fixtures for testing.

This module provides:
- Settings isolated from the developer's environment
- Controllable clocks for TTL and window expiry
- A counting actor store for cache assertions
- Pre-wired component fixtures
"""

from datetime import datetime, timedelta, timezone

import pytest

from fieldops_security.audit import AuditEntry, AuditTrail
from fieldops_security.config import SecurityConfig
from fieldops_security.events import EventBus, EventEnvelope, EventName
from fieldops_security.protection import ProtectiveControlService
from fieldops_security.rbac import Actor, InMemoryActorStore, PermissionEngine


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeClock:
    """Seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    """Datetime clock for audit timestamps."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class CountingActorStore(InMemoryActorStore):
    """InMemoryActorStore that counts lookups."""

    def __init__(self, actors=()):
        super().__init__(actors)
        self.lookups = 0

    def get_actor(self, actor_id: str) -> Actor | None:
        self.lookups += 1
        return super().get_actor(actor_id)


class FailingActorStore:
    """Actor store whose backend is down."""

    def __init__(self):
        self.lookups = 0

    def get_actor(self, actor_id: str) -> Actor | None:
        self.lookups += 1
        raise ConnectionError("identity store unreachable")


# =============================================================================
# CONFIG FIXTURES
# =============================================================================


@pytest.fixture
def config() -> SecurityConfig:
    """Test settings, ignoring any .env file."""
    return SecurityConfig(_env_file=None, environment="test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock()


# =============================================================================
# ACTOR FIXTURES
# =============================================================================


@pytest.fixture
def actors() -> list[Actor]:
    return [
        Actor(id="director-1", roles=("operations_director",)),
        Actor(id="admin-1", roles=("administrator",), organization_id="acme", organization_type="service"),
        Actor(id="client-admin-1", roles=("administrator",), organization_id="globex", organization_type="client"),
        Actor(id="manager-1", roles=("manager",), organization_id="acme"),
        Actor(id="dispatcher-1", roles=("field_agent", "dispatcher"), organization_id="acme"),
        Actor(id="agent-1", roles=("field_agent",), organization_id="acme"),
        Actor(id="agent-2", roles=("field_agent",), organization_id="acme"),
        Actor(id="nobody-1", roles=("ghost", "intern")),
    ]


@pytest.fixture
def actor_store(actors) -> CountingActorStore:
    return CountingActorStore(actors)


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def captured_events(event_bus):
    """Subscribe a recorder to every event and return the recorded envelopes."""
    received: list[EventEnvelope] = []
    for name in EventName:
        event_bus.on(name, received.append)
    return received


@pytest.fixture
def alerts() -> list[AuditEntry]:
    return []


@pytest.fixture
def audit_trail(alerts, date_clock) -> AuditTrail:
    return AuditTrail(max_entries=1000, alert_sink=alerts.append, clock=date_clock)


@pytest.fixture
def protection(config, event_bus, clock) -> ProtectiveControlService:
    return ProtectiveControlService(config, event_bus=event_bus, clock=clock)


@pytest.fixture
def engine(actor_store, event_bus, clock) -> PermissionEngine:
    return PermissionEngine(actor_store, event_bus=event_bus, clock=clock)
