"""
Tests for the permission engine.

These tests verify:
- The bypass role grants everything, including during impersonation
- Decisions are cached per (actor, resource, action) for the TTL
- Effective role resolution and the default role
- Conditional permissions against the resource instance
- Failures deny instead of raising
"""

import logging

import pytest

from fieldops_security.events import EventName
from fieldops_security.rbac import (
    Actor,
    DecisionCache,
    InMemoryActorStore,
    Permission,
    PermissionContext,
    PermissionDecision,
    PermissionEngine,
    RoleDefinition,
    RoleRegistry,
)

from conftest import CountingActorStore, FailingActorStore, FakeClock


IMPERSONATE_AGENT = PermissionContext(testing_role="field_agent", testing_company_type="service")


class TestBypassRole:
    """Test suite for the global bypass role."""

    @pytest.mark.parametrize("resource,action", [
        ("workOrders", "delete"),
        ("billing", "export"),
        ("anything", "whatever"),
    ])
    def test_bypass_grants_any_permission(self, engine: PermissionEngine, resource, action):
        """Test that the bypass role is granted every resource/action."""
        decision = engine.check_permission("director-1", resource, action)

        assert decision.granted is True
        assert decision.bypass_used is True
        assert decision.applied_role == "operations_director"

    def test_bypass_wins_over_impersonation(self, engine: PermissionEngine):
        """Test that an active impersonation context does not restrict the bypass role."""
        decision = engine.check_permission("director-1", "users", "delete", IMPERSONATE_AGENT)

        assert decision.granted is True
        assert decision.bypass_used is True
        assert "role testing" in decision.reason

    def test_effective_role_of_bypass_holder(self, engine: PermissionEngine):
        """Test that the bypass holder's effective role is the bypass role."""
        assert engine.get_effective_role("director-1", IMPERSONATE_AGENT) == "operations_director"
        assert engine.is_bypass_holder("director-1") is True
        assert engine.is_bypass_holder("agent-1") is False


class TestDecisionCache:
    """Test suite for decision caching."""

    def test_repeat_check_uses_cache(self, engine: PermissionEngine, actor_store: CountingActorStore):
        """Test that a repeated check returns the same decision without a second lookup."""
        first = engine.check_permission("manager-1", "users", "update")
        second = engine.check_permission("manager-1", "users", "update")

        assert second is first
        assert actor_store.lookups == 1

    def test_cache_expires_after_ttl(self, engine: PermissionEngine, actor_store, clock: FakeClock):
        """Test that an expired decision is recomputed."""
        engine.check_permission("manager-1", "users", "update")
        clock.advance(301)
        engine.check_permission("manager-1", "users", "update")

        assert actor_store.lookups == 2

    def test_unknown_actor_denied_and_cached_for_ttl(self, engine: PermissionEngine, actor_store, clock):
        """Test that an unknown actor is denied and the denial expires with the TTL."""
        decision = engine.check_permission("ghost-99", "users", "read")
        engine.check_permission("ghost-99", "users", "read")

        assert decision.granted is False
        assert decision.reason == "actor not found"
        assert actor_store.lookups == 1

        clock.advance(301)
        engine.check_permission("ghost-99", "users", "read")
        assert actor_store.lookups == 2

    def test_invalidate_actor(self, engine: PermissionEngine, actor_store):
        """Test that invalidating an actor forces a fresh lookup."""
        engine.check_permission("manager-1", "users", "update")
        engine.check_permission("agent-1", "messaging", "read")

        assert engine.invalidate_actor("manager-1") == 1
        engine.check_permission("manager-1", "users", "update")
        assert actor_store.lookups == 3

    def test_purge_expired_only_removes_expired(self):
        """Test the memory hygiene sweep."""
        clock = FakeClock()
        cache = DecisionCache(ttl_seconds=10, clock=clock)
        decision = PermissionDecision(granted=True, reason="ok")

        cache.set(("a", "r", "x"), decision)
        clock.advance(5)
        cache.set(("b", "r", "x"), decision)
        clock.advance(6)

        assert cache.purge_expired() == 1
        assert cache.get(("b", "r", "x")) is decision
        assert len(cache) == 1


class TestEffectiveRole:
    """Test suite for effective role resolution."""

    def test_highest_level_role_applies(self, engine: PermissionEngine):
        """Test that dispatcher outranks field_agent."""
        decision = engine.check_permission("dispatcher-1", "workOrders", "delete")

        assert decision.granted is True
        assert decision.applied_role == "dispatcher"

    def test_unrecognized_roles_fall_back_to_default(self, engine: PermissionEngine):
        """Test that an actor with no known role gets the default minimal role."""
        assert engine.get_effective_role("nobody-1") == "field_agent"

        denied = engine.check_permission("nobody-1", "users", "read")
        granted = engine.check_permission("nobody-1", "messaging", "read")

        assert denied.granted is False
        assert denied.reason == "permission denied by role"
        assert denied.applied_role == "field_agent"
        assert granted.granted is True

    def test_ties_broken_by_registration_order(self):
        """Test that equal levels resolve to the role registered first."""
        registry = RoleRegistry([
            RoleDefinition("first", 100, (Permission("alpha", "read"),)),
            RoleDefinition("second", 100, (Permission("beta", "read"),)),
        ])
        store = InMemoryActorStore([Actor(id="u", roles=("second", "first"))])
        engine = PermissionEngine(store, roles=registry, default_role="first")

        assert engine.get_effective_role("u") == "first"
        assert engine.has_permission("u", "alpha", "read") is True
        assert engine.has_permission("u", "beta", "read") is False

    def test_undefined_default_role(self):
        """Test that a missing role definition denies."""
        registry = RoleRegistry([RoleDefinition("staff", 10, (Permission("*", "*"),))])
        store = InMemoryActorStore([Actor(id="u", roles=())])
        engine = PermissionEngine(store, roles=registry, default_role="guest")

        decision = engine.check_permission("u", "docs", "read")

        assert decision.granted is False
        assert decision.reason == "role not defined"


class TestImpersonation:
    """Test suite for impersonation contexts."""

    def test_bypass_under_impersonation_not_cached(self, engine: PermissionEngine):
        """Test that a role-testing bypass reason does not leak into plain checks."""
        engine.check_permission("director-1", "users", "delete", IMPERSONATE_AGENT)

        plain = engine.check_permission("director-1", "users", "delete")

        assert plain.granted is True
        assert plain.reason == "operations_director global bypass"

    def test_impersonating_lower_role(self, engine: PermissionEngine):
        """Test that a manager testing as field agent gets field agent permissions."""
        decision = engine.check_permission("manager-1", "users", "read", IMPERSONATE_AGENT)

        assert decision.granted is False
        assert decision.applied_role == "field_agent"

    def test_impersonation_cannot_escalate(self, engine: PermissionEngine, caplog):
        """Test that impersonating a higher role is ignored."""
        context = PermissionContext(testing_role="administrator", testing_company_type="service")

        with caplog.at_level(logging.WARNING, logger="fieldops.rbac"):
            decision = engine.check_permission("agent-1", "users", "delete", context)

        assert decision.granted is False
        assert decision.applied_role == "field_agent"
        assert any("Ignoring impersonation" in r.getMessage() for r in caplog.records)

    def test_both_markers_required(self):
        """Test that a role marker alone is not an impersonation session."""
        assert PermissionContext(testing_role="field_agent").is_impersonating is False
        assert IMPERSONATE_AGENT.is_impersonating is True

    def test_context_from_headers(self):
        """Test building a context from request headers."""
        context = PermissionContext.from_headers(
            {"X-Testing-Role": "dispatcher", "X-Testing-Company-Type": "client"},
            resource={"id": "wo-1"},
        )

        assert context.testing_role == "dispatcher"
        assert context.testing_company_type == "client"
        assert context.resource == {"id": "wo-1"}

    def test_impersonated_checks_not_cached(self, engine: PermissionEngine, actor_store):
        """Test that impersonated decisions do not leak into the normal cache."""
        engine.check_permission("manager-1", "users", "read", IMPERSONATE_AGENT)
        decision = engine.check_permission("manager-1", "users", "read")

        assert decision.granted is True
        assert decision.applied_role == "manager"
        assert actor_store.lookups == 2


class TestConditions:
    """Test suite for conditional permissions."""

    def test_assigned_work_order(self, engine: PermissionEngine):
        """Test that a field agent may read a work order assigned to them."""
        context = PermissionContext(resource={"id": "wo-1", "assigned_to": "agent-1"})

        assert engine.has_permission("agent-1", "workOrders", "read", context) is True
        assert engine.has_permission("agent-2", "workOrders", "read", context) is False

    def test_multiple_assignees(self, engine: PermissionEngine):
        """Test assignment lists."""
        context = PermissionContext(resource={"assigned_to": ["agent-2", "agent-1"]})

        assert engine.has_permission("agent-1", "workOrders", "update", context) is True

    def test_missing_resource_instance_denies(self, engine: PermissionEngine):
        """Test that conditions fail closed without a resource instance."""
        decision = engine.check_permission("agent-1", "workOrders", "read")

        assert decision.granted is False

    def test_conditional_decisions_not_cached(self, engine: PermissionEngine):
        """Test that a grant for one instance is not reused for another."""
        mine = PermissionContext(resource={"assigned_to": "agent-1"})
        theirs = PermissionContext(resource={"assigned_to": "agent-2"})

        assert engine.has_permission("agent-1", "workOrders", "read", mine) is True
        assert engine.has_permission("agent-1", "workOrders", "read", theirs) is False

    def test_own_profile(self, engine: PermissionEngine):
        """Test the own_profile condition."""
        assert engine.has_permission(
            "agent-1", "profile", "update", PermissionContext(resource={"id": "agent-1"})
        ) is True
        assert engine.has_permission(
            "agent-1", "profile", "update", PermissionContext(resource={"id": "agent-2"})
        ) is False

    def test_client_company_condition(self):
        """Test the client_company condition against the actor's organization type."""
        registry = RoleRegistry([
            RoleDefinition("buyer", 10, (Permission("workOrders", "create", ("client_company",)),)),
        ])
        store = InMemoryActorStore([
            Actor(id="client", roles=("buyer",), organization_type="client"),
            Actor(id="vendor", roles=("buyer",), organization_type="service"),
        ])
        engine = PermissionEngine(store, roles=registry, default_role="buyer")

        assert engine.has_permission("client", "workOrders", "create") is True
        assert engine.has_permission("vendor", "workOrders", "create") is False

    def test_unknown_condition_denies(self, caplog):
        """Test that an unknown condition is logged and denied."""
        registry = RoleRegistry([
            RoleDefinition("odd", 10, (Permission("docs", "read", ("full_moon",)),)),
        ])
        store = InMemoryActorStore([Actor(id="u", roles=("odd",))])
        engine = PermissionEngine(store, roles=registry, default_role="odd")

        with caplog.at_level(logging.WARNING, logger="fieldops.rbac"):
            decision = engine.check_permission("u", "docs", "read", PermissionContext(resource={}))

        assert decision.granted is False
        assert any("Unknown permission condition" in r.getMessage() for r in caplog.records)


class TestFailClosed:
    """Test suite for error handling."""

    def test_store_error_denies(self):
        """Test that an identity store failure becomes a denial."""
        store = FailingActorStore()
        engine = PermissionEngine(store)

        decision = engine.check_permission("u", "users", "read")

        assert decision.granted is False
        assert decision.reason == "error during permission check"

    def test_store_error_not_cached(self):
        """Test that error denials are retried on the next check."""
        store = FailingActorStore()
        engine = PermissionEngine(store)

        engine.check_permission("u", "users", "read")
        engine.check_permission("u", "users", "read")

        assert store.lookups == 2

    def test_effective_role_on_store_error(self):
        """Test that effective role resolution falls back to the default role."""
        engine = PermissionEngine(FailingActorStore())

        assert engine.get_effective_role("u") == "field_agent"


class TestSideChannels:
    """Test suite for check logging and denial events."""

    def test_every_check_logged(self, engine: PermissionEngine, caplog):
        """Test that granted, denied and cached checks are all logged."""
        with caplog.at_level(logging.INFO, logger="fieldops.rbac.checks"):
            engine.check_permission("manager-1", "users", "update")
            engine.check_permission("manager-1", "users", "update")
            engine.check_permission("agent-1", "users", "delete")

        checks = [r for r in caplog.records if r.name == "fieldops.rbac.checks"]
        assert len(checks) == 3
        assert [r.cached for r in checks] == [False, True, False]
        assert [r.granted for r in checks] == [True, True, False]

    def test_fresh_denial_emits_event(self, engine: PermissionEngine, captured_events):
        """Test that a computed denial publishes an unauthorized-access event once."""
        engine.check_permission("agent-1", "users", "delete")
        engine.check_permission("agent-1", "users", "delete")

        denials = [e for e in captured_events if e.event_name == EventName.UNAUTHORIZED_ACCESS]
        assert len(denials) == 1
        assert denials[0].payload.actor_id == "agent-1"
        assert denials[0].payload.resource == "users"

    def test_grant_emits_nothing(self, engine: PermissionEngine, captured_events):
        """Test that grants are not published."""
        engine.check_permission("manager-1", "users", "read")

        assert captured_events == []


class TestRoleRegistry:
    """Test suite for the role registry."""

    def test_hierarchy_sorted_by_level(self, engine: PermissionEngine):
        """Test the role hierarchy listing."""
        hierarchy = engine.get_role_hierarchy()

        assert hierarchy[0] == {"role": "operations_director", "level": 1000}
        assert hierarchy[-1] == {"role": "field_agent", "level": 500}
        assert [h["level"] for h in hierarchy] == sorted((h["level"] for h in hierarchy), reverse=True)

    def test_inherited_permissions(self):
        """Test that inherited permissions follow the role's own."""
        registry = RoleRegistry([
            RoleDefinition("base", 10, (Permission("docs", "read"),)),
            RoleDefinition("lead", 20, (Permission("docs", "approve"),), inherits=("base",)),
            RoleDefinition("loop", 5, (), inherits=("loop", "lead")),
        ])

        assert registry.resolve_permissions("lead") == [
            Permission("docs", "approve"),
            Permission("docs", "read"),
        ]
        assert len(registry.resolve_permissions("loop")) == 2

    def test_duplicate_role_rejected(self):
        """Test that a role name can be registered once."""
        registry = RoleRegistry([])
        registry.register(RoleDefinition("a", 1))

        with pytest.raises(ValueError):
            registry.register(RoleDefinition("a", 2))

    def test_permissions_for_unknown_role(self, engine: PermissionEngine):
        """Test that an unknown role has no permissions."""
        assert engine.get_permissions_for_role("ghost") == []
        assert Permission("*", "*") in engine.get_permissions_for_role("operations_director")

    def test_permission_audit_report(self, engine: PermissionEngine):
        """Test the permission audit report shape."""
        engine.check_permission("manager-1", "users", "read")
        report = engine.generate_permission_audit_report()

        names = [r["name"] for r in report["roles"]]
        assert names[0] == "operations_director"
        assert report["cacheStats"]["entriesCount"] == 1
        agent = next(r for r in report["roles"] if r["name"] == "field_agent")
        assert {"resource": "profile", "action": "update", "conditions": ["own_profile"]} in agent["permissions"]
