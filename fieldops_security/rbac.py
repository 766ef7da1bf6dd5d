"""
Permission Engine.

Role-based access control with:
1. A role registry (privilege levels, wildcard permissions, inheritance)
2. A global bypass role whose holders are granted everything
3. Effective-role resolution (highest level wins, impersonation override)
4. Conditional permissions evaluated against the resource instance
5. A short-lived decision cache

check_permission never raises: any internal failure becomes a denial.

Usage:
    from fieldops_security.rbac import Actor, InMemoryActorStore, PermissionEngine

    store = InMemoryActorStore([Actor(id="u-1", roles=("dispatcher",))])
    engine = PermissionEngine(store)
    engine.has_permission("u-1", "workOrders", "update")
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from .config import SecurityConfig
from .events import EventBus, EventName, SecurityEvent
from .timers import PeriodicTask
from .timeutil import isoformat_z, utc_now

logger = logging.getLogger("fieldops.rbac")
check_logger = logging.getLogger("fieldops.rbac.checks")

WILDCARD = "*"

TESTING_ROLE_HEADER = "x-testing-role"
TESTING_COMPANY_TYPE_HEADER = "x-testing-company-type"


# =============================================================================
# MODELS
# =============================================================================


@dataclass(frozen=True)
class Permission:
    """A resource/action grant, optionally restricted by condition tags."""

    resource: str
    action: str
    conditions: tuple[str, ...] = ()

    @property
    def is_global(self) -> bool:
        return self.resource == WILDCARD and self.action == WILDCARD

    def matches(self, resource: str, action: str) -> bool:
        return (
            self.resource in (WILDCARD, resource)
            and self.action in (WILDCARD, action)
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"resource": self.resource, "action": self.action}
        if self.conditions:
            data["conditions"] = list(self.conditions)
        return data


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    level: int
    permissions: tuple[Permission, ...] = ()
    inherits: tuple[str, ...] = ()


@dataclass(frozen=True)
class PermissionDecision:
    granted: bool
    reason: str
    bypass_used: bool = False
    applied_role: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "granted": self.granted,
            "reason": self.reason,
            "bypassUsed": self.bypass_used,
            "appliedRole": self.applied_role,
        }


@dataclass(frozen=True)
class Actor:
    """Identity as seen by the engine. Owned by the identity store."""

    id: str
    roles: tuple[str, ...] = ()
    organization_id: str | None = None
    organization_type: str | None = None


class ActorStore(Protocol):
    def get_actor(self, actor_id: str) -> Actor | None: ...


class InMemoryActorStore:
    """Dict-backed ActorStore for local development and tests."""

    def __init__(self, actors: Iterable[Actor] = ()):
        self._actors: dict[str, Actor] = {a.id: a for a in actors}
        self._lock = threading.Lock()

    def add(self, actor: Actor) -> None:
        with self._lock:
            self._actors[actor.id] = actor

    def remove(self, actor_id: str) -> None:
        with self._lock:
            self._actors.pop(actor_id, None)

    def get_actor(self, actor_id: str) -> Actor | None:
        with self._lock:
            return self._actors.get(actor_id)


@dataclass(frozen=True)
class PermissionContext:
    """
    Per-check context supplied by the caller.

    Attributes:
        testing_role: Impersonated role name
        testing_company_type: Impersonated organization type ("service" or "client")
        resource: The resource instance being acted on, needed by conditional permissions
    """

    testing_role: str | None = None
    testing_company_type: str | None = None
    resource: Mapping[str, Any] | None = field(default=None, hash=False, compare=False)

    @property
    def is_impersonating(self) -> bool:
        return bool(self.testing_role and self.testing_company_type)

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        resource: Mapping[str, Any] | None = None,
    ) -> "PermissionContext":
        """Build a context from request headers (case-insensitive names)."""
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(
            testing_role=lowered.get(TESTING_ROLE_HEADER) or None,
            testing_company_type=lowered.get(TESTING_COMPANY_TYPE_HEADER) or None,
            resource=resource,
        )


# =============================================================================
# CONDITIONS
# =============================================================================

Condition = Callable[[Actor, Mapping[str, Any] | None], bool]


def assigned_to_user(actor: Actor, resource: Mapping[str, Any] | None) -> bool:
    if resource is None:
        return False
    assigned = resource.get("assigned_to")
    if isinstance(assigned, (list, tuple, set, frozenset)):
        return actor.id in assigned
    return assigned is not None and assigned == actor.id


def own_company(actor: Actor, resource: Mapping[str, Any] | None) -> bool:
    if resource is None or actor.organization_id is None:
        return False
    return resource.get("company_id") == actor.organization_id


def own_profile(actor: Actor, resource: Mapping[str, Any] | None) -> bool:
    if resource is None:
        return False
    return resource.get("user_id", resource.get("id")) == actor.id


def client_company(actor: Actor, resource: Mapping[str, Any] | None) -> bool:
    return actor.organization_type == "client"


DEFAULT_CONDITIONS: dict[str, Condition] = {
    "assigned_to_user": assigned_to_user,
    "own_company": own_company,
    "own_profile": own_profile,
    "client_company": client_company,
}


# =============================================================================
# ROLE REGISTRY
# =============================================================================


def _p(resource: str, action: str, *conditions: str) -> Permission:
    return Permission(resource, action, tuple(conditions))


DEFAULT_ROLES: tuple[RoleDefinition, ...] = (
    RoleDefinition("operations_director", 1000, (_p("*", "*"),)),
    RoleDefinition("administrator", 900, (
        _p("users", "*"),
        _p("workOrders", "*"),
        _p("companies", "read"),
        _p("companies", "update"),
        _p("jobNetwork", "*"),
        _p("issues", "*"),
        _p("messaging", "*"),
        _p("reports", "*"),
        _p("analytics", "*"),
        _p("workOrders", "create", "client_company"),
        _p("workOrders", "read", "own_company"),
        _p("fieldAgents", "read"),
        _p("serviceCompanies", "read"),
    )),
    RoleDefinition("project_manager", 850, (
        _p("users", "read"),
        _p("users", "update"),
        _p("workOrders", "*"),
        _p("companies", "read"),
        _p("jobNetwork", "*"),
        _p("issues", "*"),
        _p("messaging", "*"),
        _p("reports", "*"),
        _p("analytics", "read"),
    )),
    RoleDefinition("manager", 800, (
        _p("users", "read"),
        _p("users", "update"),
        _p("workOrders", "*"),
        _p("jobNetwork", "*"),
        _p("issues", "*"),
        _p("messaging", "*"),
        _p("reports", "read"),
    )),
    RoleDefinition("dispatcher", 700, (
        _p("users", "read"),
        _p("workOrders", "*"),
        _p("jobNetwork", "read"),
        _p("issues", "read"),
        _p("issues", "update"),
        _p("messaging", "*"),
    )),
    RoleDefinition("field_engineer", 600, (
        _p("workOrders", "read"),
        _p("workOrders", "update"),
        _p("users", "read"),
        _p("fieldAgents", "promote"),
        _p("messaging", "*"),
        _p("documents", "*"),
    )),
    RoleDefinition("field_agent", 500, (
        _p("workOrders", "read", "assigned_to_user"),
        _p("workOrders", "update", "assigned_to_user"),
        _p("messaging", "read"),
        _p("messaging", "create"),
        _p("documents", "read"),
        _p("documents", "upload"),
        _p("profile", "update", "own_profile"),
    )),
)


class RoleRegistry:
    """Role definitions keyed by name, in registration order."""

    def __init__(self, roles: Iterable[RoleDefinition] = DEFAULT_ROLES):
        self._roles: dict[str, RoleDefinition] = {}
        for role in roles:
            self.register(role)

    def register(self, role: RoleDefinition) -> None:
        if role.name in self._roles:
            raise ValueError(f"Role already registered: {role.name}")
        self._roles[role.name] = role

    def get(self, name: str) -> RoleDefinition | None:
        return self._roles.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    def names(self) -> list[str]:
        return list(self._roles)

    def highest_role(self, names: Iterable[str]) -> RoleDefinition | None:
        """
        The highest-level recognized role among names.

        Ties go to the role registered first. Unknown names are ignored.
        """
        order = {name: i for i, name in enumerate(self._roles)}
        known = [self._roles[n] for n in dict.fromkeys(names) if n in self._roles]
        if not known:
            return None
        return min(known, key=lambda r: (-r.level, order[r.name]))

    def resolve_permissions(self, name: str) -> list[Permission]:
        """Own permissions first, then inherited ones depth-first; cycles are cut."""
        resolved: list[Permission] = []
        seen: set[str] = set()

        def visit(role_name: str) -> None:
            if role_name in seen:
                return
            seen.add(role_name)
            role = self._roles.get(role_name)
            if role is None:
                return
            resolved.extend(role.permissions)
            for parent in role.inherits:
                visit(parent)

        visit(name)
        return resolved

    def get_role_hierarchy(self) -> list[dict[str, Any]]:
        roles = sorted(self._roles.values(), key=lambda r: r.level, reverse=True)
        return [{"role": r.name, "level": r.level} for r in roles]

    def get_permissions_for_role(self, name: str) -> list[Permission]:
        return self.resolve_permissions(name) if name in self._roles else []


# =============================================================================
# DECISION CACHE
# =============================================================================

CacheKey = tuple[str, str, str]


@dataclass
class CachedDecision:
    decision: PermissionDecision
    expires_at: float


@dataclass
class DecisionCacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class DecisionCache:
    """
    TTL cache of permission decisions keyed by (actor, resource, action).

    Expiry is checked lazily on read; purge_expired() only reclaims memory.
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CachedDecision] = {}
        self._lock = threading.Lock()
        self.stats = DecisionCacheStats()

    def get(self, key: CacheKey) -> PermissionDecision | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats.misses += 1
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self.stats.misses += 1
                self.stats.evictions += 1
                return None
            self.stats.hits += 1
            return entry.decision

    def set(self, key: CacheKey, decision: PermissionDecision) -> None:
        with self._lock:
            self._entries[key] = CachedDecision(decision, self._clock() + self.ttl_seconds)
            self.stats.sets += 1

    def invalidate_actor(self, actor_id: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k[0] == actor_id]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in list(self._entries.items()) if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
            self.stats.evictions += len(expired)
        if expired:
            logger.debug(f"[RBAC] Purged {len(expired)} expired cached decisions")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# =============================================================================
# ENGINE
# =============================================================================


class PermissionEngine:
    """
    Decides whether an actor may perform an action on a resource.

    Args:
        actor_store: Identity lookup, called on every uncached check
        roles: Role registry (defaults to DEFAULT_ROLES)
        bypass_role: Holders of this role are granted everything
        default_role: Applied to actors with no recognized role
        cache_ttl_seconds: Lifetime of cached decisions
        event_bus: Receives an unauthorized-access event per fresh denial
        conditions: Condition tag to predicate mapping
        clock: Monotonic seconds source for the cache
    """

    def __init__(
        self,
        actor_store: ActorStore,
        roles: RoleRegistry | None = None,
        bypass_role: str = "operations_director",
        default_role: str = "field_agent",
        cache_ttl_seconds: float = 300.0,
        event_bus: EventBus | None = None,
        conditions: Mapping[str, Condition] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._actor_store = actor_store
        self.roles = roles or RoleRegistry()
        self.bypass_role = bypass_role
        self.default_role = default_role
        self._event_bus = event_bus
        self._conditions = dict(conditions if conditions is not None else DEFAULT_CONDITIONS)
        self.cache = DecisionCache(cache_ttl_seconds, clock)
        self._sweep_task = PeriodicTask("permission-cache-sweep", cache_ttl_seconds, self.cache.purge_expired)
        logger.info(
            f"[RBAC] Permission engine ready with {len(self.roles)} roles",
            extra={"roles": self.roles.names()},
        )

    @classmethod
    def from_config(
        cls,
        config: SecurityConfig,
        actor_store: ActorStore,
        event_bus: EventBus | None = None,
        roles: RoleRegistry | None = None,
    ) -> "PermissionEngine":
        return cls(
            actor_store,
            roles=roles,
            bypass_role=config.bypass_role,
            default_role=config.default_role,
            cache_ttl_seconds=config.permission_cache_ttl_seconds,
            event_bus=event_bus,
        )

    def start(self) -> None:
        self._sweep_task.start()

    def stop(self) -> None:
        self._sweep_task.stop()

    # =========================================================================
    # PERMISSION CHECKING
    # =========================================================================

    def has_permission(
        self,
        actor_id: str,
        resource: str,
        action: str,
        context: PermissionContext | None = None,
    ) -> bool:
        return self.check_permission(actor_id, resource, action, context).granted

    def check_permission(
        self,
        actor_id: str,
        resource: str,
        action: str,
        context: PermissionContext | None = None,
    ) -> PermissionDecision:
        """
        Decide a permission check.

        Decisions that depend on the impersonation markers or on the
        resource instance are not cached; everything else is cached for
        the TTL under (actor_id, resource, action).

        Returns:
            The decision; never raises
        """
        context = context or PermissionContext()
        key = (actor_id, resource, action)

        if not context.is_impersonating:
            cached = self.cache.get(key)
            if cached is not None:
                self._log_check(actor_id, resource, action, cached, cached=True)
                return cached

        try:
            decision, context_dependent = self._evaluate(actor_id, resource, action, context)
            if not context_dependent:
                self.cache.set(key, decision)
        except Exception:
            logger.exception(f"[RBAC] Error checking {resource}:{action} for {actor_id}")
            decision = PermissionDecision(granted=False, reason="error during permission check")

        self._log_check(actor_id, resource, action, decision, cached=False)
        if not decision.granted:
            self._emit_denial(actor_id, resource, action, decision)
        return decision

    def _evaluate(
        self,
        actor_id: str,
        resource: str,
        action: str,
        context: PermissionContext,
    ) -> tuple[PermissionDecision, bool]:
        actor = self._actor_store.get_actor(actor_id)
        if actor is None:
            return PermissionDecision(granted=False, reason="actor not found"), False

        if self.bypass_role in actor.roles:
            reason = f"{self.bypass_role} global bypass"
            if context.is_impersonating:
                reason += " (role testing)"
            return PermissionDecision(
                granted=True,
                reason=reason,
                bypass_used=True,
                applied_role=self.bypass_role,
            ), context.is_impersonating

        role_name, impersonated = self._resolve_effective_role(actor, context)
        if role_name not in self.roles:
            return PermissionDecision(
                granted=False,
                reason="role not defined",
                applied_role=role_name,
            ), impersonated

        if impersonated:
            actor = replace(actor, organization_type=context.testing_company_type)

        conditions_checked = False
        for permission in self.roles.resolve_permissions(role_name):
            if permission.is_global:
                return self._grant(role_name), impersonated
            if not permission.matches(resource, action):
                continue
            if not permission.conditions:
                return self._grant(role_name), impersonated
            conditions_checked = True
            if self._conditions_hold(permission.conditions, actor, context.resource):
                return self._grant(role_name), True

        return PermissionDecision(
            granted=False,
            reason="permission denied by role",
            applied_role=role_name,
        ), impersonated or conditions_checked

    @staticmethod
    def _grant(role_name: str) -> PermissionDecision:
        return PermissionDecision(granted=True, reason="permission granted by role", applied_role=role_name)

    def _conditions_hold(
        self,
        conditions: Iterable[str],
        actor: Actor,
        resource: Mapping[str, Any] | None,
    ) -> bool:
        for tag in conditions:
            predicate = self._conditions.get(tag)
            if predicate is None:
                logger.warning(f"[RBAC] Unknown permission condition: {tag}", extra={"condition": tag})
                return False
            if not predicate(actor, resource):
                return False
        return True

    # =========================================================================
    # EFFECTIVE ROLE
    # =========================================================================

    def _resolve_effective_role(self, actor: Actor, context: PermissionContext) -> tuple[str, bool]:
        own = self.roles.highest_role(actor.roles)

        if context.is_impersonating:
            target = self.roles.get(context.testing_role)
            ceiling = own or self.roles.get(self.default_role)
            if target is not None and ceiling is not None and target.level <= ceiling.level:
                return target.name, True
            logger.warning(
                f"[RBAC] Ignoring impersonation of {context.testing_role} by {actor.id}",
                extra={"actor_id": actor.id, "testing_role": context.testing_role},
            )

        return (own.name if own else self.default_role), False

    def get_effective_role(self, actor_id: str, context: PermissionContext | None = None) -> str:
        """Role a check for this actor would be decided under."""
        context = context or PermissionContext()
        try:
            actor = self._actor_store.get_actor(actor_id)
        except Exception:
            logger.exception(f"[RBAC] Error resolving effective role for {actor_id}")
            return self.default_role
        if actor is None:
            return self.default_role
        if self.bypass_role in actor.roles:
            return self.bypass_role
        return self._resolve_effective_role(actor, context)[0]

    def is_bypass_holder(self, actor_id: str) -> bool:
        try:
            actor = self._actor_store.get_actor(actor_id)
        except Exception:
            logger.exception(f"[RBAC] Error checking bypass role for {actor_id}")
            return False
        return actor is not None and self.bypass_role in actor.roles

    # =========================================================================
    # SIDE CHANNELS
    # =========================================================================

    @staticmethod
    def _log_check(
        actor_id: str,
        resource: str,
        action: str,
        decision: PermissionDecision,
        cached: bool,
    ) -> None:
        outcome = "granted" if decision.granted else "denied"
        check_logger.info(
            f"[RBAC] Permission check {actor_id} {resource}:{action} {outcome}",
            extra={
                "actor_id": actor_id,
                "resource": resource,
                "action": action,
                "granted": decision.granted,
                "reason": decision.reason,
                "cached": cached,
            },
        )

    def _emit_denial(
        self,
        actor_id: str,
        resource: str,
        action: str,
        decision: PermissionDecision,
    ) -> None:
        if self._event_bus is None:
            return
        try:
            self._event_bus.emit(
                EventName.UNAUTHORIZED_ACCESS,
                SecurityEvent(
                    actor_id=actor_id,
                    resource=resource,
                    action=action,
                    reason=decision.reason,
                    metadata={"applied_role": decision.applied_role},
                ),
            )
        except Exception:
            logger.exception(f"[RBAC] Failed to publish denial for {actor_id}")

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    def invalidate_actor(self, actor_id: str) -> int:
        """Drop cached decisions for an actor, e.g. after a role change."""
        return self.cache.invalidate_actor(actor_id)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("[RBAC] Decision cache cleared")

    def get_role_hierarchy(self) -> list[dict[str, Any]]:
        return self.roles.get_role_hierarchy()

    def get_permissions_for_role(self, role_name: str) -> list[Permission]:
        return self.roles.get_permissions_for_role(role_name)

    def generate_permission_audit_report(self) -> dict[str, Any]:
        roles = []
        for name in self.roles.names():
            role = self.roles.get(name)
            permissions = self.roles.resolve_permissions(name)
            roles.append({
                "name": name,
                "level": role.level,
                "inherits": list(role.inherits),
                "permissionCount": len(permissions),
                "permissions": [p.to_dict() for p in permissions],
            })
        return {
            "timestamp": isoformat_z(utc_now()),
            "bypassRole": self.bypass_role,
            "defaultRole": self.default_role,
            "roles": roles,
            "cacheStats": {
                "entriesCount": len(self.cache),
                "hits": self.cache.stats.hits,
                "misses": self.cache.stats.misses,
                "hitRate": self.cache.stats.hit_rate,
            },
        }
