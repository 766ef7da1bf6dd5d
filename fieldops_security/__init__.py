"""
FieldOps Security Core

Authorization, audit and protective controls for FieldOps services:
- Permission engine (role hierarchy, bypass role, conditional permissions, decision cache)
- Audit trail (risk scoring, bounded retention, critical escalation, compliance exports)
- Protective controls (rate limiting, input validation/sanitization, upload screening)
- Event bus (typed events, isolated handlers)
- Structured log sink (bounded, queryable log trail)
- FastAPI dependencies and middleware

Usage:
    from fieldops_security import (
        Actor,
        InMemoryActorStore,
        bootstrap,
    )

    core = bootstrap(InMemoryActorStore([Actor(id="u-1", roles=("dispatcher",))]))

    if core.permissions.has_permission("u-1", "workOrders", "update"):
        core.audit.log_event(
            entity_type="workOrder",
            entity_id="wo-42",
            action="updated",
            performed_by="u-1",
            previous_state={"status": "scheduled"},
            new_state={"status": "in_progress"},
        )
"""

# Config
from .config import (
    RateLimitRule,
    SecurityConfig,
    get_security_config,
)

# Errors
from .exceptions import (
    AuditLogError,
    BootstrapError,
    SecurityCoreError,
    SensitiveDataError,
)

# Logging
from .logging import (
    LogEntry,
    LogLevel,
    LogSink,
    attach_log_sink,
    request_context,
    setup_logging,
)

# Redaction
from .redaction import (
    REDACTION_MARKER,
    redact_sensitive,
)

# Events
from .events import (
    DocumentEvent,
    EventBus,
    EventEnvelope,
    EventName,
    EventPayload,
    ImpersonationEvent,
    IssueEvent,
    SecurityEvent,
    UserEvent,
    WorkOrderEvent,
)

# Audit
from .audit import (
    AuditEntry,
    AuditQuery,
    AuditTrail,
    RiskLevel,
    calculate_risk_score,
)

# Protective Controls
from .protection import (
    ProtectiveControlService,
    RateLimitStatus,
)

# Permissions
from .rbac import (
    Actor,
    ActorStore,
    DEFAULT_ROLES,
    InMemoryActorStore,
    Permission,
    PermissionContext,
    PermissionDecision,
    PermissionEngine,
    RoleDefinition,
    RoleRegistry,
)

# Composition
from .bootstrap import (
    SecurityCore,
    bootstrap,
)

# FastAPI
from .dependencies import (
    rate_limit,
    require_permission,
    secure_file_upload,
    security_lifespan,
    validate_body,
)
from .middleware import SecurityHeadersMiddleware

__all__ = [
    # Config
    "RateLimitRule",
    "SecurityConfig",
    "get_security_config",
    # Errors
    "AuditLogError",
    "BootstrapError",
    "SecurityCoreError",
    "SensitiveDataError",
    # Logging
    "LogEntry",
    "LogLevel",
    "LogSink",
    "attach_log_sink",
    "request_context",
    "setup_logging",
    # Redaction
    "REDACTION_MARKER",
    "redact_sensitive",
    # Events
    "DocumentEvent",
    "EventBus",
    "EventEnvelope",
    "EventName",
    "EventPayload",
    "ImpersonationEvent",
    "IssueEvent",
    "SecurityEvent",
    "UserEvent",
    "WorkOrderEvent",
    # Audit
    "AuditEntry",
    "AuditQuery",
    "AuditTrail",
    "RiskLevel",
    "calculate_risk_score",
    # Protective Controls
    "ProtectiveControlService",
    "RateLimitStatus",
    # Permissions
    "Actor",
    "ActorStore",
    "DEFAULT_ROLES",
    "InMemoryActorStore",
    "Permission",
    "PermissionContext",
    "PermissionDecision",
    "PermissionEngine",
    "RoleDefinition",
    "RoleRegistry",
    # Composition
    "SecurityCore",
    "bootstrap",
    # FastAPI
    "rate_limit",
    "require_permission",
    "secure_file_upload",
    "security_lifespan",
    "validate_body",
    "SecurityHeadersMiddleware",
]
