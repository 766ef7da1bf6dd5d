"""
Composition root for the security core.

Builds every component in dependency order with its collaborators passed
in explicitly:

    LogSink -> EventBus -> AuditTrail -> ProtectiveControlService -> PermissionEngine

then registers the baseline event subscriptions and, optionally, the
process-level fault and signal handlers.

Usage:
    from fieldops_security.bootstrap import bootstrap

    core = bootstrap(actor_store)
    core.permissions.has_permission("u-1", "workOrders", "read")
    core.shutdown()
"""

import asyncio
import logging
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .audit import AlertSink, AuditTrail
from .config import SecurityConfig, get_security_config
from .events import EventBus, EventEnvelope, EventName
from .exceptions import BootstrapError
from .logging import LogSink, attach_log_sink, detach_log_sink, setup_logging
from .protection import ProtectiveControlService
from .rbac import ActorStore, PermissionEngine, RoleRegistry
from .timeutil import isoformat_z, utc_now

logger = logging.getLogger("fieldops.bootstrap")
event_logger = logging.getLogger("fieldops.security")

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@dataclass
class SecurityCore:
    """Every component of one initialized security core."""

    config: SecurityConfig
    log_sink: LogSink
    event_bus: EventBus
    audit: AuditTrail
    protection: ProtectiveControlService
    permissions: PermissionEngine
    started_at: float = field(default_factory=time.time)
    running: bool = True
    _restore: list[Callable[[], None]] = field(default_factory=list, repr=False)
    _shutdown_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_timers(self) -> None:
        self.audit.start()
        self.protection.start()
        self.permissions.start()

    def shutdown(self) -> None:
        """Stop background timers, flush the escalation queue and restore hooks. Idempotent."""
        with self._shutdown_lock:
            if not self.running:
                return
            self.running = False

        try:
            self.permissions.stop()
            self.protection.stop()
            self.audit.stop()
            logger.info("[BOOTSTRAP] Graceful shutdown completed")
        finally:
            while self._restore:
                self._restore.pop()()
            detach_log_sink(self.log_sink)

    # =========================================================================
    # HEALTH AND REPORTING
    # =========================================================================

    def health_status(self) -> dict[str, Any]:
        if not self.running:
            return {
                "status": "unhealthy",
                "message": "Security core has been shut down",
                "timestamp": isoformat_z(utc_now()),
            }

        state = "operational"
        return {
            "status": "healthy",
            "uptime": f"{int(time.time() - self.started_at)}s",
            "environment": self.config.environment,
            "services": {
                "log_sink": state,
                "event_bus": state,
                "audit": state,
                "protection": state,
                "permissions": state,
            },
            "timestamp": isoformat_z(utc_now()),
        }

    def generate_system_report(self) -> dict[str, Any]:
        """
        Snapshot of every component for debugging.

        Raises:
            BootstrapError: If the core has been shut down
        """
        if not self.running:
            raise BootstrapError("Security core is not running")

        return {
            "timestamp": isoformat_z(utc_now()),
            "uptime_seconds": time.time() - self.started_at,
            "environment": self.config.environment,
            "logging": self.log_sink.stats(),
            "events": {
                name.value: self.event_bus.get_handler_count(name)
                for name in self.event_bus.get_registered_events()
            },
            "audit": self.audit.get_audit_statistics(),
            "security": self.protection.generate_security_report(),
            "permissions": {
                "role_hierarchy": self.permissions.get_role_hierarchy(),
                "cached_decisions": len(self.permissions.cache),
            },
        }


# =============================================================================
# EVENT SUBSCRIPTIONS
# =============================================================================


def register_event_listeners(event_bus: EventBus, audit: AuditTrail) -> None:
    """
    Baseline subscriptions.

    Security, impersonation and work-order events are written to the log
    trail; security and impersonation events are also recorded in the
    audit trail.
    """

    def on_breach(envelope: EventEnvelope) -> None:
        payload = envelope.payload
        event_logger.error("[SECURITY] Security breach detected", extra={"event": envelope.to_dict()})
        audit.log_event(
            entity_type="security",
            entity_id=payload.filename or payload.resource or "system",
            action="security_breach",
            performed_by=payload.actor_id or "system",
            reason=payload.reason,
            metadata=envelope.to_dict(),
        )

    def on_rate_limited(envelope: EventEnvelope) -> None:
        payload = envelope.payload
        event_logger.warning("[SECURITY] Rate limit exceeded", extra={"event": envelope.to_dict()})
        audit.log_event(
            entity_type="security",
            entity_id=payload.action_class or "default",
            action="rate_limit_exceeded",
            performed_by=payload.actor_id or "anonymous",
            reason=payload.reason,
            metadata=envelope.to_dict(),
        )

    def on_unauthorized(envelope: EventEnvelope) -> None:
        payload = envelope.payload
        event_logger.warning("[SECURITY] Unauthorized access attempt", extra={"event": envelope.to_dict()})
        audit.log_event(
            entity_type="permission",
            entity_id=f"{payload.resource}:{payload.action}",
            action="authorization_denied",
            performed_by=payload.actor_id or "anonymous",
            reason=payload.reason,
            metadata=envelope.to_dict(),
        )

    def on_impersonation(envelope: EventEnvelope) -> None:
        payload = envelope.payload
        started = envelope.event_name == EventName.ROLE_IMPERSONATION_STARTED
        event_logger.info(
            f"[SECURITY] Role impersonation {'started' if started else 'stopped'}",
            extra={"event": envelope.to_dict()},
        )
        audit.log_event(
            entity_type="role",
            entity_id=payload.impersonated_role,
            action="impersonation_started" if started else "impersonation_stopped",
            performed_by=payload.actor_id or "unknown",
            metadata=envelope.to_dict(),
        )

    def on_work_order(envelope: EventEnvelope) -> None:
        event_logger.info(f"[EVENTS] {envelope.event_name.value}", extra={"event": envelope.to_dict()})

    event_bus.on(EventName.SECURITY_BREACH_DETECTED, on_breach)
    event_bus.on(EventName.RATE_LIMIT_EXCEEDED, on_rate_limited)
    event_bus.on(EventName.UNAUTHORIZED_ACCESS, on_unauthorized)
    event_bus.on(EventName.ROLE_IMPERSONATION_STARTED, on_impersonation)
    event_bus.on(EventName.ROLE_IMPERSONATION_STOPPED, on_impersonation)
    event_bus.on(EventName.WORK_ORDER_CREATED, on_work_order)
    event_bus.on(EventName.WORK_ORDER_STATUS_CHANGED, on_work_order)


# =============================================================================
# PROCESS HANDLERS
# =============================================================================


def install_fault_handlers(core: SecurityCore) -> None:
    """Log uncaught exceptions (main thread and worker threads) and shut down on the former."""
    previous_excepthook = sys.excepthook
    previous_threading_hook = threading.excepthook

    def handle_uncaught(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            previous_excepthook(exc_type, exc_value, exc_tb)
            return
        logger.critical("[BOOTSTRAP] Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
        core.shutdown()

    def handle_thread_exception(args: threading.ExceptHookArgs) -> None:
        thread_name = args.thread.name if args.thread else "unknown"
        logger.critical(
            f"[BOOTSTRAP] Uncaught exception in thread {thread_name}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = handle_uncaught
    threading.excepthook = handle_thread_exception

    def restore() -> None:
        sys.excepthook = previous_excepthook
        threading.excepthook = previous_threading_hook

    core._restore.append(restore)


def install_asyncio_handler(core: SecurityCore, loop: asyncio.AbstractEventLoop) -> None:
    """Route unhandled task errors on loop to the security log."""
    previous = loop.get_exception_handler()

    def handle(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        logger.error(
            f"[BOOTSTRAP] Unhandled asyncio error: {context.get('message', 'unknown')}",
            exc_info=exc if isinstance(exc, BaseException) else None,
        )

    loop.set_exception_handler(handle)
    core._restore.append(lambda: loop.set_exception_handler(previous))


def install_signal_handlers(core: SecurityCore) -> bool:
    """
    Shut down on SIGTERM/SIGINT, then exit.

    Returns:
        False when not on the main thread (signals cannot be installed there)
    """
    if threading.current_thread() is not threading.main_thread():
        logger.debug("[BOOTSTRAP] Not on main thread, skipping signal handlers")
        return False

    def handle(signum: int, frame) -> None:
        logger.info(f"[BOOTSTRAP] Received {signal.Signals(signum).name}, starting graceful shutdown")
        core.shutdown()
        raise SystemExit(0)

    previous = {sig: signal.signal(sig, handle) for sig in SHUTDOWN_SIGNALS}

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    core._restore.append(restore)
    return True


# =============================================================================
# BOOTSTRAP
# =============================================================================


def bootstrap(
    actor_store: ActorStore,
    config: SecurityConfig | None = None,
    alert_sink: AlertSink | None = None,
    roles: RoleRegistry | None = None,
    install_handlers: bool = True,
    start_timers: bool = True,
    configure_logging: bool = False,
) -> SecurityCore:
    """
    Build and wire a security core.

    Args:
        actor_store: Identity lookup used by the permission engine
        config: Settings (defaults to the environment-loaded config)
        alert_sink: Receives escalated audit entries
        roles: Role registry (defaults to the built-in roles)
        install_handlers: Install fault and signal handlers
        start_timers: Start the background sweeps and the escalation drain
        configure_logging: Also configure root logging output for the environment

    Returns:
        The initialized core
    """
    config = config or get_security_config()

    if configure_logging:
        setup_logging(level=config.effective_log_level, json_format=config.is_production)

    log_sink = attach_log_sink(
        LogSink(
            max_entries=config.log_sink_max_entries,
            level=logging.getLevelName(config.effective_log_level),
        )
    )
    logger.info(f"[BOOTSTRAP] Initializing security core ({config.environment})")

    event_bus = EventBus()
    audit = AuditTrail(
        max_entries=config.audit_max_entries,
        alert_sink=alert_sink,
        drain_interval_seconds=config.audit_critical_drain_seconds,
        bypass_role=config.bypass_role,
    )
    protection = ProtectiveControlService(config, event_bus=event_bus)
    permissions = PermissionEngine.from_config(config, actor_store, event_bus=event_bus, roles=roles)

    core = SecurityCore(
        config=config,
        log_sink=log_sink,
        event_bus=event_bus,
        audit=audit,
        protection=protection,
        permissions=permissions,
    )

    register_event_listeners(event_bus, audit)

    if start_timers:
        core.start_timers()

    if install_handlers:
        install_fault_handlers(core)
        install_signal_handlers(core)

    logger.info("[BOOTSTRAP] Security core initialized")
    return core
