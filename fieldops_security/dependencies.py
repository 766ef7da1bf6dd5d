"""
FastAPI request guards backed by a SecurityCore.

The core is read from ``app.state.security_core`` (security_lifespan sets
it). The caller's identity comes from the trusted gateway header
``X-Trusted-User-Id``; impersonation markers from ``X-Testing-Role`` and
``X-Testing-Company-Type``.

Usage:
    from fieldops_security.dependencies import rate_limit, require_permission, security_lifespan

    app = FastAPI(lifespan=security_lifespan(actor_store))

    @app.patch("/work-orders/{id}", dependencies=[Depends(rate_limit("api"))])
    async def update(decision=Depends(require_permission("workOrders", "update"))):
        ...
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile, status
from starlette.concurrency import run_in_threadpool

from .audit import AlertSink
from .bootstrap import SecurityCore, bootstrap, install_asyncio_handler, install_fault_handlers
from .config import SecurityConfig
from .rbac import ActorStore, PermissionContext, PermissionDecision

logger = logging.getLogger("fieldops.http")

USER_ID_HEADER = "X-Trusted-User-Id"

ResourceLoader = Callable[[Request], Mapping[str, Any] | None | Awaitable[Mapping[str, Any] | None]]


def security_lifespan(
    actor_store: ActorStore,
    config: SecurityConfig | None = None,
    alert_sink: AlertSink | None = None,
):
    """
    FastAPI lifespan that bootstraps a core for the app's lifetime.

    Signal handling is left to the ASGI server; fault handlers and the
    loop exception handler are installed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        core = bootstrap(actor_store, config=config, alert_sink=alert_sink, install_handlers=False)
        install_fault_handlers(core)
        install_asyncio_handler(core, asyncio.get_running_loop())
        app.state.security_core = core
        try:
            yield
        finally:
            core.shutdown()

    return lifespan


def get_security_core(request: Request) -> SecurityCore:
    core = getattr(request.app.state, "security_core", None)
    if core is None or not core.running:
        logger.error("[HTTP] Security core not available")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Security core unavailable",
        )
    return core


def get_actor_id(request: Request) -> str | None:
    return request.headers.get(USER_ID_HEADER) or None


def _client_key(request: Request) -> str:
    """
    Rate-limit identity for a request.

    Priority:
    1. Authenticated user ID
    2. X-Forwarded-For header (for proxied requests)
    3. Client IP address
    """
    user_id = get_actor_id(request)
    if user_id:
        return user_id

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    return f"ip:{request.client.host if request.client else 'unknown'}"


def require_permission(
    resource: str,
    action: str,
    resource_loader: ResourceLoader | None = None,
) -> Callable:
    """
    Dependency factory that requires a granted permission.

    Args:
        resource: Resource name
        action: Action name
        resource_loader: Loads the resource instance for conditional
            permissions (sync or async, receives the request)

    Returns:
        Dependency returning the PermissionDecision; raises 401 without an
        identity and 403 on denial
    """

    async def dependency(
        request: Request,
        core: SecurityCore = Depends(get_security_core),
    ) -> PermissionDecision:
        actor_id = get_actor_id(request)
        if not actor_id:
            logger.warning(f"[HTTP] Authorization attempt without user ID on {request.url.path}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )

        instance = None
        if resource_loader is not None:
            instance = resource_loader(request)
            if inspect.isawaitable(instance):
                instance = await instance

        context = PermissionContext.from_headers(request.headers, resource=instance)
        decision = await run_in_threadpool(
            core.permissions.check_permission, actor_id, resource, action, context
        )

        if not decision.granted:
            logger.warning(
                f"[HTTP] Permission denied: {actor_id} {resource}:{action} on {request.url.path}",
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "Forbidden",
                    "message": "Insufficient permissions for this action",
                    "reason": decision.reason,
                },
            )

        logger.debug(f"[HTTP] Authorization granted: {actor_id} {resource}:{action}")
        return decision

    return dependency


def rate_limit(action_class: str = "default") -> Callable:
    """Dependency factory that counts the request and raises 429 when over the limit."""

    async def dependency(
        request: Request,
        core: SecurityCore = Depends(get_security_core),
    ) -> None:
        key = _client_key(request)
        if core.protection.check_rate_limit(key, action_class):
            return

        info = core.protection.get_rate_limit_status(key, action_class)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "Too many requests",
                "message": "Rate limit exceeded. Please try again later.",
                "retry_after": info.retry_after,
            },
            headers={
                "Retry-After": str(info.retry_after),
                "X-RateLimit-Limit": str(info.limit),
                "X-RateLimit-Remaining": "0",
            },
        )

    return dependency


def validate_body(schema: Any = None) -> Callable:
    """
    Dependency factory that screens the JSON body.

    Returns:
        Dependency returning the decoded body; raises 400 on invalid input
    """

    async def dependency(
        request: Request,
        core: SecurityCore = Depends(get_security_core),
    ) -> Any:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Invalid input", "message": "Request body is not valid JSON"},
            ) from None

        if not core.protection.validate_input(body, schema):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "Invalid input", "message": "Request validation failed"},
            )
        return body

    return dependency


async def secure_file_upload(
    request: Request,
    file: UploadFile = File(...),
    core: SecurityCore = Depends(get_security_core),
) -> UploadFile:
    """Screen an uploaded file; raises 400 when it is rejected."""
    content = await file.read()
    await file.seek(0)

    filename = file.filename or ""
    if not core.protection.validate_file_upload(filename, content):
        logger.warning(
            f"[HTTP] Rejected file upload {filename} from {get_actor_id(request) or 'anonymous'}",
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "File validation failed",
                "message": "The uploaded file contains invalid or malicious content",
            },
        )
    return file
