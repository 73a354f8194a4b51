"""
Access-control dependencies for route handlers.

The wired AccessGuard (and through it the registry, compliance gate,
policy engine, experiment targeting and audit sink) lives on
app.state.access_guard; handlers reach it through these dependencies.
"""

import logging

from fastapi import Depends, HTTPException, Request, status

from pew_access.guard.access import AccessGuard
from pew_access.guard.middleware import build_request_context
from pew_access.platform.principal import Principal, RequestContext, get_principal
from pew_access.rbac.resolver import ResolvedPermissions, has_permission

logger = logging.getLogger(__name__)


def get_access_guard(request: Request) -> AccessGuard:
    guard = getattr(request.app.state, "access_guard", None)
    if guard is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access control not configured",
        )
    return guard


def get_request_context(request: Request) -> RequestContext:
    context = getattr(request.state, "request_context", None)
    return context or build_request_context(request)


def get_resolved_permissions(
    principal: Principal = Depends(get_principal),
    guard: AccessGuard = Depends(get_access_guard),
) -> ResolvedPermissions:
    return guard.resolver.resolve(principal)


def ensure_self_or_permission(
    principal: Principal,
    resolved: ResolvedPermissions,
    target_user_id: str,
    permission: str,
) -> None:
    """Allow acting on one's own record, or on anyone's with `permission`."""
    if target_user_id == principal.id or has_permission(resolved, permission):
        return
    logger.warning(
        "Cross-user access without permission",
        extra={
            "user_id": principal.id,
            "target_user_id": target_user_id,
            "required_permission": permission,
        },
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "detail": "You do not have permission to perform this action",
            "error_code": "INSUFFICIENT_ROLE",
            "required_permission": permission,
        },
    )
