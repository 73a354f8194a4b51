"""
FastAPI integration for the route guard.

AccessGuardMiddleware runs after the external auth middleware, which is
expected to put a Principal (or nothing, for anonymous requests) on
request.state.principal. Every non-OPTIONS request is decided by the
AccessGuard on app.state.access_guard:
- denied: 401 (unauthenticated) or 403 JSON with a machine-readable
  error_code, the role that would satisfy the request and the restriction
  list
- allowed: the Decision is stored on request.state.access_decision

require_feature() is the per-handler equivalent for features that are not
tied to a route path.
"""

import logging
from typing import Callable, Optional

from fastapi import HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from pew_access.config.settings import AccessControlSettings
from pew_access.guard.access import AccessGuard
from pew_access.guard.decision import Decision, DecisionReason
from pew_access.platform.principal import RequestContext

logger = logging.getLogger(__name__)

_DENIAL_MESSAGES = {
    DecisionReason.UNAUTHENTICATED: "Authentication required",
    DecisionReason.INSUFFICIENT_ROLE: "You do not have permission to perform this action",
    DecisionReason.COMPLIANCE_RESTRICTED: "This feature is not available for your account or location",
    DecisionReason.POLICY_RESTRICTED: "This feature is currently restricted",
    DecisionReason.EVALUATION_ERROR: "Access could not be verified",
}


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """
    Client IP and user agent. Honours X-Forwarded-For for proxied requests.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    return ip_address, request.headers.get("User-Agent")


def build_request_context(
    request: Request,
    settings: Optional[AccessControlSettings] = None,
) -> RequestContext:
    """Request facts for evaluation, with geo from the edge geo-IP headers."""
    settings = settings or AccessControlSettings()
    ip, user_agent = extract_client_info(request)
    country = request.headers.get(settings.geo_country_header)
    region = request.headers.get(settings.geo_region_header)
    return RequestContext(
        ip=ip,
        user_agent=user_agent,
        country=country.upper() if country else None,
        region=region.upper() if region else None,
        attributes={"method": request.method},
    )


def denial_status(decision: Decision) -> int:
    if decision.reason == DecisionReason.UNAUTHENTICATED:
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_403_FORBIDDEN


def denial_body(decision: Decision) -> dict:
    return {
        "detail": _DENIAL_MESSAGES.get(decision.reason, "Access denied"),
        "error_code": decision.reason.value.upper(),
        "required_role": decision.required_role,
        "required_permission": decision.required_permission,
        "restrictions": list(decision.restrictions),
    }


def _guard_for(request: Request, guard: Optional[AccessGuard]) -> AccessGuard:
    if guard is not None:
        return guard
    app_guard = getattr(request.app.state, "access_guard", None)
    if app_guard is None:
        raise RuntimeError("No AccessGuard configured on app.state.access_guard")
    return app_guard


class AccessGuardMiddleware(BaseHTTPMiddleware):
    """Single enforcement point for declared routes."""

    def __init__(
        self,
        app,
        guard: Optional[AccessGuard] = None,
        settings: Optional[AccessControlSettings] = None,
    ):
        super().__init__(app)
        self._guard = guard
        self._settings = settings or AccessControlSettings.from_env()

    async def dispatch(self, request: Request, call_next) -> Response:
        # CORS preflight
        if request.method == "OPTIONS":
            return await call_next(request)

        guard = _guard_for(request, self._guard)
        principal = getattr(request.state, "principal", None)
        context = build_request_context(request, self._settings)
        decision = guard.decide(principal, request.url.path, context)

        if not decision.allowed:
            return JSONResponse(status_code=denial_status(decision), content=denial_body(decision))

        request.state.access_decision = decision
        request.state.request_context = context
        return await call_next(request)


def require_feature(feature: str) -> Callable:
    """
    Dependency that runs the guard for a bare feature name.

    Usage:
        @router.post("/offers")
        async def create_offer(decision: Decision = Depends(require_feature("p2p"))):
            ...
    """

    def dependency(request: Request) -> Decision:
        guard = _guard_for(request, None)
        principal = getattr(request.state, "principal", None)
        context = getattr(request.state, "request_context", None) or build_request_context(request)
        decision = guard.decide(principal, feature, context)
        if not decision.allowed:
            raise HTTPException(status_code=denial_status(decision), detail=denial_body(decision))
        return decision

    return dependency
