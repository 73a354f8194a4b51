"""
Compliance API.

Lets clients ask ahead of time whether a feature is available before
showing it. Responses carry the feature-level restriction list and message
only, never which rule produced them.

Endpoints:
- POST /api/compliance/check
- POST /api/compliance/batch-check
- GET  /api/compliance/user/{user_id}/restrictions
- GET  /api/compliance/feature/{feature}/availability
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from pew_access.api.dependencies.access import (
    ensure_self_or_permission,
    get_access_guard,
    get_request_context,
    get_resolved_permissions,
)
from pew_access.api.schemas.compliance import (
    BatchComplianceCheckRequest,
    BatchComplianceResponse,
    ComplianceCheckRequest,
    ComplianceResultResponse,
    FeatureAvailabilityResponse,
    UserRestrictionsResponse,
)
from pew_access.compliance.models import ComplianceResult
from pew_access.constants.permissions import Permission
from pew_access.guard.access import AccessGuard
from pew_access.platform.audit import record_compliance_check
from pew_access.platform.principal import (
    Principal,
    RequestContext,
    build_evaluation_context,
    get_principal,
)
from pew_access.rbac.resolver import ResolvedPermissions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compliance", tags=["compliance"])


def _to_response(result: ComplianceResult) -> ComplianceResultResponse:
    return ComplianceResultResponse(**result.to_dict())


def _location(
    request_context: RequestContext,
    country: Optional[str],
    region: Optional[str],
) -> RequestContext:
    return RequestContext(
        ip=request_context.ip,
        user_agent=request_context.user_agent,
        country=(country or request_context.country or "").upper() or None,
        region=(region or request_context.region or "").upper() or None,
    )


@router.post("/check", response_model=ComplianceResultResponse)
async def check_compliance(
    body: ComplianceCheckRequest,
    principal: Principal = Depends(get_principal),
    resolved: ResolvedPermissions = Depends(get_resolved_permissions),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
):
    """Check one feature for the caller (or, with compliance:manage, another user)."""
    user_id = body.user_id or principal.id
    ensure_self_or_permission(principal, resolved, user_id, Permission.COMPLIANCE_MANAGE.value)

    context = _location(request_context, body.country, body.region)
    eval_context = build_evaluation_context(
        principal if user_id == principal.id else None, context
    )
    result = guard.compliance_gate.check_compliance(user_id, body.feature, eval_context)

    if guard.audit_sink is not None:
        record_compliance_check(
            guard.audit_sink,
            user_id=user_id,
            feature=body.feature,
            allowed=result.allowed,
            restrictions=result.restrictions,
            country=context.country,
            region=context.region,
            ip=context.ip,
            user_agent=context.user_agent,
        )
    return _to_response(result)


@router.post("/batch-check", response_model=BatchComplianceResponse)
async def batch_check(
    body: BatchComplianceCheckRequest,
    principal: Principal = Depends(get_principal),
    resolved: ResolvedPermissions = Depends(get_resolved_permissions),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
):
    user_id = body.user_id or principal.id
    ensure_self_or_permission(principal, resolved, user_id, Permission.COMPLIANCE_MANAGE.value)

    context = _location(request_context, body.country, body.region)
    eval_context = build_evaluation_context(
        principal if user_id == principal.id else None, context
    )
    results = guard.compliance_gate.batch_check(user_id, body.features, eval_context)
    return BatchComplianceResponse(
        user_id=user_id,
        results={feature: _to_response(result) for feature, result in results.items()},
    )


@router.get("/user/{user_id}/restrictions", response_model=UserRestrictionsResponse)
async def get_user_restrictions(
    user_id: str,
    principal: Principal = Depends(get_principal),
    resolved: ResolvedPermissions = Depends(get_resolved_permissions),
    guard: AccessGuard = Depends(get_access_guard),
):
    ensure_self_or_permission(principal, resolved, user_id, Permission.COMPLIANCE_MANAGE.value)
    return UserRestrictionsResponse(
        user_id=user_id,
        restrictions=guard.compliance_gate.get_user_restrictions(user_id),
    )


@router.get("/feature/{feature}/availability", response_model=FeatureAvailabilityResponse)
async def get_feature_availability(
    feature: str,
    country: Optional[str] = Query(None, min_length=2, max_length=2),
    region: Optional[str] = Query(None, max_length=32),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
):
    """Location-only availability. Defaults to the request's geo headers."""
    context = _location(request_context, country, region)
    result = guard.compliance_gate.get_feature_availability(
        feature, country=context.country, region=context.region
    )
    return FeatureAvailabilityResponse(
        feature=feature,
        country=context.country,
        region=context.region,
        available=result.allowed,
        restrictions=result.restrictions,
        message=result.message,
    )
