"""
Admin access-control API.

SECURITY: everything under /api/admin/* is declared exact-role "admin" in
config/routes.yaml, so the AccessGuardMiddleware has already rejected
non-admins before these handlers run. Mutating actions are audit-logged.

Endpoints:
- POST   /api/admin/policies/{policy_id}/test        sandboxed policy evaluation
- POST   /api/admin/roles/reload                     rebuild the role table
- GET    /api/admin/ab-tests/{test_id}/distribution  variant split sanity check
- GET    /api/admin/users/{user_id}/overrides        list a user's overrides
- POST   /api/admin/users/{user_id}/overrides        add an override
- DELETE /api/admin/overrides/{override_id}          remove an override
"""

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from pew_access.api.dependencies.access import get_access_guard, get_request_context
from pew_access.api.schemas.admin import (
    OverrideCreateRequest,
    OverrideListResponse,
    OverrideResponse,
    PolicyTestRequest,
    PolicyTestResponse,
    RoleReloadResponse,
    RoleSummary,
    VariantDistributionResponse,
    VariantShare,
)
from pew_access.database.session import get_db_session
from pew_access.guard.access import AccessGuard
from pew_access.platform.audit import record_admin_action
from pew_access.platform.errors import ConfigurationError, NotFoundError
from pew_access.platform.principal import Principal, RequestContext, get_principal
from pew_access.rbac.models import UserOverride
from pew_access.repositories.overrides_repo import UserOverrideRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin-access"])


@router.post(
    "/policies/{policy_id}/test",
    response_model=PolicyTestResponse,
    responses={404: {"description": "Policy not found"}},
)
async def test_policy(
    policy_id: str,
    body: PolicyTestRequest,
    principal: Principal = Depends(get_principal),
    guard: AccessGuard = Depends(get_access_guard),
):
    """
    Evaluate one policy, whatever its status, against a supplied context.

    Sandboxed: live decisions are unaffected and no access audit record is
    written.
    """
    result = guard.policy_engine.test_policy_by_id(policy_id, body.context)
    logger.info(
        "Policy sandbox test",
        extra={
            "admin_id": principal.id,
            "policy_id": policy_id,
            "condition_met": result.condition_met,
        },
    )
    return PolicyTestResponse(**result.to_dict())


@router.post(
    "/roles/reload",
    response_model=RoleReloadResponse,
    responses={503: {"description": "Role source unreachable and nothing cached"}},
)
async def reload_roles(
    principal: Principal = Depends(get_principal),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
):
    """Rebuild the role table from its source and swap it in."""
    reloaded = guard.registry.reload()
    table = guard.registry.snapshot()

    if guard.audit_sink is not None:
        record_admin_action(
            guard.audit_sink,
            admin_id=principal.id,
            action="roles.reload",
            target="roles",
            details={"reloaded": reloaded, "source": table.source},
            ip=request_context.ip,
            user_agent=request_context.user_agent,
        )
    if not reloaded:
        logger.warning(
            "Role reload requested but source failed; serving cached table",
            extra={"admin_id": principal.id},
        )

    return RoleReloadResponse(
        reloaded=reloaded,
        source=table.source,
        loaded_at=table.loaded_at,
        roles=[
            RoleSummary(name=r.name, level=r.level, permission_count=len(r.permissions))
            for r in table.roles
        ],
    )


@router.get(
    "/ab-tests/{test_id}/distribution",
    response_model=VariantDistributionResponse,
    responses={404: {"description": "A/B test not found"}},
)
async def ab_test_distribution(
    test_id: str,
    sample_size: int = Query(10000, ge=100, le=100000),
    guard: AccessGuard = Depends(get_access_guard),
):
    """
    Split a synthetic population across the test's variants.

    Lets operators compare observed against declared percentages before
    activating a test.
    """
    if guard.targeting is None or guard.targeting.source is None:
        raise ConfigurationError("Experiment targeting is not configured")
    test = guard.targeting.source.get_test(test_id)
    counts = guard.targeting.variant_distribution(
        test, (f"sample-{i}" for i in range(sample_size))
    )
    return VariantDistributionResponse(
        test_id=test.id,
        sample_size=sample_size,
        variants=[
            VariantShare(
                name=v.name,
                declared_percentage=v.percentage,
                count=counts[v.name],
                observed_percentage=round(counts[v.name] * 100 / sample_size, 2),
            )
            for v in test.variants
        ],
    )


def _override_response(override: UserOverride) -> OverrideResponse:
    return OverrideResponse(
        id=override.id,
        user_id=override.user_id,
        override_type=override.override_type,
        key=override.key,
        value=override.value,
        reason=override.reason,
        admin_id=override.admin_id,
        created_at=override.created_at,
    )


@router.get("/users/{user_id}/overrides", response_model=OverrideListResponse)
async def list_user_overrides(
    user_id: str,
    db: Session = Depends(get_db_session),
):
    overrides = UserOverrideRepository(db).list_for_user(user_id)
    return OverrideListResponse(
        user_id=user_id,
        overrides=[_override_response(o) for o in overrides],
    )


@router.post(
    "/users/{user_id}/overrides",
    response_model=OverrideResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"description": "Tier/trust override without a grant/revoke value"}},
)
async def add_user_override(
    user_id: str,
    body: OverrideCreateRequest,
    principal: Principal = Depends(get_principal),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db_session),
):
    """
    Attach an override to a user.

    Takes effect the next time the auth layer loads the user's overrides
    into their principal.
    """
    override = UserOverrideRepository(db).add_override(
        user_id=user_id,
        override_type=body.override_type,
        key=body.key,
        value=body.value,
        admin_id=principal.id,
        reason=body.reason,
    )
    if guard.audit_sink is not None:
        record_admin_action(
            guard.audit_sink,
            admin_id=principal.id,
            action="overrides.add",
            target=user_id,
            details={
                "override_id": override.id,
                "override_type": override.override_type.value,
                "key": override.key,
            },
            ip=request_context.ip,
            user_agent=request_context.user_agent,
        )
    return _override_response(override)


@router.delete(
    "/overrides/{override_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"description": "Override not found"}},
)
async def remove_user_override(
    override_id: str,
    principal: Principal = Depends(get_principal),
    guard: AccessGuard = Depends(get_access_guard),
    request_context: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db_session),
):
    if not UserOverrideRepository(db).remove_override(override_id, principal.id):
        raise NotFoundError("Override", override_id)
    if guard.audit_sink is not None:
        record_admin_action(
            guard.audit_sink,
            admin_id=principal.id,
            action="overrides.remove",
            target=override_id,
            ip=request_context.ip,
            user_agent=request_context.user_agent,
        )
