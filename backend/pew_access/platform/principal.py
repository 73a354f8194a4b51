"""
Principal and request context for access decisions.

The principal is produced by the external auth/session collaborator and
attached to request.state.principal before the access guard runs. Geo
attributes come from the edge geo-IP headers.

Usage:
    from pew_access.platform.principal import Principal, RequestContext

    principal = Principal(id="u1", assigned_role="user")
    context = RequestContext(ip="203.0.113.7", country="US")
    flat = build_evaluation_context(principal, context)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException, Request, status

from pew_access.rbac.models import UserOverride

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrincipalAttributes:
    """Targeting attributes captured at signup and maintained by admins."""
    country: Optional[str] = None
    region: Optional[str] = None
    created_at: Optional[datetime] = None
    trust_score: Optional[float] = None
    tier: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "region": self.region,
            "created_at": self.created_at,
            "trust_score": self.trust_score,
            "tier": self.tier,
        }


@dataclass(frozen=True)
class Principal:
    """
    The authenticated actor making a request.

    Anonymous requests carry no Principal at all (None), never an empty one.
    """
    id: str
    assigned_role: Optional[str] = None
    overrides: tuple[UserOverride, ...] = ()
    attributes: PrincipalAttributes = field(default_factory=PrincipalAttributes)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Principal.id cannot be empty")
        # Accept lists from callers but store an immutable tuple
        if not isinstance(self.overrides, tuple):
            object.__setattr__(self, "overrides", tuple(self.overrides))


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request facts used by compliance, policy and experiment evaluation.

    `attributes` holds any extra caller-supplied keys (e.g. "hour",
    "amount") that policy predicates may reference.
    """
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "user_agent": self.user_agent,
            "country": self.country,
            "region": self.region,
            **self.attributes,
        }


def build_evaluation_context(
    principal: Optional[Principal],
    context: Optional[RequestContext],
    role_name: Optional[str] = None,
) -> dict[str, Any]:
    """
    Flatten principal attributes and request facts into one lookup dict.

    Request geo wins over the principal's stored geo, so a user travelling
    is evaluated where they are. Keys with None values are dropped so that
    predicates can distinguish "missing" from "present".
    """
    flat: dict[str, Any] = {}
    if principal is not None:
        flat.update(principal.attributes.to_dict())
        flat["user_id"] = principal.id
    if role_name:
        flat["role"] = role_name
    if context is not None:
        for key, value in context.to_dict().items():
            if value is not None:
                flat[key] = value
    return {k: v for k, v in flat.items() if v is not None}


def get_principal(request: Request) -> Principal:
    """
    Extract the authenticated principal from request state.

    Raises 401 if the auth collaborator did not attach one.
    """
    principal = getattr(request.state, "principal", None)
    if principal is None:
        logger.info("Route handler accessed without principal", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return principal
