"""
Request / response schemas for the admin access-control API.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from pew_access.rbac.models import OverrideType


class PolicyTestRequest(BaseModel):
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Flat evaluation context, e.g. {\"country\": \"US\", \"trust_score\": 40}",
    )


class PolicyTestResponse(BaseModel):
    policy_id: str
    status: str
    target_matched: bool
    condition_met: bool
    would_allow: bool
    restrictions: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class RoleSummary(BaseModel):
    name: str
    level: int
    permission_count: int


class RoleReloadResponse(BaseModel):
    reloaded: bool
    source: str
    loaded_at: datetime
    roles: list[RoleSummary]


class VariantShare(BaseModel):
    name: str
    declared_percentage: float
    count: int
    observed_percentage: float


class VariantDistributionResponse(BaseModel):
    test_id: str
    sample_size: int
    variants: list[VariantShare]


class OverrideCreateRequest(BaseModel):
    override_type: OverrideType
    key: str = Field(..., min_length=1, max_length=255)
    value: Any = Field(..., description="\"grant\"/\"revoke\" for tier and trust overrides")
    reason: str = Field("", max_length=1000)


class OverrideResponse(BaseModel):
    id: str
    user_id: str
    override_type: OverrideType
    key: str
    value: Any
    reason: str
    admin_id: str
    created_at: datetime


class OverrideListResponse(BaseModel):
    user_id: str
    overrides: list[OverrideResponse]
