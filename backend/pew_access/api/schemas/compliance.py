"""
Request / response schemas for the compliance API.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ComplianceCheckRequest(BaseModel):
    feature: str = Field(..., min_length=1, max_length=100)
    user_id: Optional[str] = Field(
        None, description="Defaults to the caller. Checking another user needs compliance:manage."
    )
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    region: Optional[str] = Field(None, max_length=32)


class BatchComplianceCheckRequest(BaseModel):
    features: list[str] = Field(..., min_length=1, max_length=50)
    user_id: Optional[str] = None
    country: Optional[str] = Field(None, min_length=2, max_length=2)
    region: Optional[str] = Field(None, max_length=32)


class ComplianceResultResponse(BaseModel):
    feature: str
    allowed: bool
    restrictions: list[str] = Field(default_factory=list)
    message: Optional[str] = None


class BatchComplianceResponse(BaseModel):
    user_id: str
    results: dict[str, ComplianceResultResponse]


class UserRestrictionsResponse(BaseModel):
    user_id: str
    restrictions: list[str]


class FeatureAvailabilityResponse(BaseModel):
    feature: str
    country: Optional[str] = None
    region: Optional[str] = None
    available: bool
    restrictions: list[str] = Field(default_factory=list)
    message: Optional[str] = None
