from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from backoffice.models import InstrumentType, RequirementStatus, RequirementType


class FundingStructureRequest(BaseModel):
    deal_id: Optional[int] = None
    deal_value_usd: Optional[float] = Field(default=None, ge=0)
    commodity: Optional[str] = None
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    incoterm: Optional[str] = None
    persist: bool = False


class RequirementSpecRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    requirement_type: RequirementType
    label: str
    description: str
    is_critical: bool


class TermSheetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    requirements: list[RequirementSpecRead]
    readiness_score: int
    primary_instrument: InstrumentType
    fallback_instrument: Optional[InstrumentType]
    recommended_structure: dict[str, Any]
    risk_flags: list[str]
    weights_version: str
    disclaimer: str


class FundingStructureResponse(BaseModel):
    term_sheet: TermSheetRead
    persisted: bool = False
    created: int = 0
    skipped: int = 0
    deal_readiness_score: Optional[int] = None


class FundingRequirementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    requirement_type: RequirementType
    label: str
    description: Optional[str]
    is_critical: bool
    status: RequirementStatus
    due_date: Optional[date]
    document_url: Optional[str]
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    notes: Optional[str]
    weights_version: Optional[str]
    created_at: datetime
    updated_at: datetime


class FundingRequirementList(BaseModel):
    requirements: list[FundingRequirementRead]
    readiness_score: int


class FundingRequirementCreate(BaseModel):
    deal_id: int
    requirement_type: RequirementType
    label: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    is_critical: bool = False
    due_date: Optional[date] = None


class FundingRequirementStatusUpdate(BaseModel):
    requirement_id: int
    status: RequirementStatus
    notes: Optional[str] = None
    document_url: Optional[str] = None


class FundingRequirementUpdateResponse(BaseModel):
    requirement: FundingRequirementRead
    readiness_score: int
