from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from backoffice.models import ComplianceStatus, DealStatus, ScreenStatus
from backoffice.schemas.compliance import ComplianceFlagRead


class DealCreate(BaseModel):
    counterparty_name: str = Field(..., min_length=1, max_length=255)
    commodity: str = Field(..., min_length=1, max_length=64)
    deal_value_usd: Optional[float] = Field(default=None, ge=0)
    currency: str = "USD"
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    incoterm: Optional[str] = None
    quantity: Optional[float] = None
    quantity_unit: Optional[str] = None
    payment_terms: Optional[str] = None
    counterparty_email: Optional[str] = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_number: str
    counterparty_name: str
    counterparty_email: Optional[str]
    commodity: str
    deal_value_usd: Optional[float]
    currency: str
    origin_country: Optional[str]
    destination_country: Optional[str]
    incoterm: Optional[str]
    quantity: Optional[float]
    quantity_unit: Optional[str]
    payment_terms: Optional[str]
    status: DealStatus
    compliance_status: ComplianceStatus
    compliance_cleared_at: Optional[datetime]
    compliance_cleared_by: Optional[str]
    last_screen_status: ScreenStatus
    last_screened_at: Optional[datetime]
    critical_flags_count: int
    funding_readiness_score: Optional[int]
    created_at: datetime
    updated_at: datetime


class ScreeningRead(BaseModel):
    status: Literal["completed", "unavailable"]
    code: Optional[str] = None
    message: Optional[str] = None
    matched: int = 0
    created: int = 0


class DealScreenResponse(BaseModel):
    deal: DealRead
    flags: list[ComplianceFlagRead]
    blocked: bool
    screening: ScreeningRead
