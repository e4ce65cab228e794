from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from backoffice.models import InstrumentStage, InstrumentType, VerificationStatus


class FundingInstrumentCreate(BaseModel):
    deal_id: int
    instrument_type: InstrumentType
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = None
    issuing_bank_name: Optional[str] = None
    issuing_bank_bic: Optional[str] = None
    issuing_bank_country: Optional[str] = None
    advising_bank_name: Optional[str] = None
    advising_bank_bic: Optional[str] = None
    reference_number: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    beneficiary_name: Optional[str] = None
    applicant_name: Optional[str] = None
    applicable_rules: Optional[str] = None


class FundingInstrumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    instrument_type: InstrumentType
    issuing_bank_name: Optional[str]
    issuing_bank_bic: Optional[str]
    issuing_bank_country: Optional[str]
    advising_bank_name: Optional[str]
    advising_bank_bic: Optional[str]
    reference_number: Optional[str]
    amount: Optional[float]
    currency: Optional[str]
    issue_date: Optional[date]
    expiry_date: Optional[date]
    beneficiary_name: Optional[str]
    applicant_name: Optional[str]
    applicable_rules: Optional[str]
    stage: InstrumentStage
    verification_status: VerificationStatus
    human_approval_required: bool
    verification_report: Optional[dict[str, Any]]
    verified_by: Optional[str]
    verified_at: Optional[datetime]
    verification_notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class SuppliedInstrumentFields(BaseModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    beneficiary_name: Optional[str] = None
    issuing_bank_bic: Optional[str] = None
    expiry_date: Optional[date] = None
    applicable_rules: Optional[str] = None
    reference_number: Optional[str] = None


class ExpectedInstrumentFields(BaseModel):
    amount: Optional[float] = None
    currency: Optional[str] = None
    beneficiary_name: Optional[str] = None
    issuing_bank_bic: Optional[str] = None


class InstrumentVerifyRequest(BaseModel):
    supplied: SuppliedInstrumentFields = Field(default_factory=SuppliedInstrumentFields)
    expected: ExpectedInstrumentFields = Field(default_factory=ExpectedInstrumentFields)


class CheckResultRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    check: str
    status: str
    detail: str
    expected: Any = None
    actual: Any = None


class CheckReportRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    instrument_id: int
    checks: list[CheckResultRead]
    fail_count: int
    warn_count: int
    checks_passed: bool
    verification_status: VerificationStatus
    checked_at: datetime
    checked_by: str
    human_approval_required: bool


class InstrumentApproveRequest(BaseModel):
    notes: Optional[str] = None


class InstrumentRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=4000)


class InstrumentStageUpdate(BaseModel):
    stage: InstrumentStage
