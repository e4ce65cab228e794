from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from backoffice.models import AnchorStatus, MilestoneStatus, SettlementRail


class SettlementCreate(BaseModel):
    deal_id: int
    rail: SettlementRail
    instrument_id: Optional[int] = None
    amount: Optional[float] = None

    # FIAT
    beneficiary_name: Optional[str] = None
    beneficiary_account: Optional[str] = None
    beneficiary_bank: Optional[str] = None
    swift_bic: Optional[str] = None
    iban: Optional[str] = None
    routing_number: Optional[str] = None
    reference_text: Optional[str] = None
    intermediary_bank: Optional[str] = None
    currency: Optional[str] = None

    # XRPL / STELLAR
    destination_address: Optional[str] = None
    destination_tag: Optional[int] = None
    issuer: Optional[str] = None
    escrow_condition: Optional[str] = None
    escrow_finish_after: Optional[int] = None
    escrow_cancel_after: Optional[int] = None
    memo: Optional[str] = None
    memo_type: Optional[Literal["text", "id", "hash"]] = None
    asset_code: Optional[str] = None
    asset_issuer: Optional[str] = None
    federation_address: Optional[str] = None
    destination_kind: Optional[Literal["exchange", "self_custody"]] = None


class ChecklistItemRead(BaseModel):
    check: str
    status: Literal["PASS", "WARN", "FAIL", "TODO"]
    detail: str


class SettlementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    instrument_id: Optional[int]
    rail: SettlementRail
    amount: float
    currency: str
    payload: dict[str, Any]
    validation_checklist: list[ChecklistItemRead]
    is_validated: bool
    created_by: str
    created_at: datetime


class SettlementSnapshotRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    settlement_id: int
    validation_checklist: list[ChecklistItemRead]
    is_validated: bool
    validated_by: str
    created_at: datetime


class EscrowMilestoneCreate(BaseModel):
    deal_id: int
    settlement_id: Optional[int] = None
    milestone_name: str = Field(..., min_length=1, max_length=255)
    amount: float = Field(..., gt=0)
    currency: str
    release_condition: str = Field(..., min_length=1)


class EscrowMilestoneRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    settlement_id: Optional[int]
    milestone_name: str
    amount: float
    currency: str
    release_condition: str
    release_status: MilestoneStatus
    condition_evidence: Optional[str]
    released_by: Optional[str]
    released_at: Optional[datetime]
    dispute_reason: Optional[str]
    created_at: datetime
    updated_at: datetime


class SettlementOverview(BaseModel):
    instructions: list[SettlementRead]
    milestones: list[EscrowMilestoneRead]


class MilestoneConditionMet(BaseModel):
    evidence: str = Field(..., min_length=1)


class MilestoneDispute(BaseModel):
    reason: str = Field(..., min_length=1)


class ProofAnchorCreate(BaseModel):
    deal_id: Optional[int] = None
    object_type: str = Field(..., min_length=1, max_length=64)
    object_id: str = Field(..., min_length=1, max_length=64)
    object_data: Any
    chains: list[Literal["XRPL", "STELLAR"]] = Field(default_factory=lambda: ["XRPL"])


class ProofAnchorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: Optional[int]
    object_type: str
    object_id: str
    object_hash: str
    anchor_chain: str
    status: AnchorStatus
    created_by: str
    created_at: datetime
