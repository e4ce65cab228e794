from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from backoffice.models import (
    ComplianceActionType,
    ComplianceStatus,
    DealStatus,
    FlagSeverity,
    FlagType,
    RuleScope,
)


class ComplianceFlagRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    rule_id: Optional[int]
    flag_type: FlagType
    severity: FlagSeverity
    message: str
    recommendation: Optional[str]
    requires_human_review: bool
    blocks_execution: bool
    resolved: bool
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    resolution_notes: Optional[str]
    created_at: datetime


class FlagStats(BaseModel):
    unresolved: int
    critical_unresolved: int
    blocking_unresolved: int


class FlagListResponse(BaseModel):
    flags: list[ComplianceFlagRead]
    stats: FlagStats


class FlagResolveRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=4000)


class FlagResolveResponse(BaseModel):
    flag: ComplianceFlagRead
    deal_status: DealStatus
    compliance_status: ComplianceStatus


class ComplianceActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    deal_id: int
    flag_id: Optional[int]
    action_type: ComplianceActionType
    performed_by: str
    notes: Optional[str]
    action_metadata: Optional[dict[str, Any]] = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class ComplianceRuleCreate(BaseModel):
    rule_code: str = Field(..., min_length=1, max_length=64)
    flag_type: FlagType
    scope: RuleScope
    severity: FlagSeverity
    message: str = Field(..., min_length=1)
    recommendation: Optional[str] = None
    match_value: Optional[str] = None
    min_value_usd: Optional[float] = None
    max_value_usd: Optional[float] = None
    blocks_execution: bool = False
    requires_human_review: bool = True


class ComplianceRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_code: str
    version: int
    catalog_version: str
    flag_type: FlagType
    scope: RuleScope
    match_value: Optional[str]
    min_value_usd: Optional[float]
    max_value_usd: Optional[float]
    severity: FlagSeverity
    blocks_execution: bool
    requires_human_review: bool
    message: str
    recommendation: Optional[str]
    active: bool
    superseded_by_id: Optional[int]
    created_by: Optional[str]
    created_at: datetime
