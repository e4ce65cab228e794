from backoffice.schemas.auth import Token, TokenPayload
from backoffice.schemas.compliance import (
    ComplianceActionRead,
    ComplianceFlagRead,
    ComplianceRuleCreate,
    ComplianceRuleRead,
    FlagListResponse,
    FlagResolveRequest,
    FlagResolveResponse,
    FlagStats,
)
from backoffice.schemas.deals import DealCreate, DealRead, DealScreenResponse, ScreeningRead
from backoffice.schemas.funding import (
    FundingRequirementCreate,
    FundingRequirementList,
    FundingRequirementRead,
    FundingRequirementStatusUpdate,
    FundingRequirementUpdateResponse,
    FundingStructureRequest,
    FundingStructureResponse,
    RequirementSpecRead,
    TermSheetRead,
)
from backoffice.schemas.instruments import (
    CheckReportRead,
    CheckResultRead,
    ExpectedInstrumentFields,
    FundingInstrumentCreate,
    FundingInstrumentRead,
    InstrumentApproveRequest,
    InstrumentRejectRequest,
    InstrumentStageUpdate,
    InstrumentVerifyRequest,
    SuppliedInstrumentFields,
)
from backoffice.schemas.settlement import (
    ChecklistItemRead,
    EscrowMilestoneCreate,
    EscrowMilestoneRead,
    MilestoneConditionMet,
    MilestoneDispute,
    ProofAnchorCreate,
    ProofAnchorRead,
    SettlementCreate,
    SettlementOverview,
    SettlementRead,
    SettlementSnapshotRead,
)

__all__ = [
    "Token",
    "TokenPayload",
    "ComplianceActionRead",
    "ComplianceFlagRead",
    "ComplianceRuleCreate",
    "ComplianceRuleRead",
    "FlagListResponse",
    "FlagResolveRequest",
    "FlagResolveResponse",
    "FlagStats",
    "DealCreate",
    "DealRead",
    "DealScreenResponse",
    "ScreeningRead",
    "FundingRequirementCreate",
    "FundingRequirementList",
    "FundingRequirementRead",
    "FundingRequirementStatusUpdate",
    "FundingRequirementUpdateResponse",
    "FundingStructureRequest",
    "FundingStructureResponse",
    "RequirementSpecRead",
    "TermSheetRead",
    "CheckReportRead",
    "CheckResultRead",
    "ExpectedInstrumentFields",
    "FundingInstrumentCreate",
    "FundingInstrumentRead",
    "InstrumentApproveRequest",
    "InstrumentRejectRequest",
    "InstrumentStageUpdate",
    "InstrumentVerifyRequest",
    "SuppliedInstrumentFields",
    "ChecklistItemRead",
    "EscrowMilestoneCreate",
    "EscrowMilestoneRead",
    "MilestoneConditionMet",
    "MilestoneDispute",
    "ProofAnchorCreate",
    "ProofAnchorRead",
    "SettlementCreate",
    "SettlementOverview",
    "SettlementRead",
    "SettlementSnapshotRead",
]
