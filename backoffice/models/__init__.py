from backoffice.models.domain import (
    SEVERITY_RANK,
    TERMINAL_DEAL_STATUSES,
    AnchorStatus,
    AuditLog,
    ComplianceAction,
    ComplianceActionType,
    ComplianceFlag,
    ComplianceRule,
    ComplianceStatus,
    Deal,
    DealStatus,
    DocumentSequence,
    EscrowMilestone,
    FlagSeverity,
    FlagType,
    FundingInstrument,
    FundingRequirement,
    InstrumentStage,
    InstrumentType,
    MilestoneStatus,
    ProofAnchor,
    RequirementStatus,
    RequirementType,
    Role,
    RoleName,
    RuleScope,
    ScreenStatus,
    SettlementInstruction,
    SettlementRail,
    SettlementValidationSnapshot,
    User,
    VerificationStatus,
)

__all__ = [
    "SEVERITY_RANK",
    "TERMINAL_DEAL_STATUSES",
    "AnchorStatus",
    "AuditLog",
    "ComplianceAction",
    "ComplianceActionType",
    "ComplianceFlag",
    "ComplianceRule",
    "ComplianceStatus",
    "Deal",
    "DealStatus",
    "DocumentSequence",
    "EscrowMilestone",
    "FlagSeverity",
    "FlagType",
    "FundingInstrument",
    "FundingRequirement",
    "InstrumentStage",
    "InstrumentType",
    "MilestoneStatus",
    "ProofAnchor",
    "RequirementStatus",
    "RequirementType",
    "Role",
    "RoleName",
    "RuleScope",
    "ScreenStatus",
    "SettlementInstruction",
    "SettlementRail",
    "SettlementValidationSnapshot",
    "User",
    "VerificationStatus",
]
