from datetime import date, datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base


class RoleName(PyEnum):
    admin = "admin"
    compliance = "compliance"
    operations = "operations"
    finance = "finance"
    auditor = "auditor"


class DealStatus(PyEnum):
    inquiry = "inquiry"
    qualified = "qualified"
    on_hold = "on_hold"
    negotiating = "negotiating"
    contracted = "contracted"
    in_execution = "in_execution"
    closed_won = "closed_won"
    closed_lost = "closed_lost"


TERMINAL_DEAL_STATUSES = frozenset({DealStatus.closed_won, DealStatus.closed_lost})


class ComplianceStatus(PyEnum):
    pending = "pending"
    cleared = "cleared"
    flagged = "flagged"


class ScreenStatus(PyEnum):
    not_screened = "not_screened"
    completed = "completed"
    failed = "failed"


class FlagType(PyEnum):
    SANCTIONS = "SANCTIONS"
    EXPORT_CONTROL = "EXPORT_CONTROL"
    LICENSE = "LICENSE"
    AML = "AML"
    DOCS = "DOCS"
    INCOTERM = "INCOTERM"
    VALUE = "VALUE"
    COMMODITY = "COMMODITY"
    COUNTERPARTY = "COUNTERPARTY"


class FlagSeverity(PyEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# Lower rank sorts first.
SEVERITY_RANK: dict[FlagSeverity, int] = {
    FlagSeverity.CRITICAL: 0,
    FlagSeverity.HIGH: 1,
    FlagSeverity.MEDIUM: 2,
    FlagSeverity.LOW: 3,
}


class RuleScope(PyEnum):
    destination_country = "destination_country"
    origin_country = "origin_country"
    commodity = "commodity"
    counterparty = "counterparty"
    value_threshold = "value_threshold"
    incoterm = "incoterm"
    unlisted_commodity = "unlisted_commodity"
    any = "any"


class ComplianceActionType(PyEnum):
    SCREEN = "SCREEN"
    SCREEN_FAILED = "SCREEN_FAILED"
    FLAG_RESOLVED = "FLAG_RESOLVED"
    STATUS_RECOMPUTED = "STATUS_RECOMPUTED"


class RequirementType(PyEnum):
    KYC = "KYC"
    KYB = "KYB"
    POF = "POF"
    BANK_LETTER = "BANK_LETTER"
    FIN_STATEMENTS = "FIN_STATEMENTS"
    INSURANCE = "INSURANCE"
    COLLATERAL = "COLLATERAL"
    UCC = "UCC"
    LICENSE = "LICENSE"
    OTHER = "OTHER"


class RequirementStatus(PyEnum):
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    WAIVED = "WAIVED"


class InstrumentType(PyEnum):
    SBLC = "SBLC"
    LC = "LC"
    BANK_GUARANTEE = "BANK_GUARANTEE"
    ESCROW = "ESCROW"
    PREPAY = "PREPAY"
    OTHER = "OTHER"


class InstrumentStage(PyEnum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    TRANSMITTED = "TRANSMITTED"
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    DRAWN = "DRAWN"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class VerificationStatus(PyEnum):
    UNVERIFIED = "UNVERIFIED"
    PENDING_HUMAN_REVIEW = "PENDING_HUMAN_REVIEW"
    HUMAN_APPROVED = "HUMAN_APPROVED"
    HUMAN_REJECTED = "HUMAN_REJECTED"
    VERIFIED = "VERIFIED"


class SettlementRail(PyEnum):
    FIAT = "FIAT"
    XRPL = "XRPL"
    STELLAR = "STELLAR"


class MilestoneStatus(PyEnum):
    LOCKED = "LOCKED"
    CONDITION_MET = "CONDITION_MET"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"


class AnchorStatus(PyEnum):
    PENDING = "PENDING"


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[RoleName] = mapped_column(
        Enum(RoleName, native_enum=False), unique=True, nullable=False
    )
    description: Mapped[str | None] = mapped_column(String(255))

    users = relationship("User", back_populates="role")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id"), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    role = relationship("Role", back_populates="users", lazy="joined")


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    deal_id: Mapped[int | None] = mapped_column(ForeignKey("deals.id"), nullable=True, index=True)
    payload_json: Mapped[str | None] = mapped_column(Text)

    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(256), nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DocumentSequence(Base):
    __tablename__ = "document_sequences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doc_type: Mapped[str] = mapped_column(String(16), nullable=False)
    period: Mapped[str] = mapped_column(String(6), nullable=False)  # YYYY
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("doc_type", "period", name="uq_doc_seq_doc_type_period"),)


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)

    counterparty_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    counterparty_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    commodity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    deal_value_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    origin_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    destination_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    incoterm: Mapped[str | None] = mapped_column(String(8), nullable=True)
    quantity: Mapped[float | None] = mapped_column(Float, nullable=True)
    quantity_unit: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payment_terms: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[DealStatus] = mapped_column(
        Enum(DealStatus, native_enum=False),
        nullable=False,
        default=DealStatus.inquiry,
        index=True,
    )
    compliance_status: Mapped[ComplianceStatus] = mapped_column(
        Enum(ComplianceStatus, native_enum=False),
        nullable=False,
        default=ComplianceStatus.pending,
        index=True,
    )
    compliance_cleared_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    compliance_cleared_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Clearance is only derived from flags when the latest screen completed.
    last_screen_status: Mapped[ScreenStatus] = mapped_column(
        Enum(ScreenStatus, native_enum=False),
        nullable=False,
        default=ScreenStatus.not_screened,
    )
    last_screened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    critical_flags_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    funding_readiness_score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    flags = relationship("ComplianceFlag", back_populates="deal", order_by="ComplianceFlag.id")
    requirements = relationship("FundingRequirement", back_populates="deal")
    instruments = relationship("FundingInstrument", back_populates="deal")


class ComplianceRule(Base):
    __tablename__ = "compliance_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    catalog_version: Mapped[str] = mapped_column(String(32), nullable=False)

    flag_type: Mapped[FlagType] = mapped_column(Enum(FlagType, native_enum=False), nullable=False)
    scope: Mapped[RuleScope] = mapped_column(Enum(RuleScope, native_enum=False), nullable=False)
    match_value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    min_value_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_value_usd: Mapped[float | None] = mapped_column(Float, nullable=True)

    severity: Mapped[FlagSeverity] = mapped_column(
        Enum(FlagSeverity, native_enum=False), nullable=False
    )
    blocks_execution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    superseded_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("compliance_rules.id"), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (UniqueConstraint("rule_code", "version", name="uq_compliance_rules_code_version"),)


class ComplianceFlag(Base):
    __tablename__ = "compliance_flags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("compliance_rules.id"), nullable=True, index=True
    )

    flag_type: Mapped[FlagType] = mapped_column(Enum(FlagType, native_enum=False), nullable=False)
    severity: Mapped[FlagSeverity] = mapped_column(
        Enum(FlagSeverity, native_enum=False), nullable=False, index=True
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_human_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    blocks_execution: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    deal = relationship("Deal", back_populates="flags")
    rule = relationship("ComplianceRule", lazy="joined")

    __table_args__ = (UniqueConstraint("deal_id", "rule_id", name="uq_compliance_flags_deal_rule"),)


class ComplianceAction(Base):
    """Append-only compliance audit trail."""

    __tablename__ = "compliance_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    flag_id: Mapped[int | None] = mapped_column(
        ForeignKey("compliance_flags.id"), nullable=True, index=True
    )
    action_type: Mapped[ComplianceActionType] = mapped_column(
        Enum(ComplianceActionType, native_enum=False), nullable=False, index=True
    )
    performed_by: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class FundingRequirement(Base):
    __tablename__ = "funding_requirements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    requirement_type: Mapped[RequirementType] = mapped_column(
        Enum(RequirementType, native_enum=False), nullable=False
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[RequirementStatus] = mapped_column(
        Enum(RequirementStatus, native_enum=False),
        nullable=False,
        default=RequirementStatus.PENDING,
        index=True,
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    document_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    weights_version: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    deal = relationship("Deal", back_populates="requirements")

    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "requirement_type",
            "label",
            name="uq_funding_requirements_deal_type_label",
        ),
    )


class FundingInstrument(Base):
    __tablename__ = "funding_instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    instrument_type: Mapped[InstrumentType] = mapped_column(
        Enum(InstrumentType, native_enum=False), nullable=False
    )

    issuing_bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    issuing_bank_bic: Mapped[str | None] = mapped_column(String(11), nullable=True)
    issuing_bank_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    advising_bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    advising_bank_bic: Mapped[str | None] = mapped_column(String(11), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    beneficiary_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    applicant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    applicable_rules: Mapped[str | None] = mapped_column(String(32), nullable=True)

    stage: Mapped[InstrumentStage] = mapped_column(
        Enum(InstrumentStage, native_enum=False),
        nullable=False,
        default=InstrumentStage.DRAFT,
        index=True,
    )
    verification_status: Mapped[VerificationStatus] = mapped_column(
        Enum(VerificationStatus, native_enum=False),
        nullable=False,
        default=VerificationStatus.UNVERIFIED,
        index=True,
    )
    human_approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    verification_report: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    deal = relationship("Deal", back_populates="instruments")


class SettlementInstruction(Base):
    __tablename__ = "settlement_instructions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    instrument_id: Mapped[int | None] = mapped_column(
        ForeignKey("funding_instruments.id"), nullable=True, index=True
    )
    rail: Mapped[SettlementRail] = mapped_column(
        Enum(SettlementRail, native_enum=False), nullable=False, index=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    validation_checklist: Mapped[list] = mapped_column(JSON, nullable=False)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    snapshots = relationship(
        "SettlementValidationSnapshot",
        back_populates="settlement",
        order_by="SettlementValidationSnapshot.id",
    )


class SettlementValidationSnapshot(Base):
    __tablename__ = "settlement_validation_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settlement_id: Mapped[int] = mapped_column(
        ForeignKey("settlement_instructions.id"), nullable=False, index=True
    )
    validation_checklist: Mapped[list] = mapped_column(JSON, nullable=False)
    is_validated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    settlement = relationship("SettlementInstruction", back_populates="snapshots")


class EscrowMilestone(Base):
    __tablename__ = "escrow_milestones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int] = mapped_column(ForeignKey("deals.id"), nullable=False, index=True)
    settlement_id: Mapped[int | None] = mapped_column(
        ForeignKey("settlement_instructions.id"), nullable=True, index=True
    )
    milestone_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(12), nullable=False)
    release_condition: Mapped[str] = mapped_column(Text, nullable=False)
    release_status: Mapped[MilestoneStatus] = mapped_column(
        Enum(MilestoneStatus, native_enum=False),
        nullable=False,
        default=MilestoneStatus.LOCKED,
        index=True,
    )
    condition_evidence: Mapped[str | None] = mapped_column(Text, nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class ProofAnchor(Base):
    __tablename__ = "proof_anchors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[int | None] = mapped_column(ForeignKey("deals.id"), nullable=True, index=True)
    object_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    object_id: Mapped[str] = mapped_column(String(64), nullable=False)
    object_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    anchor_chain: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[AnchorStatus] = mapped_column(
        Enum(AnchorStatus, native_enum=False), nullable=False, default=AnchorStatus.PENDING
    )
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "object_type",
            "object_id",
            "object_hash",
            "anchor_chain",
            name="uq_proof_anchors_object_hash_chain",
        ),
    )
