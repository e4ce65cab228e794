"""init back-office tables

Revision ID: 20261019_0001_init_backoffice_tables
Revises: None
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001_init_backoffice_tables"
down_revision = None
branch_labels = None
depends_on = None


def _enum(*values: str, name: str) -> sa.Enum:
    # Stored as VARCHAR on every dialect so adding a value never needs ALTER TYPE.
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=False)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def _updated_at() -> sa.Column:
    return sa.Column(
        "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    role_enum = _enum("admin", "compliance", "operations", "finance", "auditor", name="rolename")
    deal_status_enum = _enum(
        "inquiry",
        "qualified",
        "on_hold",
        "negotiating",
        "contracted",
        "in_execution",
        "closed_won",
        "closed_lost",
        name="dealstatus",
    )
    compliance_status_enum = _enum("pending", "cleared", "flagged", name="compliancestatus")
    screen_status_enum = _enum("not_screened", "completed", "failed", name="screenstatus")
    flag_type_enum = _enum(
        "SANCTIONS",
        "EXPORT_CONTROL",
        "LICENSE",
        "AML",
        "DOCS",
        "INCOTERM",
        "VALUE",
        "COMMODITY",
        "COUNTERPARTY",
        name="flagtype",
    )
    severity_enum = _enum("CRITICAL", "HIGH", "MEDIUM", "LOW", name="flagseverity")
    scope_enum = _enum(
        "destination_country",
        "origin_country",
        "commodity",
        "counterparty",
        "value_threshold",
        "incoterm",
        "unlisted_commodity",
        "any",
        name="rulescope",
    )
    action_type_enum = _enum(
        "SCREEN", "SCREEN_FAILED", "FLAG_RESOLVED", "STATUS_RECOMPUTED", name="complianceactiontype"
    )
    requirement_type_enum = _enum(
        "KYC",
        "KYB",
        "POF",
        "BANK_LETTER",
        "FIN_STATEMENTS",
        "INSURANCE",
        "COLLATERAL",
        "UCC",
        "LICENSE",
        "OTHER",
        name="requirementtype",
    )
    requirement_status_enum = _enum(
        "PENDING", "SUBMITTED", "UNDER_REVIEW", "APPROVED", "REJECTED", "WAIVED", name="requirementstatus"
    )
    instrument_type_enum = _enum(
        "SBLC", "LC", "BANK_GUARANTEE", "ESCROW", "PREPAY", "OTHER", name="instrumenttype"
    )
    instrument_stage_enum = _enum(
        "DRAFT",
        "ISSUED",
        "TRANSMITTED",
        "CONFIRMED",
        "ACTIVE",
        "DRAWN",
        "EXPIRED",
        "CANCELLED",
        "REJECTED",
        name="instrumentstage",
    )
    verification_status_enum = _enum(
        "UNVERIFIED",
        "PENDING_HUMAN_REVIEW",
        "HUMAN_APPROVED",
        "HUMAN_REJECTED",
        "VERIFIED",
        name="verificationstatus",
    )
    rail_enum = _enum("FIAT", "XRPL", "STELLAR", name="settlementrail")
    milestone_status_enum = _enum(
        "LOCKED", "CONDITION_MET", "RELEASED", "DISPUTED", name="milestonestatus"
    )
    anchor_status_enum = _enum("PENDING", name="anchorstatus")

    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", role_enum, nullable=False, unique=True),
        sa.Column("description", sa.String(length=255)),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id"), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("doc_type", sa.String(length=16), nullable=False),
        sa.Column("period", sa.String(length=6), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default="0"),
        _updated_at(),
        sa.UniqueConstraint("doc_type", "period", name="uq_doc_seq_doc_type_period"),
    )

    op.create_table(
        "deals",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_number", sa.String(length=32), nullable=False),
        sa.Column("counterparty_name", sa.String(length=255), nullable=False),
        sa.Column("counterparty_email", sa.String(length=255)),
        sa.Column("commodity", sa.String(length=64), nullable=False),
        sa.Column("deal_value_usd", sa.Float()),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("origin_country", sa.String(length=2)),
        sa.Column("destination_country", sa.String(length=2)),
        sa.Column("incoterm", sa.String(length=8)),
        sa.Column("quantity", sa.Float()),
        sa.Column("quantity_unit", sa.String(length=16)),
        sa.Column("payment_terms", sa.String(length=128)),
        sa.Column("status", deal_status_enum, nullable=False, server_default="inquiry"),
        sa.Column("compliance_status", compliance_status_enum, nullable=False, server_default="pending"),
        sa.Column("compliance_cleared_at", sa.DateTime(timezone=True)),
        sa.Column("compliance_cleared_by", sa.String(length=255)),
        sa.Column("last_screen_status", screen_status_enum, nullable=False, server_default="not_screened"),
        sa.Column("last_screened_at", sa.DateTime(timezone=True)),
        sa.Column("critical_flags_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("funding_readiness_score", sa.Integer()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_deals_deal_number", "deals", ["deal_number"], unique=True)
    op.create_index("ix_deals_counterparty_name", "deals", ["counterparty_name"])
    op.create_index("ix_deals_commodity", "deals", ["commodity"])
    op.create_index("ix_deals_status", "deals", ["status"])
    op.create_index("ix_deals_compliance_status", "deals", ["compliance_status"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id")),
        sa.Column("payload_json", sa.Text()),
        sa.Column("request_id", sa.String(length=64)),
        sa.Column("ip", sa.String(length=64)),
        sa.Column("user_agent", sa.String(length=256)),
        sa.Column("idempotency_key", sa.String(length=128)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"])
    op.create_index("ix_audit_logs_deal_id", "audit_logs", ["deal_id"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index("ix_audit_logs_idempotency_key", "audit_logs", ["idempotency_key"], unique=True)

    op.create_table(
        "compliance_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_code", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("catalog_version", sa.String(length=32), nullable=False),
        sa.Column("flag_type", flag_type_enum, nullable=False),
        sa.Column("scope", scope_enum, nullable=False),
        sa.Column("match_value", sa.String(length=255)),
        sa.Column("min_value_usd", sa.Float()),
        sa.Column("max_value_usd", sa.Float()),
        sa.Column("severity", severity_enum, nullable=False),
        sa.Column("blocks_execution", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_human_review", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("recommendation", sa.Text()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("superseded_by_id", sa.Integer(), sa.ForeignKey("compliance_rules.id")),
        sa.Column("created_by", sa.String(length=255)),
        _created_at(),
        sa.UniqueConstraint("rule_code", "version", name="uq_compliance_rules_code_version"),
    )
    op.create_index("ix_compliance_rules_rule_code", "compliance_rules", ["rule_code"])
    op.create_index("ix_compliance_rules_active", "compliance_rules", ["active"])

    op.create_table(
        "compliance_flags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("rule_id", sa.Integer(), sa.ForeignKey("compliance_rules.id")),
        sa.Column("flag_type", flag_type_enum, nullable=False),
        sa.Column("severity", severity_enum, nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("recommendation", sa.Text()),
        sa.Column("requires_human_review", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("blocks_execution", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_by", sa.String(length=255)),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolution_notes", sa.Text()),
        _created_at(),
        sa.UniqueConstraint("deal_id", "rule_id", name="uq_compliance_flags_deal_rule"),
    )
    op.create_index("ix_compliance_flags_deal_id", "compliance_flags", ["deal_id"])
    op.create_index("ix_compliance_flags_rule_id", "compliance_flags", ["rule_id"])
    op.create_index("ix_compliance_flags_severity", "compliance_flags", ["severity"])
    op.create_index("ix_compliance_flags_resolved", "compliance_flags", ["resolved"])

    op.create_table(
        "compliance_actions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("flag_id", sa.Integer(), sa.ForeignKey("compliance_flags.id")),
        sa.Column("action_type", action_type_enum, nullable=False),
        sa.Column("performed_by", sa.String(length=255), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("metadata", sa.JSON()),
        _created_at(),
    )
    op.create_index("ix_compliance_actions_deal_id", "compliance_actions", ["deal_id"])
    op.create_index("ix_compliance_actions_flag_id", "compliance_actions", ["flag_id"])
    op.create_index("ix_compliance_actions_action_type", "compliance_actions", ["action_type"])

    op.create_table(
        "funding_requirements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("requirement_type", requirement_type_enum, nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", requirement_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("due_date", sa.Date()),
        sa.Column("document_url", sa.String(length=1024)),
        sa.Column("reviewed_by", sa.String(length=255)),
        sa.Column("reviewed_at", sa.DateTime(timezone=True)),
        sa.Column("notes", sa.Text()),
        sa.Column("weights_version", sa.String(length=32)),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint(
            "deal_id",
            "requirement_type",
            "label",
            name="uq_funding_requirements_deal_type_label",
        ),
    )
    op.create_index("ix_funding_requirements_deal_id", "funding_requirements", ["deal_id"])
    op.create_index("ix_funding_requirements_status", "funding_requirements", ["status"])

    op.create_table(
        "funding_instruments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("instrument_type", instrument_type_enum, nullable=False),
        sa.Column("issuing_bank_name", sa.String(length=255)),
        sa.Column("issuing_bank_bic", sa.String(length=11)),
        sa.Column("issuing_bank_country", sa.String(length=2)),
        sa.Column("advising_bank_name", sa.String(length=255)),
        sa.Column("advising_bank_bic", sa.String(length=11)),
        sa.Column("reference_number", sa.String(length=128)),
        sa.Column("amount", sa.Float()),
        sa.Column("currency", sa.String(length=3)),
        sa.Column("issue_date", sa.Date()),
        sa.Column("expiry_date", sa.Date()),
        sa.Column("beneficiary_name", sa.String(length=255)),
        sa.Column("applicant_name", sa.String(length=255)),
        sa.Column("applicable_rules", sa.String(length=32)),
        sa.Column("stage", instrument_stage_enum, nullable=False, server_default="DRAFT"),
        sa.Column(
            "verification_status",
            verification_status_enum,
            nullable=False,
            server_default="UNVERIFIED",
        ),
        sa.Column("human_approval_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("verification_report", sa.JSON()),
        sa.Column("verified_by", sa.String(length=255)),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("verification_notes", sa.Text()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_funding_instruments_deal_id", "funding_instruments", ["deal_id"])
    op.create_index("ix_funding_instruments_reference_number", "funding_instruments", ["reference_number"])
    op.create_index("ix_funding_instruments_stage", "funding_instruments", ["stage"])
    op.create_index(
        "ix_funding_instruments_verification_status", "funding_instruments", ["verification_status"]
    )

    op.create_table(
        "settlement_instructions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("instrument_id", sa.Integer(), sa.ForeignKey("funding_instruments.id")),
        sa.Column("rail", rail_enum, nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("validation_checklist", sa.JSON(), nullable=False),
        sa.Column("is_validated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        _created_at(),
    )
    op.create_index("ix_settlement_instructions_deal_id", "settlement_instructions", ["deal_id"])
    op.create_index(
        "ix_settlement_instructions_instrument_id", "settlement_instructions", ["instrument_id"]
    )
    op.create_index("ix_settlement_instructions_rail", "settlement_instructions", ["rail"])

    op.create_table(
        "settlement_validation_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "settlement_id",
            sa.Integer(),
            sa.ForeignKey("settlement_instructions.id"),
            nullable=False,
        ),
        sa.Column("validation_checklist", sa.JSON(), nullable=False),
        sa.Column("is_validated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("validated_by", sa.String(length=255), nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_settlement_validation_snapshots_settlement_id",
        "settlement_validation_snapshots",
        ["settlement_id"],
    )

    op.create_table(
        "escrow_milestones",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("settlement_id", sa.Integer(), sa.ForeignKey("settlement_instructions.id")),
        sa.Column("milestone_name", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=12), nullable=False),
        sa.Column("release_condition", sa.Text(), nullable=False),
        sa.Column("release_status", milestone_status_enum, nullable=False, server_default="LOCKED"),
        sa.Column("condition_evidence", sa.Text()),
        sa.Column("released_by", sa.String(length=255)),
        sa.Column("released_at", sa.DateTime(timezone=True)),
        sa.Column("dispute_reason", sa.Text()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_escrow_milestones_deal_id", "escrow_milestones", ["deal_id"])
    op.create_index("ix_escrow_milestones_settlement_id", "escrow_milestones", ["settlement_id"])
    op.create_index("ix_escrow_milestones_release_status", "escrow_milestones", ["release_status"])

    op.create_table(
        "proof_anchors",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", sa.Integer(), sa.ForeignKey("deals.id")),
        sa.Column("object_type", sa.String(length=64), nullable=False),
        sa.Column("object_id", sa.String(length=64), nullable=False),
        sa.Column("object_hash", sa.String(length=64), nullable=False),
        sa.Column("anchor_chain", sa.String(length=16), nullable=False),
        sa.Column("status", anchor_status_enum, nullable=False, server_default="PENDING"),
        sa.Column("created_by", sa.String(length=255), nullable=False),
        _created_at(),
        sa.UniqueConstraint(
            "object_type",
            "object_id",
            "object_hash",
            "anchor_chain",
            name="uq_proof_anchors_object_hash_chain",
        ),
    )
    op.create_index("ix_proof_anchors_deal_id", "proof_anchors", ["deal_id"])
    op.create_index("ix_proof_anchors_object_type", "proof_anchors", ["object_type"])
    op.create_index("ix_proof_anchors_object_hash", "proof_anchors", ["object_hash"])

    op.bulk_insert(
        sa.table("roles", sa.column("name", sa.String), sa.column("description", sa.String)),
        [{"name": r, "description": r} for r in ("admin", "compliance", "operations", "finance", "auditor")],
    )


def downgrade() -> None:
    for table in (
        "proof_anchors",
        "escrow_milestones",
        "settlement_validation_snapshots",
        "settlement_instructions",
        "funding_instruments",
        "funding_requirements",
        "compliance_actions",
        "compliance_flags",
        "compliance_rules",
        "audit_logs",
        "deals",
        "document_sequences",
        "users",
        "roles",
    ):
        op.drop_table(table)
