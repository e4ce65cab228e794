from __future__ import annotations

# ruff: noqa: B008
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.database import get_db
from backoffice.schemas import (
    EscrowMilestoneCreate,
    EscrowMilestoneRead,
    MilestoneConditionMet,
    MilestoneDispute,
    SettlementCreate,
    SettlementOverview,
    SettlementRead,
    SettlementSnapshotRead,
)
from backoffice.services.deal_intake import get_deal
from backoffice.services.escrow_milestones import (
    create_milestone,
    dispute_milestone,
    list_milestones,
    mark_condition_met,
    release_milestone,
    relock_milestone,
)
from backoffice.services.settlement_instructions import (
    build_instruction,
    get_settlement,
    list_settlements,
    persist_settlement,
    revalidate_settlement,
)

router = APIRouter(prefix="/funding/settlement", tags=["settlement"])

_settlement_read_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
    models.RoleName.auditor,
)
_settlement_write_roles_dep = require_roles(models.RoleName.operations, models.RoleName.finance)
_release_roles_dep = require_roles(models.RoleName.finance)

_RAIL_FIELDS: dict[models.SettlementRail, set[str]] = {
    models.SettlementRail.FIAT: {
        "beneficiary_name",
        "swift_bic",
        "amount",
        "currency",
        "beneficiary_account",
        "beneficiary_bank",
        "iban",
        "routing_number",
        "reference_text",
        "intermediary_bank",
    },
    models.SettlementRail.XRPL: {
        "destination_address",
        "amount",
        "destination_tag",
        "currency",
        "issuer",
        "escrow_condition",
        "escrow_finish_after",
        "escrow_cancel_after",
    },
    models.SettlementRail.STELLAR: {
        "destination_address",
        "amount",
        "memo",
        "memo_type",
        "asset_code",
        "asset_issuer",
        "federation_address",
        "destination_kind",
    },
}


@router.get("", response_model=SettlementOverview)
def settlement_overview(
    deal_id: int = Query(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_read_roles_dep),
):
    get_deal(db, deal_id)
    return SettlementOverview(
        instructions=[SettlementRead.model_validate(s) for s in list_settlements(db, deal_id)],
        milestones=[EscrowMilestoneRead.model_validate(m) for m in list_milestones(db, deal_id)],
    )


@router.post("", response_model=SettlementRead, status_code=status.HTTP_201_CREATED)
def create_settlement(
    payload: SettlementCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_write_roles_dep),
):
    deal = get_deal(db, payload.deal_id)
    params = payload.model_dump(include=_RAIL_FIELDS[payload.rail], exclude_none=True)
    if payload.rail == models.SettlementRail.FIAT:
        params["deal_number"] = deal.deal_number

    instruction = build_instruction(payload.rail, params)
    row = persist_settlement(
        db,
        deal.id,
        instruction,
        created_by=actor_name(current_user),
        instrument_id=payload.instrument_id,
    )
    record_audit(
        db,
        request,
        current_user,
        "settlement.instruction_created",
        {"settlement_id": row.id, "rail": row.rail.value, "is_validated": row.is_validated},
        deal_id=deal.id,
    )
    return row


@router.get("/{settlement_id}", response_model=SettlementRead)
def get_settlement_endpoint(
    settlement_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_read_roles_dep),
):
    return get_settlement(db, settlement_id)


@router.post("/{settlement_id}/revalidate", response_model=SettlementSnapshotRead)
def revalidate_settlement_endpoint(
    settlement_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_write_roles_dep),
):
    snapshot = revalidate_settlement(db, settlement_id, validated_by=actor_name(current_user))
    row = get_settlement(db, settlement_id)
    record_audit(
        db,
        request,
        current_user,
        "settlement.instruction_revalidated",
        {"settlement_id": settlement_id, "snapshot_id": snapshot.id, "is_validated": snapshot.is_validated},
        deal_id=row.deal_id,
    )
    return snapshot


@router.post(
    "/milestones",
    response_model=EscrowMilestoneRead,
    status_code=status.HTTP_201_CREATED,
)
def create_milestone_endpoint(
    payload: EscrowMilestoneCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_write_roles_dep),
):
    milestone = create_milestone(
        db,
        payload.deal_id,
        milestone_name=payload.milestone_name,
        amount=payload.amount,
        currency=payload.currency,
        release_condition=payload.release_condition,
        settlement_id=payload.settlement_id,
    )
    record_audit(
        db,
        request,
        current_user,
        "escrow.milestone_created",
        {"milestone_id": milestone.id, "amount": milestone.amount, "currency": milestone.currency},
        deal_id=milestone.deal_id,
    )
    return milestone


def _milestone_audit(db: Session, request: Request, user, action: str, milestone: models.EscrowMilestone) -> None:
    record_audit(
        db,
        request,
        user,
        action,
        {"milestone_id": milestone.id, "release_status": milestone.release_status.value},
        deal_id=milestone.deal_id,
    )


@router.post("/milestones/{milestone_id}/condition-met", response_model=EscrowMilestoneRead)
def condition_met_endpoint(
    milestone_id: int,
    payload: MilestoneConditionMet,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_write_roles_dep),
):
    milestone = mark_condition_met(db, milestone_id, evidence=payload.evidence, actor=actor_name(current_user))
    _milestone_audit(db, request, current_user, "escrow.condition_met", milestone)
    return milestone


@router.post("/milestones/{milestone_id}/release", response_model=EscrowMilestoneRead)
def release_milestone_endpoint(
    milestone_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_release_roles_dep),
):
    milestone = release_milestone(db, milestone_id, released_by=actor_name(current_user))
    _milestone_audit(db, request, current_user, "escrow.released", milestone)
    return milestone


@router.post("/milestones/{milestone_id}/dispute", response_model=EscrowMilestoneRead)
def dispute_milestone_endpoint(
    milestone_id: int,
    payload: MilestoneDispute,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_settlement_write_roles_dep),
):
    milestone = dispute_milestone(db, milestone_id, reason=payload.reason, actor=actor_name(current_user))
    _milestone_audit(db, request, current_user, "escrow.disputed", milestone)
    return milestone


@router.post("/milestones/{milestone_id}/relock", response_model=EscrowMilestoneRead)
def relock_milestone_endpoint(
    milestone_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_release_roles_dep),
):
    milestone = relock_milestone(db, milestone_id, actor=actor_name(current_user))
    _milestone_audit(db, request, current_user, "escrow.relocked", milestone)
    return milestone
