from __future__ import annotations

# ruff: noqa: B008
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.database import get_db
from backoffice.schemas import (
    CheckReportRead,
    FundingInstrumentCreate,
    FundingInstrumentRead,
    InstrumentApproveRequest,
    InstrumentRejectRequest,
    InstrumentStageUpdate,
    InstrumentVerifyRequest,
)
from backoffice.services.instrument_gate import (
    ExpectedFields,
    InstrumentFields,
    approve_instrument,
    create_instrument,
    finalize_instrument,
    get_instrument,
    list_instruments,
    reject_instrument,
    update_instrument_stage,
    verify_instrument,
)

router = APIRouter(prefix="/funding/instruments", tags=["instruments"])

_instruments_read_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
    models.RoleName.auditor,
)
_instruments_write_roles_dep = require_roles(models.RoleName.operations, models.RoleName.finance)
# Approval, rejection and finalization are the human gate.
_instruments_approve_roles_dep = require_roles(models.RoleName.finance, models.RoleName.compliance)


@router.get("", response_model=list[FundingInstrumentRead])
def list_instruments_endpoint(
    deal_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_read_roles_dep),
):
    return list_instruments(db, deal_id)


@router.get("/{instrument_id}", response_model=FundingInstrumentRead)
def get_instrument_endpoint(
    instrument_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_read_roles_dep),
):
    return get_instrument(db, instrument_id)


@router.post("", response_model=FundingInstrumentRead, status_code=status.HTTP_201_CREATED)
def create_instrument_endpoint(
    payload: FundingInstrumentCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_write_roles_dep),
):
    data = payload.model_dump()
    deal_id = data.pop("deal_id")
    inst = create_instrument(db, deal_id, **data)
    record_audit(
        db,
        request,
        current_user,
        "instrument.created",
        {"instrument_id": inst.id, "type": inst.instrument_type.value, "amount": inst.amount},
        deal_id=deal_id,
    )
    return inst


@router.post("/{instrument_id}/verify", response_model=CheckReportRead)
def verify_instrument_endpoint(
    instrument_id: int,
    request: Request,
    payload: Optional[InstrumentVerifyRequest] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_write_roles_dep),
):
    payload = payload or InstrumentVerifyRequest()
    report = verify_instrument(
        db,
        instrument_id,
        checked_by=actor_name(current_user),
        supplied=InstrumentFields(**payload.supplied.model_dump()),
        expected=ExpectedFields(**payload.expected.model_dump()),
    )
    inst = get_instrument(db, instrument_id)
    record_audit(
        db,
        request,
        current_user,
        "instrument.verified",
        {
            "instrument_id": instrument_id,
            "fail_count": report.fail_count,
            "warn_count": report.warn_count,
            "verification_status": report.verification_status.value,
        },
        deal_id=inst.deal_id,
    )
    return CheckReportRead.model_validate(report)


@router.post("/{instrument_id}/approve", response_model=FundingInstrumentRead)
def approve_instrument_endpoint(
    instrument_id: int,
    payload: InstrumentApproveRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_approve_roles_dep),
):
    inst = approve_instrument(db, instrument_id, approved_by=actor_name(current_user), notes=payload.notes)
    record_audit(
        db,
        request,
        current_user,
        "instrument.approved",
        {"instrument_id": inst.id, "notes": payload.notes},
        deal_id=inst.deal_id,
    )
    return inst


@router.post("/{instrument_id}/reject", response_model=FundingInstrumentRead)
def reject_instrument_endpoint(
    instrument_id: int,
    payload: InstrumentRejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_approve_roles_dep),
):
    inst = reject_instrument(db, instrument_id, rejected_by=actor_name(current_user), reason=payload.reason)
    record_audit(
        db,
        request,
        current_user,
        "instrument.rejected",
        {"instrument_id": inst.id, "reason": payload.reason},
        deal_id=inst.deal_id,
    )
    return inst


@router.post("/{instrument_id}/finalize", response_model=FundingInstrumentRead)
def finalize_instrument_endpoint(
    instrument_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_approve_roles_dep),
):
    inst = finalize_instrument(db, instrument_id, finalized_by=actor_name(current_user))
    record_audit(
        db,
        request,
        current_user,
        "instrument.finalized",
        {"instrument_id": inst.id, "stage": inst.stage.value},
        deal_id=inst.deal_id,
    )
    return inst


@router.post("/{instrument_id}/stage", response_model=FundingInstrumentRead)
def update_stage_endpoint(
    instrument_id: int,
    payload: InstrumentStageUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_instruments_write_roles_dep),
):
    before = get_instrument(db, instrument_id).stage
    inst = update_instrument_stage(db, instrument_id, payload.stage, actor=actor_name(current_user))
    record_audit(
        db,
        request,
        current_user,
        "instrument.stage_changed",
        {"instrument_id": inst.id, "from": before.value, "to": inst.stage.value},
        deal_id=inst.deal_id,
    )
    return inst
