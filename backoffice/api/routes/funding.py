from __future__ import annotations

# ruff: noqa: B008
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.core.errors import ValidationError
from backoffice.database import get_db
from backoffice.schemas import (
    FundingRequirementCreate,
    FundingRequirementList,
    FundingRequirementRead,
    FundingRequirementStatusUpdate,
    FundingRequirementUpdateResponse,
    FundingStructureRequest,
    FundingStructureResponse,
    TermSheetRead,
)
from backoffice.services.deal_intake import get_deal
from backoffice.services.funding_requirements import (
    FundingAttributes,
    TermSheet,
    add_requirement,
    analyze_funding,
    compute_readiness_score,
    list_requirements,
    persist_requirements,
    update_requirement_status,
)

router = APIRouter(prefix="/funding", tags=["funding"])

_funding_read_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
    models.RoleName.auditor,
)
_funding_write_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.compliance,
)


def _term_sheet_for(db: Session, payload: FundingStructureRequest) -> TermSheet:
    if payload.deal_id is not None:
        deal = get_deal(db, payload.deal_id)
        return analyze_funding(FundingAttributes.from_deal(deal))
    if not (payload.commodity or "").strip():
        raise ValidationError(
            "deal_id or commodity is required", code="FUNDING_SUBJECT_REQUIRED"
        )
    return analyze_funding(
        FundingAttributes(
            deal_value_usd=payload.deal_value_usd,
            commodity=payload.commodity,
            origin_country=payload.origin_country,
            destination_country=payload.destination_country,
            incoterm=payload.incoterm,
        )
    )


@router.post("/structure/preview", response_model=FundingStructureResponse)
def preview_structure(
    payload: FundingStructureRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_funding_read_roles_dep),
):
    """Compute-only term sheet. Nothing is stored."""
    term_sheet = _term_sheet_for(db, payload)
    return FundingStructureResponse(term_sheet=TermSheetRead.model_validate(term_sheet))


@router.post("/structure", response_model=FundingStructureResponse)
def analyze_structure(
    payload: FundingStructureRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_funding_write_roles_dep),
):
    term_sheet = _term_sheet_for(db, payload)
    response = FundingStructureResponse(term_sheet=TermSheetRead.model_validate(term_sheet))
    if not payload.persist:
        return response

    if payload.deal_id is None:
        raise ValidationError("deal_id is required to persist requirements", code="DEAL_ID_REQUIRED")

    result = persist_requirements(db, payload.deal_id, term_sheet)
    record_audit(
        db,
        request,
        current_user,
        "funding.requirements_persisted",
        {
            "created": result.created,
            "skipped": result.skipped,
            "readiness_score": result.readiness_score,
            "weights_version": term_sheet.weights_version,
        },
        deal_id=payload.deal_id,
    )
    response.persisted = True
    response.created = result.created
    response.skipped = result.skipped
    response.deal_readiness_score = result.readiness_score
    return response


@router.get("/requirements", response_model=FundingRequirementList)
def list_requirements_endpoint(
    deal_id: int = Query(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_funding_read_roles_dep),
):
    get_deal(db, deal_id)
    return FundingRequirementList(
        requirements=[FundingRequirementRead.model_validate(r) for r in list_requirements(db, deal_id)],
        readiness_score=compute_readiness_score(db, deal_id),
    )


@router.post(
    "/requirements",
    response_model=FundingRequirementRead,
    status_code=status.HTTP_201_CREATED,
)
def add_requirement_endpoint(
    payload: FundingRequirementCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_funding_write_roles_dep),
):
    req = add_requirement(
        db,
        payload.deal_id,
        requirement_type=payload.requirement_type,
        label=payload.label,
        description=payload.description,
        is_critical=payload.is_critical,
        due_date=payload.due_date,
    )
    record_audit(
        db,
        request,
        current_user,
        "funding.requirement_added",
        {"requirement_id": req.id, "type": req.requirement_type.value, "label": req.label},
        deal_id=req.deal_id,
    )
    return req


@router.patch("/requirements", response_model=FundingRequirementUpdateResponse)
def update_requirement_endpoint(
    payload: FundingRequirementStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_funding_write_roles_dep),
):
    result = update_requirement_status(
        db,
        payload.requirement_id,
        payload.status,
        actor=actor_name(current_user),
        notes=payload.notes,
        document_url=payload.document_url,
    )
    record_audit(
        db,
        request,
        current_user,
        "funding.requirement_status_changed",
        {
            "requirement_id": result.requirement.id,
            "status": result.requirement.status.value,
            "readiness_score": result.readiness_score,
        },
        deal_id=result.requirement.deal_id,
    )
    return FundingRequirementUpdateResponse(
        requirement=FundingRequirementRead.model_validate(result.requirement),
        readiness_score=result.readiness_score,
    )
