from __future__ import annotations

# ruff: noqa: B008
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.core.errors import DependencyError
from backoffice.database import get_db
from backoffice.schemas import (
    ComplianceFlagRead,
    DealCreate,
    DealRead,
    DealScreenResponse,
    ScreeningRead,
)
from backoffice.services.compliance_screening import run_compliance_screen
from backoffice.services.deal_intake import DealIntake, create_deal, get_deal, list_deals

logger = logging.getLogger("backoffice")

router = APIRouter(prefix="/deals", tags=["deals"])

_deals_read_roles_dep = require_roles(
    models.RoleName.operations,
    models.RoleName.compliance,
    models.RoleName.finance,
    models.RoleName.auditor,
)
_deals_write_roles_dep = require_roles(models.RoleName.operations, models.RoleName.compliance)


def _screen_response(db: Session, deal_id: int, actor: str, *, create_mode: bool) -> DealScreenResponse:
    try:
        outcome = run_compliance_screen(db, deal_id, performed_by=actor)
    except DependencyError as e:
        if not create_mode:
            raise DependencyError(
                "Compliance screening unavailable; deal held for review",
                code="SCREENING_UNAVAILABLE",
                details={"deal_id": deal_id, "cause": e.code},
            )
        logger.warning("deal_created_screening_unavailable", extra={"deal_id": deal_id, "code": e.code})
        deal = get_deal(db, deal_id)
        db.refresh(deal)
        return DealScreenResponse(
            deal=DealRead.model_validate(deal),
            flags=[ComplianceFlagRead.model_validate(f) for f in deal.flags],
            blocked=True,
            screening=ScreeningRead(status="unavailable", code=e.code, message=e.message),
        )

    deal = outcome.deal
    return DealScreenResponse(
        deal=DealRead.model_validate(deal),
        flags=[ComplianceFlagRead.model_validate(f) for f in deal.flags],
        blocked=outcome.blocked,
        screening=ScreeningRead(
            status="completed",
            matched=len(outcome.candidates),
            created=len(outcome.created_flags),
        ),
    )


@router.post("", response_model=DealScreenResponse, status_code=status.HTTP_201_CREATED)
def create_deal_endpoint(
    payload: DealCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_deals_write_roles_dep),
):
    deal = create_deal(db, DealIntake(**payload.model_dump()))
    record_audit(
        db,
        request,
        current_user,
        "deal.created",
        {"deal_number": deal.deal_number, "commodity": deal.commodity},
        deal_id=deal.id,
    )
    # A screening failure still returns the created (held) deal.
    return _screen_response(db, deal.id, actor_name(current_user), create_mode=True)


@router.get("", response_model=list[DealRead])
def list_deals_endpoint(
    status_filter: Optional[models.DealStatus] = Query(None, alias="status"),
    compliance_status: Optional[models.ComplianceStatus] = Query(None),
    q: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_deals_read_roles_dep),
):
    return list_deals(
        db,
        status=status_filter,
        compliance_status=compliance_status,
        q=q,
        limit=limit,
        offset=offset,
    )


@router.get("/{deal_id}", response_model=DealRead)
def get_deal_endpoint(
    deal_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_deals_read_roles_dep),
):
    return get_deal(db, deal_id)


@router.post("/{deal_id}/screen", response_model=DealScreenResponse)
def screen_deal_endpoint(
    deal_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_deals_write_roles_dep),
):
    result = _screen_response(db, deal_id, actor_name(current_user), create_mode=False)
    record_audit(
        db,
        request,
        current_user,
        "deal.screened",
        {"blocked": result.blocked, "created": result.screening.created},
        deal_id=deal_id,
    )
    return result
