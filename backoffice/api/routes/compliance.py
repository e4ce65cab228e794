from __future__ import annotations

# ruff: noqa: B008
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.api.deps import actor_name, record_audit, require_roles
from backoffice.database import get_db
from backoffice.schemas import (
    ComplianceActionRead,
    ComplianceFlagRead,
    ComplianceRuleCreate,
    ComplianceRuleRead,
    FlagListResponse,
    FlagResolveRequest,
    FlagResolveResponse,
    FlagStats,
)
from backoffice.services.compliance_reconciler import (
    flag_stats,
    list_actions,
    list_flags,
    resolve_flag,
)
from backoffice.services.deal_intake import get_deal
from backoffice.services.rule_catalog import create_rule_version, list_rules, retire_rule

router = APIRouter(prefix="/compliance", tags=["compliance"])

_compliance_read_roles_dep = require_roles(
    models.RoleName.compliance,
    models.RoleName.operations,
    models.RoleName.finance,
    models.RoleName.auditor,
)
_compliance_write_roles_dep = require_roles(models.RoleName.compliance)


@router.get("/flags", response_model=FlagListResponse)
def list_flags_endpoint(
    deal_id: Optional[int] = Query(None),
    severity: Optional[models.FlagSeverity] = Query(None),
    resolved: Optional[bool] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_read_roles_dep),
):
    if deal_id is not None:
        get_deal(db, deal_id)
    flags = list_flags(
        db, deal_id=deal_id, severity=severity, resolved=resolved, limit=limit, offset=offset
    )
    counts = flag_stats(db, deal_id)
    return FlagListResponse(
        flags=[ComplianceFlagRead.model_validate(f) for f in flags],
        stats=FlagStats(
            unresolved=counts.unresolved,
            critical_unresolved=counts.critical_unresolved,
            blocking_unresolved=counts.blocking_unresolved,
        ),
    )


@router.post("/flags/{flag_id}/resolve", response_model=FlagResolveResponse)
def resolve_flag_endpoint(
    flag_id: int,
    payload: FlagResolveRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_write_roles_dep),
):
    result = resolve_flag(db, flag_id, resolved_by=actor_name(current_user), notes=payload.notes)
    record_audit(
        db,
        request,
        current_user,
        "compliance.flag_resolved",
        {
            "flag_id": flag_id,
            "deal_status": result.deal_status_after.value,
            "compliance_status": result.compliance_status_after.value,
        },
        deal_id=result.flag.deal_id,
    )
    return FlagResolveResponse(
        flag=ComplianceFlagRead.model_validate(result.flag),
        deal_status=result.deal_status_after,
        compliance_status=result.compliance_status_after,
    )


@router.get("/actions", response_model=list[ComplianceActionRead])
def list_actions_endpoint(
    deal_id: int = Query(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_read_roles_dep),
):
    get_deal(db, deal_id)
    return list_actions(db, deal_id)


@router.get("/rules", response_model=list[ComplianceRuleRead])
def list_rules_endpoint(
    active_only: bool = Query(True),
    flag_type: Optional[models.FlagType] = Query(None),
    rule_code: Optional[str] = Query(None, max_length=64),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_read_roles_dep),
):
    return list_rules(db, active_only=active_only, flag_type=flag_type, rule_code=rule_code)


@router.post("/rules", response_model=ComplianceRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule_endpoint(
    payload: ComplianceRuleCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_write_roles_dep),
):
    rule = create_rule_version(db, created_by=actor_name(current_user), **payload.model_dump())
    db.commit()
    db.refresh(rule)
    record_audit(
        db,
        request,
        current_user,
        "compliance.rule_version_created",
        {"rule_id": rule.id, "rule_code": rule.rule_code, "version": rule.version},
    )
    return rule


@router.post("/rules/{rule_id}/retire", response_model=ComplianceRuleRead)
def retire_rule_endpoint(
    rule_id: int,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(_compliance_write_roles_dep),
):
    rule = retire_rule(db, rule_id, retired_by=actor_name(current_user))
    db.commit()
    db.refresh(rule)
    record_audit(
        db,
        request,
        current_user,
        "compliance.rule_retired",
        {"rule_id": rule.id, "rule_code": rule.rule_code},
    )
    return rule
