"""Escrow milestone release tracking.

    LOCKED -> CONDITION_MET -> RELEASED
    LOCKED | CONDITION_MET -> DISPUTED -> LOCKED

Release is recorded only; no funds are moved.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from backoffice import models
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.deal_intake import get_deal
from backoffice.services.settlement_instructions import get_settlement

logger = logging.getLogger("backoffice")

_CURRENCY_RE = re.compile(r"^[A-Z0-9]{3,12}$")

_M = models.MilestoneStatus
CONDITION_MET_FROM = frozenset({_M.LOCKED})
RELEASE_FROM = frozenset({_M.CONDITION_MET})
DISPUTE_FROM = frozenset({_M.LOCKED, _M.CONDITION_MET})
RELOCK_FROM = frozenset({_M.DISPUTED})


def get_milestone(db: Session, milestone_id: int) -> models.EscrowMilestone:
    row = db.get(models.EscrowMilestone, milestone_id)
    if row is None:
        raise NotFoundError(
            "Milestone not found", code="MILESTONE_NOT_FOUND", details={"milestone_id": milestone_id}
        )
    return row


def _transition(
    db: Session,
    milestone: models.EscrowMilestone,
    *,
    to_status: models.MilestoneStatus,
    allowed_from: Iterable[models.MilestoneStatus],
    updates: Optional[dict[str, Any]] = None,
    action: str,
) -> models.EscrowMilestone:
    allowed = set(allowed_from)
    if milestone.release_status not in allowed:
        raise ConflictError(
            f"Cannot {action} a milestone in {milestone.release_status.value}",
            code="INVALID_MILESTONE_TRANSITION",
            details={"milestone_id": milestone.id, "release_status": milestone.release_status.value},
        )

    values: dict[str, Any] = {"release_status": to_status, "updated_at": datetime.utcnow()}
    if updates:
        values.update(updates)

    rowcount = (
        db.query(models.EscrowMilestone)
        .filter(models.EscrowMilestone.id == milestone.id)
        .filter(models.EscrowMilestone.release_status.in_(allowed))
        .update(values, synchronize_session=False)
    )
    if rowcount != 1:
        db.rollback()
        raise ConflictError(
            "Milestone changed concurrently",
            code="MILESTONE_STATUS_CHANGED",
            details={"milestone_id": milestone.id},
        )

    db.commit()
    db.refresh(milestone)
    logger.info(
        "escrow_milestone_transition",
        extra={"milestone_id": milestone.id, "action": action, "release_status": to_status.value},
    )
    return milestone


def create_milestone(
    db: Session,
    deal_id: int,
    *,
    milestone_name: str,
    amount: float,
    currency: str,
    release_condition: str,
    settlement_id: Optional[int] = None,
) -> models.EscrowMilestone:
    get_deal(db, deal_id)

    name = (milestone_name or "").strip()
    condition = (release_condition or "").strip()
    ccy = (currency or "").strip().upper()
    if not name:
        raise ValidationError("milestone_name is required", code="MILESTONE_NAME_REQUIRED")
    if not condition:
        raise ValidationError("release_condition is required", code="RELEASE_CONDITION_REQUIRED")
    if amount is None or float(amount) <= 0:
        raise ValidationError("Amount must be positive", code="INVALID_AMOUNT")
    if not _CURRENCY_RE.match(ccy):
        raise ValidationError("Invalid currency code", code="INVALID_CURRENCY", details={"currency": currency})

    if settlement_id is not None:
        settlement = get_settlement(db, settlement_id)
        if settlement.deal_id != deal_id:
            raise ValidationError(
                "Settlement instruction does not belong to this deal",
                code="SETTLEMENT_DEAL_MISMATCH",
                details={"settlement_id": settlement_id, "deal_id": deal_id},
            )

    row = models.EscrowMilestone(
        deal_id=deal_id,
        settlement_id=settlement_id,
        milestone_name=name,
        amount=float(amount),
        currency=ccy,
        release_condition=condition,
        release_status=models.MilestoneStatus.LOCKED,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("escrow_milestone_created", extra={"milestone_id": row.id, "deal_id": deal_id})
    return row


def mark_condition_met(
    db: Session, milestone_id: int, *, evidence: str, actor: str
) -> models.EscrowMilestone:
    evidence = (evidence or "").strip()
    if not evidence:
        raise ValidationError("Evidence is required", code="EVIDENCE_REQUIRED")
    row = get_milestone(db, milestone_id)
    return _transition(
        db,
        row,
        to_status=models.MilestoneStatus.CONDITION_MET,
        allowed_from=CONDITION_MET_FROM,
        updates={"condition_evidence": evidence},
        action="mark condition met on",
    )


def release_milestone(
    db: Session, milestone_id: int, *, released_by: str, now: Optional[datetime] = None
) -> models.EscrowMilestone:
    """Record a release. Requires a human actor and a validated settlement instruction."""

    released_by = (released_by or "").strip()
    if not released_by:
        raise ValidationError("released_by is required", code="RELEASER_REQUIRED")

    row = get_milestone(db, milestone_id)
    if row.settlement_id is None:
        raise ConflictError(
            "Milestone has no settlement instruction",
            code="SETTLEMENT_REQUIRED",
            details={"milestone_id": row.id},
        )
    settlement = get_settlement(db, row.settlement_id)
    if not settlement.is_validated:
        raise ConflictError(
            "Settlement instruction has failing checks",
            code="SETTLEMENT_NOT_VALIDATED",
            details={"milestone_id": row.id, "settlement_id": settlement.id},
        )

    return _transition(
        db,
        row,
        to_status=models.MilestoneStatus.RELEASED,
        allowed_from=RELEASE_FROM,
        updates={"released_by": released_by, "released_at": now or datetime.utcnow()},
        action="release",
    )


def dispute_milestone(db: Session, milestone_id: int, *, reason: str, actor: str) -> models.EscrowMilestone:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A dispute reason is required", code="REASON_REQUIRED")
    row = get_milestone(db, milestone_id)
    return _transition(
        db,
        row,
        to_status=models.MilestoneStatus.DISPUTED,
        allowed_from=DISPUTE_FROM,
        updates={"dispute_reason": reason},
        action="dispute",
    )


def relock_milestone(db: Session, milestone_id: int, *, actor: str) -> models.EscrowMilestone:
    # Evidence is cleared; the condition has to be met again.
    row = get_milestone(db, milestone_id)
    return _transition(
        db,
        row,
        to_status=models.MilestoneStatus.LOCKED,
        allowed_from=RELOCK_FROM,
        updates={"condition_evidence": None},
        action="re-lock",
    )


def list_milestones(db: Session, deal_id: int) -> list[models.EscrowMilestone]:
    return (
        db.query(models.EscrowMilestone)
        .filter(models.EscrowMilestone.deal_id == deal_id)
        .order_by(models.EscrowMilestone.created_at.asc(), models.EscrowMilestone.id.asc())
        .all()
    )
