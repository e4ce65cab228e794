from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.deal_intake import get_deal_for_update

logger = logging.getLogger("backoffice")


@dataclass(frozen=True)
class FlagCounts:
    unresolved: int
    blocking_unresolved: int
    critical_unresolved: int


@dataclass(frozen=True)
class RecomputeResult:
    counts: FlagCounts
    compliance_status_before: models.ComplianceStatus
    compliance_status_after: models.ComplianceStatus
    status_before: models.DealStatus
    status_after: models.DealStatus

    @property
    def changed(self) -> bool:
        return (
            self.compliance_status_before != self.compliance_status_after
            or self.status_before != self.status_after
        )


@dataclass(frozen=True)
class ResolutionResult:
    flag: models.ComplianceFlag
    deal_status_after: models.DealStatus
    compliance_status_after: models.ComplianceStatus


# Outcome of the unresolved-flag count and the latest screen.
BLOCKED = "blocked"
FLAGGED = "flagged"
CLEARED = "cleared"
PENDING = "pending"

_COMPLIANCE_STATUS_FOR_OUTCOME: dict[str, models.ComplianceStatus] = {
    BLOCKED: models.ComplianceStatus.flagged,
    FLAGGED: models.ComplianceStatus.flagged,
    CLEARED: models.ComplianceStatus.cleared,
    PENDING: models.ComplianceStatus.pending,
}

# Deal status moves per outcome; a status absent from the inner map is left as is.
# Terminal deals never appear, so they are never re-opened.
_DEAL_STATUS_TRANSITIONS: dict[str, dict[models.DealStatus, models.DealStatus]] = {
    BLOCKED: {
        s: models.DealStatus.on_hold
        for s in models.DealStatus
        if s not in models.TERMINAL_DEAL_STATUSES
    },
    FLAGGED: {},
    CLEARED: {models.DealStatus.on_hold: models.DealStatus.qualified},
    PENDING: {},
}


def outcome_for_counts(counts: FlagCounts, *, screen_completed: bool = True) -> str:
    if counts.blocking_unresolved > 0:
        return BLOCKED
    if counts.unresolved > 0:
        return FLAGGED
    # No flags says nothing when the flag set itself is unknown.
    if not screen_completed:
        return PENDING
    return CLEARED


def count_unresolved_flags(db: Session, deal_id: int) -> FlagCounts:
    base = (
        db.query(func.count(models.ComplianceFlag.id))
        .filter(models.ComplianceFlag.deal_id == deal_id)
        .filter(models.ComplianceFlag.resolved.is_(False))
    )
    unresolved = int(base.scalar() or 0)
    blocking = int(
        base.filter(models.ComplianceFlag.blocks_execution.is_(True)).scalar() or 0
    )
    critical = int(
        base.filter(models.ComplianceFlag.severity == models.FlagSeverity.CRITICAL).scalar() or 0
    )
    return FlagCounts(unresolved=unresolved, blocking_unresolved=blocking, critical_unresolved=critical)


def recompute_deal_compliance(
    db: Session,
    deal: models.Deal,
    *,
    actor: str,
    now: datetime | None = None,
) -> RecomputeResult:
    """Re-derive compliance_status and status from the deal's unresolved flags.

    A deal whose latest screen did not complete is never cleared; with no open flags
    it stays pending. Caller holds the deal row lock and owns the transaction.
    """

    now = now or datetime.utcnow()
    counts = count_unresolved_flags(db, deal.id)
    outcome = outcome_for_counts(
        counts, screen_completed=deal.last_screen_status == models.ScreenStatus.completed
    )

    compliance_before = deal.compliance_status
    status_before = deal.status

    compliance_after = _COMPLIANCE_STATUS_FOR_OUTCOME[outcome]
    status_after = _DEAL_STATUS_TRANSITIONS[outcome].get(status_before, status_before)

    deal.compliance_status = compliance_after
    deal.status = status_after
    deal.critical_flags_count = counts.critical_unresolved

    if compliance_after == models.ComplianceStatus.cleared:
        if compliance_before != models.ComplianceStatus.cleared or deal.compliance_cleared_at is None:
            deal.compliance_cleared_at = now
            deal.compliance_cleared_by = actor
    else:
        deal.compliance_cleared_at = None
        deal.compliance_cleared_by = None

    db.add(deal)

    result = RecomputeResult(
        counts=counts,
        compliance_status_before=compliance_before,
        compliance_status_after=compliance_after,
        status_before=status_before,
        status_after=status_after,
    )

    if result.changed:
        db.add(
            models.ComplianceAction(
                deal_id=deal.id,
                action_type=models.ComplianceActionType.STATUS_RECOMPUTED,
                performed_by=actor,
                notes=f"{outcome}: {status_before.value} -> {status_after.value}",
                action_metadata={
                    "compliance_status_before": compliance_before.value,
                    "compliance_status_after": compliance_after.value,
                    "status_before": status_before.value,
                    "status_after": status_after.value,
                    "unresolved": counts.unresolved,
                    "blocking_unresolved": counts.blocking_unresolved,
                },
            )
        )
    db.flush()
    return result


def resolve_flag(
    db: Session,
    flag_id: int,
    *,
    resolved_by: str,
    notes: str,
    now: datetime | None = None,
) -> ResolutionResult:
    """Resolve one flag and reconcile its deal, atomically.

    The flag update is a compare-and-set on ``resolved = false`` under the deal row lock,
    so two concurrent resolutions cannot both succeed and the deal status is derived
    from a consistent count.
    """

    resolved_by = (resolved_by or "").strip()
    notes = (notes or "").strip()
    if not resolved_by:
        raise ValidationError("resolved_by is required", code="RESOLVED_BY_REQUIRED")
    if not notes:
        raise ValidationError("Resolution notes are required", code="RESOLUTION_NOTES_REQUIRED")

    flag = db.get(models.ComplianceFlag, flag_id)
    if flag is None:
        raise NotFoundError("Flag not found", code="FLAG_NOT_FOUND", details={"flag_id": flag_id})
    if flag.resolved:
        raise ConflictError(
            "Flag is already resolved",
            code="FLAG_ALREADY_RESOLVED",
            details={"flag_id": flag_id, "resolved_by": flag.resolved_by},
        )

    now = now or datetime.utcnow()
    deal = get_deal_for_update(db, flag.deal_id)

    updated = (
        db.query(models.ComplianceFlag)
        .filter(models.ComplianceFlag.id == flag_id)
        .filter(models.ComplianceFlag.resolved.is_(False))
        .update(
            {
                "resolved": True,
                "resolved_by": resolved_by,
                "resolved_at": now,
                "resolution_notes": notes,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        raise ConflictError(
            "Flag is already resolved",
            code="FLAG_ALREADY_RESOLVED",
            details={"flag_id": flag_id},
        )

    db.add(
        models.ComplianceAction(
            deal_id=deal.id,
            flag_id=flag_id,
            action_type=models.ComplianceActionType.FLAG_RESOLVED,
            performed_by=resolved_by,
            notes=notes,
            action_metadata={
                "severity": flag.severity.value,
                "flag_type": flag.flag_type.value,
                "blocks_execution": bool(flag.blocks_execution),
            },
        )
    )
    db.flush()

    result = recompute_deal_compliance(db, deal, actor=resolved_by, now=now)
    db.commit()
    db.refresh(flag)
    db.refresh(deal)

    logger.info(
        "compliance_flag_resolved",
        extra={
            "flag_id": flag_id,
            "deal_id": deal.id,
            "resolved_by": resolved_by,
            "compliance_status": result.compliance_status_after.value,
            "status": result.status_after.value,
        },
    )

    return ResolutionResult(
        flag=flag,
        deal_status_after=deal.status,
        compliance_status_after=deal.compliance_status,
    )


def flag_stats(db: Session, deal_id: int | None = None) -> FlagCounts:
    """Unresolved counts for one deal, or across all deals when ``deal_id`` is None."""

    if deal_id is not None:
        return count_unresolved_flags(db, deal_id)
    F = models.ComplianceFlag
    row = (
        db.query(
            func.count(F.id),
            func.sum(case((F.blocks_execution.is_(True), 1), else_=0)),
            func.sum(case((F.severity == models.FlagSeverity.CRITICAL, 1), else_=0)),
        )
        .filter(F.resolved.is_(False))
        .one()
    )
    return FlagCounts(
        unresolved=int(row[0] or 0),
        blocking_unresolved=int(row[1] or 0),
        critical_unresolved=int(row[2] or 0),
    )


def list_flags(
    db: Session,
    *,
    deal_id: int | None = None,
    severity: models.FlagSeverity | None = None,
    resolved: bool | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[models.ComplianceFlag]:
    """Flags ordered CRITICAL -> LOW, newest first within a severity."""

    F = models.ComplianceFlag
    severity_order = case(
        *[(F.severity == sev, rank) for sev, rank in models.SEVERITY_RANK.items()],
        else_=len(models.SEVERITY_RANK),
    )
    q = db.query(F)
    if deal_id is not None:
        q = q.filter(F.deal_id == deal_id)
    if severity is not None:
        q = q.filter(F.severity == severity)
    if resolved is not None:
        q = q.filter(F.resolved.is_(resolved))
    return q.order_by(severity_order.asc(), F.created_at.desc(), F.id.desc()).offset(offset).limit(limit).all()


def list_actions(db: Session, deal_id: int) -> list[models.ComplianceAction]:
    return (
        db.query(models.ComplianceAction)
        .filter(models.ComplianceAction.deal_id == deal_id)
        .order_by(models.ComplianceAction.created_at.asc(), models.ComplianceAction.id.asc())
        .all()
    )
