"""Trade-compliance screening.

``screen_deal`` is pure: the same deal attributes and the same rule set always yield the
same flag candidates in the same order. It fails closed, so any evaluator problem raises
:class:`DependencyError` instead of returning an empty (and therefore "clean") result.

``run_compliance_screen`` persists the candidates for a deal and re-derives its
compliance status in one transaction.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.config import settings
from backoffice.core.errors import DependencyError
from backoffice.services.compliance_reconciler import recompute_deal_compliance
from backoffice.services.deal_intake import get_deal_for_update, normalize_commodity
from backoffice.services.rule_catalog import (
    commodity_category,
    is_listed_commodity,
    load_active_rules,
    required_documents,
)

logger = logging.getLogger("backoffice")


@dataclass(frozen=True)
class ScreeningSubject:
    counterparty_name: str
    commodity: str
    deal_value_usd: float | None
    origin_country: str | None
    destination_country: str | None
    incoterm: str | None

    @classmethod
    def from_deal(cls, deal: Any) -> "ScreeningSubject":
        return cls(
            counterparty_name=str(getattr(deal, "counterparty_name", "") or ""),
            commodity=normalize_commodity(getattr(deal, "commodity", None)),
            deal_value_usd=getattr(deal, "deal_value_usd", None),
            origin_country=_upper_or_none(getattr(deal, "origin_country", None)),
            destination_country=_upper_or_none(getattr(deal, "destination_country", None)),
            incoterm=_upper_or_none(getattr(deal, "incoterm", None)),
        )

    @property
    def commodity_code(self) -> str:
        return normalize_commodity(self.commodity)

    def template_context(self) -> dict[str, Any]:
        return {
            "counterparty_name": self.counterparty_name,
            "commodity": self.commodity,
            "commodity_category": commodity_category(self.commodity_code),
            "deal_value_usd": _fmt_money(self.deal_value_usd),
            "origin_country": self.origin_country or "unknown",
            "destination_country": self.destination_country or "unknown",
            "incoterm": self.incoterm or "unknown",
            "required_documents": ", ".join(
                required_documents(self.commodity_code, self.destination_country)
            ),
        }


@dataclass(frozen=True)
class FlagCandidate:
    rule_id: int | None
    rule_code: str
    flag_type: models.FlagType
    severity: models.FlagSeverity
    message: str
    recommendation: str | None
    blocks_execution: bool
    requires_human_review: bool


@dataclass(frozen=True)
class ScreenOutcome:
    deal: models.Deal
    candidates: list[FlagCandidate]
    created_flags: list[models.ComplianceFlag]
    skipped_rule_ids: list[int]
    blocked: bool


def _upper_or_none(value: Any) -> str | None:
    s = str(value or "").strip().upper()
    return s or None


def _fmt_money(value: float | None) -> str:
    if value is None:
        return "unknown"
    return f"{float(value):,.2f}"


def _rule_matches(rule: Any, subject: ScreeningSubject) -> bool:
    scope = rule.scope
    match_value = rule.match_value

    if scope == models.RuleScope.destination_country:
        return subject.destination_country is not None and subject.destination_country == str(
            match_value
        ).upper()
    if scope == models.RuleScope.origin_country:
        return subject.origin_country is not None and subject.origin_country == str(
            match_value
        ).upper()
    if scope == models.RuleScope.commodity:
        return subject.commodity_code == normalize_commodity(match_value)
    if scope == models.RuleScope.unlisted_commodity:
        return not is_listed_commodity(subject.commodity_code)
    if scope == models.RuleScope.incoterm:
        return subject.incoterm is not None and subject.incoterm == str(match_value).upper()
    if scope == models.RuleScope.counterparty:
        return re.search(str(match_value), subject.counterparty_name) is not None
    if scope == models.RuleScope.value_threshold:
        if rule.min_value_usd is None and rule.max_value_usd is None:
            raise ValueError(f"rule {rule.rule_code} has no threshold bounds")
        if subject.deal_value_usd is None:
            return False
        value = float(subject.deal_value_usd)
        if rule.min_value_usd is not None and value < float(rule.min_value_usd):
            return False
        if rule.max_value_usd is not None and value >= float(rule.max_value_usd):
            return False
        return True
    if scope == models.RuleScope.any:
        return True

    raise ValueError(f"unknown rule scope {scope!r}")


def screen_deal(
    deal: Any,
    rules: Iterable[Any],
    *,
    timeout_seconds: float | None = None,
) -> list[FlagCandidate]:
    """Evaluate every rule against the deal and return ordered flag candidates.

    Ordering is by severity (CRITICAL first) then rule code. Raises DependencyError on
    a malformed rule, a template referencing an unknown field, or when the deadline is
    exceeded.
    """

    subject = deal if isinstance(deal, ScreeningSubject) else ScreeningSubject.from_deal(deal)
    timeout = settings.screening_timeout_seconds if timeout_seconds is None else timeout_seconds
    deadline = time.monotonic() + float(timeout)
    context = subject.template_context()

    candidates: list[FlagCandidate] = []
    for rule in rules:
        if time.monotonic() > deadline:
            raise DependencyError(
                "Compliance screening exceeded its deadline",
                code="SCREENING_TIMEOUT",
                details={"timeout_seconds": timeout},
            )
        try:
            if not _rule_matches(rule, subject):
                continue
            message = str(rule.message).format_map(context)
            recommendation = (
                str(rule.recommendation).format_map(context) if rule.recommendation else None
            )
        except (re.error, KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise DependencyError(
                "Compliance rule evaluation failed",
                code="SCREENING_EVALUATOR_ERROR",
                details={"rule_code": getattr(rule, "rule_code", None), "error": str(e)},
            )

        candidates.append(
            FlagCandidate(
                rule_id=getattr(rule, "id", None),
                rule_code=str(rule.rule_code),
                flag_type=rule.flag_type,
                severity=rule.severity,
                message=message,
                recommendation=recommendation,
                blocks_execution=bool(rule.blocks_execution),
                requires_human_review=bool(rule.requires_human_review),
            )
        )

    if time.monotonic() > deadline:
        raise DependencyError(
            "Compliance screening exceeded its deadline",
            code="SCREENING_TIMEOUT",
            details={"timeout_seconds": timeout},
        )

    candidates.sort(key=lambda c: (models.SEVERITY_RANK[c.severity], c.rule_code))
    return candidates


def _record_screen_failure(
    db: Session,
    deal_id: int,
    *,
    performed_by: str,
    error: DependencyError,
    now: datetime | None = None,
) -> None:
    """Put the deal in its restrictive state after a failed screen."""

    try:
        deal = db.get(models.Deal, deal_id)
        if deal is None:
            return

        if deal.compliance_status == models.ComplianceStatus.cleared:
            deal.compliance_status = models.ComplianceStatus.pending
            deal.compliance_cleared_at = None
            deal.compliance_cleared_by = None
        deal.last_screen_status = models.ScreenStatus.failed
        deal.last_screened_at = now or datetime.utcnow()
        if deal.status not in models.TERMINAL_DEAL_STATUSES:
            deal.status = models.DealStatus.on_hold

        db.add(
            models.ComplianceAction(
                deal_id=deal_id,
                action_type=models.ComplianceActionType.SCREEN_FAILED,
                performed_by=performed_by,
                notes=error.message,
                action_metadata={"code": error.code, **error.details},
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        # The screen error is still raised by the caller.
        db.rollback()
        logger.error(
            "compliance_screen_failure_not_recorded",
            extra={"deal_id": deal_id, "error": str(e)},
        )


def run_compliance_screen(
    db: Session,
    deal_id: int,
    *,
    performed_by: str,
    rules: Sequence[Any] | None = None,
    now: datetime | None = None,
) -> ScreenOutcome:
    """Screen a stored deal and persist new flags, then recompute its status.

    Re-screening only adds flags for rules that have not flagged this deal before.
    On DependencyError the failure is recorded, the deal is held, and the error is
    re-raised for the caller.
    """

    now = now or datetime.utcnow()
    deal = get_deal_for_update(db, deal_id)

    try:
        active_rules = list(rules) if rules is not None else load_active_rules(db)
        candidates = screen_deal(deal, active_rules)
    except DependencyError as e:
        db.rollback()
        logger.error(
            "compliance_screen_failed",
            extra={"deal_id": deal_id, "code": e.code, "error": e.message},
        )
        _record_screen_failure(db, deal_id, performed_by=performed_by, error=e, now=now)
        raise

    try:
        already_flagged = {
            rid
            for (rid,) in db.query(models.ComplianceFlag.rule_id)
            .filter(models.ComplianceFlag.deal_id == deal_id)
            .filter(models.ComplianceFlag.rule_id.isnot(None))
            .all()
        }

        created: list[models.ComplianceFlag] = []
        skipped: list[int] = []
        for c in candidates:
            if c.rule_id is not None and c.rule_id in already_flagged:
                skipped.append(c.rule_id)
                continue
            flag = models.ComplianceFlag(
                deal_id=deal_id,
                rule_id=c.rule_id,
                flag_type=c.flag_type,
                severity=c.severity,
                message=c.message,
                recommendation=c.recommendation,
                requires_human_review=c.requires_human_review,
                blocks_execution=c.blocks_execution,
                resolved=False,
            )
            db.add(flag)
            created.append(flag)

        db.add(
            models.ComplianceAction(
                deal_id=deal_id,
                action_type=models.ComplianceActionType.SCREEN,
                performed_by=performed_by,
                notes=f"{len(candidates)} rule(s) matched, {len(created)} new flag(s)",
                action_metadata={
                    "catalog_version": settings.rule_catalog_version,
                    "rules_evaluated": len(active_rules),
                    "matched_rule_codes": [c.rule_code for c in candidates],
                    "skipped_rule_ids": skipped,
                },
            )
        )
        deal.last_screen_status = models.ScreenStatus.completed
        deal.last_screened_at = now
        db.flush()

        result = recompute_deal_compliance(db, deal, actor=performed_by, now=now)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        error = DependencyError(
            "Compliance screening could not be persisted",
            code="SCREENING_PERSIST_FAILED",
            details={"error": str(e)},
        )
        _record_screen_failure(db, deal_id, performed_by=performed_by, error=error, now=now)
        raise error

    for flag in created:
        db.refresh(flag)
    db.refresh(deal)

    logger.info(
        "compliance_screen_completed",
        extra={
            "deal_id": deal_id,
            "matched": len(candidates),
            "flags_created": len(created),
            "compliance_status": deal.compliance_status.value,
            "status": deal.status.value,
        },
    )

    return ScreenOutcome(
        deal=deal,
        candidates=candidates,
        created_flags=created,
        skipped_rule_ids=skipped,
        blocked=result.counts.blocking_unresolved > 0,
    )
