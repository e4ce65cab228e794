"""Banking-instrument verification gate.

Automated checks only ever move an instrument to PENDING_HUMAN_REVIEW. Approval,
rejection and finalisation are explicit human actions, each guarded by a
compare-and-set on the current verification status.

    UNVERIFIED -> PENDING_HUMAN_REVIEW -> HUMAN_APPROVED -> VERIFIED
                                       -> HUMAN_REJECTED
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from backoffice import models
from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.deal_intake import get_deal
from backoffice.services.funding_requirements import APPLICABLE_RULES
from backoffice.services.instrument_transitions import (
    atomic_transition_stage,
    atomic_transition_verification,
)

logger = logging.getLogger("backoffice")

BIC_RE = re.compile(r"^[A-Z]{6}[A-Z0-9]{2}([A-Z0-9]{3})?$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

KNOWN_RULE_SETS = ("UCP 600", "UCP600", "ISP98", "ISP 98", "URDG 758", "URDG758")

VERIFY_ALLOWED_FROM = frozenset(
    {
        models.VerificationStatus.UNVERIFIED,
        models.VerificationStatus.PENDING_HUMAN_REVIEW,
        models.VerificationStatus.HUMAN_REJECTED,
        models.VerificationStatus.HUMAN_APPROVED,
    }
)
APPROVE_ALLOWED_FROM = frozenset({models.VerificationStatus.PENDING_HUMAN_REVIEW})
REJECT_ALLOWED_FROM = frozenset(
    {models.VerificationStatus.PENDING_HUMAN_REVIEW, models.VerificationStatus.UNVERIFIED}
)
FINALIZE_ALLOWED_FROM = frozenset({models.VerificationStatus.HUMAN_APPROVED})
FINALIZE_STAGES = frozenset({models.InstrumentStage.CONFIRMED, models.InstrumentStage.ACTIVE})
# Re-verifying one of these keeps the earlier human decision on the new report.
DECIDED_STATUSES = frozenset(
    {models.VerificationStatus.HUMAN_APPROVED, models.VerificationStatus.HUMAN_REJECTED}
)

_S = models.InstrumentStage
STAGE_TRANSITIONS: dict[models.InstrumentStage, frozenset[models.InstrumentStage]] = {
    _S.DRAFT: frozenset({_S.ISSUED, _S.CANCELLED}),
    _S.ISSUED: frozenset({_S.TRANSMITTED, _S.CANCELLED, _S.REJECTED, _S.EXPIRED}),
    _S.TRANSMITTED: frozenset({_S.CONFIRMED, _S.REJECTED, _S.CANCELLED, _S.EXPIRED}),
    _S.CONFIRMED: frozenset({_S.ACTIVE, _S.CANCELLED, _S.EXPIRED, _S.REJECTED}),
    _S.ACTIVE: frozenset({_S.DRAWN, _S.EXPIRED, _S.CANCELLED}),
    _S.DRAWN: frozenset(),
    _S.EXPIRED: frozenset(),
    _S.CANCELLED: frozenset(),
    _S.REJECTED: frozenset(),
}

PASS = "PASS"
WARN = "WARN"
FAIL = "FAIL"


@dataclass(frozen=True)
class CheckResult:
    check: str
    status: str
    detail: str
    expected: Any = None
    actual: Any = None


@dataclass(frozen=True)
class InstrumentFields:
    amount: float | None = None
    currency: str | None = None
    beneficiary_name: str | None = None
    issuing_bank_bic: str | None = None
    expiry_date: date | None = None
    applicable_rules: str | None = None
    reference_number: str | None = None


@dataclass(frozen=True)
class ExpectedFields:
    amount: float | None = None
    currency: str | None = None
    beneficiary_name: str | None = None
    issuing_bank_bic: str | None = None


@dataclass(frozen=True)
class CheckReport:
    instrument_id: int
    checks: list[CheckResult]
    verification_status: models.VerificationStatus
    checked_at: datetime
    checked_by: str
    human_approval_required: bool = True

    @property
    def fail_count(self) -> int:
        return sum(1 for c in self.checks if c.status == FAIL)

    @property
    def warn_count(self) -> int:
        return sum(1 for c in self.checks if c.status == WARN)

    @property
    def checks_passed(self) -> bool:
        return self.fail_count == 0

    def to_json(self) -> dict[str, Any]:
        return {
            "instrument_id": self.instrument_id,
            "checks": [
                {k: (v.isoformat() if isinstance(v, (date, datetime)) else v) for k, v in asdict(c).items()}
                for c in self.checks
            ],
            "fail_count": self.fail_count,
            "warn_count": self.warn_count,
            "checks_passed": self.checks_passed,
            "verification_status": self.verification_status.value,
            "checked_at": self.checked_at.isoformat(),
            "checked_by": self.checked_by,
            "human_approval_required": True,
        }


def is_valid_bic(value: str | None) -> bool:
    return bool(value) and BIC_RE.match(str(value).strip().upper()) is not None


def _norm(s: str | None) -> str:
    return " ".join(str(s or "").split()).lower()


def run_instrument_checks(
    fields: InstrumentFields,
    expected: ExpectedFields,
    *,
    today: date,
    tolerance: float | None = None,
    warning_days: int | None = None,
) -> list[CheckResult]:
    """Compare instrument data against what the deal expects. Pure."""

    tolerance = settings.instrument_amount_tolerance if tolerance is None else tolerance
    warning_days = settings.instrument_expiry_warning_days if warning_days is None else warning_days
    checks: list[CheckResult] = []

    if fields.amount is None:
        checks.append(CheckResult("amount_match", FAIL, "Instrument amount is missing", expected.amount))
    elif expected.amount is None:
        checks.append(
            CheckResult("amount_match", WARN, "No expected amount supplied", None, fields.amount)
        )
    elif abs(float(fields.amount) - float(expected.amount)) <= tolerance:
        checks.append(
            CheckResult("amount_match", PASS, "Amount matches", expected.amount, fields.amount)
        )
    else:
        checks.append(
            CheckResult(
                "amount_match",
                FAIL,
                f"Amount differs by {abs(float(fields.amount) - float(expected.amount)):.2f}",
                expected.amount,
                fields.amount,
            )
        )

    actual_ccy = (fields.currency or "").strip().upper() or None
    expected_ccy = (expected.currency or "").strip().upper() or None
    if actual_ccy is None:
        checks.append(CheckResult("currency_match", FAIL, "Instrument currency is missing", expected_ccy))
    elif expected_ccy is None:
        checks.append(CheckResult("currency_match", WARN, "No expected currency supplied", None, actual_ccy))
    elif actual_ccy == expected_ccy:
        checks.append(CheckResult("currency_match", PASS, "Currency matches", expected_ccy, actual_ccy))
    else:
        checks.append(
            CheckResult("currency_match", FAIL, "Currency mismatch", expected_ccy, actual_ccy)
        )

    if not fields.beneficiary_name:
        checks.append(
            CheckResult("beneficiary_match", FAIL, "Beneficiary is missing", expected.beneficiary_name)
        )
    elif not expected.beneficiary_name:
        checks.append(
            CheckResult(
                "beneficiary_match", WARN, "No expected beneficiary supplied", None, fields.beneficiary_name
            )
        )
    elif _norm(expected.beneficiary_name) in _norm(fields.beneficiary_name):
        checks.append(
            CheckResult(
                "beneficiary_match",
                PASS,
                "Beneficiary matches",
                expected.beneficiary_name,
                fields.beneficiary_name,
            )
        )
    else:
        checks.append(
            CheckResult(
                "beneficiary_match",
                FAIL,
                "Beneficiary does not match",
                expected.beneficiary_name,
                fields.beneficiary_name,
            )
        )

    bic = (fields.issuing_bank_bic or "").strip().upper() or None
    if bic is None:
        checks.append(CheckResult("issuing_bank_bic", FAIL, "Issuing bank BIC is missing"))
    elif not is_valid_bic(bic):
        checks.append(CheckResult("issuing_bank_bic", FAIL, "Issuing bank BIC is malformed", None, bic))
    elif expected.issuing_bank_bic and bic[:8] != expected.issuing_bank_bic.strip().upper()[:8]:
        checks.append(
            CheckResult(
                "issuing_bank_bic",
                FAIL,
                "Issuing bank BIC does not match",
                expected.issuing_bank_bic,
                bic,
            )
        )
    else:
        checks.append(CheckResult("issuing_bank_bic", PASS, "Issuing bank BIC is valid", expected.issuing_bank_bic, bic))

    if fields.expiry_date is None:
        checks.append(CheckResult("expiry", FAIL, "Expiry date is missing"))
    elif fields.expiry_date < today:
        checks.append(CheckResult("expiry", FAIL, "Instrument has expired", None, fields.expiry_date))
    else:
        days_left = (fields.expiry_date - today).days
        if days_left < warning_days:
            checks.append(
                CheckResult("expiry", WARN, f"Instrument expires in {days_left} day(s)", None, fields.expiry_date)
            )
        else:
            checks.append(CheckResult("expiry", PASS, f"{days_left} day(s) to expiry", None, fields.expiry_date))

    rules = (fields.applicable_rules or "").strip()
    if not rules:
        checks.append(CheckResult("applicable_rules", WARN, "No governing rules (UCP 600 / ISP98 / URDG 758) stated"))
    elif rules.upper() not in {r.upper() for r in KNOWN_RULE_SETS}:
        checks.append(CheckResult("applicable_rules", WARN, f"Unrecognised governing rules: {rules}", None, rules))
    else:
        checks.append(CheckResult("applicable_rules", PASS, f"Governed by {rules}", None, rules))

    return checks


def get_instrument(db: Session, instrument_id: int) -> models.FundingInstrument:
    inst = db.get(models.FundingInstrument, instrument_id)
    if inst is None:
        raise NotFoundError(
            "Instrument not found",
            code="INSTRUMENT_NOT_FOUND",
            details={"instrument_id": instrument_id},
        )
    return inst


def _conflict(inst: models.FundingInstrument, action: str) -> ConflictError:
    return ConflictError(
        f"Cannot {action} an instrument in {inst.verification_status.value}",
        code="INVALID_VERIFICATION_STATE",
        details={
            "instrument_id": inst.id,
            "verification_status": inst.verification_status.value,
            "action": action,
        },
    )


def create_instrument(
    db: Session,
    deal_id: int,
    *,
    instrument_type: models.InstrumentType,
    amount: float | None = None,
    currency: str | None = None,
    issuing_bank_name: str | None = None,
    issuing_bank_bic: str | None = None,
    issuing_bank_country: str | None = None,
    advising_bank_name: str | None = None,
    advising_bank_bic: str | None = None,
    reference_number: str | None = None,
    issue_date: date | None = None,
    expiry_date: date | None = None,
    beneficiary_name: str | None = None,
    applicant_name: str | None = None,
    applicable_rules: str | None = None,
) -> models.FundingInstrument:
    get_deal(db, deal_id)

    if amount is not None and float(amount) <= 0:
        raise ValidationError("Amount must be positive", code="INVALID_AMOUNT")
    currency = (currency or "").strip().upper() or None
    if currency is not None and not _CURRENCY_RE.match(currency):
        raise ValidationError("Currency must be an ISO-4217 code", code="INVALID_CURRENCY")
    for label, bic in (("issuing_bank_bic", issuing_bank_bic), ("advising_bank_bic", advising_bank_bic)):
        if bic and not is_valid_bic(bic):
            raise ValidationError(
                f"{label} is not a valid BIC", code="INVALID_BIC", details={"field": label, "value": bic}
            )
    if issue_date and expiry_date and expiry_date <= issue_date:
        raise ValidationError("Expiry must be after issue date", code="INVALID_EXPIRY")

    inst = models.FundingInstrument(
        deal_id=deal_id,
        instrument_type=instrument_type,
        amount=amount,
        currency=currency,
        issuing_bank_name=issuing_bank_name,
        issuing_bank_bic=(issuing_bank_bic or "").strip().upper() or None,
        issuing_bank_country=(issuing_bank_country or "").strip().upper() or None,
        advising_bank_name=advising_bank_name,
        advising_bank_bic=(advising_bank_bic or "").strip().upper() or None,
        reference_number=reference_number,
        issue_date=issue_date,
        expiry_date=expiry_date,
        beneficiary_name=beneficiary_name,
        applicant_name=applicant_name,
        applicable_rules=applicable_rules or APPLICABLE_RULES.get(instrument_type),
        stage=models.InstrumentStage.DRAFT,
        verification_status=models.VerificationStatus.UNVERIFIED,
        human_approval_required=True,
    )
    db.add(inst)
    db.commit()
    db.refresh(inst)
    logger.info("instrument_created", extra={"instrument_id": inst.id, "deal_id": deal_id})
    return inst


def list_instruments(db: Session, deal_id: int | None = None) -> list[models.FundingInstrument]:
    q = db.query(models.FundingInstrument)
    if deal_id is not None:
        q = q.filter(models.FundingInstrument.deal_id == deal_id)
    return q.order_by(models.FundingInstrument.id.asc()).all()


def verify_instrument(
    db: Session,
    instrument_id: int,
    *,
    checked_by: str,
    supplied: InstrumentFields | None = None,
    expected: ExpectedFields | None = None,
    today: date | None = None,
    now: datetime | None = None,
) -> CheckReport:
    """Run the automated checks and park the instrument for human review.

    ``supplied`` values (read off the instrument document) override stored fields for
    the comparison. The outcome never approves anything: a clean report still lands
    in PENDING_HUMAN_REVIEW, and re-checking an approved instrument demotes it.
    """

    inst = get_instrument(db, instrument_id)
    if inst.verification_status not in VERIFY_ALLOWED_FROM:
        raise _conflict(inst, "verify")

    now = now or datetime.utcnow()
    today = today or now.date()
    supplied = supplied or InstrumentFields()
    expected = expected or ExpectedFields()

    effective = InstrumentFields(
        amount=supplied.amount if supplied.amount is not None else inst.amount,
        currency=supplied.currency or inst.currency,
        beneficiary_name=supplied.beneficiary_name or inst.beneficiary_name,
        issuing_bank_bic=supplied.issuing_bank_bic or inst.issuing_bank_bic,
        expiry_date=supplied.expiry_date or inst.expiry_date,
        applicable_rules=supplied.applicable_rules or inst.applicable_rules,
        reference_number=supplied.reference_number or inst.reference_number,
    )
    checks = run_instrument_checks(effective, expected, today=today)

    report = CheckReport(
        instrument_id=inst.id,
        checks=checks,
        verification_status=models.VerificationStatus.PENDING_HUMAN_REVIEW,
        checked_at=now,
        checked_by=checked_by,
    )
    report_json = report.to_json()
    if inst.verification_status in DECIDED_STATUSES:
        report_json["previous_decision"] = {
            "verification_status": inst.verification_status.value,
            "decided_by": inst.verified_by,
            "decided_at": inst.verified_at.isoformat() if inst.verified_at else None,
            "notes": inst.verification_notes,
        }

    result = atomic_transition_verification(
        db=db,
        instrument_id=inst.id,
        to_status=models.VerificationStatus.PENDING_HUMAN_REVIEW,
        allowed_from=VERIFY_ALLOWED_FROM,
        updates={
            "verification_report": report_json,
            "verified_by": None,
            "verified_at": None,
            "verification_notes": None,
        },
        now=now,
    )
    if not result.updated:
        db.rollback()
        db.refresh(inst)
        raise _conflict(inst, "verify")

    db.commit()
    db.refresh(inst)
    logger.info(
        "instrument_verified",
        extra={
            "instrument_id": inst.id,
            "fail_count": report.fail_count,
            "warn_count": report.warn_count,
            "checked_by": checked_by,
        },
    )
    return report


def approve_instrument(
    db: Session,
    instrument_id: int,
    *,
    approved_by: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> models.FundingInstrument:
    approved_by = (approved_by or "").strip()
    if not approved_by:
        raise ValidationError("approved_by is required", code="APPROVER_REQUIRED")

    inst = get_instrument(db, instrument_id)
    if inst.verification_status not in APPROVE_ALLOWED_FROM:
        raise _conflict(inst, "approve")

    now = now or datetime.utcnow()
    result = atomic_transition_verification(
        db=db,
        instrument_id=inst.id,
        to_status=models.VerificationStatus.HUMAN_APPROVED,
        allowed_from=APPROVE_ALLOWED_FROM,
        updates={"verified_by": approved_by, "verified_at": now, "verification_notes": notes},
        now=now,
    )
    if not result.updated:
        db.rollback()
        db.refresh(inst)
        raise _conflict(inst, "approve")

    db.commit()
    db.refresh(inst)
    logger.info("instrument_approved", extra={"instrument_id": inst.id, "approved_by": approved_by})
    return inst


def reject_instrument(
    db: Session,
    instrument_id: int,
    *,
    rejected_by: str,
    reason: str,
    now: datetime | None = None,
) -> models.FundingInstrument:
    rejected_by = (rejected_by or "").strip()
    reason = (reason or "").strip()
    if not rejected_by:
        raise ValidationError("rejected_by is required", code="REJECTER_REQUIRED")
    if not reason:
        raise ValidationError("A rejection reason is required", code="REASON_REQUIRED")

    inst = get_instrument(db, instrument_id)
    if inst.verification_status not in REJECT_ALLOWED_FROM:
        raise _conflict(inst, "reject")

    now = now or datetime.utcnow()
    result = atomic_transition_verification(
        db=db,
        instrument_id=inst.id,
        to_status=models.VerificationStatus.HUMAN_REJECTED,
        allowed_from=REJECT_ALLOWED_FROM,
        updates={"verified_by": rejected_by, "verified_at": now, "verification_notes": reason},
        now=now,
    )
    if not result.updated:
        db.rollback()
        db.refresh(inst)
        raise _conflict(inst, "reject")

    db.commit()
    db.refresh(inst)
    logger.info("instrument_rejected", extra={"instrument_id": inst.id, "rejected_by": rejected_by})
    return inst


def finalize_instrument(
    db: Session,
    instrument_id: int,
    *,
    finalized_by: str,
    today: date | None = None,
    now: datetime | None = None,
) -> models.FundingInstrument:
    """HUMAN_APPROVED -> VERIFIED once the instrument is live and not expired."""

    finalized_by = (finalized_by or "").strip()
    if not finalized_by:
        raise ValidationError("finalized_by is required", code="FINALIZER_REQUIRED")

    inst = get_instrument(db, instrument_id)
    if inst.verification_status not in FINALIZE_ALLOWED_FROM:
        raise _conflict(inst, "finalize")

    now = now or datetime.utcnow()
    today = today or now.date()
    if inst.stage not in FINALIZE_STAGES:
        raise ConflictError(
            "Instrument must be confirmed or active before final verification",
            code="INSTRUMENT_NOT_LIVE",
            details={"instrument_id": inst.id, "stage": inst.stage.value},
        )
    if inst.expiry_date is not None and inst.expiry_date < today:
        raise ConflictError(
            "Instrument has expired",
            code="INSTRUMENT_EXPIRED",
            details={"instrument_id": inst.id, "expiry_date": inst.expiry_date.isoformat()},
        )

    result = atomic_transition_verification(
        db=db,
        instrument_id=inst.id,
        to_status=models.VerificationStatus.VERIFIED,
        allowed_from=FINALIZE_ALLOWED_FROM,
        updates={"verified_by": finalized_by, "verified_at": now},
        now=now,
    )
    if not result.updated:
        db.rollback()
        db.refresh(inst)
        raise _conflict(inst, "finalize")

    db.commit()
    db.refresh(inst)
    logger.info("instrument_finalized", extra={"instrument_id": inst.id, "finalized_by": finalized_by})
    return inst


def update_instrument_stage(
    db: Session,
    instrument_id: int,
    to_stage: models.InstrumentStage,
    *,
    actor: str,
    now: datetime | None = None,
) -> models.FundingInstrument:
    """Move the issuance lifecycle. Verification status is not touched."""

    inst = get_instrument(db, instrument_id)
    from_stage = inst.stage
    if to_stage not in STAGE_TRANSITIONS.get(from_stage, frozenset()):
        raise ConflictError(
            f"Cannot move instrument from {from_stage.value} to {to_stage.value}",
            code="INVALID_STAGE_TRANSITION",
            details={"instrument_id": inst.id, "from": from_stage.value, "to": to_stage.value},
        )

    result = atomic_transition_stage(
        db=db, instrument_id=inst.id, to_stage=to_stage, from_stage=from_stage, now=now
    )
    if not result.updated:
        db.rollback()
        raise ConflictError(
            "Instrument stage changed concurrently",
            code="INSTRUMENT_STAGE_CHANGED",
            details={"instrument_id": inst.id},
        )

    db.commit()
    db.refresh(inst)
    logger.info(
        "instrument_stage_updated",
        extra={"instrument_id": inst.id, "from": from_stage.value, "to": to_stage.value, "actor": actor},
    )
    return inst
