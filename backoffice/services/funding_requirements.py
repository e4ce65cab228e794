from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice import models
from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.deal_intake import get_deal_for_update, normalize_commodity

logger = logging.getLogger("backoffice")

UNRESOLVED_REQUIREMENT_STATUSES = frozenset(
    {
        models.RequirementStatus.PENDING,
        models.RequirementStatus.SUBMITTED,
        models.RequirementStatus.UNDER_REVIEW,
        models.RequirementStatus.REJECTED,
    }
)

REQUIREMENT_TRANSITIONS: dict[models.RequirementStatus, frozenset[models.RequirementStatus]] = {
    models.RequirementStatus.PENDING: frozenset(
        {models.RequirementStatus.SUBMITTED, models.RequirementStatus.WAIVED}
    ),
    models.RequirementStatus.SUBMITTED: frozenset(
        {models.RequirementStatus.UNDER_REVIEW, models.RequirementStatus.WAIVED}
    ),
    models.RequirementStatus.UNDER_REVIEW: frozenset(
        {
            models.RequirementStatus.APPROVED,
            models.RequirementStatus.REJECTED,
            models.RequirementStatus.WAIVED,
        }
    ),
    models.RequirementStatus.REJECTED: frozenset({models.RequirementStatus.SUBMITTED}),
    models.RequirementStatus.APPROVED: frozenset(),
    models.RequirementStatus.WAIVED: frozenset(),
}

_REVIEW_DECISIONS = frozenset(
    {
        models.RequirementStatus.APPROVED,
        models.RequirementStatus.REJECTED,
        models.RequirementStatus.WAIVED,
    }
)

HIGH_VALUE_USD = 100_000.0
LARGE_VALUE_USD = 1_000_000.0
POF_CRITICAL_USD = 50_000.0
PREPAY_LIMIT_USD = 50_000.0
LC_LIMIT_USD = 500_000.0

INSURED_INCOTERMS = frozenset({"CIF", "CIP"})
PRECIOUS_METALS = frozenset({"precious-metals", "gold", "silver", "platinum"})
ENERGY = frozenset({"crude-oil", "refined-petroleum", "lng", "energy"})

APPLICABLE_RULES: dict[models.InstrumentType, str | None] = {
    models.InstrumentType.LC: "UCP 600",
    models.InstrumentType.SBLC: "ISP98",
    models.InstrumentType.BANK_GUARANTEE: "URDG 758",
    models.InstrumentType.ESCROW: None,
    models.InstrumentType.PREPAY: None,
    models.InstrumentType.OTHER: None,
}

_FALLBACK: dict[models.InstrumentType, models.InstrumentType] = {
    models.InstrumentType.PREPAY: models.InstrumentType.ESCROW,
    models.InstrumentType.LC: models.InstrumentType.ESCROW,
    models.InstrumentType.SBLC: models.InstrumentType.LC,
    models.InstrumentType.ESCROW: models.InstrumentType.LC,
}

DISCLAIMER = (
    "Indicative structure only. This is not a commitment to lend, issue or confirm any "
    "instrument. All terms are subject to bank credit approval and human review."
)


@dataclass(frozen=True)
class ReadinessWeights:
    critical_penalty: int
    optional_penalty: int
    version: str


def current_weights() -> ReadinessWeights:
    return ReadinessWeights(
        critical_penalty=int(settings.readiness_critical_penalty),
        optional_penalty=int(settings.readiness_optional_penalty),
        version=str(settings.readiness_weights_version),
    )


@dataclass(frozen=True)
class FundingAttributes:
    deal_value_usd: float | None
    commodity: str
    origin_country: str | None = None
    destination_country: str | None = None
    incoterm: str | None = None

    @classmethod
    def from_deal(cls, deal: Any) -> "FundingAttributes":
        return cls(
            deal_value_usd=getattr(deal, "deal_value_usd", None),
            commodity=str(getattr(deal, "commodity", "") or ""),
            origin_country=getattr(deal, "origin_country", None),
            destination_country=getattr(deal, "destination_country", None),
            incoterm=getattr(deal, "incoterm", None),
        )


@dataclass(frozen=True)
class RequirementSpec:
    requirement_type: models.RequirementType
    label: str
    description: str
    is_critical: bool


@dataclass(frozen=True)
class TermSheet:
    requirements: list[RequirementSpec]
    readiness_score: int
    primary_instrument: models.InstrumentType
    fallback_instrument: models.InstrumentType | None
    recommended_structure: dict[str, Any]
    risk_flags: list[str]
    weights_version: str
    disclaimer: str = DISCLAIMER


@dataclass(frozen=True)
class PersistResult:
    created: int
    skipped: int
    readiness_score: int


@dataclass(frozen=True)
class RequirementUpdateResult:
    requirement: models.FundingRequirement
    readiness_score: int


@dataclass
class _Derivation:
    requirements: list[RequirementSpec] = field(default_factory=list)
    risk_flags: list[str] = field(default_factory=list)

    def require(
        self,
        requirement_type: models.RequirementType,
        label: str,
        description: str,
        *,
        critical: bool,
    ) -> None:
        self.requirements.append(
            RequirementSpec(
                requirement_type=requirement_type,
                label=label,
                description=description,
                is_critical=critical,
            )
        )


def readiness_score_for(
    requirements: Iterable[tuple[bool, models.RequirementStatus]],
    weights: ReadinessWeights | None = None,
) -> int:
    """100 minus a penalty per unresolved requirement, floored at 0.

    ``requirements`` yields ``(is_critical, status)`` pairs. APPROVED and WAIVED cost nothing.
    """

    weights = weights or current_weights()
    score = 100
    for is_critical, status in requirements:
        if status not in UNRESOLVED_REQUIREMENT_STATUSES:
            continue
        score -= weights.critical_penalty if is_critical else weights.optional_penalty
    return max(0, score)


def _primary_instrument(value: float | None, high_risk: bool) -> models.InstrumentType:
    if high_risk:
        return models.InstrumentType.ESCROW
    if value is None:
        return models.InstrumentType.LC
    if value < PREPAY_LIMIT_USD:
        return models.InstrumentType.PREPAY
    if value < LC_LIMIT_USD:
        return models.InstrumentType.LC
    return models.InstrumentType.SBLC


def analyze_funding(attrs: FundingAttributes | Any) -> TermSheet:
    """Derive the funding checklist and an indicative structure from deal attributes."""

    if not isinstance(attrs, FundingAttributes):
        attrs = FundingAttributes.from_deal(attrs)

    value = float(attrs.deal_value_usd) if attrs.deal_value_usd is not None else None
    if value is not None and value < 0:
        raise ValidationError("Deal value cannot be negative", code="INVALID_DEAL_VALUE")

    commodity = normalize_commodity(attrs.commodity)
    origin = (attrs.origin_country or "").strip().upper() or None
    destination = (attrs.destination_country or "").strip().upper() or None
    incoterm = (attrs.incoterm or "").strip().upper() or None
    edd = {c.upper() for c in settings.edd_countries}

    d = _Derivation()
    d.require(
        models.RequirementType.KYC,
        "Counterparty KYC",
        "Identity documents and ultimate beneficial owner declaration.",
        critical=True,
    )
    d.require(
        models.RequirementType.KYB,
        "Company registration",
        "Certificate of incorporation, good standing and register of directors.",
        critical=True,
    )
    d.require(
        models.RequirementType.POF,
        "Proof of funds",
        "Recent bank statement or bank-issued proof of funds covering the deal value.",
        critical=value is None or value >= POF_CRITICAL_USD,
    )

    if value is not None and value >= HIGH_VALUE_USD:
        d.risk_flags.append("HIGH_VALUE")
        d.require(
            models.RequirementType.BANK_LETTER,
            "Bank comfort letter",
            "Letter from the buyer's bank confirming the relationship and capacity.",
            critical=True,
        )

    if value is not None and value >= LARGE_VALUE_USD:
        d.risk_flags.append("LARGE_TICKET")
        d.require(
            models.RequirementType.FIN_STATEMENTS,
            "Audited financial statements",
            "Audited financial statements for the last two fiscal years.",
            critical=True,
        )
        d.require(
            models.RequirementType.COLLATERAL,
            "Collateral package",
            "Security package supporting the facility (pledge, assignment of receivables).",
            critical=False,
        )
        d.require(
            models.RequirementType.UCC,
            "UCC lien search",
            "Search for existing liens over the collateral.",
            critical=False,
        )

    cross_border = bool(origin and destination and origin != destination)
    if cross_border:
        d.risk_flags.append("CROSS_BORDER")
        d.require(
            models.RequirementType.LICENSE,
            "Export/import licence confirmation",
            f"Confirmation that no licence is needed, or copy of the licence, for {origin} -> {destination}.",
            critical=False,
        )
        d.require(
            models.RequirementType.INSURANCE,
            "Cargo insurance certificate",
            "Marine cargo insurance covering at least 110% of the invoice value.",
            critical=incoterm in INSURED_INCOTERMS,
        )
    elif incoterm in INSURED_INCOTERMS:
        d.require(
            models.RequirementType.INSURANCE,
            "Cargo insurance certificate",
            "Cargo insurance covering at least 110% of the invoice value.",
            critical=True,
        )

    if commodity in PRECIOUS_METALS:
        d.risk_flags.append("RESTRICTED_COMMODITY")
        d.require(
            models.RequirementType.OTHER,
            "Assay certificate and chain of custody",
            "Independent assay report and documented chain of custody from mine or refinery.",
            critical=True,
        )
    elif commodity in ENERGY:
        d.risk_flags.append("RESTRICTED_COMMODITY")
        d.require(
            models.RequirementType.LICENSE,
            "Energy export licence",
            "Export licence and price-cap attestation for the cargo.",
            critical=True,
        )

    high_risk = bool({origin, destination} & edd)
    if high_risk:
        d.risk_flags.append("HIGH_RISK_JURISDICTION")
        d.require(
            models.RequirementType.OTHER,
            "Enhanced due diligence report",
            "Enhanced due diligence on the counterparty, end user and payment route.",
            critical=True,
        )

    primary = _primary_instrument(value, high_risk)
    fallback = _primary_instrument(value, False) if high_risk else _FALLBACK.get(primary)
    if fallback == primary:
        fallback = _FALLBACK.get(primary)

    weights = current_weights()
    score = readiness_score_for(
        ((r.is_critical, models.RequirementStatus.PENDING) for r in d.requirements),
        weights,
    )

    structure = {
        "instrument": primary.value,
        "applicable_rules": APPLICABLE_RULES.get(primary),
        "fallback_instrument": fallback.value if fallback else None,
        "fallback_applicable_rules": APPLICABLE_RULES.get(fallback) if fallback else None,
        "human_approval_required": True,
    }

    return TermSheet(
        requirements=d.requirements,
        readiness_score=score,
        primary_instrument=primary,
        fallback_instrument=fallback,
        recommended_structure=structure,
        risk_flags=d.risk_flags,
        weights_version=weights.version,
    )


def compute_readiness_score(db: Session, deal_id: int) -> int:
    """Score from the deal's stored requirements. A deal without requirements scores 100."""

    if db.get(models.Deal, deal_id) is None:
        raise NotFoundError("Deal not found", code="DEAL_NOT_FOUND", details={"deal_id": deal_id})

    rows = (
        db.query(
            models.FundingRequirement.is_critical,
            models.FundingRequirement.status,
            func.count(models.FundingRequirement.id),
        )
        .filter(models.FundingRequirement.deal_id == deal_id)
        .group_by(models.FundingRequirement.is_critical, models.FundingRequirement.status)
        .all()
    )
    pairs: list[tuple[bool, models.RequirementStatus]] = []
    for is_critical, status, count in rows:
        pairs.extend([(bool(is_critical), status)] * int(count))
    return readiness_score_for(pairs)


def _store_score(db: Session, deal: models.Deal) -> int:
    score = compute_readiness_score(db, deal.id)
    deal.funding_readiness_score = score
    db.add(deal)
    db.flush()
    return score


def persist_requirements(
    db: Session,
    deal_id: int,
    term_sheet: TermSheet,
    *,
    max_retries: int = 2,
) -> PersistResult:
    """Store the term sheet's requirements, skipping (type, label) pairs the deal already has."""

    for _ in range(max_retries):
        deal = get_deal_for_update(db, deal_id)
        existing = {
            (rt, label)
            for rt, label in db.query(
                models.FundingRequirement.requirement_type, models.FundingRequirement.label
            )
            .filter(models.FundingRequirement.deal_id == deal_id)
            .all()
        }

        created = 0
        skipped = 0
        for spec in term_sheet.requirements:
            key = (spec.requirement_type, spec.label)
            if key in existing:
                skipped += 1
                continue
            existing.add(key)
            db.add(
                models.FundingRequirement(
                    deal_id=deal_id,
                    requirement_type=spec.requirement_type,
                    label=spec.label,
                    description=spec.description,
                    is_critical=spec.is_critical,
                    status=models.RequirementStatus.PENDING,
                    weights_version=term_sheet.weights_version,
                )
            )
            created += 1

        try:
            db.flush()
            score = _store_score(db, deal)
            db.commit()
        except IntegrityError:
            # A concurrent writer inserted some of the same keys; retry against fresh state.
            db.rollback()
            continue

        logger.info(
            "funding_requirements_persisted",
            extra={"deal_id": deal_id, "requirements_created": created, "skipped": skipped, "score": score},
        )
        return PersistResult(created=created, skipped=skipped, readiness_score=score)

    raise ConflictError(
        "Requirements changed concurrently; retry",
        code="REQUIREMENTS_CONCURRENT_UPDATE",
        details={"deal_id": deal_id},
    )


def add_requirement(
    db: Session,
    deal_id: int,
    *,
    requirement_type: models.RequirementType,
    label: str,
    description: str | None = None,
    is_critical: bool = False,
    due_date: date | None = None,
) -> models.FundingRequirement:
    label = (label or "").strip()
    if not label:
        raise ValidationError("Requirement label is required", code="REQUIREMENT_LABEL_REQUIRED")

    deal = get_deal_for_update(db, deal_id)
    duplicate = (
        db.query(models.FundingRequirement.id)
        .filter(
            models.FundingRequirement.deal_id == deal_id,
            models.FundingRequirement.requirement_type == requirement_type,
            models.FundingRequirement.label == label,
        )
        .first()
    )
    if duplicate is not None:
        raise ConflictError(
            "Requirement already exists for this deal",
            code="REQUIREMENT_EXISTS",
            details={"requirement_id": duplicate[0]},
        )

    req = models.FundingRequirement(
        deal_id=deal_id,
        requirement_type=requirement_type,
        label=label,
        description=description,
        is_critical=bool(is_critical),
        status=models.RequirementStatus.PENDING,
        due_date=due_date,
        weights_version=current_weights().version,
    )
    db.add(req)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Requirement already exists for this deal", code="REQUIREMENT_EXISTS")
    _store_score(db, deal)
    db.commit()
    db.refresh(req)
    return req


def update_requirement_status(
    db: Session,
    requirement_id: int,
    to_status: models.RequirementStatus,
    *,
    actor: str,
    notes: str | None = None,
    document_url: str | None = None,
    now: datetime | None = None,
) -> RequirementUpdateResult:
    """Move a requirement along its workflow and refresh the deal's readiness score.

    Review decisions need a reviewer; rejections and waivers need notes. The status
    change is a compare-and-set against the status read here.
    """

    actor = (actor or "").strip()
    if not actor:
        raise ValidationError("actor is required", code="ACTOR_REQUIRED")
    if to_status in {models.RequirementStatus.REJECTED, models.RequirementStatus.WAIVED} and not (
        notes or ""
    ).strip():
        raise ValidationError(
            "Notes are required to reject or waive a requirement", code="NOTES_REQUIRED"
        )

    req = db.get(models.FundingRequirement, requirement_id)
    if req is None:
        raise NotFoundError(
            "Requirement not found",
            code="REQUIREMENT_NOT_FOUND",
            details={"requirement_id": requirement_id},
        )

    from_status = req.status
    if to_status not in REQUIREMENT_TRANSITIONS.get(from_status, frozenset()):
        raise ConflictError(
            f"Cannot move requirement from {from_status.value} to {to_status.value}",
            code="INVALID_REQUIREMENT_TRANSITION",
            details={"from": from_status.value, "to": to_status.value},
        )

    now = now or datetime.utcnow()
    deal = get_deal_for_update(db, req.deal_id)

    values: dict[str, Any] = {"status": to_status}
    if to_status in _REVIEW_DECISIONS:
        values.update(reviewed_by=actor, reviewed_at=now)
    if notes is not None:
        values["notes"] = notes
    if document_url is not None:
        values["document_url"] = document_url

    updated = (
        db.query(models.FundingRequirement)
        .filter(models.FundingRequirement.id == requirement_id)
        .filter(models.FundingRequirement.status == from_status)
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise ConflictError(
            "Requirement status changed concurrently",
            code="REQUIREMENT_STATUS_CHANGED",
            details={"requirement_id": requirement_id},
        )

    score = _store_score(db, deal)
    db.commit()
    db.refresh(req)

    logger.info(
        "funding_requirement_status_updated",
        extra={
            "requirement_id": requirement_id,
            "deal_id": deal.id,
            "from": from_status.value,
            "to": to_status.value,
            "actor": actor,
            "score": score,
        },
    )
    return RequirementUpdateResult(requirement=req, readiness_score=score)


def list_requirements(db: Session, deal_id: int) -> list[models.FundingRequirement]:
    return (
        db.query(models.FundingRequirement)
        .filter(models.FundingRequirement.deal_id == deal_id)
        .order_by(
            models.FundingRequirement.is_critical.desc(),
            models.FundingRequirement.id.asc(),
        )
        .all()
    )
