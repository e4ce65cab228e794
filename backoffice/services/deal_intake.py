from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from backoffice import models
from backoffice.core.errors import NotFoundError, ValidationError
from backoffice.services.document_numbering import next_yearly_number

logger = logging.getLogger("backoffice")

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

DEAL_DOC_TYPE = "deal"
DEAL_PREFIX = "DEAL"


def normalize_commodity(value) -> str:
    """Commodity codes are lowercase and hyphenated ("Precious Metals" -> "precious-metals")."""

    return re.sub(r"[\s_]+", "-", str(value or "").strip().lower())


@dataclass(frozen=True)
class DealIntake:
    counterparty_name: str
    commodity: str
    deal_value_usd: float | None = None
    currency: str = "USD"
    origin_country: str | None = None
    destination_country: str | None = None
    incoterm: str | None = None
    quantity: float | None = None
    quantity_unit: str | None = None
    payment_terms: str | None = None
    counterparty_email: str | None = None


def _supports_row_locks(db: Session) -> bool:
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    name = str(getattr(dialect, "name", "") or "").lower()
    # SQLite doesn't support FOR UPDATE; it serializes writers instead.
    return bool(name) and name != "sqlite"


def get_deal(db: Session, deal_id: int) -> models.Deal:
    deal = db.get(models.Deal, deal_id)
    if deal is None:
        raise NotFoundError("Deal not found", code="DEAL_NOT_FOUND", details={"deal_id": deal_id})
    return deal


def get_deal_for_update(db: Session, deal_id: int) -> models.Deal:
    """Load a deal holding its row lock until the current transaction ends."""

    q = db.query(models.Deal).filter(models.Deal.id == int(deal_id))
    if _supports_row_locks(db):
        q = q.with_for_update()
    deal = q.populate_existing().first()
    if deal is None:
        raise NotFoundError("Deal not found", code="DEAL_NOT_FOUND", details={"deal_id": deal_id})
    return deal


def _clean_country(value: str | None, field: str) -> str | None:
    if value is None or not str(value).strip():
        return None
    cc = str(value).strip().upper()
    if not _COUNTRY_RE.match(cc):
        raise ValidationError(
            f"{field} must be an ISO-3166 alpha-2 code",
            code="INVALID_COUNTRY",
            details={"field": field, "value": value},
        )
    return cc


def validate_intake(intake: DealIntake) -> DealIntake:
    name = (intake.counterparty_name or "").strip()
    if not name:
        raise ValidationError("Counterparty name is required", code="COUNTERPARTY_REQUIRED")

    commodity = normalize_commodity(intake.commodity)
    if not commodity:
        raise ValidationError("Commodity is required", code="COMMODITY_REQUIRED")

    if intake.deal_value_usd is not None and float(intake.deal_value_usd) < 0:
        raise ValidationError("Deal value cannot be negative", code="INVALID_DEAL_VALUE")

    currency = (intake.currency or "USD").strip().upper()
    if not _CURRENCY_RE.match(currency):
        raise ValidationError(
            "Currency must be an ISO-4217 code", code="INVALID_CURRENCY", details={"currency": currency}
        )

    return DealIntake(
        counterparty_name=name,
        commodity=commodity,
        deal_value_usd=intake.deal_value_usd,
        currency=currency,
        origin_country=_clean_country(intake.origin_country, "origin_country"),
        destination_country=_clean_country(intake.destination_country, "destination_country"),
        incoterm=(intake.incoterm or "").strip().upper() or None,
        quantity=intake.quantity,
        quantity_unit=(intake.quantity_unit or "").strip() or None,
        payment_terms=(intake.payment_terms or "").strip() or None,
        counterparty_email=(intake.counterparty_email or "").strip() or None,
    )


def create_deal(db: Session, intake: DealIntake, *, now: datetime | None = None) -> models.Deal:
    """Store a new deal as inquiry/pending. Screening runs separately."""

    clean = validate_intake(intake)
    number = next_yearly_number(db, doc_type=DEAL_DOC_TYPE, prefix=DEAL_PREFIX, now=now)

    deal = models.Deal(
        deal_number=number.formatted,
        counterparty_name=clean.counterparty_name,
        counterparty_email=clean.counterparty_email,
        commodity=clean.commodity,
        deal_value_usd=clean.deal_value_usd,
        currency=clean.currency,
        origin_country=clean.origin_country,
        destination_country=clean.destination_country,
        incoterm=clean.incoterm,
        quantity=clean.quantity,
        quantity_unit=clean.quantity_unit,
        payment_terms=clean.payment_terms,
        status=models.DealStatus.inquiry,
        compliance_status=models.ComplianceStatus.pending,
        critical_flags_count=0,
    )
    db.add(deal)
    db.commit()
    db.refresh(deal)

    logger.info("deal_created", extra={"deal_id": deal.id, "deal_number": deal.deal_number})
    return deal


def list_deals(
    db: Session,
    *,
    status: models.DealStatus | None = None,
    compliance_status: models.ComplianceStatus | None = None,
    q: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[models.Deal]:
    query = db.query(models.Deal)
    if status is not None:
        query = query.filter(models.Deal.status == status)
    if compliance_status is not None:
        query = query.filter(models.Deal.compliance_status == compliance_status)
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(
            models.Deal.counterparty_name.ilike(like) | models.Deal.deal_number.ilike(like)
        )
    return query.order_by(models.Deal.created_at.desc(), models.Deal.id.desc()).offset(offset).limit(limit).all()
