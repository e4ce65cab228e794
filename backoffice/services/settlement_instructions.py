"""Settlement instruction builder.

Builds rail-specific instructions (fiat wire, XRPL-style ledger, Stellar-style
ledger) with an ordered validation checklist. Nothing here moves funds, signs or
talks to a network: instructions are records for a human to execute.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session
from stellar_sdk import StrKey
from xrpl.core.addresscodec import is_valid_classic_address

from backoffice import models
from backoffice.config import settings
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.deal_intake import get_deal
from backoffice.services.instrument_gate import BIC_RE, get_instrument

logger = logging.getLogger("backoffice")

PASS = "PASS"
WARN = "WARN"
FAIL = "FAIL"
TODO = "TODO"

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_MAX_DESTINATION_TAG = 2**32 - 1
_MAX_MEMO_ID = 2**64 - 1
_MAX_MEMO_TEXT_BYTES = 28

APPROVED_INSTRUMENT_STATUSES = frozenset(
    {models.VerificationStatus.HUMAN_APPROVED, models.VerificationStatus.VERIFIED}
)


@dataclass(frozen=True)
class ChecklistItem:
    check: str
    status: str
    detail: str

    def to_json(self) -> dict[str, str]:
        return {"check": self.check, "status": self.status, "detail": self.detail}


def checklist_passes(items: Iterable[Any]) -> bool:
    for item in items:
        status = item["status"] if isinstance(item, dict) else item.status
        if status == FAIL:
            return False
    return True


@dataclass(frozen=True)
class Instruction:
    rail: models.SettlementRail
    amount: float
    currency: str
    params: dict[str, Any]
    payload: dict[str, Any]
    checklist: list[ChecklistItem] = field(default_factory=list)

    @property
    def is_validated(self) -> bool:
        return checklist_passes(self.checklist)


# --- address checks -------------------------------------------------------


def is_valid_xrpl_address(address: Optional[str]) -> bool:
    """Classic r-address with a valid checksum. X-addresses are not accepted; tags travel separately."""

    if not address:
        return False
    return is_valid_classic_address(str(address))


def is_valid_stellar_account(address: Optional[str]) -> bool:
    """Ed25519 account StrKey (G...)."""

    if not address:
        return False
    return StrKey.is_valid_ed25519_public_key(str(address))


# --- builders -------------------------------------------------------------


def _require(params: dict[str, Any], *names: str, rail: str) -> None:
    missing = [n for n in names if params.get(n) in (None, "")]
    if missing:
        raise ValidationError(
            f"{', '.join(missing)} required for {rail}",
            code="MISSING_SETTLEMENT_FIELDS",
            details={"rail": rail, "missing": missing},
        )


def _amount(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError("amount must be numeric", code="INVALID_AMOUNT", details={"amount": value})


def _amount_check(amount: float, unit: str) -> ChecklistItem:
    if amount > 0:
        return ChecklistItem("Amount Positive", PASS, f"{amount:g} {unit}")
    return ChecklistItem("Amount Positive", FAIL, f"Amount must be greater than zero (got {amount})")


def build_fiat_instructions(
    *,
    beneficiary_name: Optional[str] = None,
    swift_bic: Optional[str] = None,
    amount: Any = None,
    currency: Optional[str] = None,
    beneficiary_account: Optional[str] = None,
    beneficiary_bank: Optional[str] = None,
    iban: Optional[str] = None,
    routing_number: Optional[str] = None,
    reference_text: Optional[str] = None,
    intermediary_bank: Optional[str] = None,
    deal_number: Optional[str] = None,
) -> Instruction:
    params = {
        "beneficiary_name": beneficiary_name,
        "swift_bic": swift_bic,
        "amount": amount,
        "currency": currency,
        "beneficiary_account": beneficiary_account,
        "beneficiary_bank": beneficiary_bank,
        "iban": iban,
        "routing_number": routing_number,
        "reference_text": reference_text,
        "intermediary_bank": intermediary_bank,
        "deal_number": deal_number,
    }
    _require(params, "beneficiary_name", "swift_bic", "amount", "currency", rail="FIAT")

    value = _amount(amount)
    bic = str(swift_bic).strip().upper()
    ccy = str(currency).strip().upper()
    name = str(beneficiary_name).strip()
    account = (iban or beneficiary_account or "").strip()
    reference = reference_text or (f"{deal_number}" if deal_number else None)

    checklist = [
        ChecklistItem("BIC Format Valid", PASS if BIC_RE.match(bic) else FAIL, f"BIC: {bic}"),
        ChecklistItem("Beneficiary Name Present", PASS if name else FAIL, name or "Missing"),
        ChecklistItem(
            "Account / IBAN Present",
            PASS if account else FAIL,
            account or "No account number or IBAN supplied",
        ),
        ChecklistItem("Currency ISO Code", PASS if _CURRENCY_RE.match(ccy) else FAIL, ccy),
        _amount_check(value, ccy),
        ChecklistItem(
            "Test Transaction Recommended",
            WARN,
            "Send a small test payment first and confirm receipt before full settlement",
        ),
        ChecklistItem(
            "Intermediary Bank",
            PASS if intermediary_bank else WARN,
            intermediary_bank or "Not provided; routing may be delayed",
        ),
    ]

    payload = {
        "beneficiary_name": name,
        "beneficiary_account": beneficiary_account,
        "beneficiary_bank": beneficiary_bank,
        "swift_bic": bic,
        "iban": iban,
        "routing_number": routing_number,
        "reference_text": reference,
        "intermediary_bank": intermediary_bank,
    }
    return Instruction(
        rail=models.SettlementRail.FIAT,
        amount=value,
        currency=ccy,
        params=params,
        payload=payload,
        checklist=checklist,
    )


def build_ledger_a_instructions(
    *,
    destination_address: Optional[str] = None,
    amount: Any = None,
    destination_tag: Optional[int] = None,
    currency: Optional[str] = None,
    issuer: Optional[str] = None,
    escrow_condition: Optional[str] = None,
    escrow_finish_after: Optional[int] = None,
    escrow_cancel_after: Optional[int] = None,
) -> Instruction:
    """XRPL-style payment instruction.

    The destination tag is never generated here: the receiving party issues it, and
    a payment to a shared account without one may be unrecoverable.
    """

    params = {
        "destination_address": destination_address,
        "amount": amount,
        "destination_tag": destination_tag,
        "currency": currency,
        "issuer": issuer,
        "escrow_condition": escrow_condition,
        "escrow_finish_after": escrow_finish_after,
        "escrow_cancel_after": escrow_cancel_after,
    }
    _require(params, "destination_address", "amount", rail="XRPL")

    value = _amount(amount)
    address = str(destination_address).strip()
    ccy = (currency or "XRP").strip().upper()
    issued = ccy != "XRP"

    checklist = [
        ChecklistItem(
            "XRPL Address Valid",
            PASS if is_valid_xrpl_address(address) else FAIL,
            f"Address: {address}",
        )
    ]

    if destination_tag is None:
        checklist.append(
            ChecklistItem(
                "Destination Tag Included",
                FAIL,
                "No destination tag; funds may be unrecoverable",
            )
        )
    else:
        try:
            tag = int(destination_tag)
        except (TypeError, ValueError):
            tag = -1
        if 0 <= tag <= _MAX_DESTINATION_TAG:
            checklist.append(
                ChecklistItem("Destination Tag Included", PASS, f"Tag: {tag}; must be included on every payment")
            )
        else:
            checklist.append(
                ChecklistItem(
                    "Destination Tag Included",
                    FAIL,
                    f"Tag {destination_tag} is not an unsigned 32-bit integer",
                )
            )

    if not issued:
        checklist.append(ChecklistItem("Trustline Required", PASS, "Native XRP; no trustline required"))
    elif not issuer:
        checklist.append(ChecklistItem("Trustline Required", FAIL, f"Issuer missing for issued currency {ccy}"))
    elif not is_valid_xrpl_address(issuer):
        checklist.append(ChecklistItem("Trustline Required", FAIL, f"Issuer address invalid: {issuer}"))
    else:
        checklist.append(
            ChecklistItem(
                "Trustline Required",
                WARN,
                f"Destination must hold a trustline to issuer {issuer} for {ccy}",
            )
        )

    checklist.append(_amount_check(value, ccy))

    if escrow_condition:
        checklist.append(
            ChecklistItem("Escrow Condition", PASS, "Crypto-condition present; store the fulfillment securely")
        )
    else:
        checklist.append(ChecklistItem("Escrow Condition", TODO, "No escrow condition; standard payment"))

    if escrow_finish_after is not None and escrow_cancel_after is not None:
        if int(escrow_cancel_after) <= int(escrow_finish_after):
            checklist.append(
                ChecklistItem("Escrow Window", FAIL, "Cancel-after must be later than finish-after")
            )
        else:
            checklist.append(ChecklistItem("Escrow Window", PASS, "Finish/cancel window is consistent"))

    checklist.append(
        ChecklistItem(
            "Test Transaction Recommended",
            WARN,
            "Send a minimal test payment first and confirm the destination tag is credited",
        )
    )

    payload = {
        "destination_address": address,
        "destination_tag": destination_tag,
        "currency": ccy,
        "issuer": issuer,
        "amount": value,
        "escrow_condition": escrow_condition,
        "escrow_finish_after": escrow_finish_after,
        "escrow_cancel_after": escrow_cancel_after,
        "trustline_required": issued,
        "network_url": settings.xrpl_node_url,
    }
    return Instruction(
        rail=models.SettlementRail.XRPL,
        amount=value,
        currency=ccy,
        params=params,
        payload=payload,
        checklist=checklist,
    )


def _memo_problem(memo: str, memo_type: str) -> Optional[str]:
    if memo_type == "text":
        if len(memo.encode("utf-8")) > _MAX_MEMO_TEXT_BYTES:
            return f"Text memo exceeds {_MAX_MEMO_TEXT_BYTES} bytes"
    elif memo_type == "id":
        if not memo.isdigit() or int(memo) > _MAX_MEMO_ID:
            return "ID memo must be an unsigned 64-bit integer"
    elif memo_type == "hash":
        if not re.fullmatch(r"[0-9a-fA-F]{64}", memo):
            return "Hash memo must be 32 bytes of hex"
    else:
        return f"Unknown memo type {memo_type!r}"
    return None


def build_ledger_b_instructions(
    *,
    destination_address: Optional[str] = None,
    amount: Any = None,
    memo: Optional[str] = None,
    memo_type: str = "text",
    asset_code: Optional[str] = None,
    asset_issuer: Optional[str] = None,
    federation_address: Optional[str] = None,
    destination_kind: Optional[str] = None,
    exchange_addresses: Optional[Iterable[str]] = None,
) -> Instruction:
    """Stellar-style payment instruction.

    A missing memo is a FAIL unless the caller declares a self-custody destination
    that is not on the known exchange list; undeclared destinations are treated as
    exchange-style.
    """

    params = {
        "destination_address": destination_address,
        "amount": amount,
        "memo": memo,
        "memo_type": memo_type,
        "asset_code": asset_code,
        "asset_issuer": asset_issuer,
        "federation_address": federation_address,
        "destination_kind": destination_kind,
    }
    _require(params, "destination_address", "amount", rail="STELLAR")

    if destination_kind not in (None, "exchange", "self_custody"):
        raise ValidationError(
            "destination_kind must be 'exchange' or 'self_custody'",
            code="INVALID_DESTINATION_KIND",
            details={"destination_kind": destination_kind},
        )

    value = _amount(amount)
    address = str(destination_address).strip()
    code = (asset_code or "XLM").strip().upper()
    memo_type = (memo_type or "text").strip().lower()
    known_exchanges = set(
        settings.settlement_exchange_addresses if exchange_addresses is None else exchange_addresses
    )
    exchange_style = destination_kind != "self_custody" or address in known_exchanges

    checklist = [
        ChecklistItem(
            "Stellar Address Valid",
            PASS if is_valid_stellar_account(address) else FAIL,
            f"Address: {address}",
        )
    ]

    if memo:
        problem = _memo_problem(str(memo), memo_type)
        if problem:
            checklist.append(ChecklistItem("Memo Present", FAIL, problem))
        else:
            checklist.append(ChecklistItem("Memo Present", PASS, f"Memo ({memo_type}): {memo}"))
    elif exchange_style:
        checklist.append(
            ChecklistItem(
                "Memo Present",
                FAIL,
                "No memo for an exchange-style destination; funds may be unrecoverable",
            )
        )
    else:
        checklist.append(
            ChecklistItem("Memo Present", WARN, "No memo; destination declared as self-custody")
        )

    if code == "XLM":
        checklist.append(ChecklistItem("Asset Issuer", PASS, "Native XLM; no issuer required"))
    elif not asset_issuer:
        checklist.append(ChecklistItem("Asset Issuer", FAIL, f"Issuer missing for asset {code}"))
    elif not is_valid_stellar_account(asset_issuer):
        checklist.append(ChecklistItem("Asset Issuer", FAIL, f"Issuer address invalid: {asset_issuer}"))
    else:
        checklist.append(ChecklistItem("Asset Issuer", PASS, f"Issuer: {asset_issuer}"))

    checklist.extend(
        [
            _amount_check(value, code),
            ChecklistItem(
                "Minimum Balance Reserve",
                WARN,
                "Destination account must exist and hold the minimum XLM reserve",
            ),
            ChecklistItem(
                "Test Transaction Recommended",
                WARN,
                "Send a small test payment first and confirm the memo is accepted",
            ),
        ]
    )

    payload = {
        "destination_address": address,
        "memo": memo,
        "memo_type": memo_type,
        "asset_code": code,
        "asset_issuer": asset_issuer,
        "amount": value,
        "federation_address": federation_address,
        "destination_kind": destination_kind,
        "network_passphrase": settings.stellar_network_passphrase,
        "horizon_url": settings.stellar_horizon_url,
    }
    return Instruction(
        rail=models.SettlementRail.STELLAR,
        amount=value,
        currency=code,
        params=params,
        payload=payload,
        checklist=checklist,
    )


_BUILDERS = {
    models.SettlementRail.FIAT: build_fiat_instructions,
    models.SettlementRail.XRPL: build_ledger_a_instructions,
    models.SettlementRail.STELLAR: build_ledger_b_instructions,
}


def build_instruction(rail: models.SettlementRail, params: dict[str, Any]) -> Instruction:
    builder = _BUILDERS.get(rail)
    if builder is None:
        raise ValidationError(f"Unknown rail: {rail}", code="UNKNOWN_RAIL")
    try:
        return builder(**params)
    except TypeError as e:
        raise ValidationError(
            "Unexpected settlement fields", code="INVALID_SETTLEMENT_FIELDS", details={"error": str(e)}
        )


# --- persistence ----------------------------------------------------------


def gate_checks(
    deal: models.Deal, instrument: Optional[models.FundingInstrument]
) -> list[ChecklistItem]:
    """Checklist entries that depend on stored deal and instrument state."""

    items: list[ChecklistItem] = []
    if deal.compliance_status == models.ComplianceStatus.cleared:
        items.append(ChecklistItem("Deal Compliance Cleared", PASS, f"Deal {deal.deal_number} is cleared"))
    else:
        items.append(
            ChecklistItem(
                "Deal Compliance Cleared",
                FAIL,
                f"Deal compliance status is {deal.compliance_status.value}",
            )
        )

    if instrument is None:
        items.append(ChecklistItem("Backing Instrument Approved", TODO, "No backing instrument linked"))
    elif instrument.verification_status in APPROVED_INSTRUMENT_STATUSES:
        items.append(
            ChecklistItem(
                "Backing Instrument Approved",
                PASS,
                f"Instrument {instrument.id} approved by {instrument.verified_by}",
            )
        )
    else:
        items.append(
            ChecklistItem(
                "Backing Instrument Approved",
                FAIL,
                f"Instrument {instrument.id} is {instrument.verification_status.value}",
            )
        )
    return items


def _linked_instrument(
    db: Session, deal_id: int, instrument_id: Optional[int]
) -> Optional[models.FundingInstrument]:
    if instrument_id is None:
        return None
    inst = get_instrument(db, instrument_id)
    if inst.deal_id != deal_id:
        raise ValidationError(
            "Instrument does not belong to this deal",
            code="INSTRUMENT_DEAL_MISMATCH",
            details={"instrument_id": instrument_id, "deal_id": deal_id},
        )
    return inst


def persist_settlement(
    db: Session,
    deal_id: int,
    instruction: Instruction,
    *,
    created_by: str,
    instrument_id: Optional[int] = None,
) -> models.SettlementInstruction:
    deal = get_deal(db, deal_id)
    instrument = _linked_instrument(db, deal_id, instrument_id)

    checklist = list(instruction.checklist) + gate_checks(deal, instrument)
    is_validated = checklist_passes(checklist)

    row = models.SettlementInstruction(
        deal_id=deal_id,
        instrument_id=instrument_id,
        rail=instruction.rail,
        amount=instruction.amount,
        currency=instruction.currency,
        payload={"params": instruction.params, "instruction": instruction.payload},
        validation_checklist=[c.to_json() for c in checklist],
        is_validated=is_validated,
        created_by=created_by,
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    logger.info(
        "settlement_instruction_created",
        extra={
            "settlement_id": row.id,
            "deal_id": deal_id,
            "rail": instruction.rail.value,
            "is_validated": is_validated,
        },
    )
    return row


def get_settlement(db: Session, settlement_id: int) -> models.SettlementInstruction:
    row = db.get(models.SettlementInstruction, settlement_id)
    if row is None:
        raise NotFoundError(
            "Settlement instruction not found",
            code="SETTLEMENT_NOT_FOUND",
            details={"settlement_id": settlement_id},
        )
    return row


def revalidate_settlement(
    db: Session,
    settlement_id: int,
    *,
    validated_by: str,
) -> models.SettlementValidationSnapshot:
    """Rebuild the checklist against current deal/instrument state and snapshot it.

    The instruction payload is left as created; only the checklist moves.
    """

    row = get_settlement(db, settlement_id)
    params = dict((row.payload or {}).get("params") or {})
    if not params:
        raise ConflictError(
            "Settlement instruction has no stored build parameters",
            code="SETTLEMENT_NOT_REVALIDATABLE",
            details={"settlement_id": settlement_id},
        )

    instruction = build_instruction(row.rail, params)
    deal = get_deal(db, row.deal_id)
    instrument = _linked_instrument(db, row.deal_id, row.instrument_id)
    checklist = [c.to_json() for c in list(instruction.checklist) + gate_checks(deal, instrument)]
    is_validated = checklist_passes(checklist)

    snapshot = models.SettlementValidationSnapshot(
        settlement_id=row.id,
        validation_checklist=checklist,
        is_validated=is_validated,
        validated_by=validated_by,
    )
    db.add(snapshot)
    row.validation_checklist = checklist
    row.is_validated = is_validated
    db.commit()
    db.refresh(snapshot)

    logger.info(
        "settlement_instruction_revalidated",
        extra={"settlement_id": row.id, "is_validated": is_validated, "validated_by": validated_by},
    )
    return snapshot


def list_settlements(db: Session, deal_id: int) -> list[models.SettlementInstruction]:
    return (
        db.query(models.SettlementInstruction)
        .filter(models.SettlementInstruction.deal_id == deal_id)
        .order_by(models.SettlementInstruction.created_at.desc(), models.SettlementInstruction.id.desc())
        .all()
    )
