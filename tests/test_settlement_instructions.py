from datetime import date, timedelta

import pytest
from stellar_sdk import Keypair, StrKey
from xrpl.core.addresscodec import classic_address_to_xaddress, encode_classic_address

from backoffice import models
from backoffice.core.errors import ValidationError
from backoffice.services.compliance_screening import run_compliance_screen
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.instrument_gate import approve_instrument, create_instrument, verify_instrument
from backoffice.services.settlement_instructions import (
    FAIL,
    PASS,
    TODO,
    WARN,
    build_fiat_instructions,
    build_instruction,
    build_ledger_a_instructions,
    build_ledger_b_instructions,
    is_valid_stellar_account,
    is_valid_xrpl_address,
    persist_settlement,
    revalidate_settlement,
)

GENESIS = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"

XRPL_DEST = encode_classic_address(bytes(range(1, 21)))
XRPL_ISSUER = encode_classic_address(bytes(range(100, 120)))
STELLAR_DEST = StrKey.encode_ed25519_public_key(bytes(range(32)))
STELLAR_ISSUER = Keypair.random().public_key


def _by_check(instruction):
    return {c.check: c.status for c in instruction.checklist}


def test_address_codecs_accept_real_and_reject_corrupted():
    assert is_valid_xrpl_address(GENESIS)
    assert is_valid_xrpl_address(XRPL_DEST)
    assert not is_valid_xrpl_address(GENESIS[:-1] + ("h" if GENESIS[-1] != "h" else "r"))
    assert not is_valid_xrpl_address("0xdeadbeef")
    assert not is_valid_xrpl_address(None)
    assert not is_valid_xrpl_address(classic_address_to_xaddress(XRPL_DEST, 7, False))

    assert is_valid_stellar_account(STELLAR_DEST)
    corrupted = STELLAR_DEST[:-1] + ("A" if STELLAR_DEST[-1] != "A" else "B")
    assert not is_valid_stellar_account(corrupted)
    assert not is_valid_stellar_account("G" * 56)


def test_fiat_instruction_checklist():
    inst = build_fiat_instructions(
        beneficiary_name="Nordic Metals AB",
        swift_bic="deutdeff",
        amount="125000",
        currency="eur",
        iban="DE89370400440532013000",
        deal_number="DEAL-2026-0001",
    )

    checks = _by_check(inst)
    assert checks["BIC Format Valid"] == PASS
    assert checks["Account / IBAN Present"] == PASS
    assert checks["Test Transaction Recommended"] == WARN
    assert checks["Intermediary Bank"] == WARN
    assert inst.is_validated is True
    assert inst.currency == "EUR"
    assert inst.payload["reference_text"] == "DEAL-2026-0001"


def test_fiat_without_account_fails():
    inst = build_fiat_instructions(
        beneficiary_name="Nordic Metals AB", swift_bic="DEUTDEFF", amount=10, currency="EUR"
    )
    assert _by_check(inst)["Account / IBAN Present"] == FAIL
    assert inst.is_validated is False


def test_missing_required_fields_are_named():
    with pytest.raises(ValidationError) as exc:
        build_instruction(models.SettlementRail.FIAT, {"beneficiary_name": "X", "amount": 1})
    assert exc.value.code == "MISSING_SETTLEMENT_FIELDS"
    assert exc.value.details["missing"] == ["swift_bic", "currency"]

    with pytest.raises(ValidationError) as exc:
        build_instruction(models.SettlementRail.XRPL, {"destination_address": XRPL_DEST, "memo": "x"})
    assert exc.value.code == "INVALID_SETTLEMENT_FIELDS"

    with pytest.raises(ValidationError) as exc:
        build_instruction("SWIFT_GPI", {})
    assert exc.value.code == "UNKNOWN_RAIL"


def test_xrpl_missing_destination_tag_fails():
    inst = build_ledger_a_instructions(destination_address=XRPL_DEST, amount=250)
    checks = _by_check(inst)

    assert checks["XRPL Address Valid"] == PASS
    assert checks["Destination Tag Included"] == FAIL
    assert checks["Trustline Required"] == PASS
    assert inst.is_validated is False


def test_xrpl_tag_bounds_and_issued_currency():
    ok = build_ledger_a_instructions(
        destination_address=XRPL_DEST,
        amount=250,
        destination_tag=2**32 - 1,
        currency="usd",
        issuer=XRPL_ISSUER,
    )
    checks = _by_check(ok)
    assert checks["Destination Tag Included"] == PASS
    assert checks["Trustline Required"] == WARN
    assert checks["Escrow Condition"] == TODO
    assert ok.is_validated is True
    assert ok.payload["destination_tag"] == 2**32 - 1

    too_big = build_ledger_a_instructions(destination_address=XRPL_DEST, amount=1, destination_tag=2**32)
    assert _by_check(too_big)["Destination Tag Included"] == FAIL

    no_issuer = build_ledger_a_instructions(
        destination_address=XRPL_DEST, amount=1, destination_tag=7, currency="USD"
    )
    assert _by_check(no_issuer)["Trustline Required"] == FAIL


def test_xrpl_escrow_window_must_be_ordered():
    inst = build_ledger_a_instructions(
        destination_address=XRPL_DEST,
        amount=1,
        destination_tag=7,
        escrow_condition="A0258020" + "00" * 32,
        escrow_finish_after=800_000_100,
        escrow_cancel_after=800_000_000,
    )
    checks = _by_check(inst)
    assert checks["Escrow Condition"] == PASS
    assert checks["Escrow Window"] == FAIL


def test_stellar_memo_rules():
    undeclared = build_ledger_b_instructions(destination_address=STELLAR_DEST, amount=40)
    assert _by_check(undeclared)["Memo Present"] == FAIL

    self_custody = build_ledger_b_instructions(
        destination_address=STELLAR_DEST, amount=40, destination_kind="self_custody", exchange_addresses=[]
    )
    assert _by_check(self_custody)["Memo Present"] == WARN
    assert self_custody.is_validated is True

    listed_exchange = build_ledger_b_instructions(
        destination_address=STELLAR_DEST,
        amount=40,
        destination_kind="self_custody",
        exchange_addresses=[STELLAR_DEST],
    )
    assert _by_check(listed_exchange)["Memo Present"] == FAIL

    long_text = build_ledger_b_instructions(destination_address=STELLAR_DEST, amount=40, memo="x" * 29)
    assert _by_check(long_text)["Memo Present"] == FAIL

    id_memo = build_ledger_b_instructions(
        destination_address=STELLAR_DEST, amount=40, memo="123456789", memo_type="id"
    )
    assert _by_check(id_memo)["Memo Present"] == PASS


def test_stellar_issued_asset_needs_valid_issuer():
    missing = build_ledger_b_instructions(
        destination_address=STELLAR_DEST, amount=40, memo="INV-1", asset_code="usdc"
    )
    assert _by_check(missing)["Asset Issuer"] == FAIL

    issued = build_ledger_b_instructions(
        destination_address=STELLAR_DEST,
        amount=40,
        memo="INV-1",
        asset_code="usdc",
        asset_issuer=STELLAR_ISSUER,
    )
    assert _by_check(issued)["Asset Issuer"] == PASS
    assert issued.currency == "USDC"

    with pytest.raises(ValidationError) as exc:
        build_ledger_b_instructions(destination_address=STELLAR_DEST, amount=1, destination_kind="bank")
    assert exc.value.code == "INVALID_DESTINATION_KIND"


def _deal(db):
    return create_deal(db, DealIntake(counterparty_name="Nordic Metals AB", commodity="copper"))


def _wire():
    return build_fiat_instructions(
        beneficiary_name="Nordic Metals AB",
        swift_bic="DEUTDEFF",
        amount=10_000,
        currency="EUR",
        iban="DE89370400440532013000",
    )


def test_persisted_checklist_includes_deal_and_instrument_gates(db_session):
    deal = _deal(db_session)

    row = persist_settlement(db_session, deal.id, _wire(), created_by="ops@test.com")

    gates = {c["check"]: c["status"] for c in row.validation_checklist}
    assert gates["Deal Compliance Cleared"] == FAIL
    assert gates["Backing Instrument Approved"] == TODO
    assert row.is_validated is False
    assert row.payload["params"]["swift_bic"] == "DEUTDEFF"


def test_revalidate_picks_up_cleared_deal_and_approved_instrument(db_session):
    today = date.today()
    deal = _deal(db_session)
    inst = create_instrument(
        db_session,
        deal.id,
        instrument_type=models.InstrumentType.SBLC,
        amount=10_000,
        currency="EUR",
        issuing_bank_bic="DEUTDEFFXXX",
        issue_date=today,
        expiry_date=today + timedelta(days=365),
        beneficiary_name="Nordic Metals AB",
    )
    row = persist_settlement(db_session, deal.id, _wire(), created_by="ops@test.com", instrument_id=inst.id)
    assert row.is_validated is False

    run_compliance_screen(db_session, deal.id, performed_by="compliance@test.com")
    verify_instrument(db_session, inst.id, checked_by="ops@test.com")
    approve_instrument(db_session, inst.id, approved_by="finance@test.com")

    snapshot = revalidate_settlement(db_session, row.id, validated_by="finance@test.com")

    assert snapshot.is_validated is True
    statuses = {c["check"]: c["status"] for c in snapshot.validation_checklist}
    assert statuses["Deal Compliance Cleared"] == PASS
    assert statuses["Backing Instrument Approved"] == PASS
    db_session.refresh(row)
    assert row.is_validated is True


def test_instrument_from_another_deal_is_rejected(db_session):
    deal = _deal(db_session)
    other = _deal(db_session)
    inst = create_instrument(db_session, other.id, instrument_type=models.InstrumentType.LC)

    with pytest.raises(ValidationError) as exc:
        persist_settlement(db_session, deal.id, _wire(), created_by="ops@test.com", instrument_id=inst.id)
    assert exc.value.code == "INSTRUMENT_DEAL_MISMATCH"
