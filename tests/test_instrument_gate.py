from datetime import date, timedelta

import pytest

from backoffice import models
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.database import SessionLocal
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.instrument_gate import (
    FAIL,
    PASS,
    WARN,
    ExpectedFields,
    InstrumentFields,
    approve_instrument,
    create_instrument,
    finalize_instrument,
    reject_instrument,
    run_instrument_checks,
    update_instrument_stage,
    verify_instrument,
)

VS = models.VerificationStatus
TODAY = date(2026, 3, 1)


def _by_check(checks):
    return {c.check: c.status for c in checks}


def _clean_fields(**overrides):
    base = dict(
        amount=500_000.0,
        currency="USD",
        beneficiary_name="Nordic Metals AB (Stockholm)",
        issuing_bank_bic="DEUTDEFFXXX",
        expiry_date=TODAY + timedelta(days=180),
        applicable_rules="UCP 600",
    )
    base.update(overrides)
    return InstrumentFields(**base)


EXPECTED = ExpectedFields(
    amount=500_000.0, currency="usd", beneficiary_name="nordic  metals ab", issuing_bank_bic="DEUTDEFF"
)


def _instrument(db, **overrides):
    deal = create_deal(db, DealIntake(counterparty_name="Nordic Metals AB", commodity="copper"))
    fields = dict(
        instrument_type=models.InstrumentType.LC,
        amount=500_000.0,
        currency="USD",
        issuing_bank_bic="DEUTDEFFXXX",
        issue_date=TODAY,
        expiry_date=TODAY + timedelta(days=180),
        beneficiary_name="Nordic Metals AB",
    )
    fields.update(overrides)
    return create_instrument(db, deal.id, **fields)


def test_clean_instrument_passes_every_check():
    checks = run_instrument_checks(_clean_fields(), EXPECTED, today=TODAY)
    assert set(_by_check(checks).values()) == {PASS}


def test_amount_tolerance_and_mismatch():
    within = run_instrument_checks(_clean_fields(amount=500_000.005), EXPECTED, today=TODAY, tolerance=0.01)
    off = run_instrument_checks(_clean_fields(amount=499_000.0), EXPECTED, today=TODAY, tolerance=0.01)

    assert _by_check(within)["amount_match"] == PASS
    assert _by_check(off)["amount_match"] == FAIL


def test_missing_expectations_warn_instead_of_pass():
    checks = _by_check(run_instrument_checks(_clean_fields(), ExpectedFields(), today=TODAY))
    assert checks["amount_match"] == WARN
    assert checks["currency_match"] == WARN
    assert checks["beneficiary_match"] == WARN
    assert checks["issuing_bank_bic"] == PASS


def test_bic_expiry_and_rules_checks():
    checks = _by_check(
        run_instrument_checks(
            _clean_fields(
                issuing_bank_bic="BNPAFRPP",
                expiry_date=TODAY + timedelta(days=10),
                applicable_rules="eUCP",
            ),
            EXPECTED,
            today=TODAY,
            warning_days=30,
        )
    )
    assert checks["issuing_bank_bic"] == FAIL
    assert checks["expiry"] == WARN
    assert checks["applicable_rules"] == WARN

    expired = _by_check(run_instrument_checks(_clean_fields(expiry_date=TODAY - timedelta(days=1)), EXPECTED, today=TODAY))
    assert expired["expiry"] == FAIL

    malformed = _by_check(run_instrument_checks(_clean_fields(issuing_bank_bic="DEUT-DE"), EXPECTED, today=TODAY))
    assert malformed["issuing_bank_bic"] == FAIL


def test_clean_verification_still_waits_for_a_human(db_session):
    inst = _instrument(db_session)

    report = verify_instrument(db_session, inst.id, checked_by="ops@test.com", expected=EXPECTED, today=TODAY)

    assert report.checks_passed is True
    assert report.verification_status == VS.PENDING_HUMAN_REVIEW
    assert report.human_approval_required is True
    db_session.refresh(inst)
    assert inst.verification_status == VS.PENDING_HUMAN_REVIEW
    assert inst.verified_by is None
    assert inst.verification_report["checks_passed"] is True

    approved = approve_instrument(db_session, inst.id, approved_by="finance@test.com", notes="Checked SWIFT MT700")
    assert approved.verification_status == VS.HUMAN_APPROVED
    assert approved.verified_by == "finance@test.com"


def test_failed_checks_also_land_in_human_review(db_session):
    inst = _instrument(db_session)

    report = verify_instrument(
        db_session,
        inst.id,
        checked_by="ops@test.com",
        supplied=InstrumentFields(amount=1.0),
        expected=EXPECTED,
        today=TODAY,
    )

    assert report.fail_count == 1
    assert report.verification_status == VS.PENDING_HUMAN_REVIEW


def test_approve_from_unverified_is_a_conflict(db_session):
    inst = _instrument(db_session)

    with pytest.raises(ConflictError) as exc:
        approve_instrument(db_session, inst.id, approved_by="finance@test.com")
    assert exc.value.code == "INVALID_VERIFICATION_STATE"


def test_approval_needs_a_named_human(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)

    with pytest.raises(ValidationError) as exc:
        approve_instrument(db_session, inst.id, approved_by="  ")
    assert exc.value.code == "APPROVER_REQUIRED"


def test_reject_then_reverify(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)

    rejected = reject_instrument(db_session, inst.id, rejected_by="finance@test.com", reason="Wrong beneficiary")
    assert rejected.verification_status == VS.HUMAN_REJECTED
    assert rejected.verification_notes == "Wrong beneficiary"

    with pytest.raises(ConflictError):
        approve_instrument(db_session, inst.id, approved_by="finance@test.com")

    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    db_session.refresh(inst)
    assert inst.verification_status == VS.PENDING_HUMAN_REVIEW
    assert inst.verified_by is None
    previous = inst.verification_report["previous_decision"]
    assert previous["verification_status"] == "HUMAN_REJECTED"
    assert previous["decided_by"] == "finance@test.com"
    assert previous["notes"] == "Wrong beneficiary"
    assert previous["decided_at"] is not None


def test_reverify_demotes_an_approval(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    approve_instrument(db_session, inst.id, approved_by="finance@test.com")

    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    db_session.refresh(inst)
    assert inst.verification_status == VS.PENDING_HUMAN_REVIEW
    assert inst.verification_report["previous_decision"]["verification_status"] == "HUMAN_APPROVED"


def test_first_verification_has_no_previous_decision(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    db_session.refresh(inst)
    assert "previous_decision" not in inst.verification_report


def test_stale_approval_loses_to_a_committed_rejection(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    assert inst.verification_status == VS.PENDING_HUMAN_REVIEW

    other = SessionLocal()
    try:
        reject_instrument(other, inst.id, rejected_by="finance-b@test.com", reason="Amended terms")
    finally:
        other.close()

    # db_session still holds the PENDING_HUMAN_REVIEW copy.
    with pytest.raises(ConflictError) as exc:
        approve_instrument(db_session, inst.id, approved_by="finance-a@test.com")
    assert exc.value.code == "INVALID_VERIFICATION_STATE"

    db_session.expire_all()
    stored = db_session.get(models.FundingInstrument, inst.id)
    assert stored.verification_status == VS.HUMAN_REJECTED
    assert stored.verified_by == "finance-b@test.com"


def test_only_one_of_two_approvals_wins(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)

    first = SessionLocal()
    second = SessionLocal()
    try:
        first.get(models.FundingInstrument, inst.id)
        second.get(models.FundingInstrument, inst.id)

        approve_instrument(first, inst.id, approved_by="finance-a@test.com")
        with pytest.raises(ConflictError):
            approve_instrument(second, inst.id, approved_by="finance-b@test.com")
    finally:
        first.close()
        second.close()

    db_session.expire_all()
    assert db_session.get(models.FundingInstrument, inst.id).verified_by == "finance-a@test.com"


def test_finalize_requires_live_instrument(db_session):
    inst = _instrument(db_session)
    verify_instrument(db_session, inst.id, checked_by="ops@test.com", today=TODAY)
    approve_instrument(db_session, inst.id, approved_by="finance@test.com")

    with pytest.raises(ConflictError) as exc:
        finalize_instrument(db_session, inst.id, finalized_by="finance@test.com", today=TODAY)
    assert exc.value.code == "INSTRUMENT_NOT_LIVE"

    for stage in (models.InstrumentStage.ISSUED, models.InstrumentStage.TRANSMITTED, models.InstrumentStage.CONFIRMED):
        update_instrument_stage(db_session, inst.id, stage, actor="ops@test.com")

    final = finalize_instrument(db_session, inst.id, finalized_by="finance@test.com", today=TODAY)
    assert final.verification_status == VS.VERIFIED
    assert final.stage == models.InstrumentStage.CONFIRMED


def test_stage_transitions_are_guarded(db_session):
    inst = _instrument(db_session)

    with pytest.raises(ConflictError) as exc:
        update_instrument_stage(db_session, inst.id, models.InstrumentStage.ACTIVE, actor="ops@test.com")
    assert exc.value.code == "INVALID_STAGE_TRANSITION"

    update_instrument_stage(db_session, inst.id, models.InstrumentStage.CANCELLED, actor="ops@test.com")
    with pytest.raises(ConflictError):
        update_instrument_stage(db_session, inst.id, models.InstrumentStage.ISSUED, actor="ops@test.com")


def test_create_validates_inputs(db_session):
    with pytest.raises(ValidationError) as exc:
        _instrument(db_session, issuing_bank_bic="NOT A BIC")
    assert exc.value.code == "INVALID_BIC"

    with pytest.raises(ValidationError) as exc:
        _instrument(db_session, expiry_date=TODAY - timedelta(days=1))
    assert exc.value.code == "INVALID_EXPIRY"

    with pytest.raises(NotFoundError):
        create_instrument(db_session, 424242, instrument_type=models.InstrumentType.LC)


def test_default_governing_rules_follow_instrument_type(db_session):
    assert _instrument(db_session).applicable_rules == "UCP 600"
    assert _instrument(db_session, instrument_type=models.InstrumentType.SBLC).applicable_rules == "ISP98"
