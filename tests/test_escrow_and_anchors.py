import pytest

from backoffice import models
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.compliance_screening import run_compliance_screen
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.escrow_milestones import (
    create_milestone,
    dispute_milestone,
    list_milestones,
    mark_condition_met,
    release_milestone,
    relock_milestone,
)
from backoffice.services.proof_anchors import anchor_proof, list_anchors, object_hash
from backoffice.services.settlement_instructions import (
    build_fiat_instructions,
    persist_settlement,
    revalidate_settlement,
)

MS = models.MilestoneStatus


def _deal(db):
    return create_deal(db, DealIntake(counterparty_name="Andes Copper SpA", commodity="copper"))


def _settlement(db, deal_id):
    wire = build_fiat_instructions(
        beneficiary_name="Andes Copper SpA",
        swift_bic="BCHICLRM",
        amount=50_000,
        currency="USD",
        beneficiary_account="0012345678",
    )
    return persist_settlement(db, deal_id, wire, created_by="ops@test.com")


def _milestone(db, deal_id, settlement_id=None):
    return create_milestone(
        db,
        deal_id,
        milestone_name="Bill of lading received",
        amount=50_000,
        currency="usd",
        release_condition="Original B/L presented to escrow agent",
        settlement_id=settlement_id,
    )


def test_milestone_happy_path_requires_validated_settlement(db_session):
    deal = _deal(db_session)
    settlement = _settlement(db_session, deal.id)
    ms = _milestone(db_session, deal.id, settlement.id)
    assert ms.release_status == MS.LOCKED
    assert ms.currency == "USD"

    mark_condition_met(db_session, ms.id, evidence="B/L no. MSCU1234567", actor="ops@test.com")

    with pytest.raises(ConflictError) as exc:
        release_milestone(db_session, ms.id, released_by="finance@test.com")
    assert exc.value.code == "SETTLEMENT_NOT_VALIDATED"

    run_compliance_screen(db_session, deal.id, performed_by="compliance@test.com")
    revalidate_settlement(db_session, settlement.id, validated_by="finance@test.com")

    released = release_milestone(db_session, ms.id, released_by="finance@test.com")
    assert released.release_status == MS.RELEASED
    assert released.released_by == "finance@test.com"
    assert released.released_at is not None
    assert released.condition_evidence == "B/L no. MSCU1234567"


def test_release_without_settlement_or_human(db_session):
    deal = _deal(db_session)
    ms = _milestone(db_session, deal.id)
    mark_condition_met(db_session, ms.id, evidence="Inspection certificate", actor="ops@test.com")

    with pytest.raises(ConflictError) as exc:
        release_milestone(db_session, ms.id, released_by="finance@test.com")
    assert exc.value.code == "SETTLEMENT_REQUIRED"

    with pytest.raises(ValidationError) as exc:
        release_milestone(db_session, ms.id, released_by=" ")
    assert exc.value.code == "RELEASER_REQUIRED"


def test_release_from_locked_is_a_conflict(db_session):
    deal = _deal(db_session)
    settlement = _settlement(db_session, deal.id)
    run_compliance_screen(db_session, deal.id, performed_by="compliance@test.com")
    revalidate_settlement(db_session, settlement.id, validated_by="finance@test.com")
    ms = _milestone(db_session, deal.id, settlement.id)

    with pytest.raises(ConflictError) as exc:
        release_milestone(db_session, ms.id, released_by="finance@test.com")
    assert exc.value.code == "INVALID_MILESTONE_TRANSITION"


def test_condition_met_needs_evidence(db_session):
    deal = _deal(db_session)
    ms = _milestone(db_session, deal.id)

    with pytest.raises(ValidationError) as exc:
        mark_condition_met(db_session, ms.id, evidence="", actor="ops@test.com")
    assert exc.value.code == "EVIDENCE_REQUIRED"


def test_dispute_and_relock_clears_evidence(db_session):
    deal = _deal(db_session)
    ms = _milestone(db_session, deal.id)
    mark_condition_met(db_session, ms.id, evidence="Inspection certificate", actor="ops@test.com")

    disputed = dispute_milestone(db_session, ms.id, reason="Quality below spec", actor="ops@test.com")
    assert disputed.release_status == MS.DISPUTED
    assert disputed.dispute_reason == "Quality below spec"

    with pytest.raises(ConflictError):
        mark_condition_met(db_session, ms.id, evidence="again", actor="ops@test.com")

    relocked = relock_milestone(db_session, ms.id, actor="finance@test.com")
    assert relocked.release_status == MS.LOCKED
    assert relocked.condition_evidence is None

    with pytest.raises(ConflictError):
        relock_milestone(db_session, ms.id, actor="finance@test.com")


def test_milestone_validation(db_session):
    deal = _deal(db_session)
    other = _deal(db_session)
    foreign = _settlement(db_session, other.id)

    with pytest.raises(ValidationError) as exc:
        create_milestone(
            db_session, deal.id, milestone_name="x", amount=0, currency="USD", release_condition="y"
        )
    assert exc.value.code == "INVALID_AMOUNT"

    with pytest.raises(ValidationError) as exc:
        _milestone(db_session, deal.id, foreign.id)
    assert exc.value.code == "SETTLEMENT_DEAL_MISMATCH"

    with pytest.raises(NotFoundError):
        _milestone(db_session, 98765)

    assert list_milestones(db_session, deal.id) == []


def test_object_hash_ignores_key_order():
    assert object_hash({"a": 1, "b": [1, 2]}) == object_hash({"b": [1, 2], "a": 1})
    assert object_hash({"a": 1}) != object_hash({"a": 2})


def test_anchoring_is_idempotent_per_chain(db_session):
    deal = _deal(db_session)
    data = {"deal_number": deal.deal_number, "amount": 50_000}

    first = anchor_proof(
        db_session,
        object_type="settlement",
        object_id="17",
        object_data=data,
        created_by="ops@test.com",
        deal_id=deal.id,
        chains=["xrpl", "stellar"],
    )
    again = anchor_proof(
        db_session,
        object_type="SETTLEMENT",
        object_id="17",
        object_data=dict(reversed(list(data.items()))),
        created_by="ops@test.com",
        deal_id=deal.id,
        chains=["XRPL"],
    )

    assert [a.anchor_chain for a in first] == ["XRPL", "STELLAR"]
    assert {a.status for a in first} == {models.AnchorStatus.PENDING}
    assert again[0].id == first[0].id
    assert len(list_anchors(db_session, deal_id=deal.id)) == 2
    assert len(list_anchors(db_session, object_id="17")) == 2


def test_anchor_validation():
    with pytest.raises(ValidationError) as exc:
        anchor_proof(
            None, object_type="DOC", object_id="1", object_data={"x": 1}, created_by="t", chains=["ETH"]
        )
    assert exc.value.code == "INVALID_ANCHOR_CHAIN"

    with pytest.raises(ValidationError) as exc:
        anchor_proof(None, object_type="DOC", object_id="1", object_data={}, created_by="t")
    assert exc.value.code == "ANCHOR_FIELDS_REQUIRED"

    with pytest.raises(ValidationError) as exc:
        list_anchors(None)
    assert exc.value.code == "ANCHOR_FILTER_REQUIRED"
