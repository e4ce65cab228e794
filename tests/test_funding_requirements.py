import pytest

from backoffice import models
from backoffice.core.errors import ConflictError, ValidationError
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.funding_requirements import (
    FundingAttributes,
    ReadinessWeights,
    add_requirement,
    analyze_funding,
    compute_readiness_score,
    list_requirements,
    persist_requirements,
    readiness_score_for,
    update_requirement_status,
)

RS = models.RequirementStatus
RT = models.RequirementType


def _deal(db, **overrides):
    intake = dict(
        counterparty_name="Rio Grains SA",
        commodity="soybeans",
        deal_value_usd=250_000.0,
        origin_country="BR",
        destination_country="NL",
        incoterm="CIF",
    )
    intake.update(overrides)
    return create_deal(db, DealIntake(**intake))


def test_score_is_100_minus_penalties_floored_at_zero():
    weights = ReadinessWeights(critical_penalty=20, optional_penalty=10, version="t")

    assert readiness_score_for([], weights) == 100
    assert readiness_score_for([(True, RS.PENDING), (False, RS.SUBMITTED)], weights) == 70
    assert readiness_score_for([(True, RS.APPROVED), (False, RS.WAIVED)], weights) == 100
    assert readiness_score_for([(True, RS.REJECTED)] * 6, weights) == 0


def test_small_domestic_deal_needs_only_the_basics():
    sheet = analyze_funding(
        FundingAttributes(
            deal_value_usd=20_000.0,
            commodity="Copper",
            origin_country="DE",
            destination_country="DE",
            incoterm="FCA",
        )
    )

    assert [r.requirement_type for r in sheet.requirements] == [RT.KYC, RT.KYB, RT.POF]
    pof = sheet.requirements[2]
    assert pof.is_critical is False
    assert sheet.readiness_score == 100 - 20 - 20 - 10
    assert sheet.primary_instrument == models.InstrumentType.PREPAY
    assert sheet.fallback_instrument == models.InstrumentType.ESCROW
    assert sheet.recommended_structure["human_approval_required"] is True
    assert sheet.risk_flags == []
    assert sheet.weights_version == "readiness.v1"


def test_large_cross_border_cif_deal():
    sheet = analyze_funding(
        FundingAttributes(
            deal_value_usd=2_000_000.0,
            commodity="soybeans",
            origin_country="BR",
            destination_country="CN",
            incoterm="CIF",
        )
    )

    types = [r.requirement_type for r in sheet.requirements]
    assert RT.BANK_LETTER in types
    assert RT.FIN_STATEMENTS in types
    assert RT.UCC in types
    insurance = next(r for r in sheet.requirements if r.requirement_type == RT.INSURANCE)
    assert insurance.is_critical is True
    assert set(sheet.risk_flags) == {"HIGH_VALUE", "LARGE_TICKET", "CROSS_BORDER"}
    assert sheet.primary_instrument == models.InstrumentType.SBLC
    assert sheet.recommended_structure["applicable_rules"] == "ISP98"


def test_high_risk_jurisdiction_routes_to_escrow():
    sheet = analyze_funding(
        FundingAttributes(
            deal_value_usd=300_000.0,
            commodity="gold",
            origin_country="VE",
            destination_country="AE",
        )
    )

    assert sheet.primary_instrument == models.InstrumentType.ESCROW
    assert sheet.fallback_instrument == models.InstrumentType.LC
    assert "HIGH_RISK_JURISDICTION" in sheet.risk_flags
    assert "RESTRICTED_COMMODITY" in sheet.risk_flags
    critical = sum(r.is_critical for r in sheet.requirements)
    optional = len(sheet.requirements) - critical
    assert sheet.readiness_score == max(0, 100 - 20 * critical - 10 * optional)


def test_negative_value_is_rejected():
    with pytest.raises(ValidationError):
        analyze_funding(FundingAttributes(deal_value_usd=-1.0, commodity="copper"))


def test_persist_is_idempotent(db_session):
    deal = _deal(db_session)
    sheet = analyze_funding(FundingAttributes.from_deal(deal))

    first = persist_requirements(db_session, deal.id, sheet)
    second = persist_requirements(db_session, deal.id, sheet)

    assert first.created == len(sheet.requirements)
    assert second.created == 0
    assert second.skipped == len(sheet.requirements)
    assert first.readiness_score == sheet.readiness_score
    assert len(list_requirements(db_session, deal.id)) == len(sheet.requirements)
    assert db_session.get(models.Deal, deal.id).funding_readiness_score == sheet.readiness_score


def test_score_rises_monotonically_as_requirements_clear(db_session):
    deal = _deal(db_session)
    persist_requirements(db_session, deal.id, analyze_funding(FundingAttributes.from_deal(deal)))

    scores = [compute_readiness_score(db_session, deal.id)]
    for req in list_requirements(db_session, deal.id):
        update_requirement_status(db_session, req.id, RS.SUBMITTED, actor="ops@test.com")
        update_requirement_status(db_session, req.id, RS.UNDER_REVIEW, actor="ops@test.com")
        result = update_requirement_status(db_session, req.id, RS.APPROVED, actor="finance@test.com")
        scores.append(result.readiness_score)

    assert scores == sorted(scores)
    assert scores[-1] == 100


def test_review_decision_stamps_reviewer(db_session):
    deal = _deal(db_session)
    req = add_requirement(db_session, deal.id, requirement_type=RT.OTHER, label="Vessel nomination")
    update_requirement_status(db_session, req.id, RS.SUBMITTED, actor="ops@test.com")
    update_requirement_status(db_session, req.id, RS.UNDER_REVIEW, actor="ops@test.com")

    result = update_requirement_status(
        db_session, req.id, RS.REJECTED, actor="finance@test.com", notes="Vessel over age limit"
    )

    assert result.requirement.status == RS.REJECTED
    assert result.requirement.reviewed_by == "finance@test.com"
    assert result.requirement.reviewed_at is not None
    assert result.readiness_score == 90


def test_invalid_transitions_and_missing_notes(db_session):
    deal = _deal(db_session)
    req = add_requirement(db_session, deal.id, requirement_type=RT.OTHER, label="Vessel nomination")

    with pytest.raises(ConflictError) as exc:
        update_requirement_status(db_session, req.id, RS.APPROVED, actor="finance@test.com")
    assert exc.value.code == "INVALID_REQUIREMENT_TRANSITION"

    with pytest.raises(ValidationError) as exc:
        update_requirement_status(db_session, req.id, RS.WAIVED, actor="finance@test.com")
    assert exc.value.code == "NOTES_REQUIRED"


def test_duplicate_manual_requirement_conflicts(db_session):
    deal = _deal(db_session)
    add_requirement(db_session, deal.id, requirement_type=RT.OTHER, label="Vessel nomination")

    with pytest.raises(ConflictError) as exc:
        add_requirement(db_session, deal.id, requirement_type=RT.OTHER, label="Vessel nomination")
    assert exc.value.code == "REQUIREMENT_EXISTS"
