import pytest

from backoffice import models
from backoffice.core.errors import ConflictError, DependencyError, NotFoundError, ValidationError
from backoffice.database import SessionLocal
from backoffice.services.compliance_reconciler import flag_stats, list_actions, list_flags, resolve_flag
from backoffice.services.compliance_screening import run_compliance_screen
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.rule_catalog import RuleDefinition, create_rule_version, seed_rule_catalog


def _rule(db, code, *, severity, blocks, match="IR"):
    return create_rule_version(
        db,
        rule_code=code,
        flag_type=models.FlagType.SANCTIONS,
        scope=models.RuleScope.destination_country,
        match_value=match,
        severity=severity,
        blocks_execution=blocks,
        message="Destination {destination_country} is restricted.",
        created_by="tests",
    )


def _screened_deal(db):
    db.commit()
    deal = create_deal(
        db,
        DealIntake(
            counterparty_name="Caspian Trading LLC",
            commodity="wheat",
            deal_value_usd=5_000.0,
            destination_country="IR",
        ),
    )
    outcome = run_compliance_screen(db, deal.id, performed_by="compliance@test.com")
    return outcome


def test_resolving_only_blocking_flag_requalifies_deal(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    outcome = _screened_deal(db_session)

    assert outcome.deal.status == models.DealStatus.on_hold
    assert outcome.deal.compliance_status == models.ComplianceStatus.flagged
    flag = outcome.created_flags[0]

    result = resolve_flag(
        db_session, flag.id, resolved_by="compliance@test.com", notes="OFAC licence GL-8 on file"
    )

    assert result.flag.resolved is True
    assert result.flag.resolved_by == "compliance@test.com"
    assert result.deal_status_after == models.DealStatus.qualified
    assert result.compliance_status_after == models.ComplianceStatus.cleared

    deal = db_session.get(models.Deal, outcome.deal.id)
    assert deal.compliance_cleared_by == "compliance@test.com"
    assert deal.critical_flags_count == 0


def test_second_resolution_is_a_conflict(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    flag = _screened_deal(db_session).created_flags[0]

    resolve_flag(db_session, flag.id, resolved_by="a@test.com", notes="cleared")
    first_resolved_at = db_session.get(models.ComplianceFlag, flag.id).resolved_at
    assert first_resolved_at is not None

    with pytest.raises(ConflictError) as exc:
        resolve_flag(db_session, flag.id, resolved_by="b@test.com", notes="cleared again")

    assert exc.value.code == "FLAG_ALREADY_RESOLVED"
    db_session.expire_all()
    assert db_session.get(models.ComplianceFlag, flag.id).resolved_by == "a@test.com"
    assert db_session.get(models.ComplianceFlag, flag.id).resolved_at == first_resolved_at


def test_non_blocking_remainder_keeps_deal_on_hold_but_flagged(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    _rule(db_session, "JURISDICTION-TEST-IR", severity=models.FlagSeverity.MEDIUM, blocks=False)
    outcome = _screened_deal(db_session)
    by_code = {f.rule.rule_code: f for f in outcome.created_flags}

    result = resolve_flag(
        db_session, by_code["SANCTIONS-TEST-IR"].id, resolved_by="c@test.com", notes="licence on file"
    )
    assert result.deal_status_after == models.DealStatus.on_hold
    assert result.compliance_status_after == models.ComplianceStatus.flagged

    result = resolve_flag(
        db_session, by_code["JURISDICTION-TEST-IR"].id, resolved_by="c@test.com", notes="end user ok"
    )
    assert result.deal_status_after == models.DealStatus.qualified
    assert result.compliance_status_after == models.ComplianceStatus.cleared


def test_resolution_requires_notes_and_actor(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    flag = _screened_deal(db_session).created_flags[0]

    with pytest.raises(ValidationError) as exc:
        resolve_flag(db_session, flag.id, resolved_by="c@test.com", notes="   ")
    assert exc.value.code == "RESOLUTION_NOTES_REQUIRED"

    with pytest.raises(ValidationError) as exc:
        resolve_flag(db_session, flag.id, resolved_by="", notes="ok")
    assert exc.value.code == "RESOLVED_BY_REQUIRED"


def test_unknown_flag_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        resolve_flag(db_session, 9999, resolved_by="c@test.com", notes="ok")


def test_flag_listing_orders_by_severity_and_counts(db_session):
    _rule(db_session, "JURISDICTION-TEST-IR", severity=models.FlagSeverity.MEDIUM, blocks=False)
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    outcome = _screened_deal(db_session)

    flags = list_flags(db_session, deal_id=outcome.deal.id)
    assert [f.severity for f in flags] == [models.FlagSeverity.CRITICAL, models.FlagSeverity.MEDIUM]

    stats = flag_stats(db_session, outcome.deal.id)
    assert (stats.unresolved, stats.blocking_unresolved, stats.critical_unresolved) == (2, 1, 1)
    assert flag_stats(db_session).unresolved == 2


def test_precious_metals_to_sanctioned_destination_round_trip(db_session):
    seed_rule_catalog(db_session)
    db_session.commit()
    deal = create_deal(
        db_session,
        DealIntake(
            counterparty_name="Caspian Bullion LLC",
            commodity="precious metals",
            deal_value_usd=5_000.0,
            destination_country="IR",
        ),
    )
    outcome = run_compliance_screen(db_session, deal.id, performed_by="compliance@test.com")

    assert outcome.deal.status == models.DealStatus.on_hold
    assert outcome.deal.compliance_status == models.ComplianceStatus.flagged
    critical = [f for f in outcome.created_flags if f.severity == models.FlagSeverity.CRITICAL]
    assert critical and all(f.blocks_execution for f in critical)

    for flag in list_flags(db_session, deal_id=deal.id, resolved=False):
        result = resolve_flag(db_session, flag.id, resolved_by="ops1", notes="cleared via manual KYC")

    assert result.deal_status_after == models.DealStatus.qualified
    assert result.compliance_status_after == models.ComplianceStatus.cleared


def test_failed_rescreen_keeps_deal_pending_after_last_flag_is_resolved(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    outcome = _screened_deal(db_session)
    deal_id = outcome.deal.id
    assert outcome.deal.last_screen_status == models.ScreenStatus.completed

    unbounded = RuleDefinition(
        rule_code="VALUE-UNBOUNDED",
        flag_type=models.FlagType.VALUE,
        scope=models.RuleScope.value_threshold,
        severity=models.FlagSeverity.LOW,
        message="never rendered",
    )
    with pytest.raises(DependencyError):
        run_compliance_screen(db_session, deal_id, performed_by="compliance@test.com", rules=[unbounded])

    db_session.expire_all()
    assert db_session.get(models.Deal, deal_id).last_screen_status == models.ScreenStatus.failed

    result = resolve_flag(db_session, outcome.created_flags[0].id, resolved_by="ops1", notes="manual kyc")

    assert result.compliance_status_after == models.ComplianceStatus.pending
    assert result.deal_status_after == models.DealStatus.on_hold
    deal = db_session.get(models.Deal, deal_id)
    assert deal.compliance_cleared_at is None
    assert deal.critical_flags_count == 0

    rescreen = run_compliance_screen(db_session, deal_id, performed_by="compliance@test.com")

    assert rescreen.created_flags == []
    assert rescreen.deal.compliance_status == models.ComplianceStatus.cleared
    assert rescreen.deal.status == models.DealStatus.qualified


def test_stale_session_cannot_resolve_a_flag_twice(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    flag = _screened_deal(db_session).created_flags[0]
    assert flag.resolved is False

    other = SessionLocal()
    try:
        resolve_flag(other, flag.id, resolved_by="a@test.com", notes="licence on file")
    finally:
        other.close()

    # db_session still sees the flag as open, so only the guarded UPDATE can refuse it.
    with pytest.raises(ConflictError) as exc:
        resolve_flag(db_session, flag.id, resolved_by="b@test.com", notes="licence on file")
    assert exc.value.code == "FLAG_ALREADY_RESOLVED"

    db_session.expire_all()
    assert db_session.get(models.ComplianceFlag, flag.id).resolved_by == "a@test.com"
    actions = list_actions(db_session, deal_id=flag.deal_id)
    assert [a.action_type for a in actions].count(models.ComplianceActionType.FLAG_RESOLVED) == 1


def test_two_sessions_resolving_different_flags_clear_the_deal(db_session):
    _rule(db_session, "SANCTIONS-TEST-IR", severity=models.FlagSeverity.CRITICAL, blocks=True)
    _rule(db_session, "JURISDICTION-TEST-IR", severity=models.FlagSeverity.MEDIUM, blocks=False)
    outcome = _screened_deal(db_session)
    deal_id = outcome.deal.id
    first_id, second_id = (f.id for f in outcome.created_flags)

    first = SessionLocal()
    second = SessionLocal()
    try:
        first.get(models.ComplianceFlag, first_id)
        second.get(models.ComplianceFlag, second_id)
        second.get(models.Deal, deal_id)

        resolve_flag(first, first_id, resolved_by="a@test.com", notes="licence on file")
        result = resolve_flag(second, second_id, resolved_by="b@test.com", notes="end user ok")
    finally:
        first.close()
        second.close()

    assert result.compliance_status_after == models.ComplianceStatus.cleared
    assert result.deal_status_after == models.DealStatus.qualified

    db_session.expire_all()
    deal = db_session.get(models.Deal, deal_id)
    assert deal.compliance_status == models.ComplianceStatus.cleared
    assert deal.status == models.DealStatus.qualified
    assert flag_stats(db_session, deal_id).unresolved == 0
