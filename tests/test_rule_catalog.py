import pytest

from backoffice import models
from backoffice.core.errors import ConflictError, NotFoundError, ValidationError
from backoffice.services.compliance_screening import run_compliance_screen
from backoffice.services.deal_intake import DealIntake, create_deal
from backoffice.services.rule_catalog import (
    DEFAULT_RULES,
    create_rule_version,
    list_rules,
    load_active_rules,
    retire_rule,
    seed_rule_catalog,
    validate_rule_definition,
)


def test_seed_is_idempotent(db_session):
    assert seed_rule_catalog(db_session) == len(DEFAULT_RULES)
    db_session.commit()
    assert seed_rule_catalog(db_session) == 0

    codes = [r.rule_code for r in load_active_rules(db_session)]
    assert codes == sorted(codes)
    assert len(codes) == len(set(codes)) == len(DEFAULT_RULES)


def test_default_rule_codes_are_unique():
    codes = [r.rule_code for r in DEFAULT_RULES]
    assert len(codes) == len(set(codes))
    assert "SANCTIONS-DEST-IR" in codes
    assert {"COMMODITY-UNLISTED", "DOCS-TRADE-DOCUMENTS", "INCOTERM-FOB", "INCOTERM-CIF"} <= set(codes)


@pytest.mark.parametrize("rule", DEFAULT_RULES, ids=lambda r: r.rule_code)
def test_default_rules_pass_validation(rule):
    validate_rule_definition(
        scope=rule.scope,
        match_value=rule.match_value,
        min_value_usd=rule.min_value_usd,
        max_value_usd=rule.max_value_usd,
        message=rule.message,
        recommendation=rule.recommendation,
    )


def test_rejected_template_never_reaches_screening(db_session):
    with pytest.raises(ValidationError) as exc:
        create_rule_version(
            db_session,
            rule_code="VALUE-NOTE",
            flag_type=models.FlagType.VALUE,
            scope=models.RuleScope.any,
            severity=models.FlagSeverity.LOW,
            message="Deal {deal_value} noted",
            created_by="compliance@test.com",
        )
    assert exc.value.details["unknown_fields"] == ["deal_value"]

    db_session.rollback()
    seed_rule_catalog(db_session)
    deal = create_deal(
        db_session,
        DealIntake(counterparty_name="Paris Grains SA", commodity="wheat", destination_country="FR"),
    )
    outcome = run_compliance_screen(db_session, deal.id, performed_by="compliance@test.com")
    assert outcome.deal.last_screen_status == models.ScreenStatus.completed
    assert list_rules(db_session, rule_code="VALUE-NOTE") == []


def test_unlisted_commodity_scope_needs_no_match_value(db_session):
    rule = create_rule_version(
        db_session,
        rule_code="commodity-unregistered",
        flag_type=models.FlagType.COMMODITY,
        scope=models.RuleScope.unlisted_commodity,
        severity=models.FlagSeverity.HIGH,
        blocks_execution=True,
        message="Commodity {commodity} ({commodity_category}) is not registered.",
        created_by="compliance@test.com",
    )
    assert rule.rule_code == "COMMODITY-UNREGISTERED"
    assert rule.match_value is None


def test_new_version_retires_previous(db_session):
    seed_rule_catalog(db_session)

    rule = create_rule_version(
        db_session,
        rule_code="aml-value-50k",
        flag_type=models.FlagType.VALUE,
        scope=models.RuleScope.value_threshold,
        min_value_usd=40_000,
        max_value_usd=100_000,
        severity=models.FlagSeverity.MEDIUM,
        message="Deal value {deal_value_usd} needs enhanced due diligence.",
        created_by="compliance@test.com",
    )
    db_session.commit()

    history = list_rules(db_session, active_only=False, rule_code="AML-VALUE-50K")
    assert [r.version for r in history] == [1, 2]
    assert history[0].active is False
    assert history[0].superseded_by_id == rule.id
    assert history[1].active is True
    assert [r.id for r in list_rules(db_session, rule_code="AML-VALUE-50K")] == [rule.id]


def test_retired_code_is_not_reseeded(db_session):
    seed_rule_catalog(db_session)
    rule = list_rules(db_session, rule_code="INCOTERM-EXW")[0]

    retire_rule(db_session, rule.id, retired_by="compliance@test.com")
    db_session.commit()

    assert seed_rule_catalog(db_session) == 0
    assert list_rules(db_session, rule_code="INCOTERM-EXW") == []

    with pytest.raises(ConflictError) as exc:
        retire_rule(db_session, rule.id, retired_by="compliance@test.com")
    assert exc.value.code == "RULE_ALREADY_RETIRED"

    with pytest.raises(NotFoundError):
        retire_rule(db_session, 555555, retired_by="compliance@test.com")


@pytest.mark.parametrize(
    "kwargs, code",
    [
        (dict(scope=models.RuleScope.destination_country, match_value="IRN"), "RULE_INVALID_COUNTRY"),
        (dict(scope=models.RuleScope.commodity, match_value=" "), "RULE_MATCH_REQUIRED"),
        (dict(scope=models.RuleScope.counterparty, match_value="(unclosed"), "RULE_INVALID_PATTERN"),
        (dict(scope=models.RuleScope.value_threshold), "RULE_THRESHOLD_REQUIRED"),
        (
            dict(scope=models.RuleScope.value_threshold, min_value_usd=10.0, max_value_usd=10.0),
            "RULE_THRESHOLD_INVALID",
        ),
        (dict(scope=models.RuleScope.any, message=""), "RULE_MESSAGE_REQUIRED"),
        (dict(scope=models.RuleScope.any, rule_code=" "), "RULE_CODE_REQUIRED"),
        (dict(scope=models.RuleScope.any, message="Deal {deal_value} noted"), "RULE_TEMPLATE_INVALID"),
        (dict(scope=models.RuleScope.any, recommendation="See {}"), "RULE_TEMPLATE_INVALID"),
        (dict(scope=models.RuleScope.any, message="Value {deal_value_usd:,.2f}"), "RULE_TEMPLATE_INVALID"),
        (dict(scope=models.RuleScope.any, message="Broken {commodity"), "RULE_TEMPLATE_INVALID"),
        (dict(scope=models.RuleScope.any, message="Upper {commodity.upper}"), "RULE_TEMPLATE_INVALID"),
    ],
)
def test_rule_validation(db_session, kwargs, code):
    fields = dict(
        rule_code="TEST-RULE",
        flag_type=models.FlagType.DOCS,
        severity=models.FlagSeverity.LOW,
        message="Check documents.",
        created_by="compliance@test.com",
    )
    fields.update(kwargs)

    with pytest.raises(ValidationError) as exc:
        create_rule_version(db_session, **fields)
    assert exc.value.code == code
