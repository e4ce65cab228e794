from backoffice import models
from backoffice.models import RoleName
from backoffice.services.rule_catalog import seed_rule_catalog

SANCTIONED = {
    "counterparty_name": "Caspian Trading LLC",
    "commodity": "Wheat",
    "deal_value_usd": 20000,
    "destination_country": "ir",
    "incoterm": "fob",
}


def _broken_rule(db):
    db.add(
        models.ComplianceRule(
            rule_code="BROKEN-THRESHOLD",
            version=1,
            catalog_version="test",
            flag_type=models.FlagType.VALUE,
            scope=models.RuleScope.value_threshold,
            severity=models.FlagSeverity.LOW,
            blocks_execution=False,
            requires_human_review=True,
            message="never rendered",
            active=True,
            created_by="tests",
        )
    )
    db.commit()


def test_create_deal_screens_and_holds(client, as_role, db_session):
    seed_rule_catalog(db_session)
    db_session.commit()
    as_role(RoleName.operations)

    resp = client.post("/api/deals", json=SANCTIONED)

    assert resp.status_code == 201
    body = resp.json()
    assert body["deal"]["deal_number"].startswith("DEAL-")
    assert body["deal"]["destination_country"] == "IR"
    assert body["deal"]["status"] == "on_hold"
    assert body["deal"]["compliance_status"] == "flagged"
    assert body["blocked"] is True
    assert body["screening"]["status"] == "completed"
    assert body["flags"][0]["severity"] == "CRITICAL"

    fetched = client.get(f"/api/deals/{body['deal']['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["critical_flags_count"] == 1

    audit = db_session.query(models.AuditLog).filter_by(action="deal.created").all()
    assert len(audit) == 1


def test_clean_deal_waits_only_on_advisory_flags(client, as_role, db_session):
    seed_rule_catalog(db_session)
    db_session.commit()
    as_role(RoleName.compliance)

    resp = client.post(
        "/api/deals",
        json={"counterparty_name": "Nordic Metals AB", "commodity": "copper", "deal_value_usd": 1000},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["blocked"] is False
    assert body["deal"]["status"] == "inquiry"
    assert body["deal"]["compliance_status"] == "flagged"
    assert body["deal"]["last_screen_status"] == "completed"
    assert [f["flag_type"] for f in body["flags"]] == ["DOCS"]
    assert body["flags"][0]["blocks_execution"] is False


def test_unlisted_commodity_holds_the_deal(client, as_role, db_session):
    seed_rule_catalog(db_session)
    db_session.commit()
    as_role(RoleName.operations)

    resp = client.post(
        "/api/deals",
        json={"counterparty_name": "Acme", "commodity": "zzz-unlisted", "destination_country": "FR"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["blocked"] is True
    assert body["deal"]["status"] == "on_hold"
    assert body["flags"][0]["flag_type"] == "COMMODITY"


def test_screening_outage_keeps_deal_and_rescreen_returns_503(client, as_role, db_session):
    _broken_rule(db_session)
    as_role(RoleName.operations)

    created = client.post("/api/deals", json={"counterparty_name": "Acme", "commodity": "copper"})

    assert created.status_code == 201
    body = created.json()
    assert body["screening"]["status"] == "unavailable"
    assert body["screening"]["code"] == "SCREENING_EVALUATOR_ERROR"
    assert body["deal"]["status"] == "on_hold"
    assert body["deal"]["last_screen_status"] == "failed"
    assert body["blocked"] is True

    rescreen = client.post(f"/api/deals/{body['deal']['id']}/screen")
    assert rescreen.status_code == 503
    assert rescreen.json()["detail"]["code"] == "SCREENING_UNAVAILABLE"


def test_validation_and_not_found_shapes(client, as_role):
    as_role(RoleName.operations)

    bad = client.post("/api/deals", json={"counterparty_name": "Acme", "commodity": "copper", "currency": "usdollar"})
    assert bad.status_code == 400
    assert bad.json()["detail"]["code"] == "INVALID_CURRENCY"
    assert "message" in bad.json()["detail"]

    missing = client.get("/api/deals/424242")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "DEAL_NOT_FOUND"


def test_resolve_flag_over_http(client, as_role, db_session):
    seed_rule_catalog(db_session)
    db_session.commit()
    as_role(RoleName.operations)
    deal = client.post("/api/deals", json=SANCTIONED).json()
    flag_id = deal["flags"][0]["id"]

    as_role(RoleName.compliance)
    resp = client.post(f"/api/compliance/flags/{flag_id}/resolve", json={"notes": "OFAC licence on file"})
    assert resp.status_code == 200
    assert resp.json()["flag"]["resolved"] is True

    again = client.post(f"/api/compliance/flags/{flag_id}/resolve", json={"notes": "again"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "FLAG_ALREADY_RESOLVED"

    listing = client.get("/api/compliance/flags", params={"deal_id": deal["deal"]["id"]})
    assert listing.status_code == 200
    assert listing.json()["stats"]["critical_unresolved"] == 0
