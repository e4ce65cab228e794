from backoffice.models import RoleName

PREVIEW = {"commodity": "copper", "deal_value_usd": 20000, "origin_country": "DE", "destination_country": "DE"}


def test_unauthenticated_requests_are_rejected(client):
    assert client.get("/api/deals").status_code == 401


def test_auditor_reads_but_cannot_write(client, as_role):
    as_role(RoleName.auditor)

    assert client.get("/api/deals").status_code == 200
    assert client.get("/api/compliance/rules").status_code == 200

    resp = client.post("/api/deals", json={"counterparty_name": "Acme", "commodity": "copper"})
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Auditor is read-only"


def test_auditor_may_preview_funding_structure(client, as_role):
    as_role(RoleName.auditor)

    resp = client.post("/api/funding/structure/preview", json=PREVIEW)

    assert resp.status_code == 200
    term_sheet = resp.json()["term_sheet"]
    assert term_sheet["readiness_score"] == 50
    assert term_sheet["primary_instrument"] == "PREPAY"


def test_admin_passes_every_role_check(client, as_role):
    as_role(RoleName.admin)

    assert client.post("/api/deals", json={"counterparty_name": "Acme", "commodity": "copper"}).status_code == 201
    assert client.get("/api/compliance/rules").status_code == 200


def test_only_compliance_resolves_flags(client, as_role):
    as_role(RoleName.finance)
    assert client.post("/api/compliance/flags/1/resolve", json={"notes": "ok"}).status_code == 403

    as_role(RoleName.compliance)
    assert client.post("/api/compliance/flags/1/resolve", json={"notes": "ok"}).status_code == 404


def test_preview_needs_a_subject(client, as_role):
    as_role(RoleName.finance)

    resp = client.post("/api/funding/structure/preview", json={})

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "FUNDING_SUBJECT_REQUIRED"
