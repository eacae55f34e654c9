"""HTTP tests for the campaign routes: event append, reads, search, audit."""
import pytest
from werkzeug.security import generate_password_hash

from app.replay import create_app
from app.replay.constants import ECHA_GATE_MESSAGE
from app.replay.db import session_scope
from app.replay.ids import generate_campaign_id
from app.replay.models import Base, Permission, Role, User


def _seed_all_permissions(s):
    perm_keys = [
        ("campaigns.view", "Campaigns: view"),
        ("events.create", "Events: record"),
        ("audit.view", "Audit log: view"),
    ]
    perms = []
    for key, name in perm_keys:
        p = Permission(key=key, name=name)
        s.add(p)
        perms.append(p)
    return perms


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = _seed_all_permissions(s)
        r = Role(key="admin", name="Administrator")
        for p in perms:
            r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])

    c = app.test_client()
    c.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    return c


def _post_event(client, event_type, event_data, campaign_id=None):
    body = {"eventType": event_type, "eventData": event_data}
    if campaign_id:
        body["campaignId"] = campaign_id
    return client.post("/api/events", json=body)


def _create(client, code="REPLAY-001", material="PCR", description=None):
    data = {"legoCampaignCode": code, "materialType": material}
    if description:
        data["description"] = description
    r = _post_event(client, "CampaignCreated", data)
    assert r.status_code == 201, r.json
    return r.json["campaignId"]


TRANSFER = {"trackingRef": "TRK-RGE-1", "carrier": "DHL", "shipDate": "2026-01-20", "receivedWeightKg": 640}


def test_create_campaign(client):
    r = _post_event(client, "CampaignCreated", {"legoCampaignCode": "REPLAY-001", "materialType": "PCR"})
    assert r.status_code == 201
    cid = r.json["campaignId"]
    assert cid.startswith("cmp_")
    assert r.json["event"]["event_type"] == "CampaignCreated"
    assert r.json["event"]["user_id"] == "admin@example.com"
    assert r.json["event"]["stream_position"] == 1

    r = client.get(f"/api/campaigns/{cid}")
    assert r.status_code == 200
    campaign = r.json["campaign"]
    assert campaign["status"] == "created"
    assert campaign["echa_approved"] is False
    assert campaign["lego_campaign_code"] == "REPLAY-001"
    assert campaign["total_steps"] == 12


def test_transfer_denied_without_echa(client):
    cid = _create(client)
    r = _post_event(client, "TransferToRGERecorded", TRANSFER, cid)
    assert r.status_code == 403
    assert r.json["error"] == ECHA_GATE_MESSAGE
    assert r.json["error_type"] == "ComplianceDeniedError"

    assert client.get(f"/api/campaigns/{cid}").json["campaign"]["status"] == "created"
    events = client.get(f"/api/campaigns/{cid}/events").json["events"]
    assert [e["event_type"] for e in events] == ["CampaignCreated"]


def test_transfer_allowed_after_echa(client):
    cid = _create(client)
    r = _post_event(client, "ECHAApprovalRecorded", {"approvedBy": "Jane", "approvalDate": "2026-01-18"}, cid)
    assert r.status_code == 201
    r = _post_event(client, "TransferToRGERecorded", TRANSFER, cid)
    assert r.status_code == 201
    campaign = client.get(f"/api/campaigns/{cid}").json["campaign"]
    assert campaign["echa_approved"] is True
    assert campaign["status"] == "transferred_to_rge"
    assert campaign["current_weight_kg"] == 640


def test_unknown_campaign_is_404_even_for_gated_events(client):
    r = _post_event(client, "TransferToRGERecorded", TRANSFER, generate_campaign_id())
    assert r.status_code == 404
    assert r.json["error"] == "Campaign not found"


def test_validation_errors(client):
    r = _post_event(client, "CampaignCreated", {"legoCampaignCode": "x", "materialType": "ABS"})
    assert r.status_code == 400
    fields = {d["field"] for d in r.json["details"]}
    assert fields == {"legoCampaignCode", "materialType"}

    r = client.post("/api/events", json={"eventType": "Nope", "eventData": {}})
    assert r.status_code == 400

    r = _post_event(client, "GranulationCompleted", {"ticketNumber": "G-1", "startingWeightKg": 10, "outputWeightKg": 9})
    assert r.status_code == 400  # campaignId required

    cid = _create(client)
    r = _post_event(client, "GranulationCompleted", {"ticketNumber": "G-1", "startingWeightKg": -1, "outputWeightKg": 9}, cid)
    assert r.status_code == 400
    assert r.json["details"][0]["field"] == "startingWeightKg"


def test_duplicate_code_rejected(client):
    _create(client)
    r = _post_event(client, "CampaignCreated", {"legoCampaignCode": "REPLAY-001", "materialType": "PI"})
    assert r.status_code == 400


def test_correction_requires_existing_target(client):
    cid = _create(client)
    other = _create(client, code="REPLAY-002")
    created_event_id = client.get(f"/api/campaigns/{other}/events").json["events"][0]["id"]
    r = _post_event(
        client,
        "EventCorrected",
        {
            "correctsEventId": created_event_id,
            "correctsEventType": "CampaignCreated",
            "reason": "wrong stream",
            "changes": {"description": {"was": None, "now": "x"}},
        },
        cid,
    )
    assert r.status_code == 400


def test_list_filters(client):
    a = _create(client, code="REPLAY-001", material="PCR")
    _create(client, code="OTHER-002", material="PI")
    _post_event(client, "ECHAApprovalRecorded", {"approvedBy": "Jane", "approvalDate": "2026-01-18"}, a)

    r = client.get("/api/campaigns?material_type=PI")
    assert [c["lego_campaign_code"] for c in r.json["campaigns"]] == ["OTHER-002"]
    r = client.get("/api/campaigns?echa_approved=true")
    assert [c["id"] for c in r.json["campaigns"]] == [a]
    r = client.get("/api/campaigns?code_prefix=REP")
    assert r.json["total"] == 1
    r = client.get("/api/campaigns?status=bogus")
    assert r.status_code == 400


def test_search_and_suggestions(client):
    cid = _create(client, code="REPLAY-001", description="Blue bricks from Billund")
    _post_event(
        client,
        "InboundShipmentRecorded",
        {
            "grossWeightKg": 1100,
            "netWeightKg": 1000,
            "carrier": "DHL",
            "trackingRef": "1Z999AA10123456784",
            "shipDate": "2026-01-05",
            "arrivalDate": "2026-01-09",
        },
        cid,
    )

    r = client.get("/api/search?q=REPLAY")
    assert r.json["results"][0]["campaign_id"] == cid
    assert r.json["results"][0]["match_type"] == "lego_code"

    r = client.get("/api/search?q=1Z999")
    assert r.json["results"][0]["match_type"] == "tracking"

    r = client.get("/api/search?q=billund")
    assert r.json["results"][0]["match_type"] == "description"

    r = client.get("/api/search?q=R")
    assert r.json["results"] == []

    r = client.get("/api/search/suggestions")
    assert [sg["id"] for sg in r.json["suggestions"]] == [cid]


def test_events_for_unknown_campaign(client):
    r = client.get(f"/api/campaigns/{generate_campaign_id()}/events")
    assert r.status_code == 404


def test_audit_log(client):
    cid = _create(client)
    r = _post_event(
        client,
        "InboundShipmentRecorded",
        {
            "grossWeightKg": 1100,
            "netWeightKg": 1000,
            "carrier": "DHL",
            "trackingRef": "TRK-1",
            "shipDate": "2026-01-05",
            "arrivalDate": "2026-01-09",
        },
        cid,
    )
    inbound_id = r.json["event"]["id"]
    r = _post_event(
        client,
        "EventCorrected",
        {
            "correctsEventId": inbound_id,
            "correctsEventType": "InboundShipmentRecorded",
            "reason": "scale error",
            "changes": {"netWeightKg": {"was": 1000, "now": 1010}},
        },
        cid,
    )
    assert r.status_code == 201
    assert r.json["campaign"]["current_weight_kg"] == 1010
    assert r.json["campaign"]["status"] == "inbound_shipment_recorded"

    r = client.get(f"/api/audit?campaign_id={cid}&include_campaigns=1")
    assert r.status_code == 200
    assert r.json["pagination"]["total"] == 1
    entry = r.json["entries"][0]
    assert entry["campaign_code"] == "REPLAY-001"
    assert entry["corrected_event_id"] == inbound_id
    assert entry["reason"] == "scale error"
    assert entry["user_id"] == "admin@example.com"
    assert r.json["campaigns"] == [{"id": cid, "code": "REPLAY-001"}]

    r = client.get("/api/audit?start_date=2000-01-01&end_date=2000-01-02")
    assert r.json["entries"] == []
    r = client.get("/api/audit?start_date=garbage")
    assert r.status_code == 400


def test_non_finite_weights_rejected(client):
    cid = _create(client)
    r = _post_event(client, "GranulationCompleted", {"ticketNumber": "G-1", "startingWeightKg": "nan", "outputWeightKg": "inf"}, cid)
    assert r.status_code == 400
    assert {d["field"] for d in r.json["details"]} == {"startingWeightKg", "outputWeightKg"}
    assert client.get(f"/api/campaigns/{cid}").json["campaign"]["current_weight_kg"] is None


@pytest.mark.parametrize(
    "field, now",
    [
        ("materialType", "XYZ"),
        ("legoCampaignCode", "x"),
        ("netWeightKg", "nan"),
        ("netWeightKg", -5),
    ],
)
def test_correction_values_are_validated(client, field, now):
    cid = _create(client)
    created_event_id = client.get(f"/api/campaigns/{cid}/events").json["events"][0]["id"]
    r = _post_event(
        client,
        "EventCorrected",
        {
            "correctsEventId": created_event_id,
            "correctsEventType": "CampaignCreated",
            "reason": "fix",
            "changes": {field: {"was": None, "now": now}},
        },
        cid,
    )
    assert r.status_code == 400
    assert r.json["details"][0]["field"] == f"changes.{field}.now"
    campaign = client.get(f"/api/campaigns/{cid}").json["campaign"]
    assert campaign["material_type"] == "PCR"
    assert campaign["lego_campaign_code"] == "REPLAY-001"


def test_material_type_correction_is_normalized(client):
    cid = _create(client)
    created_event_id = client.get(f"/api/campaigns/{cid}/events").json["events"][0]["id"]
    r = _post_event(
        client,
        "EventCorrected",
        {
            "correctsEventId": created_event_id,
            "correctsEventType": "CampaignCreated",
            "reason": "was post-industrial",
            "changes": {"materialType": {"was": "PCR", "now": "pi"}},
        },
        cid,
    )
    assert r.status_code == 201
    assert r.json["campaign"]["material_type"] == "PI"
