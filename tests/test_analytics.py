"""Tests for the dashboard aggregates (service level and HTTP)."""
from datetime import datetime

import pytest
from werkzeug.security import generate_password_hash

from app.replay import create_app
from app.replay.db import session_scope
from app.replay.models import Base, Permission, Role, User
from app.replay.modules.campaigns.analytics import (
    get_analytics,
    get_latest_campaign_yields,
    get_overview_metrics,
    get_throughput_by_month,
    get_yield_averages,
)
from app.replay.modules.campaigns.event_store import append_event
from app.replay.modules.campaigns.service import record_campaign_event

USER = "ops@example.com"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _record(s, event_type, data, campaign_id=None):
    return record_campaign_event(s, event_type=event_type, event_data=data, campaign_id=campaign_id, user_id=USER)


def _step(start, out, **extra):
    return {"ticketNumber": "T-1", "startingWeightKg": start, "outputWeightKg": out, **extra}


def _seed(app):
    """A: complete with a corrected inbound weight. B: granulated after A. C: created only."""
    with session_scope(app) as s:
        a = _record(s, "CampaignCreated", {"legoCampaignCode": "REPLAY-A", "materialType": "PCR"}).campaign.id
        inbound = _record(
            s,
            "InboundShipmentRecorded",
            {
                "grossWeightKg": 1100,
                "netWeightKg": 1000,
                "carrier": "DHL",
                "trackingRef": "TRK-1",
                "shipDate": "2026-01-05",
                "arrivalDate": "2026-01-09",
            },
            a,
        ).event
        _record(
            s,
            "EventCorrected",
            {
                "correctsEventId": inbound.id,
                "correctsEventType": "InboundShipmentRecorded",
                "reason": "scale recalibrated",
                "changes": {"netWeightKg": {"was": 1000, "now": 1010}},
            },
            a,
        )
        _record(s, "GranulationCompleted", _step(1000, 900), a)
        _record(s, "MetalRemovalCompleted", _step(900, 810), a)
        _record(s, "PolymerPurificationCompleted", _step(810, 729), a)
        _record(s, "ExtrusionCompleted", _step(729, 656.1, batchNumber="B-1"), a)
        _record(s, "ECHAApprovalRecorded", {"approvedBy": "QA", "approvalDate": "2026-01-15"}, a)
        _record(s, "TransferToRGERecorded", {"trackingRef": "T-RGE", "carrier": "DHL", "shipDate": "2026-01-20"}, a)
        _record(s, "ManufacturingStarted", {"poNumber": "PO-1", "poQuantity": 5000, "startDate": "2026-01-25"}, a)
        _record(s, "ManufacturingCompleted", {"endDate": "2026-02-01", "actualQuantity": 4800}, a)
        _record(
            s,
            "ReturnToLEGORecorded",
            {"trackingRef": "T-RET", "carrier": "DHL", "quantity": 4800, "shipDate": "2026-02-03"},
            a,
        )
        _record(s, "CampaignCompleted", {}, a)

        b = _record(s, "CampaignCreated", {"legoCampaignCode": "REPLAY-B", "materialType": "PI"}).campaign.id
        _record(
            s,
            "InboundShipmentRecorded",
            {
                "grossWeightKg": 550,
                "netWeightKg": 500,
                "carrier": "UPS",
                "trackingRef": "TRK-2",
                "shipDate": "2026-01-06",
                "arrivalDate": "2026-01-10",
            },
            b,
        )
        _record(s, "GranulationCompleted", _step(500, 400), b)

        _record(s, "CampaignCreated", {"legoCampaignCode": "REPLAY-C", "materialType": "PCR"})
    return a, b


def test_overview_uses_corrected_weights(app):
    _seed(app)
    with session_scope(app) as s:
        m = get_overview_metrics(s)
    assert m.total_processed_kg == pytest.approx(1510)
    assert (m.active_campaigns, m.completed_campaigns) == (2, 1)
    assert m.total_units_produced == 4800
    assert m.co2e_saved_kg == pytest.approx(19200)
    assert m.to_dict()["co2eSavedKg"] == pytest.approx(19200)


def test_yield_averages_per_step(app):
    _seed(app)
    with session_scope(app) as s:
        y = get_yield_averages(s)
    assert y["granulation"] == pytest.approx(0.85)
    assert y["metalRemoval"] == pytest.approx(0.9)
    assert y["purification"] == pytest.approx(0.9)
    assert y["extrusion"] == pytest.approx(0.9)
    assert y["overall"] == pytest.approx(0.85 * 0.9**3)


def test_latest_campaign_yields_follow_most_recent_step(app):
    _seed(app)
    with session_scope(app) as s:
        y = get_latest_campaign_yields(s)
    # B granulated last and has no later steps
    assert y["granulation"] == pytest.approx(0.8)
    assert y["metalRemoval"] is None
    assert y["overall"] is None


def test_zero_starting_weight_is_ignored(app):
    with session_scope(app) as s:
        cid = _record(s, "CampaignCreated", {"legoCampaignCode": "REPLAY-Z", "materialType": "PCR"}).campaign.id
        _record(s, "GranulationCompleted", _step(0, 0), cid)
    with session_scope(app) as s:
        assert get_yield_averages(s)["granulation"] is None
        assert get_latest_campaign_yields(s)["granulation"] is None


def test_throughput_groups_by_recorded_month(app):
    with session_scope(app) as s:
        for when, net in ((datetime(2026, 1, 5), 100), (datetime(2026, 1, 20), "200"), (datetime(2026, 2, 3), 50)):
            append_event(
                s,
                stream_type="campaign",
                stream_id="cmp_A",
                event_type="InboundShipmentRecorded",
                event_data={"netWeightKg": net},
                user_id=USER,
                created_at=when,
            )
    with session_scope(app) as s:
        assert get_throughput_by_month(s) == [
            {"month": "2026-01", "processedKg": 300.0},
            {"month": "2026-02", "processedKg": 50.0},
        ]


def test_empty_store(app):
    with session_scope(app) as s:
        out = get_analytics(s, include_latest_yields=True)
    assert out["overview"] == {
        "totalProcessedKg": 0,
        "activeCampaigns": 0,
        "completedCampaigns": 0,
        "totalUnitsProduced": 0,
        "co2eSavedKg": 0,
    }
    assert out["yields"]["overall"] is None
    assert out["throughput"] == []
    assert set(out["latestYields"]) == {"granulation", "metalRemoval", "purification", "extrusion", "overall"}


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(app):
    with session_scope(app) as s:
        r = Role(key="viewer", name="Viewer")
        r.permissions.append(Permission(key="campaigns.view", name="Campaigns: view"))
        u = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])
    c = app.test_client()
    c.post("/auth/login", data={"email": "viewer@example.com", "password": "pw"})
    return c


def test_http_analytics(app, client):
    _seed(app)
    r = client.get("/api/analytics")
    assert r.status_code == 200
    assert set(r.json) == {"overview", "yields", "throughput"}
    assert r.json["overview"]["completedCampaigns"] == 1

    r = client.get("/api/analytics?include_latest_yields=true")
    assert r.json["latestYields"]["granulation"] == pytest.approx(0.8)


def test_http_analytics_requires_login(app):
    r = app.test_client().get("/api/analytics")
    assert r.status_code == 401
