"""Tests for applying an import preview (service level and HTTP)."""
import io
from datetime import date

import pytest
from openpyxl import Workbook
from werkzeug.security import generate_password_hash

from app.replay import create_app
from app.replay.db import session_scope
from app.replay.errors import PartialApplyError, ValidationError
from app.replay.models import Base, Permission, Role, User
from app.replay.modules.campaigns.event_store import get_events_for_stream
from app.replay.modules.campaigns.models import CampaignProjection
from app.replay.modules.campaigns.projections import get_campaigns_by_codes
from app.replay.modules.campaigns.service import record_campaign_event
from app.replay.modules.data_import.apply import apply_import, selected_ids
from app.replay.modules.data_import.preview import ImportBatch, ImportPreview
from app.replay.modules.data_import.reconcile import reconcile

AS_OF = date(2026, 2, 1)
USER = "ops@example.com"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _inbound_row(code, **overrides):
    row = {
        "rowNumber": 2,
        "campaignCode": code,
        "grossWeightKg": 1100,
        "netWeightKg": 1000,
        "carrier": "DHL",
        "trackingRef": "TRK-1",
        "shipDate": "2026-01-05",
        "arrivalDate": "2026-01-09",
    }
    row.update(overrides)
    return row


def _preview(app, batch):
    with session_scope(app) as s:
        return reconcile(s, batch, as_of=AS_OF)


def _apply_all(app, preview):
    creates, events, updates = selected_ids(preview)
    with session_scope(app) as s:
        return apply_import(s, preview, create_ids=creates, event_ids=events, update_ids=updates, user_id=USER)


def test_new_inbound_row_end_to_end(app):
    preview = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("REPLAY-NEW")]))
    assert len(preview.creates) == 1 and preview.skipped == []

    result = _apply_all(app, preview)
    assert result.status == "success"
    assert result.success is True
    assert len(result.created) == 1
    assert len(result.created[0]["event_ids"]) == 2

    with session_scope(app) as s:
        row = get_campaigns_by_codes(s, ["REPLAY-NEW"])["REPLAY-NEW"]
        assert row.status == "inbound_shipment_recorded"
        assert row.current_weight_kg == 1000
        assert row.material_type == "PCR"
        events = get_events_for_stream(s, "campaign", row.id)
        assert [e.event_type for e in events] == ["CampaignCreated", "InboundShipmentRecorded"]
        assert all(e.user_id == USER for e in events)


def test_events_resolve_campaigns_created_in_same_apply(app):
    batch = ImportBatch(
        inbound_shipments=[_inbound_row("REPLAY-NEW")],
        granulation=[{"rowNumber": 2, "campaignCode": "REPLAY-NEW", "startingWeightKg": 1000, "outputWeightKg": 950}],
    )
    result = _apply_all(app, _preview(app, batch))
    assert result.status == "success"
    assert result.events[0]["campaign_id"] == result.created[0]["campaign_id"]
    with session_scope(app) as s:
        row = s.get(CampaignProjection, result.created[0]["campaign_id"])
        assert row.status == "granulation_complete"
        assert row.current_weight_kg == 950


def test_apply_correction(app):
    with session_scope(app) as s:
        cid = record_campaign_event(
            s, event_type="CampaignCreated", event_data={"legoCampaignCode": "REPLAY-001", "materialType": "PCR"}, user_id=USER
        ).campaign.id
        record_campaign_event(
            s,
            event_type="InboundShipmentRecorded",
            campaign_id=cid,
            event_data={
                "grossWeightKg": 1100,
                "netWeightKg": 1000,
                "carrier": "DHL",
                "trackingRef": "TRK-1",
                "shipDate": "2026-01-05",
                "arrivalDate": "2026-01-09",
            },
            user_id=USER,
        )
    preview = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("REPLAY-001", netWeightKg=1010)]))
    result = _apply_all(app, preview)
    assert result.status == "success"
    assert len(result.corrections) == 1

    with session_scope(app) as s:
        assert s.get(CampaignProjection, cid).current_weight_kg == 1010

    # Re-importing the same sheet is now a no-op
    again = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("REPLAY-001", netWeightKg=1010)]))
    assert again.updates == [] and len(again.skipped) == 1


def test_only_selected_items_are_applied(app):
    preview = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("A-001"), _inbound_row("B-002", rowNumber=3)]))
    with session_scope(app) as s:
        result = apply_import(s, preview, create_ids=[preview.creates[1].id], user_id=USER)
    assert [c["campaign_code"] for c in result.created] == ["B-002"]
    with session_scope(app) as s:
        assert list(get_campaigns_by_codes(s, ["A-001", "B-002"])) == ["B-002"]


def test_gate_failure_is_a_per_item_error(app):
    with session_scope(app) as s:
        record_campaign_event(
            s, event_type="CampaignCreated", event_data={"legoCampaignCode": "REPLAY-001", "materialType": "PCR"}, user_id=USER
        )
    batch = ImportBatch(
        inbound_shipments=[_inbound_row("REPLAY-002")],
        transfer=[{"rowNumber": 2, "campaignCode": "REPLAY-001", "trackingRef": "T-1", "carrier": "DHL", "receivedDate": "2026-01-20"}],
    )
    result = _apply_all(app, _preview(app, batch))
    assert result.status == "partial"
    assert len(result.created) == 1
    assert len(result.errors) == 1
    assert result.errors[0]["error_type"] == "ComplianceDeniedError"
    assert "ECHA approval required" in result.errors[0]["error"]
    with pytest.raises(PartialApplyError):
        result.raise_for_errors()

    with session_scope(app) as s:
        row = get_campaigns_by_codes(s, ["REPLAY-001"])["REPLAY-001"]
        assert row.status == "created"
        assert [e.event_type for e in get_events_for_stream(s, "campaign", row.id)] == ["CampaignCreated"]


def test_failed_create_rolls_back_only_that_item(app):
    preview = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("A-001"), _inbound_row("B-002", rowNumber=3)]))
    # Break the second create's inbound payload after preview
    preview.creates[1].inbound_data["netWeightKg"] = -5
    result = _apply_all(app, preview)
    assert result.status == "partial"
    assert result.errors[0]["id"] == preview.creates[1].id
    with session_scope(app) as s:
        assert list(get_campaigns_by_codes(s, ["A-001", "B-002"])) == ["A-001"]


def test_unknown_ids_and_failed_status(app):
    preview = _preview(app, ImportBatch(inbound_shipments=[_inbound_row("A-001")]))
    with session_scope(app) as s:
        result = apply_import(s, preview, create_ids=["create_99"], event_ids=["event_5"], user_id=USER)
    assert result.status == "failed"
    assert [e["error"] for e in result.errors] == ["Create preview not found", "Event preview not found"]


def test_event_for_uncreated_campaign(app):
    batch = ImportBatch(
        inbound_shipments=[_inbound_row("REPLAY-NEW")],
        granulation=[{"rowNumber": 2, "campaignCode": "REPLAY-NEW", "startingWeightKg": 1000, "outputWeightKg": 950}],
    )
    preview = _preview(app, batch)
    with session_scope(app) as s:
        result = apply_import(s, preview, event_ids=[preview.events[0].id], user_id=USER)
    assert result.status == "failed"
    assert "was not created in this import" in result.errors[0]["error"]


def test_malformed_request(app):
    preview = ImportPreview()
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            apply_import(s, preview, create_ids="create_1", user_id=USER)
        with pytest.raises(ValidationError):
            apply_import(s, preview, user_id="")
        with pytest.raises(ValidationError):
            apply_import(s, {"creates": []}, user_id=USER)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(app):
    with session_scope(app) as s:
        r = Role(key="operator", name="Operator")
        for key in ("campaigns.view", "events.create", "import.preview", "import.apply"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])
    c = app.test_client()
    c.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    return c


def _workbook_bytes() -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Inbound Shipment"
    ws.append(["Campaign", "Req. arrival", "Gross", "Net", "Est. ABS", "Portfolio", "Accepted", "Tracking", "Carrier", "Ship", "Arrival"])
    ws.append(["REPLAY-XL", None, 1100, 1000, None, None, None, "TRK-XL", "DHL", "2026-01-05", "2026-01-09"])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_http_parse_preview_apply(client):
    r = client.post(
        "/api/import/parse",
        data={"file": (io.BytesIO(_workbook_bytes()), "campaigns.xlsx")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 200, r.json
    assert r.json["total_rows"] == 1
    batch = r.json["batch"]

    r = client.post("/api/import/preview", json={"batch": batch})
    assert r.status_code == 200
    preview = r.json
    assert preview["summary"]["new_campaigns"] == 1
    assert preview["summary"]["skipped"] == 0

    r = client.post("/api/import/apply", json={"preview": preview})
    assert r.status_code == 200
    assert r.json["status"] == "success"
    cid = r.json["created"][0]["campaign_id"]

    r = client.get(f"/api/campaigns/{cid}")
    assert r.json["campaign"]["status"] == "inbound_shipment_recorded"


def test_http_apply_partial_is_207(client):
    client.post("/api/events", json={"eventType": "CampaignCreated", "eventData": {"legoCampaignCode": "REPLAY-001", "materialType": "PCR"}})
    batch = {
        "inbound_shipments": [_inbound_row("REPLAY-002")],
        "transfer": [{"rowNumber": 2, "campaignCode": "REPLAY-001", "trackingRef": "T-1", "carrier": "DHL"}],
    }
    preview = client.post("/api/import/preview", json={"batch": batch}).json
    r = client.post(
        "/api/import/apply",
        json={"preview": preview, "creates": [c["id"] for c in preview["creates"]], "events": [e["id"] for e in preview["events"]]},
    )
    assert r.status_code == 207
    assert r.json["status"] == "partial"


def test_http_apply_all_failed_is_422(client):
    preview = client.post("/api/import/preview", json={"batch": {"inbound_shipments": [_inbound_row("A-001")]}}).json
    r = client.post("/api/import/apply", json={"preview": preview, "creates": ["create_42"]})
    assert r.status_code == 422


def test_http_parse_rejects_non_xlsx(client):
    r = client.post(
        "/api/import/parse",
        data={"file": (io.BytesIO(b"a,b,c"), "campaigns.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_http_apply_requires_preview(client):
    r = client.post("/api/import/apply", json={"creates": []})
    assert r.status_code == 400


def test_http_preview_rejects_bad_row_number(client):
    r = client.post("/api/import/preview", json={"batch": {"inbound_shipments": [_inbound_row("A-001", rowNumber="abc")]}})
    assert r.status_code == 400
    assert "rowNumber" in r.json["error"]
