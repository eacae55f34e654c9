"""Tests for the ECHA compliance gate (pure check + write path)."""
from types import SimpleNamespace

import pytest

from app.replay import create_app
from app.replay.constants import ECHA_GATE_MESSAGE
from app.replay.db import session_scope
from app.replay.errors import ComplianceDeniedError, NotFoundError
from app.replay.ids import generate_campaign_id
from app.replay.models import Base
from app.replay.modules.campaigns.compliance import check_gate, enforce_gate, is_gated
from app.replay.modules.campaigns.event_store import get_events_for_stream
from app.replay.modules.campaigns.models import CampaignProjection
from app.replay.modules.campaigns.service import record_campaign_event

TRANSFER = {"trackingRef": "TRK-9", "carrier": "DHL", "shipDate": "2026-01-20"}


class TestCheckGate:
    @pytest.mark.parametrize(
        "event_type",
        ["TransferToRGERecorded", "ManufacturingStarted", "ManufacturingCompleted", "ReturnToLEGORecorded"],
    )
    def test_rge_events_need_approval(self, event_type):
        campaign = SimpleNamespace(id="cmp_X", echa_approved=False)
        decision = check_gate(event_type, campaign)
        assert decision.allowed is False
        assert decision.reason == ECHA_GATE_MESSAGE
        assert check_gate(event_type, SimpleNamespace(id="cmp_X", echa_approved=True)).allowed is True

    @pytest.mark.parametrize(
        "event_type",
        ["CampaignCreated", "InboundShipmentRecorded", "ExtrusionCompleted", "ECHAApprovalRecorded", "CampaignCompleted", "EventCorrected"],
    )
    def test_other_events_pass(self, event_type):
        assert not is_gated(event_type)
        assert check_gate(event_type, SimpleNamespace(id="cmp_X", echa_approved=False)).allowed is True

    def test_enforce_raises_with_context(self):
        with pytest.raises(ComplianceDeniedError) as ei:
            enforce_gate("ManufacturingStarted", SimpleNamespace(id="cmp_X", echa_approved=False))
        assert ei.value.status_code == 403
        assert ei.value.event_type == "ManufacturingStarted"
        assert ei.value.campaign_id == "cmp_X"
        assert ei.value.message == ECHA_GATE_MESSAGE


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


def _create(s):
    return record_campaign_event(
        s,
        event_type="CampaignCreated",
        event_data={"legoCampaignCode": "REPLAY-001", "materialType": "PCR"},
        user_id="ops@example.com",
    ).campaign.id


def test_denied_event_is_not_appended(app):
    with session_scope(app) as s:
        cid = _create(s)

    with session_scope(app) as s:
        with pytest.raises(ComplianceDeniedError):
            record_campaign_event(
                s, event_type="TransferToRGERecorded", campaign_id=cid, event_data=TRANSFER, user_id="ops@example.com"
            )

    with session_scope(app) as s:
        assert [e.event_type for e in get_events_for_stream(s, "campaign", cid)] == ["CampaignCreated"]
        assert s.get(CampaignProjection, cid).status == "created"


def test_gate_releases_after_approval(app):
    with session_scope(app) as s:
        cid = _create(s)
        record_campaign_event(
            s,
            event_type="ECHAApprovalRecorded",
            campaign_id=cid,
            event_data={"approvedBy": "Jane", "approvalDate": "2026-01-18"},
            user_id="ops@example.com",
        )
        recorded = record_campaign_event(
            s, event_type="TransferToRGERecorded", campaign_id=cid, event_data=TRANSFER, user_id="ops@example.com"
        )
        assert recorded.campaign.echa_approved is True
        assert recorded.campaign.status == "transferred_to_rge"


def test_missing_campaign_is_404_before_gate(app):
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            record_campaign_event(
                s,
                event_type="TransferToRGERecorded",
                campaign_id=generate_campaign_id(),
                event_data=TRANSFER,
                user_id="ops@example.com",
            )
        with pytest.raises(NotFoundError):
            record_campaign_event(
                s, event_type="TransferToRGERecorded", campaign_id="not-an-id", event_data=TRANSFER, user_id="ops@example.com"
            )
