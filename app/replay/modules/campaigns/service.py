"""
Campaign write path.

Every event goes through the same sequence:
validate payload -> resolve campaign (NotFound) -> compliance gate -> append -> project.
Nothing is written unless every check before the append passed.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.replay.constants import CAMPAIGN_CREATED, EVENT_CORRECTED, STREAM_CAMPAIGN
from app.replay.errors import FieldError, NotFoundError, ValidationError
from app.replay.ids import generate_campaign_id, is_valid_campaign_id

from .compliance import enforce_gate
from .event_store import append_event, get_event_by_id, get_events_for_stream
from .models import CampaignProjection, EventRecord
from .projections import update_projection
from .validation import require_valid_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedEvent:
    event: EventRecord
    campaign: CampaignProjection

    def to_dict(self) -> dict:
        return {"event": self.event.to_dict(), "campaign": self.campaign.to_dict()}


def _normalize_created(data: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(data)
    out["legoCampaignCode"] = str(data["legoCampaignCode"]).strip()
    out["materialType"] = str(data["materialType"]).strip().upper()
    if isinstance(out.get("description"), str):
        out["description"] = out["description"].strip() or None
    return out


def _code_taken(s: Session, code: str) -> bool:
    return s.execute(
        select(CampaignProjection.id).where(CampaignProjection.lego_campaign_code == code)
    ).first() is not None


def _create_campaign(s: Session, event_data: Mapping[str, Any], user_id: str) -> RecordedEvent:
    data = _normalize_created(event_data)
    code = data["legoCampaignCode"]
    if _code_taken(s, code):
        raise ValidationError(
            f"Campaign code {code} already exists.",
            [FieldError("legoCampaignCode", "Campaign code already exists")],
        )
    campaign_id = generate_campaign_id()
    ev = append_event(
        s,
        stream_type=STREAM_CAMPAIGN,
        stream_id=campaign_id,
        event_type=CAMPAIGN_CREATED,
        event_data=data,
        user_id=user_id,
    )
    row = update_projection(s, CAMPAIGN_CREATED, campaign_id, ev.event_data, ev.created_at)
    logger.info("CAMPAIGN: created %s code=%s by %s", campaign_id, code, user_id)
    return RecordedEvent(ev, row)


def _check_correction_target(s: Session, campaign_id: str, data: Mapping[str, Any]) -> None:
    target = get_event_by_id(s, data["correctsEventId"])
    if target is None or target.stream_id != campaign_id:
        raise ValidationError(
            "Corrected event not found on this campaign.",
            [FieldError("correctsEventId", "No such event on this campaign")],
        )
    if target.event_type != data["correctsEventType"]:
        raise ValidationError(
            "correctsEventType does not match the corrected event.",
            [FieldError("correctsEventType", f"Event {target.id} is a {target.event_type}")],
        )


def record_campaign_event(
    s: Session,
    *,
    event_type: str,
    event_data: Mapping[str, Any],
    user_id: str,
    campaign_id: str | None = None,
) -> RecordedEvent:
    """
    Validate, gate, append and project a single campaign event.

    CampaignCreated mints a new campaign id; every other type needs `campaign_id`.
    Raises ValidationError, NotFoundError, ComplianceDeniedError, StorageError.
    """
    require_valid_payload(event_type, event_data)
    if not user_id:
        raise ValidationError("A user id is required to record events.")
    if event_type == CAMPAIGN_CREATED:
        return _create_campaign(s, event_data, user_id)

    if not campaign_id:
        raise ValidationError("campaignId is required.", [FieldError("campaignId", "campaignId is required")])
    if not is_valid_campaign_id(campaign_id):
        # Malformed ids cannot exist; no database lookup needed.
        raise NotFoundError("Campaign not found")

    # The row lock is held until the caller commits, serializing writers per stream.
    campaign = s.execute(
        select(CampaignProjection).where(CampaignProjection.id == campaign_id).with_for_update()
    ).scalar_one_or_none()
    if campaign is None:
        raise NotFoundError("Campaign not found")
    enforce_gate(event_type, campaign)
    if event_type == EVENT_CORRECTED:
        _check_correction_target(s, campaign_id, event_data)

    ev = append_event(
        s,
        stream_type=STREAM_CAMPAIGN,
        stream_id=campaign_id,
        event_type=event_type,
        event_data=dict(event_data),
        user_id=user_id,
    )
    row = update_projection(s, event_type, campaign_id, ev.event_data, ev.created_at)
    logger.info("CAMPAIGN: %s recorded on %s (status=%s) by %s", event_type, campaign_id, row.status, user_id)
    return RecordedEvent(ev, row)


def get_campaign_history(s: Session, campaign_id: str) -> list[EventRecord]:
    if s.get(CampaignProjection, campaign_id) is None:
        raise NotFoundError("Campaign not found")
    return get_events_for_stream(s, STREAM_CAMPAIGN, campaign_id)
