"""
Commit a selected subset of an import preview.

Phases run in order (creates, events, updates) because events may target
campaigns minted by the creates phase. Each item gets its own SAVEPOINT and
goes through the normal write path, so a failing item is rolled back on its
own and recorded in `errors` while the rest of the batch continues.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.replay.constants import CAMPAIGN_CREATED, EVENT_CORRECTED, INBOUND_SHIPMENT_RECORDED
from app.replay.errors import CampaignError, NotFoundError, ValidationError
from app.replay.modules.campaigns.service import record_campaign_event

from .preview import ApplyResult, CreatePreview, EventPreview, ImportPreview, UpdatePreview

logger = logging.getLogger(__name__)


def _id_list(name: str, value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ValidationError(f"{name} must be a list of preview ids.")
    return list(value)


def _apply_create(s: Session, item: CreatePreview, user_id: str, result: ApplyResult, created: dict[str, str]) -> None:
    recorded = record_campaign_event(s, event_type=CAMPAIGN_CREATED, event_data=item.campaign_data, user_id=user_id)
    campaign_id = recorded.campaign.id
    event_ids = [recorded.event.id]
    if item.inbound_data:
        inbound = record_campaign_event(
            s,
            event_type=INBOUND_SHIPMENT_RECORDED,
            campaign_id=campaign_id,
            event_data=item.inbound_data,
            user_id=user_id,
        )
        event_ids.append(inbound.event.id)
    created[item.campaign_code] = campaign_id
    result.created.append(
        {"preview_id": item.id, "campaign_id": campaign_id, "campaign_code": item.campaign_code, "event_ids": event_ids}
    )


def _apply_event(s: Session, item: EventPreview, user_id: str, result: ApplyResult, created: dict[str, str]) -> None:
    campaign_id = created.get(item.campaign_code) or item.campaign_id
    if not campaign_id:
        raise NotFoundError(f"Campaign {item.campaign_code} was not created in this import")
    recorded = record_campaign_event(
        s,
        event_type=item.event_type,
        campaign_id=campaign_id,
        event_data=item.event_data,
        user_id=user_id,
    )
    result.events.append(
        {
            "preview_id": item.id,
            "campaign_id": campaign_id,
            "event_id": recorded.event.id,
            "event_type": item.event_type,
        }
    )


def _apply_update(s: Session, item: UpdatePreview, user_id: str, result: ApplyResult) -> None:
    if not item.changes:
        raise ValidationError("Update has no field changes.")
    recorded = record_campaign_event(
        s,
        event_type=EVENT_CORRECTED,
        campaign_id=item.campaign_id,
        event_data=item.correction_payload(),
        user_id=user_id,
    )
    result.corrections.append(
        {
            "preview_id": item.id,
            "campaign_id": item.campaign_id,
            "event_id": recorded.event.id,
            "corrects_event_id": item.corrects_event_id,
        }
    )


def _run_item(s: Session, item_id: str, fn, result: ApplyResult) -> None:
    try:
        with s.begin_nested():
            fn()
    except CampaignError as e:
        if not e.public:
            logger.error("IMPORT: item=%s failed: %s", item_id, e)
        else:
            logger.info("IMPORT: item=%s rejected: %s", item_id, e.message)
        result.add_error(item_id, e)
    except Exception as e:
        logger.exception("IMPORT: item=%s crashed", item_id)
        result.add_error(item_id, e)


def apply_import(
    s: Session,
    preview: ImportPreview,
    *,
    create_ids: list[str] | None = None,
    event_ids: list[str] | None = None,
    update_ids: list[str] | None = None,
    user_id: str,
) -> ApplyResult:
    """
    Apply the selected preview items. Never raises for per-item failures;
    only a malformed request raises ValidationError.
    The caller owns the outer transaction and commits it.
    """
    if not isinstance(preview, ImportPreview):
        raise ValidationError("preview is required.")
    if not user_id:
        raise ValidationError("A user id is required to apply an import.")
    wanted_creates = _id_list("create_ids", create_ids)
    wanted_events = _id_list("event_ids", event_ids)
    wanted_updates = _id_list("update_ids", update_ids)

    creates = {c.id: c for c in preview.creates}
    events = {e.id: e for e in preview.events}
    updates = {u.id: u for u in preview.updates}

    result = ApplyResult()
    created: dict[str, str] = {}  # campaign code -> campaign id minted in this apply

    for pid in wanted_creates:
        item = creates.get(pid)
        if item is None:
            result.add_error(pid, NotFoundError("Create preview not found"))
            continue
        _run_item(s, pid, lambda item=item: _apply_create(s, item, user_id, result, created), result)

    for pid in wanted_events:
        ev_item = events.get(pid)
        if ev_item is None:
            result.add_error(pid, NotFoundError("Event preview not found"))
            continue
        _run_item(s, pid, lambda ev_item=ev_item: _apply_event(s, ev_item, user_id, result, created), result)

    for pid in wanted_updates:
        up_item = updates.get(pid)
        if up_item is None:
            result.add_error(pid, NotFoundError("Update preview not found"))
            continue
        _run_item(s, pid, lambda up_item=up_item: _apply_update(s, up_item, user_id, result), result)

    logger.info(
        "IMPORT: applied status=%s created=%d events=%d corrections=%d errors=%d",
        result.status,
        len(result.created),
        len(result.events),
        len(result.corrections),
        len(result.errors),
    )
    return result


def selected_ids(preview: ImportPreview) -> tuple[list[str], list[str], list[str]]:
    """Ids of every item still marked selected in the preview."""
    return (
        [c.id for c in preview.creates if c.selected],
        [e.id for e in preview.events if e.selected],
        [u.id for u in preview.updates if u.selected],
    )
