"""
Campaign JSON routes: append events, campaign reads, search, analytics and the corrections audit log.
Handlers stay thin; typed errors bubble up to the app-level error handlers.
"""
from __future__ import annotations

from datetime import date

from flask import Blueprint, g, jsonify, request

from app.replay.constants import EVENT_TYPES
from app.replay.db import db_session
from app.replay.errors import FieldError, NotFoundError, ValidationError
from app.replay.models import User
from app.replay.rbac import require_permission

from .analytics import get_analytics
from .audit import AuditFilters, get_audit_entries, get_audited_campaigns
from .projections import (
    CampaignFilters,
    campaign_to_dict,
    get_campaign_by_id,
    get_campaigns,
    get_recent_campaigns,
    search_campaigns,
)
from .service import get_campaign_history, record_campaign_event

bp = Blueprint("campaigns", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def _int_arg(name: str, default: int) -> int:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer.") from None


def _date_arg(name: str) -> date | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        raise ValidationError(f"Invalid {name}: expected YYYY-MM-DD.") from None


@bp.post("/events")
@require_permission("events.create")
def events_create():
    """
    Body: {"eventType": ..., "campaignId": ... (omitted for CampaignCreated), "eventData": {...}}
    """
    s = db_session()
    u = _current_user()
    body = _json_body()

    event_type = body.get("eventType")
    if event_type not in EVENT_TYPES:
        raise ValidationError(
            "Invalid event type.",
            [FieldError("eventType", f"Valid types: {', '.join(sorted(EVENT_TYPES))}")],
        )
    event_data = body.get("eventData")
    if not isinstance(event_data, dict):
        raise ValidationError("eventData is required and must be an object.")

    recorded = record_campaign_event(
        s,
        event_type=event_type,
        event_data=event_data,
        user_id=u.email,
        campaign_id=body.get("campaignId"),
    )
    s.commit()
    return jsonify(
        {
            "event": recorded.event.to_dict(),
            "campaignId": recorded.campaign.id,
            "campaign": campaign_to_dict(recorded.campaign),
        }
    ), 201


@bp.get("/campaigns")
@require_permission("campaigns.view")
def campaigns_list():
    s = db_session()
    filters = CampaignFilters.from_args(request.args)
    rows = get_campaigns(s, filters)
    return jsonify({"campaigns": [campaign_to_dict(r) for r in rows], "total": len(rows)})


@bp.get("/campaigns/<campaign_id>")
@require_permission("campaigns.view")
def campaigns_detail(campaign_id: str):
    s = db_session()
    row = get_campaign_by_id(s, campaign_id)
    if row is None:
        raise NotFoundError("Campaign not found")
    return jsonify({"campaign": campaign_to_dict(row)})


@bp.get("/campaigns/<campaign_id>/events")
@require_permission("campaigns.view")
def campaigns_events(campaign_id: str):
    s = db_session()
    events = get_campaign_history(s, campaign_id)
    return jsonify({"campaignId": campaign_id, "events": [e.to_dict() for e in events]})


@bp.get("/search")
@require_permission("campaigns.view")
def search():
    s = db_session()
    q = (request.args.get("q") or "").strip()
    limit = min(max(_int_arg("limit", 20), 1), 100)
    results = search_campaigns(s, q, limit=limit)
    return jsonify({"query": q, "results": [r.to_dict() for r in results]})


@bp.get("/search/suggestions")
@require_permission("campaigns.view")
def search_suggestions():
    s = db_session()
    rows = get_recent_campaigns(s, limit=8)
    return jsonify(
        {
            "suggestions": [
                {
                    "id": r.id,
                    "lego_campaign_code": r.lego_campaign_code,
                    "status": r.status,
                    "description": r.description,
                }
                for r in rows
            ]
        }
    )


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    s = db_session()
    filters = AuditFilters(
        campaign_id=(request.args.get("campaign_id") or "").strip() or None,
        start_date=_date_arg("start_date"),
        end_date=_date_arg("end_date"),
    )
    page = get_audit_entries(s, filters, page=_int_arg("page", 1), limit=_int_arg("limit", 20))
    out = page.to_dict()
    if request.args.get("include_campaigns") in ("1", "true"):
        out["campaigns"] = get_audited_campaigns(s)
    return jsonify(out)


@bp.get("/analytics")
@require_permission("campaigns.view")
def analytics():
    s = db_session()
    include_latest = request.args.get("include_latest_yields") in ("1", "true")
    return jsonify(get_analytics(s, include_latest_yields=include_latest))
