"""
Campaign projection engine.

`apply_event` is a pure fold step: (event type, current state or None, payload)
-> new state. `update_projection` runs that step against the
`campaign_projections` row for a campaign; `rebuild_projection` replays the
whole stream through the same step, so incremental and replayed projections
cannot diverge.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, fields, replace
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.replay.constants import (
    CAMPAIGN_COMPLETED,
    CAMPAIGN_CREATED,
    CAMPAIGN_STATUSES,
    ECHA_APPROVAL_RECORDED,
    EVENT_CORRECTED,
    EVENT_TARGET_STATUS,
    INBOUND_SHIPMENT_RECORDED,
    MANUFACTURING_STARTED,
    NEXT_STEP,
    RETURN_TO_LEGO_RECORDED,
    STATUS_ORDER,
    STEP_NAMES,
    STREAM_CAMPAIGN,
    TRANSFER_TO_RGE_RECORDED,
    WEIGHT_FIELDS,
)
from app.replay.errors import ProjectionDesyncError, StorageError, ValidationError
from app.replay.utils import isoformat, normalize_text, parse_number

from .event_store import get_events_for_stream, list_stream_ids
from .models import CampaignProjection, EventRecord

logger = logging.getLogger(__name__)

# Projection fields an EventCorrected may set directly from `changes[field].now`
CORRECTABLE_FIELDS = {
    "legoCampaignCode": "lego_campaign_code",
    "materialType": "material_type",
    "description": "description",
    "currentWeightKg": "current_weight_kg",
}


@dataclass(frozen=True)
class CampaignState:
    id: str
    lego_campaign_code: str
    material_type: str
    status: str
    current_step: str | None
    current_weight_kg: float | None
    weight_source_event_type: str | None
    description: str | None
    echa_approved: bool
    next_expected_step: str | None
    last_event_type: str | None
    last_event_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


_STATE_FIELDS = tuple(f.name for f in fields(CampaignState))


def _advance(state: CampaignState, event_type: str, timestamp: datetime, **changes: Any) -> CampaignState:
    status = EVENT_TARGET_STATUS[event_type]
    return replace(
        state,
        status=status,
        current_step=STEP_NAMES[status],
        next_expected_step=NEXT_STEP[status],
        last_event_type=event_type,
        last_event_at=timestamp,
        updated_at=timestamp,
        **changes,
    )


def _weight_changes(event_type: str, data: Mapping[str, Any]) -> dict[str, Any]:
    field = WEIGHT_FIELDS.get(event_type)
    if field is None:
        return {}
    weight = parse_number(data.get(field))
    if weight is None:
        return {}
    return {"current_weight_kg": weight, "weight_source_event_type": event_type}


def _apply_correction(state: CampaignState, data: Mapping[str, Any], timestamp: datetime) -> CampaignState:
    changes = data.get("changes") or {}
    corrects_type = data.get("correctsEventType")
    weight_field = WEIGHT_FIELDS.get(corrects_type) if corrects_type else None
    updates: dict[str, Any] = {}
    for field, change in changes.items():
        if not isinstance(change, Mapping) or "now" not in change:
            continue
        now = change["now"]
        # only the step that last set the weight owns it
        if field == weight_field and corrects_type == state.weight_source_event_type:
            value = parse_number(now)
            if value is not None:
                updates["current_weight_kg"] = value
            continue
        attr = CORRECTABLE_FIELDS.get(field)
        if attr is None:
            continue
        if attr == "current_weight_kg":
            value = parse_number(now)
            if value is not None:
                updates[attr] = value
        elif attr == "description":
            updates[attr] = normalize_text(now)
        elif attr == "material_type" and now is not None:
            updates[attr] = str(now).strip().upper()
        elif now is not None:
            updates[attr] = str(now).strip()
    return replace(state, updated_at=timestamp, **updates)


def apply_event(
    event_type: str,
    state: CampaignState | None,
    event_data: Mapping[str, Any],
    timestamp: datetime,
    *,
    campaign_id: str | None = None,
) -> CampaignState:
    """Fold one event into the campaign state. Pure; raises ProjectionDesyncError on drift."""
    if event_type == CAMPAIGN_CREATED:
        if state is not None:
            raise ProjectionDesyncError(f"Campaign {state.id} already has a projection; duplicate CampaignCreated.")
        if not campaign_id:
            raise ProjectionDesyncError("CampaignCreated applied without a campaign id.")
        return CampaignState(
            id=campaign_id,
            lego_campaign_code=str(event_data.get("legoCampaignCode") or "").strip(),
            material_type=str(event_data.get("materialType") or "").strip().upper(),
            status="created",
            current_step=STEP_NAMES["created"],
            current_weight_kg=None,
            weight_source_event_type=None,
            description=normalize_text(event_data.get("description")),
            echa_approved=False,
            next_expected_step=NEXT_STEP["created"],
            last_event_type=CAMPAIGN_CREATED,
            last_event_at=timestamp,
            created_at=timestamp,
            updated_at=timestamp,
            completed_at=None,
        )

    if state is None:
        raise ProjectionDesyncError(
            f"{event_type} applied to campaign {campaign_id or '(unknown)'} with no projection."
        )

    if event_type == EVENT_CORRECTED:
        return _apply_correction(state, event_data, timestamp)
    if event_type == ECHA_APPROVAL_RECORDED:
        return _advance(state, event_type, timestamp, echa_approved=True)
    if event_type == CAMPAIGN_COMPLETED:
        return _advance(state, event_type, timestamp, completed_at=timestamp)
    if event_type in EVENT_TARGET_STATUS:
        return _advance(state, event_type, timestamp, **_weight_changes(event_type, event_data))
    raise ProjectionDesyncError(f"Unknown event type in stream: {event_type}")


def fold_events(events: Iterable[EventRecord]) -> CampaignState | None:
    state: CampaignState | None = None
    for ev in events:
        state = apply_event(ev.event_type, state, ev.event_data or {}, ev.created_at, campaign_id=ev.stream_id)
    return state


def effective_event_data(event: EventRecord, history: Iterable[EventRecord]) -> dict[str, Any]:
    """Payload of `event` with the `now` values of every later correction of it applied, in stream order."""
    values = dict(event.event_data or {})
    for ev in history:
        data = ev.event_data or {}
        if ev.event_type != EVENT_CORRECTED or data.get("correctsEventId") != event.id:
            continue
        for field_name, change in (data.get("changes") or {}).items():
            if isinstance(change, Mapping) and "now" in change:
                values[field_name] = change["now"]
    return values


def state_from_row(row: CampaignProjection) -> CampaignState:
    return CampaignState(**{name: getattr(row, name) for name in _STATE_FIELDS})


def _write_state(row: CampaignProjection, state: CampaignState) -> None:
    for name, value in asdict(state).items():
        setattr(row, name, value)


def _load_row(s: Session, campaign_id: str, *, for_update: bool = False) -> CampaignProjection | None:
    stmt = select(CampaignProjection).where(CampaignProjection.id == campaign_id)
    if for_update:
        stmt = stmt.with_for_update()
    return s.execute(stmt).scalar_one_or_none()


def update_projection(
    s: Session,
    event_type: str,
    campaign_id: str,
    event_data: Mapping[str, Any],
    timestamp: datetime,
) -> CampaignProjection:
    row = _load_row(s, campaign_id, for_update=True)
    current = state_from_row(row) if row is not None else None
    new_state = apply_event(event_type, current, event_data, timestamp, campaign_id=campaign_id)
    try:
        if row is None:
            row = CampaignProjection()
            _write_state(row, new_state)
            s.add(row)
        else:
            _write_state(row, new_state)
        s.flush()
    except SQLAlchemyError as e:
        logger.error("PROJECTION: write failed campaign=%s type=%s err=%s", campaign_id, event_type, e)
        raise StorageError("Failed to update campaign projection.") from e
    logger.debug("PROJECTION: %s applied to %s -> status=%s", event_type, campaign_id, row.status)
    return row


def rebuild_projection(s: Session, campaign_id: str) -> CampaignProjection | None:
    """Replay a campaign stream from empty and overwrite its projection row."""
    state = fold_events(get_events_for_stream(s, STREAM_CAMPAIGN, campaign_id))
    row = _load_row(s, campaign_id, for_update=True)
    if state is None:
        if row is not None:
            raise ProjectionDesyncError(f"Campaign {campaign_id} has a projection but no events.")
        return None
    if row is None:
        row = CampaignProjection()
        s.add(row)
    _write_state(row, state)
    s.flush()
    return row


def find_drifted_projections(s: Session) -> list[str]:
    """Campaign ids whose stored projection differs from a fresh replay of their stream."""
    drifted: list[str] = []
    for campaign_id in list_stream_ids(s, STREAM_CAMPAIGN):
        state = fold_events(get_events_for_stream(s, STREAM_CAMPAIGN, campaign_id))
        row = _load_row(s, campaign_id)
        if row is None or state is None or state_from_row(row) != state:
            drifted.append(campaign_id)
    return drifted


def rebuild_all_projections(s: Session) -> int:
    count = 0
    for campaign_id in list_stream_ids(s, STREAM_CAMPAIGN):
        rebuild_projection(s, campaign_id)
        count += 1
    logger.info("PROJECTION: rebuilt %d campaign projections", count)
    return count


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CampaignFilters:
    status: str | None = None  # a status, or "active" for anything not completed
    material_type: str | None = None
    echa_approved: bool | None = None
    created_from: date | None = None
    created_to: date | None = None
    weight_min: float | None = None
    weight_max: float | None = None
    code_prefix: str | None = None

    @classmethod
    def from_args(cls, args: Mapping[str, str]) -> "CampaignFilters":
        def _date(name: str) -> date | None:
            raw = (args.get(name) or "").strip()
            if not raw:
                return None
            try:
                return date.fromisoformat(raw[:10])
            except ValueError:
                raise ValidationError(f"Invalid {name}: expected YYYY-MM-DD.") from None

        def _num(name: str) -> float | None:
            raw = (args.get(name) or "").strip()
            if not raw:
                return None
            value = parse_number(raw)
            if value is None:
                raise ValidationError(f"Invalid {name}: expected a number.")
            return value

        status = (args.get("status") or "").strip() or None
        if status and status != "active" and status not in STATUS_ORDER:
            raise ValidationError(f"Invalid status: {status}")
        material = (args.get("material_type") or "").strip().upper() or None
        if material and material not in ("PI", "PCR"):
            raise ValidationError("material_type must be PI or PCR.")
        echa_raw = (args.get("echa_approved") or "").strip().lower()
        echa = {"true": True, "1": True, "false": False, "0": False}.get(echa_raw) if echa_raw else None
        return cls(
            status=status,
            material_type=material,
            echa_approved=echa,
            created_from=_date("created_from"),
            created_to=_date("created_to"),
            weight_min=_num("weight_min"),
            weight_max=_num("weight_max"),
            code_prefix=(args.get("code_prefix") or "").strip() or None,
        )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def get_campaign_by_id(s: Session, campaign_id: str) -> CampaignProjection | None:
    return s.get(CampaignProjection, campaign_id)


def get_campaigns(s: Session, filters: CampaignFilters | None = None) -> list[CampaignProjection]:
    f = filters or CampaignFilters()
    stmt = select(CampaignProjection)
    if f.status == "active":
        stmt = stmt.where(CampaignProjection.status != "completed")
    elif f.status:
        stmt = stmt.where(CampaignProjection.status == f.status)
    if f.material_type:
        stmt = stmt.where(CampaignProjection.material_type == f.material_type)
    if f.echa_approved is not None:
        stmt = stmt.where(CampaignProjection.echa_approved.is_(f.echa_approved))
    if f.created_from:
        stmt = stmt.where(CampaignProjection.created_at >= datetime.combine(f.created_from, datetime.min.time()))
    if f.created_to:
        end = datetime.combine(f.created_to, datetime.min.time()) + timedelta(days=1)
        stmt = stmt.where(CampaignProjection.created_at < end)
    if f.weight_min is not None:
        stmt = stmt.where(CampaignProjection.current_weight_kg >= f.weight_min)
    if f.weight_max is not None:
        stmt = stmt.where(CampaignProjection.current_weight_kg <= f.weight_max)
    if f.code_prefix:
        stmt = stmt.where(CampaignProjection.lego_campaign_code.ilike(_escape_like(f.code_prefix) + "%", escape="\\"))
    stmt = stmt.order_by(CampaignProjection.updated_at.desc(), CampaignProjection.id.desc())
    return list(s.execute(stmt).scalars())


def get_recent_campaigns(s: Session, limit: int = 8) -> list[CampaignProjection]:
    stmt = select(CampaignProjection).order_by(CampaignProjection.updated_at.desc(), CampaignProjection.id.desc()).limit(limit)
    return list(s.execute(stmt).scalars())


def get_campaigns_by_codes(s: Session, codes: Iterable[str]) -> dict[str, CampaignProjection]:
    wanted = sorted({c for c in codes if c})
    if not wanted:
        return {}
    rows = s.execute(select(CampaignProjection).where(CampaignProjection.lego_campaign_code.in_(wanted))).scalars()
    return {row.lego_campaign_code: row for row in rows}


@dataclass(frozen=True)
class SearchResult:
    campaign_id: str
    lego_campaign_code: str
    status: str
    description: str | None
    match_type: str  # campaign_id | lego_code | tracking | po | description
    match_value: str

    def to_dict(self) -> dict:
        return asdict(self)


_MATCH_PRIORITY = ("campaign_id", "lego_code", "tracking", "po", "description")


def search_campaigns(s: Session, query: str, limit: int = 20) -> list[SearchResult]:
    """
    Find campaigns by any identifier an operator is likely to have at hand.
    Queries shorter than two characters return nothing.
    """
    q = (query or "").strip()
    if len(q) < 2:
        return []
    pattern = f"%{_escape_like(q)}%"
    hits: dict[str, tuple[str, str]] = {}

    def _hit(campaign_id: str, match_type: str, value: str | None) -> None:
        if value is None:
            return
        prev = hits.get(campaign_id)
        if prev is None or _MATCH_PRIORITY.index(match_type) < _MATCH_PRIORITY.index(prev[0]):
            hits[campaign_id] = (match_type, value)

    rows = s.execute(
        select(CampaignProjection).where(
            or_(
                CampaignProjection.id.ilike(pattern, escape="\\"),
                CampaignProjection.lego_campaign_code.ilike(pattern, escape="\\"),
                CampaignProjection.description.ilike(pattern, escape="\\"),
            )
        )
    ).scalars()
    lowered = q.lower()
    for row in rows:
        if lowered in row.id.lower():
            _hit(row.id, "campaign_id", row.id)
        if lowered in row.lego_campaign_code.lower():
            _hit(row.id, "lego_code", row.lego_campaign_code)
        if row.description and lowered in row.description.lower():
            _hit(row.id, "description", row.description)

    tracking = EventRecord.event_data["trackingRef"].as_string()
    for ev_stream, value in s.execute(
        select(EventRecord.stream_id, tracking).where(
            EventRecord.event_type.in_((INBOUND_SHIPMENT_RECORDED, TRANSFER_TO_RGE_RECORDED, RETURN_TO_LEGO_RECORDED)),
            tracking.ilike(pattern, escape="\\"),
        )
    ):
        _hit(ev_stream, "tracking", value)

    po = EventRecord.event_data["poNumber"].as_string()
    for ev_stream, value in s.execute(
        select(EventRecord.stream_id, po).where(
            EventRecord.event_type == MANUFACTURING_STARTED,
            po.ilike(pattern, escape="\\"),
        )
    ):
        _hit(ev_stream, "po", value)

    if not hits:
        return []
    projections = {
        row.id: row
        for row in s.execute(select(CampaignProjection).where(CampaignProjection.id.in_(list(hits)))).scalars()
    }
    results = [
        SearchResult(
            campaign_id=cid,
            lego_campaign_code=projections[cid].lego_campaign_code,
            status=projections[cid].status,
            description=projections[cid].description,
            match_type=match_type,
            match_value=value,
        )
        for cid, (match_type, value) in hits.items()
        if cid in projections
    ]
    results.sort(key=lambda r: (_MATCH_PRIORITY.index(r.match_type), r.lego_campaign_code))
    return results[:limit]


def campaign_to_dict(row: CampaignProjection) -> dict:
    d = row.to_dict()
    d["status_order"] = STATUS_ORDER[row.status]
    d["total_steps"] = len(CAMPAIGN_STATUSES)
    return d


def state_to_dict(state: CampaignState) -> dict:
    d = asdict(state)
    for key in ("last_event_at", "created_at", "updated_at", "completed_at"):
        d[key] = isoformat(d[key])
    return d
