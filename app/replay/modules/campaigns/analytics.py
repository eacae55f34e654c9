"""
Dashboard aggregates over the event log and the campaign projections.

Payload values are read with their corrections applied, so a corrected weight
counts at its corrected value. Values are parsed leniently: a payload number
stored as text still counts, an unreadable one is ignored.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.replay.constants import (
    CO2E_SAVED_PER_UNIT_KG,
    EVENT_CORRECTED,
    INBOUND_SHIPMENT_RECORDED,
    MANUFACTURING_COMPLETED,
    YIELD_KEYS,
)
from app.replay.utils import parse_number

from .models import CampaignProjection, EventRecord
from .projections import effective_event_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverviewMetrics:
    total_processed_kg: float
    active_campaigns: int
    completed_campaigns: int
    total_units_produced: float
    co2e_saved_kg: float

    def to_dict(self) -> dict:
        return {
            "totalProcessedKg": self.total_processed_kg,
            "activeCampaigns": self.active_campaigns,
            "completedCampaigns": self.completed_campaigns,
            "totalUnitsProduced": self.total_units_produced,
            "co2eSavedKg": self.co2e_saved_kg,
        }


def _effective_events(
    s: Session, event_types: Iterable[str], *, stream_id: str | None = None
) -> list[tuple[EventRecord, dict[str, Any]]]:
    """Events of the given types in stream order, each paired with its corrected payload."""
    types = list(event_types)
    stmt = select(EventRecord).where(EventRecord.event_type.in_([*types, EVENT_CORRECTED]))
    if stream_id is not None:
        stmt = stmt.where(EventRecord.stream_id == stream_id)
    stmt = stmt.order_by(EventRecord.stream_id.asc(), EventRecord.stream_position.asc())
    rows = list(s.execute(stmt).scalars())

    corrections: dict[str, list[EventRecord]] = {}
    for ev in rows:
        if ev.event_type == EVENT_CORRECTED:
            corrections.setdefault((ev.event_data or {}).get("correctsEventId"), []).append(ev)
    return [
        (ev, effective_event_data(ev, corrections.get(ev.id, ())))
        for ev in rows
        if ev.event_type in types
    ]


def _sum_field(pairs: Iterable[tuple[EventRecord, dict[str, Any]]], field_name: str) -> float:
    return sum(parse_number(data.get(field_name)) or 0.0 for _ev, data in pairs)


def _step_yield(data: dict[str, Any]) -> float | None:
    start = parse_number(data.get("startingWeightKg"))
    out = parse_number(data.get("outputWeightKg"))
    if start is None or start <= 0 or out is None:
        return None
    return out / start


def _with_overall(yields: dict[str, float | None]) -> dict[str, float | None]:
    overall: float | None = 1.0
    for key in YIELD_KEYS.values():
        if yields.get(key) is None:
            overall = None
            break
        overall *= yields[key]
    return {**yields, "overall": overall}


def get_overview_metrics(s: Session) -> OverviewMetrics:
    counts = dict(
        s.execute(select(CampaignProjection.status, func.count(CampaignProjection.id)).group_by(CampaignProjection.status)).all()
    )
    completed = int(counts.get("completed", 0))
    active = int(sum(counts.values())) - completed

    total_kg = _sum_field(_effective_events(s, [INBOUND_SHIPMENT_RECORDED]), "netWeightKg")
    units = _sum_field(_effective_events(s, [MANUFACTURING_COMPLETED]), "actualQuantity")
    return OverviewMetrics(
        total_processed_kg=total_kg,
        active_campaigns=active,
        completed_campaigns=completed,
        total_units_produced=units,
        co2e_saved_kg=units * CO2E_SAVED_PER_UNIT_KG,
    )


def get_yield_averages(s: Session) -> dict[str, float | None]:
    """
    Mean output/starting ratio per processing step over every recorded step event.
    `overall` is the product of the four step means, or None while any step has no data.
    """
    ratios: dict[str, list[float]] = {key: [] for key in YIELD_KEYS.values()}
    for ev, data in _effective_events(s, YIELD_KEYS):
        y = _step_yield(data)
        if y is not None:
            ratios[YIELD_KEYS[ev.event_type]].append(y)
    return _with_overall({key: (sum(vals) / len(vals) if vals else None) for key, vals in ratios.items()})


def get_throughput_by_month(s: Session) -> list[dict[str, Any]]:
    """Inbound net weight per calendar month of recording, oldest first."""
    totals: dict[str, float] = {}
    for ev, data in _effective_events(s, [INBOUND_SHIPMENT_RECORDED]):
        month = ev.created_at.strftime("%Y-%m")
        totals[month] = totals.get(month, 0.0) + (parse_number(data.get("netWeightKg")) or 0.0)
    return [{"month": month, "processedKg": kg} for month, kg in sorted(totals.items())]


def get_latest_campaign_yields(s: Session) -> dict[str, float | None]:
    """Per-step yields of the campaign that most recently recorded a processing step."""
    yields: dict[str, float | None] = {key: None for key in YIELD_KEYS.values()}
    latest = s.execute(
        select(EventRecord.stream_id)
        .where(EventRecord.event_type.in_(list(YIELD_KEYS)))
        .order_by(EventRecord.created_at.desc(), EventRecord.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None:
        return _with_overall(yields)

    for ev, data in _effective_events(s, YIELD_KEYS, stream_id=latest):
        # later events of the same step replace earlier ones
        yields[YIELD_KEYS[ev.event_type]] = _step_yield(data)
    return _with_overall(yields)


def get_analytics(s: Session, *, include_latest_yields: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "overview": get_overview_metrics(s).to_dict(),
        "yields": get_yield_averages(s),
        "throughput": get_throughput_by_month(s),
    }
    if include_latest_yields:
        out["latestYields"] = get_latest_campaign_yields(s)
    logger.debug("ANALYTICS: computed overview=%s", out["overview"])
    return out
