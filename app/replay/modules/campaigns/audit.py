"""
Corrections audit log: EventCorrected entries joined with campaign context.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.replay.constants import EVENT_CORRECTED
from app.replay.utils import isoformat

from .models import CampaignProjection, EventRecord

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class AuditFilters:
    campaign_id: str | None = None
    start_date: date | None = None
    end_date: date | None = None


@dataclass(frozen=True)
class AuditPage:
    entries: list[dict]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def to_dict(self) -> dict:
        return {
            "entries": self.entries,
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "total_pages": self.total_pages,
            },
        }


def _entry(ev: EventRecord, campaign_code: str) -> dict:
    data = ev.event_data or {}
    return {
        "id": ev.id,
        "campaign_id": ev.stream_id,
        "campaign_code": campaign_code,
        "corrected_event_id": data.get("correctsEventId"),
        "corrected_event_type": data.get("correctsEventType"),
        "reason": data.get("reason"),
        "changes": data.get("changes") or {},
        "user_id": ev.user_id,
        "created_at": isoformat(ev.created_at),
    }


def get_audit_entries(
    s: Session,
    filters: AuditFilters | None = None,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> AuditPage:
    f = filters or AuditFilters()
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    conditions = [EventRecord.event_type == EVENT_CORRECTED]
    if f.campaign_id:
        conditions.append(EventRecord.stream_id == f.campaign_id)
    if f.start_date:
        conditions.append(EventRecord.created_at >= datetime.combine(f.start_date, datetime.min.time()))
    if f.end_date:
        # end_date is inclusive of the whole day
        end = datetime.combine(f.end_date, datetime.min.time()) + timedelta(days=1)
        conditions.append(EventRecord.created_at < end)

    base = select(EventRecord, CampaignProjection.lego_campaign_code).join(
        CampaignProjection, CampaignProjection.id == EventRecord.stream_id
    ).where(*conditions)
    total = s.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = s.execute(
        base.order_by(EventRecord.created_at.desc(), EventRecord.id.desc()).limit(limit).offset((page - 1) * limit)
    ).all()
    return AuditPage(entries=[_entry(ev, code) for ev, code in rows], page=page, limit=limit, total=total)


def get_audited_campaigns(s: Session) -> list[dict]:
    """Campaigns that have at least one correction, for filter dropdowns."""
    rows = s.execute(
        select(CampaignProjection.id, CampaignProjection.lego_campaign_code)
        .where(
            CampaignProjection.id.in_(
                select(EventRecord.stream_id).where(EventRecord.event_type == EVENT_CORRECTED)
            )
        )
        .order_by(CampaignProjection.lego_campaign_code.asc())
    ).all()
    return [{"id": cid, "code": code} for cid, code in rows]
