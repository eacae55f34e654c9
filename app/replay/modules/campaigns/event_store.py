"""
Append-only event store.

The store records what happened; it knows nothing about business rules and
never touches projections. Callers update the projection after a successful
append.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.replay.errors import StorageError
from app.replay.ids import generate_event_id
from app.replay.utils import utcnow

from .models import EventRecord

logger = logging.getLogger(__name__)


def _next_position(s: Session, stream_type: str, stream_id: str) -> int:
    current = s.execute(
        select(func.max(EventRecord.stream_position)).where(
            EventRecord.stream_type == stream_type,
            EventRecord.stream_id == stream_id,
        )
    ).scalar_one_or_none()
    return (current or 0) + 1


def append_event(
    s: Session,
    *,
    stream_type: str,
    stream_id: str,
    event_type: str,
    event_data: dict[str, Any],
    user_id: str,
    created_at: datetime | None = None,
) -> EventRecord:
    try:
        ev = EventRecord(
            id=generate_event_id(),
            stream_type=stream_type,
            stream_id=stream_id,
            stream_position=_next_position(s, stream_type, stream_id),
            event_type=event_type,
            event_data=dict(event_data),
            user_id=user_id,
            created_at=created_at or utcnow(),
        )
        s.add(ev)
        s.flush()
    except SQLAlchemyError as e:
        logger.error("EVENTS: append failed stream=%s/%s type=%s err=%s", stream_type, stream_id, event_type, e)
        raise StorageError("Failed to append event.") from e
    logger.info("EVENTS: appended %s %s to %s (position=%d)", ev.id, event_type, stream_id, ev.stream_position)
    return ev


def get_events_for_stream(s: Session, stream_type: str, stream_id: str) -> list[EventRecord]:
    """Full stream history in append order. Empty list when the stream has no events."""
    return list(
        s.execute(
            select(EventRecord)
            .where(EventRecord.stream_type == stream_type, EventRecord.stream_id == stream_id)
            .order_by(EventRecord.stream_position.asc())
        ).scalars()
    )


def get_events_by_type(s: Session, event_type: str) -> list[EventRecord]:
    return list(
        s.execute(
            select(EventRecord)
            .where(EventRecord.event_type == event_type)
            .order_by(EventRecord.created_at.asc(), EventRecord.id.asc())
        ).scalars()
    )


def get_latest_event_for_stream(s: Session, stream_type: str, stream_id: str) -> EventRecord | None:
    return s.execute(
        select(EventRecord)
        .where(EventRecord.stream_type == stream_type, EventRecord.stream_id == stream_id)
        .order_by(EventRecord.stream_position.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_event_by_id(s: Session, event_id: str) -> EventRecord | None:
    return s.get(EventRecord, event_id)


def list_stream_ids(s: Session, stream_type: str) -> list[str]:
    return list(
        s.execute(
            select(EventRecord.stream_id)
            .where(EventRecord.stream_type == stream_type)
            .group_by(EventRecord.stream_id)
            .order_by(EventRecord.stream_id.asc())
        ).scalars()
    )
