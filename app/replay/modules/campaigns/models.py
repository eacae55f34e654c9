from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.replay.models import Base
from app.replay.utils import isoformat


class EventRecord(Base):
    """
    Append-only domain event. Rows are inserted, never updated or deleted.
    """

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("stream_type", "stream_id", "stream_position", name="uq_events_stream_position"),
        Index("idx_events_stream", "stream_type", "stream_id"),
        Index("idx_events_type", "event_type"),
        Index("idx_events_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)  # evt_<ULID>
    stream_type: Mapped[str] = mapped_column(String(32), nullable=False)  # "campaign"
    stream_id: Mapped[str] = mapped_column(String(40), nullable=False)  # cmp_<ULID>
    stream_position: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based, per stream
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "stream_type": self.stream_type,
            "stream_id": self.stream_id,
            "stream_position": self.stream_position,
            "event_type": self.event_type,
            "event_data": self.event_data,
            "user_id": self.user_id,
            "created_at": isoformat(self.created_at),
        }


class CampaignProjection(Base):
    __tablename__ = "campaign_projections"
    __table_args__ = (
        Index("idx_campaign_projections_status", "status"),
        Index("idx_campaign_projections_updated_at", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    lego_campaign_code: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    material_type: Mapped[str] = mapped_column(String(8), nullable=False)  # PI / PCR
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    current_step: Mapped[str | None] = mapped_column(String(128), nullable=True)
    current_weight_kg: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight_source_event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    echa_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_expected_step: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lego_campaign_code": self.lego_campaign_code,
            "material_type": self.material_type,
            "status": self.status,
            "current_step": self.current_step,
            "current_weight_kg": self.current_weight_kg,
            "description": self.description,
            "echa_approved": self.echa_approved,
            "next_expected_step": self.next_expected_step,
            "last_event_type": self.last_event_type,
            "last_event_at": isoformat(self.last_event_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "completed_at": isoformat(self.completed_at),
        }
