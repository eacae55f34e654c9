"""initial event store, campaign projections and auth tables

Revision ID: 4e7a1c9b2d30
Revises:
Create Date: 2026-10-19 09:12:41.508217

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4e7a1c9b2d30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=40), primary_key=True, nullable=False),
        sa.Column("stream_type", sa.String(length=32), nullable=False),
        sa.Column("stream_id", sa.String(length=40), nullable=False),
        sa.Column("stream_position", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("user_id", sa.String(length=320), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.UniqueConstraint("stream_type", "stream_id", "stream_position", name="uq_events_stream_position"),
    )
    op.create_index("idx_events_stream", "events", ["stream_type", "stream_id"])
    op.create_index("idx_events_type", "events", ["event_type"])
    op.create_index("idx_events_created_at", "events", ["created_at"])

    op.create_table(
        "campaign_projections",
        sa.Column("id", sa.String(length=40), primary_key=True, nullable=False),
        sa.Column("lego_campaign_code", sa.String(length=128), nullable=False, unique=True),
        sa.Column("material_type", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=False),
        sa.Column("current_step", sa.String(length=128), nullable=True),
        sa.Column("current_weight_kg", sa.Float(), nullable=True),
        sa.Column("weight_source_event_type", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("echa_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_expected_step", sa.String(length=128), nullable=True),
        sa.Column("last_event_type", sa.String(length=64), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=False), nullable=True),
    )
    op.create_index("idx_campaign_projections_status", "campaign_projections", ["status"])
    op.create_index("idx_campaign_projections_updated_at", "campaign_projections", ["updated_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_campaign_projections_updated_at", table_name="campaign_projections")
    op.drop_index("idx_campaign_projections_status", table_name="campaign_projections")
    op.drop_table("campaign_projections")
    op.drop_index("idx_events_created_at", table_name="events")
    op.drop_index("idx_events_type", table_name="events")
    op.drop_index("idx_events_stream", table_name="events")
    op.drop_table("events")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
