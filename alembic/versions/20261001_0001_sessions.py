from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # TimescaleDB is optional: install it only where the server ships it.
    op.execute(
        "DO $$ BEGIN "
        "IF EXISTS (SELECT 1 FROM pg_available_extensions WHERE name = 'timescaledb') THEN "
        "CREATE EXTENSION IF NOT EXISTS timescaledb; "
        "END IF; "
        "END $$"
    )

    op.create_table(
        "sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("server_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("server_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("session_key", sa.String(length=255), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("media_type", sa.String(length=20), nullable=False),
        sa.Column("media_title", sa.Text(), nullable=False),
        sa.Column("grandparent_title", sa.Text(), nullable=True),
        sa.Column("season_number", sa.Integer(), nullable=True),
        sa.Column("episode_number", sa.Integer(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("thumb_path", sa.String(length=500), nullable=True),
        sa.Column("rating_key", sa.String(length=255), nullable=True),
        sa.Column(
            "started_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("stopped_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("total_duration_ms", sa.BigInteger(), nullable=True),
        sa.Column("reference_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("watched", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("geo_lat", sa.Float(), nullable=True),
        sa.Column("geo_lon", sa.Float(), nullable=True),
        sa.Column("device_id", sa.String(length=255), nullable=True),
        sa.Column("quality", sa.String(length=100), nullable=True),
        sa.Column("is_transcode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("bitrate", sa.Integer(), nullable=True),
        sa.Column("artist_name", sa.String(length=255), nullable=True),
        sa.Column("album_name", sa.String(length=255), nullable=True),
        sa.Column("channel_identifier", sa.String(length=255), nullable=True),
        sa.Column("channel_title", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "sessions_server_user_time_idx", "sessions", ["server_user_id", "started_at"]
    )
    op.create_index("sessions_server_time_idx", "sessions", ["server_id", "started_at"])

    op.create_table(
        "violations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("server_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey(
                "sessions.id",
                name="violations_session_id_sessions_id_fk",
                ondelete="CASCADE",
            ),
            nullable=True,
        ),
        sa.Column("rule_type", sa.String(length=50), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column(
            "data",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("violations_server_user_id_idx", "violations", ["server_user_id"])
    op.create_index("violations_created_at_idx", "violations", ["created_at"])


def downgrade() -> None:
    op.drop_index("violations_created_at_idx", table_name="violations")
    op.drop_index("violations_server_user_id_idx", table_name="violations")
    op.drop_table("violations")
    op.drop_index("sessions_server_time_idx", table_name="sessions")
    op.drop_index("sessions_server_user_time_idx", table_name="sessions")
    op.drop_table("sessions")
