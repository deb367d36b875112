from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261008_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None

_COUNT_COLUMNS = (
    "item_count",
    "movie_count",
    "episode_count",
    "show_count",
    "count_4k",
    "count_1080p",
    "count_720p",
    "count_sd",
    "hevc_count",
    "h264_count",
    "av1_count",
)


def upgrade() -> None:
    op.create_table(
        "library_snapshots",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("server_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("library_id", sa.String(length=100), nullable=False),
        sa.Column("snapshot_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_size", sa.BigInteger(), nullable=False, server_default="0"),
        *[
            sa.Column(name, sa.Integer(), nullable=False, server_default="0")
            for name in _COUNT_COLUMNS
        ],
    )
    op.create_index(
        "library_snapshots_server_library_time_idx",
        "library_snapshots",
        ["server_id", "library_id", "snapshot_time"],
    )


def downgrade() -> None:
    op.drop_index(
        "library_snapshots_server_library_time_idx", table_name="library_snapshots"
    )
    op.drop_table("library_snapshots")
