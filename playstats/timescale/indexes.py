from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SupplementalIndex:
    name: str
    table: str
    columns: str
    where: str | None = None
    include: str | None = None

    def create_sql(self) -> str:
        sql = f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table} ({self.columns})"
        if self.include:
            sql += f" INCLUDE ({self.include})"
        if self.where:
            sql += f" WHERE {self.where}"
        return sql


PARTIAL_INDEXES = (
    SupplementalIndex(
        name="idx_sessions_geo_partial",
        table="sessions",
        columns="geo_lat, geo_lon, started_at DESC",
        where="geo_lat IS NOT NULL AND geo_lon IS NOT NULL",
    ),
    SupplementalIndex(
        name="idx_violations_unacked_partial",
        table="violations",
        columns="server_user_id, created_at DESC",
        where="acknowledged_at IS NULL",
    ),
    SupplementalIndex(
        name="idx_violations_unacked_list",
        table="violations",
        columns="created_at DESC",
        where="acknowledged_at IS NULL",
    ),
    SupplementalIndex(
        name="idx_sessions_active_partial",
        table="sessions",
        columns="server_id, server_user_id, started_at DESC",
        where="state = 'playing'",
    ),
    SupplementalIndex(
        name="idx_sessions_transcode_partial",
        table="sessions",
        columns="started_at DESC, quality, bitrate",
        where="is_transcode = true",
    ),
    SupplementalIndex(
        name="idx_sessions_music_partial",
        table="sessions",
        columns="started_at DESC, artist_name, album_name",
        where="media_type = 'track'",
    ),
    SupplementalIndex(
        name="idx_sessions_live_tv_partial",
        table="sessions",
        columns="started_at DESC, channel_identifier, channel_title",
        where="media_type = 'live'",
    ),
)

# Time-prefixed so top-content queries over a window stay index scans.
CONTENT_INDEXES = (
    SupplementalIndex(
        name="idx_sessions_media_time",
        table="sessions",
        columns="started_at DESC, media_type, media_title",
    ),
    SupplementalIndex(
        name="idx_sessions_show_time",
        table="sessions",
        columns="started_at DESC, grandparent_title, season_number, episode_number",
        where="grandparent_title IS NOT NULL",
    ),
    SupplementalIndex(
        name="idx_sessions_top_content_covering",
        table="sessions",
        columns="started_at DESC, media_title, media_type",
        include="duration_ms, server_user_id",
    ),
    SupplementalIndex(
        name="idx_sessions_device_tracking",
        table="sessions",
        columns="server_user_id, started_at DESC, device_id, ip_address",
    ),
)

SUPPLEMENTAL_INDEXES = PARTIAL_INDEXES + CONTENT_INDEXES


def create_supplemental_indexes(connection: Connection) -> list[str]:
    """Create query-acceleration indexes, skipping any the database rejects."""
    created: list[str] = []
    for index in SUPPLEMENTAL_INDEXES:
        try:
            connection.execute(text(index.create_sql()))
        except SQLAlchemyError as exc:
            logger.warning(
                "timescale_index_failed",
                extra={"index": index.name, "detail": str(exc)},
            )
            continue
        created.append(index.name)
    return created
