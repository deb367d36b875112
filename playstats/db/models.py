from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaybackSession(Base):
    """One playback session fact; written by the poller, never updated once closed."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("sessions_server_user_time_idx", "server_user_id", "started_at"),
        Index("sessions_server_time_idx", "server_id", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    server_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True))
    server_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True))
    session_key: Mapped[str] = mapped_column(String(255))
    state: Mapped[str] = mapped_column(String(20))
    media_type: Mapped[str] = mapped_column(String(20))
    media_title: Mapped[str] = mapped_column(Text)
    grandparent_title: Mapped[str | None] = mapped_column(Text)
    season_number: Mapped[int | None] = mapped_column(Integer)
    episode_number: Mapped[int | None] = mapped_column(Integer)
    year: Mapped[int | None] = mapped_column(Integer)
    thumb_path: Mapped[str | None] = mapped_column(String(500))
    rating_key: Mapped[str | None] = mapped_column(String(255))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(BigInteger)
    total_duration_ms: Mapped[int | None] = mapped_column(BigInteger)
    # First session of a resume chain; NULL for the chain root.
    reference_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    watched: Mapped[bool] = mapped_column(Boolean, default=False)
    ip_address: Mapped[str] = mapped_column(String(45))
    geo_lat: Mapped[float | None] = mapped_column(Float)
    geo_lon: Mapped[float | None] = mapped_column(Float)
    device_id: Mapped[str | None] = mapped_column(String(255))
    quality: Mapped[str | None] = mapped_column(String(100))
    is_transcode: Mapped[bool] = mapped_column(Boolean, default=False)
    bitrate: Mapped[int | None] = mapped_column(Integer)
    artist_name: Mapped[str | None] = mapped_column(String(255))
    album_name: Mapped[str | None] = mapped_column(String(255))
    channel_identifier: Mapped[str | None] = mapped_column(String(255))
    channel_title: Mapped[str | None] = mapped_column(String(255))


class Violation(Base):
    __tablename__ = "violations"
    __table_args__ = (
        Index("violations_server_user_id_idx", "server_user_id"),
        Index("violations_created_at_idx", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    server_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True))
    # Becomes an index-backed, application-enforced reference once sessions is
    # a hypertable.
    session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sessions.id", ondelete="CASCADE")
    )
    rule_type: Mapped[str] = mapped_column(String(50))
    severity: Mapped[str] = mapped_column(String(20))
    data: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class LibrarySnapshot(Base):
    __tablename__ = "library_snapshots"
    __table_args__ = (
        Index("library_snapshots_server_library_time_idx", "server_id", "library_id", "snapshot_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    server_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True))
    library_id: Mapped[str] = mapped_column(String(100))
    snapshot_time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    total_size: Mapped[int] = mapped_column(BigInteger, default=0)
    movie_count: Mapped[int] = mapped_column(Integer, default=0)
    episode_count: Mapped[int] = mapped_column(Integer, default=0)
    show_count: Mapped[int] = mapped_column(Integer, default=0)
    count_4k: Mapped[int] = mapped_column(Integer, default=0)
    count_1080p: Mapped[int] = mapped_column(Integer, default=0)
    count_720p: Mapped[int] = mapped_column(Integer, default=0)
    count_sd: Mapped[int] = mapped_column(Integer, default=0)
    hevc_count: Mapped[int] = mapped_column(Integer, default=0)
    h264_count: Mapped[int] = mapped_column(Integer, default=0)
    av1_count: Mapped[int] = mapped_column(Integer, default=0)
