"""Declarative catalog of continuous aggregates and the views built on them.

Every component that creates, drops, refreshes or rebuilds TimescaleDB objects
iterates these tables; nothing else in the package names an aggregate.

Bump ``AGGREGATE_SCHEMA_VERSION`` whenever a query, a refresh policy or the set
of aggregates changes. Installations that recorded an older version rebuild
every aggregate and derived view on their next start.

Version history:
- 1: Initial definitions
- 2: Restricted play aggregates to movies and episodes
- 3: Added daily_bandwidth_by_user
- 4: Added library_stats_daily and content_quality_daily
- 5: Toolkit and exact variants expose the same play_count/user_count columns
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field


AGGREGATE_SCHEMA_VERSION = 5

SESSIONS_TABLE = "sessions"
LIBRARY_SNAPSHOTS_TABLE = "library_snapshots"
FACT_TABLES = (SESSIONS_TABLE, LIBRARY_SNAPSHOTS_TABLE)

# Precision (register count) for toolkit hyperloglog sketches, ~0.6% error.
HLL_BUCKETS = 32768

_PRIMARY_MEDIA_FILTER = "media_type IN ('movie', 'episode')"
_PLAY_ID = "COALESCE(reference_id, id)"

# Aggregates shipped by earlier releases that must not linger.
RETIRED_AGGREGATES = (
    "daily_plays_by_platform",
    "daily_play_patterns",
    "hourly_play_patterns",
)


class RegistryError(ValueError):
    pass


@dataclass(frozen=True)
class RefreshPolicy:
    start_offset: str
    end_offset: str
    schedule_interval: str


@dataclass(frozen=True)
class AggregateDefinition:
    name: str
    source_table: str
    primary_query: str
    refresh_policy: RefreshPolicy
    # Exact-count variant used when timescaledb_toolkit is missing. None means
    # the primary query does not need the toolkit.
    fallback_query: str | None = None
    tier: int = 0

    @property
    def requires_toolkit(self) -> bool:
        return self.fallback_query is not None

    def query(self, use_primary: bool) -> str:
        if use_primary or self.fallback_query is None:
            return self.primary_query
        return self.fallback_query

    def create_sql(self, use_primary: bool) -> str:
        return (
            f"CREATE MATERIALIZED VIEW IF NOT EXISTS {self.name} "
            "WITH (timescaledb.continuous, timescaledb.materialized_only = false) AS "
            f"{self.query(use_primary).strip()} "
            "WITH NO DATA"
        )

    def fingerprint(self) -> str:
        return _hash_json(asdict(self))


@dataclass(frozen=True)
class DerivedView:
    name: str
    query: str
    depends_on: tuple[str, ...] = field(default_factory=tuple)

    def create_sql(self) -> str:
        return f"CREATE OR REPLACE VIEW {self.name} AS {self.query.strip()}"

    def fingerprint(self) -> str:
        return _hash_json(asdict(self))


def _hash_json(payload: object) -> str:
    normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


_DAILY = RefreshPolicy(start_offset="3 days", end_offset="1 hour", schedule_interval="5 minutes")


AGGREGATES: tuple[AggregateDefinition, ...] = (
    AggregateDefinition(
        name="daily_plays_by_user",
        source_table=SESSIONS_TABLE,
        primary_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_user_id,
              distinct_count(hyperloglog({HLL_BUCKETS}, {_PLAY_ID}))::bigint AS play_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day, server_user_id
        """,
        fallback_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_user_id,
              COUNT(DISTINCT {_PLAY_ID})::bigint AS play_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day, server_user_id
        """,
        refresh_policy=_DAILY,
    ),
    AggregateDefinition(
        name="daily_plays_by_server",
        source_table=SESSIONS_TABLE,
        primary_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_id,
              distinct_count(hyperloglog({HLL_BUCKETS}, {_PLAY_ID}))::bigint AS play_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day, server_id
        """,
        fallback_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_id,
              COUNT(DISTINCT {_PLAY_ID})::bigint AS play_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day, server_id
        """,
        refresh_policy=_DAILY,
    ),
    AggregateDefinition(
        name="daily_stats_summary",
        source_table=SESSIONS_TABLE,
        primary_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              distinct_count(hyperloglog({HLL_BUCKETS}, {_PLAY_ID}))::bigint AS play_count,
              distinct_count(hyperloglog({HLL_BUCKETS}, server_user_id))::bigint AS user_count,
              distinct_count(hyperloglog({HLL_BUCKETS}, server_id))::bigint AS server_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms,
              AVG(COALESCE(duration_ms, 0))::bigint AS avg_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day
        """,
        fallback_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              COUNT(DISTINCT {_PLAY_ID})::bigint AS play_count,
              COUNT(DISTINCT server_user_id)::bigint AS user_count,
              COUNT(DISTINCT server_id)::bigint AS server_count,
              SUM(COALESCE(duration_ms, 0))::bigint AS total_duration_ms,
              AVG(COALESCE(duration_ms, 0))::bigint AS avg_duration_ms
            FROM sessions
            WHERE {_PRIMARY_MEDIA_FILTER}
            GROUP BY day
        """,
        refresh_policy=_DAILY,
    ),
    AggregateDefinition(
        name="hourly_concurrent_streams",
        source_table=SESSIONS_TABLE,
        primary_query=f"""
            SELECT
              time_bucket('1 hour', started_at) AS hour,
              server_id,
              COUNT(*) AS stream_count
            FROM sessions
            WHERE state IN ('playing', 'paused')
              AND {_PRIMARY_MEDIA_FILTER}
            GROUP BY hour, server_id
        """,
        refresh_policy=RefreshPolicy(
            start_offset="1 day", end_offset="1 hour", schedule_interval="5 minutes"
        ),
    ),
    AggregateDefinition(
        name="daily_content_engagement",
        source_table=SESSIONS_TABLE,
        primary_query=f"""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_user_id,
              rating_key,
              MAX(media_title) AS media_title,
              MAX(grandparent_title) AS show_title,
              MAX(media_type) AS media_type,
              MAX(total_duration_ms) AS content_duration_ms,
              MAX(thumb_path) AS thumb_path,
              MAX(server_id::text)::uuid AS server_id,
              MAX(season_number) AS season_number,
              MAX(episode_number) AS episode_number,
              MAX(year) AS year,
              SUM(CASE WHEN duration_ms >= 120000 THEN duration_ms ELSE 0 END) AS watched_ms,
              COUNT(*) FILTER (WHERE duration_ms >= 120000) AS valid_session_count,
              COUNT(*) AS total_session_count,
              BOOL_OR(watched) AS any_marked_watched
            FROM sessions
            WHERE rating_key IS NOT NULL
              AND total_duration_ms > 0
              AND {_PRIMARY_MEDIA_FILTER}
            GROUP BY day, server_user_id, rating_key
        """,
        refresh_policy=RefreshPolicy(
            start_offset="7 days", end_offset="1 hour", schedule_interval="15 minutes"
        ),
    ),
    AggregateDefinition(
        name="daily_bandwidth_by_user",
        source_table=SESSIONS_TABLE,
        # total_bits_ms / 8 / 1000 is megabytes transferred.
        primary_query="""
            SELECT
              time_bucket('1 day', started_at) AS day,
              server_id,
              server_user_id,
              COUNT(*) AS session_count,
              SUM(COALESCE(bitrate, 0)::bigint * COALESCE(duration_ms, 0)::bigint) AS total_bits_ms,
              AVG(COALESCE(bitrate, 0))::bigint AS avg_bitrate,
              MAX(COALESCE(bitrate, 0)) AS peak_bitrate,
              SUM(COALESCE(duration_ms, 0)) AS total_duration_ms
            FROM sessions
            WHERE started_at IS NOT NULL
            GROUP BY day, server_id, server_user_id
        """,
        refresh_policy=RefreshPolicy(
            start_offset="3 days", end_offset="1 hour", schedule_interval="1 hour"
        ),
    ),
    # Snapshots taken within one day describe the same library state: MAX, not SUM.
    AggregateDefinition(
        name="library_stats_daily",
        source_table=LIBRARY_SNAPSHOTS_TABLE,
        primary_query="""
            SELECT
              time_bucket('1 day', snapshot_time) AS day,
              server_id,
              library_id,
              MAX(item_count) AS total_items,
              MAX(total_size) AS total_size_bytes,
              MAX(movie_count) AS movie_count,
              MAX(episode_count) AS episode_count,
              MAX(show_count) AS show_count,
              MAX(count_4k) AS count_4k,
              MAX(count_1080p) AS count_1080p,
              MAX(count_720p) AS count_720p,
              MAX(count_sd) AS count_sd
            FROM library_snapshots
            GROUP BY day, server_id, library_id
        """,
        refresh_policy=RefreshPolicy(
            start_offset="7 days", end_offset="1 hour", schedule_interval="1 hour"
        ),
    ),
    AggregateDefinition(
        name="content_quality_daily",
        source_table=LIBRARY_SNAPSHOTS_TABLE,
        primary_query="""
            SELECT
              time_bucket('1 day', snapshot_time) AS day,
              server_id,
              MAX(item_count) AS total_items,
              MAX(count_4k) AS count_4k,
              MAX(count_1080p) AS count_1080p,
              MAX(count_720p) AS count_720p,
              MAX(count_sd) AS count_sd,
              MAX(hevc_count) AS hevc_count,
              MAX(h264_count) AS h264_count,
              MAX(av1_count) AS av1_count
            FROM library_snapshots
            GROUP BY day, server_id
        """,
        refresh_policy=RefreshPolicy(
            start_offset="7 days", end_offset="1 hour", schedule_interval="1 hour"
        ),
    ),
)


DERIVED_VIEWS: tuple[DerivedView, ...] = (
    DerivedView(
        name="content_engagement_summary",
        depends_on=("daily_content_engagement",),
        query="""
            SELECT
              server_user_id,
              rating_key,
              MAX(media_title) AS media_title,
              MAX(show_title) AS show_title,
              MAX(media_type) AS media_type,
              MAX(content_duration_ms) AS content_duration_ms,
              MAX(thumb_path) AS thumb_path,
              MAX(server_id::text)::uuid AS server_id,
              MAX(season_number) AS season_number,
              MAX(episode_number) AS episode_number,
              MAX(year) AS year,
              SUM(watched_ms) AS cumulative_watched_ms,
              SUM(valid_session_count) AS valid_sessions,
              SUM(total_session_count) AS total_sessions,
              MIN(day) AS first_watched_at,
              MAX(day) AS last_watched_at,
              BOOL_OR(any_marked_watched) AS ever_marked_watched,
              CASE
                WHEN MAX(content_duration_ms) > 0 THEN
                  ROUND(100.0 * SUM(watched_ms) / MAX(content_duration_ms), 1)
                ELSE 0
              END AS completion_pct,
              CASE
                WHEN MAX(content_duration_ms) > 0 THEN
                  GREATEST(0, FLOOR(SUM(watched_ms)::float / MAX(content_duration_ms)))::int
                ELSE 0
              END AS plays,
              CASE
                WHEN MAX(content_duration_ms) > 0 THEN
                  CASE
                    WHEN SUM(watched_ms) >= MAX(content_duration_ms) * 2.0 THEN 'rewatched'
                    WHEN SUM(watched_ms) >= MAX(content_duration_ms) * 1.0 THEN 'finished'
                    WHEN SUM(watched_ms) >= MAX(content_duration_ms) * 0.8 THEN 'completed'
                    WHEN SUM(watched_ms) >= MAX(content_duration_ms) * 0.5 THEN 'engaged'
                    WHEN SUM(watched_ms) >= MAX(content_duration_ms) * 0.2 THEN 'sampled'
                    ELSE 'abandoned'
                  END
                ELSE 'unknown'
              END AS engagement_tier
            FROM daily_content_engagement
            GROUP BY server_user_id, rating_key
        """,
    ),
    DerivedView(
        name="episode_continuity_stats",
        depends_on=(SESSIONS_TABLE,),
        query="""
            WITH episode_timeline AS (
              SELECT
                server_user_id,
                grandparent_title AS show_title,
                rating_key,
                started_at,
                stopped_at,
                EXTRACT(EPOCH FROM (
                  started_at - LAG(stopped_at) OVER (
                    PARTITION BY server_user_id, grandparent_title
                    ORDER BY started_at
                  )
                )) / 60 AS gap_minutes
              FROM sessions
              WHERE media_type = 'episode'
                AND grandparent_title IS NOT NULL
                AND duration_ms >= 120000
                AND stopped_at IS NOT NULL
            )
            SELECT
              server_user_id,
              show_title,
              COUNT(*) AS total_episode_watches,
              COUNT(*) FILTER (WHERE gap_minutes IS NOT NULL AND gap_minutes <= 30) AS consecutive_episodes,
              ROUND(100.0 * COUNT(*) FILTER (WHERE gap_minutes IS NOT NULL AND gap_minutes <= 30)
                    / NULLIF(COUNT(*) - 1, 0), 1) AS consecutive_pct,
              ROUND(AVG(gap_minutes) FILTER (WHERE gap_minutes IS NOT NULL AND gap_minutes <= 480), 1) AS avg_gap_minutes
            FROM episode_timeline
            GROUP BY server_user_id, show_title
            HAVING COUNT(*) >= 2
        """,
    ),
    DerivedView(
        name="daily_show_intensity",
        depends_on=("daily_content_engagement",),
        query="""
            SELECT
              server_user_id,
              show_title,
              day,
              COUNT(DISTINCT rating_key) AS episodes_watched_this_day
            FROM daily_content_engagement
            WHERE media_type = 'episode'
              AND show_title IS NOT NULL
              AND valid_session_count > 0
            GROUP BY server_user_id, show_title, day
        """,
    ),
    DerivedView(
        name="show_engagement_summary",
        depends_on=("content_engagement_summary", "daily_show_intensity"),
        query="""
            WITH intensity_stats AS (
              SELECT
                server_user_id,
                show_title,
                COUNT(DISTINCT day) AS total_viewing_days,
                MAX(episodes_watched_this_day) AS max_episodes_in_one_day,
                ROUND(AVG(episodes_watched_this_day), 1) AS avg_episodes_per_viewing_day
              FROM daily_show_intensity
              GROUP BY server_user_id, show_title
            )
            SELECT
              ces.server_user_id,
              ces.show_title,
              MAX(ces.server_id::text)::uuid AS server_id,
              MAX(ces.thumb_path) AS thumb_path,
              MAX(ces.year) AS year,
              COUNT(DISTINCT ces.rating_key) AS unique_episodes_watched,
              COUNT(DISTINCT CONCAT(ces.season_number, '-', ces.episode_number)) AS unique_episode_numbers,
              SUM(ces.plays) AS total_episode_plays,
              SUM(ces.cumulative_watched_ms) AS total_watched_ms,
              ROUND(SUM(ces.cumulative_watched_ms) / 1000.0 / 60 / 60, 1) AS total_watch_hours,
              SUM(ces.valid_sessions) AS total_valid_sessions,
              SUM(ces.total_sessions) AS total_all_sessions,
              MIN(ces.first_watched_at) AS first_watched_at,
              MAX(ces.last_watched_at) AS last_watched_at,
              EXTRACT(DAYS FROM (MAX(ces.last_watched_at) - MIN(ces.first_watched_at)))::int AS viewing_span_days,
              COALESCE(ist.total_viewing_days, 1) AS total_viewing_days,
              COALESCE(ist.max_episodes_in_one_day, 1) AS max_episodes_in_one_day,
              COALESCE(ist.avg_episodes_per_viewing_day, 1.0) AS avg_episodes_per_viewing_day,
              COUNT(*) FILTER (WHERE ces.engagement_tier IN ('completed', 'finished', 'rewatched')) AS completed_episodes,
              COUNT(*) FILTER (WHERE ces.engagement_tier = 'abandoned') AS abandoned_episodes,
              ROUND(100.0 * COUNT(*) FILTER (WHERE ces.engagement_tier IN ('completed', 'finished', 'rewatched'))
                    / NULLIF(COUNT(*), 0), 1) AS episode_completion_rate
            FROM content_engagement_summary ces
            LEFT JOIN intensity_stats ist
              ON ces.server_user_id = ist.server_user_id AND ces.show_title = ist.show_title
            WHERE ces.media_type = 'episode' AND ces.show_title IS NOT NULL
            GROUP BY ces.server_user_id, ces.show_title, ist.total_viewing_days,
                     ist.max_episodes_in_one_day, ist.avg_episodes_per_viewing_day
        """,
    ),
    DerivedView(
        name="top_content_by_plays",
        depends_on=("content_engagement_summary",),
        query="""
            SELECT
              rating_key,
              media_title,
              show_title,
              media_type,
              content_duration_ms,
              thumb_path,
              server_id,
              year,
              SUM(plays) AS total_plays,
              SUM(cumulative_watched_ms) AS total_watched_ms,
              ROUND(SUM(cumulative_watched_ms) / 1000.0 / 60 / 60, 1) AS total_watch_hours,
              COUNT(DISTINCT server_user_id) AS unique_viewers,
              SUM(valid_sessions) AS total_valid_sessions,
              SUM(total_sessions) AS total_all_sessions,
              COUNT(*) FILTER (WHERE engagement_tier IN ('completed', 'finished', 'rewatched')) AS completions,
              COUNT(*) FILTER (WHERE engagement_tier = 'rewatched') AS rewatches,
              COUNT(*) FILTER (WHERE engagement_tier = 'abandoned') AS abandonments,
              COUNT(*) FILTER (WHERE engagement_tier = 'sampled') AS samples,
              ROUND(100.0 * COUNT(*) FILTER (WHERE engagement_tier IN ('completed', 'finished', 'rewatched'))
                    / NULLIF(COUNT(*), 0), 1) AS completion_rate,
              ROUND(100.0 * COUNT(*) FILTER (WHERE engagement_tier = 'abandoned')
                    / NULLIF(COUNT(*), 0), 1) AS abandonment_rate
            FROM content_engagement_summary
            GROUP BY rating_key, media_title, show_title, media_type, content_duration_ms,
                     thumb_path, server_id, year
        """,
    ),
    DerivedView(
        name="top_shows_by_engagement",
        depends_on=("show_engagement_summary", "episode_continuity_stats"),
        # binge_score (0-100): 40% volume x completion, 30% daily intensity,
        # 20% continuity, 10% velocity.
        query="""
            SELECT
              ses.show_title,
              MAX(ses.server_id::text)::uuid AS server_id,
              MAX(ses.thumb_path) AS thumb_path,
              MAX(ses.year) AS year,
              SUM(ses.unique_episodes_watched) AS total_episode_views,
              SUM(ses.total_watch_hours) AS total_watch_hours,
              COUNT(DISTINCT ses.server_user_id) AS unique_viewers,
              SUM(ses.total_valid_sessions) AS total_valid_sessions,
              SUM(ses.total_all_sessions) AS total_all_sessions,
              ROUND(AVG(ses.unique_episodes_watched), 1) AS avg_episodes_per_viewer,
              ROUND(AVG(ses.episode_completion_rate), 1) AS avg_completion_rate,
              ROUND(AVG(ses.avg_episodes_per_viewing_day), 1) AS avg_daily_intensity,
              ROUND(AVG(ses.max_episodes_in_one_day), 1) AS avg_max_daily_episodes,
              ROUND(AVG(COALESCE(ecs.consecutive_pct, 0)), 1) AS avg_consecutive_pct,
              ROUND(AVG(
                CASE
                  WHEN ses.viewing_span_days > 0 THEN ses.unique_episodes_watched / (ses.viewing_span_days / 7.0)
                  ELSE ses.unique_episodes_watched * 7
                END
              ), 1) AS avg_velocity,
              ROUND(
                (
                  LEAST(AVG(ses.unique_episodes_watched) * AVG(ses.episode_completion_rate) / 100, 40) * 1.0
                  + LEAST(AVG(ses.avg_episodes_per_viewing_day) * 6, 30)
                  + AVG(COALESCE(ecs.consecutive_pct, 0)) * 0.2
                  + LEAST(AVG(
                      CASE
                        WHEN ses.viewing_span_days > 0 THEN ses.unique_episodes_watched / (ses.viewing_span_days / 7.0)
                        ELSE ses.unique_episodes_watched * 7
                      END
                    ), 20) * 0.5
                ),
              1) AS binge_score
            FROM show_engagement_summary ses
            LEFT JOIN episode_continuity_stats ecs
              ON ses.server_user_id = ecs.server_user_id AND ses.show_title = ecs.show_title
            GROUP BY ses.show_title
        """,
    ),
    DerivedView(
        name="user_engagement_profile",
        depends_on=("content_engagement_summary",),
        query="""
            SELECT
              server_user_id,
              COUNT(DISTINCT rating_key) AS content_started,
              SUM(plays) AS total_plays,
              SUM(cumulative_watched_ms)::bigint AS total_watched_ms,
              ROUND(SUM(cumulative_watched_ms) / 1000.0 / 60 / 60, 1) AS total_watch_hours,
              SUM(valid_sessions) AS valid_session_count,
              SUM(total_sessions) AS total_session_count,
              COUNT(*) FILTER (WHERE engagement_tier = 'abandoned') AS abandoned_count,
              COUNT(*) FILTER (WHERE engagement_tier = 'sampled') AS sampled_count,
              COUNT(*) FILTER (WHERE engagement_tier = 'engaged') AS engaged_count,
              COUNT(*) FILTER (WHERE engagement_tier IN ('completed', 'finished')) AS completed_count,
              COUNT(*) FILTER (WHERE engagement_tier = 'rewatched') AS rewatched_count,
              ROUND(100.0 * COUNT(*) FILTER (WHERE engagement_tier IN ('completed', 'finished', 'rewatched'))
                    / NULLIF(COUNT(*), 0), 1) AS completion_rate,
              CASE
                WHEN COUNT(*) = 0 THEN 'inactive'
                WHEN COUNT(*) FILTER (WHERE engagement_tier = 'rewatched') > COUNT(*) * 0.2 THEN 'rewatcher'
                WHEN COUNT(*) FILTER (WHERE engagement_tier IN ('completed', 'finished', 'rewatched')) > COUNT(*) * 0.7 THEN 'completionist'
                WHEN COUNT(*) FILTER (WHERE engagement_tier = 'abandoned') > COUNT(*) * 0.5 THEN 'sampler'
                ELSE 'casual'
              END AS behavior_type,
              MODE() WITHIN GROUP (ORDER BY media_type) AS favorite_media_type
            FROM content_engagement_summary
            GROUP BY server_user_id
        """,
    ),
)


def aggregate_names(source_table: str | None = None) -> list[str]:
    return [
        definition.name
        for definition in AGGREGATES
        if source_table is None or definition.source_table == source_table
    ]


def aggregates_for(source_table: str) -> list[AggregateDefinition]:
    return [definition for definition in AGGREGATES if definition.source_table == source_table]


def get_aggregate(name: str) -> AggregateDefinition:
    for definition in AGGREGATES:
        if definition.name == name:
            return definition
    raise KeyError(name)


def registry_digest(
    aggregates: tuple[AggregateDefinition, ...] = AGGREGATES,
    views: tuple[DerivedView, ...] = DERIVED_VIEWS,
) -> str:
    """Content address of the whole registry, independent of declaration order."""
    return _hash_json(
        {
            "aggregates": sorted(definition.fingerprint() for definition in aggregates),
            "views": sorted(view.fingerprint() for view in views),
        }
    )


def validate_registry(
    aggregates: tuple[AggregateDefinition, ...] = AGGREGATES,
    views: tuple[DerivedView, ...] = DERIVED_VIEWS,
) -> None:
    names = [definition.name for definition in aggregates] + [view.name for view in views]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise RegistryError(f"Duplicate registry names: {', '.join(duplicates)}")
    for definition in aggregates:
        if definition.tier != 0:
            raise RegistryError(f"Aggregate {definition.name} must be tier 0")
        if definition.source_table not in FACT_TABLES:
            raise RegistryError(
                f"Aggregate {definition.name} reads {definition.source_table}, not a fact table"
            )
    known = set(names) | set(FACT_TABLES)
    for view in views:
        unknown = [dependency for dependency in view.depends_on if dependency not in known]
        if unknown:
            raise RegistryError(
                f"View {view.name} depends on unknown relations: {', '.join(unknown)}"
            )
    derived_view_order(views)


def derived_view_order(
    views: tuple[DerivedView, ...] = DERIVED_VIEWS,
) -> list[DerivedView]:
    """Topological build order; ties keep declaration order."""
    by_name = {view.name: view for view in views}
    pending = {
        view.name: {dependency for dependency in view.depends_on if dependency in by_name}
        for view in views
    }
    ordered: list[DerivedView] = []
    while pending:
        ready = [view.name for view in views if view.name in pending and not pending[view.name]]
        if not ready:
            raise RegistryError(
                f"Derived views form a cycle: {', '.join(sorted(pending))}"
            )
        for name in ready:
            ordered.append(by_name[name])
            del pending[name]
        for dependencies in pending.values():
            dependencies.difference_update(ready)
    return ordered
