from __future__ import annotations

import pytest
from sqlalchemy.exc import ProgrammingError

from playstats.timescale import materializer
from playstats.timescale.probe import CatalogProber
from playstats.timescale.registry import get_aggregate
from tests.utils.fake_timescale import FakeTable, playback_database


def _hypertable_database(**kwargs):
    return playback_database(
        tables=[
            FakeTable("sessions", primary_key=["id", "started_at"], hypertable=True),
            FakeTable("library_snapshots", primary_key=["id", "snapshot_time"], hypertable=True),
        ],
        foreign_keys=[],
        **kwargs,
    )


def test_create_aggregate_uses_exact_variant_without_toolkit() -> None:
    connection = _hypertable_database()
    definition = get_aggregate("daily_stats_summary")

    with pytest.raises(ProgrammingError):
        materializer.create_aggregate(connection, definition, use_primary=True)
    materializer.create_aggregate(connection, definition, use_primary=False)

    assert connection.caggs == {"daily_stats_summary": "sessions"}


def test_create_aggregate_is_idempotent() -> None:
    connection = _hypertable_database(toolkit_installed=True)
    definition = get_aggregate("daily_plays_by_user")

    materializer.create_aggregate(connection, definition, use_primary=True)
    materializer.create_aggregate(connection, definition, use_primary=True)

    assert list(connection.caggs) == ["daily_plays_by_user"]


def test_install_refresh_policy_binds_offsets() -> None:
    connection = _hypertable_database()
    definition = get_aggregate("library_stats_daily")
    materializer.create_aggregate(connection, definition, use_primary=True)

    materializer.install_refresh_policy(connection, definition)

    assert ("refresh", "library_stats_daily") in connection.policies
    sql = connection.executed("add_continuous_aggregate_policy")[0]
    assert "if_not_exists => true" in sql
    assert "7 days" not in sql


def test_drop_if_regular_view_drops_plain_materialized_view() -> None:
    connection = _hypertable_database()
    connection.matviews.add("daily_plays_by_user")
    prober = CatalogProber(connection)

    assert materializer.drop_if_regular_view(connection, prober, "daily_plays_by_user", [])
    assert "daily_plays_by_user" not in connection.matviews


def test_drop_if_regular_view_keeps_continuous_aggregate() -> None:
    connection = _hypertable_database()
    connection.caggs["daily_plays_by_user"] = "sessions"
    prober = CatalogProber(connection)

    dropped = materializer.drop_if_regular_view(
        connection, prober, "daily_plays_by_user", ["daily_plays_by_user"]
    )

    assert not dropped
    assert connection.executed("DROP") == []


def test_drop_if_regular_view_without_view_is_noop() -> None:
    connection = _hypertable_database()
    prober = CatalogProber(connection)

    assert not materializer.drop_if_regular_view(connection, prober, "daily_plays_by_user", [])
    assert connection.executed("DROP") == []


def test_drop_refuses_unregistered_names() -> None:
    connection = _hypertable_database()

    with pytest.raises(ValueError):
        materializer.drop_aggregate(connection, "sessions")
    assert connection.statements == []


def test_drop_retired_aggregates() -> None:
    connection = _hypertable_database()
    connection.caggs["daily_play_patterns"] = "sessions"

    dropped = materializer.drop_retired_aggregates(connection)

    assert "daily_play_patterns" in dropped
    assert "daily_play_patterns" not in connection.caggs


def test_refresh_aggregate_covers_full_range() -> None:
    connection = _hypertable_database()
    connection.caggs["daily_plays_by_server"] = "sessions"

    materializer.refresh_aggregate(connection, "daily_plays_by_server")

    assert connection.refreshed == ["daily_plays_by_server"]
    assert connection.executed("refresh_continuous_aggregate")[0].endswith("NULL, NULL)")
