from __future__ import annotations

import logging

from playstats.timescale.probe import CatalogProber
from playstats.timescale.rebuild import AggregateRebuilder, RebuildStep
from playstats.timescale.registry import AGGREGATES, DERIVED_VIEWS, derived_view_order
from playstats.timescale.service import TimescaleConvergence
from tests.utils.fake_timescale import FakeTable, playback_database


def _converged_database(**kwargs):
    connection = playback_database(**kwargs)
    assert TimescaleConvergence(connection).converge().success
    connection.clear_statements()
    connection.refreshed.clear()
    return connection


def _rebuilder(connection) -> AggregateRebuilder:
    return AggregateRebuilder(connection, CatalogProber(connection))


def test_rebuild_recreates_everything_in_order(caplog) -> None:
    caplog.set_level(logging.INFO)
    connection = _converged_database()
    progress: list[tuple[int, int, str]] = []

    result = _rebuilder(connection).rebuild(
        lambda index, total, message: progress.append((index, total, message))
    )

    assert result.success, result.message
    assert result.step is RebuildStep.DONE
    assert sorted(connection.caggs) == sorted(definition.name for definition in AGGREGATES)
    assert sorted(connection.views) == sorted(view.name for view in DERIVED_VIEWS)
    assert sorted(connection.refreshed) == sorted(definition.name for definition in AGGREGATES)

    total = 4 + len(DERIVED_VIEWS) + 1
    assert [index for index, _, _ in progress] == list(range(1, total + 1))
    assert {steps for _, steps, _ in progress} == {total}

    created_views = [
        sql.split()[4] for sql in connection.statements if sql.startswith("CREATE OR REPLACE VIEW")
    ]
    assert created_views == [view.name for view in derived_view_order()]
    first_create = next(
        i for i, sql in enumerate(connection.statements) if sql.startswith("CREATE MATERIALIZED VIEW")
    )
    last_drop = max(i for i, sql in enumerate(connection.statements) if sql.startswith("DROP"))
    assert last_drop < first_create


def test_rebuild_uses_exact_counts_without_toolkit() -> None:
    connection = _converged_database(toolkit_available=False)

    result = _rebuilder(connection).rebuild()

    assert result.success, result.message
    assert connection.executed("hyperloglog(") == []
    assert len(connection.caggs) == len(AGGREGATES)


def test_rebuild_failure_stops_and_reports_step() -> None:
    connection = _converged_database()
    connection.fail_on["CREATE OR REPLACE VIEW top_content_by_plays"] = "column mismatch"

    result = _rebuilder(connection).rebuild()

    assert not result.success
    assert result.step is RebuildStep.REBUILDING_DERIVED_VIEWS
    assert "column mismatch" in result.message
    assert connection.refreshed == []
    assert "top_shows_by_engagement" not in connection.views


def test_progress_callback_errors_do_not_change_outcome() -> None:
    connection = _converged_database()

    def _broken(index: int, total: int, message: str) -> None:
        raise RuntimeError("dashboard offline")

    result = _rebuilder(connection).rebuild(_broken)

    assert result.success


def test_rebuild_without_backfill_skips_refresh() -> None:
    connection = _converged_database()

    result = _rebuilder(connection).rebuild(backfill=False)

    assert result.success
    assert connection.refreshed == []


def test_rebuild_skips_aggregates_of_unconverted_tables() -> None:
    connection = _converged_database()
    connection.tables["library_snapshots"] = FakeTable("library_snapshots")

    result = _rebuilder(connection).rebuild()

    assert result.success, result.message
    assert set(result.skipped) == {"library_stats_daily", "content_quality_daily"}
    assert "library_stats_daily" not in connection.caggs


def test_rebuild_logs_summary_at_info(caplog) -> None:
    caplog.set_level(logging.INFO, logger="playstats.timescale.rebuild")
    connection = _converged_database()

    result = _rebuilder(connection).rebuild(backfill=False)

    assert result.success, result.message
    done = [record for record in caplog.records if record.getMessage() == "timescale_rebuild_done"]
    assert len(done) == 1
    assert sorted(done[0].aggregates) == sorted(definition.name for definition in AGGREGATES)
