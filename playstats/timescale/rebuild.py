from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from playstats.core.metrics import TIMESCALE_REBUILD_COUNT, TIMESCALE_REBUILD_DURATION
from playstats.timescale import materializer
from playstats.timescale.probe import CatalogProber
from playstats.timescale.registry import (
    AGGREGATES,
    AggregateDefinition,
    DerivedView,
    derived_view_order,
)


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class RebuildStep(str, Enum):
    IDLE = "idle"
    DROPPING_ALL = "dropping-all"
    TOOLKIT_CHECK = "toolkit-check"
    RECREATING_ALL = "recreating-all"
    INSTALLING_POLICIES = "installing-policies"
    REBUILDING_DERIVED_VIEWS = "rebuilding-derived-views"
    BACKFILLING_ALL = "backfilling-all"
    DONE = "done"


@dataclass
class RebuildResult:
    success: bool
    message: str
    step: RebuildStep = RebuildStep.IDLE
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class _StepFailed(Exception):
    def __init__(self, step: RebuildStep, detail: str) -> None:
        super().__init__(f"{step.value} failed: {detail}")
        self.step = step


class AggregateRebuilder:
    """Drops and recreates every aggregate and derived view, in order.

    Runs when the registry version in source differs from the stored one, or
    on operator request. It never writes the stored version; the caller does
    that once ``rebuild`` reports success.
    """

    def __init__(
        self,
        connection: Connection,
        prober: CatalogProber,
        aggregates: tuple[AggregateDefinition, ...] = AGGREGATES,
        views: list[DerivedView] | None = None,
    ) -> None:
        self._connection = connection
        self._prober = prober
        self._aggregates = aggregates
        self._views = views if views is not None else derived_view_order()
        self._progress: ProgressCallback | None = None
        self._step_index = 0

    @property
    def total_steps(self) -> int:
        return 4 + len(self._views) + 1

    def rebuild(
        self,
        progress_callback: ProgressCallback | None = None,
        *,
        backfill: bool = True,
    ) -> RebuildResult:
        self._progress = progress_callback
        self._step_index = 0
        started = time.perf_counter()
        result = RebuildResult(success=False, message="")
        try:
            self._run(result, backfill)
        except _StepFailed as exc:
            result.step = exc.step
            result.message = str(exc)
            TIMESCALE_REBUILD_COUNT.labels(outcome="failure").inc()
            logger.error(
                "timescale_rebuild_failed",
                extra={"step": exc.step.value, "detail": str(exc)},
            )
            return result
        finally:
            TIMESCALE_REBUILD_DURATION.observe(time.perf_counter() - started)
        result.success = True
        result.step = RebuildStep.DONE
        result.message = (
            f"Rebuilt {len(result.created)} continuous aggregates and "
            f"{len(self._views)} derived views"
        )
        TIMESCALE_REBUILD_COUNT.labels(outcome="success").inc()
        logger.info(
            "timescale_rebuild_done",
            extra={"aggregates": result.created, "skipped": result.skipped},
        )
        return result

    def _run(self, result: RebuildResult, backfill: bool) -> None:
        with self._step(RebuildStep.DROPPING_ALL, "Dropping aggregates and derived views"):
            # Views first: plain views over the fact table do not cascade from
            # an aggregate drop.
            for view in reversed(self._views):
                materializer.drop_derived_view(self._connection, view.name)
            for definition in self._aggregates:
                materializer.drop_aggregate(self._connection, definition.name)
            materializer.drop_retired_aggregates(self._connection)

        with self._step(RebuildStep.TOOLKIT_CHECK, "Checking timescaledb_toolkit"):
            use_primary = self._prober.toolkit_installed().unwrap_or(False)

        with self._step(
            RebuildStep.RECREATING_ALL,
            "Creating aggregates with "
            + ("approximate distinct counts" if use_primary else "exact distinct counts"),
        ):
            ready_tables: dict[str, bool] = {}
            for definition in self._aggregates:
                table = definition.source_table
                if table not in ready_tables:
                    ready_tables[table] = self._prober.is_hypertable(table).unwrap_or(False)
                if not ready_tables[table]:
                    result.skipped.append(definition.name)
                    continue
                materializer.create_aggregate(self._connection, definition, use_primary)
                result.created.append(definition.name)

        created = [d for d in self._aggregates if d.name in result.created]
        with self._step(RebuildStep.INSTALLING_POLICIES, "Installing refresh policies"):
            materializer.install_refresh_policies(self._connection, created)

        available = set(result.created) | {table for table, ready in ready_tables.items() if ready}
        for view in self._views:
            with self._step(
                RebuildStep.REBUILDING_DERIVED_VIEWS, f"Creating view {view.name}"
            ):
                if not all(dependency in available for dependency in view.depends_on):
                    result.skipped.append(view.name)
                    continue
                materializer.create_derived_view(self._connection, view)
                available.add(view.name)

        with self._step(
            RebuildStep.BACKFILLING_ALL,
            "Refreshing aggregates over full history" if backfill else "Skipping backfill",
        ):
            if backfill:
                for definition in created:
                    materializer.refresh_aggregate(self._connection, definition.name)

    @contextmanager
    def _step(self, step: RebuildStep, message: str) -> Iterator[None]:
        self._step_index += 1
        self._report(message)
        try:
            yield
        except SQLAlchemyError as exc:
            raise _StepFailed(step, str(exc)) from exc

    def _report(self, message: str) -> None:
        logger.info(
            "timescale_rebuild_step",
            extra={"step_index": self._step_index, "total_steps": self.total_steps, "detail": message},
        )
        if self._progress is None:
            return
        try:
            self._progress(self._step_index, self.total_steps, message)
        except Exception:
            logger.exception("timescale_rebuild_progress_callback_failed")

