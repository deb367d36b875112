from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from playstats.core.metrics import (
    TIMESCALE_CHUNK_COUNT,
    TIMESCALE_CONVERGE_COUNT,
    TIMESCALE_CONVERGE_DURATION,
    TIMESCALE_REFRESH_FAILURES,
)
from playstats.core.settings import get_settings
from playstats.db.session import autocommit_connection
from playstats.timescale import materializer
from playstats.timescale.indexes import create_supplemental_indexes
from playstats.timescale.locking import convergence_lock
from playstats.timescale.metadata import store_registry_digest, store_schema_version
from playstats.timescale.partition import (
    PartitionConverter,
    library_snapshots_spec,
    sessions_spec,
)
from playstats.timescale.policies import (
    apply_compression,
    apply_retention,
    compression_policies,
    retention_policies,
)
from playstats.timescale.probe import CatalogProber
from playstats.timescale.rebuild import AggregateRebuilder, ProgressCallback, RebuildResult
from playstats.timescale.registry import (
    AGGREGATE_SCHEMA_VERSION,
    LIBRARY_SNAPSHOTS_TABLE,
    SESSIONS_TABLE,
    aggregates_for,
    derived_view_order,
    registry_digest,
)
from playstats.utils.correlation import correlation_scope
from playstats.utils.errors import ConvergenceLockedError


logger = logging.getLogger(__name__)


@dataclass
class TimescaleStatus:
    extension_installed: bool = False
    sessions_is_hypertable: bool = False
    compression_enabled: bool = False
    continuous_aggregates: list[str] = field(default_factory=list)
    chunk_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConvergenceResult:
    success: bool
    status: TimescaleStatus
    actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "status": self.status.to_dict(), "actions": self.actions}


class TimescaleConvergence:
    """Brings a database of unknown state to the configured TimescaleDB layout.

    Every step first asks the catalog whether it is needed, so running this on
    an already converged database changes nothing.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self._prober = CatalogProber(connection)
        self._settings = get_settings()

    def status(self) -> TimescaleStatus:
        if not self._prober.extension_installed().unwrap_or(False):
            return TimescaleStatus()
        chunk_count = self._prober.chunk_count(SESSIONS_TABLE).unwrap_or(0)
        TIMESCALE_CHUNK_COUNT.set(chunk_count)
        return TimescaleStatus(
            extension_installed=True,
            sessions_is_hypertable=self._prober.is_hypertable(SESSIONS_TABLE).unwrap_or(False),
            compression_enabled=self._prober.compression_enabled(SESSIONS_TABLE).unwrap_or(False),
            continuous_aggregates=self._prober.continuous_aggregates().unwrap_or([]),
            chunk_count=chunk_count,
        )

    def converge(self) -> ConvergenceResult:
        started = time.perf_counter()
        outcome = "failure"
        try:
            result = self._converge_guarded()
            outcome = "success" if result.success else "failure"
            return result
        finally:
            TIMESCALE_CONVERGE_DURATION.observe(time.perf_counter() - started)
            TIMESCALE_CONVERGE_COUNT.labels(outcome=outcome).inc()

    def _converge_guarded(self) -> ConvergenceResult:
        actions: list[str] = []
        try:
            if not self._prober.extension_installed().unwrap_or(False):
                actions.append("TimescaleDB extension not installed - skipping setup")
                return ConvergenceResult(success=True, status=TimescaleStatus(), actions=actions)
            with convergence_lock(
                self._connection,
                self._settings.timescale_lock_name,
                enabled=self._settings.timescale_lock_enabled,
            ) as acquired:
                if not acquired:
                    actions.append("Convergence skipped - held by another instance")
                    return ConvergenceResult(success=True, status=self.status(), actions=actions)
                success = self._converge_locked(actions)
            status = self.status()
        except Exception as exc:
            logger.exception("timescale_converge_failed")
            actions.append(f"Convergence failed: {exc}")
            return ConvergenceResult(
                success=False, status=self._status_after_failure(), actions=actions
            )
        logger.info(
            "timescale_converge_done",
            extra={"success": success, "actions": actions},
        )
        return ConvergenceResult(success=success, status=status, actions=actions)

    def _status_after_failure(self) -> TimescaleStatus:
        try:
            return self.status()
        except Exception:
            logger.exception("timescale_status_failed")
            return TimescaleStatus()

    def _converge_locked(self, actions: list[str]) -> bool:
        success = True
        actions.append("TimescaleDB extension found")
        self._ensure_toolkit(actions)

        if not self._prober.is_hypertable(SESSIONS_TABLE).unwrap_or(False):
            actions.extend(PartitionConverter(self._connection, self._prober).convert(sessions_spec()))
        else:
            actions.append("Sessions already a hypertable")

        definitions = aggregates_for(SESSIONS_TABLE)
        existing = self._prober.continuous_aggregates(SESSIONS_TABLE).unwrap_or([])
        missing = [d for d in definitions if d.name not in existing]
        for definition in missing:
            if materializer.drop_if_regular_view(
                self._connection, self._prober, definition.name, existing
            ):
                actions.append(
                    f"Dropped regular materialized view {definition.name} "
                    "(will recreate as continuous aggregate)"
                )

        stored_version = self._prober.stored_version().unwrap_or(0)
        if stored_version != AGGREGATE_SCHEMA_VERSION and stored_version > 0:
            actions.append(
                f"Schema version changed ({stored_version} -> {AGGREGATE_SCHEMA_VERSION}) "
                "- rebuilding all aggregates"
            )
            result = AggregateRebuilder(self._connection, self._prober).rebuild()
            if result.success:
                self._record_version()
                actions.append("Successfully rebuilt all aggregates with updated definitions")
            else:
                success = False
                actions.append(f"Warning: Failed to rebuild aggregates: {result.message}")
        elif missing:
            materializer.drop_retired_aggregates(self._connection)
            use_primary = self._prober.toolkit_installed().unwrap_or(False)
            created = materializer.create_missing_aggregates(
                self._connection, definitions, existing, use_primary
            )
            materializer.install_refresh_policies(self._connection, definitions)
            self._ensure_derived_views()
            self._record_version()
            actions.append(f"Created continuous aggregates: {', '.join(created)}")
        else:
            if stored_version == 0:
                self._record_version()
            else:
                self._check_digest(actions)
            actions.append("All continuous aggregates exist and up-to-date")

        actions.extend(
            apply_compression(
                self._connection, self._prober, compression_policies()[SESSIONS_TABLE]
            )
        )

        created_indexes = create_supplemental_indexes(self._connection)
        actions.append(f"Ensured {len(created_indexes)} supplemental indexes")

        try:
            actions.extend(self._converge_library_snapshots())
        except SQLAlchemyError as exc:
            logger.warning("timescale_library_snapshots_failed", extra={"detail": str(exc)})
            actions.append(f"library_snapshots setup skipped: {exc}")
        return success

    def _ensure_toolkit(self, actions: list[str]) -> None:
        if not self._prober.toolkit_available().unwrap_or(False):
            actions.append("TimescaleDB Toolkit not available (using exact distinct counts)")
            return
        if self._prober.toolkit_installed().unwrap_or(False):
            actions.append("TimescaleDB Toolkit extension already enabled")
            return
        try:
            self._connection.execute(text("CREATE EXTENSION IF NOT EXISTS timescaledb_toolkit"))
        except SQLAlchemyError as exc:
            logger.warning("timescale_toolkit_enable_failed", extra={"detail": str(exc)})
            actions.append("TimescaleDB Toolkit could not be enabled (using exact distinct counts)")
            return
        actions.append("TimescaleDB Toolkit extension enabled")

    def _ensure_derived_views(self) -> None:
        for view in derived_view_order():
            materializer.create_derived_view(self._connection, view)

    def _record_version(self) -> None:
        store_schema_version(self._connection, AGGREGATE_SCHEMA_VERSION)
        store_registry_digest(self._connection, registry_digest())

    def _check_digest(self, actions: list[str]) -> None:
        current = registry_digest()
        stored = self._prober.stored_digest().unwrap_or("")
        if not stored:
            store_registry_digest(self._connection, current)
            return
        if stored != current:
            logger.warning(
                "timescale_registry_drift",
                extra={"stored_digest": stored, "current_digest": current},
            )
            actions.append(
                "Warning: aggregate definitions changed without a schema version bump"
            )

    def _converge_library_snapshots(self) -> list[str]:
        if not self._prober.table_exists(LIBRARY_SNAPSHOTS_TABLE).unwrap_or(False):
            return ["library_snapshots table does not exist yet - skipping hypertable setup"]
        actions: list[str] = []
        if not self._prober.is_hypertable(LIBRARY_SNAPSHOTS_TABLE).unwrap_or(False):
            actions.extend(
                PartitionConverter(self._connection, self._prober).convert(library_snapshots_spec())
            )
        else:
            actions.append("library_snapshots already a hypertable")

        actions.extend(
            apply_compression(
                self._connection, self._prober, compression_policies()[LIBRARY_SNAPSHOTS_TABLE]
            )
        )
        actions.extend(
            apply_retention(self._connection, retention_policies()[LIBRARY_SNAPSHOTS_TABLE])
        )

        definitions = aggregates_for(LIBRARY_SNAPSHOTS_TABLE)
        existing = self._prober.continuous_aggregates(LIBRARY_SNAPSHOTS_TABLE).unwrap_or([])
        missing = [d for d in definitions if d.name not in existing]
        if not missing:
            actions.append("All library continuous aggregates exist")
            return actions
        for definition in missing:
            materializer.drop_if_regular_view(
                self._connection, self._prober, definition.name, existing
            )
        created = materializer.create_missing_aggregates(
            self._connection, definitions, existing, use_primary=True
        )
        materializer.install_refresh_policies(self._connection, definitions)
        actions.append(f"Created library aggregates: {', '.join(created)}")
        return actions

    def rebuild(
        self,
        progress_callback: ProgressCallback | None = None,
        *,
        backfill: bool = True,
    ) -> RebuildResult:
        if not self._prober.extension_installed().unwrap_or(False):
            return RebuildResult(success=False, message="TimescaleDB extension not installed")
        with convergence_lock(
            self._connection,
            self._settings.timescale_lock_name,
            enabled=self._settings.timescale_lock_enabled,
        ) as acquired:
            if not acquired:
                raise ConvergenceLockedError()
            result = AggregateRebuilder(self._connection, self._prober).rebuild(
                progress_callback, backfill=backfill
            )
            if result.success:
                self._record_version()
        return result

    def refresh_all(self) -> list[str]:
        """Refresh every continuous aggregate over its full range.

        Returns the aggregates that refreshed; a failing one is logged and
        skipped.
        """
        if not self._prober.extension_installed().unwrap_or(False):
            return []
        refreshed: list[str] = []
        for name in self._prober.continuous_aggregates().unwrap_or([]):
            try:
                materializer.refresh_aggregate(self._connection, name)
            except SQLAlchemyError as exc:
                TIMESCALE_REFRESH_FAILURES.labels(aggregate=name).inc()
                logger.warning(
                    "timescale_refresh_failed",
                    extra={"aggregate": name, "detail": str(exc)},
                )
                continue
            refreshed.append(name)
        return refreshed


def read_status(session: Session) -> TimescaleStatus:
    connection = session.connection(execution_options={"isolation_level": "AUTOCOMMIT"})
    return TimescaleConvergence(connection).status()


def get_status() -> TimescaleStatus:
    with autocommit_connection() as connection:
        return TimescaleConvergence(connection).status()


def converge() -> ConvergenceResult:
    with correlation_scope():
        try:
            with autocommit_connection() as connection:
                return TimescaleConvergence(connection).converge()
        except SQLAlchemyError as exc:
            logger.exception("timescale_converge_connect_failed")
            TIMESCALE_CONVERGE_COUNT.labels(outcome="failure").inc()
            return ConvergenceResult(
                success=False,
                status=TimescaleStatus(),
                actions=[f"Convergence failed: {exc}"],
            )


def rebuild(
    progress_callback: ProgressCallback | None = None,
    *,
    backfill: bool = True,
) -> RebuildResult:
    with correlation_scope():
        with autocommit_connection() as connection:
            return TimescaleConvergence(connection).rebuild(progress_callback, backfill=backfill)


def refresh_all() -> None:
    with correlation_scope():
        with autocommit_connection() as connection:
            TimescaleConvergence(connection).refresh_all()
