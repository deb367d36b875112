from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Connection

from playstats.timescale.identifiers import SafeIdentifier
from playstats.timescale.probe import CatalogProber
from playstats.timescale.registry import (
    AGGREGATES,
    DERIVED_VIEWS,
    RETIRED_AGGREGATES,
    AggregateDefinition,
    DerivedView,
)


logger = logging.getLogger(__name__)

# Only names the registry owns, current or retired, may be dropped.
_DROPPABLE_NAMES = frozenset(
    [definition.name for definition in AGGREGATES]
    + [view.name for view in DERIVED_VIEWS]
    + list(RETIRED_AGGREGATES)
)


def _droppable(name: str) -> SafeIdentifier:
    if name not in _DROPPABLE_NAMES:
        raise ValueError(f"Refusing to drop unregistered object {name!r}")
    return SafeIdentifier(name)


def create_aggregate(
    connection: Connection, definition: AggregateDefinition, use_primary: bool
) -> None:
    SafeIdentifier(definition.name)
    connection.execute(text(definition.create_sql(use_primary)))
    logger.info(
        "timescale_aggregate_created",
        extra={
            "aggregate": definition.name,
            "variant": "toolkit" if use_primary and definition.requires_toolkit else "exact",
        },
    )


def install_refresh_policy(connection: Connection, definition: AggregateDefinition) -> None:
    policy = definition.refresh_policy
    connection.execute(
        text(
            "SELECT add_continuous_aggregate_policy(:name, "
            "start_offset => CAST(:start_offset AS INTERVAL), "
            "end_offset => CAST(:end_offset AS INTERVAL), "
            "schedule_interval => CAST(:schedule_interval AS INTERVAL), "
            "if_not_exists => true)"
        ),
        {
            "name": str(SafeIdentifier(definition.name)),
            "start_offset": policy.start_offset,
            "end_offset": policy.end_offset,
            "schedule_interval": policy.schedule_interval,
        },
    )


def install_refresh_policies(
    connection: Connection, definitions: Iterable[AggregateDefinition]
) -> int:
    count = 0
    for definition in definitions:
        install_refresh_policy(connection, definition)
        count += 1
    return count


def drop_if_regular_view(
    connection: Connection,
    prober: CatalogProber,
    name: str,
    continuous_names: Iterable[str],
) -> bool:
    """Drop a plain materialized view squatting on an aggregate's name.

    Older releases created some aggregates as ordinary materialized views when
    TimescaleDB was missing; ``CREATE ... IF NOT EXISTS`` would silently keep
    them.
    """
    if name in set(continuous_names):
        return False
    if not prober.materialized_view_exists(name).unwrap_or(False):
        return False
    connection.execute(text(f"DROP MATERIALIZED VIEW IF EXISTS {_droppable(name)} CASCADE"))
    logger.info("timescale_regular_view_dropped", extra={"view": name})
    return True


def drop_aggregate(connection: Connection, name: str) -> None:
    connection.execute(text(f"DROP MATERIALIZED VIEW IF EXISTS {_droppable(name)} CASCADE"))


def drop_retired_aggregates(connection: Connection) -> list[str]:
    for name in RETIRED_AGGREGATES:
        drop_aggregate(connection, name)
    return list(RETIRED_AGGREGATES)


def drop_derived_view(connection: Connection, name: str) -> None:
    connection.execute(text(f"DROP VIEW IF EXISTS {_droppable(name)} CASCADE"))


def create_derived_view(connection: Connection, view: DerivedView) -> None:
    SafeIdentifier(view.name)
    connection.execute(text(view.create_sql()))


def refresh_aggregate(connection: Connection, name: str) -> None:
    # NULL bounds refresh the whole range, including history older than the
    # policy's start offset.
    connection.execute(
        text("CALL refresh_continuous_aggregate(:name, NULL, NULL)"),
        {"name": str(SafeIdentifier(name))},
    )


def create_missing_aggregates(
    connection: Connection,
    definitions: Iterable[AggregateDefinition],
    existing: Iterable[str],
    use_primary: bool,
) -> list[str]:
    existing_names = set(existing)
    created: list[str] = []
    for definition in definitions:
        if definition.name in existing_names:
            continue
        create_aggregate(connection, definition, use_primary)
        created.append(definition.name)
    return created
