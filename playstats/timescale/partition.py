from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import text
from sqlalchemy.engine import Connection

from playstats.core.settings import get_settings
from playstats.timescale.identifiers import SafeIdentifier
from playstats.timescale.probe import CatalogProber
from playstats.timescale.registry import LIBRARY_SNAPSHOTS_TABLE, SESSIONS_TABLE


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpressionIndex:
    name: str
    definition: str


@dataclass(frozen=True)
class HypertableSpec:
    table: str
    time_column: str
    chunk_interval: str
    key_column: str = "id"
    expression_indexes: tuple[ExpressionIndex, ...] = field(default_factory=tuple)


# Play identity: the first session of a resume chain.
SESSIONS_EXPRESSION_INDEXES = (
    ExpressionIndex(
        name="idx_sessions_play_id",
        definition="(COALESCE(reference_id, id))",
    ),
    ExpressionIndex(
        name="idx_sessions_time_play_id",
        definition="(started_at DESC, (COALESCE(reference_id, id)))",
    ),
    ExpressionIndex(
        name="idx_sessions_user_play_id",
        definition="(server_user_id, (COALESCE(reference_id, id)))",
    ),
)


def sessions_spec() -> HypertableSpec:
    settings = get_settings()
    return HypertableSpec(
        table=SESSIONS_TABLE,
        time_column="started_at",
        chunk_interval=settings.sessions_chunk_interval,
        expression_indexes=SESSIONS_EXPRESSION_INDEXES,
    )


def library_snapshots_spec() -> HypertableSpec:
    settings = get_settings()
    return HypertableSpec(
        table=LIBRARY_SNAPSHOTS_TABLE,
        time_column="snapshot_time",
        chunk_interval=settings.library_snapshots_chunk_interval,
    )


def lookup_index_name(table: str, column: str) -> SafeIdentifier:
    return SafeIdentifier(f"{table}_{column}_lookup_idx")


class PartitionConverter:
    """Turns a plain fact table into a hypertable partitioned on its time column.

    A hypertable's unique constraints must include the partition column, so the
    surrogate primary key is widened to ``(id, <time column>)`` first. Foreign
    keys from other tables cannot target the widened key; each is replaced by a
    plain index on the referencing column and integrity moves to the
    application.
    """

    def __init__(self, connection: Connection, prober: CatalogProber) -> None:
        self._connection = connection
        self._prober = prober

    def convert(self, spec: HypertableSpec) -> list[str]:
        actions: list[str] = []
        table = SafeIdentifier(spec.table)
        time_column = SafeIdentifier(spec.time_column)
        key_column = SafeIdentifier(spec.key_column)

        # Names read from the catalog keep their case; quote them so Postgres
        # does not fold them.
        constraint_name, key_columns = self._prober.primary_key(spec.table).unwrap_or(("", []))
        if spec.time_column not in key_columns:
            actions.extend(self._replace_referencing_foreign_keys(spec.table))
            if constraint_name:
                self._connection.execute(
                    text(
                        f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS "
                        f"{SafeIdentifier(constraint_name).quoted}"
                    )
                )
            self._connection.execute(
                text(f"ALTER TABLE {table} ADD PRIMARY KEY ({key_column}, {time_column})")
            )
            actions.append(f"Widened {spec.table} primary key to ({spec.key_column}, {spec.time_column})")

        self._connection.execute(
            text(
                "SELECT create_hypertable(:table, :time_column, "
                "chunk_time_interval => CAST(:chunk_interval AS INTERVAL), "
                "migrate_data => true, if_not_exists => true)"
            ),
            {
                "table": str(table),
                "time_column": str(time_column),
                "chunk_interval": spec.chunk_interval,
            },
        )
        actions.append(f"Converted {spec.table} to hypertable ({spec.chunk_interval} chunks)")
        logger.info(
            "timescale_hypertable_created",
            extra={"table": spec.table, "chunk_interval": spec.chunk_interval},
        )

        for index in spec.expression_indexes:
            self._connection.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS {SafeIdentifier(index.name)} "
                    f"ON {table} {index.definition}"
                )
            )
        if spec.expression_indexes:
            actions.append(f"Created {len(spec.expression_indexes)} expression indexes on {spec.table}")
        return actions

    def _replace_referencing_foreign_keys(self, table: str) -> list[str]:
        actions: list[str] = []
        for reference in self._prober.referencing_foreign_keys(table).unwrap_or([]):
            referencing_table = SafeIdentifier(reference.table_name)
            column = SafeIdentifier(reference.column_name)
            self._connection.execute(
                text(
                    f"ALTER TABLE {referencing_table.quoted} DROP CONSTRAINT IF EXISTS "
                    f"{SafeIdentifier(reference.constraint_name).quoted}"
                )
            )
            index_name = lookup_index_name(reference.table_name, reference.column_name)
            self._connection.execute(
                text(
                    f"CREATE INDEX IF NOT EXISTS {index_name.quoted} "
                    f"ON {referencing_table.quoted} ({column.quoted})"
                )
            )
            actions.append(
                f"Replaced foreign key {reference.constraint_name} with index {index_name}"
            )
            logger.info(
                "timescale_foreign_key_replaced",
                extra={
                    "constraint": reference.constraint_name,
                    "referencing_table": reference.table_name,
                    "index": str(index_name),
                },
            )
        return actions
