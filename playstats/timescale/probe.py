from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from playstats.timescale.metadata import REGISTRY_DIGEST_KEY, SCHEMA_VERSION_KEY


logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMESCALE_EXTENSION = "timescaledb"
TOOLKIT_EXTENSION = "timescaledb_toolkit"


@dataclass(frozen=True)
class CapabilityAbsent:
    reason: str


@dataclass(frozen=True)
class ProbeResult(Generic[T]):
    """Outcome of a catalog check: a value, or the reason it could not be read."""

    value: T | None = None
    absent: CapabilityAbsent | None = None

    @property
    def ok(self) -> bool:
        return self.absent is None

    def unwrap_or(self, default: T) -> T:
        if self.absent is not None or self.value is None:
            return default
        return self.value


@dataclass(frozen=True)
class ForeignKeyReference:
    constraint_name: str
    table_name: str
    column_name: str


class CatalogProber:
    """Read-only checks against the Postgres and TimescaleDB catalogs.

    Holds no state besides the connection; every call goes to the database.
    """

    def __init__(self, connection: Connection) -> None:
        self._connection = connection

    def _probe(self, probe_name: str, read: Callable[[Connection], T]) -> ProbeResult[T]:
        try:
            return ProbeResult(value=read(self._connection))
        except SQLAlchemyError as exc:
            logger.debug("timescale_probe_absent", extra={"probe": probe_name, "detail": str(exc)})
            return ProbeResult(absent=CapabilityAbsent(reason=str(exc)))

    def _exists(self, probe_name: str, sql: str, **params: Any) -> ProbeResult[bool]:
        return self._probe(
            probe_name, lambda conn: bool(conn.execute(text(sql), params).scalar())
        )

    def extension_installed(self) -> ProbeResult[bool]:
        return self._exists(
            "extension_installed",
            "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = :name)",
            name=TIMESCALE_EXTENSION,
        )

    def toolkit_installed(self) -> ProbeResult[bool]:
        return self._exists(
            "toolkit_installed",
            "SELECT EXISTS (SELECT 1 FROM pg_extension WHERE extname = :name)",
            name=TOOLKIT_EXTENSION,
        )

    def toolkit_available(self) -> ProbeResult[bool]:
        return self._exists(
            "toolkit_available",
            "SELECT EXISTS (SELECT 1 FROM pg_available_extensions WHERE name = :name)",
            name=TOOLKIT_EXTENSION,
        )

    def table_exists(self, table: str) -> ProbeResult[bool]:
        return self._exists(
            "table_exists",
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = :table)",
            table=table,
        )

    def is_hypertable(self, table: str) -> ProbeResult[bool]:
        return self._exists(
            "is_hypertable",
            "SELECT EXISTS (SELECT 1 FROM timescaledb_information.hypertables "
            "WHERE hypertable_name = :table)",
            table=table,
        )

    def chunk_count(self, table: str) -> ProbeResult[int]:
        return self._probe(
            "chunk_count",
            lambda conn: int(
                conn.execute(
                    text(
                        "SELECT count(*) FROM timescaledb_information.chunks "
                        "WHERE hypertable_name = :table"
                    ),
                    {"table": table},
                ).scalar()
                or 0
            ),
        )

    def compression_enabled(self, table: str) -> ProbeResult[bool]:
        return self._probe(
            "compression_enabled",
            lambda conn: bool(
                conn.execute(
                    text(
                        "SELECT compression_enabled FROM timescaledb_information.hypertables "
                        "WHERE hypertable_name = :table"
                    ),
                    {"table": table},
                ).scalar()
            ),
        )

    def continuous_aggregates(self, table: str | None = None) -> ProbeResult[list[str]]:
        """Continuous aggregate names, optionally only those built on ``table``."""

        def _read(conn: Connection) -> list[str]:
            if table is None:
                rows = conn.execute(
                    text(
                        "SELECT view_name FROM timescaledb_information.continuous_aggregates "
                        "ORDER BY view_name"
                    )
                )
            else:
                rows = conn.execute(
                    text(
                        "SELECT view_name FROM timescaledb_information.continuous_aggregates "
                        "WHERE hypertable_name = :table ORDER BY view_name"
                    ),
                    {"table": table},
                )
            return list(rows.scalars().all())

        return self._probe("continuous_aggregates", _read)

    def materialized_view_exists(self, name: str) -> ProbeResult[bool]:
        # Continuous aggregates are not listed in pg_matviews; plain ones are.
        return self._exists(
            "materialized_view_exists",
            "SELECT EXISTS (SELECT 1 FROM pg_matviews WHERE matviewname = :name)",
            name=name,
        )

    def stored_version(self) -> ProbeResult[int]:
        def _read(conn: Connection) -> int:
            value = conn.execute(
                text("SELECT value FROM timescale_metadata WHERE key = :key"),
                {"key": SCHEMA_VERSION_KEY},
            ).scalar()
            return int(value) if value is not None else 0

        return self._probe("stored_version", _read)

    def stored_digest(self) -> ProbeResult[str]:
        return self._probe(
            "stored_digest",
            lambda conn: conn.execute(
                text("SELECT value FROM timescale_metadata WHERE key = :key"),
                {"key": REGISTRY_DIGEST_KEY},
            ).scalar(),
        )

    def primary_key(self, table: str) -> ProbeResult[tuple[str, list[str]]]:
        """Constraint name and ordered columns of the table's primary key."""

        def _read(conn: Connection) -> tuple[str, list[str]]:
            rows = conn.execute(
                text(
                    "SELECT tc.constraint_name, kcu.column_name "
                    "FROM information_schema.table_constraints tc "
                    "JOIN information_schema.key_column_usage kcu "
                    "ON tc.constraint_name = kcu.constraint_name "
                    "AND tc.table_schema = kcu.table_schema "
                    "WHERE tc.table_schema = current_schema() "
                    "AND tc.table_name = :table "
                    "AND tc.constraint_type = 'PRIMARY KEY' "
                    "ORDER BY kcu.ordinal_position"
                ),
                {"table": table},
            ).all()
            if not rows:
                return "", []
            return rows[0][0], [row[1] for row in rows]

        return self._probe("primary_key", _read)

    def referencing_foreign_keys(self, table: str) -> ProbeResult[list[ForeignKeyReference]]:
        def _read(conn: Connection) -> list[ForeignKeyReference]:
            rows = conn.execute(
                text(
                    "SELECT con.conname AS constraint_name, rel.relname AS table_name, "
                    "att.attname AS column_name "
                    "FROM pg_constraint con "
                    "JOIN pg_class rel ON rel.oid = con.conrelid "
                    "JOIN pg_attribute att ON att.attrelid = con.conrelid "
                    "AND att.attnum = ANY (con.conkey) "
                    "WHERE con.contype = 'f' AND con.confrelid = CAST(:table AS regclass) "
                    "ORDER BY con.conname"
                ),
                {"table": table},
            ).mappings().all()
            return [
                ForeignKeyReference(
                    constraint_name=row["constraint_name"],
                    table_name=row["table_name"],
                    column_name=row["column_name"],
                )
                for row in rows
            ]

        return self._probe("referencing_foreign_keys", _read)
