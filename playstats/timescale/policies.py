from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.engine import Connection

from playstats.core.settings import get_settings
from playstats.timescale.identifiers import SafeIdentifier, identifier_list
from playstats.timescale.probe import CatalogProber
from playstats.timescale.registry import LIBRARY_SNAPSHOTS_TABLE, SESSIONS_TABLE


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompressionPolicy:
    table: str
    segment_by: tuple[SafeIdentifier, ...]
    compress_after: str

    def enable_sql(self) -> str:
        segment_by = ", ".join(self.segment_by)
        return (
            f"ALTER TABLE {SafeIdentifier(self.table)} SET ("
            "timescaledb.compress, "
            f"timescaledb.compress_segmentby = '{segment_by}'"
            ")"
        )


@dataclass(frozen=True)
class RetentionPolicy:
    table: str
    drop_after: str


def compression_policies() -> dict[str, CompressionPolicy]:
    settings = get_settings()
    return {
        SESSIONS_TABLE: CompressionPolicy(
            table=SESSIONS_TABLE,
            segment_by=identifier_list(settings.sessions_compress_segmentby),
            compress_after=settings.sessions_compress_after,
        ),
        LIBRARY_SNAPSHOTS_TABLE: CompressionPolicy(
            table=LIBRARY_SNAPSHOTS_TABLE,
            segment_by=identifier_list(settings.library_snapshots_compress_segmentby),
            compress_after=settings.library_snapshots_compress_after,
        ),
    }


def retention_policies() -> dict[str, RetentionPolicy]:
    # Session history is kept forever; snapshots are only trend input.
    settings = get_settings()
    return {
        LIBRARY_SNAPSHOTS_TABLE: RetentionPolicy(
            table=LIBRARY_SNAPSHOTS_TABLE,
            drop_after=settings.library_snapshots_retention,
        ),
    }


def apply_compression(
    connection: Connection, prober: CatalogProber, policy: CompressionPolicy
) -> list[str]:
    actions: list[str] = []
    if not prober.compression_enabled(policy.table).unwrap_or(False):
        connection.execute(text(policy.enable_sql()))
        actions.append(
            f"Enabled compression on {policy.table} (segment by {', '.join(policy.segment_by)})"
        )
    connection.execute(
        text(
            "SELECT add_compression_policy(:table, "
            "CAST(:compress_after AS INTERVAL), if_not_exists => true)"
        ),
        {"table": policy.table, "compress_after": policy.compress_after},
    )
    actions.append(f"Compression policy on {policy.table} after {policy.compress_after}")
    logger.info(
        "timescale_compression_policy",
        extra={"table": policy.table, "compress_after": policy.compress_after},
    )
    return actions


def apply_retention(connection: Connection, policy: RetentionPolicy) -> list[str]:
    connection.execute(
        text(
            "SELECT add_retention_policy(:table, "
            "CAST(:drop_after AS INTERVAL), if_not_exists => true)"
        ),
        {"table": policy.table, "drop_after": policy.drop_after},
    )
    logger.info(
        "timescale_retention_policy",
        extra={"table": policy.table, "drop_after": policy.drop_after},
    )
    return [f"Retention policy on {policy.table} drops chunks older than {policy.drop_after}"]
