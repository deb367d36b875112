from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.engine import Connection


SCHEMA_VERSION_KEY = "aggregate_schema_version"
REGISTRY_DIGEST_KEY = "aggregate_registry_digest"


def ensure_metadata_table(connection: Connection) -> None:
    connection.execute(
        text(
            "CREATE TABLE IF NOT EXISTS timescale_metadata ("
            "key TEXT PRIMARY KEY, "
            "value TEXT NOT NULL, "
            "updated_at TIMESTAMPTZ NOT NULL DEFAULT now()"
            ")"
        )
    )


def _store(connection: Connection, key: str, value: str) -> None:
    ensure_metadata_table(connection)
    connection.execute(
        text(
            "INSERT INTO timescale_metadata (key, value, updated_at) "
            "VALUES (:key, :value, now()) "
            "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()"
        ),
        {"key": key, "value": value},
    )


def store_schema_version(connection: Connection, version: int) -> None:
    _store(connection, SCHEMA_VERSION_KEY, str(version))


def store_registry_digest(connection: Connection, digest: str) -> None:
    _store(connection, REGISTRY_DIGEST_KEY, digest)
