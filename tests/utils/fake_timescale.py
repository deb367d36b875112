from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import ProgrammingError


@dataclass
class FakeTable:
    name: str
    primary_key: list[str] = field(default_factory=lambda: ["id"])
    primary_key_name: str = ""
    hypertable: bool = False
    compression: bool = False
    chunks: int = 0

    def __post_init__(self) -> None:
        if not self.primary_key_name:
            self.primary_key_name = f"{self.name}_pkey"


@dataclass
class FakeForeignKey:
    name: str
    table: str
    column: str
    references: str


class _Rows:
    def __init__(self, rows: list[Any]) -> None:
        self._rows = rows

    def all(self) -> list[Any]:
        return list(self._rows)


class FakeResult:
    def __init__(self, rows: list[tuple] | None = None, keys: tuple[str, ...] = ()) -> None:
        self._rows = rows or []
        self._keys = keys

    def scalar(self) -> Any:
        return self._rows[0][0] if self._rows else None

    def scalars(self) -> _Rows:
        return _Rows([row[0] for row in self._rows])

    def mappings(self) -> _Rows:
        return _Rows([dict(zip(self._keys, row)) for row in self._rows])

    def all(self) -> list[tuple]:
        return list(self._rows)

    def first(self) -> tuple | None:
        return self._rows[0] if self._rows else None


_CTE_RE = re.compile(r"(\w+) AS \(")
_RELATION_RE = re.compile(r"(?:FROM|JOIN) (\w+)")
_IDENT = r"(\"\w+\"|\w+)"


def _identifier(token: str) -> str:
    # Postgres folds unquoted identifiers to lower case.
    if token.startswith('"'):
        return token[1:-1]
    return token.lower()


class FakeTimescaleConnection:
    """In-memory stand-in for a Postgres connection with TimescaleDB.

    Interprets the statements the convergence engine issues, keeps the
    resulting catalog state and records every statement in order. Statements
    that a real server would reject (aggregate over a plain table, view over a
    missing relation, toolkit function without the toolkit) raise
    ``ProgrammingError``.
    """

    def __init__(
        self,
        *,
        extension: bool = True,
        toolkit_available: bool = True,
        toolkit_installed: bool = False,
        tables: list[FakeTable] | None = None,
        foreign_keys: list[FakeForeignKey] | None = None,
        metadata: dict[str, str] | None = None,
    ) -> None:
        self.extension = extension
        self.toolkit_available = toolkit_available
        self.toolkit_installed = toolkit_installed
        self.tables = {table.name: table for table in tables or []}
        self.foreign_keys = list(foreign_keys or [])
        self.metadata = metadata
        self.indexes: set[str] = set()
        self.caggs: dict[str, str] = {}
        self.matviews: set[str] = set()
        self.views: dict[str, set[str]] = {}
        self.policies: set[tuple[str, str]] = set()
        self.refreshed: list[str] = []
        self.statements: list[str] = []
        self.fail_on: dict[str, str] = {}
        self.broken_aggregates: set[str] = set()
        self.lock_held_elsewhere = False
        self.lock_held = False
        self.lock_released = 0

    # Connection API used by the engine

    def execute(self, statement: Any, params: dict[str, Any] | None = None) -> FakeResult:
        sql = " ".join(str(statement).split())
        params = params or {}
        self.statements.append(sql)
        for fragment, message in self.fail_on.items():
            if fragment in sql:
                self._fail(sql, message)
        return self._dispatch(sql, params)

    def execution_options(self, **_: Any) -> "FakeTimescaleConnection":
        return self

    # Helpers for assertions

    def executed(self, fragment: str) -> list[str]:
        return [sql for sql in self.statements if fragment in sql]

    def clear_statements(self) -> None:
        self.statements.clear()

    def _fail(self, sql: str, message: str) -> None:
        raise ProgrammingError(sql, {}, Exception(message))

    def _dispatch(self, sql: str, params: dict[str, Any]) -> FakeResult:
        if "FROM pg_extension" in sql:
            if params["name"] == "timescaledb":
                return FakeResult([(self.extension,)])
            return FakeResult([(self.toolkit_installed,)])
        if "FROM pg_available_extensions" in sql:
            return FakeResult([(self.toolkit_available,)])
        if "FROM information_schema.tables" in sql:
            return FakeResult([(params["table"] in self.tables,)])
        if "timescaledb_information" in sql:
            return self._timescale_information(sql, params)
        if "FROM pg_matviews" in sql:
            return FakeResult([(params["name"] in self.matviews,)])
        if "FROM timescale_metadata" in sql:
            if self.metadata is None:
                self._fail(sql, 'relation "timescale_metadata" does not exist')
            value = self.metadata.get(params["key"])
            return FakeResult([(value,)] if value is not None else [])
        if "information_schema.table_constraints" in sql:
            table = self.tables.get(params["table"])
            if table is None or not table.primary_key:
                return FakeResult([])
            return FakeResult([(table.primary_key_name, column) for column in table.primary_key])
        if "FROM pg_constraint" in sql:
            rows = [
                (fk.name, fk.table, fk.column)
                for fk in self.foreign_keys
                if fk.references == params["table"]
            ]
            return FakeResult(rows, keys=("constraint_name", "table_name", "column_name"))
        if "pg_try_advisory_lock" in sql:
            if self.lock_held_elsewhere:
                return FakeResult([(False,)])
            self.lock_held = True
            return FakeResult([(True,)])
        if "pg_advisory_unlock" in sql:
            self.lock_held = False
            self.lock_released += 1
            return FakeResult([(True,)])
        return self._ddl(sql, params)

    def _timescale_information(self, sql: str, params: dict[str, Any]) -> FakeResult:
        if not self.extension:
            self._fail(sql, 'schema "timescaledb_information" does not exist')
        table = self.tables.get(params.get("table", ""))
        if "continuous_aggregates" in sql:
            names = sorted(
                name
                for name, source in self.caggs.items()
                if "table" not in params or source == params["table"]
            )
            return FakeResult([(name,) for name in names])
        if "timescaledb_information.chunks" in sql:
            return FakeResult([(table.chunks if table and table.hypertable else 0,)])
        if "SELECT compression_enabled" in sql:
            if table is None or not table.hypertable:
                return FakeResult([])
            return FakeResult([(table.compression,)])
        return FakeResult([(bool(table and table.hypertable),)])

    def _ddl(self, sql: str, params: dict[str, Any]) -> FakeResult:
        if sql.startswith("CREATE EXTENSION IF NOT EXISTS timescaledb_toolkit"):
            if not self.toolkit_available:
                self._fail(sql, 'extension "timescaledb_toolkit" is not available')
            self.toolkit_installed = True
            return FakeResult()

        match = re.match(rf"ALTER TABLE {_IDENT} DROP CONSTRAINT IF EXISTS {_IDENT}$", sql)
        if match:
            table_name, constraint = (_identifier(token) for token in match.groups())
            self.foreign_keys = [
                fk for fk in self.foreign_keys if not (fk.table == table_name and fk.name == constraint)
            ]
            table = self._table(sql, table_name)
            if table.primary_key_name == constraint:
                if any(fk.references == table_name for fk in self.foreign_keys):
                    self._fail(sql, f"cannot drop constraint {constraint}: other objects depend on it")
                table.primary_key = []
            return FakeResult()

        match = re.match(r"ALTER TABLE (\w+) ADD PRIMARY KEY \((.+)\)$", sql)
        if match:
            table = self._table(sql, match.group(1))
            if table.primary_key:
                self._fail(sql, f'multiple primary keys for table "{table.name}"')
            table.primary_key = [column.strip() for column in match.group(2).split(",")]
            table.primary_key_name = f"{table.name}_pkey"
            return FakeResult()

        match = re.match(rf"CREATE INDEX IF NOT EXISTS {_IDENT} ON {_IDENT}", sql)
        if match:
            self._table(sql, _identifier(match.group(2)))
            self.indexes.add(_identifier(match.group(1)))
            return FakeResult()

        if sql.startswith("SELECT create_hypertable("):
            table = self._table(sql, params["table"])
            if table.primary_key and params["time_column"] not in table.primary_key:
                self._fail(sql, "cannot create a unique index without the column used in partitioning")
            table.hypertable = True
            return FakeResult([(True,)])

        match = re.match(r"CREATE MATERIALIZED VIEW IF NOT EXISTS (\w+) WITH \(timescaledb.continuous", sql)
        if match:
            name = match.group(1)
            if name in self.caggs or name in self.matviews:
                return FakeResult()
            source = _RELATION_RE.search(sql.split(" AS ", 1)[1]).group(1)
            if not self._table(sql, source).hypertable:
                self._fail(sql, f'table "{source}" is not a hypertable')
            if "hyperloglog(" in sql and not self.toolkit_installed:
                self._fail(sql, "function hyperloglog(integer, uuid) does not exist")
            self.caggs[name] = source
            return FakeResult()

        if sql.startswith("SELECT add_continuous_aggregate_policy("):
            if params["name"] not in self.caggs:
                self._fail(sql, f'relation "{params["name"]}" is not a continuous aggregate')
            self.policies.add(("refresh", params["name"]))
            return FakeResult()

        match = re.match(r"DROP MATERIALIZED VIEW IF EXISTS (\w+) CASCADE$", sql)
        if match:
            name = match.group(1)
            self.caggs.pop(name, None)
            self.matviews.discard(name)
            self.policies.discard(("refresh", name))
            self._drop_dependents(name)
            return FakeResult()

        match = re.match(r"DROP VIEW IF EXISTS (\w+) CASCADE$", sql)
        if match:
            self.views.pop(match.group(1), None)
            self._drop_dependents(match.group(1))
            return FakeResult()

        match = re.match(r"CREATE OR REPLACE VIEW (\w+) AS (.*)$", sql)
        if match:
            name, body = match.groups()
            ctes = set(_CTE_RE.findall(body))
            relations = set(_RELATION_RE.findall(body)) - ctes
            known = set(self.tables) | set(self.caggs) | set(self.views) | self.matviews
            for relation in sorted(relations):
                if relation not in known:
                    self._fail(sql, f'relation "{relation}" does not exist')
            self.views[name] = relations
            return FakeResult()

        match = re.match(r"ALTER TABLE (\w+) SET \( ?timescaledb.compress", sql)
        if match:
            table = self._table(sql, match.group(1))
            if not table.hypertable:
                self._fail(sql, f'table "{table.name}" is not a hypertable')
            table.compression = True
            return FakeResult()

        if sql.startswith("SELECT add_compression_policy("):
            table = self._table(sql, params["table"])
            if not table.compression:
                self._fail(sql, f'compression not enabled on "{table.name}"')
            self.policies.add(("compression", table.name))
            return FakeResult()

        if sql.startswith("SELECT add_retention_policy("):
            table = self._table(sql, params["table"])
            if not table.hypertable:
                self._fail(sql, f'table "{table.name}" is not a hypertable')
            self.policies.add(("retention", table.name))
            return FakeResult()

        if sql.startswith("CALL refresh_continuous_aggregate("):
            if params["name"] in self.broken_aggregates:
                self._fail(sql, f"could not refresh {params['name']}")
            if params["name"] not in self.caggs:
                self._fail(sql, f'relation "{params["name"]}" is not a continuous aggregate')
            self.refreshed.append(params["name"])
            return FakeResult()

        if sql.startswith("CREATE TABLE IF NOT EXISTS timescale_metadata"):
            if self.metadata is None:
                self.metadata = {}
            return FakeResult()

        if sql.startswith("INSERT INTO timescale_metadata"):
            if self.metadata is None:
                self._fail(sql, 'relation "timescale_metadata" does not exist')
            self.metadata[params["key"]] = params["value"]
            return FakeResult()

        raise AssertionError(f"Unexpected statement: {sql}")

    def _table(self, sql: str, name: str) -> FakeTable:
        table = self.tables.get(name)
        if table is None:
            self._fail(sql, f'relation "{name}" does not exist')
        return table

    def _drop_dependents(self, name: str) -> None:
        dependents = [view for view, relations in self.views.items() if name in relations]
        for view in dependents:
            if view in self.views:
                del self.views[view]
                self._drop_dependents(view)


def playback_database(**kwargs: Any) -> FakeTimescaleConnection:
    """A migrated but unconverted database: plain tables, violations FK intact."""
    kwargs.setdefault(
        "tables",
        [
            FakeTable("sessions"),
            FakeTable("violations"),
            FakeTable("library_snapshots"),
        ],
    )
    kwargs.setdefault(
        "foreign_keys",
        [
            FakeForeignKey(
                name="violations_session_id_sessions_id_fk",
                table="violations",
                column="session_id",
                references="sessions",
            )
        ],
    )
    return FakeTimescaleConnection(**kwargs)


@contextmanager
def fake_autocommit(connection: FakeTimescaleConnection) -> Iterator[FakeTimescaleConnection]:
    yield connection
