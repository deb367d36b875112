from __future__ import annotations

from dataclasses import dataclass

import pytest

from playstats.timescale import policies
from playstats.timescale.probe import CatalogProber
from playstats.utils.errors import UnsafeIdentifierError
from tests.utils.fake_timescale import FakeTable, playback_database


@dataclass(frozen=True)
class _Settings:
    sessions_compress_after: str = "14 days"
    sessions_compress_segmentby: str = "server_user_id, server_id"
    library_snapshots_compress_after: str = "2 days"
    library_snapshots_compress_segmentby: str = "server_id, library_id"
    library_snapshots_retention: str = "6 months"


def test_policies_use_settings(monkeypatch) -> None:
    monkeypatch.setattr(policies, "get_settings", lambda: _Settings())

    compression = policies.compression_policies()
    retention = policies.retention_policies()

    assert compression["sessions"].compress_after == "14 days"
    assert compression["library_snapshots"].segment_by == ("server_id", "library_id")
    assert "timescaledb.compress_segmentby = 'server_user_id, server_id'" in (
        compression["sessions"].enable_sql()
    )
    assert "sessions" not in retention
    assert retention["library_snapshots"].drop_after == "6 months"


def test_unsafe_segmentby_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(
        policies,
        "get_settings",
        lambda: _Settings(sessions_compress_segmentby="server_id'); DROP TABLE sessions; --"),
    )
    with pytest.raises(UnsafeIdentifierError):
        policies.compression_policies()


def test_apply_compression_skips_enable_when_already_on(monkeypatch) -> None:
    monkeypatch.setattr(policies, "get_settings", lambda: _Settings())
    connection = playback_database(
        tables=[FakeTable("sessions", hypertable=True, compression=True)], foreign_keys=[]
    )

    actions = policies.apply_compression(
        connection, CatalogProber(connection), policies.compression_policies()["sessions"]
    )

    assert connection.executed("timescaledb.compress,") == []
    assert ("compression", "sessions") in connection.policies
    assert actions == ["Compression policy on sessions after 14 days"]


def test_apply_retention(monkeypatch) -> None:
    monkeypatch.setattr(policies, "get_settings", lambda: _Settings())
    connection = playback_database(
        tables=[FakeTable("library_snapshots", hypertable=True)], foreign_keys=[]
    )

    policies.apply_retention(connection, policies.retention_policies()["library_snapshots"])

    assert ("retention", "library_snapshots") in connection.policies
