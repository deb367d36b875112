from __future__ import annotations

from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient

from playstats.core import security
from playstats.main import create_app
from playstats.timescale import router as timescale_router
from playstats.timescale import service as timescale_service
from playstats.timescale.rebuild import RebuildResult, RebuildStep
from playstats.timescale.registry import AGGREGATE_SCHEMA_VERSION
from playstats.utils.errors import ConvergenceLockedError

HEADERS = {"X-Admin-Key": "test-admin"}


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setattr(security, "get_settings", lambda: SimpleNamespace(admin_key="test-admin"))
    return create_app()


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.anyio
async def test_requires_admin_key(app) -> None:
    async with _client(app) as client:
        missing = await client.get("/internal/timescale/registry")
        wrong = await client.get("/internal/timescale/registry", headers={"X-Admin-Key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert wrong.json()["error"]["code"] == "unauthorized"


@pytest.mark.anyio
async def test_registry_endpoint(app) -> None:
    async with _client(app) as client:
        response = await client.get("/internal/timescale/registry", headers=HEADERS)

    assert response.status_code == 200
    payload = response.json()
    assert payload["version"] == AGGREGATE_SCHEMA_VERSION
    assert len(payload["aggregates"]) == 8
    assert payload["derived_views"][-1]["name"] == "top_shows_by_engagement"


@pytest.mark.anyio
async def test_status_endpoint(app, monkeypatch) -> None:
    status = timescale_service.TimescaleStatus(
        extension_installed=True,
        sessions_is_hypertable=True,
        compression_enabled=True,
        continuous_aggregates=["daily_plays_by_user"],
        chunk_count=4,
    )
    monkeypatch.setattr(
        timescale_router, "run_with_db_retry", lambda operation, operation_name: status
    )

    async with _client(app) as client:
        response = await client.get("/internal/timescale/status", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["chunk_count"] == 4


@pytest.mark.anyio
async def test_converge_endpoint(app, monkeypatch) -> None:
    monkeypatch.setattr(
        timescale_service,
        "converge",
        lambda: timescale_service.ConvergenceResult(
            success=True,
            status=timescale_service.TimescaleStatus(),
            actions=["TimescaleDB extension not installed - skipping setup"],
        ),
    )

    async with _client(app) as client:
        response = await client.post("/internal/timescale/converge", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["success"] is True


@pytest.mark.anyio
async def test_rebuild_endpoint_reports_progress(app, monkeypatch) -> None:
    calls: dict = {}

    def _rebuild(progress_callback, *, backfill):
        calls["backfill"] = backfill
        progress_callback(1, 2, "Dropping aggregates and derived views")
        return RebuildResult(success=True, message="ok", step=RebuildStep.DONE)

    monkeypatch.setattr(timescale_service, "rebuild", _rebuild)

    async with _client(app) as client:
        response = await client.post(
            "/internal/timescale/rebuild", params={"backfill": "false"}, headers=HEADERS
        )

    assert response.status_code == 200
    assert calls["backfill"] is False
    assert response.json()["step"] == "done"
    assert response.json()["progress"][0]["total"] == 2


@pytest.mark.anyio
async def test_rebuild_conflict_when_locked(app, monkeypatch) -> None:
    def _rebuild(progress_callback, *, backfill):
        raise ConvergenceLockedError()

    monkeypatch.setattr(timescale_service, "rebuild", _rebuild)

    async with _client(app) as client:
        response = await client.post("/internal/timescale/rebuild", headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "timescale_locked"
    assert response.json()["error"]["failure_classification"] == "TRANSIENT"


@pytest.mark.anyio
async def test_refresh_endpoint(app, monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(timescale_service, "refresh_all", lambda: calls.append("refresh"))

    async with _client(app) as client:
        response = await client.post("/internal/timescale/refresh", headers=HEADERS)

    assert response.status_code == 200
    assert calls == ["refresh"]
