from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from playstats.core.security import require_admin_key
from playstats.db.session import run_with_db_retry
from playstats.timescale import service as timescale_service
from playstats.timescale.registry import (
    AGGREGATE_SCHEMA_VERSION,
    AGGREGATES,
    derived_view_order,
    registry_digest,
)


router = APIRouter(tags=["timescale"], dependencies=[Depends(require_admin_key)])


def describe_registry() -> dict:
    return {
        "version": AGGREGATE_SCHEMA_VERSION,
        "digest": registry_digest(),
        "aggregates": [
            {
                "name": definition.name,
                "source_table": definition.source_table,
                "requires_toolkit": definition.requires_toolkit,
                "refresh_policy": asdict(definition.refresh_policy),
                "fingerprint": definition.fingerprint(),
            }
            for definition in AGGREGATES
        ],
        "derived_views": [
            {"name": view.name, "depends_on": list(view.depends_on)}
            for view in derived_view_order()
        ],
    }


@router.get("/timescale/status")
def timescale_status() -> dict:
    status = run_with_db_retry(timescale_service.read_status, operation_name="timescale_status")
    return status.to_dict()


@router.get("/timescale/registry")
def timescale_registry() -> dict:
    return describe_registry()


@router.post("/timescale/converge")
def timescale_converge() -> dict:
    return timescale_service.converge().to_dict()


@router.post("/timescale/rebuild")
def timescale_rebuild(backfill: bool = Query(default=True)) -> dict:
    progress: list[dict] = []

    def _record(step_index: int, total_steps: int, message: str) -> None:
        progress.append({"step": step_index, "total": total_steps, "message": message})

    result = timescale_service.rebuild(_record, backfill=backfill)
    return {
        "success": result.success,
        "message": result.message,
        "step": result.step.value,
        "progress": progress,
    }


@router.post("/timescale/refresh")
def timescale_refresh() -> dict:
    timescale_service.refresh_all()
    return {"status": "ok"}
