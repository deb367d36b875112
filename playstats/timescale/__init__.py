from __future__ import annotations

from playstats.timescale.rebuild import RebuildResult
from playstats.timescale.registry import AGGREGATE_SCHEMA_VERSION
from playstats.timescale.service import (
    ConvergenceResult,
    TimescaleStatus,
    converge,
    get_status,
    rebuild,
    refresh_all,
)

__all__ = [
    "AGGREGATE_SCHEMA_VERSION",
    "ConvergenceResult",
    "RebuildResult",
    "TimescaleStatus",
    "converge",
    "get_status",
    "rebuild",
    "refresh_all",
]
