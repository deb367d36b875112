from __future__ import annotations

import argparse
import json
import sys

from playstats.core.logging import configure_logging
from playstats.core.settings import get_settings
from playstats.timescale import service as timescale_service
from playstats.timescale.router import describe_registry
from playstats.utils.error_payloads import error_payload
from playstats.utils.errors import AppError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage TimescaleDB objects for playback analytics")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show hypertable and aggregate status")
    commands.add_parser("converge", help="Bring the database to the expected layout")
    rebuild = commands.add_parser("rebuild", help="Drop and recreate all aggregates and views")
    rebuild.add_argument(
        "--no-backfill",
        action="store_true",
        help="Skip the full-history refresh after recreating aggregates",
    )
    commands.add_parser("refresh", help="Refresh every continuous aggregate over its full range")
    commands.add_parser("registry", help="Print the aggregate registry")
    return parser.parse_args(argv)


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _print_progress(step_index: int, total_steps: int, message: str) -> None:
    print(f"[{step_index}/{total_steps}] {message}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(get_settings().log_level)

    if args.command == "status":
        _print(timescale_service.get_status().to_dict())
        return 0
    if args.command == "converge":
        result = timescale_service.converge()
        _print(result.to_dict())
        return 0 if result.success else 1
    if args.command == "rebuild":
        try:
            rebuilt = timescale_service.rebuild(_print_progress, backfill=not args.no_backfill)
        except AppError as exc:
            _print(
                error_payload(
                    code=exc.detail.code,
                    message=exc.detail.message,
                    classification=exc.detail.classification,
                )
            )
            return 1
        _print({"success": rebuilt.success, "message": rebuilt.message, "step": rebuilt.step.value})
        return 0 if rebuilt.success else 1
    if args.command == "refresh":
        timescale_service.refresh_all()
        _print({"status": "ok"})
        return 0
    _print(describe_registry())
    return 0


if __name__ == "__main__":
    sys.exit(main())
