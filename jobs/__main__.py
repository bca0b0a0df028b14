"""Command-line entrypoint for pipeline jobs."""

from __future__ import annotations

import argparse
import json
import logging
import os

from jobs.config import load_settings
from jobs.stages import ALL_STAGES, STAGE_NAMES, STAGES, ensure_fresh, run_pipeline, run_stage


def _has_fatal(results: dict) -> bool:
    return any(
        error.startswith("Fatal:")
        for summary in results.values()
        for error in summary.get("errors", [])
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Market Pulse pipeline job runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one stage, or all stages in order")
    run_parser.add_argument("stage", choices=[*STAGE_NAMES, ALL_STAGES])
    run_parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )

    subparsers.add_parser("list-zips", help="Show the configured reference zip codes")
    subparsers.add_parser("list-stages", help="Show stages with their cron cadence")
    subparsers.add_parser(
        "ensure-fresh", help="Recompute metrics and history when the latest snapshot is stale"
    )

    args = parser.parse_args(argv)

    if getattr(args, "log_level", None):
        os.environ["LOG_LEVEL"] = args.log_level
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    settings = load_settings()

    if args.command == "list-zips":
        print(f"{settings.reference.name}: {len(settings.reference)} zips")
        for zip_code in settings.reference:
            print(zip_code)
        return 0

    if args.command == "list-stages":
        for stage in STAGES:
            print(f"{stage.name}: cron='{stage.cron(settings)}' tz={settings.timezone} ({stage.description})")
        return 0

    if args.command == "run":
        if args.stage == ALL_STAGES:
            results = run_pipeline(settings=settings)
        else:
            results = {args.stage: run_stage(args.stage, settings=settings)}
        print(json.dumps(results, indent=2))
        return 1 if _has_fatal(results) else 0

    if args.command == "ensure-fresh":
        results = ensure_fresh(settings=settings)
        if results is None:
            print("History snapshot is fresh; nothing to do.")
            return 0
        print(json.dumps(results, indent=2))
        return 1 if _has_fatal(results) else 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
