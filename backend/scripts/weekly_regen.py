"""Run one weekly regeneration cycle and print the JSON summary.

Meant for a scheduler (cron, a Kubernetes CronJob) that fires once a week
ahead of Monday 00:00 UTC.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from typing import Optional

from study_planner.errors import PlannerError
from study_planner.logging_config import configure_logging
from study_planner.plan_service import PlanService
from study_planner.store import get_plan_store

LOGGER = logging.getLogger("study_planner.weekly_regen")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Regenerate every eligible user's plan for the upcoming week.")
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Override the current instant (ISO-8601, UTC assumed when naive). The target is the following week.",
    )
    parser.add_argument(
        "--indent",
        type=int,
        default=2,
        help="JSON indentation for the printed summary (default: 2).",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None, *, service: Optional[PlanService] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        service = service or PlanService(get_plan_store())
        summary = service.orchestrator.run_cycle(now=args.now)
    except PlannerError as exc:
        LOGGER.exception("Weekly regeneration could not run: %s", exc)
        return 1
    print(summary.model_dump_json(indent=args.indent or None))
    return 1 if summary.failed_count else 0


if __name__ == "__main__":
    sys.exit(main())
