"""
Daemon that fires the daily reminder-email pass.

Wakes up just after the start of every local hour and hands the current time
to ``DailyTrigger``, which only sends at the configured local hour. Use
``--force`` to run a pass immediately regardless of the hour.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from submemo.dependencies import build_daily_trigger, build_notification_service
from submemo.store import utc_now

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="SubMemo reminder email daemon")
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=30,
        help="Max random delay after the top of the hour",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Check the trigger a single time and exit",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run the notification pass now, ignoring the target hour (implies --once)",
    )
    args = parser.parse_args()
    if not 0 <= args.jitter_seconds < 3600:
        parser.error("--jitter-seconds must be between 0 and 3599")

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    service = build_notification_service()
    trigger = build_daily_trigger(service)

    if args.force:
        run = service.run(utc_now())
        logger.info("Forced pass: sent %d, failed %d, skipped %d", run.sent, run.failed, run.skipped)
        return 0 if run.failed == 0 else 1

    while True:
        try:
            outcome = trigger.handle(utc_now())
            logger.info(outcome.message)
        except Exception as exc:
            logger.exception("Notification pass failed: %s", exc)

        if args.once:
            return 0

        # Realign every cycle so drift never carries a check past the target hour.
        sleep_for = trigger.seconds_until_next_hour(utc_now()) + random.uniform(
            0, args.jitter_seconds
        )
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    raise SystemExit(main())
