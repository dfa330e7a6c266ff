"""
Daemon that keeps trial expiry and payment rollover running for every user.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from submemo.worker import build_manager, process_pending

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="SubMemo lifecycle daemon")
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=60.0,
        help="Seconds between checks for due lifecycle passes",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one pass for every user and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    manager = build_manager()
    try:
        while True:
            try:
                ran = process_pending(manager)
                if ran:
                    logger.info("Ran lifecycle pass for %d users", ran)
            except Exception as exc:
                logger.exception("Lifecycle sync failed: %s", exc)

            if args.once:
                return 0
            time.sleep(args.poll_seconds)
    finally:
        manager.close_all()


if __name__ == "__main__":
    raise SystemExit(main())
