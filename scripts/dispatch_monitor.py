"""
Watches the ride queue and logs every ride that appears, is claimed or is
withdrawn. Useful for dispatch staff and as a smoke test of the polling path.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from campus_assist.config import get_settings
from campus_assist.dependencies import get_entity_store
from campus_assist.lifecycle import describe
from campus_assist.notifier import PollingNotifier
from shared.types import EntityKind, RideStatus

logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Campus ride dispatch monitor")
    parser.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in RideStatus],
        help="Ride status to watch (repeatable, default: pending)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Seconds between polls (default: RIDE_POLL_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Print the current queue and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    settings = get_settings()
    store = get_entity_store()
    statuses = args.status or [RideStatus.PENDING.value]
    interval = args.interval_seconds or settings.ride_poll_interval_seconds

    def fetch():
        return store.list_requests(kind=EntityKind.RIDE, statuses=statuses)

    def report(event):
        record = store.get_request(event.entity_id)
        summary = describe(record) if record else event.entity_id
        logger.info(
            "%s %s: %s -> %s",
            event.change,
            summary,
            event.previous_status or "-",
            event.status or "-",
        )

    notifier = PollingNotifier(fetch, interval_seconds=interval, name="dispatch-monitor")

    if args.once:
        events = notifier.poll_once()
        for event in events:
            report(event)
        logger.info("%d ride(s) with status %s", len(events), ", ".join(statuses))
        return 0

    logger.info("Watching %s rides every %.1fs", ", ".join(statuses), interval)
    try:
        with notifier:
            for event in notifier.changes():
                report(event)
    except KeyboardInterrupt:
        logger.info("Stopping dispatch monitor")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
