#!/usr/bin/env python3
"""
Crewboard Deadline Monitor
──────────────────────────
Runs the deadline scan (plus stale-task reminders and recurring-task
rollover) on a fixed interval, independent of the API server.

Run directly:
    python deadline_monitor.py --config config/crewboard.yaml
    python deadline_monitor.py --once     # single pass, e.g. from cron

A failed run is logged and retried on the next tick. SIGINT/SIGTERM stop the
loop after the current run completes.
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import timedelta

from crewboard.config import Config, build_deliveries, build_directory
from crewboard.errors import ConfigError
from crewboard.notifications import NotificationSink
from crewboard.scheduler import DeadlineScheduler, RecurringJob, StaleTaskJob
from crewboard.store import TaskStore

logger = logging.getLogger("deadline_monitor")


def build_jobs(cfg: Config):
    """(deadline scheduler, stale job, recurring job) sharing one store and sink."""
    sink = NotificationSink(cfg.db_path, deliveries=build_deliveries(cfg))
    store = TaskStore(
        cfg.db_path,
        directory=build_directory(cfg),
        sink=sink,
        snooze_days=cfg.snooze_days,
    )
    dedup = timedelta(hours=cfg.dedup_window_hours)
    return (
        DeadlineScheduler(store, sink, timedelta(hours=cfg.lookahead_hours), dedup),
        StaleTaskJob(store, sink, timedelta(days=cfg.stale_after_days), dedup),
        RecurringJob(store),
    )


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [deadlines] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    ap = argparse.ArgumentParser(description="Crewboard deadline monitor")
    ap.add_argument("--config", default=None, help="Path to crewboard.yaml")
    ap.add_argument("--db", default=None, help="Path to tasks.db (overrides the config)")
    ap.add_argument("--interval", type=int, default=None,
                    help="Seconds between runs (default: deadline.scan_interval_secs)")
    ap.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = ap.parse_args()

    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    if args.db:
        cfg.db_path = args.db

    try:
        deadlines, stale, recurring = build_jobs(cfg)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    if args.once:
        for job in (recurring, deadlines, stale):
            job.run_once()
        return 0

    interval = args.interval or cfg.scan_interval_secs
    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    logger.info(
        f"Deadline monitor starting (every {interval}s, lookahead {cfg.lookahead_hours}h, "
        f"dedup {cfg.dedup_window_hours}h, db {cfg.db_path})"
    )
    deadlines.run_forever(interval, stop, jobs=(stale, recurring))
    logger.info("Deadline monitor stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
