from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from croniter import croniter

from .config import BackupConfig, ConfigurationError, SchedulerConfig, load_config
from .logger import configure_logging
from .runner import BackupRunner, RunOutcome, Trigger

LOG = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scheduled MongoDB backup service.")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["now"],
        help="'now' runs one backup immediately before starting the schedule.",
    )
    parser.add_argument(
        "--now",
        dest="run_now",
        action="store_true",
        help="Run one backup immediately before starting the schedule.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single manual backup and exit instead of scheduling.",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("MONGO_BACKUP_CONFIG"),
        help="Optional YAML configuration file; environment variables take precedence.",
    )
    parser.add_argument(
        "--env-file",
        default=os.getenv("MONGO_BACKUP_ENV_FILE", ".env"),
        help="dotenv file read before the environment (default .env).",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    args = parser.parse_args(argv)
    args.run_now = args.run_now or args.mode == "now"
    return args


def load_configuration(args: argparse.Namespace) -> BackupConfig:
    config_path = Path(args.config).expanduser() if args.config else None
    env_file = Path(args.env_file).expanduser() if args.env_file else None
    try:
        return load_config(config_path, env_file=env_file)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config = load_configuration(args)
    runner = BackupRunner.from_config(config)

    if args.once:
        report_outcome(runner.run(Trigger.MANUAL))
        return 0

    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    return run_with_scheduler(runner, config.scheduler, stop_event, run_now=args.run_now)


def run_with_scheduler(
    runner: BackupRunner,
    scheduler: SchedulerConfig,
    stop_event: threading.Event,
    *,
    run_now: bool = False,
) -> int:
    timezone = scheduler.tzinfo

    if run_now:
        LOG.info("Executing manual run immediately")
        _run_safely(runner, Trigger.MANUAL)

    next_run = _next_run(scheduler.cron, datetime.now(timezone))
    LOG.info("MongoDB backup service running; next run at %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            _run_safely(runner, Trigger.SCHEDULED)
            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            LOG.info("Next run scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    LOG.info("Scheduler stopped")
    return 0


def _run_safely(runner: BackupRunner, trigger: Trigger) -> None:
    try:
        outcome = runner.run(trigger)
    except Exception:  # noqa: BLE001
        LOG.exception("Backup run (%s) crashed", trigger.value)
        return
    report_outcome(outcome)


def report_outcome(outcome: RunOutcome) -> None:
    if outcome.success:
        LOG.info("Backup run (%s) succeeded: %s", outcome.trigger.value, outcome.archive_path)
    else:
        LOG.error("Backup run (%s) failed: %s", outcome.trigger.value, "; ".join(outcome.errors))


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
