"""APScheduler cron scheduling for the database and Mailchimp passes."""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from scripts.membersync.config import SyncConfig
from scripts.membersync.db import Database
from scripts.membersync.errors import ConfigurationError
from scripts.membersync.jobs import run_mailchimp_pass
from scripts.membersync.source import SourceDatabase
from scripts.membersync.sync import run_database_pass

logger = logging.getLogger("membersync.scheduler")

CRON_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
}

RETRY_BACKOFF_SECONDS = 30


@dataclass
class SchedulerContext:
    """Everything a scheduled pass needs, handed over at startup."""

    config: SyncConfig
    db: Database
    source: SourceDatabase
    stop_event: threading.Event = field(default_factory=threading.Event)


def cron_trigger(expression: str) -> CronTrigger:
    expr = CRON_ALIASES.get(expression.strip().lower(), expression)
    try:
        return CronTrigger.from_crontab(expr)
    except ValueError as exc:
        raise ConfigurationError(f"invalid cron expression {expression!r}: {exc}") from exc


def _run_with_retries(name: str, fn: Callable[[], object], ctx: SchedulerContext) -> None:
    """Run a pass, retrying it when it raises. Partial results are not retried."""
    max_retries = ctx.config.scheduler.max_retries
    for attempt in range(max_retries + 1):
        if ctx.stop_event.is_set():
            logger.info("Shutdown requested, not starting %s pass", name)
            return
        try:
            fn()
            return
        except Exception as exc:
            if attempt < max_retries:
                delay = RETRY_BACKOFF_SECONDS * (2 ** attempt)
                logger.warning(
                    "%s pass failed (attempt %d/%d), retrying in %ds: %s",
                    name, attempt + 1, max_retries + 1, delay, exc,
                )
                # Returns early when shutdown is requested
                ctx.stop_event.wait(delay)
            else:
                logger.error("%s pass failed after %d retries: %s", name, max_retries, exc)
                raise


def _database_job(ctx: SchedulerContext) -> None:
    _run_with_retries(
        "database",
        lambda: run_database_pass(ctx.config, ctx.db, ctx.source, ctx.stop_event),
        ctx,
    )


def _mailchimp_job(ctx: SchedulerContext) -> None:
    _run_with_retries(
        "mailchimp",
        lambda: run_mailchimp_pass(ctx.config, ctx.db, ctx.source, ctx.stop_event),
        ctx,
    )


def _on_job_error(event) -> None:
    logger.error("Job %s raised an exception: %s", event.job_id, event.exception)


def build_scheduler(ctx: SchedulerContext) -> BackgroundScheduler:
    sched = ctx.config.scheduler
    scheduler = BackgroundScheduler()
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_job(
        _database_job,
        cron_trigger(sched.db_sync_cron),
        args=[ctx],
        id="database",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    scheduler.add_job(
        _mailchimp_job,
        cron_trigger(sched.mailchimp_cron),
        args=[ctx],
        id="mailchimp",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    return scheduler


def drain(scheduler: BackgroundScheduler, grace_seconds: float) -> bool:
    """Stop scheduling and wait up to grace_seconds for running passes."""
    stopper = threading.Thread(
        target=scheduler.shutdown, kwargs={"wait": True}, name="scheduler-drain", daemon=True
    )
    stopper.start()
    stopper.join(grace_seconds)
    if stopper.is_alive():
        logger.warning("Running passes did not finish within %ss", grace_seconds)
        return False
    return True


def start_scheduler(ctx: SchedulerContext) -> None:
    """Run until SIGINT/SIGTERM, then drain."""
    scheduler = build_scheduler(ctx)

    def request_stop(signum, frame) -> None:
        logger.info("Received signal %s, draining", signum)
        ctx.stop_event.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    scheduler.start()
    logger.info("Started scheduler with jobs: %s", [j.id for j in scheduler.get_jobs()])
    while not ctx.stop_event.wait(1.0):
        pass
    drain(scheduler, ctx.config.scheduler.shutdown_grace_seconds)
