#!/usr/bin/env python3
"""
Sync scheduler.

Runs two recurring tasks on cron expressions:

- enqueue-stale-feeds (every minute): queue a bounded batch of feeds that are
  not broken and have not been synced recently, oldest first
- auto-archive (daily at midnight): archive old unread items for every user
  and prune finished job records and old sync logs

Cron expressions are evaluated with APScheduler's CronTrigger in the
configured timezone. One task failing never stops the loop.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from archive import DAY_IN_SECONDS, auto_archive_for_all_users
from config import config, get_logger
from errors import StorageError
from jobs import enqueue_feed_sync, prune_finished_jobs
from telemetry import trace_span
from utils import now_ts

# Module-specific logger
logger = get_logger("scheduler")


@trace_span("scheduler.enqueue_stale_feeds", tracer_name="scheduler")
async def enqueue_stale_feeds(db, now: Optional[int] = None) -> int:
    """Queue sync jobs for up to SYNC_BATCH_LIMIT stale, non-broken feeds.

    Returns the number of jobs newly queued; feeds that already have a
    pending job are not counted.
    """
    now = now if now is not None else now_ts()
    outdated_before = now - config.OUTDATED_MINUTES * 60
    feeds = await db.execute(
        'select_stale_feeds',
        outdated_before=outdated_before,
        limit=config.SYNC_BATCH_LIMIT,
    )

    enqueued = 0
    for feed in feeds:
        try:
            if await enqueue_feed_sync(db, feed['user_id'], feed['id']):
                enqueued += 1
        except StorageError as e:
            logger.error(f"Failed to enqueue feed {feed['id']} ({feed['feed_url']}): {e}")

    if feeds:
        logger.info(f"Enqueued {enqueued} of {len(feeds)} stale feeds")
    return enqueued


async def run_daily_maintenance(db, now: Optional[int] = None) -> Dict[str, Any]:
    """Auto-archive every user, then prune job records and old sync logs."""
    now = now if now is not None else now_ts()
    archived = await auto_archive_for_all_users(db, now)
    pruned_jobs = await prune_finished_jobs(db)
    pruned_logs = await db.execute(
        'prune_sync_logs', older_than=now - config.SYNC_LOG_RETENTION_DAYS * DAY_IN_SECONDS
    )
    return {
        'archived': sum(r.marked_count for r in archived.values()),
        'pruned_jobs': pruned_jobs,
        'pruned_logs': pruned_logs,
    }


class CronSchedule:
    """A crontab expression bound to a timezone."""

    def __init__(self, expression: str, timezone_name: str = "UTC"):
        self.expression = expression
        self.trigger = CronTrigger.from_crontab(expression, timezone=timezone_name)

    def next_fire_time(self, after: Optional[datetime] = None) -> Optional[datetime]:
        """First fire time at or after ``after`` (defaults to now)."""
        now = after or datetime.now(self.trigger.timezone)
        return self.trigger.get_next_fire_time(None, now)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


@dataclass
class RecurringTask:
    name: str
    schedule: CronSchedule
    callback: Callable[[], Awaitable[Any]]
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None


class SyncScheduler:
    """Long-lived scheduler owning the recurring sync and archive tasks."""

    def __init__(self, db, orchestrator_cron: Optional[str] = None, archive_cron: Optional[str] = None,
                 timezone_name: Optional[str] = None):
        self.db = db
        self.timezone_name = timezone_name or config.SCHEDULER_TIMEZONE
        try:
            CronTrigger.from_crontab("* * * * *", timezone=self.timezone_name)
        except Exception:
            logger.warning(f"Invalid timezone '{self.timezone_name}', falling back to UTC")
            self.timezone_name = "UTC"
        self.tasks: List[RecurringTask] = [
            RecurringTask(
                "enqueue-stale-feeds",
                CronSchedule(orchestrator_cron or config.ORCHESTRATOR_CRON, self.timezone_name),
                lambda: enqueue_stale_feeds(self.db),
            ),
            RecurringTask(
                "auto-archive",
                CronSchedule(archive_cron or config.AUTO_ARCHIVE_CRON, self.timezone_name),
                lambda: run_daily_maintenance(self.db),
            ),
        ]
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> bool:
        """Start the scheduling loop. Returns False if it was already running."""
        if self.running:
            logger.warning("Scheduler already running; ignoring duplicate start")
            return False
        for task in self.tasks:
            task.next_run = task.schedule.next_fire_time()
        self._loop_task = asyncio.create_task(self._run())
        logger.info(f"Scheduler started ({', '.join(f'{t.name}={t.schedule.expression}' for t in self.tasks)}, tz={self.timezone_name})")
        return True

    async def stop(self) -> None:
        if not self.running:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("Scheduler stopped")

    async def run_task(self, task: RecurringTask) -> bool:
        """Run one task now, isolating its failures. Returns True on success."""
        task.last_run = datetime.now(task.schedule.trigger.timezone)
        try:
            await task.callback()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduled task {task.name} failed: {e}")
            return False

    async def _run(self) -> None:
        if config.SCHEDULER_RUN_IMMEDIATELY:
            await self.run_task(self.tasks[0])

        while True:
            due = [t for t in self.tasks if t.next_run is not None]
            if not due:
                logger.error("No next run time calculated - stopping scheduler")
                return
            task = min(due, key=lambda t: t.next_run)
            delay = (task.next_run - datetime.now(task.next_run.tzinfo)).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)

            await self.run_task(task)
            # Never fire the same slot twice, and skip slots missed while running
            after = max(task.next_run + timedelta(seconds=1), datetime.now(task.next_run.tzinfo))
            task.next_run = task.schedule.next_fire_time(after)

    def get_schedule_status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'timezone': self.timezone_name,
            'tasks': [
                {
                    'name': t.name,
                    'cron': t.schedule.expression,
                    'next_run': t.next_run.isoformat() if t.next_run else None,
                    'last_run': t.last_run.isoformat() if t.last_run else None,
                }
                for t in self.tasks
            ],
        }


def create_scheduler(db) -> SyncScheduler:
    """Create a SyncScheduler using the configured cron expressions."""
    return SyncScheduler(db)
