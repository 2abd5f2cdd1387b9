#!/usr/bin/env python3
"""
Feed sync job queue helpers.

Jobs live in the SQLite ``jobs`` table. Each feed has one job key, so
duplicate enqueues collapse while a job for the feed is queued or running.
"""

from typing import Optional

from config import config, get_logger
from utils import RetryHelper, now_ts

# Module-specific logger
logger = get_logger("jobs")

FEED_SYNC_JOB_PREFIX = "feed-sync"


def feed_sync_job_key(user_id: int, feed_id: int) -> str:
    return f"{FEED_SYNC_JOB_PREFIX}:{user_id}:{feed_id}"


async def enqueue_feed_sync(db, user_id: int, feed_id: int) -> bool:
    """Queue a sync for one feed. Returns False when one is already pending."""
    return await db.execute(
        'enqueue_job',
        job_key=feed_sync_job_key(user_id, feed_id),
        payload={'user_id': user_id, 'feed_id': feed_id},
        max_attempts=config.JOB_MAX_ATTEMPTS,
    )


async def force_enqueue_feed_sync(db, user_id: int, feed_id: int) -> bool:
    """Replace any queued sync for the feed with one that runs immediately."""
    created = await db.execute(
        'force_enqueue_job',
        job_key=feed_sync_job_key(user_id, feed_id),
        payload={'user_id': user_id, 'feed_id': feed_id},
        max_attempts=config.JOB_MAX_ATTEMPTS,
    )
    if not created:
        logger.info(f"Sync for feed {feed_id} is already running; not re-queued")
    return created


def retry_at_for_attempt(attempt: int, now: Optional[int] = None) -> int:
    """When a job that just failed its ``attempt``-th try (1-based) may run again."""
    helper = RetryHelper(base_delay=config.RETRY_DELAY_BASE, max_delay=config.RETRY_DELAY_MAX)
    now = now if now is not None else now_ts()
    return now + int(helper.calculate_delay(attempt - 1))


async def prune_finished_jobs(db) -> int:
    """Keep only the newest completed and failed job records."""
    removed = await db.execute(
        'prune_jobs',
        keep_completed=config.JOB_KEEP_COMPLETED,
        keep_failed=config.JOB_KEEP_FAILED,
    )
    if removed:
        logger.info(f"Pruned {removed} finished job records")
    return removed
