#!/usr/bin/env python3
"""
Feed health tracking.

Each sync attempt moves a feed through ok -> failing -> broken. Broken feeds
are skipped by the scheduler until a retry resets them. Health and sync-log
writes are best-effort: a failure is logged and never fails the sync job.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import StorageError
from jobs import force_enqueue_feed_sync
from utils import now_ts, truncate_string

# Module-specific logger
logger = get_logger("health")


class SyncStatus(str, Enum):
    OK = "ok"
    FAILING = "failing"
    BROKEN = "broken"


@dataclass(frozen=True)
class HealthState:
    sync_status: str
    sync_fail_count: int
    sync_error: Optional[str]


def next_health_state(fail_count: int, succeeded: bool, error: Optional[str] = None,
                      threshold: Optional[int] = None) -> HealthState:
    """Pure transition: the health state after one attempt."""
    if succeeded:
        return HealthState(SyncStatus.OK.value, 0, None)
    threshold = threshold if threshold is not None else config.BROKEN_THRESHOLD
    new_count = fail_count + 1
    status = SyncStatus.BROKEN if new_count >= threshold else SyncStatus.FAILING
    message = truncate_string(error or "Unknown error", config.SYNC_ERROR_MAX_LENGTH, suffix="")
    return HealthState(status.value, new_count, message)


async def _write_state(db, feed_id: int, state: HealthState, now: int, succeeded: bool) -> None:
    await db.execute(
        'update_feed_health',
        feed_id=feed_id,
        sync_status=state.sync_status,
        sync_fail_count=state.sync_fail_count,
        sync_error=state.sync_error,
        last_sync_at=now,
        succeeded=succeeded,
    )


async def record_success(db, feed_id: int, now: Optional[int] = None) -> Optional[HealthState]:
    """Mark the feed healthy. Returns the new state, or None if the write failed."""
    state = next_health_state(0, succeeded=True)
    try:
        await _write_state(db, feed_id, state, now if now is not None else now_ts(), succeeded=True)
    except StorageError as e:
        logger.error(f"Failed to record sync success for feed {feed_id}: {e}")
        return None
    return state


async def record_failure(db, feed_id: int, error: str, now: Optional[int] = None) -> Optional[HealthState]:
    """Count a failed attempt. Returns the new state, or None if the write failed."""
    try:
        current = await db.execute('get_feed_health', feed_id=feed_id)
        if current is None:
            logger.warning(f"Cannot record sync failure: feed {feed_id} not found")
            return None
        state = next_health_state(current['sync_fail_count'], succeeded=False, error=error)
        await _write_state(db, feed_id, state, now if now is not None else now_ts(), succeeded=False)
    except StorageError as e:
        logger.error(f"Failed to record sync failure for feed {feed_id}: {e}")
        return None

    if state.sync_status == SyncStatus.BROKEN.value:
        logger.warning(f"Feed {feed_id} marked broken after {state.sync_fail_count} consecutive failures: {state.sync_error}")
    return state


async def retry_feed(db, feed_id: int) -> bool:
    """Reset a feed's health and queue an immediate sync.

    Returns False when the feed does not exist.
    """
    feed = await db.execute('get_feed', feed_id=feed_id)
    if feed is None:
        logger.warning(f"Cannot retry feed {feed_id}: not found")
        return False
    await db.execute('reset_feed_health', feed_id=feed_id)
    await force_enqueue_feed_sync(db, feed['user_id'], feed_id)
    logger.info(f"Feed {feed_id} reset to ok and queued for sync")
    return True


async def log_sync_attempt(db, feed_id: int, user_id: int, status: str, duration_ms: Optional[int] = None,
                           http_status: Optional[int] = None, error: Optional[str] = None,
                           articles_added: int = 0) -> None:
    """Append a feed_sync_logs row. Never raises."""
    try:
        await db.execute(
            'add_sync_log',
            feed_id=feed_id,
            user_id=user_id,
            status=status,
            duration_ms=duration_ms,
            http_status=http_status,
            error=truncate_string(error, config.SYNC_ERROR_MAX_LENGTH, suffix="") if error else None,
            articles_added=articles_added,
        )
    except StorageError as e:
        logger.error(f"Failed to write sync log for feed {feed_id}: {e}")


async def get_feed_sync_logs(db, feed_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent sync attempts for a feed, newest first."""
    return await db.execute('get_feed_sync_logs', feed_id=feed_id, limit=limit)
