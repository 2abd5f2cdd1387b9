#!/usr/bin/env python3
"""
Single-feed sync pipeline: fetch -> normalize -> ingest -> health update.

Fetch failures are recorded against the feed and reported in the result.
Storage failures and unexpected errors are recorded the same way and then
re-raised so the job queue can retry or fail the job.
"""

from dataclasses import dataclass
from time import monotonic
from typing import Any, Dict, Optional

from aiohttp import ClientSession

from archive import get_auto_archive_cutoff
from config import get_logger
from errors import FeedFetchError, HttpFetchError, StorageError
from fetcher import FeedFetcher, FetchResult, NotModified
from health import SyncStatus, log_sync_attempt, record_failure, record_success
from ingest import ingest_items
from normalizer import normalize
from telemetry import trace_span

# Module-specific logger
logger = get_logger("sync")


@dataclass
class SyncResult:
    feed_id: int
    status: str  # "ok", "skipped" or "failed"
    created: int = 0
    updated: int = 0
    http_status: Optional[int] = None
    error: Optional[str] = None


def _elapsed_ms(started: float) -> int:
    return int((monotonic() - started) * 1000)


async def _refresh_metadata(db, feed: Dict[str, Any], result: FetchResult) -> None:
    """Backfill empty display fields from the document. Best-effort."""
    meta = result.document.feed
    if feed['title'] and feed['description'] and feed['url']:
        return
    try:
        await db.execute(
            'update_feed_metadata',
            feed_id=feed['id'],
            title=meta.get('title'),
            description=meta.get('description'),
            url=meta.get('link'),
        )
    except StorageError as e:
        logger.warning(f"Could not refresh metadata for feed {feed['id']}: {e}")


async def _record_unexpected_failure(db, feed_id: int, user_id: int, started: float, error: Exception,
                                     http_status: Optional[int] = None) -> None:
    message = f"{type(error).__name__}: {error}"
    await record_failure(db, feed_id, message)
    await log_sync_attempt(db, feed_id, user_id, "failed", _elapsed_ms(started),
                           http_status=http_status, error=message)


@trace_span(
    "sync_feed",
    tracer_name="sync",
    attr_from_args=lambda db, fetcher, session, user_id, feed_id: {"feed.id": feed_id, "user.id": user_id},
)
async def sync_feed(db, fetcher: FeedFetcher, session: ClientSession, user_id: int, feed_id: int) -> SyncResult:
    """Synchronize one feed end to end.

    Raises:
        StorageError: reading the feed or persisting its items failed.

    Any other exception is recorded against the feed health and re-raised.
    """
    started = monotonic()
    feed = await db.execute('get_feed', feed_id=feed_id)
    if feed is None or feed['user_id'] != user_id:
        logger.warning(f"Skipping sync for feed {feed_id}: not found for user {user_id}")
        return SyncResult(feed_id, "skipped", error="feed not found")
    if feed['sync_status'] == SyncStatus.BROKEN.value:
        logger.info(f"Skipping sync for broken feed {feed_id} ({feed['feed_url']})")
        return SyncResult(feed_id, "skipped", error=feed['sync_error'])

    label = f"{feed_id} ({feed['title'] or 'untitled'}, {feed['feed_url']})"

    try:
        outcome = await fetcher.fetch(
            session,
            feed['feed_url'],
            etag=feed['etag'],
            last_modified=feed['last_modified'],
        )
    except FeedFetchError as e:
        http_status = e.status if isinstance(e, HttpFetchError) else None
        logger.warning(f"Sync failed for feed {label}: {e}")
        await record_failure(db, feed_id, str(e))
        await log_sync_attempt(db, feed_id, user_id, "failed", _elapsed_ms(started),
                               http_status=http_status, error=str(e))
        return SyncResult(feed_id, "failed", http_status=http_status, error=str(e))
    except Exception as e:
        logger.exception(f"Unexpected error fetching feed {label}: {e}")
        await _record_unexpected_failure(db, feed_id, user_id, started, e)
        raise

    if isinstance(outcome, NotModified):
        await record_success(db, feed_id)
        await log_sync_attempt(db, feed_id, user_id, "skipped", _elapsed_ms(started),
                               http_status=outcome.http_status)
        return SyncResult(feed_id, "skipped", http_status=outcome.http_status)

    try:
        items = normalize(outcome.document)
        cutoff = await get_auto_archive_cutoff(db, user_id)
        result = await ingest_items(db, items, feed_id, user_id, cutoff)
        # Validators are stored only once the items they cover are persisted
        await db.execute('update_feed_headers', feed_id=feed_id,
                         etag=outcome.etag, last_modified=outcome.last_modified)
    except StorageError as e:
        logger.error(f"Storage error syncing feed {label} during {e.operation}: {e}")
        await record_failure(db, feed_id, str(e))
        await log_sync_attempt(db, feed_id, user_id, "failed", _elapsed_ms(started),
                               http_status=outcome.http_status, error=str(e))
        raise
    except Exception as e:
        logger.exception(f"Unexpected error syncing feed {label}: {e}")
        await _record_unexpected_failure(db, feed_id, user_id, started, e, http_status=outcome.http_status)
        raise

    await _refresh_metadata(db, feed, outcome)
    await record_success(db, feed_id)
    await log_sync_attempt(db, feed_id, user_id, "ok", _elapsed_ms(started),
                           http_status=outcome.http_status, articles_added=result.created)
    logger.info(f"Synced feed {label}: {result.created} new of {len(items)} items")
    return SyncResult(feed_id, "ok", created=result.created, updated=result.updated,
                      http_status=outcome.http_status)
