#!/usr/bin/env python3
"""
Auto-archive sweeper.

Archives unread items published before a user's retention window. The same
cutoff is used by ingestion to archive old items on arrival.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from config import config, get_logger
from errors import StorageError
from telemetry import trace_span
from utils import format_timestamp, now_ts

# Module-specific logger
logger = get_logger("archive")

DAY_IN_SECONDS = 86400


@dataclass
class ArchiveResult:
    marked_count: int
    cutoff_date: str


async def get_auto_archive_cutoff(db, user_id: int, now: Optional[int] = None) -> int:
    """Epoch cutoff: items published before it fall outside the user's window."""
    now = now if now is not None else now_ts()
    days = await db.execute('get_auto_archive_days', user_id=user_id)
    if days is None:
        days = config.DEFAULT_AUTO_ARCHIVE_DAYS
    return now - int(days) * DAY_IN_SECONDS


@trace_span("archive.sweep", tracer_name="archive", attr_from_args=lambda db, user_id, now=None: {"user.id": user_id})
async def sweep(db, user_id: int, now: Optional[int] = None) -> ArchiveResult:
    """Archive the user's unread, unarchived items published before the cutoff."""
    cutoff = await get_auto_archive_cutoff(db, user_id, now)
    marked = await db.execute('archive_articles_before', user_id=user_id, cutoff=cutoff)
    if marked:
        logger.info(f"Archived {marked} articles for user {user_id} (cutoff {format_timestamp(cutoff)})")
    return ArchiveResult(marked_count=marked, cutoff_date=format_timestamp(cutoff))


async def auto_archive_for_all_users(db, now: Optional[int] = None) -> Dict[int, ArchiveResult]:
    """Run the sweep once per user; one user's failure does not stop the others."""
    results: Dict[int, ArchiveResult] = {}
    user_ids = await db.execute('list_user_ids')
    for user_id in user_ids:
        try:
            results[user_id] = await sweep(db, user_id, now)
        except StorageError as e:
            logger.error(f"Auto-archive failed for user {user_id}: {e}")
    total = sum(r.marked_count for r in results.values())
    logger.info(f"Auto-archive sweep finished: {total} articles archived across {len(results)}/{len(user_ids)} users")
    return results
