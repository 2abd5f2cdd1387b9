#!/usr/bin/env python3
"""
Ingestion engine.

Deduplicates a normalized batch against stored guids, derives the read and
archived flags for each new item, and persists items with their feed's tags.
"""

from dataclasses import dataclass
from typing import List, Set

from config import get_logger
from errors import DuplicateItemError
from filter_rules import load_active_rules, should_mark_as_read
from normalizer import NormalizedItem
from telemetry import trace_span

# Module-specific logger
logger = get_logger("ingest")


@dataclass
class IngestResult:
    created: int = 0
    # Existing items are never rewritten; kept for callers that report both counts
    updated: int = 0


def _partition_new(items: List[NormalizedItem], existing: Set[str]) -> List[NormalizedItem]:
    """Drop items whose guid is stored or repeated earlier in the batch. Guid-less items are always new."""
    seen = set(existing)
    new_items = []
    for item in items:
        if item.guid is None:
            new_items.append(item)
        elif item.guid not in seen:
            seen.add(item.guid)
            new_items.append(item)
    return new_items


@trace_span(
    "ingest_items",
    tracer_name="ingest",
    attr_from_args=lambda db, items, feed_id, user_id, auto_archive_cutoff: {
        "feed.id": feed_id,
        "feed.entries.count": len(items),
    },
)
async def ingest_items(db, items: List[NormalizedItem], feed_id: int, user_id: int,
                       auto_archive_cutoff: int) -> IngestResult:
    """Persist the new items of a batch.

    Storage errors other than a duplicate guid propagate and abort the call;
    items inserted before the failure stay, and a retry skips them by guid.
    """
    if not items:
        return IngestResult()

    guids = [item.guid for item in items if item.guid is not None]
    existing = await db.execute('check_existing_guids', feed_id=feed_id, guids=guids) if guids else set()
    new_items = _partition_new(items, existing)
    if not new_items:
        logger.debug(f"Feed {feed_id}: all {len(items)} items already ingested")
        return IngestResult()

    rules = await load_active_rules(db, feed_id)
    tag_ids = await db.execute('get_feed_tag_ids', feed_id=feed_id)

    created = 0
    for item in new_items:
        is_archived = item.pub_date < auto_archive_cutoff
        is_read = should_mark_as_read(rules, item.title)
        try:
            await db.execute(
                'insert_article',
                user_id=user_id,
                feed_id=feed_id,
                item=item.as_dict(),
                is_read=is_read,
                is_archived=is_archived,
                tag_ids=tag_ids,
            )
        except DuplicateItemError:
            # Another delivery of this feed's job stored it first
            logger.info(f"Feed {feed_id}: item {item.guid!r} stored concurrently, skipping")
            continue
        created += 1

    logger.info(f"Feed {feed_id}: ingested {created} new items ({len(items) - len(new_items)} already known)")
    return IngestResult(created=created)
