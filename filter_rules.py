#!/usr/bin/env python3
"""
Filter rule evaluation.

Rules are per-feed, case-insensitive substring tests on an item title. An item
is auto-marked read when any active rule matches; rule order is irrelevant.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from config import get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("filter_rules")


class FilterOperator(str, Enum):
    INCLUDES = "includes"
    NOT_INCLUDES = "not_includes"


@dataclass(frozen=True)
class FilterRule:
    pattern: str
    operator: str
    is_active: bool = True
    id: Optional[int] = None
    feed_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FilterRule":
        return cls(
            pattern=row['pattern'],
            operator=row['operator'],
            is_active=bool(row.get('is_active', True)),
            id=row.get('id'),
            feed_id=row.get('feed_id'),
        )


def evaluate_rule(rule: FilterRule, title: Optional[str]) -> bool:
    """Case-insensitive substring test of one rule against a title.

    An unknown operator never matches.
    """
    haystack = (title or "").lower()
    needle = rule.pattern.lower()
    if rule.operator == FilterOperator.INCLUDES:
        return needle in haystack
    if rule.operator == FilterOperator.NOT_INCLUDES:
        return needle not in haystack
    return False


def should_mark_as_read(rules: Iterable[FilterRule], title: Optional[str]) -> bool:
    """True iff at least one active rule matches the title."""
    return any(evaluate_rule(rule, title) for rule in rules if rule.is_active)


async def load_active_rules(db, feed_id: int) -> Tuple[FilterRule, ...]:
    """Snapshot of a feed's active rules, loaded once per batch."""
    rows = await db.execute('get_active_filter_rules', feed_id=feed_id)
    return tuple(FilterRule.from_row(row) for row in rows)


@trace_span(
    "apply_filter_rules",
    tracer_name="filter_rules",
    attr_from_args=lambda db, feed_id, user_id=None: {"feed.id": feed_id},
)
async def apply_filter_rules_to_existing_articles(db, feed_id: int, user_id: Optional[int] = None) -> Dict[str, int]:
    """Re-apply a feed's active rules to its unread articles.

    Only ever marks articles read, so running it again changes nothing.

    Returns:
        {"articles_processed": int, "articles_marked_as_read": int}
    """
    result = {"articles_processed": 0, "articles_marked_as_read": 0}

    feed = await db.execute('get_feed', feed_id=feed_id)
    if feed is None or (user_id is not None and feed['user_id'] != user_id):
        logger.warning(f"Cannot apply filter rules: feed {feed_id} not found")
        return result

    rules = await load_active_rules(db, feed_id)
    if not rules:
        return result

    unread = await db.execute('list_unread_articles', feed_id=feed_id)
    matching = [article['id'] for article in unread if should_mark_as_read(rules, article['title'])]
    marked = await db.execute('mark_articles_read', article_ids=matching)

    result["articles_processed"] = len(unread)
    result["articles_marked_as_read"] = marked
    logger.info(f"Applied {len(rules)} filter rules to feed {feed_id}: {marked}/{len(unread)} unread articles marked read")
    return result
