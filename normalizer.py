#!/usr/bin/env python3
"""
Item normalizer.

Converts the entries of a ParsedDocument into NormalizedItem records. RSS and
Atom have their own field mappings; any other dialect yields no items.
"""

from calendar import timegm
from dataclasses import dataclass, asdict
from hashlib import sha256
from typing import Any, Callable, Dict, List, Optional

from config import config, get_logger
from fetcher import ParsedDocument
from utils import now_ts, sanitize_html

# Module-specific logger
logger = get_logger("normalizer")

SYNTHETIC_GUID_PREFIX = "synthetic:"


@dataclass
class NormalizedItem:
    guid: Optional[str]
    title: str
    content: str
    description: str
    url: Optional[str]
    pub_date: int
    author: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _struct_to_timestamp(value: Any) -> Optional[int]:
    """feedparser *_parsed values are UTC struct_time tuples."""
    if not value:
        return None
    try:
        return timegm(tuple(value))
    except (OverflowError, ValueError, TypeError):
        return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def synthesize_guid(url: Optional[str], title: Optional[str], source_date: Optional[int]) -> Optional[str]:
    """Derive a stable dedup key for an entry that has no guid.

    Only source-provided values are hashed; a defaulted "now" date would make
    the key change on every fetch.
    """
    if not url and not title:
        return None
    basis = "|".join([url or "", title or "", str(source_date) if source_date is not None else ""])
    return SYNTHETIC_GUID_PREFIX + sha256(basis.encode("utf-8")).hexdigest()


def _build_item(guid: Optional[str], title: Optional[str], content: Optional[str],
                description: Optional[str], url: Optional[str], source_date: Optional[int],
                author: Optional[str], now: int) -> NormalizedItem:
    if guid is None and config.SYNTHESIZE_GUIDS:
        guid = synthesize_guid(url, title, source_date)
    return NormalizedItem(
        guid=guid,
        title=title or "",
        content=sanitize_html(content, base_url=url),
        description=sanitize_html(description, base_url=url),
        url=url,
        pub_date=source_date if source_date is not None else now,
        author=author,
    )


def _normalize_rss_entry(entry: Dict[str, Any], now: int) -> NormalizedItem:
    description = entry.get('summary') or entry.get('description')
    # content:encoded, when present, carries the full body
    content = None
    for block in entry.get('content') or []:
        if block.get('value'):
            content = block['value']
            break
    return _build_item(
        guid=_clean(entry.get('id')),
        title=_clean(entry.get('title')),
        content=content or description,
        description=description,
        url=_clean(entry.get('link')),
        source_date=_struct_to_timestamp(entry.get('published_parsed')),
        author=_clean(entry.get('author')),
        now=now,
    )


def _atom_link(entry: Dict[str, Any]) -> Optional[str]:
    for link in entry.get('links') or []:
        if link.get('rel', 'alternate') != 'self' and link.get('href'):
            return _clean(link['href'])
    return _clean(entry.get('link'))


def _normalize_atom_entry(entry: Dict[str, Any], now: int) -> NormalizedItem:
    summary = entry.get('summary')
    content = None
    for block in entry.get('content') or []:
        if block.get('value'):
            content = block['value']
            break
    authors = entry.get('authors') or []
    author = _clean(authors[0].get('name')) if authors else _clean(entry.get('author'))
    source_date = (
        _struct_to_timestamp(entry.get('published_parsed'))
        or _struct_to_timestamp(entry.get('updated_parsed'))
    )
    return _build_item(
        guid=_clean(entry.get('id')),
        title=_clean(entry.get('title')),
        content=content or summary,
        description=summary,
        url=_atom_link(entry),
        source_date=source_date,
        author=author,
        now=now,
    )


_NORMALIZERS: Dict[str, Callable[[Dict[str, Any], int], NormalizedItem]] = {
    'rss': _normalize_rss_entry,
    'atom': _normalize_atom_entry,
}


def normalize(document: ParsedDocument, now: Optional[int] = None) -> List[NormalizedItem]:
    """Normalize every entry of a parsed document, in document order.

    Unknown dialects yield an empty list. A malformed entry is logged and
    skipped without affecting the rest of the batch.
    """
    handler = _NORMALIZERS.get(document.format)
    if handler is None:
        logger.info(f"Unsupported feed dialect '{document.version or document.format}', no items normalized")
        return []

    now = now if now is not None else now_ts()
    items: List[NormalizedItem] = []
    for index, entry in enumerate(document.entries):
        try:
            items.append(handler(entry, now))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed {document.format} entry #{index}: {e}")
    return items
