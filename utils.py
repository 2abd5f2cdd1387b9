#!/usr/bin/env python3
"""
Utility classes and functions for the feed sync engine.

Shared helpers used by the normalizer, health tracker and job queue:
HTML sanitization, string truncation, retry backoff and time formatting.
"""

from datetime import datetime, timezone
from time import time
from typing import Optional
import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Elements that never survive sanitization, content included
_DANGEROUS_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
]
# Tracking image names as a whole path segment, e.g. /pixel.gif or /blank?x=1
_TRACKING_SRC = re.compile(
    r'(?:^|/)(?:pixel|tracker|tracking|counter|spacer|blank|trans|transparent)(?:[./_?-]|$)', re.I
)


def now_ts() -> int:
    """Current time as integer epoch seconds."""
    return int(time())


def format_timestamp(timestamp: Optional[int]) -> str:
    """Return an ISO-8601 UTC rendering of an epoch timestamp, or 'n/a'."""
    if timestamp in (None, ""):
        return "n/a"
    try:
        return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    The result never exceeds ``max_length`` characters, suffix included.
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


class RetryHelper:
    """Exponential backoff calculator for retried jobs."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 60.0):
        """Initialize the retry helper.

        Args:
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Args:
            attempt: The current attempt number (0-based)

        Returns:
            Delay in seconds (with exponential backoff)
        """
        delay = self.base_delay * (2 ** max(attempt, 0))
        return min(delay, self.max_delay)


def sanitize_html(html_content: Optional[str], base_url: Optional[str] = None) -> str:
    """Sanitize untrusted feed HTML, keeping it as HTML.

    Args:
        html_content: Raw HTML to sanitize
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src to absolute URLs when ``base_url`` is provided; otherwise
      non-absolute references are neutralized (links -> ``#``, images lose their src)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(_DANGEROUS_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            name = attr.lower()
            if name.startswith('on'):
                del tag[attr]
            elif name in ('href', 'src') and str(tag[attr]).strip().lower().startswith('javascript:'):
                del tag[attr]

    for img in soup.find_all('img'):
        src = img.get('src', '')
        if _TRACKING_SRC.search(src) or img.get('height') in ('0', '1'):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith(('mailto:', '#')):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            resolved = urljoin(base_url, value)
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            val = str(tag[attr]).strip()
            if not val:
                continue
            rewritten = _rewrite_url(val, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    return str(soup).strip()
