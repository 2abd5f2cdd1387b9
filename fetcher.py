#!/usr/bin/env python3
"""
Conditional feed fetcher.

Performs a single HTTP GET for one feed URL, honouring stored ETag and
Last-Modified validators, and parses the body with feedparser into a
ParsedDocument tagged with its dialect ("rss", "atom" or "unknown").
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from functools import partial
from typing import Any, Dict, List, Optional, Union

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedParseError, FetchTimeoutError, HttpFetchError, NetworkFetchError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

RSS_VERSIONS = frozenset({'rss20', 'rss094', 'rss093', 'rss092', 'rss091n', 'rss091u', 'rss'})
ATOM_VERSIONS = frozenset({'atom10', 'atom03', 'atom'})


@dataclass
class ParsedDocument:
    """A parsed feed body, tagged with the dialect it was recognised as."""
    format: str
    version: str = ''
    feed: Dict[str, Any] = field(default_factory=dict)
    entries: List[Any] = field(default_factory=list)


@dataclass
class NotModified:
    """The server answered 304; nothing to parse or ingest."""
    http_status: int = HTTP_NOT_MODIFIED


@dataclass
class FetchResult:
    document: ParsedDocument
    etag: Optional[str]
    last_modified: Optional[str]
    http_status: int


def classify_version(version: Optional[str]) -> str:
    """Map a feedparser version string onto one of the supported dialects."""
    if version in RSS_VERSIONS:
        return 'rss'
    if version in ATOM_VERSIONS:
        return 'atom'
    return 'unknown'


def parse_document(content: bytes, base_url: Optional[str] = None) -> ParsedDocument:
    """Parse a raw feed body (blocking; run it in an executor).

    Raises:
        FeedParseError: the body is not a feed document at all.
    """
    response_headers = {'content-location': base_url} if base_url else None
    parsed = feedparser.parse(
        content,
        sanitize_html=True,
        resolve_relative_uris=True,
        response_headers=response_headers,
    )
    version = parsed.get('version') or ''
    entries = list(parsed.get('entries') or [])

    if not version and not entries:
        reason = parsed.get('bozo_exception') if parsed.get('bozo') else 'no feed elements found'
        raise FeedParseError(f"Unparseable feed body: {reason}", url=base_url)

    if parsed.get('bozo'):
        logger.debug(f"Feed parsing warning for {base_url}: {parsed.get('bozo_exception')}")

    channel = parsed.get('feed') or {}
    return ParsedDocument(
        format=classify_version(version),
        version=version,
        feed={
            'title': channel.get('title'),
            'description': channel.get('subtitle') or channel.get('description'),
            'link': channel.get('link'),
        },
        entries=entries,
    )


class FeedFetcher:
    """Fetches and parses one feed per call. Holds no per-feed state."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(thread_name_prefix="feedparser")

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    def _prepare_request_headers(self, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Build request headers, adding conditional validators when known."""
        headers = {'User-Agent': config.USER_AGENT}

        if etag:
            # Quote unquoted ETags; weak and strong quoted forms pass through
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag

        if last_modified:
            normalized = self._normalize_http_date(last_modified)
            if normalized:
                headers['If-Modified-Since'] = normalized
            else:
                logger.warning(f"Invalid Last-Modified value '{last_modified}', not sending If-Modified-Since")

        return headers

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, session, feed_url, etag=None, last_modified=None: {
            "http.url": feed_url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, session: ClientSession, feed_url: str, etag: Optional[str] = None,
                    last_modified: Optional[str] = None) -> Union[NotModified, FetchResult]:
        """Fetch and parse one feed.

        Returns:
            NotModified on a 304, otherwise a FetchResult with the parsed
            document and the response validators.

        Raises:
            HttpFetchError: non-2xx, non-304 response.
            FetchTimeoutError: the request exceeded the timeout.
            NetworkFetchError: DNS/connection/transport failure.
            FeedParseError: the body is not a feed.
        """
        headers = self._prepare_request_headers(etag, last_modified)
        try:
            async with session.get(
                feed_url,
                headers=headers,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.info(f"Feed {feed_url} not modified since last fetch")
                    return NotModified()

                if not 200 <= response.status < 300:
                    logger.warning(f"Error fetching {feed_url}: HTTP {response.status}")
                    raise HttpFetchError(response.status, url=feed_url)

                new_etag = response.headers.get('ETag')
                new_last_modified = self._normalize_http_date(response.headers.get('Last-Modified'))
                content = await response.read()
                status = response.status
        except TimeoutError as e:
            logger.warning(f"Timeout fetching {feed_url} (timeout={self.timeout}s)")
            raise FetchTimeoutError(self.timeout, url=feed_url) from e
        except ClientError as e:
            detail = self._format_client_error(e)
            logger.warning(f"Network error fetching {feed_url}: {detail}")
            raise NetworkFetchError(f"Network error: {detail}", url=feed_url) from e

        document = await self.run_in_executor(parse_document, content, feed_url)
        logger.debug(f"Feed {feed_url} parsed as {document.version or 'unknown'} ({len(document.entries)} entries)")
        return FetchResult(
            document=document,
            etag=new_etag,
            last_modified=new_last_modified,
            http_status=status,
        )

    async def run_in_executor(self, func, *args) -> Any:
        """Run blocking parsing work in the fetcher's thread pool."""
        if self.executor is None:
            # Recreated after close() so the fetcher can be reused by a restarted pool
            self.executor = ThreadPoolExecutor(thread_name_prefix="feedparser")
        return await get_running_loop().run_in_executor(self.executor, partial(func, *args))

    async def close(self) -> None:
        """Shut down the parser thread pool. Safe to call more than once."""
        executor, self.executor = self.executor, None
        if executor is None:
            return
        try:
            await wait_for(
                get_running_loop().run_in_executor(None, partial(executor.shutdown, wait=True)),
                timeout=30.0,
            )
        except TimeoutError:
            logger.warning("Parser thread pool shutdown timed out after 30 seconds")
            executor.shutdown(wait=False)
        logger.debug("FeedFetcher closed")
