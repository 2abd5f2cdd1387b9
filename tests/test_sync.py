import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import sync
from config import config
from errors import HttpFetchError, StorageError
from fetcher import FeedFetcher, FetchResult, NotModified, parse_document
from scheduler import enqueue_stale_feeds
from worker import SyncWorkerPool


class FakeFetcher:
    """Returns (or raises) a canned outcome and records the validators it was given."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    async def fetch(self, session, feed_url, etag=None, last_modified=None):
        self.calls.append({'url': feed_url, 'etag': etag, 'last_modified': last_modified})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _fetched(body, etag='"v1"'):
    return FetchResult(
        document=parse_document(body, "https://example.com/feed.xml"),
        etag=etag,
        last_modified='Mon, 06 Jan 2025 10:00:00 GMT',
        http_status=200,
    )


@pytest.mark.asyncio
async def test_successful_sync_ingests_and_stores_validators(db, feed, rss_body):
    fetcher = FakeFetcher(_fetched(rss_body))

    result = await sync.sync_feed(db, fetcher, None, feed['user_id'], feed['feed_id'])

    assert (result.status, result.created, result.http_status) == ("ok", 2, 200)
    stored = await db.execute('get_feed', feed_id=feed['feed_id'])
    assert stored['etag'] == '"v1"'
    assert stored['last_modified'] == 'Mon, 06 Jan 2025 10:00:00 GMT'
    assert stored['sync_status'] == 'ok'
    assert stored['last_sync_at'] is not None
    # Empty display fields are backfilled from the channel
    assert stored['title'] == "Example News"
    logs = await db.execute('get_feed_sync_logs', feed_id=feed['feed_id'])
    assert (logs[0]['status'], logs[0]['articles_added']) == ("ok", 2)


@pytest.mark.asyncio
async def test_second_sync_sends_validators_and_dedups(db, feed, rss_body):
    fetcher = FakeFetcher(_fetched(rss_body))

    await sync.sync_feed(db, fetcher, None, feed['user_id'], feed['feed_id'])
    result = await sync.sync_feed(db, fetcher, None, feed['user_id'], feed['feed_id'])

    assert result.created == 0
    assert fetcher.calls[0]['etag'] is None
    assert fetcher.calls[1]['etag'] == '"v1"'
    assert len(await db.execute('list_articles', feed_id=feed['feed_id'])) == 2


@pytest.mark.asyncio
async def test_not_modified_counts_as_success(db, feed, monkeypatch):
    monkeypatch.setattr(config, 'BROKEN_THRESHOLD', 3)
    await db.execute('update_feed_health', feed_id=feed['feed_id'], sync_status='failing',
                     sync_fail_count=2, sync_error="HTTP 503", last_sync_at=1, succeeded=False)

    result = await sync.sync_feed(db, FakeFetcher(NotModified()), None, feed['user_id'], feed['feed_id'])

    assert (result.status, result.created, result.http_status) == ("skipped", 0, 304)
    health = await db.execute('get_feed_health', feed_id=feed['feed_id'])
    assert (health['sync_status'], health['sync_fail_count'], health['sync_error']) == ('ok', 0, None)
    assert await db.execute('list_articles', feed_id=feed['feed_id']) == []
    logs = await db.execute('get_feed_sync_logs', feed_id=feed['feed_id'])
    assert (logs[0]['status'], logs[0]['http_status']) == ("skipped", 304)


@pytest.mark.asyncio
async def test_fetch_failures_break_the_feed(db, feed, monkeypatch):
    monkeypatch.setattr(config, 'BROKEN_THRESHOLD', 3)
    fetcher = FakeFetcher(HttpFetchError(500, url="https://example.com/feed.xml"))

    for _ in range(3):
        result = await sync.sync_feed(db, fetcher, None, feed['user_id'], feed['feed_id'])
        assert (result.status, result.http_status, result.error) == ("failed", 500, "HTTP 500")

    health = await db.execute('get_feed_health', feed_id=feed['feed_id'])
    assert (health['sync_status'], health['sync_fail_count']) == ('broken', 3)

    # Broken feeds are skipped without a request
    result = await sync.sync_feed(db, fetcher, None, feed['user_id'], feed['feed_id'])
    assert result.status == "skipped"
    assert len(fetcher.calls) == 3


@pytest.mark.asyncio
async def test_storage_error_is_recorded_and_reraised(db, feed, rss_body, monkeypatch):
    async def failing_ingest(*args, **kwargs):
        raise StorageError('insert_article', 'disk I/O error')

    monkeypatch.setattr(sync, 'ingest_items', failing_ingest)

    with pytest.raises(StorageError):
        await sync.sync_feed(db, FakeFetcher(_fetched(rss_body)), None, feed['user_id'], feed['feed_id'])

    stored = await db.execute('get_feed', feed_id=feed['feed_id'])
    assert stored['sync_status'] == 'failing'
    # Validators are only kept once the items they cover are stored
    assert stored['etag'] is None



@pytest.mark.asyncio
async def test_unexpected_fetch_error_is_recorded_and_reraised(db, feed, monkeypatch):
    monkeypatch.setattr(config, 'BROKEN_THRESHOLD', 3)
    with pytest.raises(RuntimeError):
        await sync.sync_feed(db, FakeFetcher(RuntimeError("boom")), None, feed['user_id'], feed['feed_id'])

    health = await db.execute('get_feed_health', feed_id=feed['feed_id'])
    assert (health['sync_status'], health['sync_fail_count']) == ('failing', 1)
    assert health['sync_error'] == "RuntimeError: boom"
    logs = await db.execute('get_feed_sync_logs', feed_id=feed['feed_id'])
    assert (logs[0]['status'], logs[0]['error']) == ("failed", "RuntimeError: boom")


@pytest.mark.asyncio
async def test_unexpected_ingest_error_is_recorded_and_reraised(db, feed, rss_body, monkeypatch):
    def broken_normalize(document):
        raise ValueError("bad entry")

    monkeypatch.setattr(sync, 'normalize', broken_normalize)

    with pytest.raises(ValueError):
        await sync.sync_feed(db, FakeFetcher(_fetched(rss_body)), None, feed['user_id'], feed['feed_id'])

    health = await db.execute('get_feed_health', feed_id=feed['feed_id'])
    assert health['sync_fail_count'] == 1
    logs = await db.execute('get_feed_sync_logs', feed_id=feed['feed_id'])
    assert (logs[0]['status'], logs[0]['http_status']) == ("failed", 200)

@pytest.mark.asyncio
async def test_unknown_feed_or_wrong_user_is_skipped(db, feed):
    fetcher = FakeFetcher(NotModified())

    assert (await sync.sync_feed(db, fetcher, None, feed['user_id'], 9999)).status == "skipped"
    assert (await sync.sync_feed(db, fetcher, None, feed['user_id'] + 1, feed['feed_id'])).status == "skipped"
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_scheduled_sync_end_to_end(db, rss_body):
    """Scheduler tick -> worker pool -> HTTP fetch -> stored items, then a 304 on the next pass."""
    requests = []

    async def handler(request):
        requests.append(request.headers.get('If-None-Match'))
        if request.headers.get('If-None-Match') == '"v1"':
            return web.Response(status=304)
        return web.Response(body=rss_body, headers={'ETag': '"v1"'})

    app = web.Application()
    app.router.add_get('/feed.xml', handler)
    server = TestServer(app)
    await server.start_server()

    user_id = await db.execute('create_user', name='reader')
    feed_id = await db.execute('create_feed', user_id=user_id, feed_url=str(server.make_url('/feed.xml')))
    pool = SyncWorkerPool(db, fetcher=FeedFetcher(), concurrency=2)
    try:
        assert await enqueue_stale_feeds(db) == 1
        assert await pool.drain() == 1
        assert len(await db.execute('list_articles', feed_id=feed_id)) == 2

        # Forced re-sync hits the conditional path
        await db.execute('enqueue_job', job_key="manual", payload={'user_id': user_id, 'feed_id': feed_id},
                         max_attempts=1)
        assert await pool.drain() == 1
    finally:
        await pool.fetcher.close()
        await server.close()

    assert requests == [None, '"v1"']
    assert len(await db.execute('list_articles', feed_id=feed_id)) == 2
    counts = await db.execute('count_jobs_by_status')
    assert counts['succeeded'] == 2
    logs = await db.execute('get_feed_sync_logs', feed_id=feed_id)
    assert [log['status'] for log in logs] == ["skipped", "ok"]
