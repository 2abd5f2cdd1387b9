import pytest

from archive import DAY_IN_SECONDS
from errors import DuplicateItemError, StorageError
from ingest import IngestResult, ingest_items
from utils import now_ts


class ScriptedDB:
    """Minimal stand-in for DatabaseQueue that answers from a dict of handlers."""

    def __init__(self, **handlers):
        self.handlers = handlers
        self.calls = []

    async def execute(self, operation_name, **params):
        self.calls.append(operation_name)
        handler = self.handlers.get(operation_name)
        if handler is None:
            raise AssertionError(f"unexpected operation {operation_name}")
        return handler(**params)


def _far_past():
    return now_ts() - 365 * DAY_IN_SECONDS


@pytest.mark.asyncio
async def test_ingesting_the_same_batch_twice_creates_nothing_new(db, feed, make_item):
    items = [make_item(guid="a"), make_item(guid="b")]

    first = await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())
    second = await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())

    assert first == IngestResult(created=2, updated=0)
    assert second == IngestResult(created=0, updated=0)
    assert len(await db.execute('list_articles', feed_id=feed['feed_id'])) == 2


@pytest.mark.asyncio
async def test_guid_less_items_are_stored_on_every_ingest(db, feed, make_item):
    items = [make_item(guid=None, title="No guid")]

    await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())
    await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())

    assert len(await db.execute('list_articles', feed_id=feed['feed_id'])) == 2


@pytest.mark.asyncio
async def test_repeated_guid_within_a_batch_is_stored_once(db, feed, make_item):
    items = [make_item(guid="dup", title="first"), make_item(guid="dup", title="second")]

    result = await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())

    assert result.created == 1
    articles = await db.execute('list_articles', feed_id=feed['feed_id'])
    assert [a['title'] for a in articles] == ["first"]


@pytest.mark.asyncio
async def test_same_guid_in_another_feed_is_independent(db, feed, make_item):
    other_feed = await db.execute('create_feed', user_id=feed['user_id'], feed_url='https://other.example/rss')
    item = make_item(guid="shared")

    await ingest_items(db, [item], feed['feed_id'], feed['user_id'], _far_past())
    result = await ingest_items(db, [item], other_feed, feed['user_id'], _far_past())

    assert result.created == 1


@pytest.mark.asyncio
async def test_items_older_than_cutoff_arrive_archived(db, feed, make_item):
    now = now_ts()
    cutoff = now - 30 * DAY_IN_SECONDS
    items = [
        make_item(guid="old", pub_date=now - 40 * DAY_IN_SECONDS),
        make_item(guid="new", pub_date=now - 1 * DAY_IN_SECONDS),
    ]

    await ingest_items(db, items, feed['feed_id'], feed['user_id'], cutoff)

    articles = {a['guid']: a for a in await db.execute('list_articles', feed_id=feed['feed_id'])}
    assert articles['old']['is_archived'] == 1
    assert articles['new']['is_archived'] == 0
    assert articles['old']['is_read'] == 0


@pytest.mark.asyncio
async def test_filter_rules_mark_matching_items_read(db, feed, make_item):
    await db.execute('create_filter_rule', feed_id=feed['feed_id'], pattern="AD", operator="includes")
    await db.execute('create_filter_rule', feed_id=feed['feed_id'], pattern="news", operator="includes",
                     is_active=False)
    items = [make_item(guid="ad", title="This is an ad"), make_item(guid="news", title="Real news")]

    await ingest_items(db, items, feed['feed_id'], feed['user_id'], _far_past())

    articles = {a['guid']: a for a in await db.execute('list_articles', feed_id=feed['feed_id'])}
    assert articles['ad']['is_read'] == 1
    assert articles['news']['is_read'] == 0


@pytest.mark.asyncio
async def test_feed_tags_are_copied_to_new_items(db, feed, make_item):
    tech = await db.execute('create_tag', user_id=feed['user_id'], name='tech')
    daily = await db.execute('create_tag', user_id=feed['user_id'], name='daily')
    await db.execute('add_feed_tag', feed_id=feed['feed_id'], tag_id=tech)
    await db.execute('add_feed_tag', feed_id=feed['feed_id'], tag_id=daily)

    await ingest_items(db, [make_item(guid="t")], feed['feed_id'], feed['user_id'], _far_past())

    article = (await db.execute('list_articles', feed_id=feed['feed_id']))[0]
    assert await db.execute('get_article_tag_ids', article_id=article['id']) == sorted([tech, daily])


@pytest.mark.asyncio
async def test_empty_batch_touches_no_storage():
    scripted = ScriptedDB()

    result = await ingest_items(scripted, [], 1, 1, 0)

    assert result == IngestResult()
    assert scripted.calls == []


@pytest.mark.asyncio
async def test_concurrent_duplicate_insert_is_skipped(make_item):
    def insert_article(**params):
        raise DuplicateItemError('insert_article', 'guid already stored')

    scripted = ScriptedDB(
        check_existing_guids=lambda **p: set(),
        get_active_filter_rules=lambda **p: [],
        get_feed_tag_ids=lambda **p: [],
        insert_article=insert_article,
    )

    result = await ingest_items(scripted, [make_item(guid="x")], 1, 1, 0)

    assert result.created == 0


@pytest.mark.asyncio
async def test_storage_failure_aborts_the_batch(make_item):
    inserted = []

    def insert_article(item, **params):
        if inserted:
            raise StorageError('insert_article', 'disk I/O error')
        inserted.append(item['guid'])
        return 1

    scripted = ScriptedDB(
        check_existing_guids=lambda **p: set(),
        get_active_filter_rules=lambda **p: [],
        get_feed_tag_ids=lambda **p: [],
        insert_article=insert_article,
    )
    items = [make_item(guid="a"), make_item(guid="b"), make_item(guid="c")]

    with pytest.raises(StorageError):
        await ingest_items(scripted, items, 1, 1, 0)
    assert inserted == ["a"]
    assert scripted.calls.count('insert_article') == 2
