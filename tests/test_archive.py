import pytest

from archive import DAY_IN_SECONDS, auto_archive_for_all_users, get_auto_archive_cutoff, sweep
from errors import StorageError
from utils import format_timestamp

NOW = 1_750_000_000


async def _add(db, feed, make_item, guid, age_days, is_read=False, is_archived=False):
    return await db.execute(
        'insert_article',
        user_id=feed['user_id'],
        feed_id=feed['feed_id'],
        item=make_item(guid=guid, pub_date=NOW - age_days * DAY_IN_SECONDS).as_dict(),
        is_read=is_read,
        is_archived=is_archived,
        tag_ids=[],
    )


@pytest.mark.asyncio
async def test_default_cutoff_is_thirty_days(db, feed):
    assert await get_auto_archive_cutoff(db, feed['user_id'], now=NOW) == NOW - 30 * DAY_IN_SECONDS


@pytest.mark.asyncio
async def test_user_setting_overrides_cutoff(db, feed):
    await db.execute('set_auto_archive_days', user_id=feed['user_id'], days=7)
    assert await get_auto_archive_cutoff(db, feed['user_id'], now=NOW) == NOW - 7 * DAY_IN_SECONDS


@pytest.mark.asyncio
async def test_out_of_range_setting_is_rejected(db, feed):
    with pytest.raises(StorageError):
        await db.execute('set_auto_archive_days', user_id=feed['user_id'], days=0)
    with pytest.raises(StorageError):
        await db.execute('set_auto_archive_days', user_id=feed['user_id'], days=366)


@pytest.mark.asyncio
async def test_sweep_archives_only_old_unread_items(db, feed, make_item):
    old_unread = await _add(db, feed, make_item, "old-unread", 40)
    old_read = await _add(db, feed, make_item, "old-read", 40, is_read=True)
    recent = await _add(db, feed, make_item, "recent", 5)
    await _add(db, feed, make_item, "already", 40, is_archived=True)

    result = await sweep(db, feed['user_id'], now=NOW)

    assert result.marked_count == 1
    assert result.cutoff_date == format_timestamp(NOW - 30 * DAY_IN_SECONDS)
    assert (await db.execute('get_article', article_id=old_unread))['is_archived'] == 1
    assert (await db.execute('get_article', article_id=old_read))['is_archived'] == 0
    assert (await db.execute('get_article', article_id=recent))['is_archived'] == 0


@pytest.mark.asyncio
async def test_sweep_is_idempotent(db, feed, make_item):
    await _add(db, feed, make_item, "old", 40)

    first = await sweep(db, feed['user_id'], now=NOW)
    second = await sweep(db, feed['user_id'], now=NOW)

    assert first.marked_count == 1
    assert second.marked_count == 0


@pytest.mark.asyncio
async def test_sweep_all_users_uses_each_users_window(db, feed, make_item):
    other_user = await db.execute('create_user', name='other')
    other_feed = await db.execute('create_feed', user_id=other_user, feed_url='https://other.example/rss')
    await db.execute('set_auto_archive_days', user_id=other_user, days=3)
    await _add(db, feed, make_item, "mine", 10)
    await _add(db, {'user_id': other_user, 'feed_id': other_feed}, make_item, "theirs", 10)

    results = await auto_archive_for_all_users(db, now=NOW)

    assert results[feed['user_id']].marked_count == 0
    assert results[other_user].marked_count == 1
