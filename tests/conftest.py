"""Shared fixtures: an isolated database per test and sample feed bodies."""

import pytest

from models import DatabaseQueue
from normalizer import NormalizedItem
from utils import now_ts


SAMPLE_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example News</title>
    <link>https://example.com/</link>
    <description>Things that happened</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <guid>post-1</guid>
      <author>jane@example.com (Jane Doe)</author>
      <pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>
      <description>&lt;p&gt;Short summary&lt;/p&gt;</description>
      <content:encoded><![CDATA[<p>Full body <script>alert(1)</script>text</p>]]></content:encoded>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <guid>post-2</guid>
      <pubDate>Tue, 07 Jan 2025 10:00:00 GMT</pubDate>
      <description>Plain description</description>
    </item>
  </channel>
</rss>
"""

SAMPLE_ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <subtitle>An Atom feed</subtitle>
  <link href="https://example.org/"/>
  <link rel="self" href="https://example.org/feed.atom"/>
  <id>urn:uuid:feed</id>
  <updated>2025-01-05T08:30:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <link rel="self" href="https://example.org/entries/1.atom"/>
    <link rel="alternate" href="https://example.org/entries/1"/>
    <id>urn:uuid:entry-1</id>
    <updated>2025-01-05T08:30:00Z</updated>
    <author><name>Ann Author</name></author>
    <summary>Entry summary</summary>
    <content type="html">&lt;p&gt;Entry content&lt;/p&gt;</content>
  </entry>
  <entry>
    <title>Published entry</title>
    <link href="https://example.org/entries/2"/>
    <id>urn:uuid:entry-2</id>
    <published>2025-01-04T12:00:00Z</published>
    <updated>2025-01-05T12:00:00Z</updated>
    <summary>Only a summary</summary>
  </entry>
</feed>
"""


@pytest.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


@pytest.fixture
async def feed(db):
    """A user subscribed to one never-synced feed."""
    user_id = await db.execute('create_user', name='reader')
    feed_id = await db.execute('create_feed', user_id=user_id, feed_url='https://example.com/feed.xml')
    return {'user_id': user_id, 'feed_id': feed_id}


@pytest.fixture
def make_item():
    """Factory for NormalizedItem values with sensible defaults."""

    def _make(guid="item-1", title="A title", pub_date=None, **overrides):
        fields = {
            'guid': guid,
            'title': title,
            'content': '<p>content</p>',
            'description': '<p>description</p>',
            'url': f"https://example.com/{guid or 'no-guid'}",
            'pub_date': pub_date if pub_date is not None else now_ts(),
            'author': None,
        }
        fields.update(overrides)
        return NormalizedItem(**fields)

    return _make


@pytest.fixture
def rss_body():
    return SAMPLE_RSS


@pytest.fixture
def atom_body():
    return SAMPLE_ATOM
