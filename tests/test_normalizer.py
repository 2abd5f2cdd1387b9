from calendar import timegm

import pytest

from config import config
from errors import FeedParseError
from fetcher import ParsedDocument, classify_version, parse_document
from normalizer import SYNTHETIC_GUID_PREFIX, normalize, synthesize_guid

NOW = 1_750_000_000

RSS_WITHOUT_GUIDS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>No guids</title><link>https://example.net/</link>
  <item><title>Undated</title><link>https://example.net/a</link><description>one</description></item>
</channel></rss>
"""

RDF_FEED = b"""<?xml version="1.0"?>
<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#" xmlns="http://purl.org/rss/1.0/">
  <channel rdf:about="https://example.net/"><title>RDF</title><link>https://example.net/</link>
    <description>rdf</description></channel>
  <item rdf:about="https://example.net/1"><title>RDF item</title><link>https://example.net/1</link></item>
</rdf:RDF>
"""


def test_classify_version():
    assert classify_version('rss20') == 'rss'
    assert classify_version('rss091u') == 'rss'
    assert classify_version('atom10') == 'atom'
    assert classify_version('rss10') == 'unknown'
    assert classify_version('') == 'unknown'
    assert classify_version(None) == 'unknown'


def test_rss_items_map_fields(rss_body):
    document = parse_document(rss_body, "https://example.com/feed.xml")
    assert document.format == 'rss'
    assert document.feed['title'] == "Example News"

    items = normalize(document, now=NOW)

    assert [i.guid for i in items] == ["post-1", "post-2"]
    first = items[0]
    assert first.title == "First post"
    assert first.url == "https://example.com/posts/1"
    assert first.pub_date == timegm((2025, 1, 6, 10, 0, 0))
    assert "Jane" in first.author
    # content:encoded carries the body, the description stays separate
    assert "Full body" in first.content
    assert "<script" not in first.content
    assert "Short summary" in first.description
    # Without content:encoded the description doubles as content
    assert items[1].content == items[1].description
    assert items[1].author is None


def test_rss_item_without_date_or_guid_uses_defaults():
    items = normalize(parse_document(RSS_WITHOUT_GUIDS, "https://example.net/feed"), now=NOW)

    assert len(items) == 1
    assert items[0].guid is None
    assert items[0].pub_date == NOW


def test_synthesized_guids_are_stable_across_fetches(monkeypatch):
    monkeypatch.setattr(config, 'SYNTHESIZE_GUIDS', True)
    document = parse_document(RSS_WITHOUT_GUIDS, "https://example.net/feed")

    first = normalize(document, now=NOW)
    second = normalize(document, now=NOW + 3600)

    assert first[0].guid.startswith(SYNTHETIC_GUID_PREFIX)
    assert first[0].guid == second[0].guid


def test_synthesize_guid_needs_url_or_title():
    assert synthesize_guid(None, None, 123) is None
    assert synthesize_guid("https://x/1", None, None) != synthesize_guid("https://x/2", None, None)


def test_atom_items_map_fields(atom_body):
    document = parse_document(atom_body, "https://example.org/feed.atom")
    assert document.format == 'atom'
    assert document.feed['description'] == "An Atom feed"

    items = normalize(document, now=NOW)

    first, second = items
    assert first.guid == "urn:uuid:entry-1"
    assert first.url == "https://example.org/entries/1"
    assert first.author == "Ann Author"
    assert "Entry content" in first.content
    assert first.description == "Entry summary"
    # No <published>: falls back to <updated>
    assert first.pub_date == timegm((2025, 1, 5, 8, 30, 0))
    # <published> wins over <updated>
    assert second.pub_date == timegm((2025, 1, 4, 12, 0, 0))
    assert second.content == second.description == "Only a summary"


def test_rdf_documents_yield_no_items():
    document = parse_document(RDF_FEED, "https://example.net/rdf")
    assert document.format == 'unknown'
    assert normalize(document, now=NOW) == []


def test_unknown_format_yields_no_items():
    document = ParsedDocument(format='unknown', entries=[{'title': 'ignored'}])
    assert normalize(document) == []


def test_empty_document_yields_no_items():
    assert normalize(ParsedDocument(format='rss', version='rss20'), now=NOW) == []


def test_malformed_entry_is_skipped():
    entries = [
        {'id': 'bad', 'title': 'Bad', 'content': 'not-a-list-of-blocks'},
        {'id': 'good', 'title': 'Good', 'summary': 'ok'},
    ]
    items = normalize(ParsedDocument(format='rss', version='rss20', entries=entries), now=NOW)
    assert [i.guid for i in items] == ['good']


def test_non_feed_body_raises_parse_error():
    with pytest.raises(FeedParseError):
        parse_document(b"this is not a feed at all", "https://example.com/")
