import pytest
from aiohttp import ClientConnectionError

from errors import FetchError
from fetcher import FeedFetcher


FEED_URL = 'https://example.com/rss'


def _channel(items: str, description: str = "<description>About</description>") -> bytes:
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <link>https://example.com/</link>
    {description}
    {items}
  </channel>
</rss>
""".encode('utf-8')


def _item(n: int, pub_date: bool = True) -> str:
    date = f"<pubDate>Mon, 0{n} Jan 2025 10:00:00 +0000</pubDate>" if pub_date else ""
    return (
        f"<item><title>Post {n}</title><link>https://example.com/posts/{n}</link>"
        f"<description>Body {n}</description>{date}</item>"
    )


def test_parse_feed_drops_items_without_pub_date(valid_feed):
    parsed = FeedFetcher().parse_feed(valid_feed, FEED_URL)

    assert parsed.title == 'Example Blog'
    assert parsed.link == 'https://example.com/'
    assert parsed.description == 'Posts from the example blog'
    assert [item.link for item in parsed.items] == [
        'https://example.com/posts/1',
        'https://example.com/posts/2',
    ]
    first = parsed.items[0]
    assert first.title == 'First post'
    assert first.description == 'The first post'
    assert first.pub_date == 'Mon, 06 Jan 2025 10:00:00 +0000'


ITEM_ELEMENTS = {
    'title': "<title>Incomplete</title>",
    'link': "<link>https://example.com/posts/incomplete</link>",
    'description': "<description>Body</description>",
    'pubDate': "<pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate>",
}


def _item_with(overrides: dict) -> str:
    elements = dict(ITEM_ELEMENTS, **overrides)
    return "<item>" + "".join(value for value in elements.values() if value) + "</item>"


@pytest.mark.parametrize("overrides", [
    {'title': ""},
    {'link': ""},
    {'description': ""},
    {'pubDate': ""},
    {'title': "<title>   </title>"},
    {'link': "<link></link>"},
    {'description': "<description></description>"},
    {'pubDate': "<pubDate></pubDate>"},
    # A permalink guid is not a <link>
    {'link': "<guid>https://example.com/guid-1</guid>"},
    {'link': '<guid isPermaLink="true">https://example.com/guid-2</guid>'},
    # Full content is not a <description>
    {'description': "<content:encoded><![CDATA[<p>full body</p>]]></content:encoded>"},
], ids=[
    'no-title', 'no-link', 'no-description', 'no-pubdate',
    'blank-title', 'empty-link', 'empty-description', 'empty-pubdate',
    'guid-instead-of-link', 'permalink-guid-instead-of-link',
    'content-instead-of-description',
])
def test_parse_feed_drops_item_missing_required_field(overrides):
    document = _channel(_item_with(overrides) + _item(1)).replace(
        b'<rss version="2.0">',
        b'<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">',
    )

    parsed = FeedFetcher().parse_feed(document)

    assert [item.link for item in parsed.items] == ['https://example.com/posts/1']


def test_parse_feed_keeps_items_with_guid_and_content_alongside_required_fields():
    item = (
        "<item><guid>https://example.com/guid-3</guid><title>Full</title>"
        "<link>https://example.com/posts/full</link>"
        "<content:encoded><![CDATA[<p>full body</p>]]></content:encoded>"
        "<description>Short body</description>"
        "<pubDate>Mon, 06 Jan 2025 10:00:00 +0000</pubDate></item>"
    )
    document = _channel(item).replace(
        b'<rss version="2.0">',
        b'<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">',
    )

    parsed = FeedFetcher().parse_feed(document)

    assert len(parsed.items) == 1
    assert parsed.items[0].link == 'https://example.com/posts/full'
    assert parsed.items[0].description == 'Short body'


def test_parse_feed_requires_channel_description():
    fetcher = FeedFetcher()
    with pytest.raises(FetchError) as exc:
        fetcher.parse_feed(_channel(_item(1), description=""))
    assert 'description' in str(exc.value)


def test_parse_feed_rejects_non_feed_documents():
    fetcher = FeedFetcher()
    with pytest.raises(FetchError):
        fetcher.parse_feed(b"this is not a feed at all")


def test_parse_feed_with_single_item_and_with_none():
    fetcher = FeedFetcher()

    single = fetcher.parse_feed(_channel(_item(1)))
    assert len(single.items) == 1
    assert single.items[0].title == 'Post 1'

    empty = fetcher.parse_feed(_channel(""))
    assert empty.items == []
    assert empty.title == 'Example'


def test_parse_feed_accepts_text_documents():
    fetcher = FeedFetcher()
    parsed = fetcher.parse_feed(_channel(_item(1) + _item(2)).decode('utf-8'))
    assert [item.title for item in parsed.items] == ['Post 1', 'Post 2']


@pytest.mark.asyncio
async def test_fetch_feed_sends_user_agent(stub_session, stub_response, valid_feed):
    session = stub_session({FEED_URL: stub_response(valid_feed)})
    fetcher = FeedFetcher(user_agent='gator-test', timeout=5, max_redirects=3)
    try:
        parsed = await fetcher.fetch_feed(FEED_URL, session)
    finally:
        await fetcher.close()

    assert len(parsed.items) == 2
    url, kwargs = session.requests[0]
    assert url == FEED_URL
    assert kwargs['headers']['User-Agent'] == 'gator-test'
    assert kwargs['max_redirects'] == 3
    assert kwargs['timeout'].total == 5


@pytest.mark.asyncio
async def test_fetch_feed_non_success_status_raises(stub_session, stub_response):
    session = stub_session({FEED_URL: stub_response(b"gone", status=404, reason="Not Found")})
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as exc:
            await fetcher.fetch_feed(FEED_URL, session)
    finally:
        await fetcher.close()

    assert exc.value.status == 404
    assert 'HTTP 404' in str(exc.value)


@pytest.mark.asyncio
async def test_fetch_feed_network_error_raises(stub_session):
    session = stub_session({FEED_URL: ClientConnectionError("connection refused")})
    fetcher = FeedFetcher()
    try:
        with pytest.raises(FetchError) as exc:
            await fetcher.fetch_feed(FEED_URL, session)
    finally:
        await fetcher.close()

    assert exc.value.url == FEED_URL
    assert 'ClientConnectionError' in str(exc.value)
