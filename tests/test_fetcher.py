import pytest

from errors import EmptyFeedError, HttpStatusError, NetworkError, NotXmlError, XmlParseError
from fetcher import FeedFetcher, local_name, looks_like_xml, parse_feed_text, repair_entities
from transport import TransportResponse

from conftest import PROXY_BASE, FakeTransport, rss_response

FEED_URL = "https://feeds.example/rss"

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title>
<item><title>Red Bull & Co sign driver</title><link>https://example.com/a</link></item>
<item><title>Second</title><link>https://example.com/b</link></item>
</channel></rss>"""

ATOM = """<feed xmlns="http://www.w3.org/2005/Atom"><title>Atom</title>
<entry><title>One</title><link href="https://example.com/1"/></entry>
</feed>"""


def test_repair_entities_escapes_only_bare_ampersands():
    text = "A & B &amp; C &lt; &#38; &#x26; &nbsp;"

    assert repair_entities(text) == "A &amp; B &amp; C &lt; &#38; &#x26; &amp;nbsp;"


def test_looks_like_xml():
    assert looks_like_xml('<?xml version="1.0"?><x/>')
    assert looks_like_xml("\n  <RSS version='2.0'>")
    assert looks_like_xml("<feed xmlns='http://www.w3.org/2005/Atom'>")
    assert not looks_like_xml("<!doctype html><html><body>blocked</body></html>")


def test_parse_repairs_bare_ampersand():
    items = parse_feed_text(RSS, "application/rss+xml")

    assert len(items) == 2
    title = next(el for el in items[0] if local_name(el.tag) == "title")
    assert title.text == "Red Bull & Co sign driver"


def test_parse_atom_entries_with_namespace():
    items = parse_feed_text(ATOM, "application/atom+xml")

    assert [local_name(el.tag) for el in items] == ["entry"]


def test_non_xml_content_type_accepted_when_body_looks_like_feed():
    assert len(parse_feed_text(RSS, "text/plain")) == 2


def test_html_body_is_rejected():
    with pytest.raises(NotXmlError):
        parse_feed_text("<html><body>Just a moment...</body></html>", "text/html")


def test_byte_order_mark_is_ignored():
    assert len(parse_feed_text("\ufeff" + RSS, "text/html")) == 2


def test_malformed_xml_raises_parse_error():
    with pytest.raises(XmlParseError):
        parse_feed_text("<rss><channel><item><title>x</channel></rss>", "text/xml")


def test_feed_without_items_is_empty():
    with pytest.raises(EmptyFeedError) as excinfo:
        parse_feed_text("<rss><channel><title>t</title></channel></rss>", "text/xml")
    assert str(excinfo.value) == "No items in feed"


@pytest.mark.asyncio
async def test_fetch_requests_through_proxy():
    transport = FakeTransport({FEED_URL: rss_response(RSS)})
    fetcher = FeedFetcher(transport, PROXY_BASE)

    items = await fetcher.fetch(FEED_URL)

    assert len(items) == 2
    assert transport.calls == ["https://proxy.test/?url=https%3A%2F%2Ffeeds.example%2Frss"]


@pytest.mark.asyncio
async def test_fetch_non_2xx_raises_status_error():
    transport = FakeTransport({FEED_URL: TransportResponse(status=503, body="down")})
    fetcher = FeedFetcher(transport, PROXY_BASE)

    with pytest.raises(HttpStatusError) as excinfo:
        await fetcher.fetch(FEED_URL)
    assert excinfo.value.status == 503
    assert str(excinfo.value) == "HTTP 503 from source"


@pytest.mark.asyncio
async def test_fetch_propagates_network_error():
    transport = FakeTransport({FEED_URL: NetworkError("Network error", "connection refused")})
    fetcher = FeedFetcher(transport, PROXY_BASE)

    with pytest.raises(NetworkError) as excinfo:
        await fetcher.fetch(FEED_URL)
    assert excinfo.value.detail == "connection refused"
