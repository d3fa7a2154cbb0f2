import os

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import asyncio
from typing import Callable, Dict, List, Optional, Union
from urllib.parse import unquote

import pytest

from models import Article, ArticleStore, MemoryBlobStore, make_article_id
from transport import TransportResponse
from utils import iso_from_ms

PROXY_BASE = "https://proxy.test/?url="
NOW = 1_760_000_000_000  # fixed epoch millis used by the fake clock


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


Route = Union[TransportResponse, Exception, Callable[[], TransportResponse]]


class FakeTransport:
    """In-memory transport keyed by the un-proxied target URL."""

    def __init__(self, routes: Optional[Dict[str, Route]] = None, delay: float = 0.0):
        self.routes: Dict[str, Route] = dict(routes or {})
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @staticmethod
    def target_of(url: str) -> str:
        if "?url=" in url:
            return unquote(url.split("?url=", 1)[1])
        return url

    async def get(self, url: str) -> TransportResponse:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            route = self.routes.get(self.target_of(url))
            if route is None:
                return TransportResponse(status=404, headers={"content-type": "text/html"}, body="not found")
            if isinstance(route, Exception):
                raise route
            if callable(route):
                return route()
            return route
        finally:
            self.in_flight -= 1


def rss_response(body: str, content_type: str = "application/rss+xml") -> TransportResponse:
    return TransportResponse(status=200, headers={"content-type": content_type}, body=body)


def html_response(body: str) -> TransportResponse:
    return TransportResponse(status=200, headers={"content-type": "text/html; charset=utf-8"}, body=body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def store(blobs, clock):
    return ArticleStore(
        blobs,
        default_feeds=[],
        default_proxy_base=PROXY_BASE,
        retention_ms=7 * 24 * 3600 * 1000,
        clock=clock,
    )


GOOGLE_FEED = "https://news.google.com/rss/search?q=f1"


def make_article(guid, published_ms=NOW, feed_url="https://example.com/feed", **kwargs):
    fields = dict(
        title=f"Title {guid}",
        link=f"https://example.com/{guid}",
        guid=guid,
        pub_date=iso_from_ms(published_ms),
        feed_title="Example",
        feed_url=feed_url,
    )
    fields.update(kwargs)
    return Article(id=make_article_id(feed_url, guid, fields["link"]), **fields)
