#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Retrieves one feed through the proxy, validates that the body is XML, repairs
stray ampersands, parses it and returns the raw item nodes (RSS ``item`` and
Atom ``entry``). Every failure is raised as a typed FeedError; there are no
retries at this layer.
"""

import re
from typing import List, Optional
from xml.etree import ElementTree

from config import get_logger
from errors import EmptyFeedError, HttpStatusError, NotXmlError, XmlParseError
from proxy import build_proxy_url
from telemetry import trace_span
from transport import Transport

logger = get_logger("fetcher")

FEED_CONTENT_TYPE_RE = re.compile(r"xml|rss|atom")
FEED_ROOT_RE = re.compile(r"<rss\b|<feed\b", re.I)
BARE_AMPERSAND_RE = re.compile(r"&(?!amp;|lt;|gt;|quot;|apos;|#[0-9]+;|#x[0-9a-fA-F]+;)")
ITEM_TAGS = ("item", "entry")


def local_name(tag) -> str:
    """Element tag without its ``{namespace}`` prefix."""
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def looks_like_xml(body: str) -> bool:
    """Heuristic for bodies served with a non-XML content type."""
    return body.startswith("<?xml") or bool(FEED_ROOT_RE.search(body))


def repair_entities(text: str) -> str:
    """Escape every ``&`` that does not start a predefined or numeric entity.

    This is a lexical repair only; other malformed markup is left alone.
    """
    return BARE_AMPERSAND_RE.sub("&amp;", text)


def parse_feed_text(text: str, content_type: str = "") -> List[ElementTree.Element]:
    """Validate, repair and parse a feed body into its item nodes.

    Raises:
        NotXmlError: body is neither declared nor recognizable as XML.
        XmlParseError: the repaired body is still not well-formed.
        EmptyFeedError: no ``item``/``entry`` elements were found.
    """
    text = (text or "").lstrip("\ufeff")
    if not FEED_CONTENT_TYPE_RE.search((content_type or "").lower()):
        if not looks_like_xml(text):
            raise NotXmlError()

    repaired = repair_entities(text)
    try:
        root = ElementTree.fromstring(repaired)
    except ElementTree.ParseError as e:
        raise XmlParseError(f"XML parse error ({e})") from e

    items = [el for el in root.iter() if local_name(el.tag) in ITEM_TAGS]
    if not items:
        raise EmptyFeedError()
    return items


class FeedFetcher:
    """Fetches feeds through a proxy using an injected transport."""

    def __init__(self, transport: Transport, proxy_base: Optional[str] = None) -> None:
        self.transport = transport
        self.proxy_base = proxy_base

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, feed_url: {"feed.url": feed_url},
        attr_from_result=lambda items: {"feed.items": len(items)},
    )
    async def fetch(self, feed_url: str) -> List[ElementTree.Element]:
        """Fetch ``feed_url`` and return its raw item nodes.

        Raises NetworkError, HttpStatusError, NotXmlError, XmlParseError or
        EmptyFeedError.
        """
        proxied = build_proxy_url(feed_url, self.proxy_base)
        logger.debug(f"Fetching {feed_url} via {proxied}")
        response = await self.transport.get(proxied)

        if not response.ok:
            raise HttpStatusError(response.status)

        items = parse_feed_text(response.body, response.content_type)
        logger.info(f"Fetched {len(items)} items from {feed_url}")
        return items
