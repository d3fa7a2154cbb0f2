#!/usr/bin/env python3
"""
Feed item normalization.

Turns one raw RSS ``item`` or Atom ``entry`` element into a candidate Article:
title, resolved link, plain-text description, guid, publish date and the best
thumbnail the item itself offers. Items from link-wrapping aggregators get
their origin link, title and description recovered from the item HTML.
"""

from typing import Iterable, List, Optional
from xml.etree.ElementTree import Element

from bs4 import BeautifulSoup

from aggregators import (
    aggregator_host_for,
    clean_aggregator_title,
    extract_origin_from_description,
    is_placeholder_image,
)
from config import config, get_logger
from fetcher import local_name
from models import Article, FeedSource, make_article_id
from utils import collapse_whitespace, html_to_text, iso_from_ms, now_ms, parse_date_ms, resolve_url

logger = get_logger("normalizer")

MEDIA_NAMESPACE_HINTS = ("search.yahoo.com/mrss", "/media")
CONTENT_MODULE_NAMESPACE = "purl.org/rss/1.0/modules/content"


def _namespace(tag) -> str:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return ""


def _is_media(el: Element) -> bool:
    ns = _namespace(el.tag)
    return bool(ns) and any(hint in ns for hint in MEDIA_NAMESPACE_HINTS)


def _descendants(item: Element) -> List[Element]:
    """Direct children first, then deeper descendants, each in document order."""
    children = list(item)
    deeper = [el for child in children for el in child.iter() if el is not child]
    return children + deeper


def _find(item: Element, name: str, allow_media: bool = False) -> Optional[Element]:
    for el in _descendants(item):
        if local_name(el.tag) != name:
            continue
        if not allow_media and _is_media(el):
            continue
        return el
    return None


def _find_first(item: Element, names: Iterable[str]) -> Optional[Element]:
    for name in names:
        el = _find(item, name)
        if el is not None:
            return el
    return None


def element_text(el: Optional[Element]) -> str:
    """Concatenated text content of ``el`` and its children."""
    if el is None:
        return ""
    return "".join(el.itertext())


_NON_PAGE_RELS = ("self", "enclosure", "edit", "hub", "license", "next", "previous", "replies")


def _extract_raw_link(item: Element) -> str:
    """Atom ``href`` with rel=alternate, else RSS link text, else another href.

    Non-page rels such as ``self`` and ``enclosure`` are skipped.
    """
    links = [el for el in _descendants(item) if local_name(el.tag) == "link" and not _is_media(el)]
    with_href = [el for el in links if el.get("href") and el.get("rel") not in _NON_PAGE_RELS]
    for el in with_href:
        if el.get("rel") in (None, "", "alternate"):
            return el.get("href").strip()
    for el in links:
        if el.get("href"):
            continue
        text = element_text(el).strip()
        if text:
            return text
    if with_href:
        return with_href[0].get("href").strip()
    return ""


def _extract_description_html(item: Element) -> str:
    for name in ("description", "summary"):
        el = _find(item, name)
        if el is not None:
            return element_text(el)
    for el in _descendants(item):
        name = local_name(el.tag)
        if name == "encoded" and CONTENT_MODULE_NAMESPACE in _namespace(el.tag):
            return element_text(el)
    el = _find(item, "content")
    if el is not None and not el.get("url"):
        return element_text(el)
    return ""


def first_img_src(html: Optional[str]) -> Optional[str]:
    """``src`` of the first ``<img>`` in an HTML fragment."""
    if not html:
        return None
    img = BeautifulSoup(html, "html.parser").find("img", src=True)
    if img is None:
        return None
    src = (img.get("src") or "").strip()
    return src or None


def extract_item_image(item: Element, description_html: str, base: Optional[str]) -> Optional[str]:
    """Best image the item itself offers: enclosure, media content, inline img."""
    for el in _descendants(item):
        if local_name(el.tag) == "enclosure" and el.get("url"):
            return resolve_url(el.get("url"), base)

    for el in _descendants(item):
        name = local_name(el.tag)
        if name in ("content", "thumbnail") and el.get("url"):
            if name == "content" or _is_media(el):
                return resolve_url(el.get("url"), base)

    src = first_img_src(description_html)
    if src:
        return resolve_url(src, base)
    return None


def normalize_item(item: Element, feed: FeedSource,
                   now: Optional[int] = None,
                   retention_ms: Optional[int] = None) -> Optional[Article]:
    """Build a candidate Article from one feed item.

    Returns None when the item's publish date is unparseable or already
    outside the retention window, since the pruner would evict it anyway.
    Undated items are stamped with the current time.
    """
    now = now_ms() if now is None else now
    retention_ms = config.RETENTION_MS if retention_ms is None else retention_ms

    title = collapse_whitespace(element_text(_find(item, "title")))
    raw_link = _extract_raw_link(item)
    description_html = _extract_description_html(item)
    description = html_to_text(description_html)
    link = resolve_url(raw_link, feed.url) or ""

    aggregator_host = aggregator_host_for(feed.url)
    if aggregator_host:
        origin, anchor_text = extract_origin_from_description(description_html, aggregator_host)
        if origin:
            link = resolve_url(origin, feed.url)
        title = clean_aggregator_title(title)
        description = anchor_text

    guid = element_text(_find_first(item, ("guid", "id"))).strip()

    date_el = _find_first(item, ("pubDate", "updated", "published"))
    pub_date = element_text(date_el).strip() if date_el is not None else ""
    if not pub_date:
        pub_date = iso_from_ms(now)

    published = parse_date_ms(pub_date)
    if published is None or now - published > retention_ms:
        logger.debug(f"Skipping stale or undatable item '{title[:80]}' ({pub_date}) from {feed.title}")
        return None

    image = extract_item_image(item, description_html, link or feed.url)
    if aggregator_host and image and is_placeholder_image(image):
        image = None

    return Article(
        id=make_article_id(feed.url, guid, link),
        title=title,
        link=link,
        guid=guid,
        pub_date=pub_date,
        description=description,
        image=image,
        feed_title=feed.title,
        feed_url=feed.url,
        seen=False,
    )
