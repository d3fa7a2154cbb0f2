#!/usr/bin/env python3
"""
Link-wrapping news aggregator handling.

Aggregator feeds (Google News style) link every item to a redirector on the
aggregator's own host. The origin article URL has to be recovered from the
anchors in the item description, the title carries a trailing " - Site Name"
and item thumbnails are usually aggregator branding rather than article art.
"""

import re
from typing import Iterable, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup

from config import config
from utils import collapse_whitespace, host_matches, host_of

TITLE_SITE_SUFFIX_RE = re.compile(r"\s+-\s+[^-]+$")


def aggregator_host_for(feed_url: Optional[str], hosts: Optional[Iterable[str]] = None) -> Optional[str]:
    """Return the configured aggregator host ``feed_url`` belongs to, if any."""
    host = host_of(feed_url)
    for suffix in (config.AGGREGATOR_HOSTS if hosts is None else hosts):
        if host_matches(host, suffix):
            return suffix.lower()
    return None


def is_aggregator_feed(feed_url: Optional[str], hosts: Optional[Iterable[str]] = None) -> bool:
    return aggregator_host_for(feed_url, hosts) is not None


def clean_aggregator_title(title: Optional[str]) -> str:
    """Strip a trailing `` - sitename`` from an aggregator item title."""
    return TITLE_SITE_SUFFIX_RE.sub("", title or "").strip()


def extract_origin_from_description(description_html: Optional[str],
                                    aggregator_host: str = "news.google.com") -> Tuple[Optional[str], str]:
    """Find the origin article link inside an aggregator description.

    Anchors are scanned in order. The first ``url`` query parameter found on
    any anchor wins immediately; otherwise the first anchor whose host is not
    the aggregator's is used.

    Returns:
        (origin link or None, plain text of the whole anchor block)
    """
    soup = BeautifulSoup(description_html or "", "html.parser")
    text = collapse_whitespace(soup.get_text(" "))
    base = f"https://{aggregator_host}"

    for anchor in soup.find_all("a", href=True):
        href = anchor.get("href") or ""
        try:
            absolute = urljoin(base, href)
            parsed = urlparse(absolute)
        except ValueError:
            continue
        url_param = parse_qs(parsed.query).get("url")
        if url_param and url_param[0]:
            return url_param[0], text
        if not host_matches((parsed.hostname or "").lower(), aggregator_host):
            return absolute, text
    return None, text


def is_placeholder_image(image_url: Optional[str],
                         hosts: Optional[Iterable[str]] = None,
                         patterns: Optional[Iterable[re.Pattern]] = None) -> bool:
    """True when ``image_url`` is aggregator branding/CDN filler.

    Matches on host suffix or on a path pattern.
    """
    if not image_url:
        return False
    host = host_of(image_url)
    for suffix in (config.PLACEHOLDER_IMAGE_HOSTS if hosts is None else hosts):
        if host_matches(host, suffix):
            return True
    try:
        path = urlparse(image_url).path or ""
    except ValueError:
        path = image_url
    for pattern in (config.PLACEHOLDER_IMAGE_PATTERNS if patterns is None else patterns):
        if pattern.search(path):
            return True
    return False


def is_usable_image(image_url: Optional[str], feed_url: Optional[str]) -> bool:
    """An image is usable when present and, for aggregator feeds, not a placeholder."""
    if not image_url:
        return False
    if is_aggregator_feed(feed_url) and is_placeholder_image(image_url):
        return False
    return True
