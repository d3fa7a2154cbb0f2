#!/usr/bin/env python3
"""
Utility classes and functions shared by the fetcher, normalizer, store and
enrichment scheduler: rate limiting, text cleanup, URL resolution and date
parsing.
"""

from asyncio import Lock, sleep
from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from time import time
from typing import Optional
import re
from urllib.parse import urljoin, urlparse

import feedparser
from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")

_WHITESPACE_RE = re.compile(r"\s+")


class RateLimiter:
    """A simple rate limiter for controlling request rates.

    Ensures requests don't exceed a specified rate by introducing delays when
    necessary.
    """

    def __init__(self, requests_per_minute: int):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum number of requests allowed per minute.
                                If 0 or negative, no rate limiting is applied.
        """
        self.requests_per_minute = requests_per_minute
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self.last_request_time = 0
        self._lock = Lock()

    async def acquire(self):
        """Wait, if necessary, until another request is allowed."""
        if self.min_interval <= 0:
            return

        async with self._lock:
            current_time = time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                logger.debug(f"Rate limiting: waiting {wait_time:.2f} seconds")
                await sleep(wait_time)

            self.last_request_time = time()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time() * 1000)


def iso_from_ms(timestamp_ms: int) -> str:
    """Format epoch milliseconds as ISO-8601 UTC with millisecond precision."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def collapse_whitespace(text: Optional[str]) -> str:
    """Collapse runs of whitespace into single spaces and trim."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def html_to_text(html_content: Optional[str]) -> str:
    """Strip markup from an HTML fragment and return whitespace-collapsed text.

    Entities are decoded, so ``Red Bull &amp; Co`` becomes ``Red Bull & Co``.
    """
    if not html_content:
        return ""
    soup = BeautifulSoup(html_content, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text(" "))


def resolve_url(maybe_url: Optional[str], base: Optional[str]) -> Optional[str]:
    """Resolve ``maybe_url`` against ``base``; returns the input unchanged on failure."""
    if not maybe_url:
        return maybe_url
    maybe_url = maybe_url.strip()
    if not base:
        return maybe_url
    try:
        return urljoin(base, maybe_url)
    except ValueError:
        return maybe_url


def host_of(url: Optional[str]) -> str:
    """Lower-cased host of ``url`` or an empty string."""
    if not url:
        return ""
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def host_matches(host: str, suffix: str) -> bool:
    """True when ``host`` is ``suffix`` or a subdomain of it."""
    if not host or not suffix:
        return False
    suffix = suffix.lower().lstrip(".")
    return host == suffix or host.endswith("." + suffix)


def _parse_with_iso(date_str: str) -> Optional[int]:
    candidate = date_str.strip()
    if candidate.endswith(("Z", "z")):
        candidate = candidate[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        # feedparser normalizes to a UTC struct_time
        time_struct = feedparser._parse_date(date_str)
        if time_struct:
            return int(timegm(time_struct) * 1000)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        return None
    return None


def parse_date_ms(date_str: Optional[str]) -> Optional[int]:
    """Parse an ISO-8601, RFC 822 or other feed-native date into epoch millis.

    Returns None when no parser understands the value.
    """
    if not isinstance(date_str, str) or not date_str.strip():
        return None
    for parser in (_parse_with_iso, _parse_with_email_utils, _parse_with_feedparser):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    return None
