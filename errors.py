#!/usr/bin/env python3
"""Error types shared across modules.

Feed errors are per-feed and non-fatal: the orchestrator turns each one into a
single human-readable message. Enrichment failures never leave the scheduler.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for failures fetching or parsing one feed."""


class NetworkError(FeedError):
    """Raised when the transport cannot complete a request.

    Attributes:
        detail: Transport-specific description, if any.
    """

    def __init__(self, message: str = "Network error", detail: Optional[str] = None):
        super().__init__(f"{message}: {detail}" if detail else message)
        self.detail = detail


class HttpStatusError(FeedError):
    """Raised on a non-2xx response."""

    def __init__(self, status: int):
        super().__init__(f"HTTP {status} from source")
        self.status = status


class NotXmlError(FeedError):
    def __init__(self, message: str = "Received non-XML (likely HTML error/anti-bot page)"):
        super().__init__(message)


class XmlParseError(FeedError):
    def __init__(self, message: str = "XML parse error"):
        super().__init__(message)


class EmptyFeedError(FeedError):
    def __init__(self, message: str = "No items in feed"):
        super().__init__(message)


class EnrichmentFailure(Exception):
    """Raised inside an enrichment job; always swallowed by the worker."""


__all__ = [
    "FeedError",
    "NetworkError",
    "HttpStatusError",
    "NotXmlError",
    "XmlParseError",
    "EmptyFeedError",
    "EnrichmentFailure",
]
