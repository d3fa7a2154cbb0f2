#!/usr/bin/env python3
"""
Refresh orchestration.

Coordinates one refresh cycle: every configured feed is fetched, normalized and
merged into the store concurrently, one feed's failure never affects another,
and the retention pruner runs once all feeds have settled. A single global
cooldown, measured from the most recent per-feed fetch, gates whole cycles.

This is also the facade the presentation layer talks to (article listing,
seen-state, visibility-driven enrichment).
"""

from asyncio import gather
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from config import config, get_logger
from enrichment import EnrichmentScheduler
from errors import FeedError
from fetcher import FeedFetcher
from models import Article, ArticleStore, FeedSource
from normalizer import normalize_item
from telemetry import trace_span
from transport import Transport

logger = get_logger("orchestrator")


@dataclass
class RefreshResult:
    added_count: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def summary(self) -> str:
        plural = "" if self.added_count == 1 else "s"
        return f"Fetched. {self.added_count} new article{plural}."


class RefreshOrchestrator:
    """Runs refresh cycles and exposes the store to the presentation layer."""

    def __init__(self, store: ArticleStore, transport: Transport,
                 cooldown_ms: Optional[int] = None,
                 enrichment: Optional[EnrichmentScheduler] = None) -> None:
        self.store = store
        self.transport = transport
        self.cooldown_ms = config.COOLDOWN_MS if cooldown_ms is None else cooldown_ms
        self.fetcher = FeedFetcher(transport, store.proxy_base)
        self.enrichment = enrichment or EnrichmentScheduler(store, transport)
        # Startup prune
        self.store.prune()

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------
    def cooldown_remaining(self, now: Optional[int] = None) -> int:
        """Milliseconds until the next refresh is allowed (0 when allowed)."""
        now = self.store.clock() if now is None else now
        remaining = self.cooldown_ms - (now - self.store.latest_fetch())
        return max(remaining, 0)

    def is_cooldown_active(self) -> bool:
        return self.cooldown_remaining() > 0

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def _update_from_feed(self, feed: FeedSource) -> Tuple[int, Optional[str]]:
        """Fetch one feed and merge its items; returns (added, error message)."""
        now = self.store.clock()
        if now - self.store.last_fetch_for(feed.url) < self.cooldown_ms:
            logger.info(f"Skipping {feed.title}, fetched too recently")
            return 0, None

        try:
            try:
                nodes = await self.fetcher.fetch(feed.url)
            finally:
                # A request was issued; the attempt counts toward the cooldown
                self.store.record_fetch(feed.url, now)

            added = 0
            for node in nodes:
                candidate = normalize_item(node, feed, now=now, retention_ms=self.store.retention_ms)
                if candidate is not None and self.store.upsert(candidate):
                    added += 1
            if added:
                self.store.save_articles()
            logger.info(f"Added {added} new articles from {feed.title}")
            return added, None
        except FeedError as e:
            logger.warning(f"Error refreshing {feed.title} ({feed.url}): {e}")
            return 0, f"{feed.title}: {e}"

    @trace_span(
        "refresh_all",
        tracer_name="orchestrator",
        attr_from_result=lambda r: {
            "refresh.added": r.added_count,
            "refresh.errors": len(r.errors),
            "refresh.skipped": r.skipped,
        },
    )
    async def refresh_all(self) -> RefreshResult:
        """Refresh every configured feed unless the global cooldown is active."""
        remaining = self.cooldown_remaining()
        if remaining > 0:
            logger.info(f"Refresh refused; cooldown active for another {remaining // 1000}s")
            return RefreshResult(skipped=True)

        self.fetcher.proxy_base = self.store.proxy_base
        feeds = list(self.store.feeds)
        logger.info(f"Refreshing {len(feeds)} feeds")
        results = await gather(*(self._update_from_feed(f) for f in feeds), return_exceptions=True)

        result = RefreshResult()
        for feed, outcome in zip(feeds, results):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error refreshing {feed.title}: {outcome!r}")
                result.errors.append(f"{feed.title}: {outcome}")
                continue
            added, error = outcome
            result.added_count += added
            if error:
                result.errors.append(error)

        self.store.prune()
        logger.info(f"{result.summary} ({len(result.errors)} feed errors)")
        return result

    # ------------------------------------------------------------------
    # Presentation-facing operations
    # ------------------------------------------------------------------
    def get_articles(self, feed_title: Optional[str] = None,
                     search_text: Optional[str] = None) -> List[Article]:
        return self.store.get_articles(feed_title, search_text)

    def mark_all_seen(self) -> int:
        return self.store.mark_all_seen()

    def mark_one_seen(self, article_id: str) -> bool:
        return self.store.mark_one_seen(article_id)

    def notify_visible(self, article_id: str) -> bool:
        return self.enrichment.notify_visible(article_id)

    async def close(self) -> None:
        await self.enrichment.stop()
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
