#!/usr/bin/env python3
"""
Background thumbnail enrichment.

Articles without a usable image are queued when they become visible. A fixed
pool of worker tasks drains the FIFO queue, fetching each article page through
the proxy and pulling an image out of its metadata:

1. ``og:image`` / ``twitter:image`` meta tags, then ``<link rel="image_src">``
2. JSON-LD ``image`` fields
3. the first ``<img src>`` on the page

Each article is attempted at most once per scheduler lifetime and failures are
silent. Successful finds are persisted and announced to observers.
"""

import json
from asyncio import CancelledError, Queue, Task, create_task, gather, wait_for
from typing import Any, Callable, Iterable, List, Optional, Set

from bs4 import BeautifulSoup

from aggregators import is_aggregator_feed, is_placeholder_image, is_usable_image
from config import config, get_logger
from errors import EnrichmentFailure, NetworkError
from models import Article, ArticleStore
from proxy import build_proxy_url
from telemetry import trace_span
from transport import Transport
from utils import RateLimiter, resolve_url

logger = get_logger("enrichment")

META_IMAGE_KEYS = (
    "og:image",
    "og:image:url",
    "og:image:secure_url",
    "twitter:image",
    "twitter:image:src",
)

Observer = Callable[[str, str], Any]


def _meta_image(soup: BeautifulSoup) -> Optional[str]:
    candidates = {}
    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").strip().lower()
        content = (meta.get("content") or "").strip()
        if key in META_IMAGE_KEYS and content and key not in candidates:
            candidates[key] = content
    for key in META_IMAGE_KEYS:
        if key in candidates:
            return candidates[key]

    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "image_src" in [r.lower() for r in rel]:
            href = (link.get("href") or "").strip()
            if href:
                return href
    return None


def _image_from_ld_value(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("url", "contentUrl", "thumbnailUrl"):
            found = _image_from_ld_value(value.get(key))
            if found:
                return found
        return None
    if isinstance(value, list):
        for entry in value:
            found = _image_from_ld_value(entry)
            if found:
                return found
    return None


def _walk_ld(data: Any) -> Iterable[dict]:
    if isinstance(data, list):
        for entry in data:
            yield from _walk_ld(entry)
    elif isinstance(data, dict):
        yield data
        if "@graph" in data:
            yield from _walk_ld(data["@graph"])


def _linked_data_image(soup: BeautifulSoup) -> Optional[str]:
    for script in soup.find_all("script", type=lambda t: t and t.lower() == "application/ld+json"):
        raw = (script.string or script.get_text() or "").strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Skipping malformed JSON-LD block")
            continue
        for obj in _walk_ld(data):
            found = _image_from_ld_value(obj.get("image"))
            if found:
                return found
    return None


def _first_img(soup: BeautifulSoup) -> Optional[str]:
    img = soup.find("img", src=True)
    if img is None:
        return None
    return (img.get("src") or "").strip() or None


def extract_page_image(html: Optional[str]) -> Optional[str]:
    """Find an article image in a page, in metadata priority order."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    for finder in (_meta_image, _linked_data_image, _first_img):
        found = finder(soup)
        if found:
            return found
    return None


class EnrichmentScheduler:
    """Bounded-concurrency FIFO queue of thumbnail recovery jobs."""

    def __init__(self, store: ArticleStore, transport: Transport,
                 concurrency: Optional[int] = None,
                 timeout: Optional[float] = None,
                 requests_per_minute: Optional[int] = None) -> None:
        self.store = store
        self.transport = transport
        self.concurrency = max(1, concurrency or config.ENRICH_CONCURRENCY)
        self.timeout = timeout or config.ENRICH_TIMEOUT
        rpm = config.ENRICH_REQUESTS_PER_MINUTE if requests_per_minute is None else requests_per_minute
        self.rate_limiter = RateLimiter(rpm)
        self.queue: Queue = Queue()
        self.attempted: Set[str] = set()
        self._observers: List[Observer] = []
        self._workers: List[Task] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def add_observer(self, callback: Observer) -> None:
        self._observers.append(callback)

    def remove_observer(self, callback: Observer) -> None:
        if callback in self._observers:
            self._observers.remove(callback)

    def _notify(self, article_id: str, image_url: str) -> None:
        for callback in list(self._observers):
            try:
                callback(article_id, image_url)
            except Exception as e:
                logger.warning(f"Enrichment observer failed for {article_id}: {e}")

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------
    def needs_enrichment(self, article: Optional[Article]) -> bool:
        if article is None or not article.link:
            return False
        return not is_usable_image(article.image, article.feed_url)

    def enqueue(self, article_id: str) -> bool:
        """Queue ``article_id`` for enrichment; returns False when skipped."""
        if article_id in self.attempted:
            return False
        if not self.needs_enrichment(self.store.get(article_id)):
            return False
        self.attempted.add(article_id)
        self.queue.put_nowait(article_id)
        self._ensure_workers()
        logger.debug(f"Queued enrichment for {article_id} ({self.queue.qsize()} pending)")
        return True

    def notify_visible(self, article_id: str) -> bool:
        """Visibility signal from the presentation layer (or a test)."""
        return self.enqueue(article_id)

    def _ensure_workers(self) -> None:
        self._workers = [w for w in self._workers if not w.done()]
        while len(self._workers) < self.concurrency:
            self._workers.append(create_task(self._worker(len(self._workers))))

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------
    async def _worker(self, number: int) -> None:
        while True:
            article_id = await self.queue.get()
            try:
                await self._run_job(article_id)
            except EnrichmentFailure as e:
                logger.debug(f"Enrichment failed for {article_id}: {e}")
            except CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Enrichment worker {number} error for {article_id}: {e}")
            finally:
                self.queue.task_done()

    @trace_span(
        "enrich_article",
        tracer_name="enrichment",
        attr_from_args=lambda self, article_id: {"article.id": article_id},
        attr_from_result=lambda image_url: {"enrichment.image": image_url},
    )
    async def _run_job(self, article_id: str) -> Optional[str]:
        """Fetch the article page and return the image it advertises.

        A timeout cancels the in-flight page request; the article keeps no
        image and is not queued again this session.
        """
        article = self.store.get(article_id)
        if not self.needs_enrichment(article):
            # Another path already supplied an image, or the article is gone
            return None

        await self.rate_limiter.acquire()
        proxied = build_proxy_url(article.link, self.store.proxy_base)
        try:
            response = await wait_for(self.transport.get(proxied), timeout=self.timeout)
        except TimeoutError as e:
            raise EnrichmentFailure(f"timed out after {self.timeout}s") from e
        except NetworkError as e:
            raise EnrichmentFailure(str(e)) from e

        if not response.ok:
            raise EnrichmentFailure(f"HTTP {response.status}")
        content_type = response.content_type
        if content_type and "html" not in content_type:
            raise EnrichmentFailure(f"not HTML ({content_type})")

        found = extract_page_image(response.body)
        if not found:
            raise EnrichmentFailure("no image metadata")
        image_url = resolve_url(found, article.link)
        if is_aggregator_feed(article.feed_url) and is_placeholder_image(image_url):
            raise EnrichmentFailure(f"only a placeholder image ({image_url})")

        current = self.store.get(article_id)
        if current is None or not self.needs_enrichment(current):
            return None
        self.store.set_image(article_id, image_url)
        logger.info(f"Enriched '{current.title[:80]}' with {image_url}")
        self._notify(article_id, image_url)
        return image_url

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self.queue.join()

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await gather(*self._workers, return_exceptions=True)
        self._workers = []
