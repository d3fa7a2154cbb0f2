#!/usr/bin/env python3
"""
Data model and persistence for NewsDeck.

Articles, the feed list, the per-feed fetch timestamps, the last-visit marker
and the proxy base override are five independent string-keyed blobs. The
ArticleStore owns the in-memory copy of all of them, loads them at startup and
writes each one back after every mutating operation.
"""

import json
from dataclasses import dataclass, asdict
from hashlib import blake2b
from math import isfinite
from sqlite3 import connect, Error
from typing import Any, Callable, Dict, List, Optional, Protocol

from aggregators import is_aggregator_feed, is_placeholder_image
from config import config, get_logger
from telemetry import trace_span
from utils import now_ms, parse_date_ms

logger = get_logger("models")

KEY_FEEDS = "feeds"
KEY_ARTICLES = "articles"
KEY_LAST_VISIT = "last_visit"
KEY_LAST_FETCH = "last_fetch"
KEY_PROXY_BASE = "proxy_base"


@dataclass
class FeedSource:
    title: str
    url: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["FeedSource"]:
        if not isinstance(data, dict):
            return None
        title = str(data.get("title") or "").strip()
        url = str(data.get("url") or "").strip()
        if not title or not url:
            return None
        return cls(title=title, url=url)

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


# Persisted JSON uses the same camelCase names as the original blob layout
_ARTICLE_FIELD_NAMES = {
    "pub_date": "pubDate",
    "feed_title": "feedTitle",
    "feed_url": "feedUrl",
}
_ARTICLE_TEXT_FIELDS = ("title", "link", "guid", "pub_date", "description", "feed_title", "feed_url")


@dataclass
class Article:
    id: str
    title: str
    link: str
    guid: str = ""
    pub_date: str = ""
    description: str = ""
    image: Optional[str] = None
    feed_title: str = ""
    feed_url: str = ""
    seen: bool = False

    @property
    def published_ms(self) -> Optional[int]:
        return parse_date_ms(self.pub_date)

    def to_dict(self) -> Dict[str, Any]:
        return {_ARTICLE_FIELD_NAMES.get(k, k): v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Article"]:
        if not isinstance(data, dict) or not data.get("id"):
            return None
        values = {}
        for name in cls.__dataclass_fields__:
            key = _ARTICLE_FIELD_NAMES.get(name, name)
            if key in data:
                values[name] = data[key]
        for name in _ARTICLE_TEXT_FIELDS:
            value = values.get(name)
            if not isinstance(value, str):
                # Non-string dates count as undatable
                values[name] = "" if value is None or name == "pub_date" else str(value)
        if not isinstance(values.get("image"), str):
            values["image"] = None
        values["seen"] = bool(values.get("seen", False))
        return cls(**values)


def make_article_id(feed_url: str, guid: Optional[str], link: Optional[str]) -> str:
    """Deterministic article identity from the feed and its guid (or link)."""
    key = f"{feed_url}|{guid or link or ''}"
    return blake2b(key.encode("utf-8"), digest_size=16).hexdigest()


class BlobStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryBlobStore:
    """Process-local blob store, used for tests and throwaway runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class SqliteBlobStore:
    """Blob store backed by a single key/value table in SQLite."""

    SCHEMA = "CREATE TABLE IF NOT EXISTS blobs (key TEXT PRIMARY KEY, value TEXT NOT NULL)"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH
        self.conn = connect(self.db_path)
        self.conn.execute(self.SCHEMA)
        self.conn.commit()
        logger.info(f"Using blob store at {self.db_path}")

    def get(self, key: str) -> Optional[str]:
        cursor = self.conn.execute("SELECT value FROM blobs WHERE key = ?", (key,))
        try:
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            cursor.close()

    def set(self, key: str, value: str) -> None:
        try:
            self.conn.execute(
                "INSERT INTO blobs (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            self.conn.commit()
        except Error as e:
            logger.error(f"Error persisting blob '{key}': {e}")
            self.conn.rollback()
            raise

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None


class ArticleStore:
    """Owner of all NewsDeck state.

    Every mutating method persists the blob it touched. There is no
    cross-blob atomicity; a crash between writes may leave them out of step.
    """

    def __init__(self, blobs: BlobStore,
                 default_feeds: Optional[List[Dict[str, str]]] = None,
                 default_proxy_base: Optional[str] = None,
                 retention_ms: Optional[int] = None,
                 clock: Callable[[], int] = now_ms) -> None:
        self.blobs = blobs
        self.clock = clock
        self.retention_ms = config.RETENTION_MS if retention_ms is None else retention_ms
        self.default_proxy_base = default_proxy_base or config.PROXY_BASE
        self._default_feeds = config.FEED_SOURCES if default_feeds is None else default_feeds
        self.load()

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------
    def _load_json(self, key: str, fallback: Any) -> Any:
        raw = self.blobs.get(key)
        if raw is None:
            return fallback
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Corrupt '{key}' blob ignored ({e}); using defaults")
            return fallback
        return fallback if value is None else value

    def _save_json(self, key: str, value: Any) -> None:
        self.blobs.set(key, json.dumps(value))

    def load(self) -> None:
        feeds_raw = self._load_json(KEY_FEEDS, None)
        if not isinstance(feeds_raw, list):
            feeds_raw = self._default_feeds
        self.feeds: List[FeedSource] = [f for f in map(FeedSource.from_dict, feeds_raw) if f]

        articles_raw = self._load_json(KEY_ARTICLES, {})
        self.articles: Dict[str, Article] = {}
        if isinstance(articles_raw, dict):
            for article_id, data in articles_raw.items():
                article = Article.from_dict(data)
                if article:
                    self.articles[article_id] = article
        else:
            logger.warning("Articles blob is not a mapping; starting empty")

        try:
            self.last_visit = int(float(self.blobs.get(KEY_LAST_VISIT) or 0))
        except (TypeError, ValueError, OverflowError):
            logger.warning("Corrupt 'last_visit' blob ignored; treating every article as unvisited")
            self.last_visit = 0

        last_fetch_raw = self._load_json(KEY_LAST_FETCH, {})
        self.last_fetch: Dict[str, int] = {}
        if isinstance(last_fetch_raw, dict):
            for url, ts in last_fetch_raw.items():
                if isinstance(ts, (int, float)) and not isinstance(ts, bool) and isfinite(ts):
                    self.last_fetch[url] = int(ts)
                else:
                    logger.warning(f"Ignoring invalid fetch timestamp {ts!r} for {url}")

        self.proxy_base = self.blobs.get(KEY_PROXY_BASE) or self.default_proxy_base

        logger.info(f"Loaded {len(self.articles)} articles and {len(self.feeds)} feeds")

    def save_articles(self) -> None:
        self._save_json(KEY_ARTICLES, {aid: a.to_dict() for aid, a in self.articles.items()})

    def save_last_fetch(self) -> None:
        self._save_json(KEY_LAST_FETCH, self.last_fetch)

    # ------------------------------------------------------------------
    # Configuration blobs
    # ------------------------------------------------------------------
    def set_feeds(self, feeds: List[FeedSource]) -> None:
        self.feeds = [f for f in feeds if f.title and f.url]
        self._save_json(KEY_FEEDS, [f.to_dict() for f in self.feeds])

    def set_proxy_base(self, base: Optional[str]) -> None:
        self.proxy_base = (base or "").strip() or self.default_proxy_base
        self.blobs.set(KEY_PROXY_BASE, self.proxy_base)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------
    def upsert(self, candidate: Article) -> bool:
        """Insert ``candidate`` unless its id already exists.

        The first write wins; existing records are never overwritten. Callers
        batch the save with save_articles().
        """
        if not candidate.id:
            candidate.id = make_article_id(candidate.feed_url, candidate.guid, candidate.link)
        if candidate.id in self.articles:
            return False
        self.articles[candidate.id] = candidate
        return True

    def get(self, article_id: str) -> Optional[Article]:
        return self.articles.get(article_id)

    def set_image(self, article_id: str, image_url: Optional[str]) -> bool:
        article = self.articles.get(article_id)
        if article is None:
            return False
        article.image = image_url
        self.save_articles()
        return True

    def mark_one_seen(self, article_id: str) -> bool:
        article = self.articles.get(article_id)
        if article is None:
            return False
        article.seen = True
        self.save_articles()
        return True

    def mark_all_seen(self) -> int:
        for article in self.articles.values():
            article.seen = True
        self.last_visit = self.clock()
        self.blobs.set(KEY_LAST_VISIT, str(self.last_visit))
        self.save_articles()
        return len(self.articles)

    def is_new(self, article: Article) -> bool:
        published = article.published_ms
        return not article.seen and published is not None and published > (self.last_visit or 0)

    def count_new(self) -> int:
        return sum(1 for a in self.articles.values() if self.is_new(a))

    def get_articles(self, feed_title: Optional[str] = None,
                     search_text: Optional[str] = None) -> List[Article]:
        """Articles newest first, optionally filtered by feed title and search text."""
        query = (search_text or "").strip().lower()
        results = []
        for article in self.articles.values():
            if feed_title and article.feed_title != feed_title:
                continue
            if query and query not in (article.title or "").lower() \
                    and query not in (article.feed_title or "").lower():
                continue
            results.append(article)
        results.sort(key=lambda a: a.published_ms or float("-inf"), reverse=True)
        return results

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    @trace_span("store.prune", tracer_name="store",
                attr_from_result=lambda removed: {"store.removed": removed})
    def prune(self, now: Optional[int] = None) -> int:
        """Evict expired or undatable articles and clear placeholder images.

        Returns the number of articles removed.
        """
        now = self.clock() if now is None else now
        removed = 0
        cleared = 0
        for article_id in list(self.articles):
            article = self.articles[article_id]
            published = article.published_ms
            if published is None or now - published > self.retention_ms:
                del self.articles[article_id]
                removed += 1
                continue
            if article.image and is_aggregator_feed(article.feed_url) and is_placeholder_image(article.image):
                article.image = None
                cleared += 1

        if removed or cleared:
            self.save_articles()
            logger.info(f"Pruned {removed} articles; cleared {cleared} placeholder images")
        return removed

    # ------------------------------------------------------------------
    # Fetch cooldown state
    # ------------------------------------------------------------------
    def record_fetch(self, feed_url: str, when: Optional[int] = None) -> None:
        self.last_fetch[feed_url] = self.clock() if when is None else when
        self.save_last_fetch()

    def last_fetch_for(self, feed_url: str) -> int:
        return self.last_fetch.get(feed_url, 0)

    def latest_fetch(self) -> int:
        return max(self.last_fetch.values(), default=0)

    def clear_fetch_history(self) -> None:
        self.last_fetch = {}
        self.save_last_fetch()
