import json

from models import (
    ArticleStore,
    FeedSource,
    KEY_ARTICLES,
    KEY_FEEDS,
    KEY_LAST_FETCH,
    KEY_LAST_VISIT,
    KEY_PROXY_BASE,
    MemoryBlobStore,
    SqliteBlobStore,
    make_article_id,
)

from orchestrator import RefreshOrchestrator

from conftest import GOOGLE_FEED, NOW, PROXY_BASE, FakeTransport, make_article

DAY_MS = 24 * 3600 * 1000
RETENTION_MS = 7 * DAY_MS


def test_article_id_is_deterministic_and_scoped_to_feed():
    a = make_article_id("https://a.test/feed", "g1", "https://x.test/1")
    b = make_article_id("https://a.test/feed", "g1", "https://x.test/other")
    c = make_article_id("https://b.test/feed", "g1", "https://x.test/1")

    assert a == b
    assert a != c
    assert make_article_id("https://a.test/feed", "", "https://x.test/1") == \
        make_article_id("https://a.test/feed", None, "https://x.test/1")


def test_upsert_first_write_wins(store):
    original = make_article("g1", title="Original")
    duplicate = make_article("g1", title="Rewritten")

    assert store.upsert(original) is True
    assert store.upsert(duplicate) is False
    assert len(store.articles) == 1
    assert store.get(original.id).title == "Original"


def test_upsert_does_not_reset_seen(store):
    article = make_article("g1")
    store.upsert(article)
    store.mark_one_seen(article.id)

    store.upsert(make_article("g1"))

    assert store.get(article.id).seen is True


def test_prune_retention_boundary(store, clock):
    inside = make_article("inside", published_ms=NOW - RETENTION_MS + 1)
    edge = make_article("edge", published_ms=NOW - RETENTION_MS)
    outside = make_article("outside", published_ms=NOW - RETENTION_MS - 1)
    for article in (inside, edge, outside):
        store.upsert(article)

    removed = store.prune()

    assert removed == 1
    assert set(store.articles) == {inside.id, edge.id}


def test_prune_removes_undatable_articles(store):
    article = make_article("bad", pub_date="not a date")
    store.upsert(article)

    assert store.prune() == 1
    assert store.articles == {}


def test_prune_clears_aggregator_placeholder_images(store, blobs):
    placeholder = make_article("p", feed_url=GOOGLE_FEED,
                               image="https://news.google.com/api/attachments/logo.png")
    real = make_article("r", feed_url=GOOGLE_FEED, image="https://cdn.origin.example/photo.jpg")
    other_feed = make_article("o", image="https://lh3.googleusercontent.com/a.jpg")
    for article in (placeholder, real, other_feed):
        store.upsert(article)

    assert store.prune() == 0

    assert store.get(placeholder.id).image is None
    assert store.get(real.id).image == "https://cdn.origin.example/photo.jpg"
    assert store.get(other_feed.id).image == "https://lh3.googleusercontent.com/a.jpg"
    saved = json.loads(blobs.get(KEY_ARTICLES))
    assert saved[placeholder.id]["image"] is None


def test_prune_without_changes_does_not_write(store, blobs):
    store.upsert(make_article("fresh"))

    store.prune()

    assert blobs.get(KEY_ARTICLES) is None


def test_articles_persist_with_camel_case_keys(store, blobs):
    article = make_article("g1")
    store.upsert(article)
    store.save_articles()

    saved = json.loads(blobs.get(KEY_ARTICLES))[article.id]

    assert saved["pubDate"] == article.pub_date
    assert saved["feedTitle"] == "Example"
    assert saved["feedUrl"] == "https://example.com/feed"
    assert saved["seen"] is False


def test_reload_round_trip(blobs, clock):
    first = ArticleStore(blobs, default_feeds=[], retention_ms=RETENTION_MS, clock=clock)
    article = make_article("g1", image="https://img.example/a.jpg")
    first.upsert(article)
    first.save_articles()
    first.record_fetch("https://example.com/feed", NOW)

    second = ArticleStore(blobs, default_feeds=[], retention_ms=RETENTION_MS, clock=clock)

    assert second.get(article.id) == article
    assert second.last_fetch_for("https://example.com/feed") == NOW


def test_corrupt_blobs_fall_back_to_defaults(clock):
    blobs = MemoryBlobStore({
        KEY_ARTICLES: "{not json",
        KEY_FEEDS: "[[[",
        KEY_LAST_FETCH: "oops",
        KEY_LAST_VISIT: "yesterday",
    })
    defaults = [{"title": "Default", "url": "https://default.test/rss"}]

    store = ArticleStore(blobs, default_feeds=defaults, default_proxy_base=PROXY_BASE, clock=clock)

    assert store.articles == {}
    assert store.feeds == [FeedSource("Default", "https://default.test/rss")]
    assert store.last_fetch == {}
    assert store.last_visit == 0
    assert store.proxy_base == PROXY_BASE


def test_non_finite_timestamps_fall_back_to_defaults(clock):
    blobs = MemoryBlobStore({
        KEY_LAST_FETCH: '{"https://a.test/rss": NaN, "https://b.test/rss": Infinity, "https://c.test/rss": 5}',
        KEY_LAST_VISIT: "inf",
    })

    store = ArticleStore(blobs, default_feeds=[], default_proxy_base=PROXY_BASE, clock=clock)

    assert store.last_fetch == {"https://c.test/rss": 5}
    assert store.last_visit == 0


def test_non_string_article_fields_are_coerced_and_pruned(clock):
    blobs = MemoryBlobStore({
        KEY_ARTICLES: json.dumps({
            "x1": {"id": "x1", "title": 42, "link": None, "pubDate": 1760000000000, "image": 7},
        }),
    })

    store = ArticleStore(blobs, default_feeds=[], default_proxy_base=PROXY_BASE, clock=clock)
    article = store.articles["x1"]

    assert article.title == "42"
    assert article.link == ""
    assert article.pub_date == ""
    assert article.image is None
    assert article.published_ms is None
    assert store.prune() == 1
    assert store.articles == {}


def test_orchestrator_starts_on_store_with_numeric_pub_date(clock):
    blobs = MemoryBlobStore({
        KEY_ARTICLES: json.dumps({"x1": {"id": "x1", "title": "t", "link": "l", "pubDate": NOW}}),
    })
    store = ArticleStore(blobs, default_feeds=[], default_proxy_base=PROXY_BASE, clock=clock)

    RefreshOrchestrator(store, FakeTransport(), cooldown_ms=0)

    assert store.articles == {}


def test_persisted_feeds_and_proxy_override_defaults(clock):
    blobs = MemoryBlobStore({
        KEY_FEEDS: json.dumps([{"title": "Mine", "url": "https://mine.test/rss"}, {"title": ""}]),
        KEY_PROXY_BASE: "https://custom.test/",
    })

    store = ArticleStore(blobs, default_feeds=[{"title": "D", "url": "https://d.test"}], clock=clock)

    assert store.feeds == [FeedSource("Mine", "https://mine.test/rss")]
    assert store.proxy_base == "https://custom.test/"


def test_set_proxy_base_blank_restores_default(store, blobs):
    store.set_proxy_base("https://other.test/raw?url=")
    assert blobs.get(KEY_PROXY_BASE) == "https://other.test/raw?url="

    store.set_proxy_base("   ")

    assert store.proxy_base == PROXY_BASE


def test_get_articles_orders_newest_first_and_filters(store):
    old = make_article("old", published_ms=NOW - 2 * DAY_MS, title="Old news")
    new = make_article("new", published_ms=NOW - 1000, title="Pole position")
    other = make_article("other", published_ms=NOW - DAY_MS, title="Race report",
                         feed_url="https://other.test/feed", feed_title="Other Feed")
    for article in (old, new, other):
        store.upsert(article)

    assert [a.id for a in store.get_articles()] == [new.id, other.id, old.id]
    assert [a.id for a in store.get_articles(feed_title="Example")] == [new.id, old.id]
    assert [a.id for a in store.get_articles(search_text="POLE")] == [new.id]
    assert [a.id for a in store.get_articles(search_text="other feed")] == [other.id]
    assert store.get_articles(feed_title="Example", search_text="race") == []


def test_new_state_and_mark_all_seen(store, blobs, clock):
    a = make_article("a", published_ms=NOW - 1000)
    b = make_article("b", published_ms=NOW - 2000)
    store.upsert(a)
    store.upsert(b)
    assert store.count_new() == 2

    store.mark_one_seen(a.id)
    assert store.count_new() == 1
    assert store.is_new(b)

    clock.advance(10)
    assert store.mark_all_seen() == 2
    assert store.count_new() == 0
    assert blobs.get(KEY_LAST_VISIT) == str(NOW + 10)

    later = make_article("later", published_ms=NOW + 20)
    store.upsert(later)
    assert store.is_new(later)


def test_mark_one_seen_unknown_id(store):
    assert store.mark_one_seen("missing") is False


def test_fetch_history(store, blobs):
    assert store.latest_fetch() == 0
    store.record_fetch("https://a.test", NOW - 5000)
    store.record_fetch("https://b.test", NOW - 1000)

    assert store.latest_fetch() == NOW - 1000
    assert json.loads(blobs.get(KEY_LAST_FETCH)) == {"https://a.test": NOW - 5000, "https://b.test": NOW - 1000}

    store.clear_fetch_history()
    assert store.latest_fetch() == 0


def test_sqlite_blob_store_round_trip(tmp_path):
    db = SqliteBlobStore(str(tmp_path / "blobs.db"))
    try:
        assert db.get("missing") is None
        db.set("k", "v1")
        db.set("k", "v2")
        assert db.get("k") == "v2"
    finally:
        db.close()

    reopened = SqliteBlobStore(str(tmp_path / "blobs.db"))
    try:
        assert reopened.get("k") == "v2"
    finally:
        reopened.close()
