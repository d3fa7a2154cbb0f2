#!/usr/bin/env python3
"""
NewsDeck command line.

Runs the ingestion pipeline without any UI attached:

    newsdeck refresh [--force]      fetch all feeds (respects the cooldown)
    newsdeck list [--feed T] [--search Q] [--limit N]
    newsdeck seen [--id ID]         mark one or all articles as seen
    newsdeck enrich [--limit N]     recover thumbnails for listed articles
    newsdeck status                 cooldown and article counts
    newsdeck watch                  refresh whenever the cooldown allows
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import List, Optional

from config import config, get_logger
from models import ArticleStore, SqliteBlobStore
from orchestrator import RefreshOrchestrator
from telemetry import init_telemetry
from transport import HttpTransport
from utils import now_ms

logger = get_logger("main")


def _format_remaining(remaining_ms: int) -> str:
    minutes, seconds = divmod(remaining_ms // 1000, 60)
    return f"{minutes:02d}:{seconds:02d}"


def _format_date(article) -> str:
    published = article.published_ms
    if published is None:
        return article.pub_date or "?"
    return datetime.fromtimestamp(published / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def build_orchestrator(db_path: Optional[str] = None) -> RefreshOrchestrator:
    store = ArticleStore(SqliteBlobStore(db_path or config.DATABASE_PATH))
    return RefreshOrchestrator(store, HttpTransport())


async def cmd_refresh(orchestrator: RefreshOrchestrator, args) -> int:
    if args.force:
        orchestrator.store.clear_fetch_history()
    result = await orchestrator.refresh_all()
    if result.skipped:
        print(f"Cooldown active, try again in {_format_remaining(orchestrator.cooldown_remaining())}")
        return 0
    print(result.summary)
    for error in result.errors:
        print(f"  ! {error}", file=sys.stderr)
    return 0


async def cmd_list(orchestrator: RefreshOrchestrator, args) -> int:
    store = orchestrator.store
    articles = orchestrator.get_articles(args.feed, args.search)
    if args.limit:
        articles = articles[:args.limit]
    if not articles:
        print("No articles.")
        return 0
    for article in articles:
        marker = "*" if store.is_new(article) else " "
        print(f"{marker} [{article.feed_title}] {article.title}")
        print(f"    {_format_date(article)}  {article.link}")
        if article.image:
            print(f"    image: {article.image}")
        print(f"    id: {article.id}")
    print(f"{store.count_new()} new")
    return 0


async def cmd_seen(orchestrator: RefreshOrchestrator, args) -> int:
    if args.id:
        if not orchestrator.mark_one_seen(args.id):
            print(f"Unknown article id {args.id}", file=sys.stderr)
            return 1
        print("Marked 1 article as seen")
        return 0
    count = orchestrator.mark_all_seen()
    print(f"Marked {count} articles as seen")
    return 0


async def cmd_enrich(orchestrator: RefreshOrchestrator, args) -> int:
    articles = orchestrator.get_articles(args.feed, args.search)
    if args.limit:
        articles = articles[:args.limit]
    found: List[str] = []
    orchestrator.enrichment.add_observer(lambda article_id, url: found.append(article_id))
    queued = sum(1 for a in articles if orchestrator.notify_visible(a.id))
    print(f"Queued {queued} articles for enrichment")
    await orchestrator.enrichment.join()
    print(f"Recovered {len(found)} images")
    return 0


async def cmd_status(orchestrator: RefreshOrchestrator, args) -> int:
    store = orchestrator.store
    remaining = orchestrator.cooldown_remaining()
    state = f"cooldown {_format_remaining(remaining)}" if remaining else "ready"
    print(f"Refresh: {state}")
    print(f"Feeds: {len(store.feeds)}  Articles: {len(store.articles)}  New: {store.count_new()}")
    print(f"Proxy base: {store.proxy_base}")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    return 0


async def cmd_watch(orchestrator: RefreshOrchestrator, args) -> int:
    logger.info("Entering watch mode")
    while True:
        result = await orchestrator.refresh_all()
        if not result.skipped:
            print(f"{datetime.now(timezone.utc).isoformat(timespec='seconds')} {result.summary}")
            for error in result.errors:
                print(f"  ! {error}", file=sys.stderr)
        remaining = orchestrator.cooldown_remaining(now_ms())
        delay = min(max(remaining / 1000, 1), config.WATCH_INTERVAL_SECONDS)
        logger.debug(f"Sleeping {delay:.0f}s until next refresh attempt")
        await asyncio.sleep(delay)


COMMANDS = {
    "refresh": cmd_refresh,
    "list": cmd_list,
    "seen": cmd_seen,
    "enrich": cmd_enrich,
    "status": cmd_status,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsdeck", description="RSS/Atom news ingestion pipeline")
    parser.add_argument("--db", help=f"Blob store path (default: {config.DATABASE_PATH})")
    parser.add_argument("--proxy-base", help="Persist a new proxy base before running the command")
    sub = parser.add_subparsers(dest="command", required=True)

    refresh = sub.add_parser("refresh", help="Fetch all feeds")
    refresh.add_argument("--force", action="store_true", help="Ignore fetch cooldowns")

    for name, help_text in (("list", "List stored articles"), ("enrich", "Recover missing thumbnails")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--feed", help="Only articles from this feed title")
        p.add_argument("--search", help="Case-insensitive title/feed search")
        p.add_argument("--limit", type=int, default=0, help="Maximum number of articles")

    seen = sub.add_parser("seen", help="Mark articles as seen")
    seen.add_argument("--id", help="Mark only this article id")

    sub.add_parser("status", help="Show cooldown and counts")
    sub.add_parser("watch", help="Refresh whenever the cooldown allows")
    return parser


async def run(args) -> int:
    orchestrator = build_orchestrator(args.db)
    try:
        if args.proxy_base:
            orchestrator.store.set_proxy_base(args.proxy_base)
        return await COMMANDS[args.command](orchestrator, args)
    finally:
        await orchestrator.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    init_telemetry()
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
