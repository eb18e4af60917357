"""Command line entry point: ``python -m crawler.run_crawl --url https://example.com``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog

from models import CrawlOptions
from mongo import CrawlStore
from observability.logging import configure_logging
from settings import get_settings

from .events import LoggingEventSink, RedisEventSink
from .exceptions import CrawlConfigError
from .orchestrator import CrawlOrchestrator

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Budgeted site crawler")
    parser.add_argument("--url", required=True, help="Seed URL to crawl")
    parser.add_argument("--url-limit", type=int, default=None, help="Maximum number of pages")
    parser.add_argument("--depth-limit", type=int, default=None, help="Maximum link depth")
    parser.add_argument(
        "--specific-url",
        action="append",
        default=[],
        dest="specific_url_list",
        help="Crawl only these URLs (repeatable); skips sitemap discovery",
    )
    parser.add_argument(
        "--starting-point",
        action="append",
        default=[],
        dest="custom_starting_points",
        help="Additional seed URL (repeatable)",
    )
    parser.add_argument("--directory-tree", dest="directory_tree_root_path", default=None,
                        help="Walk a local directory instead of fetching URLs")
    parser.set_defaults(sitemap_enabled=None, follow_external_links=None)
    sitemap_group = parser.add_mutually_exclusive_group()
    sitemap_group.add_argument("--sitemaps", dest="sitemap_enabled", action="store_true",
                               help="Seed the frontier from sitemaps")
    sitemap_group.add_argument("--no-sitemaps", dest="sitemap_enabled", action="store_false",
                               help="Skip sitemap discovery")
    external_group = parser.add_mutually_exclusive_group()
    external_group.add_argument("--follow-external", dest="follow_external_links", action="store_true")
    external_group.add_argument("--no-follow-external", dest="follow_external_links", action="store_false")
    parser.add_argument("--redis-events", action="store_true",
                        help="Publish progress to Redis instead of the log")
    return parser


def options_from_args(args: argparse.Namespace) -> CrawlOptions:
    return CrawlOptions(
        url_limit=args.url_limit,
        depth_limit=args.depth_limit,
        follow_external_links=args.follow_external_links,
        specific_url_list=args.specific_url_list,
        custom_starting_points=args.custom_starting_points,
        use_directory_tree_crawling=bool(args.directory_tree_root_path),
        directory_tree_root_path=args.directory_tree_root_path,
        sitemap_enabled=args.sitemap_enabled,
    )


async def _run(args: argparse.Namespace) -> dict:
    settings = get_settings()
    events = RedisEventSink(str(settings.redis_url)) if args.redis_events else LoggingEventSink()
    store = CrawlStore.from_settings(settings.mongo)
    try:
        await store.ensure_indexes()
        async with CrawlOrchestrator(store, events, settings=settings) as orchestrator:
            summary = await orchestrator.crawl_website(args.url, options_from_args(args))
    finally:
        store.close()
    return summary.model_dump(mode="json")


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - convenience CLI
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().crawler.log_level)
    try:
        summary = asyncio.run(_run(args))
    except CrawlConfigError as exc:
        logger.error("crawl_config_invalid", error=str(exc))
        sys.exit(f"❌ {exc}")
    print(json.dumps(summary, ensure_ascii=False, indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
