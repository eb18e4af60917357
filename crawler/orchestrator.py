"""Crawl orchestrator: seeds the frontier, drains it through the worker pool
and finalises the session.

One orchestrator owns one worker pool for its lifetime. ``crawl_website`` may
be awaited several times (sequentially); every call works on a fresh frontier
and writes into the session of the crawled domain.
"""

from __future__ import annotations

import asyncio
import time
import urllib.parse as urlparse
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from models import (
    CrawlConfig,
    CrawlOptions,
    CrawlResult,
    CrawlState,
    CrawlSummary,
    CrawlTask,
    DirectoryTreeTask,
    FrontierEntry,
    crawling_id_for,
)
from observability.metrics import PerformanceMonitor
from settings import Settings, get_settings

from .dedup import run_deduplication
from .events import COMPLETED, PERFORMANCE_METRICS, PROGRESS, EventSink, LoggingEventSink
from .exceptions import CrawlConfigError, CrawlerError
from .extraction import parse_html, score_page
from .filters import InclusionExclusionFilter
from .frontier import Frontier
from .http import ClientFactory
from .progress import ProgressEstimator
from .sitemap import SitemapCrawler, sitemap_links_from_html
from .worker import (
    RATE_LIMIT_ERROR,
    REPLY_TIMEOUT_ERROR,
    Scorer,
    WorkerContext,
    WorkerPool,
    broken_page_record,
    crawler_worker_factory,
)

logger = structlog.get_logger(__name__)


@dataclass
class _CrawlRun:
    """Accumulators of one ``crawl_website`` call; touched only by the orchestrator loop."""

    crawling_id: str
    config: CrawlConfig
    frontier: Frontier = field(default_factory=Frontier)
    progress: ProgressEstimator = field(default_factory=ProgressEstimator)
    monitor: PerformanceMonitor = field(default_factory=PerformanceMonitor)
    keywords: set[str] = field(default_factory=set)
    buffer: list[Dict[str, Any]] = field(default_factory=list)
    processed: int = 0
    pages_crawled: int = 0
    broken_pages: int = 0
    state: CrawlState = CrawlState.seeding


class CrawlOrchestrator:
    """Coordinate one crawl at a time over a fixed pool of worker units."""

    def __init__(
        self,
        store,
        events: Optional[EventSink] = None,
        *,
        settings: Optional[Settings] = None,
        client_factory: Optional[ClientFactory] = None,
        scorer: Scorer = score_page,
    ) -> None:
        self.settings = settings or get_settings()
        self.crawler_settings = self.settings.crawler
        self.store = store
        self.events = events or LoggingEventSink()
        self.client_factory = client_factory
        self.url_filter = InclusionExclusionFilter.from_patterns(
            self.crawler_settings.inclusion_rule_list(),
            self.crawler_settings.exclusion_rule_list(),
        )
        self.pool = WorkerPool(
            self.crawler_settings.max_threads,
            crawler_worker_factory(self.settings, client_factory=client_factory, scorer=scorer),
            reply_timeout=self.crawler_settings.worker_reply_timeout,
        )
        self.pool.start()

    async def __aenter__(self) -> "CrawlOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await asyncio.to_thread(self.close)

    def close(self) -> None:
        self.pool.close()

    # configuration -----------------------------------------------------

    def resolve_config(self, options: CrawlOptions) -> CrawlConfig:
        """Merge ``options`` with configured defaults; reject invalid budgets."""

        cs = self.crawler_settings

        def pick(value, default):
            return default if value is None else value

        url_limit = pick(options.url_limit, cs.default_url_limit)
        depth_limit = pick(options.depth_limit, cs.default_depth_limit)
        if url_limit <= 0:
            raise CrawlConfigError(f"url_limit must be positive, got {url_limit}")
        if depth_limit <= 0:
            raise CrawlConfigError(f"depth_limit must be positive, got {depth_limit}")

        return CrawlConfig(
            url_limit=url_limit,
            depth_limit=depth_limit,
            user_agent=cs.user_agent,
            respect_robots_txt=cs.respect_robots_txt,
            request_timeout=cs.request_timeout,
            follow_internal_links=pick(options.follow_internal_links, cs.follow_internal_links),
            follow_external_links=pick(options.follow_external_links, cs.follow_external_links),
            follow_subfolder_links=pick(options.follow_subfolder_links, cs.follow_subfolder_links),
            sitemap_enabled=pick(options.sitemap_enabled, cs.sitemap_enabled),
            max_keywords=cs.max_keywords,
            directory_tree_max_depth=cs.directory_tree_max_depth,
            directory_tree_allowed_extensions=cs.directory_tree_extension_list(),
            directory_tree_exclude_patterns=cs.directory_tree_exclude_list(),
        )

    def _set_state(self, run: _CrawlRun, state: CrawlState) -> None:
        logger.info("crawl_state_changed", crawling_id=run.crawling_id, previous=run.state, state=state)
        run.state = state

    # entry point -------------------------------------------------------

    async def crawl_website(self, url: str, options: Optional[CrawlOptions] = None) -> CrawlSummary:
        """Crawl ``url`` within the budget of ``options`` and return the summary."""

        options = options or CrawlOptions()
        config = self.resolve_config(options)
        domain = (urlparse.urlsplit(url).hostname or "").lower()
        if not domain:
            raise CrawlConfigError(f"cannot derive a domain from {url!r}")

        crawling_id = crawling_id_for(domain)
        run = _CrawlRun(
            crawling_id=crawling_id,
            config=config,
            progress=ProgressEstimator(config.url_limit),
        )
        logger.info("crawl_started", crawling_id=crawling_id, url=url, url_limit=config.url_limit)
        session = await self.store.get_or_create_session(crawling_id, domain)

        if options.use_directory_tree_crawling and options.directory_tree_root_path:
            return await self._crawl_directory_tree(run, options.directory_tree_root_path)

        specific = options.specific_url_list or self.crawler_settings.specific_url_list_items()
        if specific:
            logger.info("crawl_specific_urls", crawling_id=crawling_id, count=len(specific))
            run.frontier.extend(specific, depth=0, priority=1)
        else:
            await self._seed_regular(run, url, options, session.starting_points)

        run.progress.update(run.frontier.seen, 0)
        self._set_state(run, CrawlState.draining)
        await self._drain(run)
        return await self._finalize(run)

    # seeding -----------------------------------------------------------

    async def _seed_regular(
        self,
        run: _CrawlRun,
        url: str,
        options: CrawlOptions,
        known_starting_points: list[str],
    ) -> None:
        if run.config.sitemap_enabled:
            await self._seed_from_sitemaps(run, url)

        run.frontier.push(url, depth=0, priority=1, front=True)

        custom = options.custom_starting_points or self.crawler_settings.custom_starting_point_list()
        run.frontier.extend(custom, depth=0, priority=1)
        starting_points = list(dict.fromkeys([*known_starting_points, url, *custom]))
        if starting_points != known_starting_points:
            await self.store.update_session(run.crawling_id, {"starting_points": starting_points})

    async def _seed_from_sitemaps(self, run: _CrawlRun, url: str) -> None:
        context = WorkerContext.build(self.settings, self.client_factory)
        try:
            sitemaps = SitemapCrawler(
                context.fetcher,
                robots=context.robots,
                max_urls=self.crawler_settings.sitemap_max_urls,
                timeout=self.crawler_settings.sitemap_timeout,
            )
            candidates = await sitemaps.discover_sitemaps(url)
            if self.crawler_settings.extract_sitemaps_from_html:
                candidates.extend(await self._sitemaps_in_page(context, url))

            budget = self.crawler_settings.sitemap_max_urls
            for sitemap_url in dict.fromkeys(candidates):
                if budget <= 0:
                    break
                try:
                    urls = await sitemaps.fetch_sitemap(sitemap_url, max_urls=budget)
                except CrawlerError as exc:
                    logger.warning("sitemap_failed", crawling_id=run.crawling_id, url=sitemap_url, error=str(exc))
                    continue
                budget -= len(urls)
                allowed = [u for u in urls if self.url_filter.is_url_allowed(u)]
                added = run.frontier.extend(allowed, depth=0, priority=1)
                logger.info("sitemap_seeded", crawling_id=run.crawling_id, url=sitemap_url, added=len(added))
        finally:
            await context.aclose()

    async def _sitemaps_in_page(self, context: WorkerContext, url: str) -> list[str]:
        try:
            response = await context.fetcher.get(url)
        except CrawlerError as exc:
            logger.warning("seed_page_fetch_failed", url=url, error=str(exc))
            return []
        if response.status_code >= 400:
            return []
        return sitemap_links_from_html(parse_html(response.content), url)

    # draining ----------------------------------------------------------

    def _task_config(self, run: _CrawlRun) -> CrawlConfig:
        # rules may change between waves; each task carries the current ones
        return run.config.model_copy(
            update={
                "inclusion_rules": self.url_filter.inclusion_rules(),
                "exclusion_rules": self.url_filter.exclusion_rules(),
            }
        )

    async def _dispatch(
        self,
        run: _CrawlRun,
        entry: FrontierEntry,
        config: CrawlConfig,
        semaphore: asyncio.Semaphore,
    ):
        task = CrawlTask(
            crawling_id=run.crawling_id,
            url=entry.url,
            depth=entry.depth,
            crawl_config=config,
        )
        async with semaphore:
            started = time.perf_counter()
            reply = await self.pool.dispatch(task.model_dump())
            elapsed_ms = (time.perf_counter() - started) * 1000
        return reply, elapsed_ms

    @staticmethod
    def _to_result(run: _CrawlRun, entry: FrontierEntry, reply: Dict[str, Any]) -> CrawlResult:
        if "error" in reply and "is_broken" not in reply:
            return CrawlResult(
                crawling_id=run.crawling_id,
                url=entry.url,
                depth=entry.depth,
                is_broken=True,
                status_code=0,
                error=reply["error"],
            )
        return CrawlResult(**reply)

    async def _drain(self, run: _CrawlRun) -> None:
        config = run.config
        semaphore = asyncio.Semaphore(self.crawler_settings.concurrency_limit)
        batch_size = self.crawler_settings.async_batch_size

        while run.frontier and run.processed < config.url_limit:
            batch = run.frontier.take_batch(min(batch_size, config.url_limit - run.processed))
            if not batch:
                break
            task_config = self._task_config(run)
            replies = await asyncio.gather(
                *(self._dispatch(run, entry, task_config, semaphore) for entry in batch)
            )

            discovered: list[str] = []
            keywords_before = len(run.keywords)
            for entry, (reply, elapsed_ms) in zip(batch, replies):
                result = self._to_result(run, entry, reply)
                discovered.extend(self._merge_links(run, entry, result))
                await self._record(run, result, elapsed_ms)
            run.processed += len(batch)

            if len(run.keywords) > keywords_before:
                await self.store.update_session(
                    run.crawling_id, {"extracted_keywords": sorted(run.keywords)}
                )
            percentage = run.progress.update(discovered, run.processed)
            self.events.emit(
                PROGRESS,
                {
                    "crawling_id": run.crawling_id,
                    "percentage": percentage,
                    "current_url": batch[-1].url,
                    "processed": run.processed,
                },
            )

    def _merge_links(self, run: _CrawlRun, entry: FrontierEntry, result: CrawlResult) -> list[str]:
        if not result.ok or not result.new_urls:
            return []
        if self.crawler_settings.enforce_depth_limit:
            depth = entry.depth + 1
            if depth > run.config.depth_limit:
                return []
        else:
            depth = 0
        allowed = [u for u in result.new_urls if self.url_filter.is_url_allowed(u)]
        return run.frontier.extend(allowed, depth=depth, priority=0)

    async def _record(self, run: _CrawlRun, result: CrawlResult, elapsed_ms: float) -> None:
        if result.ok:
            record = dict(result.page_data)
            run.pages_crawled += 1
            run.keywords.update(result.keywords)
        else:
            record = broken_page_record(result)
            run.broken_pages += 1
            if result.error == REPLY_TIMEOUT_ERROR:
                logger.warning("crawl_task_timed_out", crawling_id=run.crawling_id, url=result.url)
        run.monitor.record(
            success=result.ok,
            response_time_ms=elapsed_ms,
            rate_limited=result.error == RATE_LIMIT_ERROR,
        )
        run.buffer.append(record)
        if len(run.buffer) >= self.crawler_settings.write_batch_size:
            await self._flush(run)

    async def _flush(self, run: _CrawlRun) -> None:
        if not run.buffer:
            return
        records, run.buffer = run.buffer, []
        await self.store.bulk_upsert_pages(records)
        logger.debug("page_records_flushed", crawling_id=run.crawling_id, count=len(records))

    # finalizing --------------------------------------------------------

    async def _finalize(self, run: _CrawlRun) -> CrawlSummary:
        self._set_state(run, CrawlState.finalizing)
        await self._flush(run)
        self.events.emit(
            PROGRESS,
            {
                "crawling_id": run.crawling_id,
                "percentage": run.progress.percentage(),
                "current_url": "Completed",
                "processed": run.processed,
            },
        )

        pages = await self.store.find_pages(run.crawling_id)
        report, canonical = run_deduplication(
            pages, threshold=self.crawler_settings.near_duplicate_threshold
        )
        fields: Dict[str, Any] = {
            "duplicate_content": [e.model_dump() for e in report.duplicate_entries()],
            "near_duplicate_content": [e.model_dump() for e in report.near_duplicate_entries()],
            "canonical_consistency_analysis": canonical.model_dump(),
        }
        if run.keywords:
            fields["extracted_keywords"] = sorted(run.keywords)
        await self.store.update_session(run.crawling_id, fields)

        average_scores = await self.store.average_scores(run.crawling_id)
        self.events.emit(
            COMPLETED,
            {"crawling_id": run.crawling_id, "average_scores": average_scores},
        )
        metrics = run.monitor.log_metrics(crawling_id=run.crawling_id)
        self.events.emit(PERFORMANCE_METRICS, {"crawling_id": run.crawling_id, **metrics})

        self._set_state(run, CrawlState.done)
        logger.info(
            "crawl_finished",
            crawling_id=run.crawling_id,
            pages_crawled=run.pages_crawled,
            broken_pages=run.broken_pages,
        )
        return CrawlSummary(
            crawling_id=run.crawling_id,
            average_scores=average_scores,
            canonical_consistency_analysis=canonical,
            pages_crawled=run.pages_crawled,
            broken_pages=run.broken_pages,
        )

    async def _crawl_directory_tree(self, run: _CrawlRun, root_path: str) -> CrawlSummary:
        self._set_state(run, CrawlState.draining)
        task = DirectoryTreeTask(crawling_id=run.crawling_id, root_path=root_path, crawl_config=run.config)
        reply = await self.pool.dispatch(task.model_dump())
        analysis = None
        if "error" in reply:
            logger.error("directory_tree_failed", crawling_id=run.crawling_id, root_path=root_path, error=reply["error"])
        else:
            analysis = reply["analysis"]
            await self.store.save_directory_tree(run.crawling_id, reply["directory_tree"], analysis)

        self._set_state(run, CrawlState.finalizing)
        average_scores = await self.store.average_scores(run.crawling_id)
        self.events.emit(
            COMPLETED,
            {"crawling_id": run.crawling_id, "average_scores": average_scores},
        )
        self._set_state(run, CrawlState.done)
        return CrawlSummary(
            crawling_id=run.crawling_id,
            average_scores=average_scores,
            directory_tree_analysis=analysis,
        )


async def crawl_website(
    url: str,
    options: Optional[CrawlOptions] = None,
    *,
    store,
    events: Optional[EventSink] = None,
    settings: Optional[Settings] = None,
    client_factory: Optional[ClientFactory] = None,
) -> CrawlSummary:
    """One-shot helper: build an orchestrator, run one crawl, stop the pool."""

    async with CrawlOrchestrator(
        store,
        events,
        settings=settings,
        client_factory=client_factory,
    ) as orchestrator:
        return await orchestrator.crawl_website(url, options)
