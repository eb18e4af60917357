"""Worker units: isolated event loops that fetch and analyse pages.

Each :class:`WorkerUnit` is an OS thread running its own asyncio loop with its
own HTTP client, rate limiter and robots cache. The orchestrator talks to a
unit only by message: it hands over a task dict and awaits one reply dict.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog

from models import CrawlResult, CrawlTask, DirectoryTreeTask, TaskType

from .directory_tree import analyze_directory_tree, walk_directory_tree
from .exceptions import CrawlerNetworkError, RateLimitExceeded
from .extraction import extract_page_data, parse_html, score_page
from .filters import InclusionExclusionFilter
from .frontier import page_key
from .http import AsyncHttpFetcher, ClientFactory, default_client_factory
from .links import extract_links
from .rate_limiter import RateLimiter
from .robots import RobotsCache

logger = structlog.get_logger(__name__)

Scorer = Callable[[Dict[str, Any]], Dict[str, float]]

REPLY_TIMEOUT_ERROR = "worker reply timeout"
RATE_LIMIT_ERROR = "rate limit exceeded"


@dataclass
class WorkerContext:
    """Per-unit dependency graph; never shared between units."""

    fetcher: AsyncHttpFetcher
    robots: RobotsCache
    rate_limiter: RateLimiter

    @classmethod
    def build(cls, settings, client_factory: Optional[ClientFactory] = None) -> "WorkerContext":
        crawler = settings.crawler
        factory = client_factory or default_client_factory(
            crawler.user_agent, crawler.request_timeout
        )
        rate_limiter = RateLimiter.from_settings(settings.rate_limit)
        fetcher = AsyncHttpFetcher(
            factory(),
            rate_limiter=rate_limiter,
            user_agent=crawler.user_agent,
            timeout=crawler.request_timeout,
        )
        return cls(
            fetcher=fetcher,
            robots=RobotsCache(fetcher, crawler.user_agent),
            rate_limiter=rate_limiter,
        )

    async def aclose(self) -> None:
        await self.fetcher.aclose()


def _broken(task: CrawlTask, *, status_code: int | None = None, error: str | None = None) -> CrawlResult:
    return CrawlResult(
        crawling_id=task.crawling_id,
        url=task.url,
        depth=task.depth,
        is_broken=True,
        status_code=status_code,
        error=error,
    )


class CrawlerWorker:
    """Message handler living inside one worker unit."""

    def __init__(self, context: WorkerContext, *, scorer: Scorer = score_page) -> None:
        self.context = context
        self.scorer = scorer

    async def handle(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Handle one task message; any exception becomes ``{"error": ...}``."""

        try:
            task_type = message.get("type")
            if task_type == TaskType.crawl_and_extract:
                result = await self.crawl_and_extract(CrawlTask(**message))
                return result.model_dump()
            if task_type == TaskType.directory_tree:
                return await self.directory_tree(DirectoryTreeTask(**message))
            raise ValueError(f"unknown task type: {task_type!r}")
        except Exception as exc:
            logger.exception("worker_task_failed", task_type=message.get("type"), url=message.get("url"))
            return {"error": str(exc)}

    async def crawl_and_extract(self, task: CrawlTask) -> CrawlResult:
        config = task.crawl_config
        ctx = self.context

        if config.respect_robots_txt and not await ctx.robots.is_allowed(task.url):
            logger.info("page_disallowed_by_robots", url=task.url)
            return _broken(task, error="disallowed by robots.txt")

        try:
            response = await ctx.fetcher.get(task.url)
        except RateLimitExceeded:
            return _broken(task, error=RATE_LIMIT_ERROR)
        except CrawlerNetworkError as exc:
            logger.warning("page_fetch_failed", url=task.url, error=str(exc))
            return _broken(task, status_code=exc.status_code, error=str(exc))

        if response.status_code >= 400:
            return _broken(task, status_code=response.status_code)

        soup = parse_html(response.content)
        url_filter = InclusionExclusionFilter(config.inclusion_rules, config.exclusion_rules)
        new_urls = await extract_links(
            soup,
            task.url,
            task.depth,
            config,
            url_filter=url_filter,
            robots=ctx.robots,
        )
        page = extract_page_data(
            soup,
            task.url,
            response.elapsed_ms,
            response.status_code,
            max_keywords=config.max_keywords,
        )
        page["crawling_id"] = task.crawling_id
        page["depth"] = task.depth
        page["scores"] = self.scorer(page)

        return CrawlResult(
            crawling_id=task.crawling_id,
            url=task.url,
            depth=task.depth,
            page_data=page,
            new_urls=new_urls,
            keywords=page["keywords"],
            status_code=response.status_code,
        )

    async def directory_tree(self, task: DirectoryTreeTask) -> Dict[str, Any]:
        config = task.crawl_config
        tree = await asyncio.to_thread(
            walk_directory_tree,
            task.root_path,
            max_depth=config.directory_tree_max_depth,
            allowed_extensions=config.directory_tree_allowed_extensions,
            exclude_patterns=config.directory_tree_exclude_patterns,
        )
        return {
            "crawling_id": task.crawling_id,
            "root_path": task.root_path,
            "directory_tree": tree,
            "analysis": analyze_directory_tree(tree),
        }

    async def aclose(self) -> None:
        await self.context.aclose()


def broken_page_record(result: CrawlResult) -> Dict[str, Any]:
    """Persistable record for a page that could not be crawled."""

    return {
        "crawling_id": result.crawling_id,
        "url": result.url,
        "page_url_relative": page_key(result.url or ""),
        "depth": result.depth,
        "is_broken": True,
        "status_code": result.status_code or 0,
        "error": result.error,
        "crawled_at": datetime.now(timezone.utc),
    }


WorkerFactory = Callable[[], CrawlerWorker]


class WorkerUnit:
    """One thread with a private event loop serving task messages."""

    def __init__(self, index: int, worker_factory: WorkerFactory) -> None:
        self.index = index
        self._worker_factory = worker_factory
        self._worker: CrawlerWorker | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready = threading.Event()
        self._startup_error: BaseException | None = None
        self._thread = threading.Thread(
            target=self._run,
            name=f"crawler-unit-{index}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()
        self._ready.wait()
        if self._startup_error is not None:
            raise self._startup_error

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            self._worker = self._worker_factory()
        except Exception as exc:
            self._startup_error = exc
            self._ready.set()
            loop.close()
            return
        self._loop = loop
        self._ready.set()
        logger.debug("worker_unit_started", unit=self.index)
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(self._worker.aclose())
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            logger.debug("worker_unit_stopped", unit=self.index)

    def submit(self, message: Dict[str, Any]) -> concurrent.futures.Future:
        if self._loop is None or self._worker is None:
            raise RuntimeError(f"worker unit {self.index} is not running")
        return asyncio.run_coroutine_threadsafe(self._worker.handle(message), self._loop)

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(loop.stop)
        if self._thread.is_alive():
            self._thread.join(timeout)


class WorkerPool:
    """Fixed set of worker units selected round-robin.

    There is no busy tracking: a unit may be handed several tasks at once and
    serves them concurrently on its loop.
    """

    def __init__(
        self,
        size: int,
        worker_factory: WorkerFactory,
        *,
        reply_timeout: float = 120.0,
    ) -> None:
        if size <= 0:
            raise ValueError("worker pool size must be positive")
        self.units = [WorkerUnit(i, worker_factory) for i in range(size)]
        self.reply_timeout = reply_timeout
        self._next = 0
        self._started = False

    def __len__(self) -> int:
        return len(self.units)

    def start(self) -> None:
        if self._started:
            return
        for unit in self.units:
            unit.start()
        self._started = True
        logger.info("worker_pool_started", size=len(self.units))

    def next_unit(self) -> WorkerUnit:
        unit = self.units[self._next]
        self._next = (self._next + 1) % len(self.units)
        return unit

    async def dispatch(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send ``message`` to the next unit and await its reply."""

        unit = self.next_unit()
        try:
            future = asyncio.wrap_future(unit.submit(message))
            return await asyncio.wait_for(future, self.reply_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "worker_reply_timeout",
                unit=unit.index,
                url=message.get("url"),
                timeout=self.reply_timeout,
            )
            return {"error": REPLY_TIMEOUT_ERROR}
        except RuntimeError as exc:
            logger.error("worker_dispatch_failed", unit=unit.index, error=str(exc))
            return {"error": str(exc)}

    def close(self) -> None:
        for unit in self.units:
            unit.stop()
        self._started = False
        logger.info("worker_pool_stopped", size=len(self.units))


def crawler_worker_factory(
    settings,
    *,
    client_factory: Optional[ClientFactory] = None,
    scorer: Scorer = score_page,
) -> WorkerFactory:
    """Factory called inside each unit thread to build its worker."""

    def _factory() -> CrawlerWorker:
        return CrawlerWorker(WorkerContext.build(settings, client_factory), scorer=scorer)

    return _factory
