"""Celery entry point for background crawls."""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from celery import Celery

from models import CrawlOptions
from mongo import CrawlStore
from observability.logging import configure_logging
from settings import get_settings

from .events import RedisEventSink
from .orchestrator import CrawlOrchestrator

settings = get_settings()
configure_logging(settings.crawler.log_level)

logger = structlog.get_logger(__name__)

celery = Celery(__name__)
celery.conf.broker_url = settings.celery.broker
celery.conf.result_backend = settings.celery.result


async def _crawl(url: str, options: CrawlOptions) -> dict[str, Any]:
    store = CrawlStore.from_settings(settings.mongo)
    try:
        await store.ensure_indexes()
        async with CrawlOrchestrator(
            store,
            RedisEventSink(str(settings.redis_url)),
            settings=settings,
        ) as orchestrator:
            summary = await orchestrator.crawl_website(url, options)
    finally:
        store.close()
    return summary.model_dump(mode="json")


@celery.task(name="crawler.crawl_website")
def crawl_website(url: str, options: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Run one crawl to completion and return its summary."""

    crawl_options = CrawlOptions(**(options or {}))
    logger.info("crawl_task_received", url=url, options=crawl_options.model_dump(exclude_none=True))
    return asyncio.run(_crawl(url, crawl_options))
