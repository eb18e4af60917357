"""Pytest configuration with basic asyncio support and crawl fakes."""

from __future__ import annotations

import asyncio
import copy
from typing import Any, Callable

import httpx
import pytest

from models import CrawlSession
from settings import CrawlerSettings, RateLimitSettings, Settings


def pytest_configure(config):
    """Register the ``asyncio`` marker for asynchronous tests."""
    config.addinivalue_line(
        "markers", "asyncio: mark async test to run in event loop"
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run functions marked with ``asyncio`` in a new event loop."""
    if pyfuncitem.get_closest_marker("asyncio"):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            funcargs = pyfuncitem.funcargs
            testargs = {
                arg: funcargs[arg] for arg in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(pyfuncitem.obj(**testargs))
        finally:
            loop.close()
            asyncio.set_event_loop(None)
        return True


class FakeStore:
    """In-memory stand-in for :class:`mongo.CrawlStore`."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.pages: dict[tuple[str, str], dict[str, Any]] = {}
        self.session_updates: list[tuple[str, dict[str, Any]]] = []
        self.flushes: list[int] = []

    async def get_or_create_session(self, crawling_id: str, website_domain: str) -> CrawlSession:
        doc = self.sessions.setdefault(
            crawling_id,
            {"crawling_id": crawling_id, "website_domain": website_domain},
        )
        return CrawlSession(**copy.deepcopy(doc))

    async def update_session(self, crawling_id: str, fields: dict[str, Any]) -> None:
        self.session_updates.append((crawling_id, copy.deepcopy(fields)))
        self.sessions[crawling_id].update(copy.deepcopy(fields))

    async def bulk_upsert_pages(self, records) -> int:
        records = list(records)
        for record in records:
            key = (record["crawling_id"], record["page_url_relative"])
            self.pages[key] = dict(record)
        self.flushes.append(len(records))
        return len(records)

    async def find_pages(self, crawling_id: str, *, include_broken: bool = True):
        return [
            dict(page)
            for (cid, _), page in self.pages.items()
            if cid == crawling_id and (include_broken or not page.get("is_broken"))
        ]

    async def average_scores(self, crawling_id: str) -> dict[str, float]:
        totals: dict[str, list[float]] = {}
        for page in await self.find_pages(crawling_id, include_broken=False):
            for key, value in (page.get("scores") or {}).items():
                totals.setdefault(key, []).append(value)
        return {key: sum(values) / len(values) for key, values in totals.items()}

    async def save_directory_tree(self, crawling_id, tree, analysis) -> None:
        await self.update_session(
            crawling_id, {"directory_tree": tree, "directory_tree_analysis": analysis}
        )


class RecordingSink:
    """Event sink that keeps every emitted event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        self.events.append((name, payload))

    def named(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.events if event == name]


def mock_client_factory(
    handler: Callable[[httpx.Request], httpx.Response],
) -> Callable[[], httpx.AsyncClient]:
    transport = httpx.MockTransport(handler)

    def client_factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=transport)

    return client_factory


def make_settings(**crawler_overrides: Any) -> Settings:
    crawler_defaults = {
        "max_threads": 2,
        "concurrency_limit": 4,
        "async_batch_size": 3,
        "worker_reply_timeout": 5.0,
        "write_batch_size": 50,
        "sitemap_enabled": False,
        "extract_sitemaps_from_html": False,
    }
    crawler_defaults.update(crawler_overrides)
    return Settings(
        crawler=CrawlerSettings(**crawler_defaults),
        rate_limit=RateLimitSettings(bucket_capacity=1000, refill_rate=100.0),
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
