import threading

import httpx
import pytest

from conftest import FakeStore, RecordingSink, make_settings, mock_client_factory
from crawler import events as ev
from crawler.exceptions import CrawlConfigError
from crawler.orchestrator import CrawlOrchestrator, crawl_website
from models import CrawlOptions

SAME_BODY = "<p>shared article text that appears on two different addresses</p>"


def page(title: str, body: str, *, canonical: str | None = None) -> str:
    head = f"<title>{title}</title>"
    if canonical:
        head += f'<link rel="canonical" href="{canonical}">'
    return f"<html><head>{head}</head><body>{body}</body></html>"


def make_site(robots: str = "", extra: dict | None = None):
    pages = {
        "/": page(
            "Home",
            '<a href="/a">a</a><a href="/b">b</a><a href="/c">c</a>'
            '<a href="/sitemap-extra.xml">map</a><p>homepage words</p>',
        ),
        "/a": page("Alpha", '<a href="/d">d</a><a href="/">home</a><p>alpha section</p>'),
        "/c": page("Copy", SAME_BODY, canonical="/c"),
        "/d": page("Copy", SAME_BODY, canonical="https://example.com/c"),
        "/s1": page("From sitemap", "<p>sitemap page one</p>"),
        "/s2": page("From sitemap", "<p>sitemap page two</p>"),
        "/s3": page("From html sitemap", "<p>html sitemap page</p>"),
    }
    xml = {
        "/map.xml": (
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/s1</loc></url>"
            "<url><loc>https://example.com/s2</loc></url></urlset>"
        ),
        "/sitemap-extra.xml": (
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://example.com/s3</loc></url></urlset>"
        ),
    }
    pages.update(extra or {})
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path or "/"
        requests.append((request.method, path))
        if path == "/robots.txt":
            return httpx.Response(200, text=robots) if robots else httpx.Response(404)
        if path in xml:
            return httpx.Response(200, text=xml[path], headers={"content-type": "application/xml"})
        if path in pages:
            return httpx.Response(200, text=pages[path], headers={"content-type": "text/html"})
        return httpx.Response(404)

    return mock_client_factory(handler), requests


def orchestrator(store, sink, client_factory, **settings) -> CrawlOrchestrator:
    return CrawlOrchestrator(
        store,
        sink,
        settings=make_settings(**settings),
        client_factory=client_factory,
    )


@pytest.mark.asyncio
async def test_full_crawl(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    assert summary.crawling_id == "crawl_example_com"
    assert summary.pages_crawled == 4
    assert summary.broken_pages == 1
    assert summary.canonical_consistency_analysis.is_consistent

    stored = {rel: p for (_, rel), p in store.pages.items()}
    assert set(stored) == {"/", "/a", "/b", "/c", "/d"}
    assert stored["/b"]["is_broken"] is True
    assert stored["/b"]["status_code"] == 404

    session = store.sessions["crawl_example_com"]
    assert session["website_domain"] == "example.com"
    assert session["starting_points"] == ["https://example.com"]
    assert {"alpha", "homepage", "section"} <= set(session["extracted_keywords"])
    assert session["duplicate_content"] == [
        {"url": "/c", "duplicate_urls": ["/d"]},
        {"url": "/d", "duplicate_urls": ["/c"]},
    ]
    assert session["canonical_consistency_analysis"]["is_consistent"] is True

    progress = sink.named(ev.PROGRESS)
    assert progress[-1]["current_url"] == "Completed"
    assert progress[-1]["percentage"] == 100.0
    assert all(0.0 <= p["percentage"] <= 100.0 for p in progress)
    completed = sink.named(ev.COMPLETED)
    assert completed == [{"crawling_id": "crawl_example_com", "average_scores": summary.average_scores}]
    metrics = sink.named(ev.PERFORMANCE_METRICS)[0]
    assert metrics["total_requests"] == 5
    assert metrics["failed_requests"] == 1


@pytest.mark.asyncio
async def test_url_limit_is_a_hard_budget(store, sink):
    client_factory, requests = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=2))

    assert summary.pages_crawled + summary.broken_pages == 2
    assert len(store.pages) == 2
    page_gets = [p for m, p in requests if m == "GET" and p != "/robots.txt"]
    assert len(page_gets) == 2


@pytest.mark.asyncio
async def test_invalid_budget_fails_before_any_io(store, sink):
    client_factory, requests = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        with pytest.raises(CrawlConfigError):
            await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=0))
        with pytest.raises(ValueError):
            await crawler.crawl_website("https://example.com", CrawlOptions(depth_limit=-1))
        with pytest.raises(CrawlConfigError):
            await crawler.crawl_website("not a url")

    assert store.sessions == {}
    assert requests == []
    assert sink.events == []


@pytest.mark.asyncio
async def test_session_is_reused_across_runs(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        first = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=1))
        second = await crawler.crawl_website("https://EXAMPLE.com/a", CrawlOptions(url_limit=1))

    assert first.crawling_id == second.crawling_id
    assert list(store.sessions) == ["crawl_example_com"]
    assert store.sessions["crawl_example_com"]["starting_points"] == [
        "https://example.com",
        "https://EXAMPLE.com/a",
    ]


@pytest.mark.asyncio
async def test_sitemap_seeding(store, sink):
    client_factory, requests = make_site(robots="User-agent: *\nSitemap: https://example.com/map.xml\n")
    async with orchestrator(
        store, sink, client_factory, sitemap_enabled=True, extract_sitemaps_from_html=True
    ) as crawler:
        await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    stored = {rel for (_, rel) in store.pages}
    assert {"/s1", "/s2", "/s3"} <= stored
    assert ("GET", "/map.xml") in requests


@pytest.mark.asyncio
async def test_seed_url_goes_before_sitemap_urls(store, sink):
    client_factory, _ = make_site(robots="User-agent: *\nSitemap: https://example.com/map.xml\n")
    async with orchestrator(store, sink, client_factory, sitemap_enabled=True) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=1))

    assert summary.pages_crawled == 1
    assert list(store.pages) == [("crawl_example_com", "/")]


@pytest.mark.asyncio
async def test_sitemaps_skipped_when_disabled_per_crawl(store, sink):
    client_factory, requests = make_site(robots="User-agent: *\nSitemap: https://example.com/map.xml\n")
    async with orchestrator(store, sink, client_factory, sitemap_enabled=True) as crawler:
        await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50, sitemap_enabled=False))

    assert ("GET", "/map.xml") not in requests
    assert ("HEAD", "/sitemap.xml") not in requests


@pytest.mark.asyncio
async def test_specific_url_list_skips_sitemaps(store, sink):
    client_factory, requests = make_site(robots="User-agent: *\nSitemap: https://example.com/map.xml\n")
    async with orchestrator(store, sink, client_factory, sitemap_enabled=True) as crawler:
        summary = await crawler.crawl_website(
            "https://example.com",
            CrawlOptions(url_limit=50, specific_url_list=["https://example.com/c", "https://example.com/s1"]),
        )

    assert summary.pages_crawled == 2
    assert ("GET", "/map.xml") not in requests
    assert {rel for (_, rel) in store.pages} == {"/c", "/s1"}


@pytest.mark.asyncio
async def test_custom_starting_points(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        await crawler.crawl_website(
            "https://example.com",
            CrawlOptions(url_limit=50, custom_starting_points=["https://example.com/s2"]),
        )

    assert ("crawl_example_com", "/s2") in store.pages
    assert store.sessions["crawl_example_com"]["starting_points"] == [
        "https://example.com",
        "https://example.com/s2",
    ]


@pytest.mark.asyncio
async def test_depth_limit_enforcement_is_opt_in(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory, enforce_depth_limit=True) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50, depth_limit=1))

    assert ("crawl_example_com", "/d") not in store.pages
    assert summary.pages_crawled == 3

    store_default = FakeStore()
    async with orchestrator(store_default, RecordingSink(), client_factory) as crawler:
        await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50, depth_limit=1))
    assert ("crawl_example_com", "/d") in store_default.pages


@pytest.mark.asyncio
async def test_write_behind_buffer_flushes_in_batches(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory, write_batch_size=2) as crawler:
        await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    assert store.flushes == [2, 2, 1]


@pytest.mark.asyncio
async def test_live_filter_applies_to_following_tasks(store, sink):
    client_factory, _ = make_site()
    async with orchestrator(store, sink, client_factory) as crawler:
        crawler.url_filter.add_exclusion_rule("/a")
        await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    assert ("crawl_example_com", "/a") not in store.pages
    assert ("crawl_example_com", "/d") not in store.pages


@pytest.mark.asyncio
async def test_custom_scorer_feeds_average_scores(store, sink):
    client_factory, _ = make_site()
    async with CrawlOrchestrator(
        store,
        sink,
        settings=make_settings(),
        client_factory=client_factory,
        scorer=lambda page: {"seo": 0.5},
    ) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=3))

    assert summary.average_scores == {"seo": 0.5}


@pytest.mark.asyncio
async def test_directory_tree_crawl(store, sink, tmp_path):
    (tmp_path / "index.html").write_text("x")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "a.htm").write_text("x")
    client_factory, requests = make_site()

    summary = await crawl_website(
        "https://example.com",
        CrawlOptions(use_directory_tree_crawling=True, directory_tree_root_path=str(tmp_path)),
        store=store,
        events=sink,
        settings=make_settings(),
        client_factory=client_factory,
    )

    assert summary.directory_tree_analysis["total_files"] == 2
    assert summary.pages_crawled == 0
    assert store.sessions["crawl_example_com"]["directory_tree_analysis"]["total_folders"] == 2
    assert requests == []
    assert sink.named(ev.COMPLETED)


class ExcludeOnFirstProgress(RecordingSink):
    """Sink that edits the orchestrator's filter after the first wave."""

    def __init__(self, pattern: str) -> None:
        super().__init__()
        self.pattern = pattern
        self.crawler = None

    def emit(self, name, payload):
        super().emit(name, payload)
        if name == ev.PROGRESS and len(self.named(ev.PROGRESS)) == 1:
            self.crawler.url_filter.add_exclusion_rule(self.pattern)


@pytest.mark.asyncio
async def test_filter_edited_between_waves_applies_to_the_running_crawl(store):
    client_factory, requests = make_site()
    sink = ExcludeOnFirstProgress("/d")
    async with orchestrator(store, sink, client_factory) as crawler:
        sink.crawler = crawler
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    # "/" alone is the first wave; "/a" links to "/d" in the second one
    assert {rel for (_, rel) in store.pages} == {"/", "/a", "/b", "/c"}
    assert ("GET", "/d") not in requests
    assert summary.pages_crawled == 3


DIR_SITE = {
    "/": page("Home", '<a href="/dir/">dir</a><a href="/dir/?ref=x">dir again</a>'),
    "/dir/": page("Directory", "<p>directory index page</p>", canonical="https://example.com/dir/"),
}


@pytest.mark.asyncio
async def test_trailing_slash_urls_are_fetched_as_linked(store, sink):
    client_factory, requests = make_site(extra=DIR_SITE)
    async with orchestrator(store, sink, client_factory) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    assert summary.broken_pages == 0
    assert ("GET", "/dir/") in requests
    assert ("GET", "/dir") not in requests
    assert {rel for (_, rel) in store.pages} == {"/", "/dir", "/dir?ref=x"}


@pytest.mark.asyncio
async def test_self_referencing_canonical_with_trailing_slash_is_consistent(store, sink):
    client_factory, _ = make_site(extra=DIR_SITE)
    async with orchestrator(store, sink, client_factory) as crawler:
        summary = await crawler.crawl_website("https://example.com", CrawlOptions(url_limit=50))

    assert summary.canonical_consistency_analysis.is_consistent
    assert summary.canonical_consistency_analysis.inconsistencies == []
    session = store.sessions["crawl_example_com"]
    assert session["canonical_consistency_analysis"]["is_consistent"] is True


@pytest.mark.asyncio
async def test_pool_is_stopped_off_the_event_loop_thread(store, sink):
    client_factory, _ = make_site()
    crawler = orchestrator(store, sink, client_factory)
    stop_close = crawler.close
    closed_on = []

    def close():
        closed_on.append(threading.current_thread())
        stop_close()

    crawler.close = close
    async with crawler:
        pass

    assert len(closed_on) == 1
    assert closed_on[0] is not threading.current_thread()
    assert all(not unit._thread.is_alive() for unit in crawler.pool.units)
