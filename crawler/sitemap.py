"""Sitemap discovery and recursive parsing (XML, index, text, RSS, Atom)."""

from __future__ import annotations

import gzip
import urllib.parse as urlparse
import xml.etree.ElementTree as ET
import zlib

import structlog
from bs4 import BeautifulSoup

from .exceptions import CrawlerError, CrawlerParsingError
from .http import AsyncHttpFetcher
from .robots import RobotsCache

logger = structlog.get_logger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
COMMON_SITEMAP_PATHS = (
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap.txt",
    "/sitemap.rss",
    "/sitemap.atom",
)
MAX_INDEX_DEPTH = 5


def decompress_if_needed(data: bytes) -> bytes:
    """Gunzip ``data`` when it starts with the gzip magic bytes."""

    if data[:2] != GZIP_MAGIC:
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise CrawlerParsingError(f"Corrupt gzip sitemap: {exc}") from exc


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def _children(node: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in node if _local(child.tag) == name]


def _text_of(node: ET.Element, name: str) -> str | None:
    for child in _children(node, name):
        if child.text and child.text.strip():
            return child.text.strip()
    return None


def parse_xml_document(text: str) -> tuple[list[str], list[str]]:
    """Return ``(page_urls, child_sitemaps)`` for any XML sitemap flavour."""

    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise CrawlerParsingError(f"Malformed XML sitemap: {exc}") from exc

    kind = _local(root.tag)
    if kind == "urlset":
        urls = [loc for url_el in _children(root, "url") if (loc := _text_of(url_el, "loc"))]
        return urls, []
    if kind == "sitemapindex":
        nested = [loc for sm in _children(root, "sitemap") if (loc := _text_of(sm, "loc"))]
        return [], nested
    if kind == "rss":
        return parse_rss(root), []
    if kind == "feed":
        return parse_atom(root), []
    raise CrawlerParsingError(f"Unsupported XML sitemap root <{kind}>")


def parse_rss(root: ET.Element) -> list[str]:
    urls: list[str] = []
    for channel in _children(root, "channel"):
        for item in _children(channel, "item"):
            link = _text_of(item, "link")
            if link:
                urls.append(link)
    return urls


def parse_atom(root: ET.Element) -> list[str]:
    urls: list[str] = []
    for entry in _children(root, "entry"):
        links = _children(entry, "link")
        chosen = None
        for link in links:
            rel = (link.get("rel") or "alternate").lower()
            if rel == "alternate" and link.get("href"):
                chosen = link.get("href")
                break
        if chosen is None and links and links[0].get("href"):
            chosen = links[0].get("href")
        if chosen:
            urls.append(chosen.strip())
    return urls


def parse_text_sitemap(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip().startswith("http")]


def _looks_like_text_sitemap(text: str) -> bool:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    return bool(lines) and all(line.startswith("http") for line in lines)


def parse_sitemap_body(content_type: str, body: bytes) -> tuple[list[str], list[str]]:
    """Dispatch a (decompressed) sitemap body to the matching parser."""

    text = body.decode("utf-8", errors="replace").lstrip("\ufeff")
    stripped = text.strip()
    ctype = (content_type or "").split(";")[0].strip().lower()

    if "rss" in ctype or "atom" in ctype or "xml" in ctype:
        return parse_xml_document(stripped)
    if ctype == "text/plain" and not stripped.startswith("<"):
        return parse_text_sitemap(stripped), []
    if stripped.startswith("<"):
        return parse_xml_document(stripped)
    if _looks_like_text_sitemap(stripped):
        return parse_text_sitemap(stripped), []
    raise CrawlerParsingError(f"Unsupported sitemap format: {content_type or 'unknown'}")


def sitemap_links_from_html(soup: BeautifulSoup, url: str) -> list[str]:
    """Sitemap references found in a page: ``a[href*=sitemap]`` and ``meta[name=sitemap]``."""

    found: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"])
        if "sitemap" in href.lower():
            found.setdefault(urlparse.urljoin(url, href), None)
    for meta in soup.find_all("meta", attrs={"name": "sitemap"}):
        content = meta.get("content")
        if content:
            found.setdefault(urlparse.urljoin(url, str(content)), None)
    return list(found)


class _Expansion:
    """State shared by one recursive expansion: global cap and visited set."""

    def __init__(self, max_urls: int) -> None:
        self.max_urls = max_urls
        self.urls: list[str] = []
        self.visited: set[str] = set()

    @property
    def full(self) -> bool:
        return len(self.urls) >= self.max_urls

    def add(self, urls: list[str]) -> None:
        room = self.max_urls - len(self.urls)
        if room > 0:
            self.urls.extend(urls[:room])


class SitemapCrawler:
    """Find sitemaps for a site and flatten them into page URLs."""

    def __init__(
        self,
        fetcher: AsyncHttpFetcher,
        *,
        robots: RobotsCache,
        max_urls: int = 50000,
        timeout: float | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.robots = robots
        self.max_urls = max_urls
        self.timeout = timeout

    async def discover_sitemaps(self, url: str) -> list[str]:
        """Union of robots.txt ``Sitemap:`` lines and well-known paths that exist."""

        parts = urlparse.urlsplit(url)
        origin = urlparse.urlunsplit((parts.scheme, parts.netloc, "", "", ""))
        found: dict[str, None] = {}

        for candidate in await self.robots.sitemaps(origin + "/"):
            found.setdefault(urlparse.urljoin(origin + "/", candidate), None)

        for path in COMMON_SITEMAP_PATHS:
            sitemap_url = origin + path
            if sitemap_url in found:
                continue
            try:
                resp = await self.fetcher.head(sitemap_url, rate_limited=False)
            except CrawlerError as exc:
                logger.debug("sitemap_probe_failed", url=sitemap_url, error=str(exc))
                continue
            if resp.status_code < 400:
                found.setdefault(sitemap_url, None)

        sitemaps = list(found)
        logger.info("sitemaps_discovered", url=url, count=len(sitemaps))
        return sitemaps

    async def _fetch_document(self, url: str) -> tuple[list[str], list[str]]:
        resp = await self.fetcher.get(url, timeout=self.timeout)
        if resp.status_code >= 400:
            raise CrawlerError(f"Sitemap {url} returned HTTP {resp.status_code}")
        body = decompress_if_needed(resp.content)
        return parse_sitemap_body(resp.content_type, body)

    async def _expand(self, url: str, state: _Expansion, depth: int) -> None:
        if state.full or url in state.visited:
            return
        state.visited.add(url)
        urls, nested = await self._fetch_document(url)
        state.add(urls)
        if depth >= MAX_INDEX_DEPTH and nested:
            logger.warning("sitemap_index_too_deep", url=url, skipped=len(nested))
            return
        for child in nested:
            if state.full:
                break
            try:
                await self._expand(child, state, depth + 1)
            except CrawlerError as exc:
                logger.warning("sitemap_child_skipped", url=child, parent=url, error=str(exc))

    async def fetch_sitemap(self, url: str, max_urls: int | None = None) -> list[str]:
        """Return page URLs of ``url``, following sitemap indexes recursively.

        At most ``max_urls`` URLs are returned across the whole expansion.
        Failures of child sitemaps are logged and skipped; a failure of
        ``url`` itself raises.
        """

        state = _Expansion(self.max_urls if max_urls is None else max_urls)
        await self._expand(url, state, 0)
        logger.info("sitemap_fetched", url=url, urls=len(state.urls), capped=state.full)
        return state.urls
