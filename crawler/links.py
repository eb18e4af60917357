"""Link extraction: anchors of a fetched page turned into next-hop candidates."""

from __future__ import annotations

import asyncio
import posixpath
import urllib.parse as urlparse
from typing import Optional

from bs4 import BeautifulSoup

from models import CrawlConfig

from .filters import InclusionExclusionFilter
from .robots import RobotsCache

VALID_EXTENSIONS = {"", ".html", ".htm", ".php", ".asp", ".aspx"}


def _has_valid_extension(path: str) -> bool:
    ext = posixpath.splitext(path.lower())[1]
    return ext in VALID_EXTENSIONS


def should_follow(candidate: urlparse.SplitResult, base: urlparse.SplitResult, config: CrawlConfig) -> bool:
    if (candidate.hostname or "") == (base.hostname or ""):
        if candidate.path.startswith(base.path or "/"):
            return config.follow_subfolder_links
        return config.follow_internal_links
    return config.follow_external_links


def candidate_links(
    soup: BeautifulSoup,
    base_url: str,
    config: CrawlConfig,
    url_filter: Optional[InclusionExclusionFilter] = None,
) -> list[str]:
    """Return locally unique anchor targets that pass extension, policy and filter checks."""

    base = urlparse.urlsplit(base_url)
    unique: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href:
            continue
        try:
            absolute, _ = urlparse.urldefrag(urlparse.urljoin(base_url, href))
            parsed = urlparse.urlsplit(absolute)
        except ValueError:
            continue
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            continue
        if not _has_valid_extension(parsed.path):
            continue
        if not should_follow(parsed, base, config):
            continue
        if url_filter is not None and not url_filter.is_url_allowed(absolute):
            continue
        unique.setdefault(absolute, None)
    return list(unique)


async def extract_links(
    soup: BeautifulSoup,
    base_url: str,
    depth: int,
    config: CrawlConfig,
    *,
    url_filter: Optional[InclusionExclusionFilter] = None,
    robots: Optional[RobotsCache] = None,
) -> list[str]:
    """Collect next-hop URLs of a page.

    ``depth`` is the depth of the page the links were found on; it is part
    of the signature for callers that enforce depth limits but is not used
    for filtering here. Global novelty is not checked: the orchestrator's
    frontier does that once, centrally.
    """

    urls = candidate_links(soup, base_url, config, url_filter)
    if robots is None or not config.respect_robots_txt or not urls:
        return urls
    verdicts = await asyncio.gather(*(robots.is_allowed(url) for url in urls))
    return [url for url, allowed in zip(urls, verdicts) if allowed]
