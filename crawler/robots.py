"""Per-origin robots.txt cache backed by :mod:`urllib.robotparser`."""

from __future__ import annotations

import asyncio
import urllib.parse as urlparse
from urllib import robotparser

import structlog

from .exceptions import CrawlerError
from .http import AsyncHttpFetcher

logger = structlog.get_logger(__name__)


def parse_robots_txt(body: str, robots_url: str = "") -> robotparser.RobotFileParser:
    """Parse ``body``; rules apply first-match in file order."""

    parser = robotparser.RobotFileParser()
    if robots_url:
        parser.set_url(robots_url)
    parser.parse(body.splitlines())
    return parser


def _allow_all() -> robotparser.RobotFileParser:
    parser = robotparser.RobotFileParser()
    parser.allow_all = True
    return parser


class RobotsCache:
    """Fetch robots.txt once per origin and answer :meth:`is_allowed`.

    The cache lives for the lifetime of the object, there is no refresh.
    robots.txt requests bypass the rate limiter because they happen once per
    origin. A missing or unreachable file allows everything.
    """

    def __init__(self, fetcher: AsyncHttpFetcher, user_agent: str) -> None:
        self.fetcher = fetcher
        self.user_agent = user_agent
        self._cache: dict[str, robotparser.RobotFileParser] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def origin_of(url: str) -> str:
        parts = urlparse.urlsplit(url)
        return urlparse.urlunsplit((parts.scheme.lower(), parts.netloc.lower(), "", "", ""))

    async def _load(self, origin: str) -> robotparser.RobotFileParser:
        robots_url = origin + "/robots.txt"
        try:
            resp = await self.fetcher.get(robots_url, rate_limited=False)
        except CrawlerError as exc:
            logger.debug("robots_fetch_failed", url=robots_url, error=str(exc))
            return _allow_all()
        if resp.status_code >= 400 or not resp.text.strip():
            return _allow_all()
        parser = parse_robots_txt(resp.text, robots_url)
        logger.debug(
            "robots_loaded",
            origin=origin,
            sitemaps=len(parser.site_maps() or []),
        )
        return parser

    async def parser_for(self, url: str) -> robotparser.RobotFileParser:
        origin = self.origin_of(url)
        cached = self._cache.get(origin)
        if cached is not None:
            return cached
        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            cached = self._cache.get(origin)
            if cached is None:
                cached = await self._load(origin)
                self._cache[origin] = cached
        return cached

    async def is_allowed(self, url: str) -> bool:
        parser = await self.parser_for(url)
        return parser.can_fetch(self.user_agent, url)

    async def sitemaps(self, url: str) -> list[str]:
        parser = await self.parser_for(url)
        return list(parser.site_maps() or [])
