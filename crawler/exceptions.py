"""Error taxonomy of the crawl engine."""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for crawler failures."""


class RateLimitExceeded(CrawlerError):
    """Raised when the token bucket is empty; the request is dropped, not queued."""


class CrawlerNetworkError(CrawlerError):
    """Raised when a fetch fails at the transport level (DNS, timeout, reset)."""

    def __init__(self, message: str, *, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class CrawlerParsingError(CrawlerError):
    """Raised for malformed sitemap or page documents."""


class CrawlConfigError(CrawlerError, ValueError):
    """Raised before any work starts when crawl options are illegal."""
