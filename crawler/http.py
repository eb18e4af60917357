"""Thin httpx wrapper used for every outbound request of the crawler."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
import structlog

from .exceptions import CrawlerNetworkError
from .rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[], httpx.AsyncClient]


@dataclass
class FetchResponse:
    """Plain response snapshot so callers never hold a live httpx object."""

    url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""
    elapsed_ms: float = 0.0

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


def default_client_factory(user_agent: str, timeout: float) -> ClientFactory:
    def _factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=timeout,
            follow_redirects=True,
        )

    return _factory


class AsyncHttpFetcher:
    """GET/HEAD helper that consults the rate limiter before each request.

    Any status code is returned to the caller; only transport failures raise
    :class:`CrawlerNetworkError`. :class:`RateLimitExceeded` propagates
    untouched so the caller can drop the task.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        user_agent: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.rate_limiter = rate_limiter
        self.user_agent = user_agent
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent} if self.user_agent else {}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        rate_limited: bool,
        timeout: float | None = None,
    ) -> FetchResponse:
        if rate_limited and self.rate_limiter is not None:
            self.rate_limiter.acquire()
        started = time.perf_counter()
        try:
            resp = await self.client.request(
                method,
                url,
                headers=self._headers(),
                timeout=self.timeout if timeout is None else timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("http_request_failed", method=method, url=url, error=str(exc))
            raise CrawlerNetworkError(f"Failed to {method} {url}: {exc}") from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        return FetchResponse(
            url=str(resp.url),
            status_code=resp.status_code,
            headers={k.lower(): v for k, v in resp.headers.items()},
            content=resp.content,
            elapsed_ms=elapsed_ms,
        )

    async def get(
        self,
        url: str,
        *,
        rate_limited: bool = True,
        timeout: float | None = None,
    ) -> FetchResponse:
        return await self._request("GET", url, rate_limited=rate_limited, timeout=timeout)

    async def head(self, url: str, *, rate_limited: bool = True) -> FetchResponse:
        return await self._request("HEAD", url, rate_limited=rate_limited)

    async def aclose(self) -> None:
        await self.client.aclose()
