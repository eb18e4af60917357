"""In-memory crawl frontier with a process-lifetime seen set."""

from __future__ import annotations

import re
import urllib.parse as urlparse
from collections import deque
from typing import Iterable, Iterator

from models import FrontierEntry

DROP_QUERY_PARAMS = {
    "gclid",
    "fbclid",
    "yclid",
    "_openstat",
}


def normalize_url(raw_url: str) -> str | None:
    """Return a canonical representation of ``raw_url`` suitable for deduplication."""

    if not raw_url:
        return None
    candidate = raw_url.strip()
    if not candidate:
        return None

    parsed = urlparse.urlsplit(candidate)
    scheme = (parsed.scheme or "https").lower()
    if scheme not in {"http", "https"}:
        return None

    netloc = parsed.netloc.strip().lower()
    if not netloc:
        return None
    host, sep, port = netloc.rpartition(":") if ":" in netloc else (netloc, "", "")
    if sep and port.isdigit():
        if (scheme == "https" and port == "443") or (scheme == "http" and port == "80"):
            netloc = host

    path = parsed.path or ""
    if path:
        path = re.sub(r"/{2,}", "/", path)
    if path.endswith("/") and path != "/":
        path = path.rstrip("/")
    if path == "/":
        path = ""

    query_pairs = urlparse.parse_qsl(parsed.query, keep_blank_values=True)
    filtered_pairs = [
        (k, v)
        for k, v in query_pairs
        if k and k.lower() not in DROP_QUERY_PARAMS and not k.lower().startswith("utm_")
    ]
    filtered_pairs.sort()
    query = urlparse.urlencode(filtered_pairs, doseq=True)

    return urlparse.urlunsplit((scheme, netloc, path, query, ""))


def relative_url(url: str) -> str:
    """Path plus query of ``url``."""

    parts = urlparse.urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def page_key(url: str) -> str:
    """Relative form of the normalized ``url``; identifies a page within a session."""

    return relative_url(normalize_url(url) or url)


class Frontier:
    """FIFO of pending :class:`FrontierEntry` objects.

    ``seen`` holds every URL ever pushed; pushing it again is a no-op, so a
    URL is dispatched at most once per crawl. ``processed`` holds URLs already
    taken for processing and is checked again on :meth:`take_batch`.
    Only the orchestrating event loop mutates a frontier.
    """

    def __init__(self) -> None:
        self._pending: deque[FrontierEntry] = deque()
        self._seen: set[str] = set()
        self._processed: set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def __iter__(self) -> Iterator[FrontierEntry]:
        return iter(list(self._pending))

    @property
    def seen(self) -> frozenset[str]:
        return frozenset(self._seen)

    @property
    def processed(self) -> frozenset[str]:
        return frozenset(self._processed)

    def push(self, url: str, depth: int = 0, priority: int = 0, *, front: bool = False) -> bool:
        key = normalize_url(url)
        if key is None or key in self._seen:
            return False
        self._seen.add(key)
        fetch_url = urlparse.urldefrag(url.strip())[0]
        entry = FrontierEntry(url=fetch_url, key=key, depth=depth, priority=priority)
        if front:
            self._pending.appendleft(entry)
        else:
            self._pending.append(entry)
        return True

    def extend(self, urls: Iterable[str], depth: int = 0, priority: int = 0) -> list[str]:
        """Push every unseen URL and return the normalized ones actually added."""

        added: list[str] = []
        for url in urls:
            if self.push(url, depth, priority):
                added.append(self._pending[-1].key)
        return added

    def take_batch(self, size: int) -> list[FrontierEntry]:
        batch: list[FrontierEntry] = []
        while self._pending and len(batch) < size:
            entry = self._pending.popleft()
            if entry.key in self._processed:
                continue
            self._processed.add(entry.key)
            batch.append(entry)
        return batch
