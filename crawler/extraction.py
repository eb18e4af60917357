"""Page record extraction and the default on-page scorer."""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from bs4 import BeautifulSoup

from .fingerprint import simhash, to_hex
from .frontier import page_key

STOPWORDS = frozenset(
    """
    about above after again against also because been before being below between
    both could does doing down during each from further have having here hers
    herself himself into itself just more most myself once only other ought ours
    ourselves over same should some such than that their theirs them themselves
    then there these they this those through under until very were what when
    where which while whom with would your yours yourself yourselves will shall
    """.split()
)
_WORD_RE = re.compile(r"\b\w+\b", re.UNICODE)


def parse_html(payload: bytes | str) -> BeautifulSoup:
    return BeautifulSoup(payload or b"", "html.parser")


def visible_text(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    for node in body.find_all(["script", "style", "noscript", "iframe", "template"]):
        node.decompose()
    text = body.get_text(" ", strip=True)
    return re.sub(r"\s{2,}", " ", text).strip()


def top_keywords(text: str, limit: int = 10) -> list[str]:
    """Most frequent words longer than three characters, stop words removed."""

    words = [w for w in _WORD_RE.findall(text.lower()) if len(w) > 3 and not w.isdigit()]
    counts = Counter(w for w in words if w not in STOPWORDS)
    return [word for word, _ in counts.most_common(limit)]


def _meta_content(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.find("meta", attrs={"name": name}) or soup.find("meta", attrs={"property": name})
    if tag and tag.get("content"):
        return str(tag["content"]).strip()
    return None


def canonical_href(soup: BeautifulSoup) -> str | None:
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "canonical" in [r.lower() for r in rel]:
            href = str(link["href"]).strip()
            return href or None
    return None


def extract_page_data(
    soup: BeautifulSoup,
    url: str,
    load_time: float,
    status_code: int,
    *,
    max_keywords: int = 10,
) -> dict[str, Any]:
    """Build the persisted page record for a successfully fetched page."""

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    canonical = canonical_href(soup)
    meta_description = _meta_content(soup, "description")
    text = visible_text(soup)
    fingerprint = simhash(text)

    return {
        "url": url,
        "page_url_relative": page_key(url),
        "title": title,
        "meta_description": meta_description,
        "canonical_href": canonical,
        "word_count": len(text.split()),
        "load_time": round(load_time, 2),
        "status_code": status_code,
        "is_broken": False,
        "content_fingerprint": to_hex(fingerprint) if fingerprint is not None else None,
        "keywords": top_keywords(text, max_keywords),
        "crawled_at": datetime.now(timezone.utc),
    }


def score_page(page: dict[str, Any]) -> dict[str, float]:
    """Basic 0..1 on-page scores; stands in for a full SEO scoring service."""

    title = page.get("title") or ""
    description = page.get("meta_description") or ""
    words = int(page.get("word_count") or 0)
    return {
        "title": 1.0 if 10 <= len(title) <= 60 else (0.5 if title else 0.0),
        "meta_description": 1.0 if 50 <= len(description) <= 160 else (0.5 if description else 0.0),
        "canonical": 1.0 if page.get("canonical_href") else 0.0,
        "content": round(min(1.0, words / 300), 3),
    }
