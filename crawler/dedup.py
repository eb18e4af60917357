"""End-of-crawl content and canonical deduplication pass.

The content comparison is all-pairs, O(n²) in the number of fingerprinted
pages. That is fine for hundreds to low thousands of pages; larger crawls
need an indexed nearest-neighbour structure instead.
"""

from __future__ import annotations

import urllib.parse as urlparse
from collections import defaultdict
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Iterable, Mapping

import structlog

from models import (
    CanonicalConsistencyAnalysis,
    CanonicalInconsistency,
    DuplicateEntry,
    NearDuplicateEntry,
)

from .fingerprint import from_hex, similarity
from .frontier import normalize_url, page_key

logger = structlog.get_logger(__name__)


@dataclass
class DuplicateReport:
    duplicates: dict[str, list[str]] = field(default_factory=dict)
    near_duplicates: dict[str, list[str]] = field(default_factory=dict)

    def duplicate_entries(self) -> list[DuplicateEntry]:
        return [DuplicateEntry(url=u, duplicate_urls=v) for u, v in self.duplicates.items()]

    def near_duplicate_entries(self) -> list[NearDuplicateEntry]:
        return [
            NearDuplicateEntry(url=u, near_duplicate_urls=v)
            for u, v in self.near_duplicates.items()
        ]


def find_duplicates(fingerprints: Mapping[str, int], threshold: float = 0.9) -> DuplicateReport:
    """Compare every unordered pair of fingerprints.

    Similarity ``1.0`` is an exact duplicate, ``[threshold, 1.0)`` a near
    duplicate. Both adjacency maps are symmetric.
    """

    duplicates: dict[str, list[str]] = defaultdict(list)
    near: dict[str, list[str]] = defaultdict(list)
    for (url_a, fp_a), (url_b, fp_b) in combinations(fingerprints.items(), 2):
        score = similarity(fp_a, fp_b)
        if score == 1.0:
            duplicates[url_a].append(url_b)
            duplicates[url_b].append(url_a)
        elif score >= threshold:
            near[url_a].append(url_b)
            near[url_b].append(url_a)
    return DuplicateReport(dict(duplicates), dict(near))


def analyze_canonical_consistency(
    observations: Iterable[tuple[str, str | None]],
) -> CanonicalConsistencyAnalysis:
    """Flag canonical targets shared by several pages none of which is the target."""

    groups: dict[str, list[str]] = defaultdict(list)
    for url, canonical in observations:
        if canonical:
            groups[canonical].append(url)

    inconsistencies = [
        CanonicalInconsistency(canonical_url=canonical, conflicting_urls=urls)
        for canonical, urls in groups.items()
        if len(urls) > 1 and canonical not in urls
    ]
    return CanonicalConsistencyAnalysis(
        is_consistent=not inconsistencies,
        inconsistencies=inconsistencies,
    )


def canonical_key(page_url: str, canonical: str | None) -> str | None:
    """Resolve and normalize ``canonical`` against the page.

    Same-host targets reduce to the same key as the pages themselves, so a
    self-referencing canonical matches its page.
    """

    if not canonical:
        return None
    resolved = urlparse.urljoin(page_url, canonical)
    page_host = (urlparse.urlsplit(page_url).hostname or "").lower()
    if (urlparse.urlsplit(resolved).hostname or "").lower() == page_host:
        return page_key(resolved)
    return normalize_url(resolved) or resolved


def run_deduplication(
    pages: Iterable[Mapping[str, Any]],
    *,
    threshold: float = 0.9,
) -> tuple[DuplicateReport, CanonicalConsistencyAnalysis]:
    """Run both passes over stored page records of one session."""

    fingerprints: dict[str, int] = {}
    observations: list[tuple[str, str | None]] = []
    for page in pages:
        if page.get("is_broken"):
            continue
        key = page.get("page_url_relative") or page_key(page.get("url") or "")
        fingerprint = from_hex(page.get("content_fingerprint"))
        if fingerprint is not None:
            fingerprints[key] = fingerprint
        page_url = page.get("url") or key
        observations.append((key, canonical_key(page_url, page.get("canonical_href"))))

    report = find_duplicates(fingerprints, threshold)
    canonical = analyze_canonical_consistency(observations)
    logger.info(
        "deduplication_finished",
        pages=len(fingerprints),
        duplicates=len(report.duplicates),
        near_duplicates=len(report.near_duplicates),
        canonical_inconsistencies=len(canonical.inconsistencies),
    )
    return report, canonical
