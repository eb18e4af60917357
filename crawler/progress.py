"""Completion estimate for a crawl whose total size is discovered on the way."""

from __future__ import annotations

from typing import Iterable

import structlog

logger = structlog.get_logger(__name__)


class ProgressEstimator:
    def __init__(self, url_limit: int | None = None) -> None:
        self.url_limit = url_limit
        self._unique: set[str] = set()
        self.processed = 0

    def reset(self) -> None:
        self._unique.clear()
        self.processed = 0

    @property
    def estimated_total(self) -> int:
        total = len(self._unique)
        if self.url_limit is not None:
            total = min(total, self.url_limit)
        return total

    def update(self, new_urls: Iterable[str], processed: int) -> float:
        """Register newly discovered URLs and return the percentage done."""

        self._unique.update(new_urls)
        self.processed = processed
        percentage = self.percentage()
        logger.debug(
            "progress_updated",
            processed=processed,
            estimated_total=self.estimated_total,
            percentage=round(percentage, 2),
        )
        return percentage

    def percentage(self) -> float:
        total = self.estimated_total
        if total <= 0:
            return 0.0
        return min(100.0, self.processed / total * 100)
