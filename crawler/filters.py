"""Ordered inclusion/exclusion rules applied to candidate URLs."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Iterable

from models import FilterRule

from .exceptions import CrawlConfigError


@dataclass(frozen=True)
class _CompiledRule:
    pattern: str
    is_regex: bool
    regex: re.Pattern[str] | None = None

    def matches(self, url: str) -> bool:
        if self.regex is not None:
            return self.regex.search(url) is not None
        return self.pattern in url


def _compile(pattern: str, is_regex: bool) -> _CompiledRule:
    if not is_regex:
        return _CompiledRule(pattern, False)
    try:
        return _CompiledRule(pattern, True, re.compile(pattern))
    except re.error as exc:
        raise CrawlConfigError(f"Invalid regular expression {pattern!r}: {exc}") from exc


class InclusionExclusionFilter:
    """Allow/deny filter that tolerates runtime edits.

    Readers take a snapshot of an immutable tuple, writers replace the tuple
    under a lock, so link extraction never blocks on an operator edit.
    """

    def __init__(
        self,
        inclusion: Iterable[FilterRule] = (),
        exclusion: Iterable[FilterRule] = (),
    ) -> None:
        self._lock = threading.Lock()
        self._inclusion: tuple[_CompiledRule, ...] = tuple(
            _compile(rule.pattern, rule.is_regex) for rule in inclusion
        )
        self._exclusion: tuple[_CompiledRule, ...] = tuple(
            _compile(rule.pattern, rule.is_regex) for rule in exclusion
        )

    @classmethod
    def from_patterns(
        cls, inclusion: Iterable[str] = (), exclusion: Iterable[str] = ()
    ) -> "InclusionExclusionFilter":
        return cls(
            [FilterRule(pattern=p) for p in inclusion],
            [FilterRule(pattern=p) for p in exclusion],
        )

    def add_inclusion_rule(self, pattern: str, is_regex: bool = False) -> None:
        rule = _compile(pattern, is_regex)
        with self._lock:
            self._inclusion = self._inclusion + (rule,)

    def add_exclusion_rule(self, pattern: str, is_regex: bool = False) -> None:
        rule = _compile(pattern, is_regex)
        with self._lock:
            self._exclusion = self._exclusion + (rule,)

    def remove_inclusion_rule(self, pattern: str) -> None:
        with self._lock:
            self._inclusion = tuple(r for r in self._inclusion if r.pattern != pattern)

    def remove_exclusion_rule(self, pattern: str) -> None:
        with self._lock:
            self._exclusion = tuple(r for r in self._exclusion if r.pattern != pattern)

    def inclusion_rules(self) -> list[FilterRule]:
        return [FilterRule(pattern=r.pattern, is_regex=r.is_regex) for r in self._inclusion]

    def exclusion_rules(self) -> list[FilterRule]:
        return [FilterRule(pattern=r.pattern, is_regex=r.is_regex) for r in self._exclusion]

    def is_url_allowed(self, url: str) -> bool:
        inclusion = self._inclusion
        exclusion = self._exclusion
        if inclusion and not any(rule.matches(url) for rule in inclusion):
            return False
        return not any(rule.matches(url) for rule in exclusion)


__all__ = ["InclusionExclusionFilter"]
