"""Pydantic models shared by the crawl engine, the worker units and storage."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def crawling_id_for(domain: str) -> str:
    """Return the deterministic crawl identifier for ``domain``."""

    return "crawl_" + re.sub(r"[^a-zA-Z0-9]", "_", domain)


class TaskType(str, Enum):
    """Message types understood by worker units."""

    crawl_and_extract = "crawl_and_extract"
    directory_tree = "directory_tree"


class CrawlState(str, Enum):
    """Lifecycle of a single crawl run."""

    seeding = "seeding"
    draining = "draining"
    finalizing = "finalizing"
    done = "done"


class CrawlOptions(BaseModel):
    """Per-crawl overrides. ``None`` means "use the configured default"."""

    url_limit: int | None = None
    depth_limit: int | None = None
    follow_internal_links: bool | None = None
    follow_external_links: bool | None = None
    follow_subfolder_links: bool | None = None
    specific_url_list: list[str] = Field(default_factory=list)
    use_directory_tree_crawling: bool = False
    directory_tree_root_path: str | None = None
    custom_starting_points: list[str] = Field(default_factory=list)
    sitemap_enabled: bool | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "url_limit": 200,
                "depth_limit": 3,
                "follow_external_links": False,
                "sitemap_enabled": True,
            }
        },
    )


class FilterRule(BaseModel):
    """Inclusion or exclusion pattern."""

    pattern: str
    is_regex: bool = False


class CrawlConfig(BaseModel):
    """Resolved configuration carried by every task message."""

    url_limit: int
    depth_limit: int
    user_agent: str
    respect_robots_txt: bool = True
    request_timeout: float = 30.0
    follow_internal_links: bool = True
    follow_external_links: bool = False
    follow_subfolder_links: bool = True
    sitemap_enabled: bool = True
    max_keywords: int = 20
    inclusion_rules: list[FilterRule] = Field(default_factory=list)
    exclusion_rules: list[FilterRule] = Field(default_factory=list)
    directory_tree_max_depth: int = 5
    directory_tree_allowed_extensions: list[str] = Field(default_factory=list)
    directory_tree_exclude_patterns: list[str] = Field(default_factory=list)


class FrontierEntry(BaseModel):
    """Pending URL in the in-memory frontier.

    ``url`` is fetched as discovered; ``key`` is its normalized form used for
    deduplication.
    """

    url: str
    key: str
    depth: int = 0
    priority: int = 0


class CrawlTask(BaseModel):
    """Unit of work handed to a worker unit."""

    type: TaskType = TaskType.crawl_and_extract
    crawling_id: str
    url: str
    depth: int = 0
    crawl_config: CrawlConfig


class DirectoryTreeTask(BaseModel):
    """Walk a filesystem path instead of fetching a URL."""

    type: TaskType = TaskType.directory_tree
    crawling_id: str
    root_path: str
    crawl_config: CrawlConfig


class CrawlResult(BaseModel):
    """Structured reply for a ``crawl_and_extract`` task.

    Either ``page_data`` is set (success) or ``is_broken`` is true and
    ``error``/``status_code`` describe the failure.
    """

    crawling_id: str | None = None
    url: str | None = None
    depth: int = 0
    page_data: dict[str, Any] | None = None
    new_urls: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    is_broken: bool = False
    status_code: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.is_broken and self.page_data is not None


class CanonicalInconsistency(BaseModel):
    canonical_url: str
    conflicting_urls: list[str]


class CanonicalConsistencyAnalysis(BaseModel):
    """Outcome of grouping pages by declared canonical URL."""

    is_consistent: bool = True
    inconsistencies: list[CanonicalInconsistency] = Field(default_factory=list)


class DuplicateEntry(BaseModel):
    url: str
    duplicate_urls: list[str]


class NearDuplicateEntry(BaseModel):
    url: str
    near_duplicate_urls: list[str]


class CrawlSession(BaseModel):
    """Persistent state of a crawl, one document per website domain."""

    crawling_id: str
    website_domain: str
    starting_points: list[str] = Field(default_factory=list)
    extracted_keywords: list[str] = Field(default_factory=list)
    canonical_consistency_analysis: CanonicalConsistencyAnalysis | None = None
    duplicate_content: list[DuplicateEntry] = Field(default_factory=list)
    near_duplicate_content: list[NearDuplicateEntry] = Field(default_factory=list)
    directory_tree: dict[str, Any] | None = None
    directory_tree_analysis: dict[str, Any] | None = None

    model_config = ConfigDict(extra="ignore")


class CrawlSummary(BaseModel):
    """Value returned by :func:`crawler.orchestrator.crawl_website`."""

    crawling_id: str
    average_scores: dict[str, float] = Field(default_factory=dict)
    canonical_consistency_analysis: CanonicalConsistencyAnalysis = Field(
        default_factory=CanonicalConsistencyAnalysis
    )
    pages_crawled: int = 0
    broken_pages: int = 0
    directory_tree_analysis: dict[str, Any] | None = None
