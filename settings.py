"""Application settings models."""

from __future__ import annotations

from functools import lru_cache
from pydantic import AnyUrl, ConfigDict, Field
from pydantic_settings import BaseSettings


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class MongoSettings(BaseSettings):
    """Settings for MongoDB connection.

    Environment variables follow the ``MONGO_`` prefix. For example,
    ``MONGO_HOST`` and ``MONGO_PORT`` configure the connection host and port.
    ``MONGO_SESSIONS`` and ``MONGO_PAGES`` name the crawl collections.
    """

    host: str = "localhost"
    port: int = 27017
    username: str | None = None
    password: str | None = None
    database: str = "crawlerdb"
    auth: str = "admin"
    uri: str | None = None

    sessions: str = "crawling_sessions"
    pages: str = "crawling_data"

    model_config = ConfigDict(extra="ignore", env_prefix="MONGO_")


class CelerySettings(BaseSettings):
    """Celery broker and result backend configuration."""

    broker: str = Field(default="redis://localhost:6379", alias="CELERY_BROKER")
    result: str = Field(default="redis://localhost:6379", alias="CELERY_RESULT")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RateLimitSettings(BaseSettings):
    """Token bucket parameters, ``RATE_LIMITER_`` prefix."""

    bucket_capacity: int = 60
    refill_rate: float = 1.0
    enabled: bool = True

    model_config = ConfigDict(extra="ignore", env_prefix="RATE_LIMITER_")


class CrawlerSettings(BaseSettings):
    """Crawler defaults. Every field maps to a ``CRAWLER_*`` variable.

    List-valued options (inclusion/exclusion rules, starting points, directory
    tree filters) are plain comma separated strings; use the ``*_list``
    helpers to read them.
    """

    default_url_limit: int = 1000
    default_depth_limit: int = 5
    user_agent: str = "SiteCrawler/1.0 (+https://example.com/bot)"
    respect_robots_txt: bool = True
    request_timeout: float = 30.0
    log_level: str = "INFO"

    follow_internal_links: bool = True
    follow_external_links: bool = False
    follow_subfolder_links: bool = True

    inclusion_rules: str = ""
    exclusion_rules: str = ""
    specific_url_list: str = ""
    custom_starting_points: str = ""

    sitemap_enabled: bool = True
    sitemap_max_urls: int = 50000
    sitemap_timeout: float = 30.0
    extract_sitemaps_from_html: bool = True

    max_threads: int = 4
    concurrency_limit: int = 10
    async_batch_size: int = 5
    worker_reply_timeout: float = 120.0
    write_batch_size: int = 50
    enforce_depth_limit: bool = False

    near_duplicate_threshold: float = 0.9
    max_keywords: int = 20

    directory_tree_max_depth: int = 5
    directory_tree_allowed_extensions: str = "html,htm,php,asp,aspx"
    directory_tree_exclude_patterns: str = "private,admin,backup"

    model_config = ConfigDict(extra="ignore", env_prefix="CRAWLER_")

    def inclusion_rule_list(self) -> list[str]:
        return _split_csv(self.inclusion_rules)

    def exclusion_rule_list(self) -> list[str]:
        return _split_csv(self.exclusion_rules)

    def specific_url_list_items(self) -> list[str]:
        return _split_csv(self.specific_url_list)

    def custom_starting_point_list(self) -> list[str]:
        return _split_csv(self.custom_starting_points)

    def directory_tree_extension_list(self) -> list[str]:
        return [ext.lower().lstrip(".") for ext in _split_csv(self.directory_tree_allowed_extensions)]

    def directory_tree_exclude_list(self) -> list[str]:
        return _split_csv(self.directory_tree_exclude_patterns)


class Settings(BaseSettings):
    """Top level settings loaded from ``.env``.

    Nested models use environment prefixes such as ``CRAWLER_``, ``MONGO_``
    and ``RATE_LIMITER_``. The :class:`pydantic_settings.BaseSettings` machinery
    reads these variables when the settings object is created.
    """

    redis_url: AnyUrl | str = "redis://localhost:6379/0"

    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    celery: CelerySettings = Field(default_factory=CelerySettings)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        # Use double underscore to avoid collisions with top-level names
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached application settings."""

    return Settings()
