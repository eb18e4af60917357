"""MongoDB storage for crawl sessions and page records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable
from urllib.parse import quote_plus

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument, UpdateOne
from pymongo.errors import ConfigurationError

from models import CrawlSession

logger = structlog.get_logger(__name__)


def build_mongo_uri(
    host: str,
    port: int,
    username: str | None,
    password: str | None,
    auth_database: str,
) -> str:
    has_user = username is not None and str(username) != ""
    has_pass = password is not None and str(password) != ""
    if has_user and has_pass:
        u = quote_plus(str(username))
        p = quote_plus(str(password))
        return f"mongodb://{u}:{p}@{host}:{port}/{auth_database}"
    return f"mongodb://{host}:{port}"


class CrawlStore:
    """Wrapper around :class:`motor.motor_asyncio.AsyncIOMotorClient`.

    Sessions live in one document per website domain; pages are upserted by
    ``(crawling_id, page_url_relative)``. All database operations log
    exceptions before re-raising so the caller can surface diagnostics.
    """

    def __init__(
        self,
        uri: str,
        database: str,
        *,
        sessions_collection: str = "crawling_sessions",
        pages_collection: str = "crawling_data",
        client: AsyncIOMotorClient | None = None,
        default_database: bool = True,
    ) -> None:
        try:
            self.client = client or AsyncIOMotorClient(uri)
            db = self.client[database]
            if default_database:
                try:
                    db = self.client.get_default_database()
                except ConfigurationError:
                    pass
        except Exception as exc:
            logger.error("mongo_client_init_failed", uri=uri, error=str(exc))
            raise
        self.db = db
        self.sessions = db[sessions_collection]
        self.pages = db[pages_collection]

    @classmethod
    def from_settings(cls, settings) -> "CrawlStore":
        """Build a store from :class:`settings.MongoSettings`."""

        uri = settings.uri or build_mongo_uri(
            settings.host,
            settings.port,
            settings.username,
            settings.password,
            settings.auth,
        )
        # a built URI names the auth database, not the data one
        return cls(
            uri,
            settings.database,
            sessions_collection=settings.sessions,
            pages_collection=settings.pages,
            default_database=bool(settings.uri),
        )

    async def ensure_indexes(self) -> None:
        try:
            await self.sessions.create_index([("crawling_id", ASCENDING)], unique=True)
            await self.sessions.create_index([("website_domain", ASCENDING)])
            await self.pages.create_index(
                [("crawling_id", ASCENDING), ("page_url_relative", ASCENDING)],
                unique=True,
            )
        except Exception as exc:
            logger.error("mongo_ensure_indexes_failed", error=str(exc))
            raise

    async def get_or_create_session(self, crawling_id: str, website_domain: str) -> CrawlSession:
        """Return the session for ``website_domain``, creating it atomically."""

        now = datetime.now(timezone.utc)
        try:
            doc = await self.sessions.find_one_and_update(
                {"crawling_id": crawling_id},
                {
                    "$setOnInsert": {
                        "crawling_id": crawling_id,
                        "website_domain": website_domain,
                        "starting_points": [],
                        "extracted_keywords": [],
                        "created_at": now,
                    },
                    "$set": {"updated_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection={"_id": False},
            )
        except Exception as exc:
            logger.error("mongo_session_upsert_failed", crawling_id=crawling_id, error=str(exc))
            raise
        return CrawlSession(**doc)

    async def update_session(self, crawling_id: str, fields: dict[str, Any]) -> None:
        payload = dict(fields)
        payload["updated_at"] = datetime.now(timezone.utc)
        try:
            await self.sessions.update_one({"crawling_id": crawling_id}, {"$set": payload})
        except Exception as exc:
            logger.error(
                "mongo_session_update_failed",
                crawling_id=crawling_id,
                fields=sorted(fields),
                error=str(exc),
            )
            raise

    async def bulk_upsert_pages(self, records: Iterable[dict[str, Any]]) -> int:
        """Upsert page records; returns the number of operations sent."""

        ops = [
            UpdateOne(
                {
                    "crawling_id": record["crawling_id"],
                    "page_url_relative": record["page_url_relative"],
                },
                {"$set": record},
                upsert=True,
            )
            for record in records
        ]
        if not ops:
            return 0
        try:
            await self.pages.bulk_write(ops, ordered=False)
        except Exception as exc:
            logger.error("mongo_bulk_upsert_failed", count=len(ops), error=str(exc))
            raise
        return len(ops)

    async def find_pages(self, crawling_id: str, *, include_broken: bool = True) -> list[dict[str, Any]]:
        query: dict[str, Any] = {"crawling_id": crawling_id}
        if not include_broken:
            query["is_broken"] = {"$ne": True}
        try:
            cursor = self.pages.find(query, {"_id": False})
            return [doc async for doc in cursor]
        except Exception as exc:
            logger.error("mongo_find_pages_failed", crawling_id=crawling_id, error=str(exc))
            raise

    async def average_scores(self, crawling_id: str) -> dict[str, float]:
        """Average every score key over the non-broken pages of a session."""

        pipeline = [
            {"$match": {"crawling_id": crawling_id, "is_broken": {"$ne": True}}},
            {"$project": {"scores": {"$objectToArray": {"$ifNull": ["$scores", {}]}}}},
            {"$unwind": "$scores"},
            {"$group": {"_id": "$scores.k", "avg": {"$avg": "$scores.v"}}},
        ]
        try:
            rows = [row async for row in self.pages.aggregate(pipeline)]
        except Exception as exc:
            logger.error("mongo_average_scores_failed", crawling_id=crawling_id, error=str(exc))
            raise
        return {row["_id"]: float(row["avg"]) for row in rows if row.get("avg") is not None}

    async def save_directory_tree(
        self,
        crawling_id: str,
        tree: dict[str, Any],
        analysis: dict[str, Any],
    ) -> None:
        await self.update_session(
            crawling_id,
            {"directory_tree": tree, "directory_tree_analysis": analysis},
        )

    def close(self) -> None:
        self.client.close()
