"""Progress and lifecycle events emitted by the orchestrator.

Events go to an :class:`EventSink`. :class:`RedisEventSink` mirrors the
progress reporter of the crawler console: every event is published as JSON to
the ``crawler:events`` channel and the latest progress snapshot is kept in the
hash ``crawler:progress:{crawling_id}``.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import redis
import structlog

logger = structlog.get_logger(__name__)

CHANNEL = "crawler:events"
KEY_TPL = "crawler:progress:{crawling_id}"

PROGRESS = "crawling.progress"
COMPLETED = "crawling.completed"
PERFORMANCE_METRICS = "crawler.performance_metrics"


class EventSink:
    """Interface for event consumers."""

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Write events to the structured log."""

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        logger.info("crawler_event", event_name=name, **payload)


def _flatten(payload: Dict[str, Any]) -> Dict[str, str]:
    """Redis hashes only store scalars."""

    out: Dict[str, str] = {}
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            out[key] = json.dumps(value, ensure_ascii=False, default=str)
        elif value is None:
            out[key] = ""
        else:
            out[key] = str(value)
    return out


class RedisEventSink(EventSink):
    """Publish events through Redis primitives. Failures are logged, never raised."""

    def __init__(self, redis_url: str) -> None:
        self.r: redis.Redis = redis.from_url(redis_url, socket_connect_timeout=1)

    def emit(self, name: str, payload: Dict[str, Any]) -> None:
        message = {"event": name, **payload}
        crawling_id = payload.get("crawling_id")
        try:
            if crawling_id and name in (PROGRESS, COMPLETED):
                self.r.hset(
                    KEY_TPL.format(crawling_id=crawling_id),
                    mapping=_flatten(message),
                )
            self.r.publish(CHANNEL, json.dumps(message, ensure_ascii=False, default=str))
        except redis.exceptions.RedisError as exc:
            logger.warning("redis_event_failed", event_name=name, error=str(exc))

    def get_progress(self, crawling_id: str) -> Dict[str, str]:
        """Return the last stored progress snapshot for ``crawling_id``."""

        try:
            raw = self.r.hgetall(KEY_TPL.format(crawling_id=crawling_id))
        except redis.exceptions.RedisError as exc:
            logger.warning("redis_progress_read_failed", crawling_id=crawling_id, error=str(exc))
            return {}
        return {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in raw.items()
        }
