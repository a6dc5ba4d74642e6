"""Redis-backed read cache for entity status and reports.

The cache is strictly best-effort: every Redis error is logged and treated
as a miss, so an unavailable Redis slows reads down but never fails them.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import redis.asyncio as redis

from intelligence.config import settings

logger = logging.getLogger(__name__)

# Characters encodeURIComponent leaves untouched, so keys match other writers.
_URI_SAFE = "-_.!~*'()"


def entity_status_key(identifier: str) -> str:
    return f"entity_status:{quote(identifier, safe=_URI_SAFE)}"


def report_key(report_id: str) -> str:
    return f"report:{report_id}"


class CacheService:
    """Thin JSON get/set/delete layer over ``redis.asyncio``."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        redis_url: str | None = None,
        entity_status_ttl: int | None = None,
        report_ttl: int | None = None,
    ):
        self.client = client or redis.from_url(
            redis_url or settings.redis_url, decode_responses=True
        )
        self.entity_status_ttl = entity_status_ttl or settings.entity_status_ttl_seconds
        self.report_ttl = report_ttl or settings.report_ttl_seconds

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except Exception as exc:
            logger.warning("Cache close failed: %s", exc)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def _get_json(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(key)
        except Exception as exc:
            logger.warning("Cache get failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    async def _set_json(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl)
        except Exception as exc:
            logger.warning("Cache set failed for %s: %s", key, exc)

    async def _delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except Exception as exc:
            logger.warning("Cache invalidation failed for %s: %s", key, exc)

    # ------------------------------------------------------------------
    # Entity status
    # ------------------------------------------------------------------

    async def get_entity_status(self, identifier: str) -> dict[str, Any] | None:
        return await self._get_json(entity_status_key(identifier))

    async def set_entity_status(self, identifier: str, status: dict[str, Any]) -> None:
        await self._set_json(entity_status_key(identifier), status, self.entity_status_ttl)

    async def invalidate_entity(self, identifier: str) -> None:
        await self._delete(entity_status_key(identifier))

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def get_report(self, report_id: str) -> dict[str, Any] | None:
        return await self._get_json(report_key(report_id))

    async def set_report(self, report_id: str, report: dict[str, Any]) -> None:
        await self._set_json(report_key(report_id), report, self.report_ttl)

    async def invalidate_report(self, report_id: str) -> None:
        await self._delete(report_key(report_id))
