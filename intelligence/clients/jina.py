"""Jina Search / Reader client.

Search (``s.jina.ai``) returns full page content for each hit rather than a
snippet, which is what the dossier needs. Reader (``r.jina.ai``) fetches a
single URL as plain text and is used for the fallback path and the
subject's own profile page.

API docs: https://jina.ai/reader
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from intelligence.config import settings

logger = logging.getLogger(__name__)

JINA_SEARCH_URL = "https://s.jina.ai/"
JINA_READER_URL = "https://r.jina.ai/"

SEARCH_TIMEOUT = 60
READ_TIMEOUT = 30
MAX_READ_CHARS = 15_000


class JinaClient:
    """Async client for Jina Search and Jina Reader."""

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else settings.jina_api_key
        if not self.api_key:
            logger.warning("Jina API key not configured – search will use the fallback path")

    @property
    def search_enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"Accept": accept}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def search(self, query: str) -> list[dict[str, Any]]:
        """Run a web search. Returns ``[{title, url, content}]`` (empty on any failure)."""
        if not self.api_key:
            return []

        headers = self._headers("application/json")
        headers["X-Return-Format"] = "json"
        try:
            async with httpx.AsyncClient(timeout=SEARCH_TIMEOUT) as client:
                resp = await client.get(JINA_SEARCH_URL + quote(query, safe=""), headers=headers)
                if resp.status_code in (401, 403):
                    logger.warning("Jina auth failed – check API key")
                    return []
                if resp.status_code == 429:
                    logger.warning("Jina rate limited")
                    return []
                if resp.status_code != 200:
                    logger.warning("Jina search error %d for: %s", resp.status_code, query)
                    return []
                data = resp.json()
        except Exception:
            logger.warning("Jina search failed for: %s", query, exc_info=True)
            return []

        results: list[dict[str, Any]] = []
        for item in data.get("data") or []:
            if not isinstance(item, dict):
                continue
            results.append({
                "title": item.get("title") or "",
                "url": item.get("url") or "",
                "content": item.get("content") or item.get("description") or "",
            })
        return results

    async def read(self, url: str) -> str:
        """Fetch a page as plain text, truncated to ``MAX_READ_CHARS``. Empty on failure."""
        if not url:
            return ""
        try:
            async with httpx.AsyncClient(timeout=READ_TIMEOUT) as client:
                resp = await client.get(JINA_READER_URL + url, headers=self._headers("text/plain"))
                if resp.status_code != 200:
                    logger.debug("Jina read %d for %s", resp.status_code, url)
                    return ""
                return resp.text[:MAX_READ_CHARS]
        except Exception:
            logger.debug("Jina read failed for %s", url, exc_info=True)
            return ""
