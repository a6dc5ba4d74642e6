"""SerpAPI web search client.

Used as the dossier's secondary search path: when Jina Search returns
nothing for a query, SerpAPI's organic results supply candidate URLs that
are then read with Jina Reader.

API docs: https://serpapi.com/search-api
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from intelligence.config import settings

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search"


def _normalize_result(result: dict[str, Any]) -> dict[str, Any]:
    """Extract the fields we use from a SerpAPI organic result."""
    return {
        "title": result.get("title", ""),
        "link": result.get("link", ""),
        "snippet": result.get("snippet", ""),
        "source": result.get("source", ""),
        "date": result.get("date", ""),
    }


class SerpAPIClient:
    """Async client for SerpAPI organic search."""

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key if api_key is not None else settings.serpapi_api_key
        if not self.api_key:
            logger.warning("SerpAPI key not configured – fallback search disabled")

    async def search(
        self,
        query: str,
        num: int = 10,
        engine: str = "google",
    ) -> list[dict[str, Any]]:
        """Run a web search. Returns a list of normalized organic results."""
        if not self.api_key:
            return []

        params = {
            "q": query,
            "api_key": self.api_key,
            "engine": engine,
            "num": num,
        }

        try:
            async with httpx.AsyncClient(timeout=20) as client:
                resp = await client.get(SERPAPI_URL, params=params)
                if resp.status_code == 403:
                    logger.warning("SerpAPI auth failed – check API key")
                    return []
                if resp.status_code == 429:
                    logger.warning("SerpAPI rate limited")
                    return []
                if resp.status_code != 200:
                    logger.warning(
                        "SerpAPI error %d: %s", resp.status_code, resp.text[:200]
                    )
                    return []
                data = resp.json()
                return [_normalize_result(r) for r in data.get("organic_results", [])]
        except Exception:
            logger.exception("SerpAPI search failed for: %s", query)
            return []

    async def candidate_urls(self, query: str, limit: int = 5) -> list[str]:
        """Distinct result links for a query, in rank order."""
        urls: list[str] = []
        for result in await self.search(query, num=max(limit, 10)):
            link = result.get("link") or ""
            if link.startswith("http") and link not in urls:
                urls.append(link)
            if len(urls) >= limit:
                break
        return urls
