"""Dossier compiler: identity-anchored web research for the web agent.

1. Build a battery of search queries anchored on the subject's name and
   affiliation, covering every report section.
2. Execute them in small concurrent batches (Jina Search, full page text).
   A query that yields nothing falls back to SerpAPI candidate URLs read
   through Jina Reader.
3. Deduplicate by URL, drop thin pages, add the subject's own profile page.
4. ``format_dossier`` renders the result as a bounded prompt block.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

from intelligence.clients.jina import JinaClient
from intelligence.clients.serpapi import SerpAPIClient
from intelligence.config import settings
from intelligence.models import Dossier, DossierSource, Identity

logger = logging.getLogger(__name__)

FALLBACK_URL_LIMIT = 5
PROFILE_MIN_CHARS = 200
SOURCE_TRUNCATED_MARKER = "\n[... content truncated ...]"

_RULE = "=" * 63
_THIN_RULE = "-" * 40


def build_search_queries(identity: Identity) -> list[str]:
    """Return the query battery for a subject.

    Any query built around an empty quoted field is dropped.
    """
    name = identity.name
    company = identity.affiliation
    title = identity.title
    location = identity.location

    queries = [
        # Core identity
        f'"{name}" "{company}"',
        f'"{name}" "{company}" {title}',
        # Professional background
        f'"{name}" career background experience {company}',
        f'"{name}" education university degree',
        # Investment activity
        f'"{name}" investment fund portfolio {company}',
        f'"{name}" deal acquisition merger {company}',
        f'"{name}" AUM assets under management',
        # Network
        f'"{name}" board director advisory {company}',
        f'"{name}" conference speaker panel',
        # Public presence
        f'"{name}" interview podcast article {company}',
        f'"{name}" news press release {company}',
        f'"{name}" thought leadership publication',
        # Risk and regulatory
        f'"{name}" SEC FINRA regulatory filing',
        f'"{name}" litigation lawsuit court',
    ]
    if location:
        queries.append(f'"{name}" "{company}" {location}')
    if company:
        queries.append(f"{company} company funding valuation")
        queries.append(f'site:crunchbase.com "{name}" OR "{company}"')
    if identity.external_profile_url:
        queries.append(f'site:linkedin.com "{name}" {company}')

    cleaned = [re.sub(r"\s+", " ", q).strip() for q in queries]
    return [q for q in cleaned if '""' not in q]


def _title_from_url(url: str) -> str:
    tail = url.rstrip("/").rsplit("/", 1)[-1]
    return tail.replace("-", " ") or url


class DossierCompiler:
    """Runs the query battery against the search backends."""

    def __init__(
        self,
        search: JinaClient | None = None,
        fallback: SerpAPIClient | None = None,
        reader: JinaClient | None = None,
        batch_size: int | None = None,
        batch_delay: float | None = None,
        min_source_chars: int | None = None,
    ):
        self.search = search or JinaClient()
        self.fallback = fallback or SerpAPIClient()
        self.reader = reader or self.search
        self.batch_size = batch_size or settings.dossier_batch_size
        self.batch_delay = settings.dossier_batch_delay_seconds if batch_delay is None else batch_delay
        self.min_source_chars = (
            settings.dossier_min_source_chars if min_source_chars is None else min_source_chars
        )

    async def _fallback_search(self, query: str) -> list[dict[str, Any]]:
        urls = await self.fallback.candidate_urls(query, limit=FALLBACK_URL_LIMIT)
        if not urls:
            return []
        contents = await asyncio.gather(*(self.reader.read(url) for url in urls))
        return [
            {"title": _title_from_url(url), "url": url, "content": content}
            for url, content in zip(urls, contents)
            if content
        ]

    async def _run_query(self, query: str) -> list[dict[str, Any]]:
        """One query through the primary then secondary path. Never raises."""
        try:
            results = [r for r in await self.search.search(query) if r.get("url")]
            if not results:
                results = await self._fallback_search(query)
            return results
        except Exception:
            logger.warning("Dossier query failed: %s", query, exc_info=True)
            return []

    async def compile(self, identity: Identity) -> Dossier:
        started = time.monotonic()
        queries = build_search_queries(identity)
        logger.info("Compiling dossier for %s (%d queries)", identity.name, len(queries))

        sources: dict[str, DossierSource] = {}
        for i in range(0, len(queries), self.batch_size):
            batch = queries[i:i + self.batch_size]
            batch_results = await asyncio.gather(*(self._run_query(q) for q in batch))
            for results in batch_results:
                for item in results:
                    url = item.get("url") or ""
                    content = item.get("content") or ""
                    if url in sources or len(content) <= self.min_source_chars:
                        continue
                    sources[url] = DossierSource(
                        title=item.get("title") or "", url=url, content=content
                    )
            if i + self.batch_size < len(queries) and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

        profile_url = identity.external_profile_url
        if profile_url and profile_url not in sources:
            try:
                content = await self.reader.read(profile_url)
            except Exception:
                logger.warning("Profile read failed for %s", profile_url, exc_info=True)
                content = ""
            if len(content) > PROFILE_MIN_CHARS:
                sources[profile_url] = DossierSource(
                    title=f"Profile - {identity.name}", url=profile_url, content=content
                )

        source_list = list(sources.values())
        dossier = Dossier(
            subject=identity,
            search_queries=queries,
            sources=source_list,
            total_content_length=sum(len(s.content) for s in source_list),
            search_time_seconds=round(time.monotonic() - started, 2),
        )
        logger.info(
            "Dossier for %s: %d sources, %d chars in %.1fs",
            identity.name, len(source_list), dossier.total_content_length,
            dossier.search_time_seconds,
        )
        return dossier


def format_dossier(
    dossier: Dossier,
    max_chars: int | None = None,
    source_max_chars: int | None = None,
) -> str:
    """Render a dossier as a prompt block bounded by ``max_chars``.

    Each source is capped at ``source_max_chars`` so a few long pages cannot
    crowd out the rest. Sources that no longer fit are counted in a trailing
    marker instead of being cut mid-block.
    """
    max_chars = max_chars or settings.dossier_max_chars
    source_max_chars = source_max_chars or settings.dossier_source_max_chars
    subject = dossier.subject

    output = (
        f"WEB RESEARCH DOSSIER FOR: {subject.name}\n"
        f"Company: {subject.affiliation}\n"
        f"Title: {subject.title}\n"
        f"Location: {subject.location}\n"
        f"Profile: {subject.external_profile_url}\n"
        f"Sources Found: {len(dossier.sources)}\n"
        f"Search Queries Used: {len(dossier.search_queries)}\n"
        f"\n{_RULE}\nSOURCE MATERIALS ({len(dossier.sources)} sources)\n{_RULE}\n\n"
    )

    for i, source in enumerate(dossier.sources):
        content = source.content
        if len(content) > source_max_chars:
            content = content[:source_max_chars] + SOURCE_TRUNCATED_MARKER
        block = (
            f"\n{_THIN_RULE}\nSOURCE {i + 1}: {source.title}\nURL: {source.url}\n"
            f"{_THIN_RULE}\n{content}\n\n"
        )
        if len(output) + len(block) > max_chars:
            remaining = len(dossier.sources) - i
            output += f"\n[... {remaining} additional sources truncated for token limit ...]"
            break
        output += block

    return output
