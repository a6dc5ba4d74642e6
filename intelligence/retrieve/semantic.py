"""Semantic retrieval over stored report embeddings.

Vectors live in TEXT columns, so scoring is an in-memory cosine pass over
the candidate rows. That is fine at the scale of one organisation's
entities; a pgvector index can replace ``_score_rows`` later without
changing the public functions.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from intelligence.normalize.embeddings import ReportEmbedder
from intelligence.store.database import (
    EntityEmbeddingRecord,
    EntityRecord,
    ReportRecord,
    SectionEmbeddingRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.3


def _cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _score_rows(query_vec: list[float], rows: list[tuple[Any, str]], threshold: float):
    scored = []
    for row, raw in rows:
        try:
            vector = json.loads(raw)
        except (TypeError, ValueError):
            continue
        score = _cosine_similarity(query_vec, vector)
        if score >= threshold:
            scored.append((score, row))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return scored


class SemanticRetriever:
    def __init__(self, session_factory: sessionmaker, embedder: ReportEmbedder):
        self.session_factory = session_factory
        self.embedder = embedder

    async def search_entities(
        self,
        query: str,
        limit: int = 10,
        entity_type: str | None = None,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> list[dict[str, Any]]:
        """Entities whose profile embedding is closest to the query."""
        if not query.strip():
            return []
        query_vec = await self.embedder.embed_query(query)
        if not query_vec:
            return []
        return await asyncio.to_thread(
            self._search_entities, query_vec, limit, entity_type, threshold
        )

    def _search_entities(self, query_vec, limit, entity_type, threshold) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            q = session.query(EntityEmbeddingRecord, EntityRecord).join(
                EntityRecord, EntityRecord.id == EntityEmbeddingRecord.entity_id
            )
            if entity_type:
                q = q.filter(EntityRecord.entity_type == entity_type)
            rows = [((emb, entity), emb.embedding) for emb, entity in q.all()]

        results = []
        for score, (emb, entity) in _score_rows(query_vec, rows, threshold)[:limit]:
            data = entity.get_canonical_data()
            results.append({
                "entity_id": entity.id,
                "identifier": entity.identifier,
                "entity_type": entity.entity_type,
                "full_name": data.get("full_name"),
                "current_title": data.get("current_title"),
                "current_company": data.get("current_company"),
                "latest_report_id": entity.latest_report_id,
                "summary": emb.text_content,
                "similarity": round(score, 4),
            })
        return results

    async def query_report_sections(
        self,
        query: str,
        entity_id: str | None = None,
        limit: int = 5,
        threshold: float = DEFAULT_THRESHOLD,
    ) -> list[dict[str, Any]]:
        """Report passages (subsections) most relevant to the query."""
        if not query.strip():
            return []
        query_vec = await self.embedder.embed_query(query)
        if not query_vec:
            return []
        return await asyncio.to_thread(
            self._query_sections, query_vec, entity_id, limit, threshold
        )

    def _query_sections(self, query_vec, entity_id, limit, threshold) -> list[dict[str, Any]]:
        with self.session_factory() as session:
            q = session.query(SectionEmbeddingRecord)
            if entity_id:
                q = q.join(ReportRecord, ReportRecord.id == SectionEmbeddingRecord.report_id).filter(
                    ReportRecord.entity_id == entity_id
                )
            rows = [(row, row.embedding) for row in q.all()]

        return [
            {
                "report_id": row.report_id,
                "section_id": row.section_id,
                "subsection_id": row.subsection_id,
                "content": row.text_content,
                "similarity": round(score, 4),
            }
            for score, row in _score_rows(query_vec, rows, threshold)[:limit]
        ]
