"""Generate and store embeddings for a finished report.

Three granularities feed semantic retrieval:
- one profile vector per entity (replaced on each report),
- one vector per subsection,
- one vector per citation.
"""

from __future__ import annotations

import asyncio
import json
import logging

from sqlalchemy.orm import sessionmaker

from intelligence.clients.openai_client import EmbeddingClient
from intelligence.models import Report
from intelligence.store.database import (
    CitationEmbeddingRecord,
    EntityEmbeddingRecord,
    SectionEmbeddingRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

TEXT_CONTENT_MAX_CHARS = 2000


def entity_text(report: Report) -> str:
    parts = [
        report.subject.full_name,
        report.subject.current_title,
        report.subject.current_company,
        report.abstract.summary,
        ". ".join(report.abstract.key_findings),
    ]
    return ". ".join(p for p in parts if p)


def section_texts(report: Report) -> list[tuple[str, str, str]]:
    """``(section_id, subsection_id, text)`` for every subsection."""
    return [
        (section.section_id, sub.subsection_id, f"{section.title}: {sub.title}. {sub.content}")
        for section, sub in report.iter_subsections()
    ]


def citation_texts(report: Report) -> list[tuple[int, str]]:
    return [
        (citation.id, f"{citation.text} - {citation.source_title}")
        for _, sub in report.iter_subsections()
        for citation in sub.citations
    ]


class ReportEmbedder:
    def __init__(self, session_factory: sessionmaker, client: EmbeddingClient | None = None):
        self.session_factory = session_factory
        self.client = client or EmbeddingClient()

    @property
    def model(self) -> str:
        return getattr(self.client, "model", "")

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.client.embed([text])
        return vectors[0] if vectors else []

    async def embed_report(self, entity_id: str, report_id: str, report: Report) -> dict[str, int]:
        """Embed and persist all vectors for a report. Returns counts per granularity."""
        profile = entity_text(report)
        sections = section_texts(report)
        citations = citation_texts(report)

        texts = [profile] + [t for _, _, t in sections] + [t for _, t in citations]
        vectors = await self.client.embed(texts)
        if len(vectors) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(vectors)}")

        profile_vec = vectors[0]
        section_vecs = vectors[1:1 + len(sections)]
        citation_vecs = vectors[1 + len(sections):]

        await asyncio.to_thread(
            self._store, entity_id, report_id, profile, profile_vec,
            list(zip(sections, section_vecs)), list(zip(citations, citation_vecs)),
        )
        counts = {"entity": 1, "sections": len(sections), "citations": len(citations)}
        logger.info("Embeddings stored for report %s: %s", report_id, counts)
        return counts

    def _store(self, entity_id, report_id, profile, profile_vec, section_rows, citation_rows) -> None:
        model = self.model
        with self.session_factory() as session:
            existing = session.query(EntityEmbeddingRecord).filter_by(entity_id=entity_id).one_or_none()
            if existing is None:
                existing = EntityEmbeddingRecord(entity_id=entity_id)
                session.add(existing)
            existing.embedding = json.dumps(profile_vec)
            existing.text_content = profile[:TEXT_CONTENT_MAX_CHARS]
            existing.model = model
            existing.updated_at = utcnow()

            for (section_id, subsection_id, text), vector in section_rows:
                session.add(SectionEmbeddingRecord(
                    report_id=report_id,
                    section_id=section_id,
                    subsection_id=subsection_id,
                    embedding=json.dumps(vector),
                    text_content=text[:TEXT_CONTENT_MAX_CHARS],
                    model=model,
                ))
            for (citation_id, text), vector in citation_rows:
                session.add(CitationEmbeddingRecord(
                    report_id=report_id,
                    citation_id=citation_id,
                    embedding=json.dumps(vector),
                    text_content=text[:TEXT_CONTENT_MAX_CHARS],
                    model=model,
                ))
            session.commit()
