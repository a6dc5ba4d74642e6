"""Service facade: the operations the HTTP surface and CLI call.

``IntelligenceContext`` owns every collaborator (sessions, cache, queue,
stores, agents, reconciler, embedder, worker pool). It is built once at
startup and passed in explicitly, so tests can assemble one from fakes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from intelligence.config import settings
from intelligence.errors import AccessDeniedError
from intelligence.jobs.queue import ReportQueue
from intelligence.jobs.worker import ReportWorker, WorkerPool
from intelligence.models import ChangeSource, EntityStatus, Identity, JobStatusView
from intelligence.normalize.embeddings import ReportEmbedder
from intelligence.normalize.identifiers import (
    infer_entity_type,
    is_profile_url,
    normalize_identifier,
    subject_identifier,
)
from intelligence.research.agents import ResearchAgent, default_agents
from intelligence.research.reconciliation import Reconciler
from intelligence.retrieve.semantic import SemanticRetriever
from intelligence.services.cache_service import CacheService
from intelligence.store.database import Base, get_engine, get_session_factory
from intelligence.store.entity_store import EntityStore
from intelligence.store.report_store import ReportStore, report_payload

logger = logging.getLogger(__name__)


class IntelligenceContext:
    def __init__(
        self,
        database_url: str | None = None,
        session_factory: sessionmaker | None = None,
        cache: CacheService | None = None,
        agents: list[ResearchAgent] | None = None,
        reconciler: Reconciler | None = None,
        embedder: ReportEmbedder | None = None,
        reports_base_url: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ):
        self.database_url = database_url or settings.effective_database_url
        self.session_factory = session_factory or get_session_factory(self.database_url)
        self.cache = cache or CacheService()
        self.entity_store = EntityStore(self.session_factory)
        self.report_store = ReportStore(self.session_factory)
        self.queue = ReportQueue(self.session_factory)
        self.embedder = embedder or ReportEmbedder(self.session_factory)
        self.retriever = SemanticRetriever(self.session_factory, self.embedder)
        self.worker = ReportWorker(
            queue=self.queue,
            entity_store=self.entity_store,
            report_store=self.report_store,
            agents=agents if agents is not None else default_agents(),
            reconciler=reconciler or Reconciler(),
            embedder=self.embedder,
            cache=self.cache,
            reports_base_url=reports_base_url,
        )
        self.pool = WorkerPool(
            self.worker, self.queue, concurrency=concurrency, poll_interval=poll_interval
        )

    def start(self) -> None:
        """Create tables if needed."""
        Base.metadata.create_all(get_engine(self.database_url))
        logger.info("Intelligence context ready")

    async def close(self) -> None:
        self.pool.stop()
        await self.cache.close()


class IntelligenceService:
    def __init__(self, ctx: IntelligenceContext):
        self.ctx = ctx

    # ------------------------------------------------------------------
    # Observation / entity status
    # ------------------------------------------------------------------

    async def record_observation(
        self,
        identifier: str,
        kind: str | None,
        facts: dict[str, Any] | None,
        org_id: str = "",
    ) -> str:
        """Passive scrape: upsert the entity and drop its cached status. Returns entity id."""
        entity = await asyncio.to_thread(
            self.ctx.entity_store.upsert_from_observation,
            identifier, kind or infer_entity_type(identifier), facts, org_id,
        )
        await self.ctx.cache.invalidate_entity(entity.identifier)
        return entity.id

    async def record_manual_edit(
        self,
        entity_id: str,
        facts: dict[str, Any],
        source: ChangeSource = ChangeSource.manual,
    ) -> str:
        entity = await asyncio.to_thread(
            self.ctx.entity_store.record_manual_edit, entity_id, facts, source
        )
        await self.ctx.cache.invalidate_entity(entity.identifier)
        return entity.id

    async def get_entity_status(self, identifier: str) -> EntityStatus:
        key = normalize_identifier(identifier)
        cached = await self.ctx.cache.get_entity_status(key)
        if cached is not None:
            return EntityStatus.model_validate(cached)
        status = await asyncio.to_thread(self.ctx.entity_store.get_status, key)
        await self.ctx.cache.set_entity_status(key, status.model_dump(mode="json"))
        return status

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def enqueue_generation(
        self,
        identity: Identity,
        entity_id: str | None = None,
        org_id: str = "",
        user_id: str = "",
        kind: str | None = None,
        facts: dict[str, Any] | None = None,
    ) -> str:
        """Queue a report for a subject, creating its entity on first request."""
        identifier = subject_identifier(
            identity.name, identity.affiliation, identity.external_profile_url
        )
        if entity_id is None:
            entity = await asyncio.to_thread(self.ctx.entity_store.find_by_identifier, identifier)
            if entity is None:
                initial = dict(facts or {})
                initial.setdefault("full_name", identity.name)
                if identity.affiliation:
                    initial.setdefault("current_company", identity.affiliation)
                if identity.title:
                    initial.setdefault("current_title", identity.title)
                if identity.location:
                    initial.setdefault("location", identity.location)
                entity = await asyncio.to_thread(
                    self.ctx.entity_store.upsert_from_observation,
                    identifier, kind or infer_entity_type(identifier), initial, org_id,
                )
                await self.ctx.cache.invalidate_entity(entity.identifier)
            entity_id = entity.id

        return await asyncio.to_thread(
            self.ctx.queue.enqueue, identity, entity_id, org_id, user_id, identifier, facts,
        )

    async def enqueue_refresh(self, report_id: str, org_id: str = "", user_id: str = "") -> str:
        """Queue a new version of an existing report from the entity's canonical data."""
        record = await asyncio.to_thread(self.ctx.report_store.get, report_id)
        if org_id and record.generated_by_org != org_id:
            raise AccessDeniedError(f"Report {report_id} belongs to another organisation")
        entity = await asyncio.to_thread(self.ctx.entity_store.get, record.entity_id)
        canonical = entity.get_canonical_data()
        profile_url = entity.identifier if is_profile_url(entity.identifier) else ""
        identity = Identity.from_facts(canonical, profile_url=profile_url)

        job_id = await asyncio.to_thread(
            self.ctx.queue.enqueue, identity, entity.id, org_id, user_id, entity.identifier, canonical,
        )
        await self.ctx.cache.invalidate_report(report_id)
        await self.ctx.cache.invalidate_entity(entity.identifier)
        logger.info("Refresh of report %s queued as job %s", report_id, job_id)
        return job_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> JobStatusView:
        return await asyncio.to_thread(self.ctx.queue.status_view, job_id)

    async def get_report(self, report_id: str, org_id: str | None = None) -> dict[str, Any]:
        payload = await self.ctx.cache.get_report(report_id)
        if payload is None:
            record = await asyncio.to_thread(self.ctx.report_store.get, report_id)
            payload = report_payload(record)
            await self.ctx.cache.set_report(report_id, payload)
        if org_id and payload.get("org_id") != org_id:
            raise AccessDeniedError(f"Report {report_id} belongs to another organisation")
        return payload

    async def search_entities(
        self,
        query: str,
        limit: int = 10,
        entity_type: str | None = None,
    ) -> list[dict[str, Any]]:
        return await self.ctx.retriever.search_entities(query, limit=limit, entity_type=entity_type)

    async def query_report_sections(
        self,
        query: str,
        entity_id: str | None = None,
        limit: int = 5,
    ) -> list[dict[str, Any]]:
        return await self.ctx.retriever.query_report_sections(query, entity_id=entity_id, limit=limit)
