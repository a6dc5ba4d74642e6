"""Report worker: claimed job → research council → stored, versioned report.

This is the orchestrator that wires the research agents, reconciliation,
storage, embeddings, the entity store and the cache together for one job.
``WorkerPool`` runs a bounded number of these concurrently off the queue.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from typing import Any

from intelligence.config import settings
from intelligence.errors import LeaseLostError, ResearchFailedError, short_message
from intelligence.jobs.queue import REPORT_STEPS, ReportQueue
from intelligence.models import AgentSuccess, Identity, JobStatus
from intelligence.normalize.embeddings import ReportEmbedder
from intelligence.research.agents import ResearchAgent, run_agents, successes
from intelligence.research.reconciliation import Reconciler
from intelligence.services.cache_service import CacheService
from intelligence.store.database import ReportJobRecord, utcnow
from intelligence.store.entity_store import EntityStore
from intelligence.store.report_store import ReportStore

logger = logging.getLogger(__name__)

# Steps 2-4 are labelled per agent, in agent order.
AGENT_STEP_OFFSET = 2


def enrich_identity(
    identity: Identity,
    canonical: dict[str, Any],
    entity_type: str | None = None,
) -> Identity:
    """Overlay known canonical facts onto the identity from the job payload."""
    facts: dict[str, Any] = {
        "full_name": identity.name,
        "current_company": identity.affiliation,
        "current_title": identity.title,
        "location": identity.location,
    }
    facts.update({k: v for k, v in canonical.items() if v})
    enriched = Identity.from_facts(facts, profile_url=identity.external_profile_url)
    enriched.entity_type = entity_type or identity.entity_type
    return enriched


def report_url_for(report_id: str, base_url: str | None = None) -> str:
    base = (base_url or settings.reports_base_url).rstrip("/")
    return f"{base}/r/{report_id}"


class ReportWorker:
    def __init__(
        self,
        queue: ReportQueue,
        entity_store: EntityStore,
        report_store: ReportStore,
        agents: list[ResearchAgent],
        reconciler: Reconciler,
        embedder: ReportEmbedder,
        cache: CacheService,
        reports_base_url: str | None = None,
    ):
        self.queue = queue
        self.entity_store = entity_store
        self.report_store = report_store
        self.agents = agents
        self.reconciler = reconciler
        self.embedder = embedder
        self.cache = cache
        self.reports_base_url = reports_base_url or settings.reports_base_url

    async def _step(self, job_id: str, worker_id: str, index: int, **fields: Any) -> None:
        owned = await asyncio.to_thread(
            self.queue.update_progress, job_id, worker_id, index, **fields
        )
        if not owned:
            raise LeaseLostError(f"Worker {worker_id} lost the lease on job {job_id}")

    async def run(self, job: ReportJobRecord, worker_id: str) -> JobStatus | None:
        """Process one claimed job to a terminal state. Never raises.

        Returns None when the lease was lost mid-run: the job then belongs to
        another worker and is left untouched.
        """
        job_id = job.id
        started = time.monotonic()
        payload = job.get_payload()
        logger.info("Report worker %s started job %s (entity %s)", worker_id, job_id, job.entity_id)

        try:
            # ── Step 0: Starting ──
            await self._step(job_id, worker_id, 0, started_at=utcnow())

            entity = await asyncio.to_thread(self.entity_store.get, job.entity_id)
            canonical = entity.get_canonical_data()
            identity = enrich_identity(
                Identity(**payload.get("identity", {})), canonical, entity.entity_type
            )
            subject_data = {**(payload.get("facts") or {}), **canonical}

            # ── Step 1: Research council ──
            await self._step(job_id, worker_id, 1)
            logger.info(
                "Launching %d research agents for %s (%s)",
                len(self.agents), identity.name, identity.affiliation,
            )
            results = await run_agents(self.agents, identity)

            # ── Steps 2-4: Per-agent outcomes ──
            for offset, result in enumerate(results[:3]):
                if isinstance(result, AgentSuccess):
                    logger.info(
                        "Agent %s succeeded: %d citations, %d tokens, %.1fs",
                        result.agent, len(result.citations), result.tokens_used,
                        result.elapsed_seconds,
                    )
                else:
                    logger.warning("Agent %s failed: %s", result.agent, result.reason)
                await self._step(job_id, worker_id, AGENT_STEP_OFFSET + offset)

            if not successes(results):
                raise ResearchFailedError(
                    f"All {len(results)} research agents failed. Cannot generate report."
                )

            # ── Step 5: Reconcile ──
            await self._step(job_id, worker_id, 5)
            report, total_tokens = await self.reconciler.reconcile(
                identity, results, started, subject_data=subject_data
            )

            # ── Step 6: Store report ──
            await self._step(job_id, worker_id, 6)
            record = await asyncio.to_thread(
                self.report_store.create, job.entity_id, job.org_id, report
            )

            # ── Step 7: Embeddings (non-fatal) ──
            await self._step(job_id, worker_id, 7)
            try:
                await self.embedder.embed_report(job.entity_id, record.id, report)
            except Exception:
                logger.exception("Embedding generation failed for report %s – continuing", record.id)

            # ── Step 8: Entity update ──
            await self._step(job_id, worker_id, 8)
            await asyncio.to_thread(
                self.entity_store.update_from_report,
                job.entity_id, record.id, report.subject_facts(),
            )

            # ── Step 9: Finalize ──
            report_url = report_url_for(record.id, self.reports_base_url)
            completed = await asyncio.to_thread(
                self.queue.complete, job_id, worker_id, record.id, report_url
            )
            if not completed:
                raise LeaseLostError(f"Worker {worker_id} lost the lease on job {job_id}")

            await self.cache.invalidate_entity(entity.identifier)
            await self.cache.invalidate_report(record.id)

            logger.info(
                "Job %s completed: report %s v%d, %d tokens, %.0fs",
                job_id, record.id, record.version, total_tokens, time.monotonic() - started,
            )
            return JobStatus.completed

        except LeaseLostError:
            logger.warning("Abandoning job %s: worker %s no longer owns it", job_id, worker_id)
            return None

        except Exception as exc:
            message = short_message(exc)
            logger.error("Report job %s failed: %s", job_id, message)
            try:
                recorded = await asyncio.to_thread(self.queue.fail, job_id, worker_id, message)
            except Exception:
                logger.exception("Could not record failure for job %s", job_id)
                return JobStatus.failed
            return JobStatus.failed if recorded else None


class WorkerPool:
    """Bounded pool of queue consumers with lease heartbeats and stall detection."""

    def __init__(
        self,
        worker: ReportWorker,
        queue: ReportQueue,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        stalled_interval: float | None = None,
    ):
        self.worker = worker
        self.queue = queue
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.stalled_interval = stalled_interval or settings.stalled_interval_seconds
        self.heartbeat_interval = max(queue.lock_seconds / 3, 1.0)
        self.worker_prefix = f"{socket.gethostname()}-{os.getpid()}"
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _heartbeat(self, job_id: str, worker_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                extended = await asyncio.to_thread(self.queue.extend_lock, job_id, worker_id)
            except Exception:
                logger.warning("Heartbeat failed for job %s", job_id, exc_info=True)
                continue
            if not extended:
                logger.warning("Lost lease on job %s", job_id)
                return

    async def process(self, job: ReportJobRecord, worker_id: str) -> JobStatus | None:
        heartbeat = asyncio.create_task(self._heartbeat(job.id, worker_id))
        try:
            return await self.worker.run(job, worker_id)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

    async def _consume(self, index: int) -> None:
        worker_id = f"{self.worker_prefix}-{index}"
        while not self._stop.is_set():
            try:
                job = await asyncio.to_thread(self.queue.claim, worker_id)
            except Exception:
                logger.exception("Claim failed for %s", worker_id)
                job = None
            if job is None:
                await self._sleep(self.poll_interval)
                continue
            await self.process(job, worker_id)

    async def _stall_detector(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.to_thread(self.queue.release_stalled)
            except Exception:
                logger.exception("Stalled-job check failed")
            await self._sleep(self.stalled_interval)

    async def run_forever(self) -> None:
        logger.info(
            "Worker pool started: concurrency=%d, lock=%ds, stalled check every %ss",
            self.concurrency, self.queue.lock_seconds, self.stalled_interval,
        )
        tasks = [asyncio.create_task(self._consume(i)) for i in range(self.concurrency)]
        tasks.append(asyncio.create_task(self._stall_detector()))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Worker pool stopped")

    async def run_until_idle(self) -> dict[str, int]:
        """Drain the queue with up to ``concurrency`` jobs in flight. Returns status counts."""
        counts: dict[str, int] = {}
        while True:
            claimed: list[tuple[ReportJobRecord, str]] = []
            for i in range(self.concurrency):
                worker_id = f"{self.worker_prefix}-{i}"
                job = await asyncio.to_thread(self.queue.claim, worker_id)
                if job is None:
                    break
                claimed.append((job, worker_id))
            if not claimed:
                return counts
            statuses = await asyncio.gather(*(self.process(job, wid) for job, wid in claimed))
            for status in statuses:
                if status is None:
                    continue
                counts[status.value] = counts.get(status.value, 0) + 1
