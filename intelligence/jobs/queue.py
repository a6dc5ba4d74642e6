"""Durable report job queue backed by the ``report_jobs`` table.

A job is claimed by flipping it to ``processing`` with a conditional
UPDATE, so two workers can never own the same job. Ownership is a lease:
``locked_until`` is pushed forward by heartbeats. A job whose lease lapses
(worker crashed or hung) stays ``processing`` and can be claimed again
by another worker, until it has used up its attempts and
``release_stalled`` fails it.

Status only moves forward: queued -> processing -> completed | failed.
Only the current lease holder may write progress, complete or fail a job.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import sessionmaker

from intelligence.config import settings
from intelligence.errors import JobNotFoundError
from intelligence.models import TERMINAL_JOB_STATUSES, Identity, JobStatus, JobStatusView
from intelligence.store.database import ReportJobRecord, utcnow

logger = logging.getLogger(__name__)

REPORT_STEPS: list[str] = [
    "Starting research",
    "Running 3 research agents in parallel",
    "Agent A (web dossier) searching",
    "Agent B (Perplexity) deep research",
    "Agent C (OpenAI) deep research",
    "Reconciling findings",
    "Storing report data",
    "Generating embeddings",
    "Updating entity records",
    "Finalizing report",
]

_TERMINAL = {s.value for s in TERMINAL_JOB_STATUSES}

CLAIM_CANDIDATES = 5


def step_progress(step_index: int) -> int:
    return round((step_index + 1) / len(REPORT_STEPS) * 100)


class ReportQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        lock_seconds: int | None = None,
        max_attempts: int | None = None,
    ):
        self.session_factory = session_factory
        self.lock_seconds = lock_seconds or settings.job_lock_seconds
        self.max_attempts = max_attempts or settings.max_job_attempts

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        identity: Identity,
        entity_id: str,
        org_id: str = "",
        user_id: str = "",
        identifier: str = "",
        facts: dict[str, Any] | None = None,
    ) -> str:
        job = ReportJobRecord(
            entity_id=entity_id,
            status=JobStatus.queued.value,
            progress=0,
            org_id=org_id,
            created_by=user_id,
            completed_steps=json.dumps([]),
            remaining_steps=json.dumps(REPORT_STEPS),
        )
        job.set_payload({
            "identity": identity.model_dump(),
            "identifier": identifier or identity.external_profile_url,
            "facts": facts or {},
        })
        with self.session_factory() as session:
            session.add(job)
            session.commit()
        logger.info("Report job %s queued for entity %s", job.id, entity_id)
        return job.id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> ReportJobRecord:
        with self.session_factory() as session:
            job = session.get(ReportJobRecord, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def status_view(self, job_id: str) -> JobStatusView:
        job = self.get(job_id)
        return JobStatusView(
            job_id=job.id,
            status=JobStatus(job.status),
            progress=job.progress or 0,
            current_step=job.current_step,
            completed_steps=job.get_completed_steps(),
            remaining_steps=job.get_remaining_steps(),
            started_at=job.started_at,
            completed_at=job.completed_at,
            report_id=job.report_id,
            report_url=job.report_url,
            error_message=job.error_message,
        )

    def pending_count(self) -> int:
        with self.session_factory() as session:
            return (
                session.query(ReportJobRecord)
                .filter(ReportJobRecord.status == JobStatus.queued.value)
                .count()
            )

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def _claimable(self, now: datetime):
        return or_(
            ReportJobRecord.status == JobStatus.queued.value,
            and_(
                ReportJobRecord.status == JobStatus.processing.value,
                ReportJobRecord.locked_until < now,
                ReportJobRecord.attempts < self.max_attempts,
            ),
        )

    def claim(self, worker_id: str, now: datetime | None = None) -> ReportJobRecord | None:
        """Take ownership of the oldest claimable job, or return None."""
        now = now or utcnow()
        claimable = self._claimable(now)
        with self.session_factory() as session:
            candidates = [
                row[0]
                for row in session.query(ReportJobRecord.id)
                .filter(claimable)
                .order_by(ReportJobRecord.created_at, ReportJobRecord.id)
                .limit(CLAIM_CANDIDATES)
                .all()
            ]
            for job_id in candidates:
                result = session.execute(
                    update(ReportJobRecord)
                    .where(ReportJobRecord.id == job_id, claimable)
                    .values(
                        status=JobStatus.processing.value,
                        locked_by=worker_id,
                        locked_until=now + timedelta(seconds=self.lock_seconds),
                        heartbeat_at=now,
                        attempts=ReportJobRecord.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                session.commit()
                if result.rowcount == 1:
                    job = session.get(ReportJobRecord, job_id)
                    session.refresh(job)
                    logger.info("Worker %s claimed job %s (attempt %d)", worker_id, job_id, job.attempts)
                    return job
        return None

    def extend_lock(self, job_id: str, worker_id: str) -> bool:
        now = utcnow()
        with self.session_factory() as session:
            result = session.execute(
                update(ReportJobRecord)
                .where(
                    ReportJobRecord.id == job_id,
                    ReportJobRecord.locked_by == worker_id,
                    ReportJobRecord.status == JobStatus.processing.value,
                )
                .values(
                    locked_until=now + timedelta(seconds=self.lock_seconds),
                    heartbeat_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result.rowcount == 1

    def update_progress(
        self,
        job_id: str,
        worker_id: str,
        step_index: int,
        **fields: Any,
    ) -> bool:
        """Record that the job reached ``REPORT_STEPS[step_index]``.

        Ignored (returns False) when the caller no longer owns the job or the
        job is already terminal. Progress never decreases: a re-attempt that
        replays earlier steps only records ``fields`` until it catches up.
        """
        with self.session_factory() as session:
            job = session.get(ReportJobRecord, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status in _TERMINAL:
                logger.warning("Ignoring progress for terminal job %s", job_id)
                return False
            if job.locked_by != worker_id:
                logger.warning("Worker %s no longer owns job %s", worker_id, job_id)
                return False

            progress = step_progress(step_index)
            if progress >= (job.progress or 0):
                job.progress = progress
                job.current_step = REPORT_STEPS[step_index]
                job.completed_steps = json.dumps(REPORT_STEPS[:step_index])
                job.remaining_steps = json.dumps(REPORT_STEPS[step_index + 1:])
            for key, value in fields.items():
                setattr(job, key, value)
            session.commit()
        return True

    def complete(self, job_id: str, worker_id: str, report_id: str, report_url: str) -> bool:
        last = len(REPORT_STEPS) - 1
        with self.session_factory() as session:
            job = session.get(ReportJobRecord, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status in _TERMINAL or job.locked_by != worker_id:
                logger.warning("Job %s not completable by %s (status %s)", job_id, worker_id, job.status)
                return False
            job.status = JobStatus.completed.value
            job.progress = 100
            job.current_step = REPORT_STEPS[last]
            job.completed_steps = json.dumps(REPORT_STEPS[:last])
            job.remaining_steps = json.dumps([])
            job.report_id = report_id
            job.report_url = report_url
            job.completed_at = utcnow()
            job.locked_by = None
            job.locked_until = None
            session.commit()
        logger.info("Job %s completed (report %s)", job_id, report_id)
        return True

    def fail(self, job_id: str, worker_id: str, message: str) -> bool:
        with self.session_factory() as session:
            job = session.get(ReportJobRecord, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status in _TERMINAL or job.locked_by != worker_id:
                logger.warning("Job %s not failable by %s (status %s)", job_id, worker_id, job.status)
                return False
            job.status = JobStatus.failed.value
            job.error_message = message
            job.completed_at = utcnow()
            job.locked_by = None
            job.locked_until = None
            session.commit()
        logger.info("Job %s failed: %s", job_id, message)
        return True

    def release_stalled(self, now: datetime | None = None) -> tuple[int, int]:
        """Drop lapsed leases. Returns ``(released, failed)``.

        Released jobs stay ``processing`` with their progress intact and are
        picked up again by ``claim``. Jobs that already used ``max_attempts``
        are failed instead.
        """
        now = now or utcnow()
        released = failed = 0
        with self.session_factory() as session:
            stalled = (
                session.query(ReportJobRecord)
                .filter(
                    ReportJobRecord.status == JobStatus.processing.value,
                    ReportJobRecord.locked_until < now,
                )
                .all()
            )
            for job in stalled:
                if (job.attempts or 0) >= self.max_attempts:
                    job.status = JobStatus.failed.value
                    job.error_message = "Job stalled"
                    job.completed_at = now
                    job.locked_by = None
                    job.locked_until = None
                    failed += 1
                elif job.locked_by is not None:
                    # locked_until stays in the past so the job remains claimable.
                    job.locked_by = None
                    released += 1
            session.commit()
        if released or failed:
            logger.warning("Stalled jobs: %d released, %d failed", released, failed)
        return released, failed
