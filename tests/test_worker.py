"""End-to-end tests for the report worker and worker pool."""

from __future__ import annotations

import re
from datetime import timedelta

import pytest

from intelligence.jobs.worker import enrich_identity, report_url_for
from intelligence.models import Identity, JobStatus
from intelligence.store.database import (
    EntityEmbeddingRecord,
    ReportRecord,
    SectionEmbeddingRecord,
    utcnow,
)

from tests.fakes import FakeAgent, FakeEmbeddingClient, FakeSynthesisClient


async def _generate(ctx, identity, org_id="org-1"):
    from intelligence.service import IntelligenceService

    service = IntelligenceService(ctx)
    job_id = await service.enqueue_generation(identity, org_id=org_id, user_id="user-1")
    counts = await ctx.pool.run_until_idle()
    return service, job_id, counts


def _count(session_factory, model) -> int:
    with session_factory() as session:
        return session.query(model).count()


MARKER_RE = re.compile(r"\[(\d+)\]")


class _LeaseStealingReconciler:
    """Reconciler double: another worker reclaims the job mid-synthesis, then synthesis fails."""

    model = "fake-synth"

    def __init__(self, queue):
        self.queue = queue

    async def reconcile(self, *args, **kwargs):
        self.queue.claim("fresh", now=utcnow() + timedelta(hours=1))
        raise RuntimeError("synthesis timed out")


class TestHelpers:
    def test_enrich_identity_prefers_known_facts(self, identity):
        enriched = enrich_identity(
            Identity(name="J. Smith", external_profile_url=identity.external_profile_url),
            {"full_name": "John Smith", "current_company": "Sequoia Capital", "email": ""},
        )
        assert enriched.name == "John Smith"
        assert enriched.affiliation == "Sequoia Capital"
        assert enriched.external_profile_url == identity.external_profile_url
        assert enriched.entity_type == "person"

    def test_enrich_identity_takes_entity_type(self, identity):
        enriched = enrich_identity(identity, {}, entity_type="company")
        assert enriched.entity_type == "company"

    def test_report_url(self):
        assert report_url_for("abc", "https://reports.test/") == "https://reports.test/r/abc"


class TestReportWorker:
    @pytest.mark.asyncio
    async def test_full_generation(self, ctx, identity, session_factory):
        service, job_id, counts = await _generate(ctx, identity)

        assert counts == {"completed": 1}
        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.completed
        assert view.progress == 100
        assert view.report_url == f"https://reports.test/r/{view.report_id}"
        assert view.error_message is None

        record = ctx.report_store.get(view.report_id)
        assert record.version == 1
        assert record.generated_by_org == "org-1"
        content = record.get_content()
        assert content["metadata"]["ai_model"] == "council:web+perplexity+openai->fake-synth"
        assert content["metadata"]["total_tokens"] == 800
        assert content["metadata"]["sources_analyzed"] == 4

        assert len(content["sections"]) == 6
        assert 0 <= content["abstract"]["relevance_score"] <= 100
        for section in content["sections"]:
            for sub in section["subsections"]:
                cited = {c["id"] for c in sub["citations"]}
                markers = {int(n) for n in MARKER_RE.findall(sub["content"])}
                assert markers <= cited

        entity = ctx.entity_store.get(record.entity_id)
        assert entity.total_reports == 1
        assert entity.latest_report_id == record.id
        assert entity.get_canonical_data()["current_title"] == "Partner"

        assert _count(session_factory, SectionEmbeddingRecord) == 6
        assert _count(session_factory, EntityEmbeddingRecord) == 1

    @pytest.mark.asyncio
    async def test_one_agent_is_enough(self, make_context, identity):
        ctx = make_context(agents=[
            FakeAgent("web"),
            FakeAgent("perplexity", error=RuntimeError("HTTP 500")),
            FakeAgent("openai", delay=1.0, timeout=0.05),
        ])
        service, job_id, _ = await _generate(ctx, identity)

        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.completed
        content = ctx.report_store.get(view.report_id).get_content()
        assert content["metadata"]["ai_model"] == "council:web->fake-synth"
        assert content["metadata"]["sources_analyzed"] == 2

    @pytest.mark.asyncio
    async def test_all_agents_failing_fails_job(self, make_context, identity, session_factory):
        synthesis = FakeSynthesisClient()
        ctx = make_context(
            agents=[FakeAgent(n, error=RuntimeError("down")) for n in ("web", "perplexity", "openai")],
            synthesis=synthesis,
        )
        service, job_id, counts = await _generate(ctx, identity)

        assert counts == {"failed": 1}
        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.failed
        assert view.error_message == "All 3 research agents failed. Cannot generate report."
        assert view.report_id is None
        assert synthesis.calls == 0
        assert _count(session_factory, ReportRecord) == 0

    @pytest.mark.asyncio
    async def test_reconciliation_failure_fails_job(self, make_context, identity, session_factory):
        ctx = make_context(synthesis=FakeSynthesisClient(responses=["no json here"]))
        service, job_id, _ = await _generate(ctx, identity)

        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.failed
        assert "Reconciliation failed after 3 attempts" in view.error_message
        assert _count(session_factory, ReportRecord) == 0

    @pytest.mark.asyncio
    async def test_embedding_failure_is_not_fatal(self, make_context, identity, session_factory):
        ctx = make_context(embedding_client=FakeEmbeddingClient(error=RuntimeError("rate limited")))
        service, job_id, _ = await _generate(ctx, identity)

        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.completed
        assert _count(session_factory, ReportRecord) == 1
        assert _count(session_factory, SectionEmbeddingRecord) == 0

    @pytest.mark.asyncio
    async def test_repeat_generation_adds_version(self, ctx, identity):
        service, first_job, _ = await _generate(ctx, identity)
        _, second_job, _ = await _generate(ctx, identity)

        first = await service.get_job_status(first_job)
        second = await service.get_job_status(second_job)
        assert ctx.report_store.get(first.report_id).version == 1
        assert ctx.report_store.get(second.report_id).version == 2
        entity_id = ctx.report_store.get(second.report_id).entity_id
        assert ctx.entity_store.get(entity_id).total_reports == 2

    @pytest.mark.asyncio
    async def test_identity_without_profile_url(self, ctx):
        identity = Identity(
            name="John Smith",
            affiliation="Sequoia Capital",
            title="Partner",
            location="San Francisco, CA",
        )
        service, job_id, counts = await _generate(ctx, identity)

        assert counts == {"completed": 1}
        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.completed
        assert view.progress == 100
        record = ctx.report_store.get(view.report_id)
        content = record.get_content()
        assert len(content["sections"]) == 6
        assert 0 <= content["abstract"]["relevance_score"] <= 100
        entity = ctx.entity_store.get(record.entity_id)
        assert entity.identifier == "subject:john-smith|sequoia-capital"

        _, second_job, _ = await _generate(ctx, identity)
        second = ctx.report_store.get((await service.get_job_status(second_job)).report_id)
        assert second.entity_id == record.entity_id
        assert second.version == 2

    @pytest.mark.asyncio
    async def test_worker_that_lost_its_lease_writes_nothing(self, ctx, identity, session_factory):
        from intelligence.service import IntelligenceService

        service = IntelligenceService(ctx)
        job_id = await service.enqueue_generation(identity)
        stale_job = ctx.queue.claim("stale", now=utcnow() - timedelta(hours=1))
        fresh_job = ctx.queue.claim("fresh")
        assert stale_job.id == fresh_job.id == job_id

        assert await ctx.worker.run(stale_job, "stale") is None
        assert _count(session_factory, ReportRecord) == 0
        view = await service.get_job_status(job_id)
        assert view.status == JobStatus.processing
        assert view.progress == 0

        assert await ctx.worker.run(fresh_job, "fresh") == JobStatus.completed
        assert _count(session_factory, ReportRecord) == 1
        assert ctx.entity_store.get(fresh_job.entity_id).total_reports == 1

    @pytest.mark.asyncio
    async def test_worker_that_lost_its_lease_cannot_fail_the_job(self, ctx, identity, session_factory):
        from intelligence.service import IntelligenceService

        service = IntelligenceService(ctx)
        ctx.worker.reconciler = _LeaseStealingReconciler(ctx.queue)
        job_id = await service.enqueue_generation(identity)
        job = ctx.queue.claim("stale")

        assert await ctx.worker.run(job, "stale") is None

        record = ctx.queue.get(job_id)
        assert record.status == JobStatus.processing.value
        assert record.locked_by == "fresh"
        assert record.error_message is None
        assert _count(session_factory, ReportRecord) == 0

    @pytest.mark.asyncio
    async def test_pool_processes_jobs_concurrently(self, ctx, identity):
        from intelligence.service import IntelligenceService

        service = IntelligenceService(ctx)
        other = identity.model_copy(update={
            "name": "Jane Doe",
            "external_profile_url": "https://www.linkedin.com/in/janedoe",
        })
        jobs = [
            await service.enqueue_generation(identity),
            await service.enqueue_generation(other),
        ]

        counts = await ctx.pool.run_until_idle()

        assert counts == {"completed": 2}
        for job_id in jobs:
            assert (await service.get_job_status(job_id)).status == JobStatus.completed
