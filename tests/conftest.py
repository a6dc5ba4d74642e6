"""Shared test fixtures."""

from __future__ import annotations

import copy
import os

import pytest

TEST_DB_URL = "sqlite:///./test_intelligence.db"

# Force a throwaway SQLite file and no live providers for tests
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["OPENAI_API_KEY"] = ""
os.environ["PERPLEXITY_API_KEY"] = ""
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["JINA_API_KEY"] = ""
os.environ["SERPAPI_API_KEY"] = ""
os.environ["INTELLIGENCE_API_KEY"] = ""  # disable auth for tests

import fakeredis
from fakeredis import aioredis

from intelligence.models import Identity
from intelligence.normalize.embeddings import ReportEmbedder
from intelligence.service import IntelligenceContext, IntelligenceService
from intelligence.services.cache_service import CacheService
from intelligence.store.database import Base, get_engine, get_session_factory

from tests.fakes import (
    PROFILE_URL,
    FakeEmbeddingClient,
    default_fake_agents,
    fast_reconciler,
    sample_report_payload,
)


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create a fresh database for each test."""
    engine = get_engine(TEST_DB_URL)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def session_factory():
    return get_session_factory(TEST_DB_URL)


@pytest.fixture
def cache():
    client = aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return CacheService(client=client, entity_status_ttl=300, report_ttl=3600)


@pytest.fixture
def identity() -> Identity:
    return Identity(
        name="John Smith",
        affiliation="Sequoia Capital",
        title="Partner",
        location="Menlo Park, CA",
        external_profile_url=PROFILE_URL,
    )


@pytest.fixture
def report_payload() -> dict:
    return copy.deepcopy(sample_report_payload())


@pytest.fixture
def make_context(session_factory, cache):
    """Build an IntelligenceContext wired entirely to fakes."""

    def _make(agents=None, synthesis=None, embedding_client=None) -> IntelligenceContext:
        return IntelligenceContext(
            database_url=TEST_DB_URL,
            session_factory=session_factory,
            cache=cache,
            agents=agents if agents is not None else default_fake_agents(),
            reconciler=fast_reconciler(synthesis),
            embedder=ReportEmbedder(session_factory, client=embedding_client or FakeEmbeddingClient()),
            reports_base_url="https://reports.test",
            concurrency=2,
            poll_interval=0.01,
        )

    return _make


@pytest.fixture
def ctx(make_context) -> IntelligenceContext:
    return make_context()


@pytest.fixture
def service(ctx) -> IntelligenceService:
    return IntelligenceService(ctx)
