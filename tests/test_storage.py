"""Tests for the report store and the best-effort cache."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from intelligence.errors import ReportNotFoundError
from intelligence.models import Report
from intelligence.services.cache_service import CacheService, entity_status_key, report_key
from intelligence.store.entity_store import EntityStore
from intelligence.store.report_store import ReportStore, report_payload

from tests.fakes import PROFILE_URL


@pytest.fixture
def entity(session_factory):
    return EntityStore(session_factory).upsert_from_observation(
        PROFILE_URL, "person", {"name": "John Smith"}, "org-1"
    )


@pytest.fixture
def report(report_payload):
    return Report.model_validate(
        {**report_payload, "abstract": {**report_payload["abstract"], "identity_confidence": "likely"}}
    )


class TestReportStore:
    def test_versions_are_gap_free(self, session_factory, entity, report):
        store = ReportStore(session_factory)
        versions = [store.create(entity.id, "org-1", report).version for _ in range(3)]
        assert versions == [1, 2, 3]
        assert [r.version for r in store.list_for_entity(entity.id)] == [1, 2, 3]

    def test_version_race_retries_with_next_number(self, session_factory, entity, report):
        store = ReportStore(session_factory)
        store.create(entity.id, "org-1", report)

        # A stale read hands out version 1 again; the unique constraint forces a retry.
        with patch.object(store, "next_version", side_effect=[1, 2]):
            record = store.create(entity.id, "org-1", report)

        assert record.version == 2
        assert len(store.report_ids_for_entity(entity.id)) == 2

    def test_payload_round_trip(self, session_factory, entity, report):
        store = ReportStore(session_factory)
        record = store.create(entity.id, "org-1", report)

        payload = report_payload(store.get(record.id))

        assert payload["id"] == record.id
        assert payload["version"] == 1
        assert payload["org_id"] == "org-1"
        assert payload["report_content"]["subject"]["full_name"] == "John Smith"
        assert len(payload["report_content"]["sections"]) == 6

    def test_missing_report_raises(self, session_factory):
        with pytest.raises(ReportNotFoundError):
            ReportStore(session_factory).get("missing")


class TestCacheService:
    def test_entity_status_key_is_uri_encoded(self):
        assert entity_status_key(PROFILE_URL) == (
            "entity_status:https%3A%2F%2Fwww.linkedin.com%2Fin%2Fjsmith"
        )
        assert report_key("abc") == "report:abc"

    @pytest.mark.asyncio
    async def test_set_get_invalidate(self, cache):
        await cache.set_entity_status(PROFILE_URL, {"exists": True})
        assert await cache.get_entity_status(PROFILE_URL) == {"exists": True}
        assert await cache.client.ttl(entity_status_key(PROFILE_URL)) <= 300

        await cache.invalidate_entity(PROFILE_URL)
        assert await cache.get_entity_status(PROFILE_URL) is None

    @pytest.mark.asyncio
    async def test_report_ttl(self, cache):
        await cache.set_report("r1", {"id": "r1"})
        ttl = await cache.client.ttl(report_key("r1"))
        assert 3500 < ttl <= 3600
        await cache.invalidate_report("r1")
        assert await cache.get_report("r1") is None

    @pytest.mark.asyncio
    async def test_unavailable_redis_is_a_miss(self):
        client = MagicMock()
        client.get = AsyncMock(side_effect=ConnectionError("redis down"))
        client.set = AsyncMock(side_effect=ConnectionError("redis down"))
        client.delete = AsyncMock(side_effect=ConnectionError("redis down"))
        cache = CacheService(client=client)

        await cache.set_report("r1", {"id": "r1"})
        assert await cache.get_report("r1") is None
        await cache.invalidate_entity(PROFILE_URL)

    @pytest.mark.asyncio
    async def test_undecodable_entry_is_a_miss(self, cache):
        await cache.client.set(report_key("r1"), "{not json")
        assert await cache.get_report("r1") is None
