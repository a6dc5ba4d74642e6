"""Tests for the FastAPI web API."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from intelligence.api import app
from intelligence.config import settings
from intelligence.models import Report
from intelligence.service import IntelligenceService

from tests.fakes import PROFILE_URL


@pytest.fixture
def client(ctx):
    app.state.ctx = ctx
    app.state.service = IntelligenceService(ctx)
    with TestClient(app) as test_client:
        yield test_client
    app.state.ctx = None
    app.state.service = None


@pytest.fixture
def stored_report(ctx, report_payload):
    """A report stored directly, owned by org-1."""
    entity = ctx.entity_store.upsert_from_observation(
        PROFILE_URL, "person", {"name": "John Smith"}, "org-1"
    )
    report_payload["abstract"]["identity_confidence"] = "likely"
    record = ctx.report_store.create(entity.id, "org-1", Report.model_validate(report_payload))
    return record


ORG_1 = {"X-Org-Id": "org-1", "X-User-Id": "user-1"}


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"
        assert data["database"] == "sqlite"
        assert data["anthropic_configured"] is False


class TestAuth:
    def test_missing_key_rejected_when_configured(self, client):
        with patch.object(settings, "intelligence_api_key", "secret"):
            response = client.get("/api/intelligence/exists", params={"entity": PROFILE_URL})
        assert response.status_code == 401

    def test_valid_key_accepted(self, client):
        with patch.object(settings, "intelligence_api_key", "secret"):
            response = client.get(
                "/api/intelligence/exists",
                params={"entity": PROFILE_URL},
                headers={"Authorization": "Bearer secret"},
            )
        assert response.status_code == 200


class TestEntityEndpoints:
    def test_exists_requires_entity(self, client):
        assert client.get("/api/intelligence/exists").status_code == 400

    def test_unknown_entity(self, client):
        response = client.get("/api/intelligence/exists", params={"entity": PROFILE_URL})
        assert response.status_code == 200
        assert response.json()["exists"] is False

    def test_scrape_then_exists(self, client):
        response = client.post("/api/intelligence/entity/scrape", headers=ORG_1, json={
            "linkedin_url": "http://www.linkedin.com/in/jsmith/",
            "entity_type": "person",
            "extracted_data": {"fullName": "John Smith", "currentCompany": "Sequoia Capital"},
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True

        status = client.get("/api/intelligence/exists", params={"entity": PROFILE_URL}).json()
        assert status["exists"] is True
        assert status["entity_id"] == body["entity_id"]
        assert status["summary_facts"]["current_company"] == "Sequoia Capital"

    def test_scrape_validates_entity_type(self, client):
        response = client.post("/api/intelligence/entity/scrape", json={
            "linkedin_url": PROFILE_URL,
            "entity_type": "robot",
        })
        assert response.status_code == 422


class TestGeneration:
    def test_generate_queues_job(self, client):
        response = client.post("/api/intelligence/generate", headers=ORG_1, json={
            "entity": {
                "linkedin_url": PROFILE_URL,
                "entity_type": "person",
                "extracted_data": {"name": "John Smith", "company": "Sequoia Capital"},
            },
            "options": {"priority": "high"},
        })
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        assert body["estimated_time_seconds"] == 120
        assert body["entity_id"]

        status = client.get(f"/api/intelligence/status/{body['job_id']}")
        assert status.status_code == 200
        assert status.json()["status"] == "queued"
        assert status.json()["progress"] == 0

    def test_generate_requires_entity(self, client):
        assert client.post("/api/intelligence/generate", json={}).status_code == 422

    def test_unknown_job(self, client):
        assert client.get("/api/intelligence/status/missing").status_code == 404


class TestReportEndpoints:
    def test_get_report(self, client, stored_report):
        response = client.get(f"/api/intelligence/report/{stored_report.id}", headers=ORG_1)
        assert response.status_code == 200
        body = response.json()
        assert body["version"] == 1
        assert body["report_content"]["subject"]["full_name"] == "John Smith"

    def test_other_org_forbidden(self, client, stored_report):
        response = client.get(
            f"/api/intelligence/report/{stored_report.id}", headers={"X-Org-Id": "org-2"}
        )
        assert response.status_code == 403

    def test_unknown_report(self, client):
        assert client.get("/api/intelligence/report/missing").status_code == 404

    def test_refresh(self, client, stored_report):
        response = client.post(f"/api/intelligence/refresh/{stored_report.id}", headers=ORG_1)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        assert body["entity_id"] == stored_report.entity_id

    def test_refresh_other_org_forbidden(self, client, stored_report):
        response = client.post(
            f"/api/intelligence/refresh/{stored_report.id}", headers={"X-Org-Id": "org-2"}
        )
        assert response.status_code == 403


class TestSearchEndpoints:
    def test_entity_search_validates_query(self, client):
        response = client.post("/api/intelligence/search/entities", json={"query": ""})
        assert response.status_code == 422

    def test_entity_search_empty_index(self, client):
        response = client.post("/api/intelligence/search/entities", json={"query": "venture partner"})
        assert response.status_code == 200
        assert response.json() == {"results": [], "query": "venture partner", "count": 0}

    def test_rag_query_limit_bounds(self, client):
        response = client.post("/api/intelligence/rag/query", json={"query": "risk", "limit": 50})
        assert response.status_code == 422

    def test_rag_query(self, client):
        response = client.post("/api/intelligence/rag/query", json={"query": "risk"})
        assert response.status_code == 200
        assert response.json()["count"] == 0
