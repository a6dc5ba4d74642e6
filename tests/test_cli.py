"""Tests for the click CLI."""

from __future__ import annotations

from click.testing import CliRunner

from intelligence.cli.main import cli
from intelligence.jobs.queue import ReportQueue
from intelligence.store.entity_store import EntityStore

from tests.fakes import PROFILE_URL


class TestCli:
    def test_init_db(self):
        result = CliRunner().invoke(cli, ["init-db"])
        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_status_unknown_job(self):
        result = CliRunner().invoke(cli, ["status", "missing-job"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_status_of_queued_job(self, session_factory, identity):
        entity = EntityStore(session_factory).upsert_from_observation(
            PROFILE_URL, "person", {"name": "John Smith"}
        )
        job_id = ReportQueue(session_factory).enqueue(identity, entity.id)

        result = CliRunner().invoke(cli, ["status", job_id])

        assert result.exit_code == 0
        assert "QUEUED" in result.output
        assert "0%" in result.output
