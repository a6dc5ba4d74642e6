"""Tests for the research agents and the all-settled fan-out."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from intelligence.models import AgentFailure, AgentSuccess, Dossier, DossierSource
from intelligence.research.agents import (
    OpenAIResearchAgent,
    PerplexityResearchAgent,
    WebResearchAgent,
    build_research_prompt,
    run_agents,
    successes,
)

from tests.fakes import FakeAgent


class TestRunAgents:
    @pytest.mark.asyncio
    async def test_all_succeed_in_agent_order(self, identity):
        agents = [FakeAgent("web"), FakeAgent("perplexity"), FakeAgent("openai")]
        results = await run_agents(agents, identity)
        assert [r.agent for r in results] == ["web", "perplexity", "openai"]
        assert all(isinstance(r, AgentSuccess) for r in results)

    @pytest.mark.asyncio
    async def test_failures_do_not_cancel_siblings(self, identity):
        agents = [
            FakeAgent("web", error=RuntimeError("Jina returned 503")),
            FakeAgent("perplexity", delay=1.0, timeout=0.05),
            FakeAgent("openai"),
        ]
        results = await run_agents(agents, identity)

        assert isinstance(results[0], AgentFailure)
        assert results[0].reason == "Jina returned 503"
        assert isinstance(results[1], AgentFailure)
        assert "timed out" in results[1].reason
        assert results[1].content == ""
        assert results[1].citations == []
        assert isinstance(results[2], AgentSuccess)
        assert [s.agent for s in successes(results)] == ["openai"]

    @pytest.mark.asyncio
    async def test_agents_run_concurrently(self, identity):
        agents = [FakeAgent(name, delay=0.2) for name in ("web", "perplexity", "openai")]
        loop = asyncio.get_running_loop()
        started = loop.time()
        await run_agents(agents, identity)
        assert loop.time() - started < 0.5


class TestResearchPrompt:
    def test_prompt_carries_identity_and_categories(self, identity):
        prompt = build_research_prompt(identity)
        assert "- Name: John Smith" in prompt
        assert "- Company: Sequoia Capital" in prompt
        assert "RISK ASSESSMENT" in prompt
        assert "[UNCERTAIN]" in prompt
        assert "this person" in prompt

    def test_company_subject_wording(self, identity):
        company = identity.model_copy(update={"name": "Sequoia Capital", "entity_type": "company"})
        prompt = build_research_prompt(company)
        assert "on a company" in prompt
        assert "Research this company" in prompt
        assert "this person" not in prompt


class TestAgents:
    @pytest.mark.asyncio
    async def test_web_agent_cites_dossier_sources(self, identity):
        compiler = AsyncMock()
        compiler.compile.return_value = Dossier(
            subject=identity,
            search_queries=["q"],
            sources=[
                DossierSource(title="A", url="https://a.com", content="alpha " * 50),
                DossierSource(title="B", url="https://b.com", content="beta " * 50),
            ],
        )
        llm = AsyncMock()
        llm.model = "gpt-4o"
        llm.chat.return_value = ("Narrative about John Smith", 1234)

        agent = WebResearchAgent(compiler=compiler, llm=llm, timeout=10)
        result = await agent.research(identity)

        assert result.agent == "web"
        assert result.citations == ["https://a.com", "https://b.com"]
        assert result.tokens_used == 1234
        assert result.sources_found == 2
        _, user_prompt = llm.chat.call_args.args
        assert "SOURCE 1: A" in user_prompt

    @pytest.mark.asyncio
    async def test_perplexity_agent_dedupes_citations(self, identity):
        client = AsyncMock()
        client.research.return_value = {
            "content": "Deep research",
            "citations": ["https://a.com", "https://a.com", "https://b.com"],
            "tokens_used": 900,
            "model": "sonar-deep-research",
        }
        result = await PerplexityResearchAgent(client=client, timeout=10).research(identity)
        assert result.agent == "perplexity"
        assert result.citations == ["https://a.com", "https://b.com"]
        assert result.sources_found == 2

    @pytest.mark.asyncio
    async def test_openai_agent_error_becomes_failure(self, identity):
        client = AsyncMock()
        client.research.side_effect = RuntimeError("OpenAI client not initialised")
        agent = OpenAIResearchAgent(client=client, timeout=10)

        results = await run_agents([agent], identity)

        assert isinstance(results[0], AgentFailure)
        assert results[0].agent == "openai"
        assert "not initialised" in results[0].reason
