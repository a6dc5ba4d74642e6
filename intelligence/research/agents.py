"""The three independent research agents and the all-settled fan-out.

Each agent takes the subject's identity facts and returns a free-text
research narrative plus the URLs it relied on. Agents never see each
other's output; reconciliation does the cross-referencing.

- ``web``: our own dossier (Jina / SerpAPI) synthesized by an OpenAI chat model.
- ``perplexity``: Perplexity's deep research model.
- ``openai``: OpenAI deep research through the Responses API.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from intelligence.clients.openai_client import DeepResearchClient, LLMClient
from intelligence.clients.perplexity import PerplexityClient
from intelligence.config import settings
from intelligence.errors import short_message
from intelligence.models import AgentFailure, AgentResult, AgentSuccess, Identity
from intelligence.research.dossier import DossierCompiler, format_dossier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

RESEARCH_CATEGORIES = """\
1. PROFESSIONAL BACKGROUND: career history with employers, roles and dates; education, degrees, certifications and licenses.
2. INVESTMENT ACTIVITY & TRACK RECORD: funds managed or associated with, AUM, notable deals, exits and returns, portfolio companies, strategy.
3. NETWORK & RELATIONSHIPS: board seats, advisory roles, associations, co-investors, speaking appearances, political donations, philanthropy.
4. PUBLIC PRESENCE: news coverage, press releases, interviews, podcasts, publications, awards, social media and thought leadership.
5. RISK ASSESSMENT: SEC or FINRA actions, litigation, bankruptcy filings, controversies, negative press or other red flags."""

IDENTITY_RULE = """\
IDENTITY VERIFICATION:
Many people and companies share a name. Before using any finding, check it against this subject's company, title, location and timeline.
Label anything whose attribution is doubtful as [UNCERTAIN], and say so explicitly when sources seem to describe a different subject."""

OUTPUT_RULES = """\
OUTPUT:
- Detailed multi-paragraph narrative for each category, not bullet lists.
- Specific dates, amounts, percentages and deal names wherever the sources give them.
- A source URL for every factual claim.
- State plainly when a category has no available information.
- Never invent facts or URLs."""


def build_research_prompt(identity: Identity) -> str:
    """Prompt shared by the two deep-research agents."""
    if identity.is_company:
        subject, pronoun = "a company", "this company"
    else:
        subject, pronoun = "an individual", "this person"
    return (
        "You are a senior intelligence analyst preparing investment-grade due diligence "
        f"on {subject} for alternative investment professionals.\n\n"
        f"SUBJECT:\n{identity.prompt_block()}\n\n"
        f"Research {pronoun} exhaustively on the web across these categories:\n\n"
        f"{RESEARCH_CATEGORIES}\n\n{IDENTITY_RULE}\n\n{OUTPUT_RULES}"
    )


WEB_SYNTHESIS_SYSTEM_PROMPT = (
    "You are a senior intelligence analyst. You are given a dossier of web pages "
    "collected about one subject (a person or a company). Turn ALL of the source material into a structured "
    "research narrative organised by these categories:\n\n"
    f"{RESEARCH_CATEGORIES}\n\n{IDENTITY_RULE}\n\n{OUTPUT_RULES}\n"
    "- Use only what appears in the source materials."
)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class ResearchAgent(Protocol):
    name: str
    timeout: float

    async def research(self, identity: Identity) -> AgentSuccess: ...


class WebResearchAgent:
    """Dossier compilation plus chat-model synthesis."""

    name = "web"

    def __init__(
        self,
        compiler: DossierCompiler | None = None,
        llm: LLMClient | None = None,
        timeout: float | None = None,
        max_dossier_chars: int | None = None,
    ):
        self.compiler = compiler or DossierCompiler()
        self.llm = llm or LLMClient()
        self.timeout = timeout or settings.web_agent_timeout_seconds
        self.max_dossier_chars = max_dossier_chars or settings.dossier_max_chars

    async def research(self, identity: Identity) -> AgentSuccess:
        started = time.monotonic()
        dossier = await self.compiler.compile(identity)
        dossier_text = format_dossier(dossier, max_chars=self.max_dossier_chars)

        user_prompt = (
            f"SUBJECT: {identity.name}, {identity.title} at {identity.affiliation}, "
            f"{identity.location}\nProfile: {identity.external_profile_url}\n\n"
            f"{dossier_text}\n\n"
            "Synthesize ALL of the source materials above into one research narrative. "
            "Cite the source URL for every claim."
        )
        content, tokens = await self.llm.chat(WEB_SYNTHESIS_SYSTEM_PROMPT, user_prompt)

        return AgentSuccess(
            agent="web",
            content=content,
            citations=[s.url for s in dossier.sources],
            elapsed_seconds=round(time.monotonic() - started, 2),
            model=self.llm.model,
            tokens_used=tokens,
            sources_found=len(dossier.sources),
        )


class PerplexityResearchAgent:
    name = "perplexity"

    def __init__(self, client: PerplexityClient | None = None, timeout: float | None = None):
        self.client = client or PerplexityClient()
        self.timeout = timeout or settings.perplexity_timeout_seconds

    async def research(self, identity: Identity) -> AgentSuccess:
        started = time.monotonic()
        result = await self.client.research(build_research_prompt(identity))
        citations = list(dict.fromkeys(result["citations"]))
        return AgentSuccess(
            agent="perplexity",
            content=result["content"],
            citations=citations,
            elapsed_seconds=round(time.monotonic() - started, 2),
            model=result["model"],
            tokens_used=result["tokens_used"],
            sources_found=len(citations),
        )


class OpenAIResearchAgent:
    name = "openai"

    def __init__(self, client: DeepResearchClient | None = None, timeout: float | None = None):
        self.client = client or DeepResearchClient()
        self.timeout = timeout or settings.openai_research_timeout_seconds

    async def research(self, identity: Identity) -> AgentSuccess:
        started = time.monotonic()
        result = await self.client.research(build_research_prompt(identity))
        citations = list(dict.fromkeys(result["citations"]))
        return AgentSuccess(
            agent="openai",
            content=result["content"],
            citations=citations,
            elapsed_seconds=round(time.monotonic() - started, 2),
            model=result["model"],
            tokens_used=result["tokens_used"],
            sources_found=len(citations),
        )


def default_agents() -> list[ResearchAgent]:
    return [WebResearchAgent(), PerplexityResearchAgent(), OpenAIResearchAgent()]


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

async def _run_one(agent: ResearchAgent, identity: Identity) -> AgentSuccess:
    timeout = getattr(agent, "timeout", None)
    if timeout:
        return await asyncio.wait_for(agent.research(identity), timeout=timeout)
    return await agent.research(identity)


async def run_agents(agents: list[ResearchAgent], identity: Identity) -> list[AgentResult]:
    """Run every agent concurrently and wait for all of them to settle.

    Returns one result per agent, in agent order. An agent that raises or
    times out becomes an ``AgentFailure``; this function itself never
    raises because of an individual agent.
    """
    outcomes = await asyncio.gather(
        *(_run_one(agent, identity) for agent in agents),
        return_exceptions=True,
    )

    results: list[AgentResult] = []
    for agent, outcome in zip(agents, outcomes):
        if isinstance(outcome, AgentSuccess):
            results.append(outcome)
            continue
        if isinstance(outcome, asyncio.TimeoutError):
            reason = f"timed out after {agent.timeout:.0f}s"
        elif isinstance(outcome, BaseException):
            reason = short_message(outcome)
        else:
            reason = f"unexpected result type {type(outcome).__name__}"
        logger.error("Research agent %s failed: %s", agent.name, reason)
        results.append(AgentFailure(agent=agent.name, reason=reason))
    return results


def successes(results: list[AgentResult]) -> list[AgentSuccess]:
    return [r for r in results if isinstance(r, AgentSuccess)]
