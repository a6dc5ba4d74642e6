"""Test doubles for the research agents, synthesis model and embeddings."""

from __future__ import annotations

import asyncio
import json

from intelligence.models import SECTION_TAXONOMY, AgentSuccess, Identity
from intelligence.research.reconciliation import Reconciler
from intelligence.research.retry import RetryPolicy

PROFILE_URL = "https://www.linkedin.com/in/jsmith"


def sample_report_payload() -> dict:
    """A schema-valid reconciled report as the synthesis model would return it."""
    sections = []
    for number, (sid, title, _) in enumerate(SECTION_TAXONOMY, start=1):
        sections.append({
            "section_id": sid,
            "section_number": number,
            "title": title,
            "subsections": [
                {
                    "subsection_id": f"{sid}.1",
                    "title": f"{title} overview",
                    "content": (
                        "John Smith is a partner at Sequoia Capital focused on venture "
                        "investments in enterprise software [1]."
                    ),
                    "confidence_level": "confirmed",
                    "confidence_note": "Corroborated by two agents",
                    "structured_data": {},
                    "citations": [
                        {
                            "id": 1,
                            "citation_number": "[1]",
                            "text": "Partner at Sequoia Capital",
                            "source_title": "Sequoia Capital - John Smith",
                            "source_url": "https://www.sequoiacap.com/people/john-smith",
                            "source_type": "website",
                            "accessed_date": "2026-01-15",
                            "publication_date": None,
                            "author": None,
                            "publisher": "Sequoia Capital",
                        }
                    ],
                }
            ],
        })
    return {
        "subject": {
            "entity_type": "person",
            "full_name": "John Smith",
            "current_title": "Partner",
            "current_company": "Sequoia Capital",
            "location": "Menlo Park, CA",
            "linkedin_url": PROFILE_URL,
            "email": None,
            "phone": None,
        },
        "abstract": {
            "summary": "John Smith is a partner at Sequoia Capital focused on venture investments.",
            "key_findings": [
                "Partner at Sequoia Capital since 2018",
                "Board member at three portfolio companies",
            ],
            "relevance_score": 92,
            "relevance_notes": "Senior decision-maker at a top-tier venture firm",
            "identity_confidence": None,
        },
        "sections": sections,
        "bibliography": {"total_sources": 0, "sources_by_type": {}, "all_sources": []},
        "metadata": {
            "quality_score": 85,
            "completeness_score": 80,
            "confidence_scores": {key: 80 for _, _, key in SECTION_TAXONOMY},
        },
    }


class FakeAgent:
    """Research agent double: returns a canned narrative, raises, or hangs."""

    def __init__(
        self,
        name: str,
        citations: list[str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        timeout: float = 5.0,
        tokens: int = 100,
    ):
        self.name = name
        self.citations = citations if citations is not None else [
            "https://www.sequoiacap.com/people/john-smith",
            f"https://news.example.com/{name}/john-smith",
        ]
        self.error = error
        self.delay = delay
        self.timeout = timeout
        self.tokens = tokens
        self.calls = 0

    async def research(self, identity: Identity) -> AgentSuccess:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AgentSuccess(
            agent=self.name,
            content=f"{identity.name} is a partner at {identity.affiliation} ({self.name}).",
            citations=self.citations,
            elapsed_seconds=0.1,
            model=f"fake-{self.name}",
            tokens_used=self.tokens,
            sources_found=len(self.citations),
        )


def default_fake_agents() -> list[FakeAgent]:
    return [FakeAgent("web"), FakeAgent("perplexity"), FakeAgent("openai")]


class FakeSynthesisClient:
    """Synthesis double. Plays back ``responses`` in order (strings or exceptions);
    the last response repeats."""

    model = "fake-synth"

    def __init__(self, responses: list | None = None, tokens: int = 500):
        self.responses = list(responses) if responses is not None else None
        self.tokens = tokens
        self.calls = 0
        self.prompts: list[str] = []

    async def complete(self, system_prompt: str, user_prompt: str, temperature: float = 0.2):
        self.calls += 1
        self.prompts.append(user_prompt)
        if self.responses is None:
            return json.dumps(sample_report_payload()), self.tokens
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response, self.tokens


_VOCAB = ("sequoia", "venture", "risk", "board", "education")


class FakeEmbeddingClient:
    """Deterministic bag-of-words vectors over a tiny vocabulary."""

    model = "fake-embed"

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [[float(t.lower().count(w)) for w in _VOCAB] + [0.01] for t in texts]


def fast_reconciler(synthesis: FakeSynthesisClient | None = None) -> Reconciler:
    return Reconciler(
        client=synthesis or FakeSynthesisClient(),
        retry=RetryPolicy(max_attempts=3, base_delay=0),
    )
