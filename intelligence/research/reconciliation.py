"""Reconciliation engine: many agent narratives in, one validated report out.

The synthesis model receives every successful agent's narrative and
citations side by side, cross-references them and returns the report as
JSON. The output then goes through structural repair, null stripping and
default backfill, schema validation and a citation integrity pass before
council metadata is stamped on it.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import Counter
from typing import Any

from intelligence.clients.anthropic_client import SynthesisClient
from intelligence.errors import ReconciliationError, ReportParseError, short_message
from intelligence.models import (
    SECTION_TAXONOMY,
    AgentResult,
    AgentSuccess,
    Identity,
    Report,
)
from intelligence.normalize.identifiers import classify_source_type
from intelligence.research.json_repair import parse_model_json
from intelligence.research.retry import RetryPolicy

logger = logging.getLogger(__name__)

AGENT_LABELS = {
    "web": "AGENT A (web dossier)",
    "perplexity": "AGENT B (Perplexity deep research)",
    "openai": "AGENT C (OpenAI deep research)",
}

_RULE = "=" * 63
_MARKER_RE = re.compile(r"\s?\[(\d+)\]")


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_SECTION_LINES = "\n".join(
    f'{i}. "{title}" (section_id "{sid}", confidence key "{key}")'
    for i, (sid, title, key) in enumerate(SECTION_TAXONOMY, start=1)
)

RECONCILIATION_SYSTEM_PROMPT = f"""You are a senior intelligence analyst and fact-checker at a due diligence firm. Several independent research agents have each investigated the same subject. Merge their findings into one authoritative intelligence report.

YOUR TASK:
1. Cross-reference every finding across the agents.
2. Resolve conflicts on dates, figures and roles in favour of the more specific and better-sourced version, and record the conflict in confidence_note.
3. Verify that every finding concerns this subject and not a namesake.
4. Merge duplicate source URLs into a single citation carrying the most complete metadata.
5. Produce a report richer and more accurate than any single agent's output.

CONFIDENCE LEVELS:
- "confirmed": corroborated by two or more agents, or taken from an authoritative primary source such as a regulatory filing or official company page.
- "likely": reported by one agent from a credible source and consistent with the rest of the profile.
- "uncertain": a single weak source, possible identity confusion, or agents disagree.

RELEVANCE SCORE (0-100, relevance to alternative investments):
- 90-100: senior decision-maker at a top-tier fund or allocator
- 70-89: mid-to-senior investment professional with relevant sector expertise
- 50-69: tangentially relevant
- 30-49: peripherally connected to finance
- 0-29: no meaningful connection

WRITING STANDARDS:
- Formal analytical prose in multi-paragraph form.
- Specific dates, amounts, percentages and deal names.
- Every factual claim carries an inline [N] marker that matches a citation in the same subsection.
- Cite only URLs the agents actually found. Never invent a URL.
- Say explicitly when information is unavailable or when agents disagree.

REPORT STRUCTURE: exactly six sections in this order, each with two to four subsections:
{_SECTION_LINES}"""

OUTPUT_SHAPE = """OUTPUT FORMAT: return ONLY valid JSON, with no markdown fences and no commentary:
{
  "subject": {"entity_type": "person|company|fund", "full_name": "...", "current_title": "...", "current_company": "...", "location": "...", "profile_photo_url": "...", "linkedin_url": "...", "email": "...", "phone": "...", "identity_markers": ["..."]},
  "abstract": {"summary": "...", "key_findings": ["most important first", "..."], "relevance_score": 0, "relevance_notes": "...", "identity_confidence": "confirmed|likely|uncertain", "identity_notes": "which agents corroborated the identity"},
  "sections": [{"section_id": "s1", "section_number": 1, "title": "...", "subsections": [{"subsection_id": "s1.1", "title": "...", "content": "text with inline [1] markers", "confidence_level": "confirmed|likely|uncertain", "confidence_note": "...", "structured_data": {}, "citations": [{"id": 1, "citation_number": "[1]", "text": "claim being cited", "source_title": "...", "source_url": "https://...", "source_type": "news|database|website|profile|sec_filing|press_release", "accessed_date": "YYYY-MM-DD", "publication_date": "YYYY-MM-DD", "author": "...", "publisher": "..."}]}]}],
  "bibliography": {"total_sources": 0, "sources_by_type": {}, "all_sources": []},
  "metadata": {"quality_score": 0, "completeness_score": 0, "confidence_scores": {"executive_summary": 0, "professional_background": 0, "investment_activity": 0, "network": 0, "public_presence": 0, "risk_assessment": 0}}
}"""


def union_citations(results: list[AgentResult]) -> list[str]:
    """Deduplicated citation URLs across successful agents, first-seen order."""
    seen: dict[str, None] = {}
    for result in results:
        if isinstance(result, AgentSuccess):
            for url in result.citations:
                seen.setdefault(url, None)
    return list(seen)


def build_reconciliation_prompt(
    identity: Identity,
    results: list[AgentResult],
    subject_data: dict[str, Any] | None = None,
) -> str:
    profile = subject_data or identity.model_dump()
    parts = [
        f"SUBJECT PROFILE DATA:\n{json.dumps(profile, indent=2, default=str)}",
        f"Profile URL: {identity.external_profile_url}",
    ]

    failed = [r.agent for r in results if not isinstance(r, AgentSuccess)]
    for result in results:
        if not isinstance(result, AgentSuccess):
            continue
        label = AGENT_LABELS.get(result.agent, result.agent)
        parts.append(
            f"{_RULE}\n{label}: {result.sources_found} sources, {len(result.citations)} citations\n"
            f"Model: {result.model} | Time: {result.elapsed_seconds:.0f}s\n{_RULE}\n"
            f"{result.content}\n\nCitations:\n"
            + "\n".join(f"- {url}" for url in result.citations)
        )
    if failed:
        parts.append(
            "Agents that returned nothing (do not treat their absence as evidence): "
            + ", ".join(AGENT_LABELS.get(a, a) for a in failed)
        )

    urls = union_citations(results)
    parts.append(
        f"{_RULE}\nALL UNIQUE SOURCE URLs ({len(urls)} total)\n{_RULE}\n"
        + "\n".join(
            f"{i}. {url} ({classify_source_type(url).value})" for i, url in enumerate(urls, start=1)
        )
    )
    parts.append(
        f"{_RULE}\nRECONCILIATION TASK\n{_RULE}\n"
        "Cross-reference the agents above and produce one authoritative report that keeps "
        "the best findings of each, marks agreement as confirmed and disagreement as "
        "uncertain, checks identity consistency and merges duplicate citations.\n\n"
        + OUTPUT_SHAPE
    )
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------

def strip_nulls(value: Any) -> Any:
    """Recursively drop ``None`` values from dicts (list items are kept, cleaned)."""
    if isinstance(value, dict):
        return {k: strip_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_nulls(v) for v in value if v is not None]
    return value


def normalize_report_payload(payload: Any) -> dict[str, Any]:
    """Strip nulls and backfill the defaults the model is allowed to omit."""
    if not isinstance(payload, dict):
        raise ReportParseError(f"Expected a JSON object, got {type(payload).__name__}")
    data = strip_nulls(payload)

    subject = data.get("subject")
    if isinstance(subject, dict):
        subject.setdefault("identity_markers", [])

    abstract = data.get("abstract")
    if isinstance(abstract, dict):
        if not abstract.get("identity_confidence"):
            abstract["identity_confidence"] = "likely"
        if not abstract.get("identity_notes"):
            abstract["identity_notes"] = ""

    for section in data.get("sections") or []:
        if not isinstance(section, dict):
            continue
        for sub in section.get("subsections") or []:
            if not isinstance(sub, dict):
                continue
            if not sub.get("confidence_level"):
                sub["confidence_level"] = "confirmed"
            if not sub.get("confidence_note"):
                sub["confidence_note"] = ""
            sub.setdefault("structured_data", {})
            sub.setdefault("citations", [])

    data.setdefault("bibliography", {"total_sources": 0, "sources_by_type": {}, "all_sources": []})
    return data


def enforce_citation_integrity(report: Report) -> Report:
    """Remove inline ``[N]`` markers that have no citation in their subsection,
    and fill bibliography counts when the model left them empty."""
    removed = 0
    for _, sub in report.iter_subsections():
        valid = {str(c.id) for c in sub.citations}
        valid.update(c.citation_number.strip("[] ") for c in sub.citations)

        def _keep(match: re.Match) -> str:
            nonlocal removed
            if match.group(1) in valid:
                return match.group(0)
            removed += 1
            return ""

        sub.content = _MARKER_RE.sub(_keep, sub.content)
    if removed:
        logger.info("Removed %d unresolved citation markers", removed)

    bib = report.bibliography
    if not bib.total_sources or not bib.sources_by_type or not bib.all_sources:
        unique: dict[str, Any] = {}
        for _, sub in report.iter_subsections():
            for citation in sub.citations:
                unique.setdefault(citation.source_url, citation)
        if not bib.total_sources:
            bib.total_sources = len(unique)
        if not bib.sources_by_type:
            bib.sources_by_type = dict(Counter(c.source_type.value for c in unique.values()))
        if not bib.all_sources:
            bib.all_sources = [
                {"url": url, "title": c.source_title, "source_type": c.source_type.value}
                for url, c in unique.items()
            ]
    return report


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class Reconciler:
    def __init__(
        self,
        client: SynthesisClient | None = None,
        retry: RetryPolicy | None = None,
    ):
        self.client = client or SynthesisClient()
        self.retry = retry or RetryPolicy()

    @property
    def model(self) -> str:
        return getattr(self.client, "model", "unknown")

    async def _attempt(self, system_prompt: str, user_prompt: str, attempt: int) -> tuple[Report, int]:
        logger.info("Reconciliation attempt %d", attempt)
        text, tokens = await self.client.complete(system_prompt, user_prompt, temperature=0.2)
        payload = normalize_report_payload(parse_model_json(text))
        report = Report.model_validate(payload)
        return enforce_citation_integrity(report), tokens

    async def reconcile(
        self,
        identity: Identity,
        results: list[AgentResult],
        started_at: float,
        subject_data: dict[str, Any] | None = None,
    ) -> tuple[Report, int]:
        """Synthesize one report from the successful agents.

        ``started_at`` is a ``time.monotonic()`` reading taken when the job
        began. Returns the report and the total tokens spent on the job.
        """
        succeeded = [r for r in results if isinstance(r, AgentSuccess)]
        if not succeeded:
            raise ReconciliationError("No successful research agents to reconcile")

        user_prompt = build_reconciliation_prompt(identity, results, subject_data)
        try:
            report, synthesis_tokens = await self.retry.run(
                lambda attempt: self._attempt(RECONCILIATION_SYSTEM_PROMPT, user_prompt, attempt)
            )
        except Exception as exc:
            raise ReconciliationError(
                f"Reconciliation failed after {self.retry.max_attempts} attempts: {short_message(exc, 300)}"
            ) from exc

        total_tokens = sum(r.tokens_used for r in succeeded) + synthesis_tokens
        agents = "+".join(r.agent for r in succeeded)
        report.metadata.generation_time_seconds = round(time.monotonic() - started_at, 1)
        report.metadata.ai_model = f"council:{agents}->{self.model}"
        report.metadata.total_tokens = total_tokens
        report.metadata.sources_analyzed = len(union_citations(results))

        levels = Counter(sub.confidence_level.value for _, sub in report.iter_subsections())
        logger.info(
            "Reconciled report for %s: %d sections, %d sources, identity %s, confidence %s",
            identity.name, len(report.sections), report.bibliography.total_sources,
            report.abstract.identity_confidence.value, dict(levels),
        )
        return report, total_tokens
