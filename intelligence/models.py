"""Pydantic models for the reconciled intelligence report and pipeline payloads.

The Report models define the canonical JSON shape of a council report: a
subject block, an abstract, six fixed sections of confidence-tagged
subsections, a bibliography and generation metadata. Every subsection
carries its own citation list so inline ``[N]`` markers can be traced back
to a source URL.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class EntityType(str, Enum):
    person = "person"
    company = "company"


class ConfidenceLevel(str, Enum):
    """Corroboration strength for a piece of reconciled content."""
    confirmed = "confirmed"
    likely = "likely"
    uncertain = "uncertain"


class CitationSourceType(str, Enum):
    news = "news"
    database = "database"
    website = "website"
    profile = "profile"
    sec_filing = "sec_filing"
    press_release = "press_release"


class ChangeSource(str, Enum):
    scrape = "scrape"
    report = "report"
    manual = "manual"
    crm = "crm"


class JobStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})


# The fixed six-section taxonomy, in report order:
# (section_id, title, metadata.confidence_scores key)
SECTION_TAXONOMY: list[tuple[str, str, str]] = [
    ("s1", "Executive Summary", "executive_summary"),
    ("s2", "Professional Background", "professional_background"),
    ("s3", "Investment Activity & Track Record", "investment_activity"),
    ("s4", "Network & Relationships", "network"),
    ("s5", "Public Presence & Reputation", "public_presence"),
    ("s6", "Risk Assessment", "risk_assessment"),
]


def relevance_band(score: float) -> str:
    """Qualitative band for a 0-100 relevance score."""
    if score >= 90:
        return "top_tier"
    if score >= 70:
        return "strong"
    if score >= 50:
        return "tangential"
    if score >= 30:
        return "peripheral"
    return "none"


# ---------------------------------------------------------------------------
# Identity input
# ---------------------------------------------------------------------------

# Keys the extraction layer and prior reports use for the same fact.
_NAME_KEYS = ("name", "full_name", "fullName")
_AFFILIATION_KEYS = ("affiliation", "current_company", "currentCompany", "company")
_TITLE_KEYS = ("title", "current_title", "currentTitle")


def _first_fact(facts: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = facts.get(key)
        if value:
            return str(value)
    return ""


class Identity(BaseModel):
    """Identity facts handed to every research agent."""
    name: str
    affiliation: str = ""
    title: str = ""
    location: str = ""
    external_profile_url: str = ""
    entity_type: str = "person"

    @classmethod
    def from_facts(cls, facts: dict[str, Any], profile_url: str = "") -> Identity:
        """Build an Identity from a flat fact record (scrape payload or canonical data)."""
        return cls(
            name=_first_fact(facts, _NAME_KEYS) or "Unknown",
            affiliation=_first_fact(facts, _AFFILIATION_KEYS),
            title=_first_fact(facts, _TITLE_KEYS),
            location=str(facts.get("location") or ""),
            external_profile_url=(
                profile_url
                or str(facts.get("external_profile_url") or facts.get("linkedin_url") or "")
            ),
        )

    @property
    def is_company(self) -> bool:
        return self.entity_type == "company"

    def prompt_block(self) -> str:
        return (
            f"- Name: {self.name}\n"
            f"- Company: {self.affiliation}\n"
            f"- Title: {self.title}\n"
            f"- Location: {self.location}\n"
            f"- LinkedIn: {self.external_profile_url}"
        )


# ---------------------------------------------------------------------------
# Report document
# ---------------------------------------------------------------------------

class ReportCitation(BaseModel):
    """One numbered source backing claims in a subsection."""
    id: int
    citation_number: str = Field(..., description="Inline marker, e.g. '[1]'")
    text: str
    source_title: str
    source_url: str
    source_type: CitationSourceType
    accessed_date: str
    publication_date: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None


class Subsection(BaseModel):
    subsection_id: str
    title: str
    content: str
    confidence_level: ConfidenceLevel = ConfidenceLevel.confirmed
    confidence_note: str = ""
    structured_data: dict[str, Any] = Field(default_factory=dict)
    citations: list[ReportCitation] = Field(default_factory=list)


class Section(BaseModel):
    section_id: str
    section_number: int
    title: str
    subsections: list[Subsection]


class Subject(BaseModel):
    entity_type: Literal["person", "company", "fund"]
    full_name: str
    current_title: Optional[str] = None
    current_company: Optional[str] = None
    location: Optional[str] = None
    profile_photo_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    identity_markers: list[str] = Field(default_factory=list)


class Abstract(BaseModel):
    summary: str
    key_findings: list[str]
    relevance_score: float = Field(..., ge=0.0, le=100.0)
    relevance_notes: str
    identity_confidence: ConfidenceLevel = ConfidenceLevel.likely
    identity_notes: str = ""


class Bibliography(BaseModel):
    total_sources: int
    sources_by_type: dict[str, int] = Field(default_factory=dict)
    all_sources: list[Any] = Field(default_factory=list)


class ReportMetadata(BaseModel):
    generation_time_seconds: float = 0.0
    ai_model: str = ""
    total_tokens: int = 0
    sources_analyzed: int = 0
    quality_score: float = Field(..., ge=0.0, le=100.0)
    completeness_score: float = Field(..., ge=0.0, le=100.0)
    confidence_scores: dict[str, float] = Field(default_factory=dict)


class Report(BaseModel):
    """The reconciled intelligence report."""
    subject: Subject
    abstract: Abstract
    sections: list[Section]
    bibliography: Bibliography
    metadata: ReportMetadata

    @field_validator("sections")
    @classmethod
    def _six_sections(cls, sections: list[Section]) -> list[Section]:
        if len(sections) != len(SECTION_TAXONOMY):
            raise ValueError(
                f"report must have exactly {len(SECTION_TAXONOMY)} sections, got {len(sections)}"
            )
        return sections

    def iter_subsections(self):
        for section in self.sections:
            for sub in section.subsections:
                yield section, sub

    def subject_facts(self) -> dict[str, Any]:
        """Facts the Entity Store merges into canonical data after a report."""
        return {
            "full_name": self.subject.full_name,
            "current_title": self.subject.current_title,
            "current_company": self.subject.current_company,
            "location": self.subject.location,
            "email": self.subject.email,
            "phone": self.subject.phone,
            "relevance_score": self.abstract.relevance_score,
        }


# ---------------------------------------------------------------------------
# Research agent results (tagged union)
# ---------------------------------------------------------------------------

AgentName = Literal["web", "perplexity", "openai"]


class AgentSuccess(BaseModel):
    status: Literal["succeeded"] = "succeeded"
    agent: AgentName
    content: str
    citations: list[str] = Field(default_factory=list)
    elapsed_seconds: float = 0.0
    model: str = ""
    tokens_used: int = 0
    sources_found: int = 0


class AgentFailure(BaseModel):
    status: Literal["failed"] = "failed"
    agent: AgentName
    reason: str

    # Uniform shape for prompt building: failed agents contribute nothing.
    content: str = ""
    citations: list[str] = Field(default_factory=list)
    elapsed_seconds: float = 0.0
    model: str = "failed"
    tokens_used: int = 0


AgentResult = Annotated[Union[AgentSuccess, AgentFailure], Field(discriminator="status")]


# ---------------------------------------------------------------------------
# Dossier (ephemeral)
# ---------------------------------------------------------------------------

class DossierSource(BaseModel):
    title: str = ""
    url: str
    content: str = ""


class Dossier(BaseModel):
    subject: Identity
    search_queries: list[str] = Field(default_factory=list)
    sources: list[DossierSource] = Field(default_factory=list)
    total_content_length: int = 0
    search_time_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Read projections
# ---------------------------------------------------------------------------

class JobStatusView(BaseModel):
    job_id: str
    status: JobStatus
    progress: int = 0
    current_step: Optional[str] = None
    completed_steps: list[str] = Field(default_factory=list)
    remaining_steps: list[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    report_id: Optional[str] = None
    report_url: Optional[str] = None
    error_message: Optional[str] = None


class LatestReportInfo(BaseModel):
    report_id: str
    generated_at: datetime
    age_days: int
    version: int


class SummaryFacts(BaseModel):
    full_name: Optional[str] = None
    current_title: Optional[str] = None
    current_company: Optional[str] = None


class EntityStatus(BaseModel):
    exists: bool
    entity_id: Optional[str] = None
    has_report: bool = False
    latest_report: Optional[LatestReportInfo] = None
    latest_report_age_days: Optional[int] = None
    summary_facts: Optional[SummaryFacts] = None
