"""SQLAlchemy models and database initialisation.

Schema is designed for SQLite local dev with a clean migration path to
Postgres (swap the DATABASE_URL). Structured payloads are stored as JSON
text so the same tables work on both engines; vectors use the same TEXT
representation and are scored in memory.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from intelligence.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class EntityRecord(Base):
    """A deduplicated person or company keyed by its normalized profile URL."""
    __tablename__ = "entities"

    id = Column(String(36), primary_key=True, default=new_id)
    identifier = Column(String(2048), nullable=False, unique=True)
    entity_type = Column(String(32), nullable=False, default="person")  # person | company
    canonical_data = Column(Text, default="{}")  # JSON object
    last_scraped_at = Column(DateTime, nullable=True)
    scraped_by_count = Column(Integer, nullable=False, default=0)
    total_reports = Column(Integer, nullable=False, default=0)
    latest_report_id = Column(String(36), nullable=True)
    latest_report_at = Column(DateTime, nullable=True)
    org_id = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_entities_org_id", "org_id"),
        Index("ix_entities_entity_type", "entity_type"),
    )

    def get_canonical_data(self) -> dict[str, Any]:
        return _loads(self.canonical_data, {})

    def set_canonical_data(self, value: dict[str, Any]) -> None:
        self.canonical_data = json.dumps(value, default=str)


class EntityVersionRecord(Base):
    """Immutable snapshot of an entity's canonical data."""
    __tablename__ = "entity_versions"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False, index=True)
    version_data = Column(Text, nullable=False)  # JSON object
    change_source = Column(String(16), nullable=False)  # scrape | report | manual | crm
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def get_version_data(self) -> dict[str, Any]:
        return _loads(self.version_data, {})


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ReportRecord(Base):
    """A reconciled report. Never updated after insert."""
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    generated_at = Column(DateTime, default=utcnow)
    generated_by_org = Column(String(64), nullable=False, default="")
    report_content = Column(Text, nullable=False)  # full Report JSON
    subject = Column(Text, nullable=True)
    abstract = Column(Text, nullable=True)
    bibliography = Column(Text, nullable=True)
    report_metadata = Column("metadata", Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "version", name="uq_reports_entity_version"),
        Index("ix_reports_entity_id", "entity_id"),
        Index("ix_reports_org", "generated_by_org"),
    )

    def get_content(self) -> dict[str, Any]:
        return _loads(self.report_content, {})


# ---------------------------------------------------------------------------
# Report jobs (durable queue)
# ---------------------------------------------------------------------------

class ReportJobRecord(Base):
    """One unit of asynchronous report generation work."""
    __tablename__ = "report_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False)
    status = Column(String(16), nullable=False, default="queued")
    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(String(256), nullable=True)
    completed_steps = Column(Text, default="[]")  # JSON list
    remaining_steps = Column(Text, default="[]")  # JSON list
    payload = Column(Text, nullable=False, default="{}")  # JSON work item
    org_id = Column(String(64), nullable=False, default="")
    created_by = Column(String(64), nullable=False, default="")
    created_at = Column(DateTime, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=True)
    report_url = Column(String(2048), nullable=True)
    error_message = Column(Text, nullable=True)
    # Lock / visibility
    locked_by = Column(String(128), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_report_jobs_status_created", "status", "created_at"),
        Index("ix_report_jobs_entity_id", "entity_id"),
    )

    def get_payload(self) -> dict[str, Any]:
        return _loads(self.payload, {})

    def set_payload(self, value: dict[str, Any]) -> None:
        self.payload = json.dumps(value, default=str)

    def get_completed_steps(self) -> list[str]:
        return _loads(self.completed_steps, [])

    def get_remaining_steps(self) -> list[str]:
        return _loads(self.remaining_steps, [])


# ---------------------------------------------------------------------------
# Embeddings (for semantic retrieval)
# ---------------------------------------------------------------------------

class EntityEmbeddingRecord(Base):
    """Profile-level vector, one per entity (replaced on every report)."""
    __tablename__ = "entity_embeddings"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_id = Column(String(36), ForeignKey("entities.id"), nullable=False, unique=True)
    embedding = Column(Text, nullable=False)  # JSON list[float]
    text_content = Column(Text, nullable=True)
    model = Column(String(128), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SectionEmbeddingRecord(Base):
    __tablename__ = "report_section_embeddings"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    section_id = Column(String(64), nullable=False)
    subsection_id = Column(String(64), nullable=False)
    embedding = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)
    model = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class CitationEmbeddingRecord(Base):
    __tablename__ = "citation_embeddings"

    id = Column(String(36), primary_key=True, default=new_id)
    report_id = Column(String(36), ForeignKey("reports.id"), nullable=False, index=True)
    citation_id = Column(Integer, nullable=False)
    embedding = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)
    model = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Engine / session helpers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=8)
def get_engine(url: str | None = None):
    url = url or settings.effective_database_url
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


def get_session_factory(url: str | None = None) -> sessionmaker:
    engine = get_engine(url)
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(url: str | None = None) -> None:
    """Create all tables if they don't exist."""
    engine = get_engine(url)
    Base.metadata.create_all(engine)
    logger.info("Database schema verified (%s)", engine.url.get_backend_name())


def get_session(url: str | None = None) -> Session:
    factory = get_session_factory(url)
    return factory()
