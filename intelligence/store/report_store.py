"""Report store: immutable, per-entity versioned reports."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from intelligence.errors import ReportNotFoundError
from intelligence.models import Report
from intelligence.store.database import ReportRecord, utcnow

logger = logging.getLogger(__name__)

MAX_VERSION_ATTEMPTS = 5


class ReportStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def next_version(self, entity_id: str) -> int:
        with self.session_factory() as session:
            current = (
                session.query(func.max(ReportRecord.version))
                .filter(ReportRecord.entity_id == entity_id)
                .scalar()
            )
        return (current or 0) + 1

    def create(self, entity_id: str, org_id: str, report: Report) -> ReportRecord:
        """Insert a report as the entity's next version.

        Two jobs finishing for the same entity can race for a version number;
        the unique (entity_id, version) constraint rejects the loser, which
        re-reads the next free version and tries again.
        """
        content = report.model_dump(mode="json")
        last_error: IntegrityError | None = None

        for attempt in range(1, MAX_VERSION_ATTEMPTS + 1):
            version = self.next_version(entity_id)
            record = ReportRecord(
                entity_id=entity_id,
                version=version,
                generated_at=utcnow(),
                generated_by_org=org_id,
                report_content=json.dumps(content),
                subject=json.dumps(content["subject"]),
                abstract=json.dumps(content["abstract"]),
                bibliography=json.dumps(content["bibliography"]),
                report_metadata=json.dumps(content["metadata"]),
            )
            with self.session_factory() as session:
                session.add(record)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    last_error = exc
                    logger.warning(
                        "Report version %d for entity %s already taken (attempt %d)",
                        version, entity_id, attempt,
                    )
                    continue
            logger.info("Stored report %s (entity %s, v%d)", record.id, entity_id, version)
            return record

        raise last_error  # type: ignore[misc]

    def get(self, report_id: str) -> ReportRecord:
        with self.session_factory() as session:
            record = session.get(ReportRecord, report_id)
        if record is None:
            raise ReportNotFoundError(f"Report {report_id} not found")
        return record

    def list_for_entity(self, entity_id: str) -> list[ReportRecord]:
        with self.session_factory() as session:
            return (
                session.query(ReportRecord)
                .filter_by(entity_id=entity_id)
                .order_by(ReportRecord.version)
                .all()
            )

    def report_ids_for_entity(self, entity_id: str) -> set[str]:
        with self.session_factory() as session:
            rows = session.query(ReportRecord.id).filter_by(entity_id=entity_id).all()
        return {row[0] for row in rows}


def report_payload(record: ReportRecord) -> dict[str, Any]:
    """JSON-serialisable view of a stored report (API responses and cache)."""
    return {
        "id": record.id,
        "entity_id": record.entity_id,
        "version": record.version,
        "generated_at": record.generated_at.isoformat() if record.generated_at else None,
        "org_id": record.generated_by_org,
        "report_content": record.get_content(),
    }
