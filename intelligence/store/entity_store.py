"""Entity store: one deduplicated record per subject, with version history.

Merge rules:
- Incoming ``None`` values never erase a known fact.
- ``email`` and ``phone`` are sticky against scrapes: once known, a later
  scrape cannot change them. Reports and manual/CRM edits can.
- A ``scrape`` version is only appended when canonical data actually
  changed, so replaying the same observation is idempotent.
- Every report and every manual/CRM edit appends a version.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from intelligence.errors import EntityNotFoundError
from intelligence.models import (
    ChangeSource,
    EntityStatus,
    LatestReportInfo,
    SummaryFacts,
)
from intelligence.normalize.identifiers import normalize_identifier
from intelligence.store.database import (
    EntityRecord,
    EntityVersionRecord,
    ReportRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

STICKY_CONTACT_FIELDS = ("email", "phone")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Short names the extraction layer uses for canonical keys.
_KEY_ALIASES = {
    "name": "full_name",
    "company": "current_company",
    "title": "current_title",
}


def canonical_facts(facts: dict[str, Any] | None) -> dict[str, Any]:
    """Flatten an observation payload into snake_case canonical keys, dropping nulls."""
    result: dict[str, Any] = {}
    for key, value in (facts or {}).items():
        if value is None:
            continue
        snake = _CAMEL_RE.sub("_", key).lower()
        result[snake] = value
    for short, full in _KEY_ALIASES.items():
        if short in result and full not in result:
            result[full] = result.pop(short)
    return result


def merge_facts(
    existing: dict[str, Any],
    incoming: dict[str, Any],
    sticky: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Overlay non-null incoming facts onto existing ones.

    Keys in ``sticky`` keep their existing value whenever one is present.
    """
    merged = dict(existing)
    for key, value in incoming.items():
        if value is None:
            continue
        if key in sticky and existing.get(key):
            continue
        merged[key] = value
    return merged


class EntityStore:
    """Entity persistence over an injected SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> EntityRecord | None:
        key = normalize_identifier(identifier)
        if not key:
            return None
        with self.session_factory() as session:
            return session.query(EntityRecord).filter_by(identifier=key).one_or_none()

    def get(self, entity_id: str) -> EntityRecord:
        with self.session_factory() as session:
            entity = session.get(EntityRecord, entity_id)
            if entity is None:
                raise EntityNotFoundError(f"Entity {entity_id} not found")
            return entity

    def list_versions(self, entity_id: str) -> list[EntityVersionRecord]:
        with self.session_factory() as session:
            return (
                session.query(EntityVersionRecord)
                .filter_by(entity_id=entity_id)
                .order_by(EntityVersionRecord.created_at, EntityVersionRecord.id)
                .all()
            )

    def get_status(self, identifier: str) -> EntityStatus:
        """Lightweight existence / freshness check for a profile identifier."""
        entity = self.find_by_identifier(identifier)
        if entity is None:
            return EntityStatus(exists=False)

        latest: LatestReportInfo | None = None
        if entity.latest_report_id:
            with self.session_factory() as session:
                report = session.get(ReportRecord, entity.latest_report_id)
            if report is not None:
                age_days = max((utcnow() - report.generated_at).days, 0)
                latest = LatestReportInfo(
                    report_id=report.id,
                    generated_at=report.generated_at,
                    age_days=age_days,
                    version=report.version,
                )

        data = entity.get_canonical_data()
        return EntityStatus(
            exists=True,
            entity_id=entity.id,
            has_report=bool(entity.latest_report_id),
            latest_report=latest,
            latest_report_age_days=latest.age_days if latest else None,
            summary_facts=SummaryFacts(
                full_name=data.get("full_name"),
                current_title=data.get("current_title"),
                current_company=data.get("current_company"),
            ),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_from_observation(
        self,
        identifier: str,
        kind: str,
        facts: dict[str, Any] | None,
        org_id: str = "",
    ) -> EntityRecord:
        """Create the entity on first sight, otherwise merge the new observation."""
        key = normalize_identifier(identifier)
        if not key:
            raise ValueError("identifier is required")
        incoming = canonical_facts(facts)

        for _ in range(2):
            try:
                return self._upsert_once(key, kind, incoming, org_id)
            except IntegrityError:
                # Another writer created the row first; the retry takes the merge path.
                logger.info("Concurrent entity insert for %s, retrying as merge", key)
        return self._upsert_once(key, kind, incoming, org_id)

    def _upsert_once(
        self,
        key: str,
        kind: str,
        incoming: dict[str, Any],
        org_id: str,
    ) -> EntityRecord:
        now = utcnow()
        with self.session_factory() as session:
            entity = session.query(EntityRecord).filter_by(identifier=key).one_or_none()

            if entity is None:
                entity = EntityRecord(
                    identifier=key,
                    entity_type=kind or "person",
                    last_scraped_at=now,
                    scraped_by_count=1,
                    total_reports=0,
                    org_id=org_id,
                )
                entity.set_canonical_data(incoming)
                session.add(entity)
                session.flush()
                session.add(EntityVersionRecord(
                    entity_id=entity.id,
                    version_data=entity.canonical_data,
                    change_source=ChangeSource.scrape.value,
                ))
                session.commit()
                logger.info("New entity %s created from observation of %s", entity.id, key)
                return entity

            existing = entity.get_canonical_data()
            merged = merge_facts(existing, incoming, sticky=STICKY_CONTACT_FIELDS)
            entity.scraped_by_count = (entity.scraped_by_count or 0) + 1
            entity.last_scraped_at = now
            if merged != existing:
                entity.set_canonical_data(merged)
                session.add(EntityVersionRecord(
                    entity_id=entity.id,
                    version_data=entity.canonical_data,
                    change_source=ChangeSource.scrape.value,
                ))
            session.commit()
            logger.info(
                "Entity %s updated from observation (changed=%s)", entity.id, merged != existing
            )
            return entity

    def update_from_report(
        self,
        entity_id: str,
        report_id: str,
        report_facts: dict[str, Any],
    ) -> EntityRecord:
        """Fold a finished report's subject facts into canonical data."""
        with self.session_factory() as session:
            entity = session.get(EntityRecord, entity_id)
            if entity is None:
                raise EntityNotFoundError(f"Entity {entity_id} not found")

            merged = merge_facts(entity.get_canonical_data(), report_facts)
            entity.set_canonical_data(merged)
            entity.total_reports = (entity.total_reports or 0) + 1
            entity.latest_report_id = report_id
            entity.latest_report_at = utcnow()
            session.add(EntityVersionRecord(
                entity_id=entity.id,
                version_data=entity.canonical_data,
                change_source=ChangeSource.report.value,
                report_id=report_id,
            ))
            session.commit()
            logger.info("Entity %s updated from report %s", entity_id, report_id)
            return entity

    def record_manual_edit(
        self,
        entity_id: str,
        facts: dict[str, Any],
        source: ChangeSource = ChangeSource.manual,
    ) -> EntityRecord:
        """Apply a human (``manual``) or CRM-sourced (``crm``) correction."""
        source = ChangeSource(source)
        if source not in (ChangeSource.manual, ChangeSource.crm):
            raise ValueError(f"record_manual_edit does not accept change source {source.value!r}")

        with self.session_factory() as session:
            entity = session.get(EntityRecord, entity_id)
            if entity is None:
                raise EntityNotFoundError(f"Entity {entity_id} not found")

            merged = merge_facts(entity.get_canonical_data(), canonical_facts(facts))
            entity.set_canonical_data(merged)
            session.add(EntityVersionRecord(
                entity_id=entity.id,
                version_data=entity.canonical_data,
                change_source=source.value,
            ))
            session.commit()
            logger.info("Entity %s edited (%s)", entity_id, source.value)
            return entity
