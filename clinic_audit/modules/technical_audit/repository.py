"""Persistence for clinic audit snapshots.

History is append-only: every run inserts a new ``clinic_audits`` row with
its ``page_audits`` children; nothing is ever updated in place.
"""

import logging
from typing import Any, Optional, Protocol

from sqlalchemy import select

from clinic_audit.database import get_session
from clinic_audit.models.audit import ClinicAudit, PageAudit
from clinic_audit.modules.technical_audit.records import ClinicAuditRecord

logger = logging.getLogger(__name__)


class AuditRepository(Protocol):
    def save(self, record: ClinicAuditRecord) -> Any: ...

    def find_latest(self, clinic_id: str) -> Optional[ClinicAuditRecord]: ...


class SQLAuditRepository:
    """Store :class:`ClinicAuditRecord` snapshots through the SQLAlchemy session factory."""

    def save(self, record: ClinicAuditRecord) -> int:
        with get_session() as session:
            row = ClinicAudit(
                clinic_id=record.clinic_id,
                audit_type=record.audit_type.value,
                score=record.score,
                viewport_profiles=[p.value for p in record.viewport_profiles],
                category_scores=record.category_scores(),
                issues_json=[i.to_dict() for i in record.issues],
                recommendations_json=[r.to_dict() for r in record.recommendations],
                partial=record.partial,
                created_at=record.created_at,
            )
            for position, page in enumerate(record.pages):
                row.pages.append(PageAudit(
                    position=position,
                    url=page.url,
                    composite_score=page.composite_score,
                    unauditable=page.unauditable,
                    failure=page.failure,
                    attempts=page.attempts,
                    results_json=[r.to_dict() for r in page.results.values()],
                    seo_elements_json=page.seo_elements.to_dict() if page.seo_elements is not None else None,
                    audited_at=page.audited_at,
                ))
            session.add(row)
            session.flush()
            record_id = row.id
        logger.info("Audit snapshot %s saved for clinic %s", record_id, record.clinic_id)
        return record_id

    def find_latest(self, clinic_id: str) -> Optional[ClinicAuditRecord]:
        records = self.history(clinic_id, limit=1)
        return records[0] if records else None

    def history(self, clinic_id: str, limit: int = 10) -> list[ClinicAuditRecord]:
        """Snapshots for *clinic_id*, newest first."""
        stmt = (
            select(ClinicAudit)
            .where(ClinicAudit.clinic_id == clinic_id)
            .order_by(ClinicAudit.created_at.desc(), ClinicAudit.id.desc())
            .limit(limit)
        )
        with get_session() as session:
            rows = session.scalars(stmt).all()
            return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row: ClinicAudit) -> ClinicAuditRecord:
        return ClinicAuditRecord.from_dict({
            "record_id": row.id,
            "clinic_id": row.clinic_id,
            "audit_type": row.audit_type,
            "score": row.score,
            "viewport_profiles": row.viewport_profiles or [],
            "created_at": row.created_at,
            "partial": row.partial,
            "issues": row.issues_json or [],
            "recommendations": row.recommendations_json or [],
            "pages": [
                {
                    "url": p.url,
                    "audited_at": p.audited_at,
                    "results": p.results_json or [],
                    "composite_score": p.composite_score,
                    "unauditable": p.unauditable,
                    "failure": p.failure,
                    "attempts": p.attempts,
                    "seo_elements": p.seo_elements_json,
                }
                for p in row.pages
            ],
        })
