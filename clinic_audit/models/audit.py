"""Clinic technical audit SQLAlchemy models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Float, ForeignKey, Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinic_audit.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClinicAudit(Base):
    """One immutable audit snapshot for a clinic."""

    __tablename__ = "clinic_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    clinic_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    audit_type: Mapped[str] = mapped_column(String(50), default="comprehensive")
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    viewport_profiles: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    category_scores: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    issues_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    recommendations_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    pages: Mapped[list["PageAudit"]] = relationship(
        back_populates="audit",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PageAudit.position",
    )

    def __repr__(self) -> str:
        return f"<ClinicAudit id={self.id} clinic={self.clinic_id!r} score={self.score}>"


class PageAudit(Base):
    """Per-page result within a clinic audit snapshot."""

    __tablename__ = "page_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("clinic_audits.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    composite_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    unauditable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failure: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    results_json: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    seo_elements_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    audited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    audit: Mapped["ClinicAudit"] = relationship(back_populates="pages")

    def __repr__(self) -> str:
        return f"<PageAudit id={self.id} url={self.url[:60]!r} score={self.composite_score}>"
