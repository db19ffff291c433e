"""SQLAlchemy ORM models; import every model so Base.metadata is populated."""

from clinic_audit.models.audit import (
    ClinicAudit,
    PageAudit,
)

__all__ = [
    "ClinicAudit",
    "PageAudit",
]
