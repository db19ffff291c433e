"""Technical SEO audit module."""

from clinic_audit.modules.technical_audit.aggregator import AuditAggregator
from clinic_audit.modules.technical_audit.auditor import CancellationToken, TechnicalAuditor
from clinic_audit.modules.technical_audit.inspector import PageInspector
from clinic_audit.modules.technical_audit.page_auditor import PageAuditor
from clinic_audit.modules.technical_audit.records import (
    AuditType,
    CheckCategory,
    ClinicAuditRecord,
    PageAuditResult,
    Severity,
    ViewportProfile,
)
from clinic_audit.modules.technical_audit.settings import AuditSettings

__all__ = [
    "AuditAggregator",
    "AuditSettings",
    "AuditType",
    "CancellationToken",
    "CheckCategory",
    "ClinicAuditRecord",
    "PageAuditResult",
    "PageAuditor",
    "PageInspector",
    "Severity",
    "TechnicalAuditor",
    "ViewportProfile",
]
