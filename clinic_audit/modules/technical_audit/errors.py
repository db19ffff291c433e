"""Exception hierarchy for the technical audit engine.

Inspection and check failures are normally converted into data
(``CheckResult.error`` / unauditable pages).  Only request validation,
infrastructure failures, aggregation defects and cancellations escape
``TechnicalAuditor.run_audit``.
"""

from typing import Optional


class AuditError(Exception):
    """Base class for every error raised by the audit engine."""


class InvalidRequestError(AuditError):
    """The audit request is malformed; nothing was executed."""


class InspectionError(AuditError):
    """A Page Inspector call failed for a specific URL."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.message = message


class NavigationError(InspectionError):
    """The page could not be reached or did not respond in time."""

    def __init__(self, url: str, message: str, timed_out: bool = False) -> None:
        super().__init__(url, message)
        self.timed_out = timed_out

    @property
    def transient(self) -> bool:
        """Only timeouts are worth a retry."""
        return self.timed_out


class RenderError(InspectionError):
    """The page loaded but signal extraction failed."""


class CheckExecutionError(AuditError):
    """A check module failed internally."""

    def __init__(self, category: str, message: str) -> None:
        super().__init__(f"{category} check failed: {message}")
        self.category = category
        self.message = message


class AggregationError(AuditError):
    """Page results violate an aggregation invariant (a defect, never expected)."""


class BrowserUnavailableError(AuditError):
    """The browser automation capability itself cannot be used."""

    def __init__(self, message: str, profile: Optional[str] = None) -> None:
        super().__init__(message)
        self.profile = profile


class AuditCancelledError(AuditError):
    """The run was hard-cancelled and its partial results discarded."""


class NoAuditablePagesError(AuditError):
    """Every requested page was unauditable."""

    def __init__(self, clinic_id: str, failures: dict[str, str]) -> None:
        super().__init__(
            f"No auditable pages for clinic {clinic_id!r} ({len(failures)} failed)"
        )
        self.clinic_id = clinic_id
        self.failures = failures
