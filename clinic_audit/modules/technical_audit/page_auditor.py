"""Page Auditor: run every requested check for one URL and settle them all."""

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, Optional

from clinic_audit.modules.technical_audit.checks import CheckModule, CheckTarget
from clinic_audit.modules.technical_audit.errors import (
    BrowserUnavailableError,
    CheckExecutionError,
    RenderError,
)
from clinic_audit.modules.technical_audit.records import (
    CATEGORY_ORDER,
    CheckCategory,
    CheckResult,
    PageAuditResult,
    PageSignals,
    SeoElements,
    ViewportProfile,
)

if TYPE_CHECKING:
    from clinic_audit.modules.technical_audit.inspector import PageInspector

logger = logging.getLogger(__name__)


def primary_profile(profiles: Iterable[ViewportProfile]) -> ViewportProfile:
    """Desktop when requested, otherwise mobile."""
    return ViewportProfile.DESKTOP if ViewportProfile.DESKTOP in tuple(profiles) else ViewportProfile.MOBILE


class PageAuditor:
    """Audit one page across the requested check categories.

    The primary-profile inspection runs first.  It supplies the page's SEO
    elements, is shared with the checks that measure the same profile, and
    doubles as the page's reachability gate: a :class:`NavigationError`
    there propagates so the caller can apply its retry policy.  Everything
    after that point is contained into the returned :class:`PageAuditResult`.
    """

    def __init__(self, inspector: "PageInspector", checks: dict[CheckCategory, CheckModule]) -> None:
        self._inspector = inspector
        self._checks = checks

    async def audit_page(
        self,
        url: str,
        categories: Iterable[CheckCategory],
        profiles: Iterable[ViewportProfile],
    ) -> PageAuditResult:
        profiles = tuple(profiles)
        wanted = set(categories)
        selected = [
            c for c in CATEGORY_ORDER
            if c in wanted and not (c == CheckCategory.MOBILE and ViewportProfile.MOBILE not in profiles)
        ]

        signals: Optional[PageSignals] = None
        signals_error: Optional[RenderError] = None
        try:
            signals = await self._inspector.inspect(url, primary_profile(profiles))
        except RenderError as exc:
            logger.warning("Render failed for %s: %s", url, exc)
            signals_error = exc

        target = CheckTarget(url=url, profiles=profiles, signals=signals, signals_error=signals_error)
        outcomes = await asyncio.gather(
            *(self._checks[c].run(target) for c in selected),
            return_exceptions=True,
        )

        results: list[CheckResult] = []
        infrastructure: Optional[BrowserUnavailableError] = None
        for category, outcome in zip(selected, outcomes):
            if isinstance(outcome, BrowserUnavailableError):
                infrastructure = infrastructure or outcome
            elif isinstance(outcome, asyncio.CancelledError):
                raise outcome
            elif isinstance(outcome, BaseException):
                err = CheckExecutionError(category.value, str(outcome) or type(outcome).__name__)
                logger.warning("%s (%s)", err, url)
                results.append(CheckResult.failure(category, str(err)))
            else:
                results.append(outcome)
        if infrastructure is not None:
            raise infrastructure

        seo = SeoElements.from_dom(signals.dom) if signals is not None else None
        page = PageAuditResult.compose(url, results, seo_elements=seo)
        logger.debug("Page %s composite=%s", url, page.composite_score)
        return page
