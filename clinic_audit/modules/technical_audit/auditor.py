"""Technical audit orchestration: validate, audit pages, aggregate, persist.

``TechnicalAuditor.run_audit`` is the single entry point.  Pages run
concurrently behind a per-run :class:`ConcurrencyGate`; each page is retried
once on a navigation timeout; the results are aggregated into an immutable
:class:`ClinicAuditRecord` and handed to the repository.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Iterable, Optional

from clinic_audit.modules.technical_audit.aggregator import AuditAggregator, grade_for
from clinic_audit.modules.technical_audit.checks import build_checks
from clinic_audit.modules.technical_audit.errors import (
    AuditCancelledError,
    AuditError,
    BrowserUnavailableError,
    InvalidRequestError,
    NavigationError,
    NoAuditablePagesError,
)
from clinic_audit.modules.technical_audit.page_auditor import PageAuditor
from clinic_audit.modules.technical_audit.records import (
    AUDIT_TYPE_CATEGORIES,
    CATEGORY_ORDER,
    AuditType,
    CheckCategory,
    ClinicAuditRecord,
    PageAuditResult,
    PageSignals,
    ViewportProfile,
)
from clinic_audit.modules.technical_audit.settings import AuditSettings
from clinic_audit.utils.validators import validate_clinic_id, validate_url

if TYPE_CHECKING:
    from clinic_audit.integrations.http_fetcher import HttpFetcher
    from clinic_audit.modules.technical_audit.inspector import PageInspector
    from clinic_audit.modules.technical_audit.repository import AuditRepository

logger = logging.getLogger(__name__)

MAX_NAVIGATION_RETRIES = 1


# ---------------------------------------------------------------------------
# Run-scoped helpers
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation handle passed into ``run_audit``.

    ``cancel()`` stops the run and returns a partial record built from the
    pages finished so far; ``cancel(hard=True)`` discards everything and
    makes ``run_audit`` raise :class:`AuditCancelledError`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.hard = False

    def cancel(self, hard: bool = False) -> None:
        self.hard = self.hard or hard
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ConcurrencyGate:
    """Bounds pages in flight and browser sessions open within one run."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self._pages = asyncio.Semaphore(limit)
        self._sessions = asyncio.Semaphore(limit)

    def page_slot(self) -> asyncio.Semaphore:
        return self._pages

    def session_slot(self) -> asyncio.Semaphore:
        return self._sessions


class BoundedInspector:
    """Inspector wrapper that holds a gate session slot for each inspection."""

    def __init__(self, inspector: "PageInspector", gate: ConcurrencyGate) -> None:
        self._inspector = inspector
        self._gate = gate

    async def inspect(self, url: str, profile: ViewportProfile) -> PageSignals:
        async with self._gate.session_slot():
            return await self._inspector.inspect(url, profile)


@dataclass(frozen=True)
class AuditRequest:
    clinic_id: str
    urls: tuple[str, ...]
    audit_type: AuditType
    profiles: tuple[ViewportProfile, ...]
    categories: tuple[CheckCategory, ...]
    concurrency: int


# ---------------------------------------------------------------------------
# TechnicalAuditor
# ---------------------------------------------------------------------------

class TechnicalAuditor:
    """Run technical audits for clinics and store the resulting snapshots."""

    def __init__(
        self,
        inspector: "PageInspector",
        fetcher: "HttpFetcher",
        repository: Optional["AuditRepository"] = None,
        settings: Optional[AuditSettings] = None,
    ) -> None:
        self._inspector = inspector
        self._fetcher = fetcher
        self._repository = repository
        self.settings = settings or AuditSettings()
        self._aggregator = AuditAggregator(thresholds=self.settings.issue_thresholds)

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run_audit(
        self,
        clinic_id: str,
        urls: Iterable[str],
        audit_type: Any = None,
        viewport_profiles: Optional[Iterable[Any]] = None,
        *,
        categories: Optional[Iterable[Any]] = None,
        concurrency: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ClinicAuditRecord:
        """Audit every URL for *clinic_id* and return the persisted record.

        Raises:
            InvalidRequestError: the request is malformed (nothing was run).
            BrowserUnavailableError: the browser capability failed mid-run.
            AuditCancelledError: *cancel_token* was hard-cancelled.
            NoAuditablePagesError: every page was unauditable.
        """
        request = self.validate_request(
            clinic_id, urls, audit_type, viewport_profiles, categories, concurrency,
        )
        start = time.monotonic()
        logger.info(
            "Starting %s audit for clinic %s: %d pages, profiles=%s, concurrency=%d",
            request.audit_type.value, request.clinic_id, len(request.urls),
            ",".join(p.value for p in request.profiles), request.concurrency,
        )

        pages = await self._audit_pages(request, cancel_token)

        if cancel_token is not None and cancel_token.hard:
            logger.warning("Audit for clinic %s hard-cancelled", request.clinic_id)
            raise AuditCancelledError(f"audit for clinic {request.clinic_id!r} was cancelled")
        partial = len(pages) < len(request.urls)

        summary = self._aggregator.aggregate(list(pages))
        if summary.score is None:
            failures = {p.url: p.failure or "every check errored" for p in pages}
            raise NoAuditablePagesError(request.clinic_id, failures)

        record = ClinicAuditRecord(
            clinic_id=request.clinic_id,
            audit_type=request.audit_type,
            score=summary.score,
            issues=summary.issues,
            recommendations=summary.recommendations,
            pages=pages,
            viewport_profiles=request.profiles,
            partial=partial,
        )
        if self._repository is not None:
            record = replace(record, record_id=self._repository.save(record))

        logger.info(
            "Audit for clinic %s complete in %.1fs: score=%.1f (%s), %d issues%s",
            request.clinic_id, time.monotonic() - start, record.score,
            grade_for(record.score), len(record.issues), " [partial]" if partial else "",
        )
        return record

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_request(
        self,
        clinic_id: Any,
        urls: Any,
        audit_type: Any = None,
        viewport_profiles: Optional[Iterable[Any]] = None,
        categories: Optional[Iterable[Any]] = None,
        concurrency: Any = None,
    ) -> AuditRequest:
        ok, err = validate_clinic_id(clinic_id)
        if not ok:
            raise InvalidRequestError(err)

        if isinstance(urls, str) or urls is None:
            raise InvalidRequestError("urls must be a list of page URLs")
        unique: list[str] = []
        for url in urls:
            ok, err = validate_url(url)
            if not ok:
                raise InvalidRequestError(f"{err} ({url!r})")
            url = url.strip()
            if url not in unique:
                unique.append(url)
        if not unique:
            raise InvalidRequestError("at least one URL is required")

        try:
            resolved_type = AuditType(audit_type or self.settings.default_audit_type)
        except ValueError as exc:
            raise InvalidRequestError(f"unknown audit type {audit_type!r}") from exc

        try:
            requested = {ViewportProfile(p) for p in (
                self.settings.default_profiles if viewport_profiles is None else viewport_profiles
            )}
        except ValueError as exc:
            raise InvalidRequestError(f"unknown viewport profile in {viewport_profiles!r}") from exc
        profiles = tuple(p for p in ViewportProfile if p in requested)
        if not profiles:
            raise InvalidRequestError("at least one viewport profile is required")

        if categories is None:
            wanted = set(AUDIT_TYPE_CATEGORIES[resolved_type])
        else:
            try:
                wanted = {CheckCategory(c) for c in categories}
            except ValueError as exc:
                raise InvalidRequestError(f"unknown check category in {categories!r}") from exc
        if ViewportProfile.MOBILE not in profiles:
            wanted.discard(CheckCategory.MOBILE)
        selected = tuple(c for c in CATEGORY_ORDER if c in wanted)
        if not selected:
            raise InvalidRequestError("no check categories to run for the requested profiles")

        limit = self.settings.concurrency if concurrency is None else concurrency
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidRequestError(f"concurrency must be a positive integer, got {limit!r}")

        return AuditRequest(
            clinic_id=clinic_id.strip(),
            urls=tuple(unique),
            audit_type=resolved_type,
            profiles=profiles,
            categories=selected,
            concurrency=limit,
        )

    # ------------------------------------------------------------------
    # Page scheduling
    # ------------------------------------------------------------------

    async def _audit_pages(
        self, request: AuditRequest, cancel_token: Optional[CancellationToken]
    ) -> tuple[PageAuditResult, ...]:
        gate = ConcurrencyGate(request.concurrency)
        inspector = BoundedInspector(self._inspector, gate)
        checks = build_checks(
            inspector,
            self._fetcher,
            performance_weights=self.settings.performance_weights,
            schema_weights=self.settings.schema_weights,
            fetch_timeout=self.settings.fetch_timeout,
        )
        page_auditor = PageAuditor(inspector, checks)

        tasks = {
            asyncio.create_task(self._audit_with_retry(page_auditor, gate, url, request)): url
            for url in request.urls
        }
        waiter = asyncio.create_task(cancel_token.wait()) if cancel_token is not None else None
        pending = set(tasks)
        finished: dict[str, PageAuditResult] = {}
        try:
            while pending:
                watch = (pending | {waiter}) if waiter is not None else pending
                done, _ = await asyncio.wait(watch, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is waiter:
                        continue
                    pending.discard(task)
                    # BrowserUnavailableError surfaces here; the finally block cancels the rest.
                    finished[tasks[task]] = task.result()
                if cancel_token is not None and cancel_token.cancelled:
                    logger.warning(
                        "Audit for clinic %s cancelled with %d pages in flight",
                        request.clinic_id, len(pending),
                    )
                    break
        except BrowserUnavailableError:
            logger.error("Browser unavailable; aborting audit for clinic %s", request.clinic_id)
            raise
        finally:
            leftovers = list(pending) + ([waiter] if waiter is not None else [])
            for task in leftovers:
                task.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        return tuple(finished[url] for url in request.urls if url in finished)

    async def _audit_with_retry(
        self,
        page_auditor: PageAuditor,
        gate: ConcurrencyGate,
        url: str,
        request: AuditRequest,
    ) -> PageAuditResult:
        """Audit one page; only infrastructure failures and cancellation escape."""
        async with gate.page_slot():
            attempts = 0
            while True:
                attempts += 1
                try:
                    page = await page_auditor.audit_page(url, request.categories, request.profiles)
                except BrowserUnavailableError:
                    raise
                except NavigationError as exc:
                    if exc.transient and attempts <= MAX_NAVIGATION_RETRIES:
                        logger.warning("Retrying %s after navigation timeout: %s", url, exc)
                        continue
                    logger.warning("Page %s unauditable after %d attempt(s): %s", url, attempts, exc)
                    return PageAuditResult.unreachable(url, request.categories, str(exc), attempts)
                except AuditError as exc:
                    logger.warning("Page %s unauditable: %s", url, exc)
                    return PageAuditResult.unreachable(url, request.categories, str(exc), attempts)
                except Exception as exc:
                    logger.warning("Unexpected failure auditing %s: %s", url, exc, exc_info=True)
                    message = f"unexpected error: {exc or type(exc).__name__}"
                    return PageAuditResult.unreachable(url, request.categories, message, attempts)

                logger.info("Audited %s: composite=%s", url, page.composite_score)
                return replace(page, attempts=attempts) if attempts > 1 else page

    # ------------------------------------------------------------------
    # Compare two audits
    # ------------------------------------------------------------------

    def compare_audits(
        self, previous: ClinicAuditRecord, current: ClinicAuditRecord
    ) -> dict[str, Any]:
        """Compare two audit snapshots and highlight changes."""
        cat1 = previous.category_scores()
        cat2 = current.category_scores()

        changes: dict[str, dict[str, Any]] = {}
        for cat in [c.value for c in CATEGORY_ORDER if c.value in cat1 or c.value in cat2]:
            old = cat1.get(cat)
            new = cat2.get(cat)
            diff = round(new - old, 1) if old is not None and new is not None else None
            if diff is None:
                direction = "new" if old is None else "dropped"
            else:
                direction = "improved" if diff > 0 else ("regressed" if diff < 0 else "unchanged")
            changes[cat] = {"old": old, "new": new, "diff": diff, "direction": direction}

        keys1 = {(i.category.value, i.title) for i in previous.issues}
        keys2 = {(i.category.value, i.title) for i in current.issues}

        return {
            "clinic_id": current.clinic_id,
            "previous_date": previous.created_at.isoformat(),
            "current_date": current.created_at.isoformat(),
            "overall_change": {
                "old": previous.score,
                "new": current.score,
                "diff": round(current.score - previous.score, 1),
            },
            "grade_change": {
                "old": grade_for(previous.score),
                "new": grade_for(current.score),
            },
            "category_changes": changes,
            "new_issues": [
                {"category": c, "title": t} for c, t in sorted(keys2 - keys1)
            ],
            "resolved_issues": [
                {"category": c, "title": t} for c, t in sorted(keys1 - keys2)
            ],
        }

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_audit_record(self, record: ClinicAuditRecord, filepath: str) -> str:
        """Write *record* to *filepath* as JSON."""
        os.makedirs(os.path.dirname(filepath) or ".", exist_ok=True)
        data = record.to_dict()
        data["grade"] = grade_for(record.score)
        with open(filepath, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        logger.info("Audit report exported to %s", filepath)
        return filepath
