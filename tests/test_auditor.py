"""Tests for TechnicalAuditor.run_audit orchestration."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest

from clinic_audit.modules.technical_audit.auditor import CancellationToken, TechnicalAuditor
from clinic_audit.modules.technical_audit.errors import (
    AuditCancelledError,
    BrowserUnavailableError,
    InvalidRequestError,
    NavigationError,
    NoAuditablePagesError,
)
from clinic_audit.modules.technical_audit.records import (
    AuditType,
    CheckCategory,
    Severity,
    ViewportProfile,
)
from clinic_audit.modules.technical_audit.repository import SQLAuditRepository
from clinic_audit.modules.technical_audit.settings import AuditSettings

from conftest import ORGANIZATION_BLOCK, FakeFetcher, FakeInspector

HOME = "https://a.test/"
SERVICES = "https://a.test/services"


def _auditor(inspector=None, fetcher=None, repository=None, settings=None):
    return TechnicalAuditor(
        inspector or FakeInspector(),
        fetcher or FakeFetcher(),
        repository=repository,
        settings=settings,
    )


# ===========================================================================
# Validation
# ===========================================================================
class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"clinic_id": "", "urls": [HOME]},
        {"clinic_id": "   ", "urls": [HOME]},
        {"clinic_id": "clinic-1", "urls": []},
        {"clinic_id": "clinic-1", "urls": HOME},
        {"clinic_id": "clinic-1", "urls": ["ftp://a.test/file"]},
        {"clinic_id": "clinic-1", "urls": ["/relative/path"]},
        {"clinic_id": "clinic-1", "urls": [HOME], "audit_type": "deep"},
        {"clinic_id": "clinic-1", "urls": [HOME], "viewport_profiles": []},
        {"clinic_id": "clinic-1", "urls": [HOME], "viewport_profiles": ["tablet"]},
        {"clinic_id": "clinic-1", "urls": [HOME], "concurrency": 0},
        {"clinic_id": "clinic-1", "urls": [HOME], "categories": ["security"]},
        {"clinic_id": "clinic-1", "urls": [HOME], "categories": ["mobile"], "viewport_profiles": ["desktop"]},
    ])
    async def test_invalid_requests_rejected_before_inspection(self, kwargs):
        inspector = FakeInspector()
        with pytest.raises(InvalidRequestError):
            await _auditor(inspector).run_audit(**kwargs)
        assert inspector.calls == []

    def test_duplicates_removed_in_order(self):
        request = _auditor().validate_request("clinic-1", [SERVICES, HOME, SERVICES])
        assert request.urls == (SERVICES, HOME)

    @pytest.mark.parametrize("audit_type,expected", [
        ("comprehensive", (CheckCategory.PERFORMANCE, CheckCategory.CRAWLABILITY,
                           CheckCategory.SCHEMA, CheckCategory.MOBILE)),
        ("performance", (CheckCategory.PERFORMANCE,)),
        ("seo", (CheckCategory.SCHEMA,)),
        ("basic", (CheckCategory.CRAWLABILITY,)),
    ])
    def test_audit_type_categories(self, audit_type, expected):
        request = _auditor().validate_request("clinic-1", [HOME], audit_type)
        assert request.categories == expected

    def test_defaults_from_settings(self):
        settings = AuditSettings(concurrency=7, default_audit_type=AuditType.SEO,
                                 default_profiles=(ViewportProfile.MOBILE,))
        request = _auditor(settings=settings).validate_request("clinic-1", [HOME])
        assert request.concurrency == 7
        assert request.audit_type == AuditType.SEO
        assert request.profiles == (ViewportProfile.MOBILE,)


# ===========================================================================
# End-to-end scenario
# ===========================================================================
class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_clinic_scenario(self):
        inspector = FakeInspector(pages={
            HOME: {"blocks": (ORGANIZATION_BLOCK,)},
            SERVICES: {"blocks": ()},
        })
        record = await _auditor(inspector).run_audit(
            "clinic-1", [HOME, SERVICES], "comprehensive", ["desktop", "mobile"],
        )

        assert record.clinic_id == "clinic-1"
        assert record.audit_type == AuditType.COMPREHENSIVE
        assert record.viewport_profiles == (ViewportProfile.DESKTOP, ViewportProfile.MOBILE)
        assert not record.partial
        assert record.record_id is None
        assert [p.url for p in record.pages] == [HOME, SERVICES]

        home, services = record.pages
        for p in record.pages:
            assert p.results[CheckCategory.PERFORMANCE].score == pytest.approx(93.8, abs=0.05)
            assert p.results[CheckCategory.CRAWLABILITY].score == 100
            assert p.results[CheckCategory.MOBILE].score == 100
        assert home.results[CheckCategory.SCHEMA].score == 10
        assert services.results[CheckCategory.SCHEMA].score == 0

        assert record.score == round((home.composite_score + services.composite_score) / 2, 1)

        assert len(record.issues) == 1
        issue = record.issues[0]
        assert issue.category == CheckCategory.SCHEMA
        assert issue.title == "Missing structured data"
        assert issue.severity == Severity.CRITICAL
        assert issue.affected_pages == (HOME, SERVICES)

        assert len(record.recommendations) == 1
        assert record.recommendations[0].worst_page == SERVICES

    @pytest.mark.asyncio
    async def test_record_saved_through_repository(self):
        repository = MagicMock()
        repository.save.return_value = 42
        record = await _auditor(repository=repository).run_audit("clinic-1", [HOME])

        assert record.record_id == 42
        saved = repository.save.call_args[0][0]
        assert saved.record_id is None
        assert saved.clinic_id == "clinic-1"

    @pytest.mark.asyncio
    async def test_record_persisted_to_database(self, test_db):
        repository = SQLAuditRepository()
        record = await _auditor(repository=repository).run_audit("clinic-1", [HOME, SERVICES])

        assert record.record_id is not None
        latest = repository.find_latest("clinic-1")
        assert latest.record_id == record.record_id
        assert latest.score == record.score


# ===========================================================================
# Concurrency, retry and failure containment
# ===========================================================================
class TestExecution:

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self):
        inspector = FakeInspector(delay=0.01)
        urls = [f"https://a.test/page-{i}" for i in range(5)]
        record = await _auditor(inspector).run_audit("clinic-1", urls, concurrency=2)

        assert len(record.pages) == 5
        assert inspector.max_open <= 2
        assert inspector.open == 0

    @pytest.mark.asyncio
    async def test_timeout_retried_once_then_unauditable(self):
        inspector = FakeInspector(fail={SERVICES: NavigationError(SERVICES, "no response", timed_out=True)})
        record = await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES])

        assert inspector.calls_for(SERVICES) == 2
        failed = record.pages[1]
        assert failed.unauditable
        assert failed.attempts == 2
        assert all(r.failed for r in failed.results.values())
        assert record.score == record.pages[0].composite_score

    @pytest.mark.asyncio
    async def test_timeout_then_success(self):
        inspector = FakeInspector(fail_once={HOME: [NavigationError(HOME, "slow", timed_out=True)]})
        record = await _auditor(inspector).run_audit("clinic-1", [HOME])
        assert record.pages[0].attempts == 2
        assert not record.pages[0].unauditable

    @pytest.mark.asyncio
    async def test_unreachable_page_not_retried(self):
        inspector = FakeInspector(fail={SERVICES: NavigationError(SERVICES, "dns failure")})
        record = await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES])
        assert inspector.calls_for(SERVICES) == 1
        assert record.pages[1].failure.startswith("dns failure")

    @pytest.mark.asyncio
    async def test_no_auditable_pages(self):
        error = NavigationError(HOME, "refused")
        inspector = FakeInspector(fail={HOME: error, SERVICES: NavigationError(SERVICES, "refused")})
        with pytest.raises(NoAuditablePagesError) as exc_info:
            await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES])
        assert set(exc_info.value.failures) == {HOME, SERVICES}

    @pytest.mark.asyncio
    async def test_browser_unavailable_aborts_run(self):
        inspector = FakeInspector(fail={HOME: BrowserUnavailableError("browser crashed")}, hang={SERVICES})
        with pytest.raises(BrowserUnavailableError):
            await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES])
        assert inspector.open == 0


# ===========================================================================
# Cancellation
# ===========================================================================
class TestCancellation:

    @pytest.mark.asyncio
    async def test_soft_cancel_returns_partial_record(self):
        inspector = FakeInspector(hang={SERVICES})
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        record = await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES], cancel_token=token)

        assert record.partial
        assert [p.url for p in record.pages] == [HOME]
        assert inspector.open == 0

    @pytest.mark.asyncio
    async def test_hard_cancel_raises(self):
        inspector = FakeInspector(hang={SERVICES})
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, lambda: token.cancel(hard=True))

        with pytest.raises(AuditCancelledError):
            await _auditor(inspector).run_audit("clinic-1", [HOME, SERVICES], cancel_token=token)
        assert inspector.open == 0


# ===========================================================================
# Comparison and export
# ===========================================================================
class TestCompareAndExport:

    @pytest.mark.asyncio
    async def test_compare_audits(self):
        before = await _auditor(FakeInspector(pages={HOME: {"blocks": ()}})).run_audit("clinic-1", [HOME])
        after = await _auditor(FakeInspector()).run_audit("clinic-1", [HOME])

        diff = _auditor().compare_audits(before, after)

        assert diff["overall_change"]["diff"] > 0
        assert diff["category_changes"]["schema"]["direction"] == "improved"
        assert diff["category_changes"]["crawlability"]["direction"] == "unchanged"
        assert diff["resolved_issues"] == [{"category": "schema", "title": "Missing structured data"}]
        assert diff["new_issues"] == []

    @pytest.mark.asyncio
    async def test_export_audit_record(self, tmp_path):
        auditor = _auditor()
        record = await auditor.run_audit("clinic-1", [HOME])
        path = auditor.export_audit_record(record, str(tmp_path / "exports" / "clinic-1.json"))

        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        assert data["clinic_id"] == "clinic-1"
        assert data["score"] == record.score
        assert data["grade"] in ("A", "B", "C", "D", "F")
        assert len(data["pages"]) == 1
        assert set(data["category_scores"]) == {"performance", "crawlability", "schema", "mobile"}
