"""Tests for record serialisation and derived views."""

import json

from clinic_audit.modules.technical_audit.aggregator import AuditAggregator
from clinic_audit.modules.technical_audit.checks import PerformanceCheck, SchemaMarkupCheck
from clinic_audit.modules.technical_audit.records import (
    AuditType,
    CheckCategory,
    CheckResult,
    ClinicAuditRecord,
    CrawlabilityDetail,
    PageAuditResult,
    PerformanceDetail,
    SeoElements,
)

from conftest import FakeInspector, make_signals

HOME = "https://a.test/"
DOWN = "https://a.test/down"


def _record():
    signals = make_signals(HOME)
    perf = PerformanceCheck(FakeInspector()).score_profile(signals)
    results = [
        CheckResult.success(CheckCategory.PERFORMANCE, perf.score, PerformanceDetail(desktop=perf)),
        CheckResult.success(
            CheckCategory.CRAWLABILITY, 90,
            CrawlabilityDetail(
                robots_txt=True,
                sitemap_valid=False,
                robots_status=200,
                sitemap_status=404,
                declared_sitemaps=("https://a.test/sitemap.xml",),
            ),
        ),
        SchemaMarkupCheck().score_blocks(signals.structured_data[:1] + ("{broken",)),
        CheckResult.failure(CheckCategory.MOBILE, "mobile check failed: boom"),
    ]
    pages = (
        PageAuditResult.compose(HOME, results, seo_elements=SeoElements.from_dom(signals.dom)),
        PageAuditResult.unreachable(DOWN, (CheckCategory.SCHEMA,), "navigation failed", attempts=2),
    )
    summary = AuditAggregator().aggregate(list(pages))
    return ClinicAuditRecord(
        clinic_id="clinic-1",
        audit_type=AuditType.COMPREHENSIVE,
        score=summary.score,
        issues=summary.issues,
        recommendations=summary.recommendations,
        pages=pages,
        partial=True,
        record_id=7,
    )


class TestClinicAuditRecord:

    def test_json_round_trip(self):
        record = _record()
        restored = ClinicAuditRecord.from_dict(json.loads(json.dumps(record.to_dict())))

        assert restored == record
        assert restored.to_dict() == record.to_dict()

    def test_page_split(self):
        record = _record()
        assert [p.url for p in record.auditable_pages] == [HOME]
        assert [p.url for p in record.unauditable_pages] == [DOWN]

    def test_category_scores_skip_errored_results(self):
        scores = _record().category_scores()
        assert set(scores) == {"performance", "crawlability", "schema"}
        assert scores["crawlability"] == 90


class TestSeoElements:

    def test_from_dom_copies_evidence(self):
        dom = make_signals(HOME, h1_count=2, internal_links=7).dom
        seo = SeoElements.from_dom(dom)
        assert seo.title == "Bright Smile Dental"
        assert seo.h1_count == 2
        assert seo.internal_links == 7

    def test_page_without_evidence_round_trips(self):
        page = PageAuditResult.unreachable(DOWN, (CheckCategory.SCHEMA,), "refused")
        assert page.to_dict()["seo_elements"] is None
        assert PageAuditResult.from_dict(page.to_dict()).seo_elements is None
