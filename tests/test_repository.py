"""Tests for SQLAuditRepository snapshot persistence."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

from clinic_audit.modules.technical_audit.aggregator import AuditAggregator
from clinic_audit.modules.technical_audit.records import (
    AuditType,
    CheckCategory,
    CheckResult,
    ClinicAuditRecord,
    PageAuditResult,
    PerformanceDetail,
    SchemaDetail,
    SeoElements,
    ViewportProfile,
)
from clinic_audit.modules.technical_audit.checks import MobileOptimizationCheck, PerformanceCheck
from clinic_audit.modules.technical_audit.repository import SQLAuditRepository

from conftest import FakeInspector, make_signals

URL = "https://a.test/"
SEO = SeoElements(
    title="Bright Smile Dental",
    meta_description="Family dentistry in Austin.",
    h1_count=1,
    h2_count=3,
    image_count=4,
    images_missing_alt=1,
    internal_links=12,
    external_links=2,
    canonical_url=URL,
)


def _record(clinic_id="clinic-1", schema_score=0, created_at=None):
    perf = PerformanceCheck(FakeInspector()).score_profile(make_signals(URL))
    results = [
        CheckResult.success(CheckCategory.PERFORMANCE, perf.score, PerformanceDetail(desktop=perf)),
        CheckResult.success(CheckCategory.SCHEMA, schema_score, SchemaDetail(block_count=0, malformed_blocks=0)),
        MobileOptimizationCheck(FakeInspector()).score_signals(make_signals(URL, ViewportProfile.MOBILE)),
    ]
    pages = (
        PageAuditResult.compose(URL, results, seo_elements=SEO),
        PageAuditResult.unreachable("https://a.test/down", (CheckCategory.SCHEMA,), "refused", attempts=1),
    )
    summary = AuditAggregator().aggregate(list(pages))
    return ClinicAuditRecord(
        clinic_id=clinic_id,
        audit_type=AuditType.COMPREHENSIVE,
        score=summary.score,
        issues=summary.issues,
        recommendations=summary.recommendations,
        pages=pages,
        created_at=created_at or datetime.now(timezone.utc),
    )


class TestSQLAuditRepository:

    def test_save_and_find_latest_round_trip(self, test_db):
        repository = SQLAuditRepository()
        record = _record()
        record_id = repository.save(record)

        loaded = repository.find_latest("clinic-1")

        assert loaded is not None
        assert loaded.record_id == record_id
        assert loaded.to_dict() == replace(record, record_id=record_id).to_dict()

    def test_find_latest_unknown_clinic(self, test_db):
        assert SQLAuditRepository().find_latest("nobody") is None

    def test_history_is_append_only_newest_first(self, test_db):
        repository = SQLAuditRepository()
        now = datetime.now(timezone.utc)
        first = repository.save(_record(created_at=now - timedelta(days=7)))
        second = repository.save(_record(schema_score=100, created_at=now))
        repository.save(_record(clinic_id="clinic-2"))

        records = repository.history("clinic-1")

        assert [r.record_id for r in records] == [second, first]
        assert records[0].issues == ()
        assert records[1].issues[0].title == "Missing structured data"

    def test_history_limit(self, test_db):
        repository = SQLAuditRepository()
        for _ in range(3):
            repository.save(_record())
        assert len(repository.history("clinic-1", limit=2)) == 2

    def test_loaded_timestamps_are_utc(self, test_db):
        repository = SQLAuditRepository()
        repository.save(_record())
        loaded = repository.find_latest("clinic-1")
        assert loaded.created_at.tzinfo is not None
        assert all(p.audited_at.tzinfo is not None for p in loaded.pages)

    def test_seo_elements_persisted_per_page(self, test_db):
        repository = SQLAuditRepository()
        repository.save(_record())
        loaded = repository.find_latest("clinic-1")
        assert loaded.pages[0].seo_elements == SEO
        assert loaded.pages[1].seo_elements is None
