"""Audit Aggregator: merge page results into one clinic-level summary.

Pure and deterministic: the same page results always produce the same score,
the same issues in the same order and the same recommendations.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from clinic_audit.modules.technical_audit.errors import AggregationError
from clinic_audit.modules.technical_audit.records import (
    CATEGORY_ORDER,
    CheckCategory,
    CheckResult,
    CrawlabilityDetail,
    Issue,
    MobileDetail,
    PageAuditResult,
    PerformanceDetail,
    Recommendation,
    SchemaDetail,
    Severity,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Thresholds and grades
# ---------------------------------------------------------------------------

ISSUE_THRESHOLDS: dict[CheckCategory, float] = {
    CheckCategory.PERFORMANCE: 70.0,
    CheckCategory.CRAWLABILITY: 80.0,
    CheckCategory.SCHEMA: 60.0,
    CheckCategory.MOBILE: 75.0,
}

_GRADE_MAP = [
    (90, "A"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
    (0, "F"),
]


def grade_for(score: Optional[float]) -> str:
    if score is None:
        return "?"
    for threshold, letter in _GRADE_MAP:
        if score >= threshold:
            return letter
    return "F"


def severity_for_gap(gap: float) -> Optional[Severity]:
    """Severity for a score *gap* points below its threshold."""
    if gap >= 30:
        return Severity.CRITICAL
    if gap >= 15:
        return Severity.HIGH
    if gap > 0:
        return Severity.MEDIUM
    return None


# ---------------------------------------------------------------------------
# Canonical issue texts: title -> (description, recommendation)
# ---------------------------------------------------------------------------

_METRIC_TITLES = {
    "lcp": "Slow largest contentful paint",
    "fcp": "Slow first contentful paint",
    "cls": "Unstable page layout",
    "interactivity": "High interaction delay",
}

_ISSUE_TEXT: dict[str, tuple[str, str]] = {
    "Slow largest contentful paint": (
        "The main content takes too long to render.",
        "Compress hero images, preload the largest element and reduce render-blocking resources.",
    ),
    "Slow first contentful paint": (
        "The first content appears late after navigation.",
        "Inline critical CSS, defer non-essential scripts and enable server-side caching.",
    ),
    "Unstable page layout": (
        "Visible elements shift while the page loads.",
        "Reserve space for images, embeds and ads with explicit width and height.",
    ),
    "High interaction delay": (
        "Long main-thread tasks delay responses to user input.",
        "Split long JavaScript tasks and defer third-party widgets.",
    ),
    "Missing robots.txt and sitemap.xml": (
        "Neither robots.txt nor a valid sitemap.xml is served at the site root.",
        "Publish a robots.txt that references an XML sitemap listing every clinic page.",
    ),
    "Missing robots.txt": (
        "No robots.txt is served at the site root.",
        "Publish a robots.txt with crawl rules and a Sitemap: declaration.",
    ),
    "Missing or invalid sitemap.xml": (
        "sitemap.xml is missing or is not well-formed XML.",
        "Generate a valid XML sitemap and submit it in Search Console.",
    ),
    "Missing structured data": (
        "The page lacks the business schema search engines use for local results.",
        "Add JSON-LD for LocalBusiness/Dentist, FAQPage and aggregate ratings.",
    ),
    "Malformed structured data": (
        "Every JSON-LD block on the page fails to parse.",
        "Validate the JSON-LD blocks with the Rich Results Test and fix syntax errors.",
    ),
    "Missing mobile viewport configuration": (
        "No viewport meta tag with width=device-width is set.",
        'Add <meta name="viewport" content="width=device-width, initial-scale=1">.',
    ),
    "Content wider than mobile screen": (
        "The rendered page is wider than the mobile viewport and scrolls sideways.",
        "Use fluid widths and media queries so content fits a 375px screen.",
    ),
    "Tap targets too small": (
        "Too many links and buttons are smaller than 48x48 CSS pixels.",
        "Enlarge touch targets and add spacing between adjacent links.",
    ),
    "Page not ready for mobile-first indexing": (
        "The mobile page is not indexable or is missing content present on desktop.",
        "Serve the same headings, links and structured data on mobile and remove noindex.",
    ),
}

_RECOMMENDATION_TEXT: dict[CheckCategory, tuple[str, tuple[str, ...]]] = {
    CheckCategory.PERFORMANCE: (
        "Improve page load performance",
        (
            "Optimise and compress images",
            "Minify CSS and JavaScript",
            "Enable browser caching",
            "Consider a CDN",
        ),
    ),
    CheckCategory.CRAWLABILITY: (
        "Make the site easy to crawl",
        (
            "Publish robots.txt at the site root",
            "Generate sitemap.xml from the CMS",
            "Reference the sitemap from robots.txt",
            "Submit the sitemap in Search Console",
        ),
    ),
    CheckCategory.SCHEMA: (
        "Add clinic structured data",
        (
            "Add LocalBusiness or DentalClinic JSON-LD with address and hours",
            "Mark up practitioners with Dentist or Physician types",
            "Add FAQPage markup to service pages",
            "Expose review ratings through aggregateRating",
        ),
    ),
    CheckCategory.MOBILE: (
        "Improve the mobile experience",
        (
            "Set a responsive viewport meta tag",
            "Remove fixed-width containers",
            "Enlarge tap targets to at least 48x48px",
            "Keep mobile content in parity with desktop",
        ),
    ),
}


def _performance_title(detail: PerformanceDetail) -> str:
    worst_metric = None
    worst_score = None
    for profile in detail.profiles():
        for metric in _METRIC_TITLES:
            value = profile.metric_scores.get(metric)
            if value is not None and (worst_score is None or value < worst_score):
                worst_metric, worst_score = metric, value
    return _METRIC_TITLES[worst_metric or "lcp"]


def _crawlability_title(detail: CrawlabilityDetail) -> str:
    if not detail.robots_txt and not detail.sitemap_valid:
        return "Missing robots.txt and sitemap.xml"
    if not detail.robots_txt:
        return "Missing robots.txt"
    return "Missing or invalid sitemap.xml"


def _schema_title(detail: SchemaDetail) -> str:
    if detail.malformed_blocks and not detail.valid_blocks:
        return "Malformed structured data"
    return "Missing structured data"


def _mobile_title(detail: MobileDetail) -> str:
    if not detail.viewport_configured:
        return "Missing mobile viewport configuration"
    if not detail.responsive_layout:
        return "Content wider than mobile screen"
    if not detail.touch_targets_ok:
        return "Tap targets too small"
    return "Page not ready for mobile-first indexing"


def canonical_title(result: CheckResult) -> str:
    """Stable issue title for a scored result, derived from its detail."""
    detail = result.detail
    if isinstance(detail, PerformanceDetail):
        return _performance_title(detail)
    if isinstance(detail, CrawlabilityDetail):
        return _crawlability_title(detail)
    if isinstance(detail, SchemaDetail):
        return _schema_title(detail)
    if isinstance(detail, MobileDetail):
        return _mobile_title(detail)
    raise AggregationError(f"no detail to derive an issue from ({result.category.value})")


# ---------------------------------------------------------------------------
# AuditAggregator
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AggregateSummary:
    score: Optional[float]
    issues: tuple[Issue, ...]
    recommendations: tuple[Recommendation, ...]


class AuditAggregator:
    """Combine page results into a score, issues and recommendations."""

    def __init__(self, thresholds: Optional[dict[CheckCategory, float]] = None) -> None:
        self._thresholds = dict(ISSUE_THRESHOLDS)
        if thresholds:
            self._thresholds.update(thresholds)

    def aggregate(self, pages: list[PageAuditResult]) -> AggregateSummary:
        self._validate(pages)
        auditable = [p for p in pages if not p.unauditable]
        score = None
        if auditable:
            score = round(sum(p.composite_score for p in auditable) / len(auditable), 1)

        issues = self.derive_issues(pages)
        recommendations = self.derive_recommendations(pages, issues)
        logger.debug(
            "Aggregated %d pages (%d auditable): score=%s issues=%d",
            len(pages), len(auditable), score, len(issues),
        )
        return AggregateSummary(score=score, issues=issues, recommendations=recommendations)

    @staticmethod
    def _validate(pages: list[PageAuditResult]) -> None:
        seen: set[str] = set()
        for page in pages:
            if page.url in seen:
                raise AggregationError(f"duplicate page result for {page.url}")
            seen.add(page.url)
            if page.unauditable != (page.composite_score is None):
                raise AggregationError(
                    f"composite {page.composite_score!r} inconsistent with "
                    f"unauditable={page.unauditable} for {page.url}"
                )

    def derive_issues(self, pages: list[PageAuditResult]) -> tuple[Issue, ...]:
        merged: dict[tuple[CheckCategory, str], dict] = {}
        for page in pages:
            for category, result in page.results.items():
                if result.failed:
                    continue
                severity = severity_for_gap(self._thresholds[category] - result.score)
                if severity is None:
                    continue
                title = canonical_title(result)
                entry = merged.setdefault((category, title), {"severity": severity, "pages": []})
                if severity.rank < entry["severity"].rank:
                    entry["severity"] = severity
                if page.url not in entry["pages"]:
                    entry["pages"].append(page.url)

        issues = []
        for (category, title), entry in merged.items():
            description, recommendation = _ISSUE_TEXT[title]
            issues.append(Issue(
                severity=entry["severity"],
                category=category,
                title=title,
                description=description,
                affected_pages=tuple(entry["pages"]),
                recommendation=recommendation,
            ))
        issues.sort(key=lambda i: (
            i.severity.rank, -len(i.affected_pages), i.category.value, i.affected_pages[0], i.title,
        ))
        return tuple(issues)

    def derive_recommendations(
        self, pages: list[PageAuditResult], issues: tuple[Issue, ...]
    ) -> tuple[Recommendation, ...]:
        recs = []
        for category in CATEGORY_ORDER:
            category_issues = [i for i in issues if i.category == category]
            if not category_issues:
                continue
            worst_url, worst_score = self._worst_page(pages, category)
            priority = min((i.severity for i in category_issues), key=lambda s: s.rank)
            affected = {url for i in category_issues for url in i.affected_pages}
            title, steps = _RECOMMENDATION_TEXT[category]
            threshold = self._thresholds[category]
            recs.append(Recommendation(
                category=category,
                priority=priority,
                title=title,
                description=(
                    f"{len(affected)} page(s) score below the {category.value} threshold of "
                    f"{threshold:g}. Start with {worst_url} ({worst_score:g})."
                ),
                worst_page=worst_url,
                worst_score=worst_score,
                affected_pages=len(affected),
                steps=steps,
            ))
        recs.sort(key=lambda r: (r.priority.rank, r.category.value))
        return tuple(recs)

    @staticmethod
    def _worst_page(pages: list[PageAuditResult], category: CheckCategory) -> tuple[str, float]:
        worst: Optional[tuple[str, float]] = None
        for page in pages:
            result = page.results.get(category)
            if result is None or result.failed:
                continue
            if worst is None or result.score < worst[1]:
                worst = (page.url, result.score)
        if worst is None:
            raise AggregationError(f"issues without a scored {category.value} result")
        return worst
