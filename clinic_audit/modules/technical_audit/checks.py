"""The four technical check modules.

Each module turns page signals (or its own inspections / fetches) into one
scored :class:`CheckResult`.  Failures never escape a module: they come back
as an errored result so sibling checks on the same page are unaffected.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Optional
from urllib.parse import urlparse
from xml.etree import ElementTree as ET

from clinic_audit.integrations.http_fetcher import FetchResponse
from clinic_audit.modules.technical_audit.errors import (
    BrowserUnavailableError,
    CheckExecutionError,
    InspectionError,
)
from clinic_audit.modules.technical_audit.records import (
    CheckCategory,
    CheckResult,
    CrawlabilityDetail,
    MobileDetail,
    PageSignals,
    PerformanceDetail,
    ProfilePerformance,
    SchemaDetail,
    ViewportProfile,
)

if TYPE_CHECKING:
    from clinic_audit.integrations.http_fetcher import HttpFetcher
    from clinic_audit.modules.technical_audit.inspector import PageInspector

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Scoring constants (overridable through AuditSettings)
# ---------------------------------------------------------------------------

PERFORMANCE_WEIGHTS: dict[str, float] = {
    "lcp": 0.35,
    "fcp": 0.25,
    "cls": 0.20,
    "interactivity": 0.20,
}

# (good, poor) per metric; ms except CLS.
METRIC_THRESHOLDS: dict[str, tuple[float, float]] = {
    "lcp": (2500.0, 4000.0),
    "fcp": (1800.0, 3000.0),
    "cls": (0.1, 0.25),
    "interactivity": (100.0, 300.0),
}

SCHEMA_WEIGHTS: dict[str, int] = {
    "local_business": 30,
    "service_provider": 25,
    "faq": 20,
    "review": 15,
    "organization": 10,
}

SCHEMA_TYPE_GROUPS: dict[str, frozenset[str]] = {
    "local_business": frozenset({
        "LocalBusiness", "MedicalBusiness", "MedicalClinic", "DentalClinic",
        "HealthAndBeautyBusiness", "ProfessionalService",
    }),
    "service_provider": frozenset({
        "Dentist", "DentalClinic", "Physician", "MedicalClinic", "Optician", "Hospital",
    }),
    "faq": frozenset({"FAQPage"}),
    "review": frozenset({"Review", "AggregateRating"}),
    "organization": frozenset({"Organization", "Corporation", "MedicalOrganization"}),
}

MALFORMED_BLOCK_PENALTY = 2
SMALL_TAP_TARGET_RATIO = 0.2
CRAWL_FETCH_TIMEOUT = 5.0


def normalize_metric(value: float, good: float, poor: float) -> float:
    """Map a raw metric onto 0-100: ``good`` scores 90, ``poor`` scores 50.

    Linear between 0, good and poor; past ``poor`` it falls to 0 at twice ``poor``.
    """
    if value <= 0:
        return 100.0
    if value <= good:
        return 100.0 - 10.0 * value / good
    if value <= poor:
        return 90.0 - 40.0 * (value - good) / (poor - good)
    return max(0.0, 50.0 - 50.0 * (value - poor) / poor)


@dataclass(frozen=True)
class CheckTarget:
    """What a check gets to work with for one page."""
    url: str
    profiles: tuple[ViewportProfile, ...]
    signals: Optional[PageSignals] = None
    signals_error: Optional[InspectionError] = None


class CheckModule:
    """Base class: run the evaluation and contain its failures."""

    category: CheckCategory

    async def run(self, target: CheckTarget) -> CheckResult:
        try:
            return await self._evaluate(target)
        except BrowserUnavailableError:
            raise
        except InspectionError as exc:
            logger.warning("%s check: inspection failed: %s", self.category.value, exc)
            return CheckResult.failure(self.category, str(exc))
        except CheckExecutionError as exc:
            logger.warning("%s", exc)
            return CheckResult.failure(self.category, str(exc))
        except Exception as exc:
            err = CheckExecutionError(self.category.value, str(exc) or type(exc).__name__)
            logger.warning("%s (%s)", err, target.url, exc_info=True)
            return CheckResult.failure(self.category, str(err))

    async def _evaluate(self, target: CheckTarget) -> CheckResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------

class PerformanceCheck(CheckModule):
    """Core-Web-Vitals style score from one inspection per viewport profile."""

    category = CheckCategory.PERFORMANCE

    def __init__(
        self,
        inspector: "PageInspector",
        weights: Optional[dict[str, float]] = None,
        thresholds: Optional[dict[str, tuple[float, float]]] = None,
    ) -> None:
        self._inspector = inspector
        self._weights = weights or PERFORMANCE_WEIGHTS
        self._thresholds = thresholds or METRIC_THRESHOLDS

    async def _evaluate(self, target: CheckTarget) -> CheckResult:
        profiles = [p for p in (ViewportProfile.DESKTOP, ViewportProfile.MOBILE) if p in target.profiles]
        # The primary inspection already measured its own profile.
        shared = target.signals if target.signals is not None and target.signals.profile in profiles else None
        fresh = [p for p in profiles if shared is None or p != shared.profile]
        outcomes = await asyncio.gather(
            *(self._inspector.inspect(target.url, p) for p in fresh),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        measured = ([shared] if shared is not None else []) + list(outcomes)
        scored = {s.profile: self.score_profile(s) for s in measured}
        detail = PerformanceDetail(
            desktop=scored.get(ViewportProfile.DESKTOP),
            mobile=scored.get(ViewportProfile.MOBILE),
        )
        score = sum(p.score for p in detail.profiles()) / len(detail.profiles())
        return CheckResult.success(self.category, score, detail)

    def score_profile(self, signals: PageSignals) -> ProfilePerformance:
        t = signals.timings
        metrics = {
            "lcp": t.largest_contentful_paint,
            "fcp": t.first_contentful_paint,
            "cls": t.cumulative_layout_shift,
            "interactivity": t.interactivity_delay,
        }
        raw_scores = {
            name: normalize_metric(value, *self._thresholds[name])
            for name, value in metrics.items()
            if value is not None
        }
        if not raw_scores:
            raise CheckExecutionError(
                self.category.value, f"no timing metrics captured ({signals.profile.value})",
            )
        # Renormalise over the metrics the browser actually reported.
        total_weight = sum(self._weights[name] for name in raw_scores)
        if total_weight <= 0:
            raise CheckExecutionError(
                self.category.value,
                f"measured metrics {sorted(raw_scores)} all carry zero weight ({signals.profile.value})",
            )
        score = sum(raw_scores[name] * self._weights[name] for name in raw_scores) / total_weight
        return ProfilePerformance(
            profile=signals.profile,
            score=round(score, 1),
            metric_scores={name: round(value, 1) for name, value in raw_scores.items()},
            timings=t,
        )


# ---------------------------------------------------------------------------
# Crawlability
# ---------------------------------------------------------------------------

def _parse_robots(text: str, path: str) -> tuple[list[str], bool]:
    """Return declared sitemaps and whether *path* is disallowed for ``*``."""
    sitemaps: list[str] = []
    disallowed: list[str] = []
    allowed: list[str] = []
    agents: list[str] = []
    in_rules = False
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()
        if key == "user-agent":
            if in_rules:
                agents = []
                in_rules = False
            agents.append(value)
        elif key == "sitemap":
            if value:
                sitemaps.append(value)
        elif key in ("disallow", "allow"):
            in_rules = True
            if "*" not in agents or not value:
                continue
            (disallowed if key == "disallow" else allowed).append(value)

    longest_block = max((len(p) for p in disallowed if path.startswith(p)), default=-1)
    longest_allow = max((len(p) for p in allowed if path.startswith(p)), default=-1)
    return sitemaps, longest_block > longest_allow


def _well_formed_xml(text: str) -> bool:
    if not text.strip():
        return False
    try:
        ET.fromstring(text)
    except ET.ParseError:
        return False
    return True


class CrawlabilityCheck(CheckModule):
    """robots.txt and sitemap.xml presence, fetched over plain HTTP."""

    category = CheckCategory.CRAWLABILITY

    def __init__(self, fetcher: "HttpFetcher", timeout: float = CRAWL_FETCH_TIMEOUT) -> None:
        self._fetcher = fetcher
        self._timeout = timeout

    async def _safe_get(self, url: str) -> FetchResponse:
        try:
            return await self._fetcher.get(url, self._timeout)
        except (asyncio.TimeoutError, OSError, ValueError) as exc:
            logger.warning("Fetch of %s failed: %s", url, exc)
            return FetchResponse(url=url, error=str(exc) or type(exc).__name__)

    async def _evaluate(self, target: CheckTarget) -> CheckResult:
        parsed = urlparse(target.url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        robots, sitemap = await asyncio.gather(
            self._safe_get(origin + "/robots.txt"),
            self._safe_get(origin + "/sitemap.xml"),
        )

        robots_ok = robots.ok
        sitemap_ok = sitemap.ok and _well_formed_xml(sitemap.text)
        declared: list[str] = []
        blocked = False
        if robots_ok:
            declared, blocked = _parse_robots(robots.text, parsed.path or "/")

        score = 70 + (20 if robots_ok else 0) + (10 if sitemap_ok else 0)
        detail = CrawlabilityDetail(
            robots_txt=robots_ok,
            sitemap_valid=sitemap_ok,
            robots_status=robots.status,
            sitemap_status=sitemap.status,
            declared_sitemaps=tuple(declared),
            blocked_by_robots=blocked,
        )
        return CheckResult.success(self.category, min(score, 100), detail)


# ---------------------------------------------------------------------------
# Schema markup
# ---------------------------------------------------------------------------

def _walk_nodes(data: Any) -> Iterator[dict[str, Any]]:
    """Yield every JSON object in a JSON-LD document (covers ``@graph``)."""
    if isinstance(data, dict):
        yield data
        for value in data.values():
            if isinstance(value, (dict, list)):
                yield from _walk_nodes(value)
    elif isinstance(data, list):
        for item in data:
            yield from _walk_nodes(item)


def _node_types(node: dict[str, Any]) -> set[str]:
    raw = node.get("@type", [])
    values = raw if isinstance(raw, list) else [raw]
    types = set()
    for value in values:
        if isinstance(value, str) and value:
            types.add(value.rsplit("/", 1)[-1].split(":")[-1])
    return types


class SchemaMarkupCheck(CheckModule):
    """Score JSON-LD blocks by the presence of business-relevant schema types."""

    category = CheckCategory.SCHEMA

    def __init__(
        self,
        weights: Optional[dict[str, int]] = None,
        type_groups: Optional[dict[str, frozenset[str]]] = None,
        malformed_penalty: int = MALFORMED_BLOCK_PENALTY,
    ) -> None:
        self._weights = weights or SCHEMA_WEIGHTS
        self._groups = type_groups or SCHEMA_TYPE_GROUPS
        self._penalty = malformed_penalty

    async def _evaluate(self, target: CheckTarget) -> CheckResult:
        if target.signals is None:
            if target.signals_error is not None:
                raise target.signals_error
            raise CheckExecutionError(self.category.value, "no page signals available")
        return self.score_blocks(target.signals.structured_data)

    def score_blocks(self, blocks: tuple[str, ...]) -> CheckResult:
        nodes: list[dict[str, Any]] = []
        malformed = 0
        for raw in blocks:
            try:
                data = json.loads(raw)
            except (ValueError, TypeError, RecursionError):
                malformed += 1
                continue
            if not isinstance(data, (dict, list)):
                malformed += 1
                continue
            nodes.extend(_walk_nodes(data))

        found: set[str] = set()
        has_rating = False
        for node in nodes:
            found |= _node_types(node)
            if "review" in node or "aggregateRating" in node:
                has_rating = True

        flags = {group: bool(found & members) for group, members in self._groups.items()}
        flags["review"] = flags.get("review", False) or has_rating

        earned = sum(self._weights.get(group, 0) for group, present in flags.items() if present)
        score = max(min(earned, 100) - self._penalty * malformed, 0)
        detail = SchemaDetail(
            block_count=len(blocks),
            malformed_blocks=malformed,
            schema_types=tuple(sorted(found)),
            local_business=flags.get("local_business", False),
            service_provider=flags.get("service_provider", False),
            faq=flags.get("faq", False),
            review=flags["review"],
            organization=flags.get("organization", False),
        )
        return CheckResult.success(self.category, score, detail)


# ---------------------------------------------------------------------------
# Mobile optimization
# ---------------------------------------------------------------------------

class MobileOptimizationCheck(CheckModule):
    """Four 25-point mobile heuristics from a mobile-viewport inspection."""

    category = CheckCategory.MOBILE

    def __init__(self, inspector: "PageInspector", small_target_ratio: float = SMALL_TAP_TARGET_RATIO) -> None:
        self._inspector = inspector
        self._ratio = small_target_ratio

    async def _evaluate(self, target: CheckTarget) -> CheckResult:
        if ViewportProfile.MOBILE not in target.profiles:
            raise CheckExecutionError(self.category.value, "mobile viewport profile not requested")
        if target.signals is not None and target.signals.profile == ViewportProfile.MOBILE:
            return self.score_signals(target.signals)
        mobile = await self._inspector.inspect(target.url, ViewportProfile.MOBILE)
        reference = None
        if target.signals is not None and target.signals.profile == ViewportProfile.DESKTOP:
            reference = target.signals
        return self.score_signals(mobile, reference)

    def score_signals(self, mobile: PageSignals, reference: Optional[PageSignals] = None) -> CheckResult:
        layout = mobile.layout
        viewport_ok = "width=device-width" in mobile.dom.viewport_meta.replace(" ", "").lower()
        responsive = 0 < layout.viewport_width and layout.document_width <= layout.viewport_width
        if layout.tap_targets == 0:
            touch_ok = True
        else:
            touch_ok = layout.small_tap_targets / layout.tap_targets <= self._ratio
        index_ready = self._index_ready(mobile, reference)

        passed = sum([viewport_ok, responsive, touch_ok, index_ready])
        detail = MobileDetail(
            viewport_configured=viewport_ok,
            responsive_layout=responsive,
            touch_targets_ok=touch_ok,
            mobile_index_ready=index_ready,
            viewport_width=layout.viewport_width,
            document_width=layout.document_width,
            tap_targets=layout.tap_targets,
            small_tap_targets=layout.small_tap_targets,
        )
        return CheckResult.success(self.category, 25 * passed, detail)

    @staticmethod
    def _index_ready(mobile: PageSignals, reference: Optional[PageSignals]) -> bool:
        """Mobile page is indexable and carries the desktop page's content."""
        if mobile.status_code is not None and mobile.status_code >= 400:
            return False
        if mobile.dom.noindex:
            return False
        if reference is None:
            return True
        ref = reference.dom
        if ref.h1_count > 0 and mobile.dom.h1_count == 0:
            return False
        if mobile.dom.internal_links * 2 < ref.internal_links:
            return False
        return len(mobile.structured_data) >= len(reference.structured_data)


def build_checks(
    inspector: "PageInspector",
    fetcher: "HttpFetcher",
    performance_weights: Optional[dict[str, float]] = None,
    schema_weights: Optional[dict[str, int]] = None,
    fetch_timeout: float = CRAWL_FETCH_TIMEOUT,
) -> dict[CheckCategory, CheckModule]:
    """One instance of every check module, keyed by category."""
    return {
        CheckCategory.PERFORMANCE: PerformanceCheck(inspector, weights=performance_weights),
        CheckCategory.CRAWLABILITY: CrawlabilityCheck(fetcher, timeout=fetch_timeout),
        CheckCategory.SCHEMA: SchemaMarkupCheck(weights=schema_weights),
        CheckCategory.MOBILE: MobileOptimizationCheck(inspector),
    }
