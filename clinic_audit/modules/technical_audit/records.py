"""Typed records exchanged between the audit components.

Every record is a frozen dataclass.  Check details form a closed union keyed
by :class:`CheckCategory` so downstream code can dispatch exhaustively instead
of poking at loosely-typed dicts.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    """Convert enums, tuples and datetimes into JSON-safe primitives."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {_jsonable(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ViewportProfile(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"


class CheckCategory(str, Enum):
    PERFORMANCE = "performance"
    CRAWLABILITY = "crawlability"
    SCHEMA = "schema"
    MOBILE = "mobile"


CATEGORY_ORDER: tuple[CheckCategory, ...] = tuple(CheckCategory)


class AuditType(str, Enum):
    BASIC = "basic"
    COMPREHENSIVE = "comprehensive"
    PERFORMANCE = "performance"
    SEO = "seo"


AUDIT_TYPE_CATEGORIES: dict[AuditType, tuple[CheckCategory, ...]] = {
    AuditType.COMPREHENSIVE: CATEGORY_ORDER,
    AuditType.PERFORMANCE: (CheckCategory.PERFORMANCE,),
    AuditType.SEO: (CheckCategory.SCHEMA,),
    AuditType.BASIC: (CheckCategory.CRAWLABILITY,),
}


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for the most severe level."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


# ---------------------------------------------------------------------------
# Page signals (never persisted)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageTimings:
    """Load timing samples in milliseconds (layout shift is unitless)."""
    first_contentful_paint: Optional[float] = None
    largest_contentful_paint: Optional[float] = None
    cumulative_layout_shift: Optional[float] = None
    interactivity_delay: Optional[float] = None
    dom_content_loaded: Optional[float] = None
    load: Optional[float] = None


@dataclass(frozen=True)
class DomSummary:
    """Structural facts extracted from the rendered DOM."""
    title: str = ""
    meta_description: str = ""
    h1_count: int = 0
    h2_count: int = 0
    image_count: int = 0
    images_missing_alt: int = 0
    internal_links: int = 0
    external_links: int = 0
    canonical_url: str = ""
    robots_meta: str = ""
    viewport_meta: str = ""

    @property
    def noindex(self) -> bool:
        return "noindex" in self.robots_meta.lower()


@dataclass(frozen=True)
class LayoutSummary:
    viewport_width: int = 0
    document_width: int = 0
    tap_targets: int = 0
    small_tap_targets: int = 0


@dataclass(frozen=True)
class PageSignals:
    """Raw extraction from one browser inspection of one URL."""
    url: str
    profile: ViewportProfile
    final_url: str = ""
    status_code: Optional[int] = None
    timings: PageTimings = field(default_factory=PageTimings)
    dom: DomSummary = field(default_factory=DomSummary)
    layout: LayoutSummary = field(default_factory=LayoutSummary)
    structured_data: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Check details
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfilePerformance:
    profile: ViewportProfile
    score: float
    metric_scores: dict[str, float]
    timings: PageTimings

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfilePerformance":
        return cls(
            profile=ViewportProfile(data["profile"]),
            score=float(data["score"]),
            metric_scores={k: float(v) for k, v in data.get("metric_scores", {}).items()},
            timings=PageTimings(**_known_fields(PageTimings, data.get("timings", {}))),
        )


@dataclass(frozen=True)
class PerformanceDetail:
    desktop: Optional[ProfilePerformance] = None
    mobile: Optional[ProfilePerformance] = None

    def profiles(self) -> list[ProfilePerformance]:
        return [p for p in (self.desktop, self.mobile) if p is not None]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PerformanceDetail":
        return cls(
            desktop=ProfilePerformance.from_dict(data["desktop"]) if data.get("desktop") else None,
            mobile=ProfilePerformance.from_dict(data["mobile"]) if data.get("mobile") else None,
        )


@dataclass(frozen=True)
class CrawlabilityDetail:
    robots_txt: bool
    sitemap_valid: bool
    robots_status: Optional[int] = None
    sitemap_status: Optional[int] = None
    declared_sitemaps: tuple[str, ...] = ()
    blocked_by_robots: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CrawlabilityDetail":
        values = _known_fields(cls, data)
        values["declared_sitemaps"] = tuple(values.get("declared_sitemaps", ()))
        return cls(**values)


@dataclass(frozen=True)
class SchemaDetail:
    block_count: int
    malformed_blocks: int
    schema_types: tuple[str, ...] = ()
    local_business: bool = False
    service_provider: bool = False
    faq: bool = False
    review: bool = False
    organization: bool = False

    @property
    def valid_blocks(self) -> int:
        return self.block_count - self.malformed_blocks

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchemaDetail":
        values = _known_fields(cls, data)
        values["schema_types"] = tuple(values.get("schema_types", ()))
        return cls(**values)


@dataclass(frozen=True)
class MobileDetail:
    viewport_configured: bool
    responsive_layout: bool
    touch_targets_ok: bool
    mobile_index_ready: bool
    viewport_width: int = 0
    document_width: int = 0
    tap_targets: int = 0
    small_tap_targets: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MobileDetail":
        return cls(**_known_fields(cls, data))


CheckDetail = Union[PerformanceDetail, CrawlabilityDetail, SchemaDetail, MobileDetail]

DETAIL_TYPES: dict[CheckCategory, type] = {
    CheckCategory.PERFORMANCE: PerformanceDetail,
    CheckCategory.CRAWLABILITY: CrawlabilityDetail,
    CheckCategory.SCHEMA: SchemaDetail,
    CheckCategory.MOBILE: MobileDetail,
}


# ---------------------------------------------------------------------------
# Check and page results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CheckResult:
    """One category's scored finding for one page.

    Exactly one of ``detail`` or ``error`` is populated.  Errored results
    carry no score: an error means the check could not complete, which is
    not the same thing as a low score.
    """
    category: CheckCategory
    score: Optional[float] = None
    detail: Optional[CheckDetail] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.detail is None) == (self.error is None):
            raise ValueError("CheckResult requires exactly one of detail or error")
        if self.detail is not None:
            expected = DETAIL_TYPES[self.category]
            if not isinstance(self.detail, expected):
                raise TypeError(
                    f"{self.category.value} result needs {expected.__name__}, "
                    f"got {type(self.detail).__name__}"
                )
            if self.score is None or not 0 <= self.score <= 100:
                raise ValueError(f"score out of range: {self.score!r}")
        elif self.score is not None:
            raise ValueError("errored check results carry no score")

    @classmethod
    def success(cls, category: CheckCategory, score: float, detail: CheckDetail) -> "CheckResult":
        return cls(category=category, score=round(min(max(score, 0.0), 100.0), 1), detail=detail)

    @classmethod
    def failure(cls, category: CheckCategory, error: str) -> "CheckResult":
        return cls(category=category, error=error)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "score": self.score,
            "detail": _jsonable(asdict(self.detail)) if self.detail is not None else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckResult":
        category = CheckCategory(data["category"])
        if data.get("error") is not None:
            return cls.failure(category, data["error"])
        detail = DETAIL_TYPES[category].from_dict(data["detail"])
        return cls(category=category, score=float(data["score"]), detail=detail)


@dataclass(frozen=True)
class SeoElements:
    """On-page SEO evidence captured from the primary rendering (unscored)."""
    title: str = ""
    meta_description: str = ""
    h1_count: int = 0
    h2_count: int = 0
    image_count: int = 0
    images_missing_alt: int = 0
    internal_links: int = 0
    external_links: int = 0
    canonical_url: str = ""
    robots_meta: str = ""

    @classmethod
    def from_dom(cls, dom: DomSummary) -> "SeoElements":
        return cls(**{f.name: getattr(dom, f.name) for f in fields(cls)})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SeoElements":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class PageAuditResult:
    """Full audit of one page: its check results and composite score."""
    url: str
    audited_at: datetime
    results: dict[CheckCategory, CheckResult]
    composite_score: Optional[float]
    unauditable: bool
    failure: Optional[str] = None
    attempts: int = 1
    seo_elements: Optional[SeoElements] = None

    @classmethod
    def compose(
        cls,
        url: str,
        results: list[CheckResult],
        attempts: int = 1,
        audited_at: Optional[datetime] = None,
        seo_elements: Optional[SeoElements] = None,
    ) -> "PageAuditResult":
        """Build a page result; the composite is the mean of non-errored scores."""
        ordered = {
            r.category: r
            for r in sorted(results, key=lambda r: CATEGORY_ORDER.index(r.category))
        }
        scores = [r.score for r in ordered.values() if not r.failed]
        composite = round(sum(scores) / len(scores), 1) if scores else None
        return cls(
            url=url,
            audited_at=audited_at or _utcnow(),
            results=ordered,
            composite_score=composite,
            unauditable=composite is None,
            attempts=attempts,
            seo_elements=seo_elements,
        )

    @classmethod
    def unreachable(
        cls,
        url: str,
        categories: tuple[CheckCategory, ...],
        error: str,
        attempts: int = 1,
    ) -> "PageAuditResult":
        """A page that failed as a whole; every requested check carries the error."""
        results = {c: CheckResult.failure(c, error) for c in CATEGORY_ORDER if c in categories}
        return cls(
            url=url,
            audited_at=_utcnow(),
            results=results,
            composite_score=None,
            unauditable=True,
            failure=error,
            attempts=attempts,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "audited_at": self.audited_at.isoformat(),
            "results": [r.to_dict() for r in self.results.values()],
            "composite_score": self.composite_score,
            "unauditable": self.unauditable,
            "failure": self.failure,
            "attempts": self.attempts,
            "seo_elements": self.seo_elements.to_dict() if self.seo_elements is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageAuditResult":
        results = [CheckResult.from_dict(r) for r in data.get("results", [])]
        seo = data.get("seo_elements")
        return cls(
            url=data["url"],
            audited_at=_parse_datetime(data["audited_at"]),
            results={r.category: r for r in results},
            composite_score=data.get("composite_score"),
            unauditable=bool(data.get("unauditable", False)),
            failure=data.get("failure"),
            attempts=int(data.get("attempts", 1)),
            seo_elements=SeoElements.from_dict(seo) if seo else None,
        )


# ---------------------------------------------------------------------------
# Derived findings and the clinic-level record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Issue:
    severity: Severity
    category: CheckCategory
    title: str
    description: str
    affected_pages: tuple[str, ...]
    recommendation: str

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        return cls(
            severity=Severity(data["severity"]),
            category=CheckCategory(data["category"]),
            title=data["title"],
            description=data.get("description", ""),
            affected_pages=tuple(data.get("affected_pages", ())),
            recommendation=data.get("recommendation", ""),
        )


@dataclass(frozen=True)
class Recommendation:
    category: CheckCategory
    priority: Severity
    title: str
    description: str
    worst_page: str
    worst_score: float
    affected_pages: int
    steps: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recommendation":
        return cls(
            category=CheckCategory(data["category"]),
            priority=Severity(data["priority"]),
            title=data["title"],
            description=data.get("description", ""),
            worst_page=data.get("worst_page", ""),
            worst_score=float(data.get("worst_score", 0.0)),
            affected_pages=int(data.get("affected_pages", 0)),
            steps=tuple(data.get("steps", ())),
        )


@dataclass(frozen=True)
class ClinicAuditRecord:
    """Immutable snapshot of one audit run across all requested pages."""
    clinic_id: str
    audit_type: AuditType
    score: float
    issues: tuple[Issue, ...]
    recommendations: tuple[Recommendation, ...]
    pages: tuple[PageAuditResult, ...]
    viewport_profiles: tuple[ViewportProfile, ...] = (ViewportProfile.DESKTOP, ViewportProfile.MOBILE)
    created_at: datetime = field(default_factory=_utcnow)
    partial: bool = False
    record_id: Optional[Any] = None

    @property
    def auditable_pages(self) -> list[PageAuditResult]:
        return [p for p in self.pages if not p.unauditable]

    @property
    def unauditable_pages(self) -> list[PageAuditResult]:
        return [p for p in self.pages if p.unauditable]

    def category_scores(self) -> dict[str, float]:
        """Mean non-errored score per category across pages."""
        buckets: dict[str, list[float]] = {}
        for page in self.pages:
            for category, result in page.results.items():
                if not result.failed:
                    buckets.setdefault(category.value, []).append(result.score)
        return {
            c.value: round(sum(buckets[c.value]) / len(buckets[c.value]), 1)
            for c in CATEGORY_ORDER
            if c.value in buckets
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "clinic_id": self.clinic_id,
            "audit_type": self.audit_type.value,
            "score": self.score,
            "viewport_profiles": [p.value for p in self.viewport_profiles],
            "created_at": self.created_at.isoformat(),
            "partial": self.partial,
            "category_scores": self.category_scores(),
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "pages": [p.to_dict() for p in self.pages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClinicAuditRecord":
        return cls(
            clinic_id=data["clinic_id"],
            audit_type=AuditType(data["audit_type"]),
            score=float(data["score"]),
            issues=tuple(Issue.from_dict(i) for i in data.get("issues", [])),
            recommendations=tuple(
                Recommendation.from_dict(r) for r in data.get("recommendations", [])
            ),
            pages=tuple(PageAuditResult.from_dict(p) for p in data.get("pages", [])),
            viewport_profiles=tuple(
                ViewportProfile(p) for p in data.get("viewport_profiles", ("desktop", "mobile"))
            ),
            created_at=_parse_datetime(data["created_at"]) if data.get("created_at") else _utcnow(),
            partial=bool(data.get("partial", False)),
            record_id=data.get("record_id"),
        )
