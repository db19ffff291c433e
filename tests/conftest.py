"""Shared pytest fixtures for the Clinic SEO Audit tests."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import pytest

# Ensure project root is on sys.path so 'clinic_audit' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from clinic_audit.integrations.http_fetcher import FetchResponse  # noqa: E402
from clinic_audit.modules.technical_audit.records import (  # noqa: E402
    DomSummary,
    LayoutSummary,
    PageSignals,
    PageTimings,
    ViewportProfile,
)

# ---------------------------------------------------------------------------
# Canned JSON-LD blocks
# ---------------------------------------------------------------------------

DENTAL_CLINIC_BLOCK = json.dumps({
    "@context": "https://schema.org",
    "@type": "DentalClinic",
    "name": "Bright Smile Dental",
    "address": {"@type": "PostalAddress", "addressLocality": "Austin"},
    "aggregateRating": {"@type": "AggregateRating", "ratingValue": "4.8", "reviewCount": "120"},
})
FAQ_BLOCK = json.dumps({
    "@context": "https://schema.org",
    "@type": "FAQPage",
    "mainEntity": [{"@type": "Question", "name": "Do you take walk-ins?"}],
})
ORGANIZATION_BLOCK = json.dumps({
    "@context": "https://schema.org",
    "@type": "Organization",
    "name": "Bright Smile Group",
})
FULL_SCHEMA = (DENTAL_CLINIC_BLOCK, FAQ_BLOCK, ORGANIZATION_BLOCK)

ROBOTS_TXT = "User-agent: *\nDisallow: /admin\nSitemap: https://a.test/sitemap.xml\n"
SITEMAP_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
    "<url><loc>https://a.test/</loc></url></urlset>"
)


def make_signals(
    url: str,
    profile: ViewportProfile = ViewportProfile.DESKTOP,
    lcp: Optional[float] = 2000.0,
    fcp: Optional[float] = 1000.0,
    cls: Optional[float] = 0.05,
    fid: Optional[float] = 50.0,
    blocks: tuple = FULL_SCHEMA,
    viewport_meta: str = "width=device-width, initial-scale=1",
    robots_meta: str = "",
    h1_count: int = 1,
    internal_links: int = 10,
    tap_targets: int = 10,
    small_tap_targets: int = 1,
    document_width: Optional[int] = None,
    status_code: int = 200,
) -> PageSignals:
    """Build page signals with healthy defaults; override what a test cares about."""
    viewport_width = 375 if profile == ViewportProfile.MOBILE else 1200
    return PageSignals(
        url=url,
        profile=profile,
        final_url=url,
        status_code=status_code,
        timings=PageTimings(
            first_contentful_paint=fcp,
            largest_contentful_paint=lcp,
            cumulative_layout_shift=cls,
            interactivity_delay=fid,
            dom_content_loaded=800.0,
            load=1500.0,
        ),
        dom=DomSummary(
            title="Bright Smile Dental",
            h1_count=h1_count,
            internal_links=internal_links,
            viewport_meta=viewport_meta,
            robots_meta=robots_meta,
        ),
        layout=LayoutSummary(
            viewport_width=viewport_width,
            document_width=viewport_width if document_width is None else document_width,
            tap_targets=tap_targets,
            small_tap_targets=small_tap_targets,
        ),
        structured_data=tuple(blocks),
    )


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeInspector:
    """In-memory Page Inspector that records calls and open sessions.

    ``pages`` maps url -> make_signals overrides; ``fail`` maps url -> an
    exception raised on every call; ``fail_once`` maps url -> a list of
    exceptions (or None for success) consumed one per call; urls in ``hang``
    never complete until cancelled.
    """

    def __init__(self, pages=None, fail=None, fail_once=None, hang=(), delay: float = 0.0):
        self.pages = pages or {}
        self.fail = dict(fail or {})
        self.fail_once = {url: list(errs) for url, errs in (fail_once or {}).items()}
        self.hang = set(hang)
        self.delay = delay
        self.calls: list[tuple[str, ViewportProfile]] = []
        self.open = 0
        self.max_open = 0

    def calls_for(self, url: str) -> int:
        return sum(1 for u, _ in self.calls if u == url)

    async def inspect(self, url: str, profile: ViewportProfile) -> PageSignals:
        self.calls.append((url, profile))
        self.open += 1
        self.max_open = max(self.max_open, self.open)
        try:
            if url in self.hang:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay)
            if url in self.fail:
                raise self.fail[url]
            queued = self.fail_once.get(url)
            if queued:
                exc = queued.pop(0)
                if exc is not None:
                    raise exc
            return make_signals(url, profile, **self.pages.get(url, {}))
        finally:
            self.open -= 1


class FakeFetcher:
    """HTTP fetcher double keyed by URL path."""

    def __init__(self, responses=None):
        self.responses = {
            "/robots.txt": (200, ROBOTS_TXT),
            "/sitemap.xml": (200, SITEMAP_XML),
        }
        self.responses.update(responses or {})
        self.calls: list[str] = []

    async def get(self, url: str, timeout: float = 5.0) -> FetchResponse:
        self.calls.append(url)
        path = "/" + url.split("/", 3)[-1]
        status, text = self.responses.get(path, (404, ""))
        if status is None:
            return FetchResponse(url=url, error=text or "connection refused")
        return FetchResponse(url=url, status=status, text=text)


class FakePage:
    def __init__(self, url, html="", status=200, timings=None, layout=None, evaluate_error=None):
        self.url = url
        self.status = status
        self.html = html
        self.timings = timings or {}
        self.layout = layout or {}
        self.evaluate_error = evaluate_error
        self.closed = False

    async def evaluate(self, script):
        if self.evaluate_error is not None:
            raise self.evaluate_error
        return self.timings if "PerformanceObserver" in script else self.layout

    async def content(self):
        return self.html

    async def close(self):
        self.closed = True


class FakeContext:
    def __init__(self, page=None, navigate_error=None, navigate_delay: float = 0.0):
        self.page = page
        self.navigate_error = navigate_error
        self.navigate_delay = navigate_delay
        self.closed = False

    async def navigate(self, url, timeout):
        if self.navigate_delay:
            await asyncio.sleep(self.navigate_delay)
        if self.navigate_error is not None:
            raise self.navigate_error
        return self.page

    async def close(self):
        self.closed = True


class FakeBrowser:
    """Hands out pre-built contexts; ``open_error`` simulates a dead browser."""

    def __init__(self, context=None, open_error=None):
        self.context = context
        self.open_error = open_error
        self.opened: list[ViewportProfile] = []

    async def open_context(self, profile):
        if self.open_error is not None:
            raise self.open_error
        self.opened.append(profile)
        return self.context


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_db_engine():
    """Autouse fixture: reset the global DB engine before and after every test."""
    from clinic_audit.database import reset_engine
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def test_db():
    """Provide an in-memory SQLite database with all tables created."""
    from clinic_audit.database import reset_engine, init_db
    reset_engine()
    db_url = "sqlite:///:memory:"
    init_db(database_url=db_url, echo=False)
    yield db_url


@pytest.fixture()
def fake_inspector():
    return FakeInspector()


@pytest.fixture()
def fake_fetcher():
    return FakeFetcher()
