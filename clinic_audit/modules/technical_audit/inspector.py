"""Page Inspector: one browser context per call, raw signals out.

Timing marks and layout facts come from scripts evaluated in the page;
structural DOM facts and JSON-LD blocks are parsed from the rendered HTML.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from clinic_audit.modules.technical_audit.errors import (
    AuditError,
    BrowserUnavailableError,
    InspectionError,
    NavigationError,
    RenderError,
)
from clinic_audit.modules.technical_audit.records import (
    DomSummary,
    LayoutSummary,
    PageSignals,
    PageTimings,
    ViewportProfile,
)

if TYPE_CHECKING:
    from clinic_audit.integrations.browser import BrowserAutomation, BrowserContext, PageHandle

logger = logging.getLogger(__name__)

DEFAULT_NAVIGATION_TIMEOUT = 30.0

# Resolves after a short settle period so buffered observers can report.
TIMING_SCRIPT = """
() => new Promise((resolve) => {
  const out = {fcp: null, lcp: null, cls: 0, maxLongTask: 0, domContentLoaded: null, load: null};
  const nav = performance.getEntriesByType('navigation')[0];
  if (nav) {
    out.domContentLoaded = nav.domContentLoadedEventEnd;
    out.load = nav.loadEventEnd;
  }
  const paint = performance.getEntriesByName('first-contentful-paint')[0];
  if (paint) { out.fcp = paint.startTime; }
  const observe = (type, fn) => {
    try { new PerformanceObserver((list) => list.getEntries().forEach(fn)).observe({type, buffered: true}); }
    catch (e) { /* entry type unsupported */ }
  };
  observe('largest-contentful-paint', (e) => { out.lcp = e.renderTime || e.loadTime || e.startTime; });
  observe('layout-shift', (e) => { if (!e.hadRecentInput) { out.cls += e.value; } });
  observe('longtask', (e) => { out.maxLongTask = Math.max(out.maxLongTask, e.duration); });
  setTimeout(() => resolve(out), 300);
})
"""

LAYOUT_SCRIPT = """
() => {
  const targets = Array.from(document.querySelectorAll('a[href], button, input, select, textarea, [role="button"]'));
  let visible = 0;
  let small = 0;
  for (const el of targets) {
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) { continue; }
    visible += 1;
    if (r.width < 48 || r.height < 48) { small += 1; }
  }
  return {
    viewportWidth: window.innerWidth,
    documentWidth: Math.max(document.documentElement.scrollWidth, document.body ? document.body.scrollWidth : 0),
    tapTargets: visible,
    smallTapTargets: small,
  };
}
"""


def _same_site(href: str, host: str) -> bool:
    netloc = urlparse(href).netloc.lower()
    return netloc.replace("www.", "") == host.lower().replace("www.", "")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, (int, float)) and value >= 0:
        return round(float(value), 3)
    return None


def parse_dom(html: str, base_url: str) -> tuple[DomSummary, tuple[str, ...]]:
    """Extract structural DOM facts and raw JSON-LD block texts from HTML."""
    soup = BeautifulSoup(html, "html.parser")
    host = urlparse(base_url).netloc

    internal = external = 0
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith(("#", "mailto:", "tel:", "javascript:")):
            continue
        if _same_site(urljoin(base_url, href), host):
            internal += 1
        else:
            external += 1

    images = soup.find_all("img")
    missing_alt = sum(1 for img in images if not (img.get("alt") or "").strip())

    canonical_tag = soup.find("link", rel="canonical")
    robots_tag = soup.find("meta", attrs={"name": re.compile(r"^robots$", re.I)})
    viewport_tag = soup.find("meta", attrs={"name": re.compile(r"^viewport$", re.I)})
    description_tag = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    title_tag = soup.find("title")

    blocks = tuple(
        script.string or script.get_text() or ""
        for script in soup.find_all("script", type=re.compile(r"application/ld\+json", re.I))
    )

    dom = DomSummary(
        title=title_tag.get_text(strip=True) if title_tag else "",
        meta_description=(description_tag.get("content") or "").strip() if description_tag else "",
        h1_count=len(soup.find_all("h1")),
        h2_count=len(soup.find_all("h2")),
        image_count=len(images),
        images_missing_alt=missing_alt,
        internal_links=internal,
        external_links=external,
        canonical_url=(canonical_tag.get("href") or "") if canonical_tag else "",
        robots_meta=(robots_tag.get("content") or "") if robots_tag else "",
        viewport_meta=(viewport_tag.get("content") or "") if viewport_tag else "",
    )
    return dom, blocks


class PageInspector:
    """Drive one headless browser context against one URL."""

    def __init__(
        self,
        browser: "BrowserAutomation",
        navigation_timeout: float = DEFAULT_NAVIGATION_TIMEOUT,
    ) -> None:
        self._browser = browser
        self._timeout = navigation_timeout

    @asynccontextmanager
    async def _context(self, profile: ViewportProfile) -> AsyncIterator["BrowserContext"]:
        try:
            context = await self._browser.open_context(profile)
        except AuditError:
            raise
        except Exception as exc:
            raise BrowserUnavailableError(
                f"Browser context unavailable: {exc}", profile=profile.value,
            ) from exc
        try:
            yield context
        finally:
            try:
                await context.close()
            except Exception as exc:
                logger.warning("Failed to close %s browser context: %s", profile.value, exc)

    async def inspect(self, url: str, profile: ViewportProfile) -> PageSignals:
        """Navigate to *url* under *profile* and return its raw signals."""
        async with self._context(profile) as context:
            page = await self._navigate(context, url)
            try:
                return await self._extract(url, profile, page)
            except InspectionError:
                raise
            except Exception as exc:
                raise RenderError(url, f"signal extraction failed: {exc}") from exc
            finally:
                try:
                    await page.close()
                except Exception as exc:
                    logger.warning("Failed to close page %s: %s", url, exc)

    async def _navigate(self, context: "BrowserContext", url: str) -> "PageHandle":
        try:
            return await asyncio.wait_for(context.navigate(url, self._timeout), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise NavigationError(url, f"no response within {self._timeout}s", timed_out=True) from exc
        except AuditError:
            raise
        except Exception as exc:
            raise NavigationError(url, f"navigation failed: {exc}") from exc

    async def _extract(self, url: str, profile: ViewportProfile, page: "PageHandle") -> PageSignals:
        raw_timings = await page.evaluate(TIMING_SCRIPT) or {}
        raw_layout = await page.evaluate(LAYOUT_SCRIPT) or {}
        html = await page.content()
        final_url = page.url or url
        dom, blocks = parse_dom(html, final_url)

        timings = PageTimings(
            first_contentful_paint=_number(raw_timings.get("fcp")),
            largest_contentful_paint=_number(raw_timings.get("lcp")),
            cumulative_layout_shift=_number(raw_timings.get("cls")),
            interactivity_delay=_number(raw_timings.get("maxLongTask")),
            dom_content_loaded=_number(raw_timings.get("domContentLoaded")),
            load=_number(raw_timings.get("load")),
        )
        layout = LayoutSummary(
            viewport_width=int(raw_layout.get("viewportWidth") or 0),
            document_width=int(raw_layout.get("documentWidth") or 0),
            tap_targets=int(raw_layout.get("tapTargets") or 0),
            small_tap_targets=int(raw_layout.get("smallTapTargets") or 0),
        )
        logger.debug(
            "Inspected %s [%s] status=%s lcp=%s blocks=%d",
            url, profile.value, page.status, timings.largest_contentful_paint, len(blocks),
        )
        return PageSignals(
            url=url,
            profile=profile,
            final_url=final_url,
            status_code=page.status,
            timings=timings,
            dom=dom,
            layout=layout,
            structured_data=blocks,
        )
