"""Headless browser capability backed by Playwright.

The audit engine only depends on the small protocol defined here
(``open_context`` / ``navigate`` / ``evaluate`` / ``content`` / ``close``);
:class:`PlaywrightBrowser` is the default implementation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext as PWBrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from clinic_audit.modules.technical_audit.errors import (
    BrowserUnavailableError,
    NavigationError,
)
from clinic_audit.modules.technical_audit.records import ViewportProfile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Viewport / throttling profiles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfileSpec:
    width: int
    height: int
    user_agent: str
    is_mobile: bool
    latency_ms: float
    download_kbps: float
    upload_kbps: float
    cpu_slowdown: float


PROFILE_SPECS: dict[ViewportProfile, ProfileSpec] = {
    ViewportProfile.DESKTOP: ProfileSpec(
        width=1200,
        height=800,
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
        ),
        is_mobile=False,
        latency_ms=40,
        download_kbps=10240,
        upload_kbps=10240,
        cpu_slowdown=1,
    ),
    ViewportProfile.MOBILE: ProfileSpec(
        width=375,
        height=667,
        user_agent=(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 17_2 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/17.2 Mobile/15E148 Safari/604.1"
        ),
        is_mobile=True,
        latency_ms=150,
        download_kbps=1638.4,
        upload_kbps=750,
        cpu_slowdown=4,
    ),
}


# ---------------------------------------------------------------------------
# Capability protocol
# ---------------------------------------------------------------------------

class PageHandle(Protocol):
    url: str
    status: Optional[int]

    async def evaluate(self, script: str) -> Any: ...

    async def content(self) -> str: ...

    async def close(self) -> None: ...


class BrowserContext(Protocol):
    async def navigate(self, url: str, timeout: float) -> PageHandle: ...

    async def close(self) -> None: ...


class BrowserAutomation(Protocol):
    async def open_context(self, profile: ViewportProfile) -> BrowserContext: ...


# ---------------------------------------------------------------------------
# Playwright implementation
# ---------------------------------------------------------------------------

class PlaywrightPage:
    """A loaded page; thin wrapper over ``playwright.async_api.Page``."""

    def __init__(self, page: Page, status: Optional[int]) -> None:
        self._page = page
        self.status = status

    @property
    def url(self) -> str:
        return self._page.url

    async def evaluate(self, script: str) -> Any:
        return await self._page.evaluate(script)

    async def content(self) -> str:
        return await self._page.content()

    async def close(self) -> None:
        if not self._page.is_closed():
            await self._page.close()


class PlaywrightContext:
    """One isolated browser context with viewport and network throttling applied."""

    def __init__(self, context: PWBrowserContext, spec: ProfileSpec) -> None:
        self._context = context
        self._spec = spec

    async def navigate(self, url: str, timeout: float) -> PlaywrightPage:
        page = await self._context.new_page()
        page.set_default_timeout(timeout * 1000)
        await self._throttle(page)
        try:
            response = await page.goto(url, wait_until="load", timeout=timeout * 1000)
        except PlaywrightTimeoutError as exc:
            await page.close()
            raise NavigationError(url, f"navigation timed out after {timeout}s", timed_out=True) from exc
        except PlaywrightError as exc:
            await page.close()
            raise NavigationError(url, f"navigation failed: {exc.message}") from exc
        status = response.status if response is not None else None
        return PlaywrightPage(page, status)

    async def _throttle(self, page: Page) -> None:
        """Apply the profile's network and CPU throttling through CDP."""
        spec = self._spec
        session = await self._context.new_cdp_session(page)
        await session.send("Network.enable")
        await session.send(
            "Network.emulateNetworkConditions",
            {
                "offline": False,
                "latency": spec.latency_ms,
                "downloadThroughput": spec.download_kbps * 1024 / 8,
                "uploadThroughput": spec.upload_kbps * 1024 / 8,
            },
        )
        await session.send("Emulation.setCPUThrottlingRate", {"rate": spec.cpu_slowdown})

    async def close(self) -> None:
        await self._context.close()


class PlaywrightBrowser:
    """Launch (once) a Chromium browser and hand out isolated contexts.

    Usage::

        async with PlaywrightBrowser() as browser:
            context = await browser.open_context(ViewportProfile.MOBILE)
            ...
    """

    def __init__(self, headless: bool = True, launch_args: Optional[list[str]] = None) -> None:
        self._headless = headless
        self._launch_args = launch_args or ["--no-sandbox", "--disable-setuid-sandbox"]
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        """Launch or reuse the Playwright browser."""
        async with self._lock:
            if self._browser and self._browser.is_connected():
                return self._browser
            try:
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self._headless, args=self._launch_args,
                )
            except PlaywrightError as exc:
                raise BrowserUnavailableError(f"Could not launch Chromium: {exc.message}") from exc
            logger.info("Chromium launched (headless=%s)", self._headless)
            return self._browser

    async def open_context(self, profile: ViewportProfile) -> PlaywrightContext:
        spec = PROFILE_SPECS[profile]
        browser = await self._ensure_browser()
        try:
            context = await browser.new_context(
                viewport={"width": spec.width, "height": spec.height},
                user_agent=spec.user_agent,
                is_mobile=spec.is_mobile,
                has_touch=spec.is_mobile,
                device_scale_factor=2 if spec.is_mobile else 1,
                locale="en-US",
            )
        except PlaywrightError as exc:
            raise BrowserUnavailableError(
                f"Could not open a {profile.value} context: {exc.message}", profile=profile.value,
            ) from exc
        return PlaywrightContext(context, spec)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightBrowser":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
