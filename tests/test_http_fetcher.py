"""Tests for the aiohttp-based HTTP fetcher."""

import pytest
from aiohttp import web
from aiohttp import test_utils

from clinic_audit.integrations.http_fetcher import HttpFetcher, decode_body
from clinic_audit.modules.technical_audit.checks import CheckTarget, CrawlabilityCheck
from clinic_audit.modules.technical_audit.records import ViewportProfile

from conftest import ROBOTS_TXT


def _robots_app(content_type: str) -> web.Application:
    async def robots(request):
        return web.Response(body=ROBOTS_TXT.encode("utf-8"), headers={"Content-Type": content_type})

    app = web.Application()
    app.router.add_get("/robots.txt", robots)
    return app


class TestDecodeBody:

    def test_declared_charset(self):
        assert decode_body("café".encode("latin-1"), "latin-1") == "café"

    def test_missing_charset_is_utf8(self):
        assert decode_body("café".encode("utf-8"), None) == "café"

    def test_unknown_charset_falls_back_to_utf8(self):
        assert decode_body("café".encode("utf-8"), "utf8mb4") == "café"


class TestHttpFetcher:

    @pytest.mark.asyncio
    async def test_unknown_charset_still_returns_body(self):
        async with test_utils.TestServer(_robots_app("text/plain; charset=utf8mb4")) as server:
            response = await HttpFetcher().get(str(server.make_url("/robots.txt")))

        assert response.ok
        assert response.error is None
        assert "Disallow: /admin" in response.text

    @pytest.mark.asyncio
    async def test_missing_resource_reports_status(self):
        async with test_utils.TestServer(_robots_app("text/plain")) as server:
            response = await HttpFetcher().get(str(server.make_url("/sitemap.xml")))
        assert response.status == 404
        assert not response.ok

    @pytest.mark.asyncio
    async def test_crawlability_scores_robots_with_unknown_charset(self):
        async with test_utils.TestServer(_robots_app("text/plain; charset=utf8mb4")) as server:
            target = CheckTarget(url=str(server.make_url("/")), profiles=(ViewportProfile.DESKTOP,))
            result = await CrawlabilityCheck(HttpFetcher()).run(target)

        assert not result.failed
        assert result.score == 90
        assert result.detail.robots_txt
        assert not result.detail.sitemap_valid
