"""Plain HTTP GET capability used by the crawlability check."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


def decode_body(body: bytes, charset: Optional[str]) -> str:
    """Decode with the declared charset, falling back to UTF-8 for unknown ones."""
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.debug("Unknown charset %r; decoding as utf-8", charset)
        return body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: Optional[int] = None
    text: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not None and 200 <= self.status < 300


class HttpFetcher:
    """Fetch small text resources (robots.txt, sitemap.xml) without a browser.

    Network failures are reported on the returned :class:`FetchResponse`
    rather than raised.
    """

    def __init__(self, user_agent: str = "ClinicAuditBot/1.0", max_bytes: int = 5 * 1024 * 1024) -> None:
        self._user_agent = user_agent
        self._max_bytes = max_bytes

    async def get(self, url: str, timeout: float = 5.0) -> FetchResponse:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(
                    url, headers={"User-Agent": self._user_agent}, allow_redirects=True,
                ) as resp:
                    body = await resp.content.read(self._max_bytes)
                    text = decode_body(body, resp.charset)
                    return FetchResponse(url=url, status=resp.status, text=text)
        except asyncio.TimeoutError:
            logger.warning("Timeout fetching %s", url)
            return FetchResponse(url=url, error=f"timed out after {timeout}s")
        except aiohttp.ClientError as exc:
            logger.warning("Error fetching %s: %s", url, exc)
            return FetchResponse(url=url, error=str(exc) or type(exc).__name__)
