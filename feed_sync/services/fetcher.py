"""Feed fetcher service.

This module retrieves raw feed documents over HTTP. Servers that answer
403 to plain HTTP clients are retried once through a real browser engine.
"""

import importlib.util
import logging
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from feed_sync.errors import FetchError, FetchErrorKind


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36"
)


class BrowserRenderer(Protocol):
    """Loads a URL in a browser engine and returns the rendered page."""

    def is_available(self) -> bool:
        ...

    async def render(self, url: str) -> str:
        ...


class PlaywrightRenderer:
    """Browser fallback backed by Playwright's Chromium."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def is_available(self) -> bool:
        return importlib.util.find_spec("playwright") is not None

    async def render(self, url: str) -> str:
        from playwright.async_api import async_playwright

        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            try:
                page = await browser.new_page(user_agent=BROWSER_USER_AGENT)
                await page.goto(url, timeout=self.timeout * 1000)
                return await page.content()
            finally:
                await browser.close()


def extract_feed_from_page(page_content: str) -> str:
    """Pull the feed document out of a browser-rendered page.

    Browsers show raw XML either as-is or wrapped in a <pre> element with
    the markup entity-encoded.

    Args:
        page_content: Page HTML as returned by the browser

    Returns:
        The feed document text

    Raises:
        FetchError: If no <pre> block is found
    """
    if page_content.lstrip().startswith("<?xml"):
        return page_content

    soup = BeautifulSoup(page_content, "html.parser")
    pre = soup.find("pre")
    if pre is None:
        raise FetchError(
            "Failed to extract feed from browser page: no <pre> block found",
            kind=FetchErrorKind.FALLBACK_EXTRACTION,
        )
    return pre.get_text()


class FeedFetcher:
    """Fetches feed documents, falling back to a browser on HTTP 403."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        renderer: Optional[BrowserRenderer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.renderer = renderer if renderer is not None else PlaywrightRenderer(timeout)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            headers={"User-Agent": BROWSER_USER_AGENT},
            transport=self._transport,
        )

    async def fetch(self, url: str) -> bytes:
        """Fetch a feed document.

        Args:
            url: Feed URL

        Returns:
            Raw document bytes

        Raises:
            FetchError: On transport errors, non-2xx statuses, or a failed
                browser fallback
        """
        async with self._client() as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                raise FetchError(
                    f"Failed to fetch {url}: {e}", kind=FetchErrorKind.TRANSPORT
                ) from e

        if response.status_code == 403:
            logger.info(f"Got 403 for {url}, trying browser fallback")
            return await self._fetch_with_browser(url)

        if not response.is_success:
            raise FetchError(
                f"Failed to fetch {url}: HTTP {response.status_code}",
                kind=FetchErrorKind.HTTP_STATUS,
                status_code=response.status_code,
            )

        return response.content

    async def _fetch_with_browser(self, url: str) -> bytes:
        if not self.renderer.is_available():
            raise FetchError(
                f"Failed to fetch {url}: HTTP 403 Forbidden and no browser engine "
                "is available for the fallback",
                kind=FetchErrorKind.FORBIDDEN_NO_FALLBACK,
                status_code=403,
            )

        try:
            page_content = await self.renderer.render(url)
        except FetchError:
            raise
        except Exception as e:
            raise FetchError(
                f"Browser fallback failed for {url}: {e}",
                kind=FetchErrorKind.FALLBACK_EXTRACTION,
                status_code=403,
            ) from e

        logger.debug(f"Browser returned {len(page_content)} characters for {url}")
        return extract_feed_from_page(page_content).encode("utf-8")
