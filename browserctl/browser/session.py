"""
BrowserSession - owns one Playwright browser, context and page.

A session starts UNINITIALIZED, becomes READY once the browser has been
launched, and ends CLOSED. The page exists from launch onwards, but it only
counts as "open" after the first successful navigation; every other
read or interaction before that fails with InvalidStateError.
"""
import asyncio
import functools
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, List, Dict, Any

from playwright.async_api import (
    async_playwright,
    Error as PlaywrightError,
    TimeoutError as PlaywrightTimeoutError,
)

from ..errors import BrowserTimeoutError, InvalidStateError, NavigationError
from ..logging_config import get_logger
from .models import BrowserSessionConfig, BrowserType, LinkEntry, SessionState

logger = get_logger("browserctl.browser")

NO_PAGE_MESSAGE = 'No page open. Use "open <url>" first.'

LINKS_SCRIPT = """
anchors => anchors.map(a => ({
    text: (a.textContent || '').trim(),
    href: a.href || ''
})).filter(link => link.href)
"""


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


@contextmanager
def _timeouts_as(action: str):
    try:
        yield
    except PlaywrightTimeoutError as e:
        raise BrowserTimeoutError(f"{action} timed out: {_first_line(e)}") from e


def _serialized(method):
    """Run the coroutine method while holding the session lock."""
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        async with self._lock:
            return await method(self, *args, **kwargs)
    return wrapper


class BrowserSession:
    """The single browser/context/page used by a server or a one-shot run."""

    def __init__(self, config: Optional[BrowserSessionConfig] = None):
        self.config = config or BrowserSessionConfig()
        self.state = SessionState.UNINITIALIZED
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._page_open = False
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "BrowserSession":
        await self.launch()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def has_page(self) -> bool:
        return self.state == SessionState.READY and self._page_open

    # ==================== Lifecycle ====================

    @_serialized
    async def launch(self):
        """Start Playwright and open the one browser, context and page."""
        if self.state != SessionState.UNINITIALIZED:
            raise InvalidStateError(f"Session cannot be launched from state {self.state.value}")

        self._playwright = await async_playwright().start()
        try:
            launcher = {
                BrowserType.CHROMIUM: self._playwright.chromium,
                BrowserType.FIREFOX: self._playwright.firefox,
                BrowserType.WEBKIT: self._playwright.webkit,
            }[self.config.browser_type]

            self._browser = await launcher.launch(
                headless=self.config.headless,
                args=self.config.launch_args,
            )
            self._context = await self._browser.new_context(
                viewport={
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height,
                }
            )
            self._page = await self._context.new_page()
        except Exception:
            await self._teardown()
            self.state = SessionState.CLOSED
            raise

        self.state = SessionState.READY
        logger.info(f"Launched {self.config.browser_type.value} (headless={self.config.headless})")

    @_serialized
    async def close(self):
        """Tear down context and browser. Safe to call more than once."""
        if self.state == SessionState.CLOSED:
            return
        await self._teardown()
        self.state = SessionState.CLOSED
        logger.info("Browser session closed")

    async def _teardown(self):
        try:
            if self._context is not None:
                await self._context.close()
            if self._browser is not None:
                await self._browser.close()
        except PlaywrightError as e:
            logger.warning(f"Error closing browser: {_first_line(e)}")
        finally:
            if self._playwright is not None:
                try:
                    await self._playwright.stop()
                except PlaywrightError as e:
                    logger.warning(f"Error stopping Playwright: {_first_line(e)}")
            self._page = None
            self._context = None
            self._browser = None
            self._playwright = None
            self._page_open = False

    # ==================== Navigation ====================

    @_serialized
    async def navigate(self, url: str) -> Dict[str, str]:
        """Go to ``url`` and wait for DOMContentLoaded. Returns title and final url."""
        if self.state != SessionState.READY:
            raise InvalidStateError(f"Browser is {self.state.value}")
        if not url:
            raise NavigationError("No URL given")

        try:
            await self._page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_ms,
            )
        except PlaywrightTimeoutError as e:
            raise BrowserTimeoutError(f"Navigation to {url} timed out: {_first_line(e)}") from e
        except PlaywrightError as e:
            raise NavigationError(f"Navigation to {url} failed: {_first_line(e)}") from e

        self._page_open = True
        result = {"title": await self._page.title(), "url": self._page.url}
        logger.debug(f"Navigated to {result['url']}")
        return result

    # ==================== Reads ====================

    def _require_page(self):
        if self.state == SessionState.CLOSED:
            raise InvalidStateError("Browser session is closed")
        if not self._page_open:
            raise InvalidStateError(NO_PAGE_MESSAGE)
        return self._page

    @_serialized
    async def title(self) -> str:
        return await self._require_page().title()

    @_serialized
    async def url(self) -> str:
        return self._require_page().url

    @_serialized
    async def content(self) -> Optional[str]:
        """Text content of the document body."""
        return await self._require_page().text_content("body")

    @_serialized
    async def html(self) -> str:
        return await self._require_page().content()

    @_serialized
    async def text(self, selector: str) -> Optional[str]:
        page = self._require_page()
        with _timeouts_as(f"Reading text of {selector}"):
            return await page.text_content(selector)

    @_serialized
    async def get_value(self, selector: str) -> str:
        page = self._require_page()
        with _timeouts_as(f"Reading value of {selector}"):
            return await page.input_value(selector)

    @_serialized
    async def exists(self, selector: str) -> bool:
        return (await self._require_page().query_selector(selector)) is not None

    @_serialized
    async def links(self) -> List[Dict[str, str]]:
        """Anchors on the page with a non-empty href."""
        raw = await self._require_page().eval_on_selector_all("a", LINKS_SCRIPT)
        return [
            LinkEntry(text=item.get("text", ""), href=item["href"]).to_dict()
            for item in raw
            if item.get("href")
        ]

    # ==================== Interaction ====================

    @_serialized
    async def click(self, selector: str):
        page = self._require_page()
        with _timeouts_as(f"Click on {selector}"):
            await page.click(selector)

    @_serialized
    async def type_text(self, selector: str, text: str):
        page = self._require_page()
        with _timeouts_as(f"Typing into {selector}"):
            await page.fill(selector, text)

    @_serialized
    async def evaluate(self, expression: str) -> Any:
        return await self._require_page().evaluate(expression)

    @_serialized
    async def wait_for_selector(self, selector: str, timeout_ms: Optional[int] = None):
        page = self._require_page()
        timeout_ms = timeout_ms if timeout_ms is not None else self.config.wait_timeout_ms
        with _timeouts_as(f"Waiting for {selector}"):
            await page.wait_for_selector(selector, timeout=timeout_ms)

    @_serialized
    async def screenshot(self, path: str) -> str:
        """Write a full-page PNG to ``path`` and return the path."""
        page = self._require_page()
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with _timeouts_as("Screenshot"):
            await page.screenshot(path=path, full_page=True)
        return path
