import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from browserctl.browser.models import SessionState
from browserctl.browser.session import BrowserSession
from browserctl.config import ServerConfig


def build_page(title: str = "Example Domain", url: str = "https://example.com/") -> MagicMock:
    page = MagicMock()
    page.url = url
    page.goto = AsyncMock(return_value=MagicMock(status=200))
    page.title = AsyncMock(return_value=title)
    page.text_content = AsyncMock(return_value="Example Domain body text")
    page.content = AsyncMock(return_value="<html><body>Example</body></html>")
    page.input_value = AsyncMock(return_value="typed value")
    page.click = AsyncMock()
    page.fill = AsyncMock()
    page.evaluate = AsyncMock(return_value=42)
    page.query_selector = AsyncMock(return_value=None)
    page.eval_on_selector_all = AsyncMock(return_value=[])
    page.wait_for_selector = AsyncMock()
    page.screenshot = AsyncMock()
    return page


def build_session(page=None) -> BrowserSession:
    """A READY session wired to mocks instead of a real browser."""
    session = BrowserSession()
    session.state = SessionState.READY
    session._page = page if page is not None else build_page()
    session._context = MagicMock(close=AsyncMock())
    session._browser = MagicMock(close=AsyncMock())
    session._playwright = MagicMock(stop=AsyncMock())
    return session


@pytest.fixture
def page():
    return build_page()


@pytest.fixture
def session(page):
    return build_session(page)


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        marker_file_path=str(tmp_path / "server.pid"),
        socket_path=str(tmp_path / "s.sock"),
        log_file_path=None,
        idle_timeout_ms=60_000,
        idle_check_interval_ms=1_000,
        startup_timeout_ms=5_000,
        command_timeout_ms=2_000,
    )
