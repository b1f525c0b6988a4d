"""
Playwright-backed browser session: one browser, one context, one page.
"""
from .models import BrowserSessionConfig, BrowserType, LinkEntry, SessionState
from .session import BrowserSession

__all__ = [
    "BrowserSession",
    "BrowserSessionConfig",
    "BrowserType",
    "LinkEntry",
    "SessionState",
]
