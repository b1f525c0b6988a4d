"""
Browser automation data models.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any


DEFAULT_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


class BrowserType(Enum):
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


@dataclass
class BrowserSessionConfig:
    """Configuration for the browser owned by a session."""
    headless: bool = True
    browser_type: BrowserType = BrowserType.CHROMIUM
    viewport_width: int = 1280
    viewport_height: int = 720
    launch_args: List[str] = field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    navigation_timeout_ms: int = 30000
    wait_timeout_ms: int = 30000
    default_screenshot_path: str = "/tmp/browserctl-screenshot.png"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headless": self.headless,
            "browser_type": self.browser_type.value,
            "viewport_width": self.viewport_width,
            "viewport_height": self.viewport_height,
            "launch_args": list(self.launch_args),
            "navigation_timeout_ms": self.navigation_timeout_ms,
            "wait_timeout_ms": self.wait_timeout_ms,
            "default_screenshot_path": self.default_screenshot_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrowserSessionConfig":
        data = data.copy()
        if "browser_type" in data and isinstance(data["browser_type"], str):
            data["browser_type"] = BrowserType(data["browser_type"])
        return cls(**data)


@dataclass
class LinkEntry:
    """An anchor on the current page."""
    text: str
    href: str

    def to_dict(self) -> dict:
        return {"text": self.text, "href": self.href}
