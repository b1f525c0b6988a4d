"""
Runtime configuration shared by the dispatcher and the server.

Paths and deadlines are collected here and handed to constructors once,
instead of being scattered as module constants.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .browser.models import BrowserSessionConfig

READY_MARKER = "[server] Ready for commands"

DEFAULT_MARKER_FILE = "/tmp/browserctl.pid"
DEFAULT_SOCKET_PATH = "/tmp/browserctl.sock"
DEFAULT_LOG_FILE = "/tmp/browserctl.log"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass
class ServerConfig:
    """Paths and timeouts for one browserctl installation."""
    marker_file_path: str = DEFAULT_MARKER_FILE
    socket_path: str = DEFAULT_SOCKET_PATH
    log_file_path: Optional[str] = DEFAULT_LOG_FILE
    idle_timeout_ms: int = 10 * 60 * 1000
    idle_check_interval_ms: int = 30 * 1000
    startup_timeout_ms: int = 10 * 1000
    command_timeout_ms: int = 30 * 1000
    browser: BrowserSessionConfig = field(default_factory=BrowserSessionConfig)

    @property
    def lock_file_path(self) -> str:
        return self.marker_file_path + ".lock"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "marker_file_path": self.marker_file_path,
            "socket_path": self.socket_path,
            "log_file_path": self.log_file_path,
            "idle_timeout_ms": self.idle_timeout_ms,
            "idle_check_interval_ms": self.idle_check_interval_ms,
            "startup_timeout_ms": self.startup_timeout_ms,
            "command_timeout_ms": self.command_timeout_ms,
            "browser": self.browser.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        data = data.copy()
        if isinstance(data.get("browser"), dict):
            data["browser"] = BrowserSessionConfig.from_dict(data["browser"])
        return cls(**data)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Defaults overridden by BROWSERCTL_* environment variables."""
        browser = BrowserSessionConfig(
            headless=os.environ.get("BROWSERCTL_HEADLESS", "1").lower() not in ("0", "false", "no"),
        )
        return cls(
            marker_file_path=os.environ.get("BROWSERCTL_MARKER_FILE", DEFAULT_MARKER_FILE),
            socket_path=os.environ.get("BROWSERCTL_SOCKET", DEFAULT_SOCKET_PATH),
            log_file_path=os.environ.get("BROWSERCTL_LOG_FILE", DEFAULT_LOG_FILE) or None,
            idle_timeout_ms=_env_int("BROWSERCTL_IDLE_TIMEOUT_MS", 10 * 60 * 1000),
            idle_check_interval_ms=_env_int("BROWSERCTL_IDLE_CHECK_MS", 30 * 1000),
            startup_timeout_ms=_env_int("BROWSERCTL_STARTUP_TIMEOUT_MS", 10 * 1000),
            command_timeout_ms=_env_int("BROWSERCTL_COMMAND_TIMEOUT_MS", 30 * 1000),
            browser=browser,
        )
