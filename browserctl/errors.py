"""
Exception taxonomy for browserctl.

Every error carries a ``code`` that is used as the prefix of the ``error``
string in failure responses, so callers on the far side of the line
protocol can tell failures apart without parsing free text.
"""
import builtins


class BrowserCtlError(Exception):
    """Base exception for browserctl errors"""
    code = "Error"

    def to_wire(self) -> str:
        return f"{self.code}: {self}"


class StartupTimeoutError(BrowserCtlError):
    """Server never signaled readiness"""
    code = "StartupTimeoutError"

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Server did not become ready within {timeout_ms} ms")


class SpawnError(BrowserCtlError):
    """Server process could not be created or died during startup"""
    code = "SpawnError"


class ProtocolError(BrowserCtlError):
    """Malformed or unframeable protocol line"""
    code = "ProtocolError"


class InvalidStateError(BrowserCtlError):
    """Command needs an open page but none exists"""
    code = "InvalidStateError"


class NavigationError(BrowserCtlError):
    """Page navigation failed"""
    code = "NavigationError"


class BrowserTimeoutError(BrowserCtlError, builtins.TimeoutError):
    """A page operation exceeded its deadline"""
    code = "TimeoutError"


class CommandTimeoutError(BrowserTimeoutError):
    """No response line arrived from the server in time"""

    def __init__(self, command: str, timeout_ms: int):
        self.command = command
        self.timeout_ms = timeout_ms
        super().__init__(f"No response to {command!r} within {timeout_ms} ms")


class UnknownCommandError(BrowserCtlError):
    """Command name is not in the command table"""
    code = "UnknownCommandError"

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Unknown command: {command}")


class UsageError(BrowserCtlError):
    """Command line arguments do not match the command's arity"""
    code = "UsageError"


def describe_error(exc: BaseException) -> str:
    """Render any exception as the ``error`` string of a failure response."""
    if isinstance(exc, BrowserCtlError):
        return exc.to_wire()
    message = str(exc).strip() or type(exc).__name__
    return f"{type(exc).__name__}: {message}"
