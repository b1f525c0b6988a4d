"""
Command table shared by the server, the one-shot runner and session scripts.

Every handler receives the BrowserSession explicitly along with the
request's string arguments; no browser state lives at module level.
"""
import json
from typing import Any, Awaitable, Callable, Dict, List

from .browser.session import BrowserSession
from .errors import UnknownCommandError, UsageError

Handler = Callable[[BrowserSession, List[str]], Awaitable[Any]]

NAVIGATION_COMMANDS = frozenset({"open", "goto"})


def looks_like_url(token: str) -> bool:
    return "://" in token or token.startswith(("about:", "data:"))


def _arg(args: List[str], index: int, name: str, command: str) -> str:
    if len(args) <= index or args[index] == "":
        raise UsageError(f"{command} requires <{name}>")
    return args[index]


async def _open(session: BrowserSession, args: List[str]):
    return await session.navigate(_arg(args, 0, "url", "open"))


async def _title(session: BrowserSession, args: List[str]):
    return await session.title()


async def _url(session: BrowserSession, args: List[str]):
    return await session.url()


async def _content(session: BrowserSession, args: List[str]):
    return await session.content()


async def _html(session: BrowserSession, args: List[str]):
    return await session.html()


async def _text(session: BrowserSession, args: List[str]):
    return await session.text(_arg(args, 0, "selector", "text"))


async def _get_value(session: BrowserSession, args: List[str]):
    return await session.get_value(_arg(args, 0, "selector", "get-value"))


async def _click(session: BrowserSession, args: List[str]):
    await session.click(_arg(args, 0, "selector", "click"))
    return "clicked"


async def _type(session: BrowserSession, args: List[str]):
    selector = _arg(args, 0, "selector", "type")
    await session.type_text(selector, args[1] if len(args) > 1 else "")
    return "typed"


async def _eval(session: BrowserSession, args: List[str]):
    return await session.evaluate(_arg(args, 0, "expression", "eval"))


async def _exists(session: BrowserSession, args: List[str]):
    return await session.exists(_arg(args, 0, "selector", "exists"))


async def _links(session: BrowserSession, args: List[str]):
    return await session.links()


async def _wait(session: BrowserSession, args: List[str]):
    await session.wait_for_selector(_arg(args, 0, "selector", "wait"))
    return "found"


async def _screenshot(session: BrowserSession, args: List[str]):
    """``[path?]`` captures the current page; ``[url, path?]`` navigates first."""
    path = None
    if len(args) >= 2:
        await session.navigate(args[0])
        path = args[1]
    elif len(args) == 1 and looks_like_url(args[0]):
        await session.navigate(args[0])
    elif len(args) == 1:
        path = args[0]
    return await session.screenshot(path or session.config.default_screenshot_path)


async def _ping(session: BrowserSession, args: List[str]):
    return "pong"


async def _close(session: BrowserSession, args: List[str]):
    await session.close()
    return "closed"


HANDLERS: Dict[str, Handler] = {
    "open": _open,
    "goto": _open,
    "title": _title,
    "url": _url,
    "content": _content,
    "html": _html,
    "text": _text,
    "get-value": _get_value,
    "click": _click,
    "type": _type,
    "eval": _eval,
    "exists": _exists,
    "links": _links,
    "wait": _wait,
    "screenshot": _screenshot,
    "ping": _ping,
    "close": _close,
}


async def run_command(session: BrowserSession, command: str, args: List[str]) -> Any:
    handler = HANDLERS.get(command)
    if handler is None:
        raise UnknownCommandError(command)
    return await handler(session, args)


def format_result(result: Any) -> str:
    """Render a command result for a terminal: strings verbatim, the rest as JSON."""
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list)):
        return json.dumps(result, indent=2, default=str)
    return json.dumps(result, default=str)
