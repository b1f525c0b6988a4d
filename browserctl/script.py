"""
One-shot scripted browser sessions.

    browserctl session https://example.com "click|.btn" "type|#email|me@example.com" "get-title"

A fresh browser loads the start URL once, then runs each pipe-delimited step
against that same page in order. Results go to stdout, diagnostics to
stderr. The first failing step aborts the run: the browser is closed and the
exit status is 1.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import click

from .browser.models import BrowserSessionConfig
from .browser.session import BrowserSession
from .commands import format_result, run_command
from .errors import UnknownCommandError, describe_error
from .logging_config import get_logger

logger = get_logger("browserctl.script")

# step name -> (command, number of "|" separated fields it takes)
STEP_COMMANDS = {
    "get-title": ("title", 0),
    "get-content": ("content", 0),
    "get-links": ("links", 0),
    "get-url": ("url", 0),
    "click": ("click", 1),
    "type": ("type", 2),
    "eval": ("eval", 1),
    "exists": ("exists", 1),
    "wait": ("wait", 1),
    "text": ("text", 1),
    "get-value": ("get-value", 1),
    "screenshot": ("screenshot", 1),
}


@dataclass
class ScriptStep:
    raw: str
    action: str
    command: str
    args: List[str] = field(default_factory=list)


def parse_step(raw: str) -> ScriptStep:
    """
    Split ``action|arg|...`` into a step.

    The last field absorbs any further ``|`` so typed text and JavaScript may
    contain pipes.
    """
    action, _, rest = raw.partition("|")
    action = action.strip()
    if action not in STEP_COMMANDS:
        raise UnknownCommandError(action or raw)

    command, field_count = STEP_COMMANDS[action]
    if field_count == 0 or not rest:
        args = [rest] if rest else []
    else:
        args = rest.split("|", field_count - 1)
    return ScriptStep(raw=raw, action=action, command=command, args=args)


def _stderr(message: str):
    click.echo(message, err=True)


class SessionScript:
    """Runs a list of steps against one freshly loaded page."""

    def __init__(
        self,
        url: str,
        steps: List[str],
        config: Optional[BrowserSessionConfig] = None,
        emit: Callable[[str], None] = click.echo,
        diagnostic: Callable[[str], None] = _stderr,
    ):
        self.url = url
        self.raw_steps = list(steps)
        self.config = config or BrowserSessionConfig()
        self.emit = emit
        self.diagnostic = diagnostic

    async def run(self) -> int:
        """Execute every step; returns the process exit status."""
        try:
            steps = [parse_step(raw) for raw in self.raw_steps]
        except UnknownCommandError as e:
            self.diagnostic(f"Error: {describe_error(e)}")
            return 1

        session = BrowserSession(self.config)
        try:
            self.diagnostic("[session] Starting browser...")
            await session.launch()
            await session.navigate(self.url)
            self.diagnostic("[session] Page loaded")

            for index, step in enumerate(steps, start=1):
                try:
                    result = await run_command(session, step.command, step.args)
                except Exception as e:
                    self.diagnostic(f"Error in {step.action}: {describe_error(e)}")
                    skipped = len(steps) - index
                    if skipped:
                        logger.info(f"Skipping {skipped} remaining step(s)")
                    return 1
                self.emit(format_result(result))
        except Exception as e:
            self.diagnostic(f"Fatal: {describe_error(e)}")
            return 1
        finally:
            await session.close()

        self.diagnostic("[session] Done")
        return 0
