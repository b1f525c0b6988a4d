"""
ClientDispatcher - single entry point for browser commands.

Stateless commands (``title``, ``content``, ``html``, ``screenshot`` given a
URL) run in a disposable browser that lives for exactly one operation.
Everything else goes to the persistent server so page state carries over
between invocations:

- a live server registered in the marker file is reached over its Unix
  socket, which is a channel to that same process;
- otherwise a new server is spawned under the registry's spawn lock and the
  command is written to the new process's stdin pipe.

The dispatcher keeps whichever channel it opened for its whole lifetime,
so several commands from one dispatcher share one connection.
"""
import asyncio
import json
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .browser.session import NO_PAGE_MESSAGE, BrowserSession
from .commands import looks_like_url, run_command
from .config import READY_MARKER, ServerConfig
from .errors import (
    BrowserCtlError,
    CommandTimeoutError,
    InvalidStateError,
    ProtocolError,
    SpawnError,
    StartupTimeoutError,
    UnknownCommandError,
    UsageError,
)
from .logging_config import get_logger
from .protocol import CommandRequest, CommandResponse, try_decode_response
from .registry import ServerRegistry

logger = get_logger("browserctl.client")

STATELESS_COMMANDS = frozenset({"title", "content", "html", "screenshot"})


class Route(Enum):
    STATELESS = "stateless"
    STATEFUL = "stateful"


@dataclass(frozen=True)
class Arity:
    """Positional parameters of a command as typed on the command line."""
    required: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()
    # the last parameter absorbs every remaining token, rejoined with spaces
    greedy: bool = False

    @property
    def names(self) -> Tuple[str, ...]:
        return self.required + self.optional


ARITY: Dict[str, Arity] = {
    "open": Arity(required=("url",)),
    "goto": Arity(required=("url",)),
    "title": Arity(optional=("url",)),
    "content": Arity(optional=("url",)),
    "html": Arity(optional=("url",)),
    "screenshot": Arity(optional=("url", "path")),
    "url": Arity(),
    "click": Arity(required=("selector",)),
    "type": Arity(required=("selector",), optional=("text",), greedy=True),
    "eval": Arity(required=("expression",), greedy=True),
    "exists": Arity(required=("selector",)),
    "links": Arity(),
    "wait": Arity(required=("selector",)),
    "text": Arity(required=("selector",)),
    "get-value": Arity(required=("selector",)),
    "ping": Arity(),
    "close": Arity(),
}


class CommandFailedError(BrowserCtlError):
    """The server (or disposable browser) reported a failed command"""

    def to_wire(self) -> str:
        return str(self)


def shape_args(command: str, tokens: List[str]) -> List[str]:
    """Map command-line tokens onto the command's fixed argument list."""
    arity = ARITY.get(command)
    if arity is None:
        raise UnknownCommandError(command)

    names = arity.names
    if len(tokens) < len(arity.required):
        missing = arity.required[len(tokens)]
        raise UsageError(f"{command} requires <{missing}>")

    if arity.greedy and len(tokens) > len(names):
        head = tokens[: len(names) - 1]
        return head + [" ".join(tokens[len(names) - 1:])]

    if len(tokens) > len(names):
        raise UsageError(
            f"{command} takes at most {len(names)} argument(s), got {len(tokens)}"
        )
    return list(tokens)


def classify(command: str, args: List[str], server_running: bool) -> Route:
    """
    Decide where a command runs.

    The page-reading commands are stateless when they carry a URL. Without
    one they read the running server's current page. A ``screenshot`` with no
    URL and no running server has nothing to capture.
    """
    if command not in ARITY:
        raise UnknownCommandError(command)
    if command not in STATELESS_COMMANDS:
        return Route.STATEFUL

    if command == "screenshot":
        if args and looks_like_url(args[0]):
            return Route.STATELESS
        if not server_running:
            raise UsageError("screenshot needs a URL when no browser session is open")
        return Route.STATEFUL

    return Route.STATELESS if args else Route.STATEFUL


async def run_stateless(command: str, args: List[str], config: ServerConfig) -> Any:
    """Launch a throwaway browser, load ``args[0]``, run one command, close."""
    url = args[0]
    async with BrowserSession(config.browser) as session:
        if command == "screenshot":
            path = args[1] if len(args) > 1 else config.browser.default_screenshot_path
            return await run_command(session, "screenshot", [url, path])
        await session.navigate(url)
        return await run_command(session, command, [])


class ServerChannel:
    """
    Line channel to one server process.

    Requests are serialized by a lock so the channel never has two commands
    in flight. A response that times out leaves the stream out of step with
    the server, so the channel is closed instead of reused.
    """

    def __init__(self, reader: asyncio.StreamReader, timeout_ms: int, pid: Optional[int] = None):
        self.pid = pid
        self.timeout_ms = timeout_ms
        self.closed = False
        self._reader = reader
        self._buffer = b""
        self._lock = asyncio.Lock()

    async def _send(self, data: bytes):
        raise NotImplementedError

    async def _close_transport(self):
        pass

    async def request(self, request: CommandRequest) -> CommandResponse:
        async with self._lock:
            if self.closed:
                raise ProtocolError("Channel to the browser server is closed")
            try:
                await self._send(request.to_line())
            except (BrokenPipeError, ConnectionResetError) as e:
                await self.close()
                raise ProtocolError(f"Browser server went away: {e}") from e

            try:
                return await asyncio.wait_for(self._read_response(), self.timeout_ms / 1000)
            except asyncio.TimeoutError:
                await self.close()
                raise CommandTimeoutError(request.command, self.timeout_ms)
            except ProtocolError:
                await self.close()
                raise

    async def _read_response(self) -> CommandResponse:
        while True:
            *lines, self._buffer = self._buffer.split(b"\n")
            for index, line in enumerate(lines):
                response = try_decode_response(line)
                if response is not None:
                    rest = lines[index + 1:]
                    if rest:
                        self._buffer = b"\n".join(rest + [self._buffer])
                    return response
                if line.strip():
                    logger.debug(f"Skipping non-JSON output line: {line[:200]!r}")

            chunk = await self._reader.read(65536)
            if not chunk:
                raise ProtocolError("Browser server closed the stream without responding")
            self._buffer += chunk

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self._close_transport()


class SocketChannel(ServerChannel):
    """Channel over the server's Unix socket."""

    def __init__(self, reader, writer: asyncio.StreamWriter, timeout_ms: int, pid: Optional[int] = None):
        super().__init__(reader, timeout_ms, pid)
        self._writer = writer

    @classmethod
    async def connect(cls, socket_path: str, timeout_ms: int, pid: Optional[int] = None) -> "SocketChannel":
        reader, writer = await asyncio.open_unix_connection(socket_path)
        return cls(reader, writer, timeout_ms, pid)

    async def _send(self, data: bytes):
        self._writer.write(data)
        await self._writer.drain()

    async def _close_transport(self):
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass


class PipeChannel(ServerChannel):
    """Channel over the stdin/stdout pipes of a server this dispatcher spawned."""

    def __init__(self, process: subprocess.Popen, reader: asyncio.StreamReader, timeout_ms: int):
        super().__init__(reader, timeout_ms, process.pid)
        self.process = process
        self._stderr_task: Optional[asyncio.Task] = None

    async def _send(self, data: bytes):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_blocking, data)

    def _write_blocking(self, data: bytes):
        self.process.stdin.write(data)
        self.process.stdin.flush()

    def drain_stderr(self, stderr: asyncio.StreamReader):
        """Keep the server's diagnostic pipe empty so its logging never blocks."""
        async def pump():
            while True:
                line = await stderr.readline()
                if not line:
                    return
                logger.debug(f"server: {line.decode(errors='replace').rstrip()}")

        self._stderr_task = asyncio.create_task(pump())

    async def _close_transport(self):
        # closing our ends leaves the server running for later attaches
        if self._stderr_task is not None:
            self._stderr_task.cancel()
        try:
            self.process.stdin.close()
        except BrokenPipeError:
            pass


class ClientDispatcher:
    """Routes commands to a disposable browser or to the persistent server."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        registry: Optional[ServerRegistry] = None,
        server_command: Optional[List[str]] = None,
    ):
        self.config = config or ServerConfig()
        self.registry = registry or ServerRegistry(
            self.config.marker_file_path, self.config.lock_file_path
        )
        self.server_command = server_command or [
            sys.executable, "-m", "browserctl", "serve",
            "--config-json", json.dumps(self.config.to_dict()),
        ]
        self._channel: Optional[ServerChannel] = None

    async def __aenter__(self) -> "ClientDispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def execute(self, command: str, tokens: List[str]) -> Any:
        """Run one command given its command-line tokens and return its result."""
        args = shape_args(command, tokens)
        server_running = self._channel is not None or self.registry.live_pid() is not None
        route = classify(command, args, server_running)

        if route == Route.STATELESS:
            logger.debug(f"Running {command} in a disposable browser")
            return await run_stateless(command, args, self.config)

        # reading the current page never warrants starting an empty server
        spawn = command not in STATELESS_COMMANDS
        channel = await self.connect(spawn=spawn)
        response = await channel.request(CommandRequest(command=command, args=args))
        if command == "close":
            await self.close()
        if not response.ok:
            raise CommandFailedError(response.error)
        return response.result

    # ==================== Server discovery ====================

    async def connect(self, spawn: bool = True) -> ServerChannel:
        """Channel to the singleton server, attaching or spawning as needed."""
        if self._channel is not None and not self._channel.closed:
            return self._channel

        channel = await self._attach()
        if channel is None:
            if not spawn:
                raise InvalidStateError(NO_PAGE_MESSAGE)
            async with self.registry.spawn_lock_async():
                # another dispatcher may have finished spawning while we waited
                channel = await self._attach(holding_lock=True)
                if channel is None:
                    channel = await self._spawn()

        self._channel = channel
        return channel

    async def _attach(self, holding_lock: bool = False) -> Optional[ServerChannel]:
        """
        Connect to the registered server's socket.

        Without the spawn lock this only reads the marker. Under the lock a
        marker naming a dead pid, or a live pid whose socket refuses us
        (reused pid or crashed socket), is removed so ``_spawn`` can take over.
        """
        pid = self.registry.live_pid()
        if pid is None:
            if holding_lock:
                self.registry.clear_stale()
            return None
        try:
            channel = await SocketChannel.connect(
                self.config.socket_path, self.config.command_timeout_ms, pid
            )
        except (FileNotFoundError, ConnectionRefusedError) as e:
            logger.warning_with("Server is alive but unreachable", pid=pid, error=str(e))
            if holding_lock:
                self.registry.unregister(pid)
            return None
        logger.info_with("Attached to browser server", pid=pid)
        return channel

    async def _spawn(self) -> PipeChannel:
        logger.info("[client] Starting browser server...")
        try:
            process = subprocess.Popen(
                self.server_command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Could not start browser server: {e}") from e

        loop = asyncio.get_running_loop()
        stdout = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stdout), process.stdout)
        stderr = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(stderr), process.stderr)

        try:
            await asyncio.wait_for(
                self._await_ready(process, stderr),
                self.config.startup_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            process.kill()
            await loop.run_in_executor(None, process.wait)
            raise StartupTimeoutError(self.config.startup_timeout_ms)

        self.registry.register(process.pid)
        logger.info_with("Browser server ready", pid=process.pid)

        channel = PipeChannel(process, stdout, self.config.command_timeout_ms)
        channel.drain_stderr(stderr)
        return channel

    async def _await_ready(self, process: subprocess.Popen, stderr: asyncio.StreamReader):
        tail: List[str] = []
        while True:
            line = await stderr.readline()
            if not line:
                # stderr hit EOF, so the process is exiting; reap it off the loop
                returncode = await asyncio.get_running_loop().run_in_executor(None, process.wait)
                detail = " | ".join(tail[-5:])
                raise SpawnError(
                    f"Browser server exited with status {returncode} before it was ready"
                    + (f": {detail}" if detail else "")
                )
            text = line.decode(errors="replace").rstrip()
            if READY_MARKER in text:
                return
            tail.append(text)

    async def close(self):
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
