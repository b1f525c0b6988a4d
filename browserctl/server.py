"""
BrowserServer - persistent headless browser behind a line protocol.

The server owns one BrowserSession and answers newline-delimited JSON
requests read from stdin (responses on stdout) and from connections to its
Unix socket, which is how later dispatcher invocations attach to the same
browser. A single dispatch lock keeps at most one command in flight, and
every channel answers its own requests strictly in the order they arrive.

The process ends only on an explicit ``close``, after the idle timeout, or
on SIGINT/SIGTERM. All three take the same shutdown path.
"""
import asyncio
import os
import signal
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set, Union

from .browser.session import BrowserSession
from .commands import run_command
from .config import READY_MARKER, ServerConfig
from .errors import ProtocolError, SpawnError
from .logging_config import get_logger
from .protocol import CommandResponse, decode_request
from .registry import ServerRegistry

logger = get_logger("browserctl.server")

# One request line may carry a large eval expression
LINE_LIMIT = 16 * 1024 * 1024

Writer = Callable[[bytes], Awaitable[None]]


async def read_request_line(reader: asyncio.StreamReader) -> bytes:
    """
    Next newline-terminated line from ``reader``, or the unterminated
    remainder at EOF (``b""`` once exhausted).

    A line longer than the reader's limit is consumed through its newline,
    however many reads that takes, and reported as one ProtocolError.
    """
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError:
        await _skip_line(reader)
        raise ProtocolError("Request line too long")


async def _skip_line(reader: asyncio.StreamReader):
    while True:
        try:
            await reader.readuntil(b"\n")
            return
        except asyncio.LimitOverrunError as e:
            # data stays buffered on overrun; drop what was scanned and keep looking
            await reader.readexactly(e.consumed)
        except asyncio.IncompleteReadError:
            return


class ServerPhase(Enum):
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class BrowserServer:
    """Serves commands against a single BrowserSession until shut down."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        session: Optional[BrowserSession] = None,
        registry: Optional[ServerRegistry] = None,
        serve_stdio: bool = True,
    ):
        self.config = config or ServerConfig()
        self.session = session or BrowserSession(self.config.browser)
        self.registry = registry or ServerRegistry(
            self.config.marker_file_path, self.config.lock_file_path
        )
        self.serve_stdio = serve_stdio
        self.phase = ServerPhase.STARTING
        self.last_activity = time.monotonic()
        self.shutdown_reason: Optional[str] = None
        self._dispatch_lock = asyncio.Lock()
        self._shutdown_event: Optional[asyncio.Event] = None
        self._socket_server: Optional[asyncio.AbstractServer] = None
        self._connections: Set[asyncio.StreamWriter] = set()
        self._tasks: Set[asyncio.Task] = set()

    # ==================== Activity ====================

    def touch(self):
        self.last_activity = time.monotonic()

    def idle_ms(self) -> float:
        return (time.monotonic() - self.last_activity) * 1000

    # ==================== Dispatch ====================

    async def handle_line(self, line: Union[str, bytes]) -> Optional[CommandResponse]:
        """
        Turn one request line into exactly one response.

        Blank lines produce no response. Nothing raised by parsing or by the
        command escapes; failures become ``{"ok": false}`` responses.
        """
        try:
            request = decode_request(line)
        except ProtocolError as e:
            logger.warning_with("Rejected request line", error=str(e))
            return CommandResponse.failure(e)
        if request is None:
            return None

        async with self._dispatch_lock:
            self.touch()
            start = time.monotonic()
            try:
                result = await run_command(self.session, request.command, request.args)
                response = CommandResponse.success(result)
            except Exception as e:
                logger.info_with("Command failed", command=request.command, error=str(e))
                response = CommandResponse.failure(e)
            finally:
                self.touch()

            logger.debug_with(
                "Command dispatched",
                command=request.command,
                ok=response.ok,
                duration_ms=round((time.monotonic() - start) * 1000, 1),
            )

        if request.command == "close" and response.ok:
            self.request_shutdown("close command")
        return response

    async def serve_channel(self, reader: asyncio.StreamReader, write: Writer, name: str):
        """Read request lines from ``reader`` until EOF, answering each in order."""
        while not self._is_shutting_down():
            try:
                line = await read_request_line(reader)
            except ProtocolError as e:
                await write(CommandResponse.failure(e).to_line())
                continue

            if not line:
                logger.info_with("Channel reached end of input", channel=name)
                return

            response = await self.handle_line(line)
            if response is not None:
                await write(response.to_line())

    # ==================== Channels ====================

    async def _serve_stdio(self):
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=LINE_LIMIT)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

        async def write_stdout(data: bytes):
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()

        try:
            await self.serve_channel(reader, write_stdout, "stdin")
        except BrokenPipeError:
            logger.info("stdout closed by client")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._connections.add(writer)

        async def write_socket(data: bytes):
            writer.write(data)
            await writer.drain()

        try:
            await self.serve_channel(reader, write_socket, "socket client")
        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Socket client went away")
        finally:
            self._connections.discard(writer)
            writer.close()

    async def _start_socket(self):
        if not self.config.socket_path:
            return
        socket_path = Path(self.config.socket_path)
        # only reached once no live server owns the marker, so a leftover socket is stale
        socket_path.unlink(missing_ok=True)
        socket_path.parent.mkdir(parents=True, exist_ok=True)
        self._socket_server = await asyncio.start_unix_server(
            self._handle_connection, path=str(socket_path), limit=LINE_LIMIT
        )
        os.chmod(socket_path, 0o600)
        logger.info_with("Listening for attach connections", socket=str(socket_path))

    async def _stop_socket(self):
        if self._socket_server is None:
            return
        self._socket_server.close()
        for writer in list(self._connections):
            writer.close()
        await self._socket_server.wait_closed()
        self._socket_server = None
        if self.config.socket_path:
            Path(self.config.socket_path).unlink(missing_ok=True)

    # ==================== Idle monitor ====================

    async def idle_monitor(self):
        """Request shutdown once no command has arrived for the idle timeout."""
        interval = self.config.idle_check_interval_ms / 1000
        while not self._is_shutting_down():
            await asyncio.sleep(interval)
            if self._dispatch_lock.locked():
                continue
            if self.idle_ms() > self.config.idle_timeout_ms:
                logger.warning("[server] Auto-closing due to inactivity")
                self.request_shutdown("idle timeout")
                return

    # ==================== Lifecycle ====================

    def request_shutdown(self, reason: str):
        if self.shutdown_reason is None:
            self.shutdown_reason = reason
            logger.info_with("Shutdown requested", reason=reason)
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _is_shutting_down(self) -> bool:
        return self._shutdown_event is not None and self._shutdown_event.is_set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown, f"signal {sig.name}")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def start(self):
        """Launch the browser, bind the socket and announce readiness."""
        self._shutdown_event = asyncio.Event()

        other = self.registry.live_pid()
        if other is not None and other != os.getpid():
            raise SpawnError(f"A browser server is already running (pid {other})")

        logger.info("[server] Launching browser...")
        await self.session.launch()
        try:
            await self._start_socket()
        except OSError:
            await self.session.close()
            raise
        self.registry.register(os.getpid())

        self.touch()
        self.phase = ServerPhase.READY
        # the readiness line is the contract with the dispatcher, so it bypasses log levels
        sys.stderr.write(READY_MARKER + "\n")
        sys.stderr.flush()
        logger.info(READY_MARKER)

    async def run(self) -> int:
        """Serve until close, idle timeout or a signal. Returns the exit status."""
        await self.start()
        self._install_signal_handlers()
        try:
            if self.serve_stdio:
                self._spawn(self._serve_stdio())
            self._spawn(self.idle_monitor())
            await self._shutdown_event.wait()
        finally:
            self._remove_signal_handlers()
            await self.shutdown()
        return 0

    async def shutdown(self):
        """Close the session, release the socket and marker, stop background tasks."""
        if self.phase in (ServerPhase.SHUTTING_DOWN, ServerPhase.TERMINATED):
            return
        self.phase = ServerPhase.SHUTTING_DOWN
        logger.info("[server] Shutting down...")

        # let an in-flight command finish and its response go out
        async with self._dispatch_lock:
            await asyncio.sleep(0)

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.session.close()
        await self._stop_socket()
        self.registry.unregister(os.getpid())
        self.phase = ServerPhase.TERMINATED
        logger.info(f"[server] Stopped ({self.shutdown_reason or 'shutdown'})")


def run_server(config: ServerConfig) -> int:
    """Blocking entry point used by ``browserctl serve``."""
    server = BrowserServer(config)
    try:
        return asyncio.run(server.run())
    except SpawnError as e:
        logger.error_with("Server refused to start", error=str(e))
        return 1
    except Exception as e:
        logger.exception(f"[server] Fatal: {e}")
        return 1
