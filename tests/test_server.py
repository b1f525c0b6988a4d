import asyncio
import json
import logging
import os
import signal
from unittest.mock import AsyncMock

import pytest

from browserctl.server import BrowserServer, ServerPhase
from browserctl.browser.models import SessionState


def responses_of(chunks):
    return [json.loads(line) for chunk in chunks for line in chunk.decode().splitlines()]


class Collector:
    def __init__(self):
        self.chunks = []

    async def __call__(self, data: bytes):
        self.chunks.append(data)

    @property
    def responses(self):
        return responses_of(self.chunks)


def feed(*lines) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(line if isinstance(line, bytes) else line.encode())
    reader.feed_eof()
    return reader


@pytest.fixture
def server(config, session):
    return BrowserServer(config, session=session, serve_stdio=False)


class TestHandleLine:
    @pytest.mark.asyncio
    async def test_open_then_title(self, server):
        opened = await server.handle_line('{"command":"open","args":["https://example.com"]}')
        assert opened.to_dict() == {
            "ok": True,
            "result": {"title": "Example Domain", "url": "https://example.com/"},
        }
        title = await server.handle_line('{"command":"title","args":[]}')
        assert title.to_dict() == {"ok": True, "result": "Example Domain"}

    @pytest.mark.asyncio
    async def test_page_command_before_open(self, server):
        response = await server.handle_line('{"command":"content","args":[]}')
        assert response.ok is False
        assert response.error.startswith("InvalidStateError")

        await server.handle_line('{"command":"goto","args":["https://example.com"]}')
        response = await server.handle_line('{"command":"content","args":[]}')
        assert response.ok is True

    @pytest.mark.asyncio
    async def test_blank_line_has_no_response(self, server):
        assert await server.handle_line("   \n") is None

    @pytest.mark.asyncio
    async def test_malformed_line(self, server):
        response = await server.handle_line('{"command": ')
        assert response.ok is False
        assert response.error.startswith("ProtocolError")

    @pytest.mark.asyncio
    async def test_unknown_command(self, server):
        response = await server.handle_line('{"command":"fly","args":[]}')
        assert response.error == "UnknownCommandError: Unknown command: fly"

    @pytest.mark.asyncio
    async def test_missing_argument(self, server):
        response = await server.handle_line('{"command":"open","args":[]}')
        assert response.ok is False
        assert "requires <url>" in response.error

    @pytest.mark.asyncio
    async def test_ping_before_open(self, server):
        response = await server.handle_line('{"command":"ping","args":[]}')
        assert response.result == "pong"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_response(self, server, page):
        page.evaluate.side_effect = RuntimeError("page crashed")
        await server.handle_line('{"command":"open","args":["https://example.com"]}')
        response = await server.handle_line('{"command":"eval","args":["1"]}')
        assert response.to_dict() == {"ok": False, "error": "RuntimeError: page crashed"}

    @pytest.mark.asyncio
    async def test_dispatch_updates_activity(self, server):
        server.last_activity -= 500
        await server.handle_line('{"command":"ping","args":[]}')
        assert server.idle_ms() < 1000

    @pytest.mark.asyncio
    async def test_close_requests_shutdown(self, server, session):
        server._shutdown_event = asyncio.Event()
        response = await server.handle_line('{"command":"close","args":[]}')
        assert response.result == "closed"
        assert session.state == SessionState.CLOSED
        assert server._shutdown_event.is_set()
        assert server.shutdown_reason == "close command"

    @pytest.mark.asyncio
    async def test_rejected_line_is_logged_with_fields(self, server, caplog):
        with caplog.at_level(logging.WARNING, logger="browserctl.server"):
            await server.handle_line("not json at all")
        record = next(r for r in caplog.records if r.getMessage() == "Rejected request line")
        assert "Invalid JSON" in record.extra_fields["error"]


class TestServeChannel:
    @pytest.mark.asyncio
    async def test_one_response_per_request_in_order(self, server):
        reader = feed(
            '{"command":"open","args":["https://example.com"]}\n',
            "\n",
            "not json at all\n",
            '{"command":"title","args":[]}\n',
            '{"command":"url","args":[]}\n',
        )
        out = Collector()
        await server.serve_channel(reader, out, "test")

        responses = out.responses
        assert len(responses) == 4
        assert responses[0]["result"]["title"] == "Example Domain"
        assert responses[1]["ok"] is False
        assert responses[2] == {"ok": True, "result": "Example Domain"}
        assert responses[3] == {"ok": True, "result": "https://example.com/"}

    @pytest.mark.asyncio
    async def test_split_chunks_are_reassembled(self, server):
        reader = feed('{"command":"pi', 'ng","args":[]}\n')
        out = Collector()
        await server.serve_channel(reader, out, "test")
        assert out.responses == [{"ok": True, "result": "pong"}]

    @pytest.mark.asyncio
    async def test_over_long_line(self, server):
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(b'{"command":"eval","args":["' + b"x" * 200 + b'"]}\n')
        reader.feed_data(b'{"command":"ping","args":[]}\n')
        reader.feed_eof()
        out = Collector()
        await server.serve_channel(reader, out, "test")
        responses = out.responses
        assert len(responses) == 2
        assert responses[0]["ok"] is False
        assert "too long" in responses[0]["error"]
        assert responses[1] == {"ok": True, "result": "pong"}

    @pytest.mark.asyncio
    async def test_over_long_line_split_across_reads(self, server):
        reader = asyncio.StreamReader(limit=64)
        out = Collector()
        task = asyncio.create_task(server.serve_channel(reader, out, "test"))
        reader.feed_data(b'{"command":"eval","args":["' + b"x" * 200)
        await asyncio.sleep(0.01)
        reader.feed_data(b"y" * 150)
        await asyncio.sleep(0.01)
        reader.feed_data(b'"]}\n{"command":"ping","args":[]}\n')
        reader.feed_eof()
        await asyncio.wait_for(task, 5)

        responses = out.responses
        assert len(responses) == 2
        assert responses[0] == {"ok": False, "error": "ProtocolError: Request line too long"}
        assert responses[1] == {"ok": True, "result": "pong"}

    @pytest.mark.asyncio
    async def test_over_long_line_cut_off_by_eof(self, server):
        reader = asyncio.StreamReader(limit=64)
        reader.feed_data(b"z" * 300)
        reader.feed_eof()
        out = Collector()
        await server.serve_channel(reader, out, "test")
        assert len(out.responses) == 1
        assert "too long" in out.responses[0]["error"]

    @pytest.mark.asyncio
    async def test_concurrent_channels_never_overlap(self, server, page):
        active = 0
        peak = 0

        async def slow_title():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "Example Domain"

        page.title.side_effect = slow_title
        await server.handle_line('{"command":"open","args":["https://example.com"]}')
        peak = 0
        lines = ['{"command":"title","args":[]}\n'] * 3
        outs = [Collector() for _ in range(3)]
        await asyncio.gather(*(
            server.serve_channel(feed(*lines), out, f"c{i}") for i, out in enumerate(outs)
        ))
        assert peak == 1
        assert all(len(out.responses) == 3 for out in outs)


class TestIdleMonitor:
    @pytest.mark.asyncio
    async def test_idle_server_requests_shutdown(self, config, session):
        config.idle_timeout_ms = 20
        config.idle_check_interval_ms = 5
        server = BrowserServer(config, session=session, serve_stdio=False)
        server._shutdown_event = asyncio.Event()
        server.last_activity -= 1

        await asyncio.wait_for(server.idle_monitor(), timeout=2)
        assert server.shutdown_reason == "idle timeout"
        assert server._shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_active_server_keeps_running(self, config, session):
        config.idle_timeout_ms = 60_000
        config.idle_check_interval_ms = 5
        server = BrowserServer(config, session=session, serve_stdio=False)
        server._shutdown_event = asyncio.Event()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(server.idle_monitor(), timeout=0.05)
        assert server.shutdown_reason is None


class TestLifecycle:
    @pytest.fixture
    def server(self, config, session):
        session.launch = AsyncMock()
        session.state = SessionState.UNINITIALIZED
        return BrowserServer(config, session=session, serve_stdio=False)

    async def _wait_ready(self, server):
        for _ in range(200):
            if server.phase == ServerPhase.READY:
                return
            await asyncio.sleep(0.01)
        raise AssertionError("server never became ready")

    @pytest.mark.asyncio
    async def test_socket_client_and_close(self, server, config, capsys):
        task = asyncio.create_task(server.run())
        await self._wait_ready(server)

        assert open(config.marker_file_path).read().strip() == str(os.getpid())
        assert "[server] Ready for commands" in capsys.readouterr().err

        reader, writer = await asyncio.open_unix_connection(config.socket_path)
        writer.write(b'{"command":"ping","args":[]}\n')
        await writer.drain()
        assert json.loads(await reader.readline()) == {"ok": True, "result": "pong"}

        writer.write(b'{"command":"close","args":[]}\n')
        await writer.drain()
        assert json.loads(await reader.readline()) == {"ok": True, "result": "closed"}
        writer.close()

        assert await asyncio.wait_for(task, timeout=5) == 0
        assert server.phase == ServerPhase.TERMINATED
        assert not os.path.exists(config.marker_file_path)
        assert not os.path.exists(config.socket_path)

    @pytest.mark.asyncio
    async def test_sigterm_shuts_down(self, server, session, config):
        session.close = AsyncMock()
        task = asyncio.create_task(server.run())
        await self._wait_ready(server)

        os.kill(os.getpid(), signal.SIGTERM)
        assert await asyncio.wait_for(task, timeout=5) == 0
        assert server.shutdown_reason == "signal SIGTERM"
        session.close.assert_awaited()
        assert not os.path.exists(config.marker_file_path)

    @pytest.mark.asyncio
    async def test_idle_timeout_ends_run(self, server, session, config):
        config.idle_timeout_ms = 30
        config.idle_check_interval_ms = 10
        session.close = AsyncMock()
        assert await asyncio.wait_for(server.run(), timeout=5) == 0
        assert server.shutdown_reason == "idle timeout"
        session.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_refuses_to_start_beside_live_server(self, server, config):
        from browserctl.errors import SpawnError
        # pid 1 is always alive
        with open(config.marker_file_path, "w") as f:
            f.write("1\n")
        with pytest.raises(SpawnError, match="already running"):
            await server.start()

    @pytest.mark.asyncio
    async def test_stale_marker_is_replaced(self, server, config):
        with open(config.marker_file_path, "w") as f:
            f.write("not-a-pid\n")
        await server.start()
        try:
            assert open(config.marker_file_path).read().strip() == str(os.getpid())
        finally:
            await server.shutdown()
