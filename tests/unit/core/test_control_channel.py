"""ControlChannelClient against an in-process server speaking the QMP wire format."""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from guestvm.core.control_channel import ChannelState, ControlChannelClient
from guestvm.core.errors import ControlChannelError, ControlCommandError, ProtocolViolationError

GREETING = {"QMP": {"version": {"qemu": {"major": 9, "minor": 1, "micro": 0}}, "capabilities": []}}
COMMANDS = [{"name": "qmp_capabilities"}, {"name": "query-commands"}, {"name": "query-status"}]


class FakeQMPServer:
    """Minimal QMP server. ``handler`` may override the reply for a request."""

    def __init__(self, handler: Optional[Callable[[Dict[str, Any]], Any]] = None, greeting: Any = GREETING):
        self.handler = handler
        self.greeting = greeting
        self.received: List[Dict[str, Any]] = []
        self.max_in_flight = 0
        self._in_flight = 0
        self._server: Optional[asyncio.base_events.Server] = None
        self._writers: List[asyncio.StreamWriter] = []
        self._tasks: List[asyncio.Task] = []

    @property
    def port(self) -> int:
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> "FakeQMPServer":
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        return self

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for writer in self._writers:
            writer.close()
        self._server.close()
        await self._server.wait_closed()

    async def _send(self, writer: asyncio.StreamWriter, payload: Any) -> None:
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode() + b"\r\n"
        writer.write(raw)
        await writer.drain()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        self._tasks.append(asyncio.current_task())
        if self.greeting is not None:
            await self._send(writer, self.greeting)
        negotiated = False
        while True:
            try:
                line = await reader.readline()
            except ConnectionError:
                break
            if not line:
                break
            request = json.loads(line)
            self.received.append(request)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)

            reply = self.handler(request) if self.handler else None
            if reply is None:
                name = request["execute"]
                if name == "qmp_capabilities":
                    negotiated = True
                    reply = {"return": {}}
                elif not negotiated:
                    reply = {"error": {"class": "CommandNotFound", "desc": "Expecting capabilities negotiation"}}
                elif name == "query-commands":
                    reply = [{"event": "RESUME", "data": {}}, {"return": COMMANDS}]
                elif name == "slow":
                    await asyncio.sleep(0.05)
                    reply = {"return": {"slow": True}}
                else:
                    reply = {"error": {"class": "CommandNotFound", "desc": f"The command {name} has not been found"}}
            if reply == "hang":
                await asyncio.sleep(3600)
            if reply == "close":
                writer.close()
                return

            for message in reply if isinstance(reply, list) else [reply]:
                if isinstance(message, dict) and ("return" in message or "error" in message):
                    message = {**message, "id": request.get("id")}
                await self._send(writer, message)
            self._in_flight -= 1


@pytest_asyncio.fixture
async def server():
    srv = await FakeQMPServer().start()
    yield srv
    await srv.stop()


async def connect(srv: FakeQMPServer) -> ControlChannelClient:
    client = ControlChannelClient()
    await client.connect("127.0.0.1", srv.port)
    return client


class TestHandshake:

    @pytest.mark.asyncio
    async def test_create_connection_negotiates(self, server):
        client = await ControlChannelClient.create_connection("127.0.0.1", server.port)
        try:
            assert client.state is ChannelState.READY
            assert client.negotiated
            assert client.greeting["version"]["qemu"]["major"] == 9
            assert server.received[0]["execute"] == "qmp_capabilities"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_command_before_negotiation_is_violation(self, server):
        client = await connect(server)
        assert client.state is ChannelState.NEGOTIATING

        with pytest.raises(ProtocolViolationError):
            await client.execute_command("query-status")

        assert client.state is ChannelState.FAILED
        assert await client.is_alive() is False
        assert server.received == []

    @pytest.mark.asyncio
    async def test_missing_greeting_times_out(self):
        srv = await FakeQMPServer(greeting=None).start()
        try:
            with pytest.raises(ControlChannelError):
                await ControlChannelClient.create_connection("127.0.0.1", srv.port, timeout=0.2)
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_bad_greeting_is_violation(self):
        srv = await FakeQMPServer(greeting={"hello": "world"}).start()
        try:
            with pytest.raises(ProtocolViolationError):
                await ControlChannelClient.create_connection("127.0.0.1", srv.port)
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        srv = await FakeQMPServer().start()
        port = srv.port
        await srv.stop()

        with pytest.raises(ControlChannelError):
            await ControlChannelClient.create_connection("127.0.0.1", port, timeout=0.5)


class TestCommands:

    @pytest.mark.asyncio
    async def test_events_are_skipped(self, server):
        async with await ControlChannelClient.create_connection("127.0.0.1", server.port) as client:
            commands = await client.execute_command("query-commands")

        assert [entry["name"] for entry in commands] == ["qmp_capabilities", "query-commands", "query-status"]

    @pytest.mark.asyncio
    async def test_error_response_keeps_session(self, server):
        async with await ControlChannelClient.create_connection("127.0.0.1", server.port) as client:
            with pytest.raises(ControlCommandError) as excinfo:
                await client.execute_command("bogus")

            assert excinfo.value.error["class"] == "CommandNotFound"
            assert client.state is ChannelState.READY
            assert await client.is_alive() is True

    @pytest.mark.asyncio
    async def test_concurrent_commands_are_serialized(self, server):
        async with await ControlChannelClient.create_connection("127.0.0.1", server.port) as client:
            results = await asyncio.gather(*(client.execute_command("slow") for _ in range(5)))

        assert results == [{"slow": True}] * 5
        assert server.max_in_flight == 1
        ids = [request["id"] for request in server.received]
        assert len(ids) == len(set(ids))

    @pytest.mark.asyncio
    async def test_arguments_are_sent(self, server):
        async with await ControlChannelClient.create_connection("127.0.0.1", server.port) as client:
            with pytest.raises(ControlCommandError):
                await client.execute_command("human-monitor-command", {"command-line": "info status"})

        assert server.received[-1]["arguments"] == {"command-line": "info status"}

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server):
        client = await ControlChannelClient.create_connection("127.0.0.1", server.port)

        await client.close()
        await client.close()

        assert client.state is ChannelState.DISCONNECTED
        with pytest.raises(ControlChannelError):
            await client.execute_command("query-commands")


class TestLiveness:
    """Any failed liveness probe tears the session down."""

    @pytest.mark.asyncio
    async def test_timeout_fails_session(self):
        srv = await FakeQMPServer(lambda r: "hang" if r["execute"] == "query-commands" else None).start()
        try:
            client = await ControlChannelClient.create_connection("127.0.0.1", srv.port)

            assert await client.is_alive(timeout=0.2) is False
            assert client.state is ChannelState.FAILED
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_busy_channel_bounds_liveness_wait(self):
        srv = await FakeQMPServer(lambda r: "hang" if r["execute"] == "block" else None).start()
        try:
            client = await ControlChannelClient.create_connection("127.0.0.1", srv.port)
            blocked = asyncio.create_task(client.execute_command("block", timeout=5))
            await asyncio.sleep(0.05)

            loop = asyncio.get_running_loop()
            started = loop.time()
            alive = await client.is_alive(timeout=0.2)

            assert alive is False
            assert loop.time() - started < 1.0
            assert client.state is ChannelState.FAILED
            with pytest.raises(ControlChannelError):
                await blocked
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_malformed_reply_fails_session(self):
        srv = await FakeQMPServer(
            lambda r: {"return": {"not": "a list"}} if r["execute"] == "query-commands" else None
        ).start()
        try:
            client = await ControlChannelClient.create_connection("127.0.0.1", srv.port)

            assert await client.is_alive() is False
            assert client.state is ChannelState.FAILED
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_peer_close_fails_session(self):
        srv = await FakeQMPServer(lambda r: "close" if r["execute"] == "query-commands" else None).start()
        try:
            client = await ControlChannelClient.create_connection("127.0.0.1", srv.port)

            assert await client.is_alive() is False
            assert client.state is ChannelState.FAILED
        finally:
            await srv.stop()

    @pytest.mark.asyncio
    async def test_garbage_reply_is_violation(self):
        srv = await FakeQMPServer(lambda r: b"not json\r\n" if r["execute"] == "query-status" else None).start()
        try:
            client = await ControlChannelClient.create_connection("127.0.0.1", srv.port)

            with pytest.raises(ProtocolViolationError):
                await client.execute_command("query-status")
            assert client.state is ChannelState.FAILED
        finally:
            await srv.stop()
