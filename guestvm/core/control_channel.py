"""
QMP control-channel client.

Line-delimited JSON over TCP. After connecting, the server sends a greeting
(``{"QMP": {...}}``); the client must send ``qmp_capabilities`` before any
other command. Each request carries an ``id`` that the matching ``return`` or
``error`` response echoes; asynchronous ``event`` messages are skipped.

State machine::

    DISCONNECTED -> CONNECTING -> NEGOTIATING -> READY -> DISCONNECTED | FAILED

A client that reached FAILED is never reused: callers close it and create a
fresh one.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from enum import Enum
from typing import Any, Dict, Optional

from guestvm.core.errors import ControlChannelError, ControlCommandError, GuestVMError, ProtocolViolationError
from guestvm.core.logging_utils import get_module_logger

logger = get_module_logger("ControlChannel")

NEGOTIATION_COMMAND = "qmp_capabilities"
INTROSPECTION_COMMAND = "query-commands"

CONNECT_TIMEOUT = 2.0
COMMAND_TIMEOUT = 5.0
LIVENESS_TIMEOUT = 1.0
CLOSE_TIMEOUT = 1.0
# query-commands replies are large
STREAM_LIMIT = 1024 * 1024


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    READY = "ready"
    FAILED = "failed"


class ControlChannelClient:
    """One QMP session. At most one command is in flight at a time."""

    def __init__(self) -> None:
        self._state = ChannelState.DISCONNECTED
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._greeting: Optional[Dict[str, Any]] = None
        self.endpoint: Optional[str] = None

    @classmethod
    async def create_connection(
        cls,
        host: str,
        port: int,
        *,
        timeout: float = CONNECT_TIMEOUT,
    ) -> "ControlChannelClient":
        """Connect and negotiate; the returned client is READY."""
        client = cls()
        try:
            await client.connect(host, port, timeout=timeout)
            await client.negotiate(timeout=timeout)
        except BaseException:
            await client.close()
            raise
        return client

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def negotiated(self) -> bool:
        return self._state is ChannelState.READY

    @property
    def greeting(self) -> Optional[Dict[str, Any]]:
        return self._greeting

    async def __aenter__(self) -> "ControlChannelClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Connection

    async def connect(self, host: str, port: int, *, timeout: float = CONNECT_TIMEOUT) -> None:
        if self._state is not ChannelState.DISCONNECTED:
            raise ProtocolViolationError(f"connect() called in state {self._state.value}")

        self.endpoint = f"{host}:{port}"
        self._state = ChannelState.CONNECTING
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=STREAM_LIMIT),
                timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self._state = ChannelState.FAILED
            raise ControlChannelError(f"Could not connect to {self.endpoint}: {e or 'timed out'}") from e

        self._state = ChannelState.NEGOTIATING
        try:
            message = await self._read_message(timeout)
        except asyncio.TimeoutError as e:
            await self._fail()
            raise ControlChannelError(f"No greeting from {self.endpoint} within {timeout:.1f}s") from e
        except (OSError, EOFError) as e:
            await self._fail()
            raise ControlChannelError(f"Connection to {self.endpoint} lost before greeting: {e}") from e
        except ProtocolViolationError:
            await self._fail()
            raise

        if not isinstance(message.get("QMP"), dict):
            await self._fail()
            raise ProtocolViolationError(f"Expected QMP greeting, got {message!r}")
        self._greeting = message["QMP"]
        logger.debug("Connected to %s, greeting %s", self.endpoint, self._greeting.get("version"))

    async def negotiate(self, *, timeout: float = COMMAND_TIMEOUT) -> Dict[str, Any]:
        return await self.execute_command(NEGOTIATION_COMMAND, timeout=timeout)

    async def close(self) -> None:
        """Destroy the socket. Safe to call repeatedly and on a dead socket."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if self._state is not ChannelState.FAILED:
            self._state = ChannelState.DISCONNECTED
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError, asyncio.TimeoutError):
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT)

    async def _fail(self) -> None:
        self._state = ChannelState.FAILED
        await self.close()

    # ------------------------------------------------------------------
    # Commands

    async def execute_command(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        *,
        timeout: float = COMMAND_TIMEOUT,
    ) -> Any:
        """Send one command and return its ``return`` payload.

        Raises:
            ProtocolViolationError: command sent before negotiation, or the
                server replied with something that is not a response. The
                session is torn down.
            ControlChannelError: not connected, I/O failure or timeout. The
                session is torn down.
            ControlCommandError: the server answered ``{"error": ...}``. The
                session stays usable.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ControlChannelError(f"'{name}' timed out after {timeout:.1f}s waiting for the channel") from e
        try:
            return await self._execute_locked(name, arguments, max(deadline - loop.time(), 0.0))
        finally:
            self._lock.release()

    async def _execute_locked(self, name: str, arguments: Optional[Dict[str, Any]], timeout: float) -> Any:
        if self._state is ChannelState.NEGOTIATING and name != NEGOTIATION_COMMAND:
            await self._fail()
            raise ProtocolViolationError(f"'{name}' sent before {NEGOTIATION_COMMAND} completed")
        if self._state not in (ChannelState.NEGOTIATING, ChannelState.READY) or self._writer is None:
            raise ControlChannelError(f"Cannot send '{name}': channel is {self._state.value}")

        request_id = next(self._ids)
        request: Dict[str, Any] = {"execute": name, "id": request_id}
        if arguments:
            request["arguments"] = arguments

        try:
            self._writer.write(json.dumps(request).encode("utf-8") + b"\r\n")
            await asyncio.wait_for(self._writer.drain(), timeout=timeout)
            response = await self._await_response(request_id, timeout)
        except asyncio.TimeoutError as e:
            await self._fail()
            raise ControlChannelError(f"'{name}' timed out after {timeout:.1f}s") from e
        except (OSError, EOFError) as e:
            await self._fail()
            raise ControlChannelError(f"'{name}' failed: {e}") from e
        except ProtocolViolationError:
            await self._fail()
            raise

        if "error" in response:
            raise ControlCommandError(name, response["error"])
        if name == NEGOTIATION_COMMAND and self._state is ChannelState.NEGOTIATING:
            self._state = ChannelState.READY
            logger.info("Control channel ready on %s", self.endpoint)
        return response.get("return", {})

    async def is_alive(self, timeout: float = LIVENESS_TIMEOUT) -> bool:
        """Probe with ``query-commands``. Any failure tears the session down."""
        if self._state is not ChannelState.READY:
            return False
        try:
            commands = await self.execute_command(INTROSPECTION_COMMAND, timeout=timeout)
        except GuestVMError as e:
            logger.info("Liveness probe on %s failed: %s", self.endpoint, e)
            await self._fail()
            return False
        if not _is_command_list(commands):
            logger.warning("Liveness probe on %s returned malformed data", self.endpoint)
            await self._fail()
            return False
        return True

    # ------------------------------------------------------------------
    # Wire

    async def _await_response(self, request_id: int, timeout: float) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()
            message = await self._read_message(remaining)
            if "event" in message:
                logger.debug("Event: %s", message.get("event"))
                continue
            if "return" not in message and "error" not in message:
                raise ProtocolViolationError(f"Unexpected message {message!r}")
            if message.get("id", request_id) != request_id:
                raise ProtocolViolationError(f"Response id {message.get('id')!r} does not match {request_id}")
            return message

    async def _read_message(self, timeout: float) -> Dict[str, Any]:
        if self._reader is None:
            raise EOFError("not connected")
        try:
            line = await asyncio.wait_for(self._reader.readline(), timeout=timeout)
        except ValueError as e:
            raise ProtocolViolationError(f"Oversized message: {e}") from e
        if not line:
            raise EOFError("connection closed by peer")
        try:
            message = json.loads(line)
        except ValueError as e:
            raise ProtocolViolationError(f"Malformed JSON from server: {line[:200]!r}") from e
        if not isinstance(message, dict):
            raise ProtocolViolationError(f"Expected a JSON object, got {message!r}")
        return message


def _is_command_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, dict) and "name" in item for item in value)


__all__ = [
    "ChannelState",
    "ControlChannelClient",
    "INTROSPECTION_COMMAND",
    "NEGOTIATION_COMMAND",
]
