"""Relay client — the client side of the gateway WebSocket protocol.

Connects to the gateway relay endpoint, streams PCM audio up, and
dispatches everything the gateway sends back to a RelayClientHandler.
Device commands arrive through ``RelayClientHandler.apply_command``; the
player (or any other consumer) subclasses the handler and registers it
when the client is created.

Reconnects after an abnormal close, up to ``max_reconnect_attempts``
times with a linear delay (``reconnect_delay * attempt``). A close with
code 1000, including one caused by ``disconnect()``, ends the client.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import websockets
from pydantic import TypeAdapter, ValidationError
from websockets.exceptions import ConnectionClosed

from voice_gateway.services.realtime_relay.models import Command, DownstreamMessageType

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

_command_adapter: TypeAdapter = TypeAdapter(Command)


class RelayClientHandler:
    """Callbacks invoked by RelayClient. Override the ones you need."""

    async def on_connect(self) -> None:
        pass

    async def on_disconnect(self) -> None:
        pass

    async def on_error(self, message: str) -> None:
        pass

    async def on_audio(self, data: bytes) -> None:
        pass

    async def on_audio_done(self) -> None:
        pass

    async def on_response_start(self) -> None:
        pass

    async def on_response_end(self) -> None:
        pass

    async def on_transcript(self, transcript: str | None) -> None:
        pass

    async def apply_command(self, command: Command) -> None:
        pass


class RelayClient:
    """Async client for the gateway relay WebSocket.

    Usage::

        client = RelayClient("ws://localhost:3001/ws_recall", handler=MyHandler())
        runner = asyncio.create_task(client.run())
        await client.send_audio(pcm_bytes)
        ...
        await client.disconnect()
        await runner
    """

    def __init__(
        self,
        url: str,
        handler: RelayClientHandler,
        *,
        max_reconnect_attempts: int = 3,
        reconnect_delay: float = 1.0,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ) -> None:
        self._url = url
        self._handler = handler
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._connect = connect
        self._ws = None
        self._reconnect_attempts = 0
        self._stopping = False
        self._connected = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def wait_connected(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    async def run(self) -> None:
        """Connect and dispatch messages until a normal close or retries run out."""
        self._stopping = False
        while True:
            close_code = await self._connect_once()
            if self._stopping or close_code == NORMAL_CLOSURE:
                break
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                logger.warning("Giving up on %s after %d reconnect attempts", self._url, self._reconnect_attempts)
                break

            self._reconnect_attempts += 1
            delay = self._reconnect_delay * self._reconnect_attempts
            logger.info(
                "Attempting to reconnect (%d/%d) in %.1fs...",
                self._reconnect_attempts,
                self._max_reconnect_attempts,
                delay,
            )
            await asyncio.sleep(delay)

    async def send_audio(self, data: bytes) -> bool:
        """Send one binary PCM frame. Returns False when not connected."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(data)
        except ConnectionClosed as exc:
            logger.warning("Relay socket closed while sending audio: %s", exc)
            return False
        return True

    async def send_message(self, message: dict[str, Any]) -> bool:
        """Send one JSON text frame. Returns False when not connected."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            logger.warning("Relay socket closed while sending message: %s", exc)
            return False
        return True

    async def disconnect(self) -> None:
        """Close with code 1000 and stop reconnecting."""
        self._stopping = True
        ws = self._ws
        if ws is not None:
            await ws.close(code=NORMAL_CLOSURE, reason="User initiated disconnect")

    async def _connect_once(self) -> int | None:
        try:
            ws = await self._connect(self._url, max_size=None)
        except Exception as exc:
            logger.error("Failed to connect to %s: %s", self._url, exc)
            await self._handler.on_error("Failed to connect")
            return None

        self._ws = ws
        self._reconnect_attempts = 0
        self._connected.set()
        logger.info("Relay WebSocket connected: %s", self._url)
        await self._handler.on_connect()

        close_code = None
        try:
            async for frame in ws:
                await self._dispatch(frame)
            close_code = ws.close_code
        except ConnectionClosed as exc:
            close_code = exc.rcvd.code if exc.rcvd is not None else None
        finally:
            self._ws = None
            self._connected.clear()
            logger.info("Relay WebSocket disconnected (code=%s)", close_code)
            await self._handler.on_disconnect()
        return close_code

    async def _dispatch(self, frame: str | bytes) -> None:
        """Route one frame from the gateway to the handler."""
        if isinstance(frame, bytes):
            await self._handler.on_audio(frame)
            return

        try:
            message = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning("Invalid JSON from gateway: %s", frame[:200])
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object message from gateway")
            return

        msg_type = message.get("type")
        if msg_type == DownstreamMessageType.RESPONSE_START:
            await self._handler.on_response_start()
        elif msg_type == DownstreamMessageType.RESPONSE_END:
            await self._handler.on_response_end()
        elif msg_type == DownstreamMessageType.VIDEO_CONTROL:
            try:
                command = _command_adapter.validate_python(message.get("command"))
            except ValidationError as exc:
                logger.warning("Invalid video command from gateway: %s", exc)
                return
            await self._handler.apply_command(command)
        elif msg_type == DownstreamMessageType.RESPONSE_AUDIO_TRANSCRIPT_DONE:
            await self._handler.on_transcript(message.get("transcript"))
        elif msg_type == DownstreamMessageType.RESPONSE_AUDIO_DONE:
            await self._handler.on_audio_done()
        elif msg_type == DownstreamMessageType.ERROR:
            await self._handler.on_error(message.get("error") or "Unknown error")
        elif msg_type == DownstreamMessageType.CONNECTED:
            logger.debug("Gateway acknowledged connection")
        else:
            logger.info("Unknown message type: %s", msg_type)
