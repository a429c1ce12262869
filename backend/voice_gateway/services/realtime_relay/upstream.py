"""Upstream link to the OpenAI Realtime API.

Owns one outbound WebSocket per relay session. The link only speaks the
wire protocol: it opens the socket with the bearer credential and beta
header, sends the ``session.update`` handshake, wraps client audio in
``input_audio_buffer.append`` envelopes, and delivers parsed inbound events
to the owning session. It performs no business logic on event content.

State machine:
    idle → connecting → open → closed
    open → idle on remote close (the next send re-opens)

There is no reconnect loop. Sending while not open schedules an open in the
background and drops that audio (at-most-once, no retry queue).
"""

import asyncio
import base64
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from voice_gateway.services.realtime_relay.exceptions import (
    NotConnectedError,
    RelayError,
    UpstreamConfigurationError,
    UpstreamConnectError,
    UpstreamSendError,
    UpstreamTimeoutError,
)
from voice_gateway.services.realtime_relay.models import (
    AudioChunk,
    InputAudioBufferAppendEvent,
    LinkConfig,
    LinkState,
    RealtimeSessionConfig,
    SessionUpdateEvent,
    TurnDetection,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], Awaitable[None]]
ErrorHandler = Callable[[RelayError], Awaitable[None]]


def build_realtime_url(base_url: str, model: str, api_version: str = "") -> str:
    """Append the model (and optional api-version) query parameters to ``base_url``."""
    params = {"model": model}
    if api_version:
        params["api-version"] = api_version
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{urlencode(params)}"


class UpstreamLink:
    """One outbound connection to the realtime API, owned by a single session.

    Usage::

        link = UpstreamLink(session_id="abc", config=LinkConfig(url=..., api_key=...))
        link.on_event(handle_event)
        link.on_error(handle_error)
        await link.open()
        try:
            await link.send_audio(AudioChunk(data=pcm_bytes))
        finally:
            await link.close()
    """

    def __init__(
        self,
        session_id: str,
        config: LinkConfig,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ) -> None:
        self._session_id = session_id
        self._config = config
        self._connect = connect
        self._state = LinkState.IDLE
        self._ws = None
        self._open_task: asyncio.Task | None = None
        self._reader_task: asyncio.Task | None = None
        self._event_handler: EventHandler | None = None
        self._error_handler: ErrorHandler | None = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == LinkState.OPEN and self._ws is not None

    def on_event(self, handler: EventHandler) -> None:
        """Register the coroutine that receives every parsed upstream event."""
        self._event_handler = handler

    def on_error(self, handler: ErrorHandler) -> None:
        """Register the coroutine notified when a background open fails."""
        self._error_handler = handler

    async def open(self) -> None:
        """Connect, send the session handshake and start the receive loop.

        No-op if the link is already connecting or open.

        Raises:
            UpstreamConfigurationError: If no credential is configured.
            UpstreamTimeoutError: If the connect or handshake times out.
            UpstreamConnectError: If the connection or handshake is rejected.
            NotConnectedError: If the link has been closed for good.
        """
        if self._state in (LinkState.CONNECTING, LinkState.OPEN):
            return
        if self._state == LinkState.CLOSED:
            raise NotConnectedError(self._session_id, "Upstream link is closed")
        if not self._config.api_key:
            raise UpstreamConfigurationError("OPENAI_API_KEY is not configured; cannot open the realtime link")

        self._state = LinkState.CONNECTING
        logger.info("Session %s connecting to realtime API", self._session_id)

        try:
            ws = await asyncio.wait_for(
                self._connect(
                    self._config.url,
                    additional_headers=self._headers(),
                    open_timeout=None,
                ),
                timeout=self._config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self._mark_idle()
            raise UpstreamTimeoutError(
                f"Connect timed out after {self._config.timeout_seconds}s (session {self._session_id})"
            ) from exc
        except Exception as exc:
            self._mark_idle()
            raise UpstreamConnectError(f"Failed to connect session {self._session_id}: {exc}") from exc

        if self._state == LinkState.CLOSED:
            # close() ran while the connect was in flight
            await self._close_socket(ws)
            return

        self._ws = ws
        try:
            await self._send(self._session_update())
        except RelayError as exc:
            raise UpstreamConnectError(
                f"Session handshake failed for session {self._session_id}: {exc.__cause__ or exc}"
            ) from exc

        if self._state == LinkState.CLOSED:
            return

        self._state = LinkState.OPEN
        self._reader_task = asyncio.create_task(self._receive_loop(ws))
        logger.info("Session %s realtime link open (voice=%s)", self._session_id, self._config.voice)

    def ensure_open(self) -> None:
        """Start a background open unless one is running or the link is usable.

        Failures are reported to the error handler instead of raised.
        """
        if self._state != LinkState.IDLE:
            return
        if self._open_task is not None and not self._open_task.done():
            return
        self._open_task = asyncio.create_task(self._open_in_background())

    async def send_audio(self, chunk: AudioChunk) -> None:
        """Send one PCM chunk as an ``input_audio_buffer.append`` event.

        Raises:
            NotConnectedError: If the link is not open. A background open is
                scheduled and the chunk is dropped.
            UpstreamTimeoutError: If the write times out. The link is reset.
            UpstreamSendError: If the write fails. The link is reset.
        """
        if not self.is_open:
            self.ensure_open()
            raise NotConnectedError(self._session_id, f"Upstream link is {self._state.value}, audio dropped")

        encoded = base64.b64encode(chunk.data).decode("ascii")
        await self._send(InputAudioBufferAppendEvent(audio=encoded))

    async def close(self) -> None:
        """Close the socket and stop background work. Safe to call repeatedly."""
        if self._state == LinkState.CLOSED:
            return

        previous = self._state
        self._state = LinkState.CLOSED
        ws, self._ws = self._ws, None

        current = asyncio.current_task()
        for task in (self._open_task, self._reader_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._open_task = None
        self._reader_task = None

        if ws is not None:
            await self._close_socket(ws)

        logger.info("Session %s realtime link closed (was %s)", self._session_id, previous.value)

    async def _open_in_background(self) -> None:
        try:
            await self.open()
        except RelayError as exc:
            logger.warning("Session %s realtime link open failed: %s", self._session_id, exc)
            if self._error_handler is not None:
                await self._error_handler(exc)

    async def _receive_loop(self, ws) -> None:
        """Parse inbound frames and hand them to the event handler until the socket ends."""
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    logger.warning("Session %s: unexpected binary frame from realtime API", self._session_id)
                    continue

                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Session %s: invalid JSON from realtime API: %s", self._session_id, raw[:200])
                    continue

                if not isinstance(event, dict):
                    logger.warning("Session %s: non-object event from realtime API", self._session_id)
                    continue

                if self._event_handler is None:
                    continue
                try:
                    await self._event_handler(event)
                except Exception as exc:
                    logger.error(
                        "Session %s: error handling realtime event %s: %s",
                        self._session_id,
                        event.get("type"),
                        exc,
                        exc_info=True,
                    )
        except ConnectionClosed as exc:
            logger.info("Session %s realtime socket closed by remote: %s", self._session_id, exc)
        except Exception as exc:
            logger.error("Session %s realtime receive error: %s", self._session_id, exc, exc_info=True)
        finally:
            if self._ws is ws:
                self._ws = None
                self._mark_idle()
                logger.info("Session %s realtime link idle; next send re-opens", self._session_id)

    async def _send(self, event) -> None:
        ws = self._ws
        if ws is None:
            raise NotConnectedError(self._session_id, "Upstream link has no socket")

        try:
            await asyncio.wait_for(ws.send(event.model_dump_json()), timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            await self._reset(ws)
            raise UpstreamTimeoutError(f"Write timed out on session {self._session_id}") from exc
        except Exception as exc:
            await self._reset(ws)
            raise UpstreamSendError(f"Failed to send {event.type.value} on session {self._session_id}: {exc}") from exc

    async def _reset(self, ws) -> None:
        """Drop a broken socket so the next send re-opens the link."""
        if self._ws is ws:
            self._ws = None
        self._mark_idle()
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        self._reader_task = None
        await self._close_socket(ws)

    async def _close_socket(self, ws) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=self._config.timeout_seconds)
        except Exception as exc:
            logger.warning("Session %s: error closing realtime socket: %s", self._session_id, exc)

    def _mark_idle(self) -> None:
        if self._state in (LinkState.CONNECTING, LinkState.OPEN):
            self._state = LinkState.IDLE

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "OpenAI-Beta": self._config.beta_header,
        }

    def _session_update(self) -> SessionUpdateEvent:
        return SessionUpdateEvent(
            session=RealtimeSessionConfig(
                instructions=self._config.instructions,
                voice=self._config.voice,
                turn_detection=TurnDetection(
                    threshold=self._config.vad_threshold,
                    prefix_padding_ms=self._config.vad_prefix_padding_ms,
                    silence_duration_ms=self._config.vad_silence_duration_ms,
                ),
            )
        )
