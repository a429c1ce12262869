"""Relay session — one client WebSocket bridged to one realtime API link.

Each session runs two ordered inbound streams concurrently:
1. client → realtime: the ``run()`` loop reads binary PCM and JSON text
   frames from the client socket and forwards audio through the UpstreamLink
2. realtime → client: the link's receive task delivers parsed events to
   ``_handle_upstream_event``, which translates them into client messages,
   buffers audio, and feeds assistant text to the CommandExtractor

Both streams share the audio buffer and the client socket, so every
client write and every buffer mutation happens under the session lock.

Lifecycle:
    1. initializing → linking: ``run()`` acknowledges the client socket
       with ``connected`` and schedules the upstream open (fire-and-forget)
    2. linking → active: the upstream link reports open
    3. active → linking: the realtime API closes the link; the next client
       frame re-opens it
    4. * → closing → closed: the client disconnects or errors; the link is
       closed and buffers are released

Upstream failures never end the session: they are reported to the client
as ``error`` messages and the session stays open.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocketState

from voice_gateway.services.realtime_relay.audio import AudioBuffer, pcm_duration_ms
from voice_gateway.services.realtime_relay.commands import CommandExtractor
from voice_gateway.services.realtime_relay.exceptions import (
    NotConnectedError,
    RelayError,
    UpstreamConfigurationError,
)
from voice_gateway.services.realtime_relay.models import (
    DEFAULT_SAMPLE_RATE,
    AudioChunk,
    AudioDeliveryMode,
    Command,
    ConnectedMessage,
    ErrorMessage,
    LinkState,
    ResponseAudioDoneMessage,
    ResponseAudioTranscriptDoneMessage,
    ResponseEndMessage,
    ResponseStartMessage,
    SessionState,
    UpstreamEventType,
    VideoControlMessage,
)
from voice_gateway.services.realtime_relay.upstream import UpstreamLink

logger = logging.getLogger(__name__)

FAILED_TO_PROCESS = "Failed to process message"
DEFAULT_UPSTREAM_ERROR = "Realtime API error"


class RelaySession:
    """Orchestrates one client connection and its upstream realtime link.

    Usage::

        session = RelaySession(websocket=ws, link=UpstreamLink(...))
        await session.run()  # blocks until the client disconnects
    """

    def __init__(
        self,
        websocket: WebSocket,
        link: UpstreamLink,
        *,
        extractor: CommandExtractor | None = None,
        delivery_mode: AudioDeliveryMode = AudioDeliveryMode.BUFFERED,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
    ) -> None:
        self._session_id = link.session_id
        self._ws = websocket
        self._link = link
        self._extractor = extractor or CommandExtractor()
        self._delivery_mode = delivery_mode
        self._sample_rate = sample_rate
        self._audio = AudioBuffer()
        self._lock = asyncio.Lock()
        self._phase = SessionState.INITIALIZING
        self._upstream_disabled = False

        self._link.on_event(self._handle_upstream_event)
        self._link.on_error(self._handle_link_error)

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def state(self) -> SessionState:
        if self._phase != SessionState.LINKING:
            return self._phase
        return SessionState.ACTIVE if self._link.state == LinkState.OPEN else SessionState.LINKING

    @property
    def is_open(self) -> bool:
        """Whether the client socket can still receive messages."""
        if self._phase in (SessionState.CLOSING, SessionState.CLOSED):
            return False
        return self._ws.client_state == WebSocketState.CONNECTED

    @property
    def buffered_bytes(self) -> int:
        return len(self._audio)

    async def run(self) -> None:
        """Main loop: read frames from the client and dispatch by kind.

        Blocks until the client socket closes or errors, then closes the session.
        """
        await self._send_json(ConnectedMessage())
        self._phase = SessionState.LINKING
        self._link.ensure_open()

        try:
            while self._phase not in (SessionState.CLOSING, SessionState.CLOSED):
                message = await self._ws.receive()

                if message["type"] == "websocket.disconnect":
                    break

                if message["type"] == "websocket.receive":
                    if "bytes" in message and message["bytes"]:
                        await self._handle_frame(self._handle_audio, message["bytes"])
                    elif "text" in message and message["text"]:
                        await self._handle_frame(self._handle_text, message["text"])

        except WebSocketDisconnect:
            logger.info("Session %s: client WebSocket disconnected", self._session_id)
        except Exception as exc:
            logger.error("Session %s: relay error: %s", self._session_id, exc, exc_info=True)
        finally:
            await self.close()

    async def close(self, disconnect: bool = False) -> None:
        """Close the upstream link and release buffers. Idempotent.

        Args:
            disconnect: Also close the client socket (used on server shutdown).
        """
        if self._phase in (SessionState.CLOSING, SessionState.CLOSED):
            return

        self._phase = SessionState.CLOSING
        try:
            await self._link.close()
        except Exception as exc:
            logger.warning("Session %s: error closing upstream link: %s", self._session_id, exc)
        finally:
            self._audio.clear()

        if disconnect and self._ws.client_state == WebSocketState.CONNECTED:
            try:
                await self._ws.close()
            except Exception as exc:
                logger.warning("Session %s: error closing client socket: %s", self._session_id, exc)

        self._phase = SessionState.CLOSED
        logger.info("Session %s closed", self._session_id)

    async def send_command(self, command: Command) -> bool:
        """Push a device command to the client. Returns False if it could not be sent."""
        if not self.is_open:
            return False
        return await self._send_json(VideoControlMessage(command=command))

    # ------------------------------------------------------------------
    # Client → realtime
    # ------------------------------------------------------------------

    async def _handle_frame(self, handler, payload) -> None:
        """Run a frame handler; malformed frames get an error reply, never a disconnect."""
        try:
            await handler(payload)
        except (ValueError, ValidationError) as exc:
            logger.warning("Session %s: malformed client frame: %s", self._session_id, exc)
            await self._send_error(FAILED_TO_PROCESS)

    async def _handle_audio(self, data: bytes) -> None:
        """Forward one binary frame of client PCM to the realtime API."""
        chunk = AudioChunk(data=data, sample_rate=self._sample_rate)

        if self._upstream_disabled:
            logger.debug("Session %s: upstream disabled, dropping %d bytes", self._session_id, len(data))
            return

        try:
            await self._link.send_audio(chunk)
        except NotConnectedError:
            logger.debug(
                "Session %s: link %s, dropped %.0f ms of audio",
                self._session_id,
                self._link.state.value,
                pcm_duration_ms(len(data), self._sample_rate),
            )
        except RelayError as exc:
            logger.warning("Session %s: failed to forward audio: %s", self._session_id, exc)
            await self._send_error(str(exc))

    async def _handle_text(self, raw: str) -> None:
        """Parse a JSON control frame from the client. Only logged for now."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")

        logger.info("Session %s: client message type=%s", self._session_id, data.get("type"))
        if not self._upstream_disabled and not self._link.is_open:
            self._link.ensure_open()

    # ------------------------------------------------------------------
    # Realtime → client
    # ------------------------------------------------------------------

    async def _handle_upstream_event(self, event: dict[str, Any]) -> None:
        """Translate one realtime API event into client messages."""
        event_type = event.get("type")

        if event_type == UpstreamEventType.RESPONSE_AUDIO_DELTA:
            await self._on_audio_delta(event.get("delta"))
        elif event_type == UpstreamEventType.RESPONSE_AUDIO_DONE:
            await self._on_audio_done()
        elif event_type == UpstreamEventType.RESPONSE_CREATED:
            await self._send_json(ResponseStartMessage())
        elif event_type == UpstreamEventType.RESPONSE_DONE:
            await self._send_json(ResponseEndMessage())
        elif event_type == UpstreamEventType.RESPONSE_AUDIO_TRANSCRIPT_DONE:
            await self._send_json(ResponseAudioTranscriptDoneMessage(transcript=event.get("transcript")))
        elif event_type == UpstreamEventType.RESPONSE_TEXT_DELTA:
            delta = event.get("delta")
            if delta:
                await self._process_text(delta)
        elif event_type == UpstreamEventType.CONVERSATION_ITEM_CREATED:
            text = _assistant_text(event.get("item"))
            if text:
                await self._process_text(text)
        elif event_type == UpstreamEventType.ERROR:
            message = _error_message(event.get("error"))
            logger.error("Session %s: realtime API error: %s", self._session_id, message)
            await self._send_error(message)
        elif event_type in (UpstreamEventType.SESSION_CREATED, UpstreamEventType.SESSION_UPDATED):
            logger.info("Session %s: %s", self._session_id, event_type)
        else:
            logger.debug("Session %s: ignoring realtime event %s", self._session_id, event_type)

    async def _on_audio_delta(self, delta: str | None) -> None:
        if not delta:
            return
        try:
            audio = base64.b64decode(delta, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Session %s: undecodable audio delta discarded", self._session_id)
            return

        if self._delivery_mode == AudioDeliveryMode.STREAMING:
            await self._send_bytes(audio)
            return

        async with self._lock:
            if self._phase not in (SessionState.CLOSING, SessionState.CLOSED):
                self._audio.append(audio)

    async def _on_audio_done(self) -> None:
        """Flush the segment as one binary frame, then signal completion."""
        async with self._lock:
            segments = self._audio.segments
            audio = self._audio.drain()
            if audio:
                await self._write_bytes(audio)
                logger.info(
                    "Session %s: flushed %d audio deltas (%d bytes, %.0f ms)",
                    self._session_id,
                    segments,
                    len(audio),
                    pcm_duration_ms(len(audio), self._sample_rate),
                )
            await self._write_json(ResponseAudioDoneMessage())

    async def _process_text(self, text: str) -> None:
        command = self._extractor.extract(text)
        if command is None:
            return
        logger.info("Session %s: sending video command %s", self._session_id, command.type)
        await self._send_json(VideoControlMessage(command=command))

    async def _handle_link_error(self, exc: RelayError) -> None:
        """Report a failed background open to the client; the session stays open."""
        if isinstance(exc, UpstreamConfigurationError):
            self._upstream_disabled = True
        await self._send_error(str(exc))

    # ------------------------------------------------------------------
    # Client writes
    # ------------------------------------------------------------------

    async def _send_error(self, message: str) -> bool:
        return await self._send_json(ErrorMessage(error=message))

    async def _send_json(self, message: BaseModel) -> bool:
        async with self._lock:
            return await self._write_json(message)

    async def _send_bytes(self, data: bytes) -> bool:
        async with self._lock:
            return await self._write_bytes(data)

    async def _write_json(self, message: BaseModel) -> bool:
        """Send a Pydantic model as a JSON text frame. Caller holds the lock."""
        try:
            if self._ws.client_state == WebSocketState.CONNECTED:
                await self._ws.send_text(message.model_dump_json())
                return True
        except Exception as exc:
            logger.warning("Session %s: failed to send message to client: %s", self._session_id, exc)
        return False

    async def _write_bytes(self, data: bytes) -> bool:
        """Send a binary frame. Caller holds the lock."""
        try:
            if self._ws.client_state == WebSocketState.CONNECTED:
                await self._ws.send_bytes(data)
                return True
        except Exception as exc:
            logger.warning("Session %s: failed to send audio to client: %s", self._session_id, exc)
        return False


def _assistant_text(item: Any) -> str | None:
    """Text of the first content part of an assistant message item, if any."""
    if not isinstance(item, dict):
        return None
    if item.get("type") != "message" or item.get("role") != "assistant":
        return None
    content = item.get("content") or []
    first = content[0] if content else None
    if isinstance(first, dict) and first.get("type") == "text":
        return first.get("text")
    return None


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return error.get("message") or DEFAULT_UPSTREAM_ERROR
    if isinstance(error, str) and error:
        return error
    return DEFAULT_UPSTREAM_ERROR
