"""Tests for the upstream realtime API link."""

import asyncio
import base64
import json

import pytest

from voice_gateway.services.realtime_relay.exceptions import (
    NotConnectedError,
    UpstreamConfigurationError,
    UpstreamConnectError,
    UpstreamSendError,
    UpstreamTimeoutError,
)
from voice_gateway.services.realtime_relay.models import AudioChunk, LinkConfig, LinkState
from voice_gateway.services.realtime_relay.upstream import UpstreamLink, build_realtime_url

_END = object()


class FakeRealtimeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.send_error: Exception | None = None
        self._frames: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._frames.put_nowait(_END)

    def push(self, frame) -> None:
        self._frames.put_nowait(frame)

    def remote_close(self) -> None:
        self._frames.put_nowait(_END)

    def sent_events(self) -> list[dict]:
        return [json.loads(raw) for raw in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._frames.get()
        if frame is _END:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """Callable replacing websockets.connect; hands out sockets in order."""

    def __init__(self, *sockets, error: Exception | None = None, gate: asyncio.Event | None = None) -> None:
        self.sockets = list(sockets)
        self.error = error
        self.gate = gate
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.sockets.pop(0)


def _config(**overrides) -> LinkConfig:
    values = {
        "url": "wss://realtime.test/v1/realtime?model=test-model",
        "api_key": "sk-test",
        "voice": "verse",
        "instructions": "Control the video.",
        "timeout_seconds": 1.0,
    }
    values.update(overrides)
    return LinkConfig(**values)


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# URL construction
# ---------------------------------------------------------------------------


class TestBuildRealtimeUrl:
    def test_model_and_version(self):
        url = build_realtime_url("wss://api.openai.com/v1/realtime", "gpt-4o-realtime-preview", "2025-04-01-preview")
        assert url == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview&api-version=2025-04-01-preview"

    def test_without_version(self):
        assert build_realtime_url("wss://x.test/rt", "m") == "wss://x.test/rt?model=m"

    def test_existing_query(self):
        assert build_realtime_url("wss://x.test/rt?a=1", "m") == "wss://x.test/rt?a=1&model=m"


# ---------------------------------------------------------------------------
# open()
# ---------------------------------------------------------------------------


class TestOpen:
    @pytest.mark.asyncio
    async def test_open_sends_session_update(self):
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(vad_silence_duration_ms=700), connect=FakeConnector(socket))

        await link.open()

        assert link.state == LinkState.OPEN
        assert link.is_open
        events = socket.sent_events()
        assert len(events) == 1
        update = events[0]
        assert update["type"] == "session.update"
        session = update["session"]
        assert session["modalities"] == ["text", "audio"]
        assert session["voice"] == "verse"
        assert session["instructions"] == "Control the video."
        assert session["input_audio_format"] == "pcm16"
        assert session["output_audio_format"] == "pcm16"
        assert session["turn_detection"] == {
            "type": "server_vad",
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 700,
        }
        await link.close()

    @pytest.mark.asyncio
    async def test_open_uses_url_and_auth_headers(self):
        connector = FakeConnector(FakeRealtimeSocket())
        link = UpstreamLink("s1", _config(), connect=connector)

        await link.open()

        url, kwargs = connector.calls[0]
        assert url == "wss://realtime.test/v1/realtime?model=test-model"
        assert kwargs["additional_headers"] == {
            "Authorization": "Bearer sk-test",
            "OpenAI-Beta": "realtime=v1",
        }
        await link.close()

    @pytest.mark.asyncio
    async def test_open_is_noop_when_open(self):
        connector = FakeConnector(FakeRealtimeSocket())
        link = UpstreamLink("s1", _config(), connect=connector)

        await link.open()
        await link.open()

        assert len(connector.calls) == 1
        await link.close()

    @pytest.mark.asyncio
    async def test_concurrent_open_connects_once(self):
        connector = FakeConnector(FakeRealtimeSocket(), FakeRealtimeSocket())
        link = UpstreamLink("s1", _config(), connect=connector)

        await asyncio.gather(link.open(), link.open())

        assert len(connector.calls) == 1
        assert link.state == LinkState.OPEN
        await link.close()

    @pytest.mark.asyncio
    async def test_missing_credential(self):
        connector = FakeConnector(FakeRealtimeSocket())
        link = UpstreamLink("s1", _config(api_key=""), connect=connector)

        with pytest.raises(UpstreamConfigurationError, match="OPENAI_API_KEY"):
            await link.open()

        assert connector.calls == []
        assert link.state == LinkState.IDLE

    @pytest.mark.asyncio
    async def test_rejected_connect(self):
        link = UpstreamLink("s1", _config(), connect=FakeConnector(error=OSError("403 Forbidden")))

        with pytest.raises(UpstreamConnectError, match=r"^\[upstream\].*403 Forbidden"):
            await link.open()

        assert link.state == LinkState.IDLE

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        gate = asyncio.Event()  # never set
        link = UpstreamLink("s1", _config(timeout_seconds=0.05), connect=FakeConnector(gate=gate))

        with pytest.raises(UpstreamTimeoutError):
            await link.open()

        assert link.state == LinkState.IDLE

    @pytest.mark.asyncio
    async def test_handshake_failure(self):
        socket = FakeRealtimeSocket()
        socket.send_error = ConnectionError("reset")
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))

        with pytest.raises(UpstreamConnectError, match="handshake"):
            await link.open()

        assert link.state == LinkState.IDLE
        assert socket.closed

    @pytest.mark.asyncio
    async def test_open_after_close_raises(self):
        link = UpstreamLink("s1", _config(), connect=FakeConnector(FakeRealtimeSocket()))
        await link.close()

        with pytest.raises(NotConnectedError):
            await link.open()

    @pytest.mark.asyncio
    async def test_background_open_failure_reports_error(self):
        errors = []

        async def on_error(exc):
            errors.append(exc)

        link = UpstreamLink("s1", _config(api_key=""), connect=FakeConnector())
        link.on_error(on_error)

        link.ensure_open()
        await _wait_until(lambda: errors)

        assert isinstance(errors[0], UpstreamConfigurationError)
        assert link.state == LinkState.IDLE
        await link.close()


# ---------------------------------------------------------------------------
# send_audio()
# ---------------------------------------------------------------------------


class TestSendAudio:
    @pytest.mark.asyncio
    async def test_send_wraps_audio(self):
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        await link.open()

        pcm = b"\x01\x00\x02\x00"
        await link.send_audio(AudioChunk(data=pcm))

        event = socket.sent_events()[-1]
        assert event == {"type": "input_audio_buffer.append", "audio": base64.b64encode(pcm).decode()}
        await link.close()

    @pytest.mark.asyncio
    async def test_send_when_idle_drops_and_opens(self):
        connector = FakeConnector(FakeRealtimeSocket())
        link = UpstreamLink("s1", _config(), connect=connector)

        with pytest.raises(NotConnectedError):
            await link.send_audio(AudioChunk(data=b"\x00\x00"))

        await _wait_until(lambda: link.state == LinkState.OPEN)
        assert len(connector.calls) == 1
        await link.close()

    @pytest.mark.asyncio
    async def test_send_failure_resets_link(self):
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        await link.open()

        socket.send_error = ConnectionError("broken pipe")
        with pytest.raises(UpstreamSendError):
            await link.send_audio(AudioChunk(data=b"\x00\x00"))

        assert link.state == LinkState.IDLE
        assert socket.closed
        await link.close()

    @pytest.mark.asyncio
    async def test_send_timeout(self):
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(timeout_seconds=0.05), connect=FakeConnector(socket))
        await link.open()

        async def stalled_send(data):
            await asyncio.sleep(1)

        socket.send = stalled_send
        with pytest.raises(UpstreamTimeoutError):
            await link.send_audio(AudioChunk(data=b"\x00\x00"))

        assert link.state == LinkState.IDLE
        await link.close()


# ---------------------------------------------------------------------------
# Receive loop
# ---------------------------------------------------------------------------


class TestReceive:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        socket = FakeRealtimeSocket()
        received = []

        async def on_event(event):
            received.append(event)

        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        link.on_event(on_event)
        await link.open()

        socket.push(json.dumps({"type": "session.created"}))
        socket.push(json.dumps({"type": "response.created"}))
        await _wait_until(lambda: len(received) == 2)

        assert [e["type"] for e in received] == ["session.created", "response.created"]
        await link.close()

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped(self):
        socket = FakeRealtimeSocket()
        received = []

        async def on_event(event):
            received.append(event)

        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        link.on_event(on_event)
        await link.open()

        socket.push("{not json")
        socket.push(json.dumps([1, 2, 3]))
        socket.push(b"\x00\x01")
        socket.push(json.dumps({"type": "response.done"}))
        await _wait_until(lambda: received)

        assert received == [{"type": "response.done"}]
        assert link.is_open
        await link.close()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_loop(self):
        socket = FakeRealtimeSocket()
        received = []

        async def on_event(event):
            if event["type"] == "boom":
                raise RuntimeError("handler failed")
            received.append(event)

        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        link.on_event(on_event)
        await link.open()

        socket.push(json.dumps({"type": "boom"}))
        socket.push(json.dumps({"type": "response.done"}))
        await _wait_until(lambda: received)

        assert link.is_open
        await link.close()

    @pytest.mark.asyncio
    async def test_remote_close_returns_to_idle(self):
        first, second = FakeRealtimeSocket(), FakeRealtimeSocket()
        connector = FakeConnector(first, second)
        link = UpstreamLink("s1", _config(), connect=connector)
        await link.open()

        first.remote_close()
        await _wait_until(lambda: link.state == LinkState.IDLE)

        # Next send re-opens on a fresh socket
        with pytest.raises(NotConnectedError):
            await link.send_audio(AudioChunk(data=b"\x00\x00"))
        await _wait_until(lambda: link.state == LinkState.OPEN)

        assert len(connector.calls) == 2
        assert second.sent_events()[0]["type"] == "session.update"
        await link.close()


# ---------------------------------------------------------------------------
# close()
# ---------------------------------------------------------------------------


class TestClose:
    @pytest.mark.asyncio
    async def test_close_from_idle_is_idempotent(self):
        link = UpstreamLink("s1", _config(), connect=FakeConnector())

        await link.close()
        await link.close()

        assert link.state == LinkState.CLOSED

    @pytest.mark.asyncio
    async def test_close_from_open(self):
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket))
        await link.open()

        await link.close()
        await link.close()

        assert link.state == LinkState.CLOSED
        assert not link.is_open
        assert socket.closed

    @pytest.mark.asyncio
    async def test_close_during_background_open(self):
        gate = asyncio.Event()
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket, gate=gate))

        link.ensure_open()
        await _wait_until(lambda: link.state == LinkState.CONNECTING)
        await link.close()

        assert link.state == LinkState.CLOSED
        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_close_while_open_call_in_flight(self):
        gate = asyncio.Event()
        socket = FakeRealtimeSocket()
        link = UpstreamLink("s1", _config(), connect=FakeConnector(socket, gate=gate))

        opening = asyncio.create_task(link.open())
        await _wait_until(lambda: link.state == LinkState.CONNECTING)
        await link.close()
        gate.set()
        await opening

        assert link.state == LinkState.CLOSED
        assert socket.closed
        assert socket.sent == []
