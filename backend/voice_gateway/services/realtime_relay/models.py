"""Realtime relay protocol models.

Defines the JSON messages exchanged on both sides of the relay. Audio is
sent downstream as raw binary frames (16-bit PCM, mono, little-endian) and
upstream as base64 inside ``input_audio_buffer.append`` events.

Protocol:
    Client → Gateway (downstream, inbound):
        binary frames   — raw PCM audio
        text frames     — JSON objects, logged only

    Gateway → Client (downstream, outbound text frames):
        connected, error, response_start, response_end,
        response_audio_done, response_audio_transcript_done, video_control

    Gateway ↔ Realtime API (upstream):
        session.update, input_audio_buffer.append            — outbound
        response.audio.delta, response.audio.done, ...       — inbound
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator

# Audio constants
DEFAULT_SAMPLE_RATE = 24000
SAMPLE_WIDTH_BYTES = 2  # 16-bit
CHANNELS = 1
UPSTREAM_AUDIO_FORMAT = "pcm16"


class LinkState(str, Enum):
    """Lifecycle states of an upstream realtime link."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SessionState(str, Enum):
    """Lifecycle states of a relay session."""

    INITIALIZING = "initializing"
    LINKING = "linking"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class AudioDeliveryMode(str, Enum):
    """How upstream audio deltas reach the client.

    BUFFERED: deltas are accumulated and flushed as one binary frame when the
        audio segment is done, so the client can play one continuous waveform.
    STREAMING: every delta is forwarded as its own binary frame.
    """

    BUFFERED = "buffered"
    STREAMING = "streaming"


# ---------------------------------------------------------------------------
# Device commands
# ---------------------------------------------------------------------------


class _FrozenModel(BaseModel):
    model_config = {"frozen": True}


class PlayCommand(_FrozenModel):
    type: Literal["play"] = "play"


class PauseCommand(_FrozenModel):
    type: Literal["pause"] = "pause"


class SeekCommand(_FrozenModel):
    type: Literal["seek"] = "seek"
    value: float = Field(..., ge=0, description="Target position in seconds")


class VolumeCommand(_FrozenModel):
    type: Literal["volume"] = "volume"
    value: float = Field(..., ge=-1.0, le=1.0, description="Relative volume change")


class MuteCommand(_FrozenModel):
    type: Literal["mute"] = "mute"


class UnmuteCommand(_FrozenModel):
    type: Literal["unmute"] = "unmute"


class FullscreenCommand(_FrozenModel):
    type: Literal["fullscreen"] = "fullscreen"


class LoadCommand(_FrozenModel):
    type: Literal["load"] = "load"
    value: str = Field(..., min_length=1, description="URL of the video to load")


Command = Annotated[
    Union[
        PlayCommand,
        PauseCommand,
        SeekCommand,
        VolumeCommand,
        MuteCommand,
        UnmuteCommand,
        FullscreenCommand,
        LoadCommand,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Gateway → Client messages
# ---------------------------------------------------------------------------


class DownstreamMessageType(str, Enum):
    """Message types sent FROM the gateway TO the client."""

    CONNECTED = "connected"
    ERROR = "error"
    RESPONSE_START = "response_start"
    RESPONSE_END = "response_end"
    RESPONSE_AUDIO_DONE = "response_audio_done"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response_audio_transcript_done"
    VIDEO_CONTROL = "video_control"


class ConnectedMessage(BaseModel):
    """Sent once the client socket is accepted, regardless of upstream state."""

    type: DownstreamMessageType = DownstreamMessageType.CONNECTED


class ErrorMessage(BaseModel):
    type: DownstreamMessageType = DownstreamMessageType.ERROR
    error: str


class ResponseStartMessage(BaseModel):
    type: DownstreamMessageType = DownstreamMessageType.RESPONSE_START


class ResponseEndMessage(BaseModel):
    type: DownstreamMessageType = DownstreamMessageType.RESPONSE_END


class ResponseAudioDoneMessage(BaseModel):
    """Sent after the audio of one spoken segment has been delivered."""

    type: DownstreamMessageType = DownstreamMessageType.RESPONSE_AUDIO_DONE


class ResponseAudioTranscriptDoneMessage(BaseModel):
    type: DownstreamMessageType = DownstreamMessageType.RESPONSE_AUDIO_TRANSCRIPT_DONE
    transcript: str | None = None


class VideoControlMessage(BaseModel):
    """Carries a device command derived from assistant text or an admin broadcast."""

    type: DownstreamMessageType = DownstreamMessageType.VIDEO_CONTROL
    command: Command


# ---------------------------------------------------------------------------
# Gateway ↔ Realtime API events
# ---------------------------------------------------------------------------


class UpstreamEventType(str, Enum):
    """Event types used on the realtime API socket."""

    # Outbound
    SESSION_UPDATE = "session.update"
    INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"

    # Inbound
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    RESPONSE_CREATED = "response.created"
    RESPONSE_DONE = "response.done"
    RESPONSE_AUDIO_DELTA = "response.audio.delta"
    RESPONSE_AUDIO_DONE = "response.audio.done"
    RESPONSE_AUDIO_TRANSCRIPT_DONE = "response.audio_transcript.done"
    RESPONSE_TEXT_DELTA = "response.text.delta"
    CONVERSATION_ITEM_CREATED = "conversation.item.created"
    ERROR = "error"


class TurnDetection(BaseModel):
    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    silence_duration_ms: int = 500


class RealtimeSessionConfig(BaseModel):
    modalities: list[str] = Field(default_factory=lambda: ["text", "audio"])
    instructions: str = ""
    voice: str = "alloy"
    input_audio_format: str = UPSTREAM_AUDIO_FORMAT
    output_audio_format: str = UPSTREAM_AUDIO_FORMAT
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)


class SessionUpdateEvent(BaseModel):
    """Configuration handshake sent once after the upstream socket opens."""

    type: UpstreamEventType = UpstreamEventType.SESSION_UPDATE
    session: RealtimeSessionConfig


class InputAudioBufferAppendEvent(BaseModel):
    type: UpstreamEventType = UpstreamEventType.INPUT_AUDIO_BUFFER_APPEND
    audio: str = Field(..., description="Base64-encoded PCM16 audio")


# ---------------------------------------------------------------------------
# Runtime models
# ---------------------------------------------------------------------------


class AudioChunk(BaseModel):
    """A chunk of 16-bit mono PCM audio received from the client."""

    data: bytes
    sample_rate: int = DEFAULT_SAMPLE_RATE

    @field_validator("data")
    @classmethod
    def _whole_samples(cls, value: bytes) -> bytes:
        if len(value) % SAMPLE_WIDTH_BYTES != 0:
            raise ValueError(
                f"Audio data length ({len(value)}) must be a multiple of {SAMPLE_WIDTH_BYTES} bytes (16-bit samples)"
            )
        return value


class LinkConfig(BaseModel):
    """Everything an UpstreamLink needs to open and configure its socket."""

    url: str
    api_key: str = ""
    beta_header: str = "realtime=v1"
    voice: str = "alloy"
    instructions: str = ""
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 500
    timeout_seconds: float = 10.0
