"""Realtime relay service — browser audio bridged to the OpenAI Realtime API.

Public API:
    - RelaySession: Per-connection bridge (client WebSocket ↔ realtime API).
    - UpstreamLink: One outbound realtime API connection.
    - SessionRegistry: Live sessions for broadcast and shutdown.
    - CommandExtractor / extract_command: Assistant text → device Command.
    - RelayClient / RelayClientHandler: Client side of the relay protocol.
    - AudioBuffer: Segment accumulator for buffered audio delivery.
    - Protocol models: Command variants, downstream messages, upstream events.
"""

from voice_gateway.services.realtime_relay.audio import AudioBuffer, pcm_duration_ms
from voice_gateway.services.realtime_relay.client import RelayClient, RelayClientHandler
from voice_gateway.services.realtime_relay.commands import (
    DEFAULT_RULES,
    CommandExtractor,
    CommandRule,
    extract_command,
)
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
    AudioDeliveryMode,
    Command,
    DownstreamMessageType,
    LinkConfig,
    LinkState,
    SessionState,
    UpstreamEventType,
    VideoControlMessage,
)
from voice_gateway.services.realtime_relay.registry import SessionRegistry
from voice_gateway.services.realtime_relay.session import RelaySession
from voice_gateway.services.realtime_relay.upstream import UpstreamLink, build_realtime_url

__all__ = [
    "DEFAULT_RULES",
    "AudioBuffer",
    "AudioChunk",
    "AudioDeliveryMode",
    "Command",
    "CommandExtractor",
    "CommandRule",
    "DownstreamMessageType",
    "LinkConfig",
    "LinkState",
    "NotConnectedError",
    "RelayClient",
    "RelayClientHandler",
    "RelayError",
    "RelaySession",
    "SessionRegistry",
    "SessionState",
    "UpstreamConfigurationError",
    "UpstreamConnectError",
    "UpstreamEventType",
    "UpstreamLink",
    "UpstreamSendError",
    "UpstreamTimeoutError",
    "VideoControlMessage",
    "build_realtime_url",
    "extract_command",
    "pcm_duration_ms",
]
