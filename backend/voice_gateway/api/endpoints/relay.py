"""WebSocket endpoint for browser relay clients.

Each connection gets its own RelaySession bridging the client socket to a
dedicated OpenAI Realtime API link.
Protocol: binary frames carry 16-bit mono PCM, text frames carry JSON.

Route: RELAY_WS_PATH (default /ws_recall)
"""

import logging
import uuid

from fastapi import APIRouter, WebSocket

from voice_gateway.core.config import settings
from voice_gateway.services.realtime_relay import (
    AudioDeliveryMode,
    LinkConfig,
    RelaySession,
    UpstreamLink,
    build_realtime_url,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def build_link_config() -> LinkConfig:
    """Upstream connection settings for a new session."""
    return LinkConfig(
        url=build_realtime_url(
            settings.OPENAI_REALTIME_URL,
            settings.OPENAI_REALTIME_MODEL,
            settings.OPENAI_REALTIME_API_VERSION,
        ),
        api_key=settings.OPENAI_API_KEY,
        beta_header=settings.OPENAI_BETA_HEADER,
        voice=settings.REALTIME_VOICE,
        instructions=settings.REALTIME_INSTRUCTIONS,
        vad_threshold=settings.VAD_THRESHOLD,
        vad_prefix_padding_ms=settings.VAD_PREFIX_PADDING_MS,
        vad_silence_duration_ms=settings.VAD_SILENCE_DURATION_MS,
        timeout_seconds=settings.UPSTREAM_TIMEOUT_SECONDS,
    )


@router.websocket(settings.RELAY_WS_PATH)
async def relay_websocket(websocket: WebSocket) -> None:
    """Handle one browser relay connection.

    Lifecycle:
        1. Accept the WebSocket connection
        2. Create an UpstreamLink and RelaySession and register the session
        3. Run the session (blocks until the client disconnects)
        4. Unregister the session
    """
    await websocket.accept()

    # Registry is set on app state during lifespan startup
    registry = websocket.app.state.registry

    remote = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown"
    session_id = uuid.uuid4().hex
    logger.info("Relay client connected from %s (session %s)", remote, session_id)

    link = UpstreamLink(session_id=session_id, config=build_link_config())
    session = RelaySession(
        websocket=websocket,
        link=link,
        delivery_mode=AudioDeliveryMode(settings.AUDIO_DELIVERY_MODE),
        sample_rate=settings.AUDIO_SAMPLE_RATE,
    )

    registry.register(session)
    try:
        await session.run()
    finally:
        registry.unregister(session_id)

    logger.info("Relay client disconnected: %s (session %s)", remote, session_id)
