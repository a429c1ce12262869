from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PROJECT_NAME: str = "Voice Video Gateway"
    DEBUG: bool = False

    HOST: str = "0.0.0.0"
    PORT: int = 3001

    CORS_ORIGINS: list[str] = ["*"]

    # Client-facing relay WebSocket
    RELAY_WS_PATH: str = "/ws_recall"

    # OpenAI Realtime API
    OPENAI_API_KEY: str = ""
    OPENAI_REALTIME_URL: str = "wss://api.openai.com/v1/realtime"
    OPENAI_REALTIME_MODEL: str = "gpt-4o-realtime-preview"
    OPENAI_REALTIME_API_VERSION: str = "2025-04-01-preview"
    OPENAI_BETA_HEADER: str = "realtime=v1"
    REALTIME_VOICE: str = "alloy"
    REALTIME_INSTRUCTIONS: str = (
        "You are a helpful voice assistant that can control a video player. "
        "You can respond to commands like:\n"
        '- "play" or "start the video" - play the video\n'
        '- "pause" or "stop the video" - pause the video\n'
        '- "volume up" or "increase volume" - increase volume by 0.1\n'
        '- "volume down" or "decrease volume" - decrease volume by 0.1\n'
        '- "mute" - mute the video\n'
        '- "unmute" - unmute the video\n'
        '- "restart" or "go to beginning" - seek to start\n'
        '- "fullscreen" - enter fullscreen mode\n'
        '- "load video [URL]" - load a new video from URL\n\n'
        "When users give video control commands, execute them and provide a brief confirmation. "
        "For general conversation, respond naturally and helpfully."
    )

    # Server-side voice activity detection
    VAD_THRESHOLD: float = 0.5
    VAD_PREFIX_PADDING_MS: int = 300
    VAD_SILENCE_DURATION_MS: int = 500

    # Audio: 16-bit mono PCM; the client must capture and play at this rate
    AUDIO_SAMPLE_RATE: int = 24000
    # "buffered" (one frame per spoken segment) or "streaming" (one frame per delta)
    AUDIO_DELIVERY_MODE: str = "buffered"

    # Connect / write / close timeout for the realtime link
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0

    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "case_sensitive": True}


settings = Settings()
