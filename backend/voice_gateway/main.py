import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from voice_gateway.api.router import api_router
from voice_gateway.core.config import settings
from voice_gateway.core.logging import configure_logging
from voice_gateway.schemas.control import HealthResponse
from voice_gateway.services.realtime_relay import SessionRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = SessionRegistry()
    app.state.registry = registry

    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY is not set; relay sessions will not reach the realtime API")

    logger.info(
        "Relay gateway initialized (path=%s, model=%s, voice=%s, audio=%s)",
        settings.RELAY_WS_PATH,
        settings.OPENAI_REALTIME_MODEL,
        settings.REALTIME_VOICE,
        settings.AUDIO_DELIVERY_MODE,
    )

    yield

    # Shutdown: close every client socket and upstream link
    logger.info("Shutting down relay gateway...")
    await registry.close_all()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    return HealthResponse(connections=request.app.state.registry.count)


def run() -> None:
    """Console entry point: ``voice-gateway``."""
    configure_logging()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
