"""Pydantic schemas for the administrative HTTP endpoints."""

from typing import Literal

from pydantic import BaseModel, Field

from voice_gateway.services.realtime_relay.models import Command


class VideoControlRequest(BaseModel):
    """POST /video-control request body."""

    command: Command


class VideoControlResponse(BaseModel):
    """POST /video-control response."""

    success: bool = True
    command: Command


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["OK"] = "OK"
    connections: int = Field(..., ge=0, description="Number of registered relay sessions")
