"""Administrative command broadcast.

POST /video-control pushes one device command to every connected relay
client, independent of any voice interaction.
"""

import logging

from fastapi import APIRouter, Request

from voice_gateway.schemas.control import VideoControlRequest, VideoControlResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/video-control", response_model=VideoControlResponse)
async def video_control(body: VideoControlRequest, request: Request) -> VideoControlResponse:
    registry = request.app.state.registry
    delivered = await registry.broadcast(body.command)
    logger.info("Video control %s broadcast to %d client(s)", body.command.type, delivered)
    return VideoControlResponse(success=True, command=body.command)
