from fastapi import APIRouter

from voice_gateway.api.endpoints import control, relay

api_router = APIRouter()

api_router.include_router(relay.router, tags=["relay"])
api_router.include_router(control.router, tags=["control"])
