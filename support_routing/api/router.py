from fastapi import APIRouter

from support_routing.api.v1.routes import agents, conversations, health, inbound, realtime

api_router = APIRouter()
api_router.include_router(health.router, prefix="/v1", tags=["health"])
api_router.include_router(inbound.router, prefix="/v1/inbound", tags=["inbound"])
api_router.include_router(
    conversations.router, prefix="/v1/conversations", tags=["conversations"]
)
api_router.include_router(agents.router, prefix="/v1/agents", tags=["agents"])
api_router.include_router(realtime.router, prefix="/v1/realtime", tags=["realtime"])
