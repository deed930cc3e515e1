from fastapi import APIRouter

from workspace_agent.api.routes import agent, health

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(agent.router, prefix="/agent", tags=["agent"])
