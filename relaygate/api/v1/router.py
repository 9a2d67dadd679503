"""API v1 router."""
from fastapi import APIRouter

from relaygate.api.v1 import conversations, monitor, sessions, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router)
api_router.include_router(sessions.router)
api_router.include_router(conversations.router)
api_router.include_router(monitor.router)
