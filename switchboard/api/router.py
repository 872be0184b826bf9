"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from switchboard.api.conversations import router as conversations_router
from switchboard.api.queues import router as queues_router
from switchboard.api.campaigns import router as campaigns_router
from switchboard.api.warmup import router as warmup_router
from switchboard.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(conversations_router)
api_router.include_router(queues_router)
api_router.include_router(campaigns_router)
api_router.include_router(warmup_router)
api_router.include_router(health_router)
