"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import ai

api_router = APIRouter()

api_router.include_router(ai.router, prefix="/ai", tags=["ai"])
