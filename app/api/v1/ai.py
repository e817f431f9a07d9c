"""AI assistant endpoints: transforms (JSON or SSE), settings, stats, history."""

import logging

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from app.core.prompts import AIAction
from app.deps import CurrentUserId, DbSession
from app.schemas.ai import (
    AIHistoryRead,
    AIHistoryResponse,
    AIRequest,
    AIResponse,
    AISettingsRead,
    AISettingsResponse,
    AISettingsUpdate,
    MessageResponse,
)
from app.schemas.stats import UsageStatsResponse
from app.services.ai import ai_service
from app.services.ai_settings import ai_settings_service
from app.services.history import history_service
from app.services.stream_relay import sse_response

logger = logging.getLogger(__name__)
router = APIRouter()

_ACTIONS = {action.value for action in AIAction}


@router.get("/settings", response_model=AISettingsResponse)
async def get_ai_settings(
    user_id: CurrentUserId,
    db: DbSession,
) -> dict:
    """Get the user's AI settings, creating defaults on first access."""
    settings_row = await ai_settings_service.get_or_default(db, user_id)
    return {"success": True, "data": AISettingsRead.model_validate(settings_row)}


@router.put("/settings", response_model=MessageResponse)
async def update_ai_settings(
    body: AISettingsUpdate,
    user_id: CurrentUserId,
    db: DbSession,
) -> dict:
    """Partially update the user's AI settings."""
    await ai_settings_service.update(db, user_id, body)
    return {"success": True, "message": "AI settings updated"}


@router.get("/stats", response_model=UsageStatsResponse, response_model_by_alias=True)
async def get_ai_stats(
    user_id: CurrentUserId,
    db: DbSession,
) -> dict:
    """Usage for today and this month plus the current rate-limit state."""
    return {"success": True, "data": await ai_service.get_stats(db, user_id)}


@router.get("/history", response_model=AIHistoryResponse)
async def list_ai_history(
    user_id: CurrentUserId,
    db: DbSession,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    note_id: int | None = None,
) -> dict:
    """Non-expired history entries, newest first."""
    entries = await history_service.list_for_user(
        db, user_id, limit=limit, offset=offset, note_id=note_id
    )
    return {
        "success": True,
        "data": [AIHistoryRead.model_validate(entry) for entry in entries],
    }


@router.post(
    "/{action}",
    response_model=AIResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def run_ai_action(
    action: str,
    body: AIRequest,
    request: Request,
    user_id: CurrentUserId,
    db: DbSession,
) -> AIResponse | StreamingResponse:
    """Run a text transform.

    Streams ``text/event-stream`` frames when streaming is enabled (by the
    request or the user's settings), otherwise returns the whole result.
    """
    if action not in _ACTIONS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown AI action: {action}",
        )

    prepared = await ai_service.prepare(db, user_id, action, body.content, body.options)

    if prepared.stream_enabled:
        return sse_response(ai_service.stream(prepared), request.is_disconnected)

    data = await ai_service.complete(db, prepared)
    return AIResponse(success=True, data=data)
