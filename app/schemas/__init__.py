"""Pydantic schemas for API request/response validation."""

from app.schemas.ai import (
    AIHistoryRead,
    AIHistoryResponse,
    AIOptions,
    AIRequest,
    AIResponse,
    AIResultData,
    AISettingsRead,
    AISettingsResponse,
    AISettingsUpdate,
    MessageResponse,
    StreamChunk,
    StreamDone,
    StreamError,
    StreamEvent,
)
from app.schemas.stats import UsageStats, UsageStatsResponse

__all__ = [
    "AIHistoryRead",
    "AIHistoryResponse",
    "AIOptions",
    "AIRequest",
    "AIResponse",
    "AIResultData",
    "AISettingsRead",
    "AISettingsResponse",
    "AISettingsUpdate",
    "MessageResponse",
    "StreamChunk",
    "StreamDone",
    "StreamError",
    "StreamEvent",
    "UsageStats",
    "UsageStatsResponse",
]
