"""AI assistant schemas."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class AIOptions(BaseModel):
    """Per-request overrides. Unset fields fall back to the user's settings."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    length: str | None = None
    style: str | None = None
    language: str | None = None
    stream_enabled: bool | None = Field(default=None, alias="streamEnabled")
    max_tokens: int | None = Field(default=None, alias="maxTokens", gt=0)
    temperature: float | None = Field(default=None, ge=0, le=2)
    save_history: bool = Field(default=True, alias="saveHistory")
    note_id: int | None = Field(default=None, alias="noteId")


class AIRequest(BaseModel):
    """Body of ``POST /ai/{action}``."""

    content: str
    options: AIOptions = Field(default_factory=AIOptions)


class AIResultData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    result: str
    tokens_used: int = Field(alias="tokensUsed")
    processing_time: int = Field(alias="processingTime")


class AIResponse(BaseModel):
    """Non-streaming transform response."""

    success: bool
    data: AIResultData | None = None
    message: str | None = None


class MessageResponse(BaseModel):
    success: bool
    message: str


class AISettingsRead(BaseModel):
    """Schema for reading a user's AI settings."""

    model_config = ConfigDict(from_attributes=True)

    user_id: int
    provider: str
    model: str
    default_length: str
    default_style: str
    default_language: str
    stream_enabled: bool


class AISettingsResponse(BaseModel):
    success: bool
    data: AISettingsRead


class AISettingsUpdate(BaseModel):
    """Partial update of AI settings.

    Only fields present in the request body are written; use
    ``model_fields_set`` to tell "absent" from "explicitly null/false".
    Values are checked by the settings service so callers get a readable
    message instead of a schema error.
    """

    model_config = ConfigDict(extra="ignore")

    default_length: str | None = None
    default_style: str | None = None
    default_language: str | None = None
    stream_enabled: bool | None = None


class AIHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    note_id: int | None
    action: str
    original_content: str
    result_content: str
    options: dict
    tokens_used: int
    expires_at: datetime
    created_at: datetime | None = None


class AIHistoryResponse(BaseModel):
    success: bool
    data: list[AIHistoryRead]


# --- Stream events ---------------------------------------------------------


class StreamChunk(BaseModel):
    type: Literal["chunk"] = "chunk"
    text: str

    def to_frame(self) -> dict:
        return {"chunk": self.text, "done": False}


class StreamDone(BaseModel):
    type: Literal["done"] = "done"
    tokens_used: int
    processing_time_ms: int

    def to_frame(self) -> dict:
        return {
            "done": True,
            "tokensUsed": self.tokens_used,
            "processingTime": self.processing_time_ms,
        }


class StreamError(BaseModel):
    type: Literal["error"] = "error"
    message: str

    def to_frame(self) -> dict:
        return {"done": True, "error": self.message}


StreamEvent = Annotated[
    Union[StreamChunk, StreamDone, StreamError],
    Field(discriminator="type"),
]
