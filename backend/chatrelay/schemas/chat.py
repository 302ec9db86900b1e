from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class HistoryTurn(BaseModel):
    """A single message in conversation history."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class ChatRequest(BaseModel):
    """Request body for sending a chat message.

    Length bounds that depend on settings are enforced by the validator,
    not here.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    history: list[HistoryTurn] = Field(default_factory=list)

    @field_validator("history", mode="before")
    @classmethod
    def _null_history_is_empty(cls, value):
        return [] if value is None else value


class ChatReply(BaseModel):
    """Response for the buffered /chat endpoint."""

    reply: str


class ErrorResponse(BaseModel):
    status: str = "error"
    code: int
    error: str
    message: str
