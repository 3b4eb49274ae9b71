from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ModelParameters(BaseModel):
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1, le=4096)


class ChatRequest(BaseModel):
    """Body of POST /chat/completions."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None


class ChatChoice(BaseModel):
    message: ChatMessage
    finish_reason: str | None = None


class Usage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatResponse(BaseModel):
    """Validated upstream completion."""

    id: str
    choices: list[ChatChoice]
    model: str
    usage: Usage | None = None


class APIErrorBody(BaseModel):
    message: str
    type: str = "api_error"
    code: str | int | None = None


class APIErrorResponse(BaseModel):
    """Error envelope returned with non-2xx statuses."""

    error: APIErrorBody
