from __future__ import annotations

from flashcache.models.cache import (
    CacheEntry,
    CacheHit,
    FlashcardProposal,
    GenerationRequest,
)
from flashcache.models.rate_limit import RateLimitWindow, Reservation
from flashcache.models.upstream import (
    APIErrorBody,
    APIErrorResponse,
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ModelParameters,
    Usage,
)

__all__ = [
    # cache
    "FlashcardProposal",
    "CacheEntry",
    "CacheHit",
    "GenerationRequest",
    # rate limiting
    "RateLimitWindow",
    "Reservation",
    # upstream
    "ChatMessage",
    "ChatRequest",
    "ChatChoice",
    "ChatResponse",
    "Usage",
    "ModelParameters",
    "APIErrorBody",
    "APIErrorResponse",
]
