from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class FlashcardProposal(BaseModel):
    """A generated front/back pair awaiting user review."""

    front: str = Field(min_length=1)
    back: str = Field(min_length=1)
    source: Literal["ai-full", "ai-edited"] = "ai-full"


class CacheEntry(BaseModel):
    """One stored generation. Immutable once inserted."""

    id: str  # Assigned by the store
    content_hash: str  # SHA-256 of the normalised source text
    source_text: str  # Kept for similarity comparison against later lookups
    payload: list[FlashcardProposal]
    created_at: datetime
    owner_id: str | None = None


class CacheHit(BaseModel):
    """Successful lookup result."""

    payload: list[FlashcardProposal]
    exact_match: bool
    similarity: float  # 1.0 for exact matches
    entry_id: str


class GenerationRequest(BaseModel):
    """Ephemeral view of a source text against the cache. Never persisted."""

    source_text: str
    content_hash: str
    similarity: float | None = None  # Score of the nearest accepted entry, if any
    exact_match: bool = False
