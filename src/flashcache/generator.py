"""Flashcard generation: cache first, upstream model on a miss.

Sequence per request: lookup -> (miss) generate -> parse -> store.
Concurrent requests for the same text are not serialised; both may miss and
both will insert.
"""

from __future__ import annotations

import json
import re
import time
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError

from flashcache.errors import ParseError
from flashcache.models.cache import FlashcardProposal
from flashcache.models.upstream import ModelParameters
from flashcache.similarity import content_hash

if TYPE_CHECKING:
    import asyncio

    from flashcache.cache import GenerationCacheService
    from flashcache.upstream import UpstreamClient

DEFAULT_SYSTEM_PROMPT = """\
You are an expert at creating high-quality flashcards from educational content.
Your task is to analyze the provided text and create a set of flashcards that:
1. Cover the key concepts and important details
2. Are clear and concise
3. Use question-answer format
4. Avoid overly complex or compound questions
5. Are self-contained (answers should be complete)

Format your response as a JSON array of flashcard objects with 'front' and 'back' properties.
Return ONLY the JSON array, without any markdown formatting or explanation.
Example:
[
  {
    "front": "What is photosynthesis?",
    "back": "The process by which plants convert sunlight, water, and CO2 into glucose and oxygen"
  }
]"""

GENERATION_PARAMETERS = ModelParameters(temperature=0.7, max_tokens=2000)

_OPENING_FENCE = re.compile(r"^```(?:json)?\s*")
_CLOSING_FENCE = re.compile(r"\s*```$")


class GenerationResult(BaseModel):
    proposals: list[FlashcardProposal]
    from_cache: bool
    exact_match: bool
    content_hash: str
    duration_ms: int


def parse_flashcards(content: str) -> list[FlashcardProposal]:
    """Turn model output into proposals.

    Accepts a bare JSON array or one wrapped in a markdown code fence.
    Every item needs non-empty string ``front`` and ``back`` fields.
    """
    cleaned = _CLOSING_FENCE.sub("", _OPENING_FENCE.sub("", content.strip())).strip()
    try:
        cards = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Failed to parse JSON response: {exc}", code="invalid_json") from exc

    if not isinstance(cards, list):
        raise ParseError(
            "Invalid response format: expected array of flashcards", code="invalid_format"
        )

    proposals = []
    for card in cards:
        if not isinstance(card, dict):
            raise ParseError(f"Invalid flashcard format: {card!r}", code="invalid_flashcard")
        front, back = card.get("front"), card.get("back")
        if not isinstance(front, str) or not isinstance(back, str):
            raise ParseError(
                "Invalid flashcard format: missing or invalid front/back properties",
                code="invalid_flashcard",
            )
        try:
            proposals.append(FlashcardProposal(front=front, back=back, source="ai-full"))
        except ValidationError as exc:
            raise ParseError(f"Invalid flashcard format: {exc}", code="invalid_flashcard") from exc
    return proposals


class FlashcardGenerator:
    """Produces flashcard proposals for a source text, reusing cached generations."""

    def __init__(
        self,
        cache: GenerationCacheService,
        client: UpstreamClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self._cache = cache
        self._client = client
        self._system_prompt = system_prompt

    async def generate(
        self,
        source_text: str,
        *,
        owner_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> GenerationResult:
        text_hash = content_hash(source_text)
        log = structlog.get_logger().bind(content_hash=text_hash, owner_id=owner_id)
        log.info("generation_started", text_length=len(source_text))
        started = time.perf_counter()

        hit = await self._cache.lookup(source_text)
        if hit is not None:
            log.info("generation_served_from_cache", exact_match=hit.exact_match)
            return GenerationResult(
                proposals=hit.payload,
                from_cache=True,
                exact_match=hit.exact_match,
                content_hash=text_hash,
                duration_ms=_elapsed_ms(started),
            )

        response = await self._client.complete(
            source_text,
            system_message=self._system_prompt,
            parameters=GENERATION_PARAMETERS,
            abort=abort,
        )
        content = response.choices[0].message.content if response.choices else ""
        if not content:
            raise ParseError("No content in AI response", code="empty_content")

        proposals = parse_flashcards(content)
        await self._cache.store(source_text, proposals, owner_id=owner_id)

        duration_ms = _elapsed_ms(started)
        log.info("generation_completed", count=len(proposals), duration_ms=duration_ms)
        return GenerationResult(
            proposals=proposals,
            from_cache=False,
            exact_match=False,
            content_hash=text_hash,
            duration_ms=duration_ms,
        )


def _elapsed_ms(started: float) -> int:
    return round((time.perf_counter() - started) * 1000)
