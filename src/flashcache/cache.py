"""Generation cache: exact-hash lookup with a similarity fallback.

Lookups degrade gracefully: a ``StoreError`` on read is logged and reported
as a miss, so a broken store costs an upstream call but never fails the
request. Writes are different: a failed ``store`` raises, because the caller
must know that future lookups will not find this generation.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from flashcache.errors import StoreError
from flashcache.models.cache import CacheHit, GenerationRequest
from flashcache.similarity import content_hash, similarity

if TYPE_CHECKING:
    from flashcache.config import CacheSettings
    from flashcache.models.cache import CacheEntry, FlashcardProposal
    from flashcache.protocols import CacheStoreProtocol

log = structlog.get_logger()

DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_RETENTION_DAYS = 30


def _utcnow() -> datetime:
    return datetime.now(UTC)


class GenerationCacheService:
    """Serves stored flashcard generations for identical or near-identical texts."""

    def __init__(
        self,
        store: CacheStoreProtocol,
        *,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._similarity_threshold = similarity_threshold
        self._retention = timedelta(days=retention_days)
        self._now = now

    @classmethod
    def from_settings(
        cls,
        store: CacheStoreProtocol,
        settings: CacheSettings,
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> GenerationCacheService:
        return cls(
            store,
            similarity_threshold=settings.similarity_threshold,
            retention_days=settings.retention_days,
            now=now,
        )

    async def lookup(self, source_text: str) -> CacheHit | None:
        """Return a cached generation for ``source_text``, or ``None`` on a miss.

        The exact-hash path short-circuits and is not limited by the
        retention window. Only when it misses are recent entries scanned for
        the most similar text at or above the threshold.
        """
        text_hash = content_hash(source_text)
        log.debug("cache_lookup", content_hash=text_hash, text_length=len(source_text))

        try:
            exact = await self._store.find_by_hash(text_hash)
        except StoreError:
            log.warning("cache_lookup_degraded", stage="exact", content_hash=text_hash)
            return None

        if exact is not None:
            log.info("cache_exact_hit", cache_id=exact.id)
            return CacheHit(
                payload=exact.payload,
                exact_match=True,
                similarity=1.0,
                entry_id=exact.id,
            )

        best = await self._nearest(source_text)
        if best is None:
            log.info("cache_miss", content_hash=text_hash)
            return None

        entry, score = best
        log.info("cache_similar_hit", cache_id=entry.id, similarity=score)
        return CacheHit(
            payload=entry.payload,
            exact_match=False,
            similarity=score,
            entry_id=entry.id,
        )

    async def inspect(self, source_text: str) -> GenerationRequest:
        """Describe how ``source_text`` relates to the cache without using the payload."""
        hit = await self.lookup(source_text)
        return GenerationRequest(
            source_text=source_text,
            content_hash=content_hash(source_text),
            similarity=hit.similarity if hit is not None else None,
            exact_match=hit.exact_match if hit is not None else False,
        )

    async def store(
        self,
        source_text: str,
        payload: list[FlashcardProposal],
        *,
        owner_id: str | None = None,
    ) -> CacheEntry:
        """Insert a new entry for ``source_text``.

        Near-duplicates are not merged: every generated result gets its own
        row so its text remains available to later similarity scans.
        Raises ``StoreError`` when the write fails.
        """
        text_hash = content_hash(source_text)
        log.debug(
            "cache_store",
            content_hash=text_hash,
            flashcards_count=len(payload),
            owner_id=owner_id,
        )
        try:
            entry = await self._store.insert(text_hash, source_text, payload, owner_id=owner_id)
        except StoreError:
            log.error("cache_store_failed", content_hash=text_hash)
            raise

        log.info("cache_stored", cache_id=entry.id, flashcards_count=len(payload))
        return entry

    async def _nearest(self, source_text: str) -> tuple[CacheEntry, float] | None:
        since = self._now() - self._retention
        try:
            candidates = await self._store.find_recent(since)
        except StoreError:
            log.warning("cache_lookup_degraded", stage="similarity")
            return None

        best: CacheEntry | None = None
        best_score = 0.0
        for candidate in candidates:
            score = similarity(
                source_text,
                candidate.source_text,
                score_cutoff=self._similarity_threshold,
            )
            if score < self._similarity_threshold:
                continue
            # Equal scores go to the most recently created entry.
            if (
                best is None
                or score > best_score
                or (score == best_score and candidate.created_at > best.created_at)
            ):
                best, best_score = candidate, score

        log.debug("cache_similarity_scan", candidates=len(candidates), best_score=best_score)
        if best is None:
            return None
        return best, best_score
