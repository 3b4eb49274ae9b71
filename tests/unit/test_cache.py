"""Unit tests for flashcache.cache."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from flashcache.cache import GenerationCacheService
from flashcache.errors import StoreError
from flashcache.models.cache import CacheEntry, FlashcardProposal
from flashcache.similarity import content_hash

if TYPE_CHECKING:
    from tests.conftest import FakeNow

BASE = "abcdefghij" * 10  # 100 characters
NEAR_90 = BASE[:90] + "X" * 10  # similarity 0.90
NEAR_80 = BASE[:80] + "X" * 20  # similarity 0.80


class RecordingStore:
    """In-memory CacheStoreProtocol that returns entries in insertion order."""

    def __init__(self, entries: list[CacheEntry] | None = None) -> None:
        self.entries = list(entries or [])
        self.find_recent_calls: list[datetime] = []
        self.fail_reads = False
        self.fail_writes = False

    async def find_by_hash(self, content_hash: str) -> CacheEntry | None:
        if self.fail_reads:
            raise StoreError("store unreachable")
        for entry in self.entries:
            if entry.content_hash == content_hash:
                return entry
        return None

    async def find_recent(self, since: datetime) -> list[CacheEntry]:
        self.find_recent_calls.append(since)
        if self.fail_reads:
            raise StoreError("store unreachable")
        return [entry for entry in self.entries if entry.created_at >= since]

    async def insert(
        self,
        content_hash: str,
        source_text: str,
        payload: list[FlashcardProposal],
        *,
        owner_id: str | None = None,
    ) -> CacheEntry:
        if self.fail_writes:
            raise StoreError("store unreachable")
        entry = CacheEntry(
            id=f"entry-{len(self.entries)}",
            content_hash=content_hash,
            source_text=source_text,
            payload=payload,
            created_at=datetime(2026, 10, 1, tzinfo=UTC),
            owner_id=owner_id,
        )
        self.entries.append(entry)
        return entry


def _entry(entry_id: str, text: str, created_at: datetime, front: str = "Q") -> CacheEntry:
    return CacheEntry(
        id=entry_id,
        content_hash=content_hash(text),
        source_text=text,
        payload=[FlashcardProposal(front=front, back="A")],
        created_at=created_at,
    )


# ---------------------------------------------------------------------------
# Exact match
# ---------------------------------------------------------------------------


class TestExactLookup:
    async def test_store_then_lookup_returns_exact_match(
        self,
        cache_service: GenerationCacheService,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        hit = await cache_service.lookup(BASE)
        assert hit is not None
        assert hit.exact_match is True
        assert hit.payload == sample_payload
        assert hit.similarity == 1.0

    async def test_exact_hit_skips_similarity_scan(self, fake_now: FakeNow) -> None:
        store = RecordingStore([_entry("e1", BASE, fake_now.value)])
        service = GenerationCacheService(store, now=fake_now)

        hit = await service.lookup(BASE)

        assert hit is not None
        assert hit.entry_id == "e1"
        assert store.find_recent_calls == []

    async def test_exact_match_ignores_retention_window(
        self,
        cache_service: GenerationCacheService,
        fake_now: FakeNow,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        fake_now.advance(timedelta(days=40))

        hit = await cache_service.lookup(BASE)
        assert hit is not None
        assert hit.exact_match is True


# ---------------------------------------------------------------------------
# Similarity fallback
# ---------------------------------------------------------------------------


class TestSimilarLookup:
    async def test_ninety_percent_similar_returns_near_match(
        self,
        cache_service: GenerationCacheService,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        hit = await cache_service.lookup(NEAR_90)
        assert hit is not None
        assert hit.exact_match is False
        assert hit.payload == sample_payload
        assert hit.similarity == pytest.approx(0.9)

    async def test_eighty_percent_similar_is_a_miss(
        self,
        cache_service: GenerationCacheService,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        assert await cache_service.lookup(NEAR_80) is None

    async def test_threshold_is_inclusive(self, fake_now: FakeNow) -> None:
        store = RecordingStore([_entry("e1", "aaaa", fake_now.value)])
        service = GenerationCacheService(store, similarity_threshold=0.75, now=fake_now)

        hit = await service.lookup("aaab")  # similarity exactly 0.75
        assert hit is not None
        assert hit.similarity == 0.75

    async def test_old_entries_excluded_from_scan(
        self,
        cache_service: GenerationCacheService,
        fake_now: FakeNow,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        fake_now.advance(timedelta(days=40))

        one_char_changed = BASE[:-1] + "X"
        assert await cache_service.lookup(one_char_changed) is None
        # The exact path still reaches the old entry.
        assert await cache_service.lookup(BASE) is not None

    async def test_scan_uses_retention_cutoff(self, fake_now: FakeNow) -> None:
        store = RecordingStore()
        service = GenerationCacheService(store, retention_days=7, now=fake_now)

        await service.lookup(BASE)

        assert store.find_recent_calls == [fake_now.value - timedelta(days=7)]

    async def test_best_candidate_wins(self, fake_now: FakeNow) -> None:
        store = RecordingStore(
            [
                _entry("far", NEAR_90, fake_now.value, front="far"),
                _entry("close", BASE[:-1] + "X", fake_now.value, front="close"),
            ]
        )
        service = GenerationCacheService(store, now=fake_now)

        hit = await service.lookup(BASE)
        assert hit is not None
        assert hit.entry_id == "close"
        assert hit.similarity == pytest.approx(0.99)

    async def test_tie_goes_to_most_recent_entry(self, fake_now: FakeNow) -> None:
        older = fake_now.value - timedelta(days=2)
        newer = fake_now.value - timedelta(days=1)
        # Same distance from BASE, returned oldest first.
        store = RecordingStore(
            [
                _entry("older", "X" + BASE[1:], older),
                _entry("newer", BASE[:-1] + "X", newer),
            ]
        )
        service = GenerationCacheService(store, now=fake_now)

        hit = await service.lookup(BASE)
        assert hit is not None
        assert hit.entry_id == "newer"

    async def test_custom_threshold(self, fake_now: FakeNow) -> None:
        store = RecordingStore([_entry("e1", BASE, fake_now.value)])
        service = GenerationCacheService(store, similarity_threshold=0.75, now=fake_now)

        hit = await service.lookup(NEAR_80)
        assert hit is not None
        assert hit.similarity == pytest.approx(0.8)

    async def test_empty_cache_is_a_miss(self, cache_service: GenerationCacheService) -> None:
        assert await cache_service.lookup(BASE) is None


# ---------------------------------------------------------------------------
# Store failures
# ---------------------------------------------------------------------------


class TestStoreFailures:
    async def test_read_failure_degrades_to_miss(self, fake_now: FakeNow) -> None:
        store = RecordingStore([_entry("e1", BASE, fake_now.value)])
        store.fail_reads = True
        service = GenerationCacheService(store, now=fake_now)

        assert await service.lookup(BASE) is None

    async def test_write_failure_propagates(
        self, fake_now: FakeNow, sample_payload: list[FlashcardProposal]
    ) -> None:
        store = RecordingStore()
        store.fail_writes = True
        service = GenerationCacheService(store, now=fake_now)

        with pytest.raises(StoreError):
            await service.store(BASE, sample_payload)


# ---------------------------------------------------------------------------
# store / inspect
# ---------------------------------------------------------------------------


class TestStore:
    async def test_near_duplicates_are_not_merged(
        self, fake_now: FakeNow, sample_payload: list[FlashcardProposal]
    ) -> None:
        store = RecordingStore()
        service = GenerationCacheService(store, now=fake_now)

        await service.store(BASE, sample_payload)
        await service.store(NEAR_90, sample_payload)

        assert len(store.entries) == 2

    async def test_store_records_hash_and_owner(
        self, fake_now: FakeNow, sample_payload: list[FlashcardProposal]
    ) -> None:
        store = RecordingStore()
        service = GenerationCacheService(store, now=fake_now)

        entry = await service.store(BASE, sample_payload, owner_id="user-7")

        assert entry.content_hash == content_hash(BASE)
        assert entry.owner_id == "user-7"


class TestInspect:
    async def test_miss(self, cache_service: GenerationCacheService) -> None:
        request = await cache_service.inspect(BASE)
        assert request.content_hash == content_hash(BASE)
        assert request.similarity is None
        assert request.exact_match is False

    async def test_near_match(
        self,
        cache_service: GenerationCacheService,
        sample_payload: list[FlashcardProposal],
    ) -> None:
        await cache_service.store(BASE, sample_payload)
        request = await cache_service.inspect(NEAR_90)
        assert request.exact_match is False
        assert request.similarity == pytest.approx(0.9)
