"""Shared test fixtures for the flashcache test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite
import pytest

from flashcache.cache import GenerationCacheService
from flashcache.config import Settings
from flashcache.models.cache import FlashcardProposal
from flashcache.store import SqliteCacheStore

UPSTREAM_BASE_URL = "https://llm.test/api/v1"
COMPLETIONS_URL = f"{UPSTREAM_BASE_URL}/chat/completions"


class FakeClock:
    """Millisecond clock for the rate limiter, advanced by hand."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeNow:
    """Wall-clock replacement for the store and cache service."""

    def __init__(self, start: datetime | None = None) -> None:
        self.value = start or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, delta: timedelta) -> None:
        self.value += delta


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        upstream={"api_key": "sk-test-key", "base_url": UPSTREAM_BASE_URL},
        cache={"db_path": ":memory:"},
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_now() -> FakeNow:
    return FakeNow()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
async def store(fake_now: FakeNow) -> SqliteCacheStore:
    """SQLite store on an in-memory database, timestamps driven by ``fake_now``."""
    async with aiosqlite.connect(":memory:") as db:
        sqlite_store = SqliteCacheStore(db, now=fake_now)
        await sqlite_store.init_db()
        yield sqlite_store


@pytest.fixture()
def cache_service(store: SqliteCacheStore, fake_now: FakeNow) -> GenerationCacheService:
    return GenerationCacheService(store, now=fake_now)


@pytest.fixture()
def sample_payload() -> list[FlashcardProposal]:
    return [
        FlashcardProposal(front="What is photosynthesis?", back="Light to chemical energy."),
        FlashcardProposal(front="Where does it happen?", back="In the chloroplasts."),
    ]


@pytest.fixture()
def completion_body() -> Callable[..., dict[str, Any]]:
    """Factory for a valid chat-completion response body."""

    def _build(content: str = "[]", *, usage: bool = True) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": "gen-123",
            "choices": [
                {
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
            "model": "openai/gpt-4o-mini",
        }
        if usage:
            body["usage"] = {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30}
        return body

    return _build


@pytest.fixture()
def completions_url() -> str:
    return COMPLETIONS_URL
