"""Integration test fixtures.

Provides a fully wired GenerationContext with in-memory SQLite and a real
httpx client. Tests mock the upstream with respx at COMPLETIONS_URL.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite
import httpx
import pytest

from flashcache.state import GenerationContext, build_context
from flashcache.store import SqliteCacheStore

if TYPE_CHECKING:
    from flashcache.config import Settings


@pytest.fixture()
async def generation_context(settings: Settings) -> GenerationContext:
    """Full GenerationContext with in-memory storage."""
    async with aiosqlite.connect(":memory:") as db:
        store = SqliteCacheStore(db)
        await store.init_db()

        async with httpx.AsyncClient() as client:
            yield build_context(settings, http_client=client, store=store)
