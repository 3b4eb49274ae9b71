"""Protocol interfaces for swappable components.

The generation cache references these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory stores
- Other backends (e.g. Postgres) to be swapped without changing cache code
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from datetime import datetime

    from flashcache.models.cache import CacheEntry, FlashcardProposal


class CacheStoreProtocol(Protocol):
    """Interface for the persistent generation cache backend.

    Implementations raise ``StoreError`` for every failure and never
    swallow errors; the cache service decides how to degrade.
    """

    async def find_by_hash(self, content_hash: str) -> CacheEntry | None: ...

    async def find_recent(self, since: datetime) -> list[CacheEntry]: ...

    async def insert(
        self,
        content_hash: str,
        source_text: str,
        payload: list[FlashcardProposal],
        *,
        owner_id: str | None = None,
    ) -> CacheEntry: ...
