"""SQLite generation cache store.

Every failure (driver error, undecodable payload, invalid row) is raised as
``StoreError``. Unlike a best-effort cache, the store never decides to
degrade on its own: ``GenerationCacheService`` treats read failures as
misses and lets write failures reach the caller.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from pydantic import ValidationError

from flashcache.errors import StoreError
from flashcache.models.cache import CacheEntry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from flashcache.models.cache import FlashcardProposal

log = structlog.get_logger()

_CREATE_CACHE_TABLE = """
CREATE TABLE IF NOT EXISTS generation_cache (
    id           TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    source_text  TEXT NOT NULL,
    payload      TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    owner_id     TEXT
)
"""

# Not UNIQUE: concurrent misses for the same text may both insert.
_CREATE_HASH_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_generation_cache_hash ON generation_cache(content_hash)"
)
_CREATE_CREATED_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_generation_cache_created ON generation_cache(created_at)"
)

_SELECT_COLUMNS = "SELECT id, content_hash, source_text, payload, created_at, owner_id"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_db_time(value: datetime) -> str:
    # Fixed-width UTC strings so lexical order matches chronological order.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class SqliteCacheStore:
    """aiosqlite-backed store implementing CacheStoreProtocol."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._now = now

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        try:
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute(_CREATE_CACHE_TABLE)
            await self._db.execute(_CREATE_HASH_INDEX)
            await self._db.execute(_CREATE_CREATED_INDEX)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Failed to initialise generation cache: {exc}") from exc

    async def find_by_hash(self, content_hash: str) -> CacheEntry | None:
        """Exact lookup. The newest row wins when a hash was inserted twice."""
        try:
            cursor = await self._db.execute(
                f"{_SELECT_COLUMNS} FROM generation_cache WHERE content_hash = ? "
                "ORDER BY created_at DESC LIMIT 1",
                (content_hash,),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            log.warning("store_read_error", key=f"hash:{content_hash}", exc_info=True)
            raise StoreError(f"Failed to read generation cache: {exc}") from exc

        if row is None:
            return None
        return _entry_from_row(row)

    async def find_recent(self, since: datetime) -> list[CacheEntry]:
        """All entries created at or after ``since``, newest first."""
        try:
            cursor = await self._db.execute(
                f"{_SELECT_COLUMNS} FROM generation_cache WHERE created_at >= ? "
                "ORDER BY created_at DESC",
                (_to_db_time(since),),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            log.warning("store_read_error", key=f"since:{since.isoformat()}", exc_info=True)
            raise StoreError(f"Failed to scan generation cache: {exc}") from exc

        return [_entry_from_row(row) for row in rows]

    async def insert(
        self,
        content_hash: str,
        source_text: str,
        payload: list[FlashcardProposal],
        *,
        owner_id: str | None = None,
    ) -> CacheEntry:
        """Insert a new entry. The store assigns ``id`` and ``created_at``."""
        entry = CacheEntry(
            id=uuid.uuid4().hex,
            content_hash=content_hash,
            source_text=source_text,
            payload=payload,
            created_at=self._now(),
            owner_id=owner_id,
        )
        try:
            await self._db.execute(
                "INSERT INTO generation_cache "
                "(id, content_hash, source_text, payload, created_at, owner_id) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.content_hash,
                    entry.source_text,
                    json.dumps([card.model_dump(mode="json") for card in entry.payload]),
                    _to_db_time(entry.created_at),
                    entry.owner_id,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            log.warning("store_write_error", key=f"hash:{content_hash}", exc_info=True)
            raise StoreError(f"Failed to write generation cache: {exc}") from exc

        return entry


def _entry_from_row(row: Sequence) -> CacheEntry:
    try:
        return CacheEntry(
            id=row[0],
            content_hash=row[1],
            source_text=row[2],
            payload=json.loads(row[3]),
            created_at=datetime.fromisoformat(row[4]),
            owner_id=row[5],
        )
    except (ValueError, TypeError, ValidationError) as exc:
        # json.JSONDecodeError is a ValueError
        log.warning("store_malformed_row", entry_id=row[0], exc_info=True)
        raise StoreError(f"Malformed generation cache row {row[0]!r}: {exc}") from exc
