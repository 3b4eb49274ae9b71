"""Runtime context.

GenerationContext is built once per upstream key/configuration (normally by
``open_context``) and handed explicitly to whoever orchestrates generation.
The RateLimiter it holds is the only owner of that configuration's
rate-limit window; there is no module-level limiter state.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from flashcache import __version__
from flashcache.cache import GenerationCacheService
from flashcache.generator import FlashcardGenerator
from flashcache.log import setup_logging
from flashcache.ratelimit import RateLimiter
from flashcache.store import SqliteCacheStore
from flashcache.upstream import UpstreamClient, build_http_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import httpx

    from flashcache.config import Settings
    from flashcache.protocols import CacheStoreProtocol

log = structlog.get_logger()


@dataclass
class GenerationContext:
    """Holds all shared runtime state for one upstream configuration."""

    settings: Settings
    http_client: httpx.AsyncClient
    store: CacheStoreProtocol
    cache: GenerationCacheService
    rate_limiter: RateLimiter
    upstream: UpstreamClient
    generator: FlashcardGenerator


def build_context(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient,
    store: CacheStoreProtocol,
) -> GenerationContext:
    """Wire components around an existing HTTP client and store."""
    rate_limiter = RateLimiter.from_settings(settings.rate_limiting)
    cache = GenerationCacheService.from_settings(store, settings.cache)
    upstream = UpstreamClient.from_settings(http_client, rate_limiter, settings.upstream)
    return GenerationContext(
        settings=settings,
        http_client=http_client,
        store=store,
        cache=cache,
        rate_limiter=rate_limiter,
        upstream=upstream,
        generator=FlashcardGenerator(cache, upstream),
    )


@asynccontextmanager
async def open_context(
    settings: Settings,
    *,
    configure_logging: bool = True,
) -> AsyncGenerator[GenerationContext, None]:
    """Create and tear down the SQLite store and HTTP client for ``settings``."""
    if configure_logging:
        setup_logging(settings)

    log.info("context_starting", version=__version__, model=settings.upstream.model)

    db_path = settings.cache.db_path
    if db_path != ":memory:":
        resolved = Path(db_path).expanduser()
        resolved.parent.mkdir(parents=True, exist_ok=True)
        db_path = str(resolved)

    db = await aiosqlite.connect(db_path)
    http_client = build_http_client()
    try:
        store = SqliteCacheStore(db)
        await store.init_db()
        context = build_context(settings, http_client=http_client, store=store)
        log.info("context_started", db_path=db_path)
        yield context
    finally:
        await http_client.aclose()
        await db.close()
        log.info("context_stopped")
