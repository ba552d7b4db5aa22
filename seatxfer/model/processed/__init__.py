import os
from typing import Optional, Callable, AsyncContextManager
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

Gated = Callable[[], AsyncContextManager[None]]

BACKEND = os.getenv("PROCESSED_BACKEND", "pg").lower()  # 'pg' | 'redis'

if BACKEND == "redis":
    from ._redis import ProcessedStore as _ProcessedStore
else:
    from ._postgres import ProcessedStore as _ProcessedStore


# Factory keeps the scraper constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              ttl_days: int = 30,
              gated: Optional[Gated] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "ProcessedStore(redis) requires r=redis.Redis"
            )
        return _ProcessedStore(r=r, ttl_seconds=ttl_days * 24 * 3600)
    if db is None:
        raise RuntimeError("ProcessedStore(pg) requires db=AsyncSession")
    return _ProcessedStore(db=db, gated=gated)


ProcessedStore = _ProcessedStore
__all__ = ["ProcessedStore", "new_store", "BACKEND"]
