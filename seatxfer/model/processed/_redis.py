from __future__ import annotations
import time
import redis.asyncio as redis


# ---- keys
def k_processed(message_id: str) -> str: return f"processed:{message_id}"


class ProcessedStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def claim(self, message_id: str) -> bool:
        # NX gate: only the first poller to see a message ingests it
        ok = await self.r.set(
            k_processed(message_id), str(time.time()), nx=True, ex=self.ttl
        )
        return bool(ok)

    async def release(self, message_id: str) -> None:
        await self.r.delete(k_processed(message_id))

    async def is_processed(self, message_id: str) -> bool:
        return bool(await self.r.exists(k_processed(message_id)))
