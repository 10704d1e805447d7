from __future__ import annotations
from typing import Optional

import redis.asyncio as redis

from . import Checkpoint

# ---- keys
K_CHECKPOINT = "checkpoint:approve_orders"
CHECKPOINT_TTL_SECONDS = 7 * 24 * 3600


class CheckpointStore:
    def __init__(self, r: redis.Redis, key: str = K_CHECKPOINT) -> None:
        self.r = r
        self.key = key

    async def load(self) -> Optional[Checkpoint]:
        h = await self.r.hgetall(self.key)
        if not h:
            return None
        return Checkpoint.from_dict(h)

    async def save(self, cp: Checkpoint) -> None:
        # mapping values should be strings for decode_responses=True
        mapping = {
            k: ("1" if v is True else "0" if v is False else str(v))
            for k, v in cp.to_dict().items()
        }
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(self.key, mapping=mapping)
        pipe.expire(self.key, CHECKPOINT_TTL_SECONDS)
        await pipe.execute()

    async def clear(self) -> None:
        await self.r.delete(self.key)

    async def close(self) -> None:
        await self.r.aclose()
