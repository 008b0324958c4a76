"""
Redis backend for the versioned store. Each key holds {"version": n, "value": {...}} as JSON;
compare-and-swap uses WATCH / MULTI / EXEC so a concurrent writer aborts the transaction.
"""
import json
from typing import Any

import redis.asyncio as redis
from redis.exceptions import WatchError

from cardshop.store import KeyValueStore, Versioned


def _decode(key: str, raw: str | None) -> Versioned | None:
    if raw is None:
        return None
    data = json.loads(raw)
    return Versioned(key=key, value=data["value"], version=int(data["version"]))


class RedisStore(KeyValueStore):
    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Versioned | None:
        return _decode(key, await self._redis.get(key))

    async def put_if_version(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
        ttl_seconds: int | None = None,
    ) -> bool:
        body = json.dumps({"version": (expected_version or 0) + 1, "value": value})
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = _decode(key, await pipe.get(key))
                current_version = current.version if current is not None else None
                if current_version != expected_version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                if ttl_seconds:
                    pipe.set(key, body, ex=ttl_seconds)
                else:
                    pipe.set(key, body)
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def scan(self, prefix: str) -> list[Versioned]:
        keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*", count=500)]
        if not keys:
            return []
        raws = await self._redis.mget(keys)
        return [item for key, raw in zip(keys, raws) if (item := _decode(key, raw)) is not None]

    async def incr(self, key: str) -> int:
        return int(await self._redis.incr(key))

    async def close(self) -> None:
        await self._redis.aclose()
