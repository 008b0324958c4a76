"""
Versioned key/value store: the single point of serialization for per-entity mutations.
Every write is a compare-and-swap on the entry version, so concurrent writers from any number of
processes either win or observe a conflict and re-read. Backends: in-process memory, Redis, Postgres.
"""
import copy
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from cardshop.config import Settings


@dataclass(frozen=True)
class Versioned:
    key: str
    value: dict[str, Any]
    version: int


class KeyValueStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> Versioned | None:
        ...

    @abstractmethod
    async def put_if_version(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Write value only if the stored version equals expected_version (None = key must be absent).
        Returns False on conflict; the caller re-reads and decides whether to retry.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> list[Versioned]:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment a counter, starting from 1."""

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """
    Single-process backend for development and tests. Compare and swap run without a suspension
    point in between, which makes them atomic under asyncio without a lock.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, tuple[dict[str, Any], int, float | None]] = {}
        self._counters: dict[str, int] = {}

    def _live(self, key: str) -> tuple[dict[str, Any], int, float | None] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[2]
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Versioned | None:
        entry = self._live(key)
        if entry is None:
            return None
        return Versioned(key=key, value=copy.deepcopy(entry[0]), version=entry[1])

    async def put_if_version(
        self,
        key: str,
        value: dict[str, Any],
        expected_version: int | None,
        ttl_seconds: int | None = None,
    ) -> bool:
        entry = self._live(key)
        current_version = entry[1] if entry is not None else None
        if current_version != expected_version:
            return False
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (copy.deepcopy(value), (expected_version or 0) + 1, expires_at)
        return True

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def scan(self, prefix: str) -> list[Versioned]:
        found = []
        for key in list(self._entries):
            if key.startswith(prefix):
                item = await self.get(key)
                if item is not None:
                    found.append(item)
        return found

    async def incr(self, key: str) -> int:
        self._counters[key] = self._counters.get(key, 0) + 1
        return self._counters[key]


async def build_store(settings: Settings) -> KeyValueStore:
    if settings.store_backend == "redis":
        from cardshop.redis_client import RedisStore

        return RedisStore.from_url(settings.redis_url)
    if settings.store_backend == "postgres":
        from cardshop.db import PostgresStore, create_pool, init_schema

        pool = await create_pool(settings.database_url)
        await init_schema(pool)
        return PostgresStore(pool)
    return MemoryStore()
