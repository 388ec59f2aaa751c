"""Storage abstractions and Redis implementation for repositories."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from redis.exceptions import NoScriptError

from .database import DatabaseClient


class KeyValueStore(ABC):
    """Key-value store with the operations the repositories use.

    Multi-key invariants go through named scripts, registered once at startup
    and executed atomically by the store.
    """

    @abstractmethod
    async def ping(self) -> bool:
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        pass

    @abstractmethod
    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        """Members by ascending score, both ends inclusive."""
        pass

    @abstractmethod
    async def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        pass

    @abstractmethod
    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: Optional[int] = None
    ) -> list[str]:
        pass

    @abstractmethod
    async def zrem(self, key: str, member: str) -> int:
        pass

    @abstractmethod
    async def zcard(self, key: str) -> int:
        pass

    @abstractmethod
    async def register_script(self, name: str, script: str) -> str:
        """Load a script under ``name`` and return its digest."""
        pass

    @abstractmethod
    async def run_script(self, name: str, keys: List[str], args: List[str]) -> Any:
        pass


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed implementation of KeyValueStore."""

    def __init__(self, db_client: DatabaseClient):
        self._db_client = db_client
        self._scripts: dict[str, str] = {}
        self._digests: dict[str, str] = {}

    async def ping(self) -> bool:
        async with self._db_client.get_connection() as conn:
            return bool(await conn.ping())

    async def get(self, key: str) -> Optional[str]:
        async with self._db_client.get_connection() as conn:
            return await conn.get(key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        async with self._db_client.get_connection() as conn:
            return await conn.mget(keys)

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        async with self._db_client.get_connection() as conn:
            return await conn.zrange(key, start, end)

    async def zrevrange(self, key: str, start: int, end: int) -> list[str]:
        async with self._db_client.get_connection() as conn:
            return await conn.zrevrange(key, start, end)

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: Optional[int] = None
    ) -> list[str]:
        async with self._db_client.get_connection() as conn:
            if limit is None:
                return await conn.zrangebyscore(key, min_score, max_score)
            return await conn.zrangebyscore(
                key, min_score, max_score, start=0, num=limit
            )

    async def zrem(self, key: str, member: str) -> int:
        async with self._db_client.get_connection() as conn:
            return await conn.zrem(key, member)

    async def zcard(self, key: str) -> int:
        async with self._db_client.get_connection() as conn:
            return await conn.zcard(key)

    async def register_script(self, name: str, script: str) -> str:
        async with self._db_client.get_connection() as conn:
            digest = await conn.script_load(script)
        self._scripts[name] = script
        self._digests[name] = digest
        return digest

    async def run_script(self, name: str, keys: List[str], args: List[str]) -> Any:
        if name not in self._scripts:
            raise ValueError(f"Script '{name}' not registered")
        async with self._db_client.get_connection() as conn:
            try:
                return await conn.evalsha(self._digests[name], len(keys), *keys, *args)
            except NoScriptError:
                # Script cache flushed (server restart or failover)
                self._digests[name] = await conn.script_load(self._scripts[name])
                return await conn.evalsha(self._digests[name], len(keys), *keys, *args)
