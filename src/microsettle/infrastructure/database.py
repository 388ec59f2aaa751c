"""Redis connection pool shared by the repositories."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Protocol, Union

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..domain.errors import StoreUnavailable

# A dead store must fail requests quickly rather than hold workers
SOCKET_TIMEOUT_SECONDS = 5.0
HEALTH_CHECK_INTERVAL_SECONDS = 30


class HasDatabaseSettings(Protocol):
    database_url: str


class DatabaseClient:
    """Lazily-created redis.asyncio client with transport errors mapped.

    Connection and timeout failures raised inside ``get_connection`` surface
    as ``StoreUnavailable``; script and data errors pass through unchanged.
    """

    def __init__(
        self,
        settings: HasDatabaseSettings,
        socket_timeout: float = SOCKET_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self._socket_timeout = socket_timeout
        self._redis: Optional[redis.Redis] = None

    def initialize_database(self) -> None:
        # e.g. redis://host:6379/0
        self._redis = redis.from_url(
            self.settings.database_url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
            health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
        )

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[redis.Redis, None]:
        if self._redis is None:
            self.initialize_database()
        assert self._redis is not None
        try:
            yield self._redis
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailable(f"Redis unreachable: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


_db_client: Union[DatabaseClient, None] = None


def get_database_client(settings: HasDatabaseSettings) -> DatabaseClient:
    """Process-wide client, created on first use."""
    global _db_client
    if _db_client is None:
        _db_client = DatabaseClient(settings)
    return _db_client
