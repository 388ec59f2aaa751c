"""Nullifier repository implementation over a storage abstraction."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from ...domain.errors import DuplicateNullifier
from ...domain.identity.entities import NullifierRecord, ScopeStats
from ...domain.identity.nullifier_repository import NullifierRepository
from ..storage import KeyValueStore

EXPIRY_KEY = "nullifiers:expiry"


class NullifierRepositoryImpl(NullifierRepository):
    """Nullifier registry using a KeyValueStore.

    Keys:
      - nullifier:{scope}:{nullifier} -> NullifierRecord JSON
      - nullifiers:scope:{scope}      -> zset of nullifiers by creation time
      - nullifiers:expiry             -> zset of record keys by expiry time
    """

    def __init__(self, store: KeyValueStore):
        self.kv_store = store

    @staticmethod
    def _key(nullifier: str, scope: str) -> str:
        return f"nullifier:{scope}:{nullifier}"

    @staticmethod
    def _scope_key(scope: str) -> str:
        return f"nullifiers:scope:{scope}"

    async def get(self, nullifier: str, scope: str) -> Optional[NullifierRecord]:
        data = await self.kv_store.get(self._key(nullifier, scope))
        if not data:
            return None
        return NullifierRecord.model_validate_json(data)

    async def exists(
        self, nullifier: str, scope: str, now: Optional[datetime] = None
    ) -> bool:
        record = await self.get(nullifier, scope)
        return record is not None and not record.is_expired(now)

    async def store(self, record: NullifierRecord) -> NullifierRecord:
        assert record.expires_at is not None
        now = datetime.now(timezone.utc)
        result = await self.kv_store.run_script(
            "store_nullifier",
            keys=[
                self._key(record.nullifier, record.scope),
                self._scope_key(record.scope),
                EXPIRY_KEY,
            ],
            args=[
                record.model_dump_json(),
                str(now.timestamp()),
                str(record.created_at.timestamp()),
                str(record.expires_at.timestamp()),
                record.nullifier,
            ],
        )
        if int(result[0]) != 1:
            raise DuplicateNullifier(
                f"Nullifier already registered in scope {record.scope}"
            )
        return record

    async def get_by_scope(self, scope: str, limit: int = 100) -> List[NullifierRecord]:
        nullifiers = await self.kv_store.zrevrange(self._scope_key(scope), 0, limit - 1)
        raw = await self.kv_store.mget([self._key(n, scope) for n in nullifiers])
        return [NullifierRecord.model_validate_json(data) for data in raw if data]

    async def get_scope_stats(
        self, scope: str, now: Optional[datetime] = None
    ) -> ScopeStats:
        total = await self.kv_store.zcard(self._scope_key(scope))
        records = await self.get_by_scope(scope, limit=total) if total else []
        expired = sum(1 for r in records if r.is_expired(now))
        return ScopeStats(
            scope=scope, total=total, active=total - expired, expired=expired
        )

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        keys = await self.kv_store.zrangebyscore(
            EXPIRY_KEY, float("-inf"), now.timestamp()
        )
        removed = 0
        for key in keys:
            # nullifier:{scope}:{nullifier}; scopes never contain ':'
            _, scope, nullifier = key.split(":", 2)
            result = await self.kv_store.run_script(
                "delete_expired_nullifier",
                keys=[key, self._scope_key(scope), EXPIRY_KEY],
                args=[str(now.timestamp()), nullifier],
            )
            if int(result[0]) == 1:
                removed += 1
        return removed
