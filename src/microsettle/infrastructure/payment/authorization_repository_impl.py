"""Authorization repository implementation over a storage abstraction."""

from __future__ import annotations

import time
from typing import Iterable, Optional

from ...domain.payment.authorization_repository import AuthorizationRepository
from ...domain.payment.entities import AuthorizationRecord, AuthorizationState
from ..storage import KeyValueStore

# Records outlive the authorization window by this much so late settle calls
# and status polls still find them.
RETENTION_SECONDS = 86400


def _decode(result: list) -> tuple[int, Optional[str]]:
    code = int(result[0]) if result and result[0] not in (None, "") else 0
    payload = result[1] if len(result) > 1 and result[1] not in (None, "") else None
    return code, payload


class AuthorizationRepositoryImpl(AuthorizationRepository):
    """Authorization state machine using a KeyValueStore.

    Keys:
      - authorization:{chain_id}:{payer}:{nonce} -> AuthorizationRecord JSON
      - authorization:tx:{chain_id}:{tx_hash}    -> authorization key
    """

    def __init__(self, store: KeyValueStore):
        self.kv_store = store

    @staticmethod
    def _key(chain_id: int, payer: str, nonce: str) -> str:
        return f"authorization:{chain_id}:{payer.lower()}:{nonce.lower()}"

    @staticmethod
    def _tx_key(chain_id: int, tx_hash: str) -> str:
        return f"authorization:tx:{chain_id}:{tx_hash.lower()}"

    @staticmethod
    def _ttl(record: AuthorizationRecord) -> int:
        return max(record.valid_before - int(time.time()), 0) + RETENTION_SECONDS

    async def get(
        self, chain_id: int, payer: str, nonce: str
    ) -> Optional[AuthorizationRecord]:
        data = await self.kv_store.get(self._key(chain_id, payer, nonce))
        if not data:
            return None
        return AuthorizationRecord.model_validate_json(data)

    async def record_verified(
        self, record: AuthorizationRecord
    ) -> tuple[int, Optional[AuthorizationRecord]]:
        result = await self.kv_store.run_script(
            "record_authorization_verified",
            keys=[self._key(record.chain_id, record.payer, record.nonce)],
            args=[record.model_dump_json(), str(self._ttl(record))],
        )
        code, payload = _decode(result)
        stored = AuthorizationRecord.model_validate_json(payload) if payload else None
        return code, stored

    async def get_by_transaction_hash(
        self, chain_id: int, tx_hash: str
    ) -> Optional[AuthorizationRecord]:
        auth_key = await self.kv_store.get(self._tx_key(chain_id, tx_hash))
        if not auth_key:
            return None
        data = await self.kv_store.get(auth_key)
        if not data:
            return None
        return AuthorizationRecord.model_validate_json(data)

    async def transition(
        self,
        record: AuthorizationRecord,
        expected: Iterable[AuthorizationState],
    ) -> tuple[int, Optional[AuthorizationRecord]]:
        keys = [self._key(record.chain_id, record.payer, record.nonce)]
        if record.transaction_hash:
            keys.append(self._tx_key(record.chain_id, record.transaction_hash))

        result = await self.kv_store.run_script(
            "transition_authorization",
            keys=keys,
            args=[
                record.model_dump_json(),
                ",".join(state.value for state in expected),
                str(self._ttl(record)),
            ],
        )
        code, payload = _decode(result)
        if code == 2:
            return 2, None
        current = AuthorizationRecord.model_validate_json(payload) if payload else None
        return code, current
