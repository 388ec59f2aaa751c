"""Voucher repository implementation over a storage abstraction."""

from __future__ import annotations

from typing import List, Optional

from ...domain.deferred.entities import SettlementIntent, SettlementRecord, VoucherRecord
from ...domain.deferred.voucher_repository import VoucherRepository
from ...domain.errors import DuplicateNonce
from ..storage import KeyValueStore

UNSETTLED_EXPIRY_KEY = "vouchers:unsettled:expiry"
PENDING_INTENTS_KEY = "settlement_intents:pending"
PINNED_VOUCHERS_KEY = "vouchers:pinned"


class VoucherRepositoryImpl(VoucherRepository):
    """Voucher ledger using a KeyValueStore.

    Keys:
      - voucher:{id}                          -> VoucherRecord JSON
      - voucher:nonce:{nonce}                 -> voucher id (nonce uniqueness)
      - vouchers:unsettled:{network}:{payee}  -> zset of ids by creation time
      - vouchers:unsettled:expiry             -> zset of ids by valid_until
      - settlement:{tx_hash}                  -> SettlementRecord JSON
      - settlements:{network}:{payee}         -> zset of tx hashes by settle time
      - settlement_intent:{chain}:{payer}:{payee} -> SettlementIntent JSON
      - settlement_intents:pending            -> zset of intent keys by creation
      - vouchers:pinned                       -> set of voucher ids held by intents
    """

    def __init__(self, store: KeyValueStore):
        self.kv_store = store

    @staticmethod
    def _voucher_key(voucher_id: str) -> str:
        return f"voucher:{voucher_id}"

    @staticmethod
    def _nonce_key(nonce: str) -> str:
        return f"voucher:nonce:{nonce}"

    @staticmethod
    def _unsettled_key(network: str, payee: str) -> str:
        return f"vouchers:unsettled:{network}:{payee}"

    @staticmethod
    def _settlement_key(tx_hash: str) -> str:
        return f"settlement:{tx_hash}"

    @staticmethod
    def _payee_settlements_key(network: str, payee: str) -> str:
        return f"settlements:{network}:{payee}"

    @staticmethod
    def _intent_key(chain_id: int, payer: str, payee: str) -> str:
        return f"settlement_intent:{chain_id}:{payer}:{payee}"

    async def store(self, record: VoucherRecord) -> VoucherRecord:
        voucher_id = str(record.id)
        result = await self.kv_store.run_script(
            "store_voucher",
            keys=[
                self._nonce_key(record.nonce),
                self._voucher_key(voucher_id),
                self._unsettled_key(record.network, record.payee),
                UNSETTLED_EXPIRY_KEY,
            ],
            args=[
                record.model_dump_json(),
                voucher_id,
                str(record.created_at.timestamp()),
                str(record.valid_until),
            ],
        )
        if int(result[0]) != 1:
            raise DuplicateNonce(f"Voucher nonce already used: {record.nonce}")
        return record

    async def get_by_id(self, voucher_id: str) -> Optional[VoucherRecord]:
        data = await self.kv_store.get(self._voucher_key(voucher_id))
        if not data:
            return None
        return VoucherRecord.model_validate_json(data)

    async def get_by_nonce(self, nonce: str) -> Optional[VoucherRecord]:
        voucher_id = await self.kv_store.get(self._nonce_key(nonce))
        if not voucher_id:
            return None
        return await self.get_by_id(voucher_id)

    async def _load_vouchers(self, ids: List[str]) -> List[VoucherRecord]:
        raw = await self.kv_store.mget([self._voucher_key(i) for i in ids])
        return [VoucherRecord.model_validate_json(data) for data in raw if data]

    async def get_unsettled(
        self, payer: str, payee: str, network: str
    ) -> List[VoucherRecord]:
        vouchers = await self.get_unsettled_for_payee(payee, network)
        return [v for v in vouchers if v.payer == payer]

    async def get_unsettled_for_payee(
        self, payee: str, network: str
    ) -> List[VoucherRecord]:
        ids = await self.kv_store.zrange(self._unsettled_key(network, payee), 0, -1)
        return [v for v in await self._load_vouchers(ids) if not v.settled]

    async def finalize_settlement(
        self, settlement: SettlementRecord
    ) -> tuple[int, Optional[str]]:
        result = await self.kv_store.run_script(
            "finalize_settlement",
            keys=[
                self._settlement_key(settlement.tx_hash),
                self._payee_settlements_key(settlement.network, settlement.payee),
                self._unsettled_key(settlement.network, settlement.payee),
                UNSETTLED_EXPIRY_KEY,
                *[self._voucher_key(i) for i in settlement.voucher_ids],
            ],
            args=[
                settlement.model_dump_json(),
                settlement.tx_hash,
                str(settlement.settled_at.timestamp()),
                *settlement.voucher_ids,
            ],
        )
        code = int(result[0])
        value = result[1] if len(result) > 1 and result[1] != "" else None
        return code, value

    async def get_settlement_by_tx_hash(
        self, tx_hash: str
    ) -> Optional[SettlementRecord]:
        data = await self.kv_store.get(self._settlement_key(tx_hash))
        if not data:
            return None
        return SettlementRecord.model_validate_json(data)

    async def get_payee_settlements(
        self, payee: str, network: str, limit: int = 100
    ) -> List[SettlementRecord]:
        hashes = await self.kv_store.zrevrange(
            self._payee_settlements_key(network, payee), 0, limit - 1
        )
        raw = await self.kv_store.mget([self._settlement_key(h) for h in hashes])
        return [SettlementRecord.model_validate_json(data) for data in raw if data]

    async def save_intent(
        self, intent: SettlementIntent
    ) -> tuple[bool, SettlementIntent]:
        result = await self.kv_store.run_script(
            "save_settlement_intent",
            keys=[
                self._intent_key(intent.chain_id, intent.payer, intent.payee),
                PENDING_INTENTS_KEY,
                PINNED_VOUCHERS_KEY,
            ],
            args=[intent.model_dump_json(), str(intent.created_at.timestamp())],
        )
        created = int(result[0]) == 1
        stored = SettlementIntent.model_validate_json(result[1])
        return created, stored

    async def get_intent(
        self, chain_id: int, payer: str, payee: str
    ) -> Optional[SettlementIntent]:
        data = await self.kv_store.get(self._intent_key(chain_id, payer, payee))
        if not data:
            return None
        return SettlementIntent.model_validate_json(data)

    async def get_pending_intents(self, limit: int = 100) -> List[SettlementIntent]:
        keys = await self.kv_store.zrange(PENDING_INTENTS_KEY, 0, limit - 1)
        raw = await self.kv_store.mget(keys)
        return [SettlementIntent.model_validate_json(data) for data in raw if data]

    async def clear_intent(self, intent: SettlementIntent) -> None:
        await self.kv_store.run_script(
            "clear_settlement_intent",
            keys=[
                self._intent_key(intent.chain_id, intent.payer, intent.payee),
                PENDING_INTENTS_KEY,
                PINNED_VOUCHERS_KEY,
            ],
            args=[intent.nonce],
        )

    async def delete_expired(self, now: int) -> int:
        ids = await self.kv_store.zrangebyscore(UNSETTLED_EXPIRY_KEY, float("-inf"), now)
        deleted = 0
        for voucher_id in ids:
            record = await self.get_by_id(voucher_id)
            if record is None:
                await self.kv_store.zrem(UNSETTLED_EXPIRY_KEY, voucher_id)
                continue
            result = await self.kv_store.run_script(
                "delete_expired_voucher",
                keys=[
                    self._voucher_key(voucher_id),
                    self._nonce_key(record.nonce),
                    self._unsettled_key(record.network, record.payee),
                    UNSETTLED_EXPIRY_KEY,
                    PINNED_VOUCHERS_KEY,
                ],
                args=[voucher_id, str(now)],
            )
            if int(result[0]) == 1:
                deleted += 1
        return deleted
