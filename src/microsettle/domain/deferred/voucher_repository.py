"""Voucher ledger repository interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .entities import SettlementIntent, SettlementRecord, VoucherRecord


class VoucherRepository(ABC):
    """Durable store of vouchers, settlement records and settlement intents."""

    @abstractmethod
    async def store(self, record: VoucherRecord) -> VoucherRecord:
        """Insert a voucher. Raises DuplicateNonce if the nonce exists."""
        pass

    @abstractmethod
    async def get_by_id(self, voucher_id: str) -> Optional[VoucherRecord]:
        pass

    @abstractmethod
    async def get_by_nonce(self, nonce: str) -> Optional[VoucherRecord]:
        pass

    @abstractmethod
    async def get_unsettled(
        self, payer: str, payee: str, network: str
    ) -> List[VoucherRecord]:
        """Unsettled vouchers for a pair, oldest first."""
        pass

    @abstractmethod
    async def get_unsettled_for_payee(
        self, payee: str, network: str
    ) -> List[VoucherRecord]:
        """Unsettled vouchers for a payee across payers, oldest first."""
        pass

    @abstractmethod
    async def finalize_settlement(
        self, settlement: SettlementRecord
    ) -> tuple[int, Optional[str]]:
        """
        Atomically mark ``settlement.voucher_ids`` settled and write the record.

        Safe to call repeatedly with the same transaction hash.

        Returns:
          (1, tx_hash)    -> vouchers marked, record written
          (0, tx_hash)    -> a record for this tx hash already existed (no-op)
          (2, voucher_id) -> a voucher is missing
          (3, voucher_id) -> a voucher was settled by another transaction
        """
        pass

    @abstractmethod
    async def get_settlement_by_tx_hash(
        self, tx_hash: str
    ) -> Optional[SettlementRecord]:
        pass

    @abstractmethod
    async def get_payee_settlements(
        self, payee: str, network: str, limit: int = 100
    ) -> List[SettlementRecord]:
        """Settlement history for a payee, newest first."""
        pass

    @abstractmethod
    async def save_intent(
        self, intent: SettlementIntent
    ) -> tuple[bool, SettlementIntent]:
        """
        Pin an intent unless one is already in flight for the same
        (chain, payer, payee). Returns (created, stored_intent).
        """
        pass

    @abstractmethod
    async def get_intent(
        self, chain_id: int, payer: str, payee: str
    ) -> Optional[SettlementIntent]:
        pass

    @abstractmethod
    async def get_pending_intents(self, limit: int = 100) -> List[SettlementIntent]:
        pass

    @abstractmethod
    async def clear_intent(self, intent: SettlementIntent) -> None:
        pass

    @abstractmethod
    async def delete_expired(self, now: int) -> int:
        """Delete unsettled vouchers whose ``valid_until`` has passed.

        Vouchers pinned to a pending settlement intent are kept until the
        intent is finalized or released.
        """
        pass
