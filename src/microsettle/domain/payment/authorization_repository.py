"""Authorization state repository interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from .entities import AuthorizationRecord, AuthorizationState


class AuthorizationRepository(ABC):
    """Durable state machine for authorizations keyed by (chain, payer, nonce)."""

    @abstractmethod
    async def get(
        self, chain_id: int, payer: str, nonce: str
    ) -> Optional[AuthorizationRecord]:
        pass

    @abstractmethod
    async def record_verified(
        self, record: AuthorizationRecord
    ) -> tuple[int, Optional[AuthorizationRecord]]:
        """
        Store a freshly verified authorization.

        A record in VERIFIED or SETTLEMENT_FAILED is replaced.

        Returns:
          (1, record)  -> stored
          (0, current) -> rejected, the authorization is settling or settled
        """
        pass

    @abstractmethod
    async def get_by_transaction_hash(
        self, chain_id: int, tx_hash: str
    ) -> Optional[AuthorizationRecord]:
        pass

    @abstractmethod
    async def transition(
        self,
        record: AuthorizationRecord,
        expected: Iterable[AuthorizationState],
    ) -> tuple[int, Optional[AuthorizationRecord]]:
        """
        Atomically move an authorization to ``record.state``.

        Returns:
          (1, record)  -> transitioned
          (0, current) -> current state was not one of ``expected``
          (2, None)    -> no such authorization
        """
        pass
