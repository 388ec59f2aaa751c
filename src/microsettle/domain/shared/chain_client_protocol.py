"""Protocol interface for EVM chain client implementations.

Services depend on this protocol rather than on web3 directly so they can be
exercised against an in-memory chain in tests.
"""

from __future__ import annotations

from typing import Optional, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from ..chain.entities import ChainConfig, TransactionReceipt
    from ..payment.entities import PaymentAuthorization


class ChainClientProtocol(Protocol):
    """Operations the facilitator needs from a chain.

    Only ``submit_transfer_with_authorization`` changes chain state, and it
    is never retried by implementations.
    """

    async def submit_transfer_with_authorization(
        self,
        chain: "ChainConfig",
        authorization: "PaymentAuthorization",
        v: int,
        r: bytes,
        s: bytes,
    ) -> str:
        """Send the EIP-3009 transfer and return its transaction hash.

        Raises:
            SettlementFailed: the node rejected the call before it was sent.
            SettlementTimeout: the transaction may have been sent; poll by hash.
        """
        ...

    async def wait_for_receipt(
        self, chain: "ChainConfig", tx_hash: str, timeout: float
    ) -> "TransactionReceipt":
        """Block until the transaction is mined.

        Raises:
            SettlementTimeout: no receipt within ``timeout`` seconds.
        """
        ...

    async def get_receipt(
        self, chain: "ChainConfig", tx_hash: str
    ) -> Optional["TransactionReceipt"]:
        """Receipt if mined, ``None`` otherwise. Never blocks."""
        ...

    async def authorization_used(
        self, chain: "ChainConfig", payer: str, nonce: str
    ) -> bool:
        """Ask the asset contract whether ``nonce`` was consumed for ``payer``."""
        ...
