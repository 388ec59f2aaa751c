"""Executes verified authorizations on chain."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from ....crypto.typed_data import split_signature
from ....domain.chain.entities import ChainConfig, TransactionReceipt
from ....domain.errors import InvalidPaymentPayload, SettlementFailed
from ....domain.payment.entities import PaymentAuthorization, SettlementResult
from ....domain.shared import ChainClientProtocol
from .validators import validate_time_window

logger = logging.getLogger(__name__)

OnSubmitted = Callable[[str], Awaitable[None]]


def result_from_receipt(
    chain: ChainConfig, payer: str, receipt: TransactionReceipt
) -> SettlementResult:
    """Build the caller-facing result for a mined transaction.

    Raises:
        SettlementFailed: if the transaction reverted.
    """
    if not receipt.succeeded:
        raise SettlementFailed(
            f"Transaction {receipt.transaction_hash} reverted",
            transaction_hash=receipt.transaction_hash,
        )
    return SettlementResult(
        success=True,
        network=chain.name,
        payer=payer,
        transaction_hash=receipt.transaction_hash,
        block_number=receipt.block_number,
        explorer_url=chain.explorer_tx_url(receipt.transaction_hash),
    )


class SettlementExecutor:
    """Submits an EIP-3009 transfer and waits for one confirmation.

    Never retries a submission: a retry with the same nonce could only be
    rejected by the contract, and hiding that behind a retry loop would mask
    an indeterminate first attempt.
    """

    def __init__(
        self,
        chain_client: ChainClientProtocol,
        confirmation_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.chain_client = chain_client
        self.confirmation_timeout = confirmation_timeout
        self._clock = clock

    async def settle(
        self,
        authorization: PaymentAuthorization,
        signature: str,
        chain: ChainConfig,
        on_submitted: Optional[OnSubmitted] = None,
    ) -> SettlementResult:
        """
        Raises:
            AuthorizationExpired, AuthorizationNotYetValid: window check failed.
            SettlementFailed: the chain rejected or reverted the transfer.
            SettlementTimeout: outcome unknown; poll by the carried hash.
        """
        validate_time_window(authorization, int(self._clock()))

        try:
            v, r, s = split_signature(signature)
        except ValueError as e:
            raise InvalidPaymentPayload(str(e)) from e

        tx_hash = await self.chain_client.submit_transfer_with_authorization(
            chain, authorization, v, r, s
        )
        logger.info(
            "Submitted transfer %s on %s for payer %s nonce %s",
            tx_hash,
            chain.name,
            authorization.payer,
            authorization.nonce,
        )
        if on_submitted is not None:
            await on_submitted(tx_hash)

        receipt = await self.chain_client.wait_for_receipt(
            chain, tx_hash, self.confirmation_timeout
        )
        return result_from_receipt(chain, authorization.payer.lower(), receipt)
