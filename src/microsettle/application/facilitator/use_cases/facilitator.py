"""Facilitator orchestrator: verify and settle immediate payments."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from ....domain.chain.entities import ChainConfig
from ....domain.chain.registry import ChainRegistry
from ....domain.errors import (
    AlreadySettled,
    AuthorizationNotVerified,
    FacilitatorError,
    SettlementFailed,
    SettlementInProgress,
    SettlementTimeout,
)
from ....domain.payment.authorization_repository import AuthorizationRepository
from ....domain.payment.entities import (
    AuthorizationRecord,
    AuthorizationState,
    PaymentEnvelope,
    SettlementResult,
    SettlementStatus,
    VerificationResult,
)
from ....domain.shared import ChainClientProtocol, StoreAvailability
from .settlement_executor import SettlementExecutor, result_from_receipt
from .signature_verifier import SignatureVerifier, raise_for_result
from .validators import validate_amount, validate_payee

logger = logging.getLogger(__name__)

State = AuthorizationState
IN_FLIGHT = (State.SETTLING, State.PENDING)


class Facilitator:
    """Composes verification, settlement and the chain registry.

    With the store available every authorization goes through the durable
    state machine VERIFIED -> SETTLING -> (PENDING) -> SETTLED | SETTLEMENT_FAILED,
    and SETTLED is terminal. Without it, settle re-verifies inline and asks
    the asset contract whether the nonce was already consumed.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        verifier: SignatureVerifier,
        executor: SettlementExecutor,
        chain_client: ChainClientProtocol,
        authorization_repository: Optional[AuthorizationRepository],
        store: StoreAvailability,
        default_network: Optional[str] = None,
    ):
        if store.available and authorization_repository is None:
            raise ValueError("An available store needs an authorization repository")
        self.registry = registry
        self.verifier = verifier
        self.executor = executor
        self.chain_client = chain_client
        self.authorizations = authorization_repository
        self.store = store
        self.default_network = default_network

    def get_chain(self, network: Optional[Union[int, str]] = None) -> ChainConfig:
        if network is None:
            network = self.default_network or self.registry.all()[0].chain_id
        return self.registry.resolve(network)

    async def verify(
        self, envelope: PaymentEnvelope, expected_payee: str, expected_amount: int
    ) -> VerificationResult:
        """Verify an envelope and, when the store is up, record it as VERIFIED."""
        result = self.verifier.verify(envelope, expected_payee, expected_amount)
        if not result.is_valid:
            return result

        if not self.store.available:
            logger.warning(
                "Store unavailable; verification of nonce %s is not recorded",
                envelope.authorization.nonce,
            )
            return result

        assert self.authorizations is not None
        chain = self.registry.resolve(envelope.network)
        record = AuthorizationRecord.from_envelope(chain.chain_id, envelope)
        code, current = await self.authorizations.record_verified(record)
        if code == 1:
            return result

        assert current is not None
        return self._replayed(result, current)

    async def precheck(
        self, envelope: PaymentEnvelope, expected_payee: str, expected_amount: int
    ) -> VerificationResult:
        """Verify an envelope without recording it.

        Rejects authorizations already settled or being settled, so callers
        can run side effects (the identity gate) only for payments ``verify``
        would accept.
        """
        result = self.verifier.verify(envelope, expected_payee, expected_amount)
        if not result.is_valid or not self.store.available:
            return result

        assert self.authorizations is not None
        chain = self.registry.resolve(envelope.network)
        auth = envelope.authorization
        current = await self.authorizations.get(chain.chain_id, auth.payer, auth.nonce)
        if current is None or current.state not in (State.SETTLED, *IN_FLIGHT):
            return result
        return self._replayed(result, current)

    @staticmethod
    def _replayed(
        result: VerificationResult, current: AuthorizationRecord
    ) -> VerificationResult:
        error: FacilitatorError = (
            AlreadySettled(current.transaction_hash)
            if current.state == State.SETTLED
            else SettlementInProgress("Authorization is already being settled")
        )
        return VerificationResult(
            is_valid=False,
            payer=result.payer,
            error_reason=error.reason,
            error_message=error.message,
        )

    async def settle(
        self,
        envelope: PaymentEnvelope,
        expected_payee: Optional[str] = None,
        expected_amount: Optional[int] = None,
    ) -> SettlementResult:
        """Settle an envelope previously accepted by ``verify``.

        Raises:
            AuthorizationNotVerified: no matching verified authorization.
            AlreadySettled: the nonce already produced a transaction.
            SettlementInProgress: another request is settling it right now.
            SettlementTimeout: sent but unconfirmed; poll the carried hash.
            SettlementFailed, AuthorizationExpired, AuthorizationNotYetValid.
        """
        chain = self.registry.resolve(envelope.network)
        if not self.store.available:
            return await self._settle_unrecorded(
                chain, envelope, expected_payee, expected_amount
            )

        assert self.authorizations is not None
        auth = envelope.authorization
        record = await self.authorizations.get(chain.chain_id, auth.payer, auth.nonce)
        if record is None or not record.matches(envelope):
            raise AuthorizationNotVerified(
                "Settle requires a prior successful verify of this exact authorization"
            )
        if expected_payee is not None:
            validate_payee(auth, expected_payee)
        if expected_amount is not None:
            validate_amount(auth, expected_amount)

        settling = await self._claim(chain, record)

        async def mark_pending(tx_hash: str) -> None:
            await self._move(
                settling.transition(State.PENDING, transaction_hash=tx_hash),
                (State.SETTLING,),
            )

        try:
            result = await self.executor.settle(
                auth, envelope.signature, chain, on_submitted=mark_pending
            )
        except SettlementTimeout as e:
            await self._move(
                settling.transition(State.PENDING, transaction_hash=e.transaction_hash),
                IN_FLIGHT,
            )
            raise
        except FacilitatorError as e:
            await self._move(
                settling.transition(
                    State.SETTLEMENT_FAILED,
                    error_reason=e.reason,
                    transaction_hash=getattr(e, "transaction_hash", None),
                ),
                IN_FLIGHT,
            )
            raise

        await self._move(
            settling.transition(
                State.SETTLED,
                transaction_hash=result.transaction_hash,
                block_number=result.block_number,
            ),
            IN_FLIGHT,
        )
        return result

    async def get_settlement_status(
        self, network: Union[int, str], tx_hash: str
    ) -> SettlementStatus:
        """Poll a transaction and resolve any authorization pending on it."""
        chain = self.registry.resolve(network)
        receipt = await self.chain_client.get_receipt(chain, tx_hash)
        if receipt is None:
            return SettlementStatus(
                network=chain.name, transaction_hash=tx_hash, status="pending"
            )

        if self.store.available:
            assert self.authorizations is not None
            record = await self.authorizations.get_by_transaction_hash(
                chain.chain_id, tx_hash
            )
            if record is not None and record.state == State.PENDING:
                await self._resolve_pending(record, receipt.succeeded, receipt.block_number)

        return SettlementStatus(
            network=chain.name,
            transaction_hash=tx_hash,
            status="settled" if receipt.succeeded else "failed",
            block_number=receipt.block_number,
            explorer_url=chain.explorer_tx_url(tx_hash),
        )

    async def get_authorization(
        self, chain_id: int, payer: str, nonce: str
    ) -> Optional[AuthorizationRecord]:
        self.store.require("Authorization lookup")
        assert self.authorizations is not None
        return await self.authorizations.get(chain_id, payer, nonce)

    async def _settle_unrecorded(
        self,
        chain: ChainConfig,
        envelope: PaymentEnvelope,
        expected_payee: Optional[str],
        expected_amount: Optional[int],
    ) -> SettlementResult:
        auth = envelope.authorization
        logger.warning(
            "Store unavailable; verify->settle record not enforced for nonce %s",
            auth.nonce,
        )
        if expected_payee is None or expected_amount is None:
            raise AuthorizationNotVerified(
                "Payment requirements are needed to settle without the store"
            )
        raise_for_result(self.verifier.verify(envelope, expected_payee, expected_amount))
        if await self.chain_client.authorization_used(chain, auth.payer, auth.nonce):
            raise AlreadySettled()
        return await self.executor.settle(auth, envelope.signature, chain)

    async def _claim(
        self, chain: ChainConfig, record: AuthorizationRecord
    ) -> AuthorizationRecord:
        """Move the record to SETTLING or raise for whatever state it is in."""
        assert self.authorizations is not None
        settling = record.transition(State.SETTLING, error_reason=None)
        code, current = await self.authorizations.transition(
            settling, (State.VERIFIED, State.SETTLEMENT_FAILED)
        )
        if code == 1:
            return settling
        if code == 2 or current is None:
            raise AuthorizationNotVerified()

        if current.state == State.SETTLED:
            raise AlreadySettled(current.transaction_hash)
        if current.state == State.PENDING:
            assert current.transaction_hash is not None
            receipt = await self.chain_client.get_receipt(chain, current.transaction_hash)
            if receipt is None:
                raise SettlementTimeout(
                    current.transaction_hash,
                    f"Transaction {current.transaction_hash} is still pending",
                )
            await self._resolve_pending(current, receipt.succeeded, receipt.block_number)
            if receipt.succeeded:
                raise AlreadySettled(current.transaction_hash)
            raise SettlementFailed(
                f"Transaction {current.transaction_hash} reverted",
                transaction_hash=current.transaction_hash,
            )
        if self.is_stale(current):
            return await self._reclaim_stale(chain, current)
        raise SettlementInProgress()

    def is_stale(self, record: AuthorizationRecord) -> bool:
        """A SETTLING record older than any live settle call could be."""
        if record.state != State.SETTLING:
            return False
        touched = record.updated_at or record.verified_at
        limit = timedelta(seconds=2 * self.executor.confirmation_timeout)
        return datetime.now(timezone.utc) - touched > limit

    async def release_stale(
        self, chain: ChainConfig, record: AuthorizationRecord
    ) -> AuthorizationState:
        """A SETTLING record nobody finished. Ask the contract what happened.

        A used nonce becomes SETTLED; an unused one is released to
        SETTLEMENT_FAILED so it can be claimed again.
        """
        if await self.chain_client.authorization_used(chain, record.payer, record.nonce):
            await self._move(record.transition(State.SETTLED), (State.SETTLING,))
            return State.SETTLED
        logger.warning(
            "Releasing stale settlement of nonce %s for payer %s",
            record.nonce,
            record.payer,
        )
        assert self.authorizations is not None
        await self.authorizations.transition(
            record.transition(State.SETTLEMENT_FAILED, error_reason="stale_settlement"),
            (State.SETTLING,),
        )
        return State.SETTLEMENT_FAILED

    async def _reclaim_stale(
        self, chain: ChainConfig, record: AuthorizationRecord
    ) -> AuthorizationRecord:
        # Concurrent reclaimers still get a single winner through _claim
        if await self.release_stale(chain, record) == State.SETTLED:
            raise AlreadySettled(record.transaction_hash)
        return await self._claim(chain, record)

    async def _resolve_pending(
        self, record: AuthorizationRecord, succeeded: bool, block_number: Optional[int]
    ) -> None:
        if succeeded:
            update = record.transition(State.SETTLED, block_number=block_number)
        else:
            update = record.transition(
                State.SETTLEMENT_FAILED, error_reason=SettlementFailed.reason
            )
        await self._move(update, (State.PENDING,))

    async def _move(self, record: AuthorizationRecord, expected: tuple) -> None:
        assert self.authorizations is not None
        code, current = await self.authorizations.transition(record, expected)
        if code != 1:
            logger.error(
                "Authorization %s/%s could not move to %s (current: %s)",
                record.payer,
                record.nonce,
                record.state.value,
                current.state.value if current else None,
            )
