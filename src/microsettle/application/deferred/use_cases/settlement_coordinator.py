"""Turns accumulated vouchers into one aggregated on-chain settlement."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ....domain.chain.entities import ChainConfig
from ....domain.deferred.entities import SettlementIntent, SettlementRecord
from ....domain.errors import (
    AlreadySettled,
    FacilitatorError,
    LedgerConflict,
    SettlementInProgress,
    SettlementTimeout,
    VoucherValidationFailed,
)
from ....domain.payment.entities import (
    AuthorizationState,
    PaymentEnvelope,
    SettlementResult,
)
from ...facilitator.dtos import SettleResponseDTO
from ...facilitator.use_cases.facilitator import Facilitator
from ...facilitator.use_cases.signature_verifier import raise_for_result
from ..dtos import (
    AccumulatedBalanceDTO,
    DeferredSettlementOutcomeDTO,
    SettlementRecordDTO,
)
from .voucher_ledger import VoucherLedger, group_by_payer
from .voucher_validators import calculate_aggregated_amount, can_aggregate

logger = logging.getLogger(__name__)

# Intents whose authorization never reached the chain are released after this.
STALE_INTENT_AGE = timedelta(hours=1)
RESUMABLE_REASONS = {AlreadySettled.reason, SettlementInProgress.reason}


class DeferredSettlementCoordinator:
    """Settles a payer's accumulated vouchers to a payee in one transfer.

    The transfer is funded by an EIP-3009 authorization the payer signs for
    exactly the aggregated sum. The candidate voucher ids are pinned to that
    authorization before submission, and the transaction hash is the
    idempotency key when the vouchers are marked settled, so a crash between
    the chain and the ledger is finished later instead of settled twice.
    """

    def __init__(self, ledger: VoucherLedger, facilitator: Facilitator):
        self.ledger = ledger
        self.facilitator = facilitator

    async def settle(
        self,
        payee: str,
        network: str,
        authorization: Optional[PaymentEnvelope] = None,
    ) -> DeferredSettlementOutcomeDTO:
        self.ledger.store.require("Deferred settlement")
        chain = self.facilitator.get_chain(network)
        payee = payee.lower()

        if authorization is not None:
            intent = await self.ledger.get_intent(
                chain.chain_id, authorization.authorization.payer, payee
            )
            if intent is not None:
                return await self._execute(chain, intent, authorization, created=False)

        candidates = await self.ledger.get_settlement_candidates(payee, chain.name)
        outcome = DeferredSettlementOutcomeDTO(
            status="not_viable",
            reason=candidates.reason,
            network=chain.name,
            payee=payee,
            total_amount=str(candidates.total_amount),
            voucher_count=len(candidates.candidates),
        )
        if not candidates.should_settle:
            return outcome

        balances = group_by_payer(candidates.candidates)
        if authorization is None:
            outcome.status = "authorization_required"
            outcome.reason = (
                "Each payer must sign a transfer authorization for their total"
            )
            outcome.balances = [AccumulatedBalanceDTO.from_balance(b) for b in balances]
            return outcome

        payer = authorization.authorization.payer.lower()
        group = [v for v in candidates.candidates if v.payer == payer]
        if not group:
            outcome.reason = f"No unsettled vouchers from {payer}"
            return outcome

        aggregation = can_aggregate(group)
        if not aggregation.valid:
            raise VoucherValidationFailed(aggregation.errors, aggregation.warnings)
        total = calculate_aggregated_amount(group)
        viability = self.ledger.is_settlement_viable(total)
        if not viability.valid:
            outcome.reason = "; ".join(viability.errors)
            outcome.payer = payer
            outcome.total_amount = str(total)
            outcome.voucher_count = len(group)
            outcome.warnings = viability.warnings
            return outcome

        created, intent = await self.ledger.save_intent(
            SettlementIntent(
                chain_id=chain.chain_id,
                network=chain.name,
                payer=payer,
                payee=payee,
                nonce=authorization.authorization.nonce,
                total_amount=total,
                voucher_ids=[str(v.id) for v in group],
            )
        )
        return await self._execute(
            chain,
            intent,
            authorization,
            created=created,
            warnings=aggregation.warnings + viability.warnings,
        )

    async def recover_pending(self, limit: int = 100) -> int:
        """Finish intents whose transfer landed but was never recorded.

        Returns how many intents were completed.
        """
        completed = 0
        for intent in await self.ledger.get_pending_intents(limit):
            try:
                if await self._recover(intent):
                    completed += 1
            except FacilitatorError:
                logger.exception(
                    "Could not recover settlement intent %s -> %s nonce %s",
                    intent.payer,
                    intent.payee,
                    intent.nonce,
                )
        return completed

    async def _recover(self, intent: SettlementIntent) -> bool:
        chain = self.facilitator.get_chain(intent.chain_id)
        record = await self.facilitator.get_authorization(
            intent.chain_id, intent.payer, intent.nonce
        )
        if record is not None and record.state == AuthorizationState.PENDING:
            assert record.transaction_hash is not None
            await self.facilitator.get_settlement_status(
                intent.chain_id, record.transaction_hash
            )
            record = await self.facilitator.get_authorization(
                intent.chain_id, intent.payer, intent.nonce
            )
        elif record is not None and self.facilitator.is_stale(record):
            # Crashed between sending and recording the transaction hash
            await self.facilitator.release_stale(chain, record)
            record = await self.facilitator.get_authorization(
                intent.chain_id, intent.payer, intent.nonce
            )

        if record is not None and record.state == AuthorizationState.SETTLED:
            if record.transaction_hash is None:
                logger.error(
                    "Authorization %s settled without a known transaction; "
                    "intent kept for manual reconciliation",
                    intent.nonce,
                )
                return False
            await self._finalize(chain, intent, record.transaction_hash)
            return True

        if record is not None and record.state == AuthorizationState.SETTLEMENT_FAILED:
            await self.ledger.clear_intent(intent)
        elif record is None or record.state == AuthorizationState.VERIFIED:
            if datetime.now(timezone.utc) - intent.created_at > STALE_INTENT_AGE:
                logger.info("Releasing stale settlement intent %s", intent.nonce)
                await self.ledger.clear_intent(intent)
        return False

    async def _execute(
        self,
        chain: ChainConfig,
        intent: SettlementIntent,
        envelope: PaymentEnvelope,
        *,
        created: bool,
        warnings: Optional[list[str]] = None,
    ) -> DeferredSettlementOutcomeDTO:
        if envelope.authorization.nonce != intent.nonce:
            raise SettlementInProgress(
                "Another settlement for this payer and payee is in flight"
            )

        verification = await self.facilitator.verify(
            envelope, intent.payee, intent.total_amount
        )
        if not verification.is_valid and verification.error_reason not in RESUMABLE_REASONS:
            if created:
                await self.ledger.clear_intent(intent)
            raise_for_result(verification)

        try:
            result = await self.facilitator.settle(
                envelope, intent.payee, intent.total_amount
            )
        except AlreadySettled as e:
            if e.transaction_hash is None:
                raise
            result = SettlementResult(
                success=True,
                network=chain.name,
                payer=intent.payer,
                transaction_hash=e.transaction_hash,
                explorer_url=chain.explorer_tx_url(e.transaction_hash),
            )
        except (SettlementInProgress, SettlementTimeout):
            raise
        except FacilitatorError:
            await self.ledger.clear_intent(intent)
            raise

        assert result.transaction_hash is not None
        record = await self._finalize(chain, intent, result.transaction_hash)
        return DeferredSettlementOutcomeDTO(
            status="settled",
            reason=f"Settled {record.voucher_count} vouchers in one transfer",
            network=chain.name,
            payee=intent.payee,
            payer=intent.payer,
            total_amount=str(record.total_amount),
            voucher_count=record.voucher_count,
            settlement=SettleResponseDTO.from_result(result),
            record=SettlementRecordDTO.from_record(record),
            warnings=warnings or [],
        )

    async def _finalize(
        self, chain: ChainConfig, intent: SettlementIntent, tx_hash: str
    ) -> SettlementRecord:
        """Mark the pinned vouchers settled. Safe to repeat for one hash."""
        tx_hash = tx_hash.lower()
        record = SettlementRecord(
            tx_hash=tx_hash,
            payer=intent.payer,
            payee=intent.payee,
            total_amount=intent.total_amount,
            voucher_count=len(intent.voucher_ids),
            voucher_ids=intent.voucher_ids,
            network=chain.name,
        )
        code, value = await self.ledger.finalize_settlement(record)
        if code == 1:
            logger.info(
                "Recorded settlement %s for %d vouchers", tx_hash, record.voucher_count
            )
        elif code == 0:
            existing = await self.ledger.get_settlement_by_tx_hash(tx_hash)
            if existing is not None:
                record = existing
        else:
            problem = "is missing" if code == 2 else "was settled by another transaction"
            logger.error(
                "Transaction %s confirmed but voucher %s %s", tx_hash, value, problem
            )
            raise LedgerConflict(
                f"Transaction {tx_hash} confirmed but voucher {value} {problem}",
                transaction_hash=tx_hash,
            )
        await self.ledger.clear_intent(intent)
        return record
