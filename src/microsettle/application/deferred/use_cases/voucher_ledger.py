"""Voucher ledger: accept, query and aggregate off-chain vouchers."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from ....domain.chain.registry import ChainRegistry
from ....domain.deferred.entities import (
    AccumulatedBalance,
    DeferredPaymentEnvelope,
    SettlementCandidates,
    SettlementIntent,
    SettlementRecord,
    ValidationReport,
    VoucherRecord,
)
from ....domain.deferred.voucher_repository import VoucherRepository
from ....domain.errors import SignatureMismatch, VoucherExpired, VoucherValidationFailed
from ....domain.shared import StoreAvailability
from ...facilitator.use_cases.signature_verifier import SignatureVerifier
from ..dtos import VoucherAcceptedDTO, VoucherResponseDTO
from .voucher_validators import (
    DEFAULT_LARGE_VOUCHER_THRESHOLD,
    DEFAULT_MIN_PROFIT_RATIO,
    DEFAULT_MIN_SETTLEMENT_AMOUNT,
    DEFAULT_MIN_VOUCHER_COUNT,
    calculate_aggregated_amount,
    is_settlement_viable,
    select_settlement_candidates,
    validate_deferred_envelope,
)

logger = logging.getLogger(__name__)

EXPIRED_ERROR = "Voucher has already expired"


class VoucherLedger:
    """Durable voucher store with validation and aggregation rules.

    Every operation needs the store: accepting a voucher without durable
    nonce uniqueness would let the same voucher be counted twice.
    """

    def __init__(
        self,
        repository: Optional[VoucherRepository],
        registry: ChainRegistry,
        verifier: SignatureVerifier,
        store: StoreAvailability,
        *,
        large_voucher_threshold: int = DEFAULT_LARGE_VOUCHER_THRESHOLD,
        min_settlement_amount: int = DEFAULT_MIN_SETTLEMENT_AMOUNT,
        min_voucher_count: int = DEFAULT_MIN_VOUCHER_COUNT,
        estimated_gas_cost: int = 1,
        min_profit_ratio: float = DEFAULT_MIN_PROFIT_RATIO,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.registry = registry
        self.verifier = verifier
        self.store = store
        self.large_voucher_threshold = large_voucher_threshold
        self.min_settlement_amount = min_settlement_amount
        self.min_voucher_count = min_voucher_count
        self.estimated_gas_cost = estimated_gas_cost
        self.min_profit_ratio = min_profit_ratio
        self._clock = clock

    def _repo(self, operation: str) -> VoucherRepository:
        self.store.require(operation)
        assert self.repository is not None
        return self.repository

    def now(self) -> int:
        return int(self._clock())

    def validate(self, envelope: DeferredPaymentEnvelope) -> ValidationReport:
        return validate_deferred_envelope(
            envelope, self.registry, self.now(), self.large_voucher_threshold
        )

    async def submit(self, envelope: DeferredPaymentEnvelope) -> VoucherAcceptedDTO:
        """Validate, verify the payer's signature and store a voucher.

        Raises:
            VoucherExpired: the voucher is past ``validUntil``.
            VoucherValidationFailed: any other business rule is broken.
            SignatureMismatch: the voucher was not signed by its payer.
            DuplicateNonce: the nonce was already used.
            StoreUnavailable: the ledger runs without its store.
        """
        repository = self._repo("Voucher acceptance")
        report = self.validate(envelope)
        if not report.valid:
            if report.errors == [EXPIRED_ERROR]:
                raise VoucherExpired(EXPIRED_ERROR)
            raise VoucherValidationFailed(report.errors, report.warnings)

        chain = self.registry.resolve(envelope.network)
        verification = self.verifier.verify_voucher(
            chain, envelope.voucher, envelope.signature
        )
        if not verification.valid:
            if verification.expired:
                raise VoucherExpired(verification.error)
            raise SignatureMismatch(verification.error)

        record = VoucherRecord.from_envelope(
            envelope.model_copy(update={"network": chain.name}), chain.chain_id
        )
        stored = await self.store_record(record)
        logger.info(
            "Accepted voucher %s: %s -> %s amount %s on %s",
            stored.id,
            stored.payer,
            stored.payee,
            stored.amount,
            stored.network,
        )
        return VoucherAcceptedDTO(
            voucher=VoucherResponseDTO.from_record(stored), warnings=report.warnings
        )

    async def store_record(self, record: VoucherRecord) -> VoucherRecord:
        return await self._repo("Voucher storage").store(record)

    async def get_by_nonce(self, nonce: str) -> Optional[VoucherRecord]:
        return await self._repo("Voucher lookup").get_by_nonce(nonce.lower())

    async def get_unsettled(
        self, payer: str, payee: str, network: str
    ) -> List[VoucherRecord]:
        """Unsettled, unexpired vouchers for a pair, oldest first."""
        chain = self.registry.resolve(network)
        vouchers = await self._repo("Voucher lookup").get_unsettled(
            payer.lower(), payee.lower(), chain.name
        )
        return self._live(vouchers)

    async def get_accumulated_balances(
        self, payee: str, network: str
    ) -> List[AccumulatedBalance]:
        """Unsettled totals for a payee, one entry per payer."""
        chain = self.registry.resolve(network)
        vouchers = self._live(
            await self._repo("Balance lookup").get_unsettled_for_payee(
                payee.lower(), chain.name
            )
        )
        return group_by_payer(vouchers)

    async def get_settlement_candidates(
        self,
        payee: str,
        network: str,
        min_amount: Optional[int] = None,
        min_voucher_count: Optional[int] = None,
    ) -> SettlementCandidates:
        chain = self.registry.resolve(network)
        vouchers = self._live(
            await self._repo("Candidate selection").get_unsettled_for_payee(
                payee.lower(), chain.name
            )
        )
        return select_settlement_candidates(
            vouchers,
            self.min_settlement_amount if min_amount is None else min_amount,
            self.min_voucher_count if min_voucher_count is None else min_voucher_count,
        )

    def is_settlement_viable(self, total_amount: int) -> ValidationReport:
        return is_settlement_viable(
            total_amount, self.estimated_gas_cost, self.min_profit_ratio
        )

    async def finalize_settlement(
        self, settlement: SettlementRecord
    ) -> tuple[int, Optional[str]]:
        return await self._repo("Settlement recording").finalize_settlement(settlement)

    async def get_settlement_by_tx_hash(self, tx_hash: str) -> Optional[SettlementRecord]:
        return await self._repo("Settlement lookup").get_settlement_by_tx_hash(
            tx_hash.lower()
        )

    async def get_payee_settlements(
        self, payee: str, network: str, limit: int = 100
    ) -> List[SettlementRecord]:
        chain = self.registry.resolve(network)
        return await self._repo("Settlement lookup").get_payee_settlements(
            payee.lower(), chain.name, limit
        )

    async def save_intent(
        self, intent: SettlementIntent
    ) -> tuple[bool, SettlementIntent]:
        return await self._repo("Settlement intent").save_intent(intent)

    async def get_intent(
        self, chain_id: int, payer: str, payee: str
    ) -> Optional[SettlementIntent]:
        return await self._repo("Settlement intent").get_intent(
            chain_id, payer.lower(), payee.lower()
        )

    async def get_pending_intents(self, limit: int = 100) -> List[SettlementIntent]:
        return await self._repo("Settlement intent").get_pending_intents(limit)

    async def clear_intent(self, intent: SettlementIntent) -> None:
        await self._repo("Settlement intent").clear_intent(intent)

    async def delete_expired_vouchers(self) -> int:
        deleted = await self._repo("Voucher cleanup").delete_expired(self.now())
        if deleted:
            logger.info("Deleted %d expired unsettled vouchers", deleted)
        return deleted

    def _live(self, vouchers: List[VoucherRecord]) -> List[VoucherRecord]:
        now = self.now()
        return [v for v in vouchers if not v.settled and v.valid_until > now]


def group_by_payer(vouchers: List[VoucherRecord]) -> List[AccumulatedBalance]:
    """Group vouchers by payer, keeping first-seen payer order."""
    groups: dict[str, list[VoucherRecord]] = {}
    for voucher in vouchers:
        groups.setdefault(voucher.payer, []).append(voucher)
    return [
        AccumulatedBalance(
            payer=payer,
            payee=group[0].payee,
            total_amount=calculate_aggregated_amount(group),
            voucher_count=len(group),
            voucher_ids=[str(v.id) for v in group],
        )
        for payer, group in groups.items()
    ]
