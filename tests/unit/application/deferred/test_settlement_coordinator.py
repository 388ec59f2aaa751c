"""Tests for aggregated deferred settlement."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from microsettle.application.deferred.use_cases.settlement_coordinator import (
    DeferredSettlementCoordinator,
)
from microsettle.application.deferred.use_cases.voucher_ledger import VoucherLedger
from microsettle.domain.errors import (
    AmountMismatch,
    SettlementTimeout,
    StoreUnavailable,
)
from microsettle.domain.payment.entities import AuthorizationState
from microsettle.domain.shared import StoreAvailability

from tests.conftest import NETWORK, PAYEE, PAYER


async def _submit_vouchers(ledger, make_voucher, amounts):
    return [(await ledger.submit(make_voucher(amount=a))).voucher for a in amounts]


class TestSettle:
    @pytest.mark.asyncio
    async def test_below_thresholds_not_settled(
        self, coordinator, ledger, make_voucher
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [1_000_000])

        outcome = await coordinator.settle(PAYEE, NETWORK)

        assert outcome.status == "not_viable"
        assert outcome.voucher_count == 1

    @pytest.mark.asyncio
    async def test_authorization_required(
        self, coordinator, ledger, make_voucher
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [1_000_000] * 5)

        outcome = await coordinator.settle(PAYEE, NETWORK)

        assert outcome.status == "authorization_required"
        assert len(outcome.balances) == 1
        assert outcome.balances[0].payer == PAYER
        assert outcome.balances[0].total_amount == "5000000"

    @pytest.mark.asyncio
    async def test_settles_all_vouchers_in_one_transfer(
        self, coordinator, ledger, make_voucher, make_envelope, chain_client
    ) -> None:
        vouchers = await _submit_vouchers(ledger, make_voucher, [3, 4, 5, 6, 7])

        outcome = await coordinator.settle(
            PAYEE, NETWORK, make_envelope(amount=25)
        )

        assert outcome.status == "settled"
        assert outcome.total_amount == "25"
        assert outcome.voucher_count == 5
        assert sorted(outcome.record.voucher_ids) == sorted(v.id for v in vouchers)
        assert outcome.settlement.success
        assert len(chain_client.submissions) == 1
        assert await ledger.get_unsettled(PAYER, PAYEE, NETWORK) == []
        settlements = await ledger.get_payee_settlements(PAYEE, NETWORK)
        assert len(settlements) == 1
        assert settlements[0].tx_hash == outcome.settlement.transaction

        again = await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=25))
        assert again.status == "not_viable"
        assert len(chain_client.submissions) == 1

    @pytest.mark.asyncio
    async def test_wrong_total_releases_intent(
        self, coordinator, ledger, make_voucher, make_envelope, chain_client
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [1, 1, 1, 1, 1])

        with pytest.raises(AmountMismatch):
            await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=4))

        assert await ledger.get_pending_intents() == []
        assert chain_client.submissions == []

        outcome = await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=5))
        assert outcome.status == "settled"

    @pytest.mark.asyncio
    async def test_not_viable_when_gas_too_high(
        self, voucher_repository, registry, verifier, facilitator, make_voucher,
        make_envelope,
    ) -> None:
        ledger = VoucherLedger(
            voucher_repository,
            registry,
            verifier,
            StoreAvailability.up(),
            min_voucher_count=1,
            estimated_gas_cost=1_000,
        )
        coordinator = DeferredSettlementCoordinator(ledger, facilitator)
        await _submit_vouchers(ledger, make_voucher, [500])

        outcome = await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=500))

        assert outcome.status == "not_viable"
        assert "not viable" in outcome.reason
        assert outcome.payer == PAYER

    @pytest.mark.asyncio
    async def test_requires_store(self, registry, verifier, facilitator) -> None:
        ledger = VoucherLedger(
            None, registry, verifier, StoreAvailability.down("redis unreachable")
        )

        with pytest.raises(StoreUnavailable):
            await DeferredSettlementCoordinator(ledger, facilitator).settle(
                PAYEE, NETWORK
            )


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_pending_finishes_confirmed_transfer(
        self, coordinator, ledger, make_voucher, make_envelope, chain_client
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [2] * 5)
        chain_client.outcome = "timeout"

        with pytest.raises(SettlementTimeout) as exc:
            await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=10))

        assert len(await ledger.get_pending_intents()) == 1
        assert await coordinator.recover_pending() == 0

        chain_client.confirm(exc.value.transaction_hash)

        assert await coordinator.recover_pending() == 1
        assert await ledger.get_pending_intents() == []
        assert await ledger.get_unsettled(PAYER, PAYEE, NETWORK) == []
        record = await ledger.get_settlement_by_tx_hash(exc.value.transaction_hash)
        assert record.voucher_count == 5

    @pytest.mark.asyncio
    async def test_retry_with_same_authorization_resumes(
        self, coordinator, ledger, make_voucher, make_envelope, chain_client
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [2] * 5)
        authorization = make_envelope(amount=10)
        chain_client.outcome = "timeout"
        with pytest.raises(SettlementTimeout) as exc:
            await coordinator.settle(PAYEE, NETWORK, authorization)

        chain_client.confirm(exc.value.transaction_hash)
        outcome = await coordinator.settle(PAYEE, NETWORK, authorization)

        assert outcome.status == "settled"
        assert outcome.settlement.transaction == exc.value.transaction_hash
        assert len(chain_client.submissions) == 1

    @pytest.mark.asyncio
    async def test_failed_transfer_releases_intent(
        self, coordinator, ledger, make_voucher, make_envelope, chain_client
    ) -> None:
        await _submit_vouchers(ledger, make_voucher, [2] * 5)
        chain_client.outcome = "timeout"
        with pytest.raises(SettlementTimeout) as exc:
            await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=10))

        chain_client.confirm(exc.value.transaction_hash, succeeded=False)

        assert await coordinator.recover_pending() == 0
        assert await ledger.get_pending_intents() == []
        assert len(await ledger.get_unsettled(PAYER, PAYEE, NETWORK)) == 5

    @pytest.mark.asyncio
    async def test_cleanup_keeps_expired_vouchers_pinned_to_pending_transfer(
        self, coordinator, ledger, voucher_repository, registry, verifier,
        make_voucher, make_envelope, chain_client,
    ) -> None:
        for _ in range(5):
            await ledger.submit(make_voucher(amount=2, validity_seconds=400))
        chain_client.outcome = "timeout"
        with pytest.raises(SettlementTimeout) as exc:
            await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=10))

        later = VoucherLedger(
            voucher_repository,
            registry,
            verifier,
            StoreAvailability.up(),
            clock=lambda: time.time() + 1_000,
        )
        assert await later.delete_expired_vouchers() == 0

        chain_client.confirm(exc.value.transaction_hash)

        assert await coordinator.recover_pending() == 1
        record = await ledger.get_settlement_by_tx_hash(exc.value.transaction_hash)
        assert record.voucher_count == 5
        assert await ledger.get_pending_intents() == []

    @pytest.mark.asyncio
    async def test_released_intent_unpins_expired_vouchers(
        self, coordinator, ledger, voucher_repository, registry, verifier,
        make_voucher, make_envelope, chain_client,
    ) -> None:
        for _ in range(5):
            await ledger.submit(make_voucher(amount=2, validity_seconds=400))
        chain_client.outcome = "timeout"
        with pytest.raises(SettlementTimeout) as exc:
            await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=10))
        chain_client.confirm(exc.value.transaction_hash, succeeded=False)
        assert await coordinator.recover_pending() == 0

        later = VoucherLedger(
            voucher_repository,
            registry,
            verifier,
            StoreAvailability.up(),
            clock=lambda: time.time() + 1_000,
        )

        assert await later.delete_expired_vouchers() == 5


class TestStaleSettlingRecovery:
    @staticmethod
    async def _interrupted_settlement(
        coordinator, ledger, facilitator, chain, make_voucher, make_envelope,
        chain_client,
    ):
        """Leave an authorization in SETTLING as if the worker died mid-send."""
        await _submit_vouchers(ledger, make_voucher, [2] * 5)
        envelope = make_envelope(amount=10)
        chain_client.submit_error = RuntimeError("worker killed")
        with pytest.raises(RuntimeError):
            await coordinator.settle(PAYEE, NETWORK, envelope)
        chain_client.submit_error = None

        nonce = envelope.authorization.nonce
        record = await facilitator.get_authorization(chain.chain_id, PAYER, nonce)
        assert record.state == AuthorizationState.SETTLING
        assert record.transaction_hash is None

        assert await coordinator.recover_pending() == 0
        assert len(await ledger.get_pending_intents()) == 1

        aged = record.model_copy(
            update={"updated_at": datetime.now(timezone.utc) - timedelta(hours=1)}
        )
        await facilitator.authorizations.transition(
            aged, (AuthorizationState.SETTLING,)
        )
        return envelope

    @pytest.mark.asyncio
    async def test_unsent_transfer_releases_intent(
        self, coordinator, ledger, facilitator, chain, make_voucher, make_envelope,
        chain_client,
    ) -> None:
        envelope = await self._interrupted_settlement(
            coordinator, ledger, facilitator, chain, make_voucher, make_envelope,
            chain_client,
        )

        assert await coordinator.recover_pending() == 0

        assert await ledger.get_pending_intents() == []
        record = await facilitator.get_authorization(
            chain.chain_id, PAYER, envelope.authorization.nonce
        )
        assert record.state == AuthorizationState.SETTLEMENT_FAILED
        outcome = await coordinator.settle(PAYEE, NETWORK, make_envelope(amount=10))
        assert outcome.status == "settled"

    @pytest.mark.asyncio
    async def test_landed_transfer_is_marked_settled(
        self, coordinator, ledger, facilitator, chain, make_voucher, make_envelope,
        chain_client,
    ) -> None:
        envelope = await self._interrupted_settlement(
            coordinator, ledger, facilitator, chain, make_voucher, make_envelope,
            chain_client,
        )
        chain_client.used.add((PAYER.lower(), envelope.authorization.nonce.lower()))

        assert await coordinator.recover_pending() == 0

        record = await facilitator.get_authorization(
            chain.chain_id, PAYER, envelope.authorization.nonce
        )
        assert record.state == AuthorizationState.SETTLED
        # No hash to record against, so the vouchers stay pinned for reconciliation
        assert len(await ledger.get_pending_intents()) == 1
