"""Tests for SettlementExecutor against a fake chain client."""

import pytest

from microsettle.application.facilitator.use_cases.settlement_executor import (
    SettlementExecutor,
)
from microsettle.domain.errors import (
    AuthorizationExpired,
    AuthorizationNotYetValid,
    ChainUnavailable,
    InvalidPaymentPayload,
    SettlementFailed,
    SettlementTimeout,
)

from tests.conftest import PAYER


class TestSettlementExecutor:
    @pytest.mark.asyncio
    async def test_successful_settlement(
        self, executor, chain_client, chain, make_envelope
    ) -> None:
        envelope = make_envelope()
        submitted: list[str] = []

        async def on_submitted(tx_hash: str) -> None:
            submitted.append(tx_hash)

        result = await executor.settle(
            envelope.authorization, envelope.signature, chain, on_submitted
        )

        assert result.success
        assert result.payer == PAYER
        assert submitted == [result.transaction_hash]
        assert result.block_number == chain_client.receipts[submitted[0]].block_number
        _, authorization, v = chain_client.submissions[0]
        assert authorization == envelope.authorization
        assert v in (27, 28)

    @pytest.mark.asyncio
    async def test_revert_raises_with_hash(
        self, executor, chain_client, chain, make_envelope
    ) -> None:
        chain_client.outcome = "revert"
        envelope = make_envelope()

        with pytest.raises(SettlementFailed) as exc:
            await executor.settle(envelope.authorization, envelope.signature, chain)

        assert exc.value.transaction_hash == "0x" + "0" * 63 + "1"

    @pytest.mark.asyncio
    async def test_timeout_carries_hash(
        self, executor, chain_client, chain, make_envelope
    ) -> None:
        chain_client.outcome = "timeout"
        envelope = make_envelope()

        with pytest.raises(SettlementTimeout) as exc:
            await executor.settle(envelope.authorization, envelope.signature, chain)

        assert exc.value.transaction_hash.startswith("0x")

    @pytest.mark.asyncio
    async def test_not_yet_valid_is_not_submitted(
        self, chain_client, chain, make_envelope
    ) -> None:
        executor = SettlementExecutor(chain_client, clock=lambda: 100)
        envelope = make_envelope(valid_after=200, valid_before=300)

        with pytest.raises(AuthorizationNotYetValid):
            await executor.settle(envelope.authorization, envelope.signature, chain)

        assert chain_client.submissions == []

    @pytest.mark.asyncio
    async def test_valid_before_is_exclusive(
        self, chain_client, chain, make_envelope
    ) -> None:
        executor = SettlementExecutor(chain_client, clock=lambda: 300)
        envelope = make_envelope(valid_after=200, valid_before=300)

        with pytest.raises(AuthorizationExpired):
            await executor.settle(envelope.authorization, envelope.signature, chain)

    @pytest.mark.asyncio
    async def test_valid_after_is_inclusive(
        self, chain_client, chain, make_envelope
    ) -> None:
        executor = SettlementExecutor(chain_client, clock=lambda: 200)
        envelope = make_envelope(valid_after=200, valid_before=300)

        result = await executor.settle(envelope.authorization, envelope.signature, chain)

        assert result.success

    @pytest.mark.asyncio
    async def test_submission_error_propagates(
        self, executor, chain_client, chain, make_envelope
    ) -> None:
        chain_client.submit_error = ChainUnavailable("rpc down")
        envelope = make_envelope()

        with pytest.raises(ChainUnavailable):
            await executor.settle(envelope.authorization, envelope.signature, chain)

    @pytest.mark.asyncio
    async def test_malformed_signature(
        self, executor, chain, make_envelope
    ) -> None:
        envelope = make_envelope()

        with pytest.raises(InvalidPaymentPayload):
            await executor.settle(envelope.authorization, "0x1234", chain)
