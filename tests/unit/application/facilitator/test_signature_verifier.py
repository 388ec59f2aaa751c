"""Unit tests for SignatureVerifier."""

import time

import pytest

from microsettle.application.facilitator.use_cases.signature_verifier import (
    SignatureVerifier,
    raise_for_result,
)
from microsettle.crypto.typed_data import create_voucher, sign_voucher
from microsettle.domain.errors import (
    AmountMismatch,
    PayeeMismatch,
    SignatureMismatch,
    UnsupportedChain,
)
from microsettle.domain.payment.entities import VerificationResult

from tests.conftest import OTHER_KEY, PAYEE, PAYER, PAYER_KEY


class TestVerify:
    def test_valid_authorization(self, verifier, make_envelope) -> None:
        result = verifier.verify(make_envelope(amount=500), PAYEE, 500)

        assert result.is_valid
        assert result.payer == PAYER
        assert result.error_reason is None

    def test_signature_from_another_key(self, verifier, make_envelope) -> None:
        envelope = make_envelope(key=OTHER_KEY, payer=PAYER)

        result = verifier.verify(envelope, PAYEE, 10_000)

        assert not result.is_valid
        assert result.error_reason == "signature_mismatch"

    def test_tampered_amount(self, verifier, make_envelope) -> None:
        envelope = make_envelope(amount=10_000)
        tampered = envelope.model_copy(
            update={
                "authorization": envelope.authorization.model_copy(
                    update={"amount": 20_000}
                )
            }
        )

        result = verifier.verify(tampered, PAYEE, 20_000)

        assert result.error_reason == "signature_mismatch"

    def test_signature_for_another_chain(self, verifier, make_envelope) -> None:
        envelope = make_envelope().model_copy(update={"network": "celo"})

        result = verifier.verify(envelope, PAYEE, 10_000)

        assert result.error_reason == "signature_mismatch"

    def test_payee_mismatch(self, verifier, make_envelope) -> None:
        result = verifier.verify(make_envelope(), "0x" + "c0" * 20, 10_000)
        assert result.error_reason == "payee_mismatch"

    def test_amount_mismatch(self, verifier, make_envelope) -> None:
        result = verifier.verify(make_envelope(amount=9_999), PAYEE, 10_000)
        assert result.error_reason == "amount_mismatch"

    def test_unsupported_network(self, verifier, make_envelope) -> None:
        envelope = make_envelope().model_copy(update={"network": "ethereum"})
        result = verifier.verify(envelope, PAYEE, 10_000)
        assert result.error_reason == "unsupported_chain"

    def test_time_window_not_checked(self, verifier, make_envelope) -> None:
        envelope = make_envelope(valid_before=int(time.time()) - 10)
        assert verifier.verify(envelope, PAYEE, 10_000).is_valid


class TestVerifyVoucher:
    def test_valid_voucher(self, verifier, chain) -> None:
        voucher = create_voucher(PAYER, PAYEE, 1000)
        signature = sign_voucher(chain, voucher, PAYER_KEY)

        result = verifier.verify_voucher(chain, voucher, signature)

        assert result.valid
        assert result.signer == PAYER

    def test_voucher_signed_by_someone_else(self, verifier, chain) -> None:
        voucher = create_voucher(PAYER, PAYEE, 1000)
        signature = sign_voucher(chain, voucher, OTHER_KEY)

        result = verifier.verify_voucher(chain, voucher, signature)

        assert not result.valid
        assert not result.expired
        assert "does not match payer" in result.error

    def test_voucher_signed_for_other_domain(self, verifier, chain) -> None:
        voucher = create_voucher(PAYER, PAYEE, 1000)
        signature = sign_voucher(chain, voucher, PAYER_KEY, domain_name="Other")

        assert not verifier.verify_voucher(chain, voucher, signature).valid

    def test_expired_voucher_reported(self, registry, chain) -> None:
        voucher = create_voucher(PAYER, PAYEE, 1000)
        signature = sign_voucher(chain, voucher, PAYER_KEY)
        later = SignatureVerifier(registry, clock=lambda: voucher.valid_until + 1)

        result = later.verify_voucher(chain, voucher, signature)

        assert not result.valid
        assert result.expired

    def test_malformed_signature(self, verifier, chain) -> None:
        voucher = create_voucher(PAYER, PAYEE, 1000)
        result = verifier.verify_voucher(chain, voucher, "0x1234")
        assert not result.valid
        assert result.error.startswith("Invalid signature")


class TestRaiseForResult:
    def test_valid_returns_payer(self) -> None:
        assert raise_for_result(VerificationResult(is_valid=True, payer=PAYER)) == PAYER

    @pytest.mark.parametrize(
        "reason, error",
        [
            ("payee_mismatch", PayeeMismatch),
            ("amount_mismatch", AmountMismatch),
            ("unsupported_chain", UnsupportedChain),
            ("signature_mismatch", SignatureMismatch),
        ],
    )
    def test_reason_maps_to_error(self, reason, error) -> None:
        with pytest.raises(error):
            raise_for_result(
                VerificationResult(is_valid=False, error_reason=reason, error_message="x")
            )
