"""Signer recovery for transfer authorizations and vouchers."""

from __future__ import annotations

import time
from typing import Callable, Optional

from pydantic import BaseModel

from ....crypto.typed_data import (
    DEFAULT_VOUCHER_DOMAIN_NAME,
    recover_signer,
    transfer_message,
    voucher_message,
)
from ....domain.chain.entities import ChainConfig
from ....domain.chain.registry import ChainRegistry
from ....domain.deferred.entities import Voucher
from ....domain.errors import (
    AmountMismatch,
    FacilitatorError,
    InvalidPaymentPayload,
    PayeeMismatch,
    SignatureMismatch,
    UnsupportedChain,
)
from ....domain.payment.entities import PaymentEnvelope, VerificationResult
from .validators import validate_amount, validate_payee

VERIFICATION_ERRORS: dict[str, type[FacilitatorError]] = {
    cls.reason: cls
    for cls in (
        PayeeMismatch,
        AmountMismatch,
        SignatureMismatch,
        UnsupportedChain,
        InvalidPaymentPayload,
    )
}


class VoucherVerification(BaseModel):
    valid: bool
    signer: Optional[str] = None
    error: Optional[str] = None
    expired: bool = False


def raise_for_result(result: VerificationResult) -> str:
    """Turn a failed VerificationResult back into its typed error.

    Returns the payer on success.
    """
    if result.is_valid:
        assert result.payer is not None
        return result.payer
    error_cls = VERIFICATION_ERRORS.get(result.error_reason or "", SignatureMismatch)
    raise error_cls(result.error_message)


class SignatureVerifier:
    """Proves an authorization was signed by its payer and answers the request.

    Performs no I/O. The time window is deliberately not checked here.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        voucher_domain_name: str = DEFAULT_VOUCHER_DOMAIN_NAME,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.voucher_domain_name = voucher_domain_name
        self._clock = clock

    def check(
        self, envelope: PaymentEnvelope, expected_payee: str, expected_amount: int
    ) -> str:
        """Raising variant of ``verify``. Returns the recovered payer."""
        auth = envelope.authorization
        validate_payee(auth, expected_payee)
        validate_amount(auth, expected_amount)
        chain = self.registry.resolve(envelope.network)
        try:
            signer = recover_signer(transfer_message(chain, auth), envelope.signature)
        except Exception as e:
            raise SignatureMismatch(f"Signature could not be recovered: {e}") from e
        if signer != auth.payer.lower():
            raise SignatureMismatch(
                f"Recovered signer {signer} does not match payer {auth.payer}"
            )
        return signer

    def verify(
        self, envelope: PaymentEnvelope, expected_payee: str, expected_amount: int
    ) -> VerificationResult:
        try:
            payer = self.check(envelope, expected_payee, expected_amount)
        except FacilitatorError as e:
            return VerificationResult(
                is_valid=False,
                payer=envelope.authorization.payer.lower(),
                error_reason=e.reason,
                error_message=e.message,
            )
        return VerificationResult(is_valid=True, payer=payer)

    def verify_voucher(
        self, chain: ChainConfig, voucher: Voucher, signature: str
    ) -> VoucherVerification:
        """Recover the voucher signer and report expiry alongside."""
        try:
            signer = recover_signer(
                voucher_message(chain, voucher, self.voucher_domain_name), signature
            )
        except Exception as e:
            return VoucherVerification(valid=False, error=f"Invalid signature: {e}")

        if signer != voucher.payer.lower():
            return VoucherVerification(
                valid=False,
                signer=signer,
                error="Signature does not match payer address",
            )
        if voucher.valid_until < int(self._clock()):
            return VoucherVerification(
                valid=False, signer=signer, error="Voucher has expired", expired=True
            )
        return VoucherVerification(valid=True, signer=signer)
