"""Domain-specific exceptions.

Every error carries a stable snake_case ``reason`` that is returned to callers
verbatim, and the HTTP status the API layer should answer with.
"""

from __future__ import annotations

from typing import Optional, Sequence


class FacilitatorError(Exception):
    """Base class for every typed facilitator failure."""

    reason: str = "facilitator_error"
    status_code: int = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.reason.replace("_", " ")
        super().__init__(self.message)


# Validation


class InvalidPaymentPayload(FacilitatorError):
    """Raised when an envelope or request body is malformed."""

    reason = "invalid_payload"
    status_code = 400


class UnsupportedChain(FacilitatorError):
    """Raised when a chain id or network name is not in the registry."""

    reason = "unsupported_chain"
    status_code = 400


class UnknownScope(FacilitatorError):
    """Raised when an identity scope was not configured at startup."""

    reason = "unknown_scope"
    status_code = 400


class VoucherValidationFailed(FacilitatorError):
    """Raised when a voucher breaks one or more business rules."""

    reason = "voucher_invalid"
    status_code = 400

    def __init__(self, errors: Sequence[str], warnings: Sequence[str] = ()):
        self.errors = list(errors)
        self.warnings = list(warnings)
        super().__init__("; ".join(self.errors) or self.reason)


# Verification


class PayeeMismatch(FacilitatorError):
    reason = "payee_mismatch"
    status_code = 400


class AmountMismatch(FacilitatorError):
    reason = "amount_mismatch"
    status_code = 400


class SignatureMismatch(FacilitatorError):
    reason = "signature_mismatch"
    status_code = 400


class AuthorizationNotVerified(FacilitatorError):
    """Raised when settle is attempted for an authorization never verified."""

    reason = "authorization_not_verified"
    status_code = 400


class IdentityVerificationRequired(FacilitatorError):
    reason = "identity_verification_required"
    status_code = 400


# Temporal


class AuthorizationExpired(FacilitatorError):
    reason = "authorization_expired"
    status_code = 400


class AuthorizationNotYetValid(FacilitatorError):
    reason = "authorization_not_yet_valid"
    status_code = 400


class VoucherExpired(FacilitatorError):
    reason = "voucher_expired"
    status_code = 400


# Duplicate


class DuplicateNonce(FacilitatorError):
    reason = "duplicate_nonce"
    status_code = 409


class DuplicateNullifier(FacilitatorError):
    reason = "duplicate_nullifier"
    status_code = 409


class AlreadySettled(FacilitatorError):
    """Raised when an authorization nonce already produced a transaction."""

    reason = "already_settled"
    status_code = 409

    def __init__(self, transaction_hash: Optional[str] = None):
        self.transaction_hash = transaction_hash
        super().__init__(
            f"Authorization already settled in {transaction_hash}"
            if transaction_hash
            else None
        )


class SettlementInProgress(FacilitatorError):
    reason = "settlement_in_progress"
    status_code = 409


class LedgerConflict(FacilitatorError):
    """A confirmed transfer could not be recorded against its vouchers."""

    reason = "ledger_conflict"
    status_code = 409

    def __init__(self, message: str, transaction_hash: Optional[str] = None):
        self.transaction_hash = transaction_hash
        super().__init__(message)


# Settlement


class SettlementFailed(FacilitatorError):
    """The chain rejected the transfer. Carries the hash when it was mined."""

    reason = "settlement_failed"
    status_code = 400

    def __init__(
        self, message: Optional[str] = None, transaction_hash: Optional[str] = None
    ):
        self.transaction_hash = transaction_hash
        super().__init__(message)


class SettlementTimeout(FacilitatorError):
    """The transaction was sent but its outcome is not known yet.

    Callers must poll by ``transaction_hash`` instead of re-submitting.
    """

    reason = "settlement_timeout"
    status_code = 202

    def __init__(self, transaction_hash: str, message: Optional[str] = None):
        self.transaction_hash = transaction_hash
        super().__init__(
            message or f"Transaction {transaction_hash} not confirmed in time"
        )


# Infrastructure


class StoreUnavailable(FacilitatorError):
    reason = "store_unavailable"
    status_code = 503


class ChainUnavailable(FacilitatorError):
    reason = "chain_unavailable"
    status_code = 503


class IdentityServiceUnavailable(FacilitatorError):
    reason = "identity_service_unavailable"
    status_code = 503


def status_for_reason(reason: Optional[str], default: int = 400) -> int:
    """HTTP status of the error class owning ``reason``."""
    for cls in FacilitatorError.__subclasses__():
        if cls.reason == reason:
            return cls.status_code
    return default
