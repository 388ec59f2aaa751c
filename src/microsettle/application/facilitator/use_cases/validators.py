"""Pure validation functions for immediate payments.

These functions contain business logic validation rules that can be tested
in isolation without dependencies on repositories or infrastructure.
"""

from __future__ import annotations

from ....domain.errors import (
    AmountMismatch,
    AuthorizationExpired,
    AuthorizationNotYetValid,
    PayeeMismatch,
)
from ....domain.payment.entities import PaymentAuthorization


def validate_payee(auth: PaymentAuthorization, expected_payee: str) -> None:
    """Addresses compare case-insensitively.

    Raises:
        PayeeMismatch: if the authorization pays someone else.
    """
    if auth.payee.lower() != expected_payee.lower():
        raise PayeeMismatch(
            f"Authorization pays {auth.payee}, expected {expected_payee}"
        )


def validate_amount(auth: PaymentAuthorization, expected_amount: int) -> None:
    """Exact integer equality, never a tolerance.

    Raises:
        AmountMismatch: if the authorized amount differs.
    """
    if auth.amount != int(expected_amount):
        raise AmountMismatch(
            f"Authorization amount {auth.amount} does not equal {expected_amount}"
        )


def validate_time_window(auth: PaymentAuthorization, now: int) -> None:
    """Check the authorization window at settlement time.

    ``validBefore`` is exclusive, as the asset contract enforces it.

    Raises:
        AuthorizationNotYetValid: if ``now`` is before ``validAfter``.
        AuthorizationExpired: if ``now`` is at or past ``validBefore``.
    """
    if now < auth.valid_after:
        raise AuthorizationNotYetValid(
            f"Authorization valid after {auth.valid_after}, now {now}"
        )
    if now >= auth.valid_before:
        raise AuthorizationExpired(
            f"Authorization expired at {auth.valid_before}, now {now}"
        )
