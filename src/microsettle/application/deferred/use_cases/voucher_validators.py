"""Pure validation functions for deferred vouchers.

Every rule reports into a ValidationReport instead of raising, so a client
sees all broken rules at once. These functions can be tested in isolation
without dependencies on repositories or infrastructure.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from ....domain.chain.registry import ChainRegistry
from ....domain.deferred.entities import (
    DeferredPaymentEnvelope,
    SettlementCandidates,
    ValidationReport,
    Voucher,
    VoucherRecord,
)
from ....domain.payment.entities import (
    ADDRESS_PATTERN,
    BYTES32_PATTERN,
    SIGNATURE_PATTERN,
)

# USDC has 6 decimals: 1000 * 10**6
DEFAULT_LARGE_VOUCHER_THRESHOLD = 1_000_000_000
# $10 in USDC
DEFAULT_MIN_SETTLEMENT_AMOUNT = 10_000_000
DEFAULT_MIN_VOUCHER_COUNT = 5
DEFAULT_MIN_PROFIT_RATIO = 2.0

MAX_VALIDITY_SECONDS = 7 * 24 * 60 * 60
MIN_VALIDITY_SECONDS = 5 * 60

_ADDRESS = re.compile(ADDRESS_PATTERN)
_BYTES32 = re.compile(BYTES32_PATTERN)
_SIGNATURE = re.compile(SIGNATURE_PATTERN)


def validate_voucher(
    voucher: Voucher,
    now: int,
    large_threshold: int = DEFAULT_LARGE_VOUCHER_THRESHOLD,
) -> ValidationReport:
    """Business rules a voucher must satisfy before it is accepted."""
    errors: list[str] = []
    warnings: list[str] = []

    if voucher.amount <= 0:
        errors.append("Amount must be greater than zero")
    if voucher.amount > large_threshold:
        warnings.append(
            f"Amount exceeds {large_threshold} - consider using immediate settlement instead"
        )

    if voucher.payer.lower() == voucher.payee.lower():
        errors.append("Payer and payee cannot be the same address")
    if not _ADDRESS.match(voucher.payer):
        errors.append("Invalid payer address format")
    if not _ADDRESS.match(voucher.payee):
        errors.append("Invalid payee address format")
    if not _BYTES32.match(voucher.nonce):
        errors.append("Invalid nonce format (must be 32 bytes)")

    if voucher.valid_until <= now:
        errors.append("Voucher has already expired")
    elif voucher.valid_until > now + MAX_VALIDITY_SECONDS:
        warnings.append("Expiration is more than 7 days in future")
    elif voucher.valid_until < now + MIN_VALIDITY_SECONDS:
        warnings.append("Voucher expires in less than 5 minutes")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def validate_deferred_envelope(
    envelope: DeferredPaymentEnvelope,
    registry: ChainRegistry,
    now: int,
    large_threshold: int = DEFAULT_LARGE_VOUCHER_THRESHOLD,
) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []

    if envelope.scheme != "deferred":
        errors.append('Invalid scheme - must be "deferred"')
    if not registry.is_supported(envelope.network):
        errors.append(
            f"Unsupported network: {envelope.network}. "
            f"Supported: {', '.join(registry.network_names())}"
        )
    if not _SIGNATURE.match(envelope.signature):
        errors.append("Invalid signature format (must be 65 bytes)")

    voucher_report = validate_voucher(envelope.voucher, now, large_threshold)
    errors.extend(voucher_report.errors)
    warnings.extend(voucher_report.warnings)

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def can_aggregate(vouchers: Sequence[VoucherRecord]) -> ValidationReport:
    """All vouchers must share payer, payee and network, and be unsettled."""
    errors: list[str] = []
    warnings: list[str] = []

    if not vouchers:
        return ValidationReport(valid=False, errors=["No vouchers to aggregate"])
    if len(vouchers) == 1:
        warnings.append("Only one voucher - aggregation not necessary")

    if len({v.payer.lower() for v in vouchers}) > 1:
        errors.append("Cannot aggregate vouchers from different payers")
    if len({v.payee.lower() for v in vouchers}) > 1:
        errors.append("Cannot aggregate vouchers to different payees")
    if len({v.network for v in vouchers}) > 1:
        errors.append("Cannot aggregate vouchers from different networks")

    settled = [v for v in vouchers if v.settled]
    if settled:
        errors.append(f"{len(settled)} voucher(s) already settled - cannot re-settle")

    nonces = [v.nonce.lower() for v in vouchers]
    if len(set(nonces)) != len(nonces):
        errors.append("Duplicate vouchers detected (same nonce)")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def calculate_aggregated_amount(vouchers: Iterable[VoucherRecord]) -> int:
    return sum((v.amount for v in vouchers), 0)


def is_settlement_viable(
    total_amount: int,
    estimated_gas_cost: int,
    min_profit_ratio: float = DEFAULT_MIN_PROFIT_RATIO,
) -> ValidationReport:
    """Advisory economics check; not a security boundary.

    The profit ratio is the net gain over the gas cost, so the default 2x
    asks for at least three times the gas cost in total.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if total_amount <= 0:
        errors.append("Total amount must be greater than zero")
    if estimated_gas_cost <= 0:
        errors.append("Gas cost estimate required")
        return ValidationReport(valid=False, errors=errors)

    if total_amount <= estimated_gas_cost:
        errors.append(
            f"Settlement not viable: total amount ({total_amount}) <= gas cost ({estimated_gas_cost})"
        )

    ratio = (total_amount - estimated_gas_cost) / estimated_gas_cost
    if not errors and ratio < min_profit_ratio:
        warnings.append(
            f"Low profit ratio: {ratio:.2f}x (recommended: {min_profit_ratio}x)"
        )

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def select_settlement_candidates(
    vouchers: Sequence[VoucherRecord],
    min_amount: int = DEFAULT_MIN_SETTLEMENT_AMOUNT,
    min_voucher_count: int = DEFAULT_MIN_VOUCHER_COUNT,
) -> SettlementCandidates:
    """Settle everything unsettled once either threshold is met."""
    unsettled = [v for v in vouchers if not v.settled]
    total = calculate_aggregated_amount(unsettled)

    if not unsettled:
        return SettlementCandidates(should_settle=False, reason="No unsettled vouchers")

    if total >= min_amount:
        return SettlementCandidates(
            should_settle=True,
            candidates=unsettled,
            total_amount=total,
            reason=f"Total amount ({total}) exceeds threshold ({min_amount})",
        )
    if len(unsettled) >= min_voucher_count:
        return SettlementCandidates(
            should_settle=True,
            candidates=unsettled,
            total_amount=total,
            reason=f"Voucher count ({len(unsettled)}) exceeds threshold ({min_voucher_count})",
        )
    return SettlementCandidates(
        should_settle=False,
        candidates=unsettled,
        total_amount=total,
        reason=f"Not enough value ({total}) or count ({len(unsettled)}) to settle",
    )
