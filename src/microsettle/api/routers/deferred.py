"""Deferred payment routes: vouchers, balances and aggregated settlement."""

from __future__ import annotations

import logging
import time
from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from fastapi.responses import JSONResponse

from ...application.deferred.dtos import (
    AccumulatedBalanceDTO,
    DeferredSettleRequestDTO,
    DeferredSettlementOutcomeDTO,
    DeferredVerifyRequestDTO,
    SettlementRecordDTO,
    VoucherAcceptedDTO,
    VoucherRejectedDTO,
)
from ...application.deferred.use_cases.settlement_coordinator import (
    DeferredSettlementCoordinator,
)
from ...application.deferred.use_cases.voucher_ledger import VoucherLedger
from ...domain.errors import (
    FacilitatorError,
    SettlementTimeout,
    VoucherValidationFailed,
)
from ...envs.facilitator_env import Settings, get_settings
from ..dependencies import get_settlement_coordinator, get_voucher_ledger
from ..metrics import observe, settlement_outcomes_total

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


def require_deferred(settings: Settings = Depends(get_settings)) -> None:
    if not settings.deferred_enabled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deferred payments are disabled",
        )


router = APIRouter(
    prefix="/deferred", tags=["deferred"], dependencies=[Depends(require_deferred)]
)


@router.post(
    "/verify",
    response_model=VoucherAcceptedDTO,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def submit_voucher(
    request: DeferredVerifyRequestDTO,
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> Union[VoucherAcceptedDTO, JSONResponse]:
    """Validate a signed voucher and store it for later aggregation."""
    start_time = time.perf_counter()
    try:
        accepted = await ledger.submit(request.payment_envelope.to_domain())
    except FacilitatorError as e:
        observe("deferred_verify", e.status_code, start_time)
        body = VoucherRejectedDTO(
            error_reason=e.reason,
            errors=e.errors if isinstance(e, VoucherValidationFailed) else [e.message],
            warnings=e.warnings if isinstance(e, VoucherValidationFailed) else [],
        )
        return JSONResponse(status_code=e.status_code, content=body.to_json_dict())
    except Exception as e:
        logger.exception("Unexpected error storing voucher")
        observe("deferred_verify", status.HTTP_500_INTERNAL_SERVER_ERROR, start_time)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to store voucher: {str(e)}",
        )

    observe("deferred_verify", status.HTTP_201_CREATED, start_time)
    return accepted


@router.post(
    "/settle",
    response_model=DeferredSettlementOutcomeDTO,
    response_model_by_alias=True,
)
async def settle_vouchers(
    request: DeferredSettleRequestDTO,
    coordinator: DeferredSettlementCoordinator = Depends(get_settlement_coordinator),
) -> Union[DeferredSettlementOutcomeDTO, JSONResponse]:
    """Settle a payee's accumulated vouchers if the total is worth a transfer.

    Without ``authorization`` a viable set answers ``authorization_required``
    with the per-payer totals to sign.
    """
    start_time = time.perf_counter()
    try:
        envelope = request.authorization.to_domain() if request.authorization else None
        outcome = await coordinator.settle(request.payee, request.network, envelope)
    except FacilitatorError as e:
        outcome_label = "pending" if isinstance(e, SettlementTimeout) else e.reason
        settlement_outcomes_total.labels(kind="deferred", outcome=outcome_label).inc()
        observe("deferred_settle", e.status_code, start_time)
        body = {"errorReason": e.reason, "errorMessage": e.message}
        transaction_hash = getattr(e, "transaction_hash", None)
        if transaction_hash:
            body["transaction"] = transaction_hash
        return JSONResponse(status_code=e.status_code, content=body)
    except Exception as e:
        logger.exception("Unexpected error settling vouchers for %s", request.payee)
        observe("deferred_settle", status.HTTP_500_INTERNAL_SERVER_ERROR, start_time)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to settle vouchers: {str(e)}",
        )

    settlement_outcomes_total.labels(kind="deferred", outcome=outcome.status).inc()
    observe("deferred_settle", status.HTTP_200_OK, start_time)
    return outcome


@router.get(
    "/balance/{payee}",
    response_model=List[AccumulatedBalanceDTO],
    response_model_by_alias=True,
)
async def get_balance(
    payee: str = Path(..., pattern=ADDRESS_PATTERN),
    network: str = Query(..., description="Network name or chain id"),
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> List[AccumulatedBalanceDTO]:
    """Unsettled totals owed to a payee, one entry per payer."""
    balances = await ledger.get_accumulated_balances(payee, network)
    return [AccumulatedBalanceDTO.from_balance(b) for b in balances]


@router.get(
    "/settlements/{payee}",
    response_model=List[SettlementRecordDTO],
    response_model_by_alias=True,
)
async def get_settlements(
    payee: str = Path(..., pattern=ADDRESS_PATTERN),
    network: str = Query(..., description="Network name or chain id"),
    limit: int = Query(100, ge=1, le=1000),
    ledger: VoucherLedger = Depends(get_voucher_ledger),
) -> List[SettlementRecordDTO]:
    """Aggregated settlements for a payee, newest first."""
    records = await ledger.get_payee_settlements(payee, network, limit)
    return [SettlementRecordDTO.from_record(r) for r in records]
