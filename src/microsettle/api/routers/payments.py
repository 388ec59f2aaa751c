"""Immediate payment routes: supported kinds, verify, settle and status."""

from __future__ import annotations

import logging
import time
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Path, status
from fastapi.responses import JSONResponse

from ...application.facilitator.dtos import (
    PaymentRequirementsDTO,
    SettleRequestDTO,
    SettleResponseDTO,
    SettlementStatusResponseDTO,
    SupportedKindDTO,
    SupportedResponseDTO,
    VerifyRequestDTO,
    VerifyResponseDTO,
)
from ...application.facilitator.use_cases.facilitator import Facilitator
from ...application.identity.use_cases.identity_verification import (
    IdentityVerificationService,
)
from ...crypto.typed_data import VOUCHER_DOMAIN_VERSION
from ...domain.chain.registry import ChainRegistry
from ...domain.errors import (
    FacilitatorError,
    InvalidPaymentPayload,
    SettlementTimeout,
    status_for_reason,
)
from ...domain.payment.entities import PaymentEnvelope
from ...envs.facilitator_env import Settings, get_settings
from ..dependencies import get_chain_registry, get_facilitator, get_identity_service
from ..metrics import observe, settlement_outcomes_total

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def check_network(
    registry: ChainRegistry, envelope: PaymentEnvelope, requirements: PaymentRequirementsDTO
) -> None:
    """The envelope must target the chain the requirements ask for."""
    expected = registry.resolve(requirements.network)
    if registry.resolve(envelope.network).chain_id != expected.chain_id:
        raise InvalidPaymentPayload(
            f"Envelope network {envelope.network} does not match {requirements.network}"
        )


@router.get("/supported", response_model=SupportedResponseDTO, response_model_by_alias=True)
async def get_supported(
    registry: ChainRegistry = Depends(get_chain_registry),
    settings: Settings = Depends(get_settings),
) -> SupportedResponseDTO:
    """Payment kinds this facilitator verifies and settles."""
    identity = {
        "policy": settings.identity_policy.value,
        "scopes": settings.identity_scopes,
    }
    kinds = []
    for chain in registry.all():
        kinds.append(
            SupportedKindDTO(
                scheme="exact",
                network=chain.name,
                chain_id=chain.chain_id,
                asset=chain.asset_address,
                asset_name=chain.asset_name,
                asset_version=chain.asset_version,
                extra={"identity": identity},
            )
        )
        if settings.deferred_enabled:
            kinds.append(
                SupportedKindDTO(
                    scheme="deferred",
                    network=chain.name,
                    chain_id=chain.chain_id,
                    asset=chain.asset_address,
                    asset_name=chain.asset_name,
                    asset_version=chain.asset_version,
                    extra={
                        "voucherDomain": {
                            "name": settings.voucher_domain_name,
                            "version": VOUCHER_DOMAIN_VERSION,
                        },
                        "thresholds": {
                            "minSettlementAmount": str(settings.min_settlement_amount),
                            "minVoucherCount": settings.min_voucher_count,
                            "largeVoucherThreshold": str(settings.large_voucher_threshold),
                            "minProfitRatio": settings.min_profit_ratio,
                        },
                        "features": ["aggregated_settlement", "settlement_recovery"],
                    },
                )
            )
    return SupportedResponseDTO(kinds=kinds)


@router.post("/verify", response_model=VerifyResponseDTO, response_model_by_alias=True)
async def verify_payment(
    request: VerifyRequestDTO,
    facilitator: Facilitator = Depends(get_facilitator),
    identity: IdentityVerificationService = Depends(get_identity_service),
) -> Union[VerifyResponseDTO, JSONResponse]:
    """Verify a signed authorization against the payment requirements.

    The identity gate runs only after the signature checks pass and the
    authorization is known not to be settled or in flight, so an invalid or
    replayed payment never consumes a nullifier. Failures never answer 200.
    """
    start_time = time.perf_counter()
    requirements = request.payment_requirements
    payer: Optional[str] = request.payment_envelope.authorization.payer.lower()
    try:
        envelope = request.payment_envelope.to_domain()
        check_network(facilitator.registry, envelope, requirements)

        precheck = await facilitator.precheck(
            envelope, requirements.pay_to, requirements.max_amount_required
        )
        if not precheck.is_valid:
            return _verify_failed(VerifyResponseDTO.from_result(precheck), start_time)

        proof = request.identity_proof.to_domain() if request.identity_proof else None
        gate = await identity.gate(
            proof,
            identity.resolve_policy(requirements.identity_required()),
            requirements.vendor_url(),
        )

        result = await facilitator.verify(
            envelope, requirements.pay_to, requirements.max_amount_required
        )
        if not result.is_valid:
            return _verify_failed(VerifyResponseDTO.from_result(result), start_time)
        observe("verify", status.HTTP_200_OK, start_time)
        return VerifyResponseDTO.from_result(result, tier=gate.tier.value)
    except FacilitatorError as e:
        return _verify_failed(
            VerifyResponseDTO(
                is_valid=False,
                invalid_reason=e.reason,
                invalid_message=e.message,
                payer=payer,
            ),
            start_time,
            e.status_code,
        )
    except Exception as e:
        logger.exception("Unexpected error verifying payment from %s", payer)
        observe("verify", status.HTTP_500_INTERNAL_SERVER_ERROR, start_time)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to verify payment: {str(e)}",
        )


def _verify_failed(
    response: VerifyResponseDTO, start_time: float, status_code: Optional[int] = None
) -> JSONResponse:
    status_code = status_code or status_for_reason(response.invalid_reason)
    observe("verify", status_code, start_time)
    return JSONResponse(status_code=status_code, content=response.to_json_dict())


@router.post("/settle", response_model=SettleResponseDTO, response_model_by_alias=True)
async def settle_payment(
    request: SettleRequestDTO,
    facilitator: Facilitator = Depends(get_facilitator),
) -> Union[SettleResponseDTO, JSONResponse]:
    """Submit a verified authorization on chain and wait for its receipt.

    A transaction that is sent but unconfirmed answers 202 with its hash;
    poll ``/settle/status`` instead of settling again.
    """
    start_time = time.perf_counter()
    requirements = request.payment_requirements
    payer = request.payment_envelope.authorization.payer.lower()
    network = request.payment_envelope.network
    try:
        envelope = request.payment_envelope.to_domain()
        check_network(facilitator.registry, envelope, requirements)
        network = facilitator.registry.resolve(envelope.network).name
        result = await facilitator.settle(
            envelope, requirements.pay_to, requirements.max_amount_required
        )
    except FacilitatorError as e:
        outcome = "pending" if isinstance(e, SettlementTimeout) else e.reason
        settlement_outcomes_total.labels(kind="exact", outcome=outcome).inc()
        observe("settle", e.status_code, start_time)
        body = SettleResponseDTO(
            success=False,
            network=network,
            payer=payer,
            transaction=getattr(e, "transaction_hash", None),
            error_reason=e.reason,
            error_message=e.message,
        )
        return JSONResponse(status_code=e.status_code, content=body.to_json_dict())
    except Exception as e:
        logger.exception("Unexpected error settling payment from %s", payer)
        observe("settle", status.HTTP_500_INTERNAL_SERVER_ERROR, start_time)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to settle payment: {str(e)}",
        )

    settlement_outcomes_total.labels(kind="exact", outcome="settled").inc()
    observe("settle", status.HTTP_200_OK, start_time)
    return SettleResponseDTO.from_result(result)


@router.get(
    "/settle/status/{network}/{tx_hash}",
    response_model=SettlementStatusResponseDTO,
    response_model_by_alias=True,
)
async def get_settlement_status(
    network: str = Path(..., description="Network name or chain id"),
    tx_hash: str = Path(..., pattern=r"^0x[a-fA-F0-9]{64}$"),
    facilitator: Facilitator = Depends(get_facilitator),
) -> SettlementStatusResponseDTO:
    """Poll a settlement transaction by hash."""
    result = await facilitator.get_settlement_status(network, tx_hash.lower())
    return SettlementStatusResponseDTO.from_status(result)
