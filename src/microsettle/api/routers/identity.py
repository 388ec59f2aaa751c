"""Identity proof routes."""

from __future__ import annotations

import logging
import time
from typing import Union

from fastapi import APIRouter, Depends, HTTPException, Path, status
from fastapi.responses import JSONResponse

from ...application.identity.dtos import (
    IdentityVerifyRequestDTO,
    IdentityVerifyResponseDTO,
    ScopeStatsResponseDTO,
)
from ...application.identity.use_cases.identity_verification import (
    IdentityVerificationService,
)
from ...domain.errors import FacilitatorError, status_for_reason
from ...domain.identity.entities import MAX_SCOPE_LENGTH, IdentityTier
from ..dependencies import get_identity_service
from ..metrics import observe

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/identity", tags=["identity"])


@router.post(
    "/verify",
    response_model=IdentityVerifyResponseDTO,
    response_model_by_alias=True,
)
async def verify_identity(
    request: IdentityVerifyRequestDTO,
    identity: IdentityVerificationService = Depends(get_identity_service),
) -> Union[IdentityVerifyResponseDTO, JSONResponse]:
    """Verify a proof on its own and record its nullifier."""
    start_time = time.perf_counter()
    try:
        result = await identity.verify(request.proof.to_domain(), request.vendor_url)
    except FacilitatorError as e:
        observe("identity_verify", e.status_code, start_time)
        body = IdentityVerifyResponseDTO(
            valid=False,
            tier=IdentityTier.UNVERIFIED.value,
            error=e.message,
            error_reason=e.reason,
        )
        return JSONResponse(status_code=e.status_code, content=body.to_json_dict())
    except Exception as e:
        logger.exception("Unexpected error verifying identity proof")
        observe("identity_verify", status.HTTP_500_INTERNAL_SERVER_ERROR, start_time)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to verify identity: {str(e)}",
        )

    response = IdentityVerifyResponseDTO.from_result(result)
    if not result.valid:
        status_code = status_for_reason(result.error_reason)
        observe("identity_verify", status_code, start_time)
        return JSONResponse(status_code=status_code, content=response.to_json_dict())
    observe("identity_verify", status.HTTP_200_OK, start_time)
    return response


@router.get(
    "/scopes/{scope}/stats",
    response_model=ScopeStatsResponseDTO,
    response_model_by_alias=True,
)
async def get_scope_stats(
    scope: str = Path(..., min_length=1, max_length=MAX_SCOPE_LENGTH),
    identity: IdentityVerificationService = Depends(get_identity_service),
) -> ScopeStatsResponseDTO:
    stats = await identity.get_scope_stats(scope)
    return ScopeStatsResponseDTO(**stats.model_dump())
