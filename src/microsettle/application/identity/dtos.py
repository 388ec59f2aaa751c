"""Data Transfer Objects for identity verification."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Optional

from pydantic import Field, model_validator

from ...domain.errors import InvalidPaymentPayload
from ...domain.identity.entities import (
    MAX_SCOPE_LENGTH,
    IdentityProof,
    IdentityVerificationResult,
)
from ..shared.dtos import CamelDTO


class IdentityProofDTO(CamelDTO):
    """A proof either as separate fields or as base64("proof|publicSignals")."""

    scope: str = Field(..., min_length=1, max_length=MAX_SCOPE_LENGTH)
    attestation_id: int = 1
    header: Optional[str] = None
    proof: Optional[Any] = None
    public_signals: Optional[Any] = None
    user_context_data: Optional[str] = None

    @model_validator(mode="after")
    def check_source(self) -> "IdentityProofDTO":
        if self.header is None and (self.proof is None or self.public_signals is None):
            raise ValueError("Provide either header or proof and publicSignals")
        return self

    def to_domain(self) -> IdentityProof:
        proof, signals = self.proof, self.public_signals
        if self.header is not None:
            try:
                decoded = base64.b64decode(self.header, validate=True).decode("utf-8")
                raw_proof, raw_signals = decoded.split("|", 1)
                proof, signals = json.loads(raw_proof), json.loads(raw_signals)
            except (binascii.Error, UnicodeDecodeError, ValueError) as e:
                raise InvalidPaymentPayload(
                    "Invalid proof format (expected base64(proof|publicSignals))"
                ) from e
        return IdentityProof(
            scope=self.scope,
            attestation_id=self.attestation_id,
            proof=proof,
            public_signals=signals,
            user_context_data=self.user_context_data,
        )


class IdentityVerifyRequestDTO(CamelDTO):
    proof: IdentityProofDTO
    vendor_url: Optional[str] = None


class IdentityVerifyResponseDTO(CamelDTO):
    valid: bool
    tier: str
    nullifier: Optional[str] = None
    error: Optional[str] = None
    error_reason: Optional[str] = None
    disclosed_data: dict[str, Any] = Field(default_factory=dict)
    nullifier_persisted: bool = True
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: IdentityVerificationResult) -> "IdentityVerifyResponseDTO":
        return cls(
            valid=result.valid,
            tier=result.tier.value,
            nullifier=result.nullifier,
            error=result.error,
            error_reason=result.error_reason,
            disclosed_data=result.disclosed_data,
            nullifier_persisted=result.nullifier_persisted,
            warnings=result.warnings,
        )


class ScopeStatsResponseDTO(CamelDTO):
    scope: str
    total: int
    active: int
    expired: int
