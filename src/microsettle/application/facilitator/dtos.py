"""Data Transfer Objects for the immediate payment API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, Field, ValidationError, model_validator

from ...domain.errors import InvalidPaymentPayload
from ...domain.payment.entities import (
    PaymentAuthorization,
    PaymentEnvelope,
    SettlementResult,
    SettlementStatus,
    VerificationResult,
)
from ..identity.dtos import IdentityProofDTO
from ..shared.dtos import CamelDTO


class AuthorizationDTO(CamelDTO):
    """EIP-3009 fields, accepting both x402 (from/to/value) and plain names."""

    payer: str = Field(..., validation_alias=AliasChoices("from", "payer"))
    payee: str = Field(..., validation_alias=AliasChoices("to", "payee"))
    amount: int = Field(..., validation_alias=AliasChoices("value", "amount"))
    valid_after: int = Field(
        ..., validation_alias=AliasChoices("validAfter", "valid_after")
    )
    valid_before: int = Field(
        ..., validation_alias=AliasChoices("validBefore", "valid_before")
    )
    nonce: str


class PaymentEnvelopeDTO(CamelDTO):
    """Signed authorization. The x402 ``payload`` wrapper is flattened."""

    model_config = CamelDTO.model_config | {
        "json_schema_extra": {
            "example": {
                "network": "celo-sepolia",
                "authorization": {
                    "from": "0x" + "1" * 40,
                    "to": "0x" + "2" * 40,
                    "value": "10000",
                    "validAfter": 0,
                    "validBefore": 1900000000,
                    "nonce": "0x" + "ab" * 32,
                },
                "signature": "0x" + "cd" * 65,
            }
        }
    }

    scheme: str = "exact"
    network: str
    authorization: AuthorizationDTO
    signature: str

    @model_validator(mode="before")
    @classmethod
    def flatten_payload(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("payload"), dict):
            flat = {k: v for k, v in data.items() if k != "payload"}
            flat.update(data["payload"])
            return flat
        return data

    def to_domain(self) -> PaymentEnvelope:
        try:
            return PaymentEnvelope(
                network=self.network,
                authorization=PaymentAuthorization(
                    payer=self.authorization.payer,
                    payee=self.authorization.payee,
                    amount=self.authorization.amount,
                    valid_after=self.authorization.valid_after,
                    valid_before=self.authorization.valid_before,
                    nonce=self.authorization.nonce,
                ),
                signature=self.signature,
            )
        except ValidationError as e:
            raise InvalidPaymentPayload(
                "; ".join(err["msg"] for err in e.errors())
            ) from e


class PaymentRequirementsDTO(CamelDTO):
    scheme: str = "exact"
    network: str
    pay_to: str
    max_amount_required: int = Field(
        ..., validation_alias=AliasChoices("maxAmountRequired", "max_amount_required", "amount")
    )
    asset: Optional[str] = None
    resource: Optional[str] = None
    description: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def identity_required(self) -> Optional[bool]:
        value = self.extra.get("identityRequired")
        return value if isinstance(value, bool) else None

    def vendor_url(self) -> Optional[str]:
        value = self.extra.get("vendorUrl")
        return value if isinstance(value, str) else None


class VerifyRequestDTO(CamelDTO):
    payment_envelope: PaymentEnvelopeDTO = Field(
        ..., validation_alias=AliasChoices("paymentEnvelope", "paymentPayload", "payment_envelope")
    )
    payment_requirements: PaymentRequirementsDTO
    identity_proof: Optional[IdentityProofDTO] = None


class SettleRequestDTO(CamelDTO):
    payment_envelope: PaymentEnvelopeDTO = Field(
        ..., validation_alias=AliasChoices("paymentEnvelope", "paymentPayload", "payment_envelope")
    )
    payment_requirements: PaymentRequirementsDTO


class VerifyResponseDTO(CamelDTO):
    is_valid: bool
    invalid_reason: Optional[str] = None
    invalid_message: Optional[str] = None
    payer: Optional[str] = None
    tier: Optional[str] = None

    @classmethod
    def from_result(
        cls, result: VerificationResult, tier: Optional[str] = None
    ) -> "VerifyResponseDTO":
        return cls(
            is_valid=result.is_valid,
            invalid_reason=result.error_reason,
            invalid_message=result.error_message,
            payer=result.payer,
            tier=tier,
        )


class SettleResponseDTO(CamelDTO):
    success: bool
    network: str
    transaction: Optional[str] = None
    payer: Optional[str] = None
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_result(cls, result: SettlementResult) -> "SettleResponseDTO":
        return cls(
            success=result.success,
            network=result.network,
            transaction=result.transaction_hash,
            payer=result.payer,
            block_number=result.block_number,
            explorer_url=result.explorer_url,
            error_reason=result.error_reason,
            error_message=result.error_message,
        )


class SettlementStatusResponseDTO(CamelDTO):
    network: str
    transaction: str
    status: str
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None

    @classmethod
    def from_status(cls, status: SettlementStatus) -> "SettlementStatusResponseDTO":
        return cls(
            network=status.network,
            transaction=status.transaction_hash,
            status=status.status,
            block_number=status.block_number,
            explorer_url=status.explorer_url,
        )


class SupportedKindDTO(CamelDTO):
    scheme: str
    network: str
    chain_id: int
    asset: str
    asset_name: str
    asset_version: str
    extra: dict[str, Any] = Field(default_factory=dict)


class SupportedResponseDTO(CamelDTO):
    kinds: list[SupportedKindDTO]
