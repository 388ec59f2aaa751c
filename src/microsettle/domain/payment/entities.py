"""Payment domain entities: authorizations, envelopes and their outcomes."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
BYTES32_PATTERN = r"^0x[a-fA-F0-9]{64}$"
SIGNATURE_PATTERN = r"^0x[a-fA-F0-9]{130}$"


class PaymentAuthorization(BaseModel):
    """EIP-3009 TransferWithAuthorization message signed by the payer."""

    payer: str = Field(..., pattern=ADDRESS_PATTERN)
    payee: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: int = Field(..., ge=0, description="Smallest asset unit")
    valid_after: int = Field(..., ge=0)
    valid_before: int = Field(..., ge=0)
    nonce: str = Field(..., pattern=BYTES32_PATTERN)

    @field_validator("nonce")
    @classmethod
    def normalize_nonce(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def check_window(self) -> "PaymentAuthorization":
        if self.valid_after >= self.valid_before:
            raise ValueError("validAfter must be before validBefore")
        return self

    @field_serializer("amount")
    def serialize_amount(self, value: int) -> str:
        return str(value)


class PaymentEnvelope(BaseModel):
    """A signed authorization bound to a network. Never persisted as-is."""

    network: str = Field(..., min_length=1)
    authorization: PaymentAuthorization
    signature: str = Field(..., pattern=SIGNATURE_PATTERN)


class VerificationResult(BaseModel):
    is_valid: bool
    payer: Optional[str] = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None


class SettlementResult(BaseModel):
    success: bool
    network: str
    payer: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None
    error_reason: Optional[str] = None
    error_message: Optional[str] = None


class SettlementStatus(BaseModel):
    """Observed state of a submitted transaction."""

    network: str
    transaction_hash: str
    status: str  # pending | settled | failed
    block_number: Optional[int] = None
    explorer_url: Optional[str] = None


class AuthorizationState(str, Enum):
    """Lifecycle of a single authorization inside the facilitator.

    VERIFIED -> SETTLING -> SETTLED
                         -> PENDING (sent, outcome unknown) -> SETTLED | SETTLEMENT_FAILED
                         -> SETTLEMENT_FAILED
    SETTLED is terminal.
    """

    VERIFIED = "verified"
    SETTLING = "settling"
    PENDING = "pending"
    SETTLED = "settled"
    SETTLEMENT_FAILED = "settlement_failed"


class AuthorizationRecord(BaseModel):
    """Durable trace of an authorization between verify and settle."""

    chain_id: int
    payer: str
    payee: str
    amount: int
    nonce: str
    valid_before: int
    signature: str
    state: AuthorizationState = AuthorizationState.VERIFIED
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    error_reason: Optional[str] = None
    verified_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @field_serializer("amount")
    def serialize_amount(self, value: int) -> str:
        return str(value)

    @field_serializer("verified_at")
    def serialize_verified_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("updated_at")
    def serialize_updated_at(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @classmethod
    def from_envelope(
        cls, chain_id: int, envelope: PaymentEnvelope
    ) -> "AuthorizationRecord":
        auth = envelope.authorization
        return cls(
            chain_id=chain_id,
            payer=auth.payer.lower(),
            payee=auth.payee.lower(),
            amount=auth.amount,
            nonce=auth.nonce,
            valid_before=auth.valid_before,
            signature=envelope.signature.lower(),
        )

    def matches(self, envelope: PaymentEnvelope) -> bool:
        """True when the envelope is the one that was verified."""
        auth = envelope.authorization
        return (
            self.payee == auth.payee.lower()
            and self.amount == auth.amount
            and self.signature == envelope.signature.lower()
        )

    def transition(self, state: AuthorizationState, **changes: object) -> "AuthorizationRecord":
        return self.model_copy(
            update={
                "state": state,
                "updated_at": datetime.now(timezone.utc),
                **changes,
            }
        )
