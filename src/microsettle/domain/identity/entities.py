"""Identity gating entities: nullifiers, disclosure policies and tiers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

NULLIFIER_VALIDITY = timedelta(days=90)
MAX_SCOPE_LENGTH = 30


class IdentityTier(str, Enum):
    VERIFIED_HUMAN = "verified_human"
    UNVERIFIED = "unverified"


class IdentityPolicy(str, Enum):
    """What happens to a payment whose identity proof is missing or fails.

    OPTIONAL: the payment proceeds at the ``unverified`` tier.
    REQUIRED: the payment is rejected.
    """

    OPTIONAL = "optional"
    REQUIRED = "required"


class DisclosurePolicy(BaseModel):
    """Attributes a vendor requires the identity proof to satisfy."""

    model_config = ConfigDict(frozen=True)

    minimum_age: int = Field(default=18, ge=0)
    excluded_countries: tuple[str, ...] = ()
    ofac: bool = False


class IdentityProof(BaseModel):
    """A zero-knowledge proof submitted by a payer, already decoded."""

    scope: str = Field(..., min_length=1, max_length=MAX_SCOPE_LENGTH)
    attestation_id: int = 1
    proof: Any
    public_signals: Any
    user_context_data: Optional[str] = None


class ProofVerificationOutcome(BaseModel):
    """What the external proof verifier reports. Opaque beyond these fields."""

    is_valid: bool
    minimum_age_valid: bool = False
    ofac_valid: bool = False
    nullifier: Optional[str] = None
    nationality: Optional[str] = None
    user_id: Optional[str] = None
    disclosed: dict[str, Any] = Field(default_factory=dict)


class NullifierRecord(BaseModel):
    """Durable "already verified" marker for one identity within one scope."""

    nullifier: str = Field(..., min_length=1)
    scope: str = Field(..., min_length=1, max_length=MAX_SCOPE_LENGTH)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    nationality: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if self.expires_at is None:
            self.expires_at = self.created_at + NULLIFIER_VALIDITY

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("expires_at")
    def serialize_expires_at(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        assert self.expires_at is not None
        return self.expires_at <= now


class ScopeStats(BaseModel):
    scope: str
    total: int
    active: int
    expired: int


class IdentityVerificationResult(BaseModel):
    valid: bool
    tier: IdentityTier
    nullifier: Optional[str] = None
    error: Optional[str] = None
    error_reason: Optional[str] = None
    disclosed_data: dict[str, Any] = Field(default_factory=dict)
    nullifier_persisted: bool = True
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def unverified(
        cls, error: str, reason: str = "identity_proof_invalid"
    ) -> "IdentityVerificationResult":
        return cls(
            valid=False, tier=IdentityTier.UNVERIFIED, error=error, error_reason=reason
        )
