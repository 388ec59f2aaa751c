"""Identity verification: proof result -> tier, backed by the nullifier registry."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from ....domain.errors import (
    DuplicateNullifier,
    FacilitatorError,
    IdentityVerificationRequired,
)
from ....domain.identity.entities import (
    DisclosurePolicy,
    IdentityPolicy,
    IdentityProof,
    IdentityTier,
    IdentityVerificationResult,
    NullifierRecord,
    ScopeStats,
)
from ....domain.identity.nullifier_repository import NullifierRepository
from ....domain.shared import DisclosurePolicySource, StoreAvailability
from ..verifier_registry import ScopedVerifierRegistry

logger = logging.getLogger(__name__)

NOT_PERSISTED_WARNING = "Nullifier not persisted: store unavailable"


class IdentityVerificationService:
    """Consumes an external proof verdict and records its nullifier.

    The nullifier check and write are one atomic store operation, so two
    concurrent verifications of the same identity in the same scope cannot
    both succeed.
    """

    def __init__(
        self,
        verifiers: ScopedVerifierRegistry,
        nullifier_repository: Optional[NullifierRepository],
        store: StoreAvailability,
        disclosure_source: DisclosurePolicySource,
        default_policy: IdentityPolicy = IdentityPolicy.OPTIONAL,
    ):
        self.verifiers = verifiers
        self.nullifiers = nullifier_repository
        self.store = store
        self.disclosure_source = disclosure_source
        self.default_policy = default_policy

    def resolve_policy(self, identity_required: Optional[bool] = None) -> IdentityPolicy:
        """Per-request override of the configured default."""
        if identity_required is None:
            return self.default_policy
        return IdentityPolicy.REQUIRED if identity_required else IdentityPolicy.OPTIONAL

    async def verify(
        self,
        proof: IdentityProof,
        vendor_url: Optional[str] = None,
        disclosure: Optional[DisclosurePolicy] = None,
    ) -> IdentityVerificationResult:
        verifier = self.verifiers.get(proof.scope)
        if disclosure is None:
            disclosure = await self.disclosure_source.fetch(vendor_url)

        outcome = await verifier.verify(proof, disclosure)
        if not outcome.is_valid:
            return IdentityVerificationResult.unverified("Invalid cryptographic proof")
        if not outcome.minimum_age_valid:
            return IdentityVerificationResult.unverified(
                f"Age verification failed (minimum: {disclosure.minimum_age})"
            )
        if disclosure.ofac and not outcome.ofac_valid:
            return IdentityVerificationResult.unverified("OFAC sanctions check failed")
        if not outcome.nullifier:
            return IdentityVerificationResult.unverified(
                "Nullifier missing from verification result"
            )
        if outcome.nationality and outcome.nationality in disclosure.excluded_countries:
            return IdentityVerificationResult.unverified(
                f"Country excluded: {outcome.nationality}"
            )

        disclosed = {
            "ageValid": outcome.minimum_age_valid,
            "ofacValid": outcome.ofac_valid,
            "nationality": outcome.nationality,
            **outcome.disclosed,
        }
        result = IdentityVerificationResult(
            valid=True,
            tier=IdentityTier.VERIFIED_HUMAN,
            nullifier=outcome.nullifier,
            disclosed_data=disclosed,
        )

        if not self.store.available:
            logger.warning(
                "Store unavailable; nullifier for scope %s is not persisted", proof.scope
            )
            result.nullifier_persisted = False
            result.warnings.append(NOT_PERSISTED_WARNING)
            return result

        assert self.nullifiers is not None
        record = NullifierRecord(
            nullifier=outcome.nullifier,
            scope=proof.scope,
            user_id=outcome.user_id,
            nationality=outcome.nationality,
            metadata={
                "ageValid": outcome.minimum_age_valid,
                "ofacValid": outcome.ofac_valid,
                "verifiedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        try:
            await self.nullifiers.store(record)
        except DuplicateNullifier:
            return IdentityVerificationResult.unverified(
                "Duplicate verification detected (one passport = one verification)",
                reason=DuplicateNullifier.reason,
            )
        logger.info(
            "Identity verified in scope %s for %s national",
            proof.scope,
            outcome.nationality or "unknown",
        )
        return result

    async def gate(
        self,
        proof: Optional[IdentityProof],
        policy: IdentityPolicy,
        vendor_url: Optional[str] = None,
    ) -> IdentityVerificationResult:
        """Apply the identity policy to an optional proof attached to a payment.

        Raises:
            IdentityVerificationRequired: policy is REQUIRED and the proof is
                missing or does not verify.
        """
        if proof is None:
            if policy == IdentityPolicy.REQUIRED:
                raise IdentityVerificationRequired("An identity proof is required")
            return IdentityVerificationResult.unverified(
                "No identity proof provided", reason="identity_proof_missing"
            )

        try:
            result = await self.verify(proof, vendor_url)
        except FacilitatorError as e:
            if policy == IdentityPolicy.REQUIRED or e.status_code >= 500:
                raise
            logger.info("Identity proof rejected (%s); continuing unverified", e.reason)
            return IdentityVerificationResult.unverified(e.message, reason=e.reason)

        if not result.valid and policy == IdentityPolicy.REQUIRED:
            raise IdentityVerificationRequired(result.error)
        return result

    async def nullifier_exists(self, nullifier: str, scope: str) -> bool:
        self.store.require("Nullifier lookup")
        assert self.nullifiers is not None
        return await self.nullifiers.exists(nullifier, scope)

    async def get_scope_records(self, scope: str, limit: int = 100) -> List[NullifierRecord]:
        self.store.require("Nullifier lookup")
        assert self.nullifiers is not None
        return await self.nullifiers.get_by_scope(scope, limit)

    async def get_scope_stats(self, scope: str) -> ScopeStats:
        self.store.require("Nullifier statistics")
        assert self.nullifiers is not None
        return await self.nullifiers.get_scope_stats(scope)

    async def cleanup_expired(self) -> int:
        if not self.store.available:
            return 0
        assert self.nullifiers is not None
        removed = await self.nullifiers.cleanup_expired()
        if removed:
            logger.info("Removed %d expired nullifiers", removed)
        return removed
