"""Stub identity collaborators: proof verifier and disclosure source."""

from __future__ import annotations

from typing import Optional

from microsettle.domain.identity.entities import (
    DisclosurePolicy,
    IdentityProof,
    ProofVerificationOutcome,
)


def passing_outcome(nullifier: str = "nullifier-1", **changes: object) -> ProofVerificationOutcome:
    values: dict[str, object] = {
        "is_valid": True,
        "minimum_age_valid": True,
        "ofac_valid": True,
        "nullifier": nullifier,
        "nationality": "BRA",
        "user_id": "user-1",
        "disclosed": {"name": "Ada"},
    }
    values.update(changes)
    return ProofVerificationOutcome(**values)


class StubProofVerifier:
    """Returns a preset outcome, or raises a preset error."""

    def __init__(
        self,
        scope: str,
        outcome: Optional[ProofVerificationOutcome] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.scope = scope
        self.outcome = outcome or passing_outcome()
        self.error = error
        self.calls: list[tuple[IdentityProof, DisclosurePolicy]] = []

    async def verify(
        self, proof: IdentityProof, policy: DisclosurePolicy
    ) -> ProofVerificationOutcome:
        self.calls.append((proof, policy))
        if self.error is not None:
            raise self.error
        return self.outcome


class StaticDisclosureSource:
    def __init__(self, policy: Optional[DisclosurePolicy] = None) -> None:
        self.policy = policy or DisclosurePolicy()
        self.fetched: list[Optional[str]] = []

    async def fetch(self, vendor_url: Optional[str]) -> DisclosurePolicy:
        self.fetched.append(vendor_url)
        return self.policy
