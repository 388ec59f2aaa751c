"""Protocol interfaces for the external identity collaborators."""

from __future__ import annotations

from typing import Optional, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from ..identity.entities import (
        DisclosurePolicy,
        IdentityProof,
        ProofVerificationOutcome,
    )


class ProofVerifierProtocol(Protocol):
    """Verifies a zero-knowledge identity proof for one scope.

    The call is remote, possibly slow and possibly failing. Implementations
    raise on transport failure rather than reporting an invalid proof.
    """

    scope: str

    async def verify(
        self, proof: "IdentityProof", policy: "DisclosurePolicy"
    ) -> "ProofVerificationOutcome":
        ...


class DisclosurePolicySource(Protocol):
    """Fetches a vendor's disclosure requirements."""

    async def fetch(self, vendor_url: Optional[str]) -> "DisclosurePolicy":
        """Return the vendor's policy, or the default policy on any failure."""
        ...
