"""Shared domain utilities.

This package is domain-accessible and should not depend on application code.
"""

from .chain_client_protocol import ChainClientProtocol
from .proof_verifier_protocol import DisclosurePolicySource, ProofVerifierProtocol
from .store_availability import StoreAvailability

__all__ = [
    "ChainClientProtocol",
    "DisclosurePolicySource",
    "ProofVerifierProtocol",
    "StoreAvailability",
]
