"""Test fixtures for in-memory implementations."""

from .fake_chain_client import FakeChainClient
from .identity_stubs import StaticDisclosureSource, StubProofVerifier, passing_outcome
from .in_memory_repositories import (
    InMemoryAuthorizationRepository,
    InMemoryNullifierRepository,
    register_facilitator_scripts,
)
from .in_memory_storage import InMemoryKeyValueStore

__all__ = [
    "FakeChainClient",
    "InMemoryAuthorizationRepository",
    "InMemoryKeyValueStore",
    "InMemoryNullifierRepository",
    "StaticDisclosureSource",
    "StubProofVerifier",
    "passing_outcome",
    "register_facilitator_scripts",
]
