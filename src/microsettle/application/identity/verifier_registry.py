"""Per-scope proof verifiers, fixed at startup."""

from __future__ import annotations

from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from ...domain.errors import UnknownScope
from ...domain.identity.entities import MAX_SCOPE_LENGTH
from ...domain.shared import ProofVerifierProtocol


class ScopedVerifierRegistry:
    """Immutable scope -> verifier mapping. Safe to share across requests."""

    def __init__(self, verifiers: Mapping[str, ProofVerifierProtocol]):
        for scope in verifiers:
            if not scope or len(scope) > MAX_SCOPE_LENGTH or ":" in scope:
                raise ValueError(
                    f"Scope is required, must be max {MAX_SCOPE_LENGTH} characters "
                    f"and cannot contain ':': {scope!r}"
                )
        self._verifiers: Mapping[str, ProofVerifierProtocol] = MappingProxyType(
            dict(verifiers)
        )

    @classmethod
    def build(
        cls,
        scopes: Iterable[str],
        factory: Callable[[str], ProofVerifierProtocol],
    ) -> "ScopedVerifierRegistry":
        return cls({scope: factory(scope) for scope in scopes})

    def get(self, scope: str) -> ProofVerifierProtocol:
        verifier = self._verifiers.get(scope)
        if verifier is None:
            raise UnknownScope(f"Unknown identity scope: {scope}")
        return verifier

    def scopes(self) -> list[str]:
        return sorted(self._verifiers)
