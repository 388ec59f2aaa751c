"""Explicit capability flag for the durable store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..errors import StoreUnavailable


@dataclass(frozen=True)
class StoreAvailability:
    """Whether uniqueness and state checks are backed by the durable store.

    Decided once at startup. Services receive it explicitly and branch on it
    at every call site that would otherwise rely on the store.
    """

    available: bool
    detail: Optional[str] = None

    @classmethod
    def up(cls) -> "StoreAvailability":
        return cls(available=True)

    @classmethod
    def down(cls, detail: str) -> "StoreAvailability":
        return cls(available=False, detail=detail)

    def require(self, operation: str) -> None:
        """Raise StoreUnavailable for operations that must not run unpersisted."""
        if not self.available:
            raise StoreUnavailable(
                f"{operation} requires the durable store ({self.detail or 'unavailable'})"
            )
