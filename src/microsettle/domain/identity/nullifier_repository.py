"""Nullifier registry repository interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entities import NullifierRecord, ScopeStats


class NullifierRepository(ABC):
    """Durable (nullifier, scope) -> record store with expiry."""

    @abstractmethod
    async def exists(
        self, nullifier: str, scope: str, now: Optional[datetime] = None
    ) -> bool:
        """True only if a non-expired record exists."""
        pass

    @abstractmethod
    async def get(self, nullifier: str, scope: str) -> Optional[NullifierRecord]:
        pass

    @abstractmethod
    async def store(self, record: NullifierRecord) -> NullifierRecord:
        """
        Check and store in one atomic step.

        Raises DuplicateNullifier when a non-expired record already exists.
        An expired record for the same pair is replaced.
        """
        pass

    @abstractmethod
    async def get_by_scope(self, scope: str, limit: int = 100) -> List[NullifierRecord]:
        pass

    @abstractmethod
    async def get_scope_stats(
        self, scope: str, now: Optional[datetime] = None
    ) -> ScopeStats:
        pass

    @abstractmethod
    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete records past expiry. Returns how many were removed."""
        pass
