"""PolicyStorePort - Per-organization admission policy persistence.

Read on every admission check; written by the adaptation loop and by
administrative updates. Writes replace the whole Policy (last writer wins).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

    from src.shared.types import Policy


class PolicyStorePort(ABC):
    """Port: policy read/write."""

    @abstractmethod
    async def get(self, org_id: UUID) -> Policy:
        """Load the org's policy.

        Raises:
            PolicyNotFoundError: No policy stored for the org.
            StoreUnavailableError: The read failed.
        """

    @abstractmethod
    async def save(self, policy: Policy) -> None:
        """Insert or replace the org's policy.

        Raises:
            StoreUnavailableError: The write failed.
        """

    @abstractmethod
    async def list_org_ids(self) -> list[UUID]:
        """All organizations that have a stored policy."""
