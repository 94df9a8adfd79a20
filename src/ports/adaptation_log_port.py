"""AdaptationLogPort - Audit trail of adaptation runs.

One AdaptationResult per run per organization. Consumed by operators
and alerting, never by the admission path.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

    from src.shared.types import AdaptationResult


class AdaptationLogPort(ABC):
    """Port: adaptation result write and history read."""

    @abstractmethod
    async def write(self, result: AdaptationResult) -> None:
        """Persist an adaptation result. Results are immutable once written."""

    @abstractmethod
    async def list_recent(self, org_id: UUID, limit: int = 20) -> list[AdaptationResult]:
        """Most recent results for the org, newest first."""
