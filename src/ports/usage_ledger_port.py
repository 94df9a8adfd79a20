"""UsageLedgerPort - Append-only record of LLM call attempts.

Hard dependency of the admission path: sum_cost is the sole spend input
to every budget check. Reads are read-committed: records committed
before a query began are always visible, concurrent ones may or may not be.

Implementations: InMemoryUsageLedger (tests), PgUsageLedger (ai_usage_ledger table).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import date, datetime
    from decimal import Decimal
    from uuid import UUID

    from src.shared.types import UsageRecord


class UsageLedgerPort(ABC):
    """Port: usage ledger append and read."""

    @abstractmethod
    async def append(self, record: UsageRecord) -> None:
        """Persist one usage record.

        Raises:
            StoreUnavailableError: The write failed. Callers on the
                request path log and drop; they never re-raise.
        """

    @abstractmethod
    async def sum_cost(self, org_id: UUID, day: date) -> Decimal:
        """Total estimated cost for the org over one UTC calendar day.

        Returns Decimal("0") when the org has no records that day.
        """

    @abstractmethod
    def query(
        self,
        org_id: UUID | None,
        start: datetime,
        end: datetime,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[UsageRecord]:
        """Iterate records in [start, end), ascending by created_at.

        Args:
            org_id: Tenant scope. None reads across all orgs (health baselines).
            start: Inclusive lower bound (UTC).
            end: Exclusive upper bound (UTC).
            provider: Optional provider filter.
            model: Optional model filter.

        The iterator is finite and single-pass.
        """

    @abstractmethod
    async def count(self, org_id: UUID, start: datetime, end: datetime) -> int:
        """Number of records for the org in [start, end)."""
