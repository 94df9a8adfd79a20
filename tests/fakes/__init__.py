"""Shared Fake adapters for testing without unittest.mock.

All Fake implementations follow the Port DI adapter pattern:
real Python classes with preset return values, no AsyncMock/MagicMock.
"""

from tests.fakes.session import (
    FakeAsyncSession,
    FakeOrmRow,
    FakeResult,
    FakeScalarsResult,
    FakeSessionFactory,
)
from tests.fakes.stores import (
    CountingPolicyStore,
    FailingAdaptationLog,
    FailingPolicyStore,
    FailingUsageLedger,
    FakeClock,
    HangingQueryLedger,
    SlowUsageLedger,
)

__all__ = [
    "CountingPolicyStore",
    "FailingAdaptationLog",
    "FailingPolicyStore",
    "FailingUsageLedger",
    "FakeAsyncSession",
    "FakeClock",
    "FakeOrmRow",
    "FakeResult",
    "FakeScalarsResult",
    "FakeSessionFactory",
    "HangingQueryLedger",
    "SlowUsageLedger",
]
