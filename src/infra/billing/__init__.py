"""Governance persistence: usage ledger, policy store, adaptation log."""

from .adaptation_log import InMemoryAdaptationLog, PgAdaptationLog
from .ledger import InMemoryUsageLedger, PgUsageLedger
from .policy_store import InMemoryPolicyStore, PgPolicyStore

__all__ = [
    "InMemoryAdaptationLog",
    "InMemoryPolicyStore",
    "InMemoryUsageLedger",
    "PgAdaptationLog",
    "PgPolicyStore",
    "PgUsageLedger",
]
