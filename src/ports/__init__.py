"""Port interfaces - Layer boundary contracts.

Ports:
    UsageLedgerPort   - Append-only usage ledger (admission hard dep)
    PolicyStorePort   - Per-org admission policy
    AdaptationLogPort - Adaptation run audit trail
"""

from src.ports.adaptation_log_port import AdaptationLogPort
from src.ports.policy_store_port import PolicyStorePort
from src.ports.usage_ledger_port import UsageLedgerPort

__all__ = [
    "AdaptationLogPort",
    "PolicyStorePort",
    "UsageLedgerPort",
]
