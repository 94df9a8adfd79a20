"""Unified error hierarchy for the LLM governance engine.

All domain errors inherit from GovernanceError. Each layer may define
sublayer-specific errors, but cross-layer errors must use these base types.

Handling rules:
- PolicyNotFoundError: admission treats the org as running on system defaults.
- StoreUnavailableError / StoreTimeoutError: admission fails open,
  adaptation logs and skips the org.
- InvalidInputError: rejected at the call boundary, never absorbed.
"""

from __future__ import annotations


class GovernanceError(Exception):
    """Base error for all governance engine exceptions."""

    def __init__(self, message: str, code: str = "GOVERNANCE_ERROR") -> None:
        self.code = code
        super().__init__(message)


# -- Store errors (raised by Port implementations) --


class StoreUnavailableError(GovernanceError):
    """A backing store (ledger, policy store, adaptation log) failed."""

    def __init__(self, store_name: str, message: str = "") -> None:
        self.store_name = store_name
        super().__init__(
            message or f"Store {store_name} is unavailable",
            code="STORE_UNAVAILABLE",
        )


class StoreTimeoutError(StoreUnavailableError):
    """A store operation exceeded its time bound."""

    def __init__(self, store_name: str, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            store_name,
            f"Store {store_name} timed out after {timeout_ms}ms",
        )
        self.code = "STORE_TIMEOUT"


# -- Auth / Org errors --


class AuthenticationError(GovernanceError):
    """Authentication failed (invalid token, expired, etc.)."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, code="AUTH_FAILED")


class AuthorizationError(GovernanceError):
    """Authorization denied (insufficient role, cross-org access)."""

    def __init__(self, required_permission: str = "") -> None:
        msg = (
            f"Permission denied: {required_permission}"
            if required_permission
            else "Permission denied"
        )
        self.required_permission = required_permission
        super().__init__(msg, code="AUTH_DENIED")


# -- Domain errors --


class PolicyNotFoundError(GovernanceError):
    """No policy row exists for the organization."""

    def __init__(self, org_id: object) -> None:
        self.org_id = org_id
        super().__init__(f"Policy not found: {org_id}", code="POLICY_NOT_FOUND")


class InvalidInputError(GovernanceError):
    """Input validation failed (negative cost, NaN latency, unknown provider)."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message, code="INVALID_INPUT")


__all__ = [
    "AuthenticationError",
    "AuthorizationError",
    "GovernanceError",
    "InvalidInputError",
    "PolicyNotFoundError",
    "StoreTimeoutError",
    "StoreUnavailableError",
]
