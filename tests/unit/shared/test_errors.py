"""Tests for the governance error hierarchy."""

from __future__ import annotations

from uuid import uuid4

import pytest

from src.shared.errors import (
    AuthenticationError,
    AuthorizationError,
    GovernanceError,
    InvalidInputError,
    PolicyNotFoundError,
    StoreTimeoutError,
    StoreUnavailableError,
)


@pytest.mark.unit
class TestGovernanceError:
    def test_default_code(self) -> None:
        error = GovernanceError("boom")
        assert str(error) == "boom"
        assert error.code == "GOVERNANCE_ERROR"
        assert isinstance(error, Exception)

    def test_custom_code(self) -> None:
        assert GovernanceError("x", code="CUSTOM").code == "CUSTOM"


@pytest.mark.unit
class TestStoreErrors:
    def test_unavailable_default_message(self) -> None:
        error = StoreUnavailableError("usage_ledger")
        assert str(error) == "Store usage_ledger is unavailable"
        assert error.code == "STORE_UNAVAILABLE"
        assert error.store_name == "usage_ledger"

    def test_unavailable_custom_message(self) -> None:
        error = StoreUnavailableError("policy_store", "connection refused")
        assert str(error) == "connection refused"

    def test_timeout_is_unavailable(self) -> None:
        error = StoreTimeoutError("usage_ledger", 2000)
        assert isinstance(error, StoreUnavailableError)
        assert error.code == "STORE_TIMEOUT"
        assert error.timeout_ms == 2000
        assert str(error) == "Store usage_ledger timed out after 2000ms"


@pytest.mark.unit
class TestDomainErrors:
    def test_policy_not_found(self) -> None:
        org_id = uuid4()
        error = PolicyNotFoundError(org_id)
        assert error.code == "POLICY_NOT_FOUND"
        assert error.org_id == org_id
        assert str(org_id) in str(error)

    def test_invalid_input_carries_field(self) -> None:
        error = InvalidInputError("estimated_cost must be >= 0", field="estimated_cost")
        assert error.code == "INVALID_INPUT"
        assert error.field == "estimated_cost"

    def test_auth_errors(self) -> None:
        assert AuthenticationError().code == "AUTH_FAILED"
        denied = AuthorizationError("policy:admin")
        assert denied.code == "AUTH_DENIED"
        assert str(denied) == "Permission denied: policy:admin"
        assert str(AuthorizationError()) == "Permission denied"
