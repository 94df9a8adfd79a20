"""Root conftest - shared fixtures for all test layers.

Markers:
    @pytest.mark.unit        - No external deps
    @pytest.mark.integration - Needs running services
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from prometheus_client import CollectorRegistry

from src.brain.metrics.governance import GovernanceMetrics
from src.infra.billing import InMemoryAdaptationLog, InMemoryPolicyStore, InMemoryUsageLedger
from src.shared.config import GovernanceSettings
from src.shared.types import Policy
from src.tool.llm.telemetry import TelemetryTracker
from tests.fakes import FakeClock


@pytest.fixture
def sample_user_id() -> UUID:
    return uuid4()


@pytest.fixture
def sample_org_id() -> UUID:
    return uuid4()


@pytest.fixture
def settings() -> GovernanceSettings:
    """System defaults: $10/day, $0.03/request, openai + anthropic."""
    return GovernanceSettings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> InMemoryUsageLedger:
    return InMemoryUsageLedger()


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore()


@pytest.fixture
def adaptation_log() -> InMemoryAdaptationLog:
    return InMemoryAdaptationLog()


@pytest.fixture
def telemetry(clock: FakeClock) -> TelemetryTracker:
    return TelemetryTracker(default_alpha=0.3, clock=clock)


@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> GovernanceMetrics:
    return GovernanceMetrics(registry=registry)


@pytest.fixture
def sample_policy(sample_org_id: UUID) -> Policy:
    return Policy(
        org_id=sample_org_id,
        max_request_cost=Decimal("0.50"),
        max_daily_cost=Decimal("10.00"),
        allowed_providers=frozenset({"openai", "anthropic"}),
    )
