"""Tests for policy store adapters."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from src.infra.billing import InMemoryPolicyStore, PgPolicyStore
from src.shared.errors import InvalidInputError, PolicyNotFoundError, StoreUnavailableError
from src.shared.types import TaskOverride
from tests.fakes import FakeAsyncSession, FakeOrmRow, FakeSessionFactory

if TYPE_CHECKING:
    from uuid import UUID

    from src.shared.types import Policy


@pytest.mark.unit
class TestInMemoryPolicyStore:
    @pytest.mark.asyncio
    async def test_missing_policy_raises(self, policy_store: InMemoryPolicyStore, sample_org_id: UUID) -> None:
        with pytest.raises(PolicyNotFoundError) as exc_info:
            await policy_store.get(sample_org_id)
        assert exc_info.value.org_id == sample_org_id

    @pytest.mark.asyncio
    async def test_save_replaces_wholesale(self, policy_store: InMemoryPolicyStore, sample_policy: Policy) -> None:
        await policy_store.save(sample_policy)
        narrowed = sample_policy.with_providers(frozenset({"openai"}))
        await policy_store.save(narrowed)

        stored = await policy_store.get(sample_policy.org_id)
        assert stored.allowed_providers == frozenset({"openai"})
        assert await policy_store.list_org_ids() == [sample_policy.org_id]

    @pytest.mark.asyncio
    async def test_seeded_policies(self, sample_policy: Policy) -> None:
        store = InMemoryPolicyStore([sample_policy])
        assert await store.get(sample_policy.org_id) == sample_policy


@pytest.mark.unit
class TestPgPolicyStore:
    def _row(self, org_id: UUID, **overrides: object) -> FakeOrmRow:
        values: dict[str, object] = {
            "org_id": org_id,
            "max_request_cost": Decimal("0.50"),
            "max_daily_cost": Decimal("10.00"),
            "allowed_providers": ["anthropic", "openai"],
            "min_alpha": 0.1,
            "max_alpha": 0.5,
            "task_overrides": {},
            "updated_at": datetime(2026, 3, 10, tzinfo=UTC),
        }
        values.update(overrides)
        return FakeOrmRow(**values)

    @pytest.mark.asyncio
    async def test_get_maps_row(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=self._row(sample_org_id))
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))

        policy = await store.get(sample_org_id)
        assert policy.allowed_providers == frozenset({"openai", "anthropic"})
        assert policy.max_daily_cost == Decimal("10.00")
        assert policy.task_overrides == {}

    @pytest.mark.asyncio
    async def test_get_maps_task_overrides(self, sample_org_id: UUID) -> None:
        overrides = {"summarize": {"min_performance": 0.7, "preferred_models": ["gpt-4o-mini"]}}
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=self._row(sample_org_id, task_overrides=overrides))
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))

        policy = await store.get(sample_org_id)
        assert policy.get_task_override("summarize") == TaskOverride(0.7, ("gpt-4o-mini",))
        assert policy.get_task_override("chat") is None

    @pytest.mark.asyncio
    async def test_null_task_overrides_read_as_empty(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=self._row(sample_org_id, task_overrides=None))
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        assert (await store.get(sample_org_id)).task_overrides == {}

    @pytest.mark.asyncio
    async def test_corrupt_task_override_rejected(self, sample_org_id: UUID) -> None:
        row = self._row(sample_org_id, task_overrides={"summarize": {"min_performance": 1.5}})
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=row)
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        with pytest.raises(InvalidInputError):
            await store.get(sample_org_id)

    @pytest.mark.asyncio
    async def test_get_missing(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=None)
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        with pytest.raises(PolicyNotFoundError):
            await store.get(sample_org_id)

    @pytest.mark.asyncio
    async def test_corrupt_row_rejected(self, sample_org_id: UUID) -> None:
        session = FakeAsyncSession()
        session.set_execute_result(scalar_one_or_none_value=self._row(sample_org_id, max_daily_cost=Decimal("0")))
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        with pytest.raises(InvalidInputError):
            await store.get(sample_org_id)

    @pytest.mark.asyncio
    async def test_save_upserts_and_commits(self, sample_policy: Policy) -> None:
        session = FakeAsyncSession()
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        await store.save(sample_policy)
        assert session.committed
        assert len(session.statements) == 1

    @pytest.mark.asyncio
    async def test_list_org_ids(self) -> None:
        ids = [uuid4(), uuid4()]
        session = FakeAsyncSession()
        session.set_scalars_result(ids)
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        assert await store.list_org_ids() == ids

    @pytest.mark.asyncio
    async def test_failures_wrapped(self, sample_policy: Policy) -> None:
        session = FakeAsyncSession(fail_with=OperationalError("SELECT 1", {}, Exception("down")))
        store = PgPolicyStore(session_factory=FakeSessionFactory(session))
        with pytest.raises(StoreUnavailableError):
            await store.get(sample_policy.org_id)
        with pytest.raises(StoreUnavailableError):
            await store.save(sample_policy)
        with pytest.raises(StoreUnavailableError):
            await store.list_org_ids()
