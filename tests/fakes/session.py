"""Fake SQLAlchemy async session and session factory for Pg* store tests.

Covers the calls the governance stores make:
- session.add() (sync) / commit() (async)
- session.execute() -> FakeResult with scalar_one / scalar_one_or_none
- session.scalars() -> FakeScalarsResult with all()
- async context manager protocol (__aenter__ / __aexit__)
- session_factory() callable returning the session

``fail_with`` makes every session call raise, for store-outage tests.

Usage:
    session = FakeAsyncSession()
    session.set_scalars_result([row1, row2])
    store = PgUsageLedger(session_factory=FakeSessionFactory(session))
"""

from __future__ import annotations

from typing import Any

_UNSET = object()


class FakeResult:
    """Fake result from session.execute()."""

    def __init__(self, *, scalar_value: Any = None, scalar_one_or_none_value: Any = _UNSET) -> None:
        self._scalar_value = scalar_value
        self._scalar_one_or_none_value = scalar_one_or_none_value

    def scalar_one(self) -> Any:
        return self._scalar_value

    def scalar_one_or_none(self) -> Any:
        if self._scalar_one_or_none_value is _UNSET:
            return None
        return self._scalar_one_or_none_value


class FakeScalarsResult:
    """Fake result from session.scalars()."""

    def __init__(self, rows: list[Any] | None = None) -> None:
        self._rows = rows or []

    def all(self) -> list[Any]:
        return list(self._rows)


class FakeAsyncSession:
    """Records add/commit/execute/scalars calls and returns preset results."""

    def __init__(self, *, fail_with: BaseException | None = None) -> None:
        self.added: list[Any] = []
        self.commit_count = 0
        self.statements: list[Any] = []
        self.fail_with = fail_with

        self._execute_result: FakeResult | None = None
        self._scalars_result: FakeScalarsResult | None = None

    @property
    def committed(self) -> bool:
        return self.commit_count > 0

    # -- Configuration (call before exercising the store) --

    def set_execute_result(self, *, scalar_value: Any = None, scalar_one_or_none_value: Any = _UNSET) -> None:
        self._execute_result = FakeResult(
            scalar_value=scalar_value,
            scalar_one_or_none_value=scalar_one_or_none_value,
        )

    def set_scalars_result(self, rows: list[Any]) -> None:
        self._scalars_result = FakeScalarsResult(rows)

    # -- SQLAlchemy AsyncSession interface --

    def add(self, obj: Any) -> None:
        self._maybe_fail()
        self.added.append(obj)

    async def commit(self) -> None:
        self._maybe_fail()
        self.commit_count += 1

    async def execute(self, statement: Any) -> FakeResult:
        self._maybe_fail()
        self.statements.append(statement)
        return self._execute_result or FakeResult()

    async def scalars(self, statement: Any) -> FakeScalarsResult:
        self._maybe_fail()
        self.statements.append(statement)
        return self._scalars_result or FakeScalarsResult()

    async def __aenter__(self) -> FakeAsyncSession:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with


class FakeSessionFactory:
    """Fake async_sessionmaker that always hands out the same session."""

    def __init__(self, session: FakeAsyncSession) -> None:
        self.session = session
        self.opened = 0

    def __call__(self) -> FakeAsyncSession:
        self.opened += 1
        return self.session


class FakeOrmRow:
    """Attribute bag standing in for an ORM row.

    Usage:
        row = FakeOrmRow(org_id=uuid4(), provider="openai")
    """

    def __init__(self, **kwargs: Any) -> None:
        for k, v in kwargs.items():
            setattr(self, k, v)
