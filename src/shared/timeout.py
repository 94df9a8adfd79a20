"""Bounded store calls.

Every ledger, policy-store and adaptation-log call is wrapped here so a
hung store surfaces as StoreTimeoutError instead of stalling the caller.
Streaming ledger reads are drained under a single deadline.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from src.shared.errors import StoreTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable

T = TypeVar("T")

_DEFAULT_TIMEOUT = 2.0


async def call_with_timeout(  # noqa: UP047
    awaitable: Awaitable[T],
    *,
    store_name: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT,
) -> T:
    """Await a store call, raising StoreTimeoutError past timeout_seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError:
        raise StoreTimeoutError(store_name, int(timeout_seconds * 1000)) from None


async def _drain(items: AsyncIterator[T]) -> list[T]:  # noqa: UP047
    return [item async for item in items]


async def collect_with_timeout(  # noqa: UP047
    items: AsyncIterator[T],
    *,
    store_name: str,
    timeout_seconds: float = _DEFAULT_TIMEOUT,
) -> list[T]:
    """Drain an async iterator, raising StoreTimeoutError if the whole read overruns."""
    return await call_with_timeout(_drain(items), store_name=store_name, timeout_seconds=timeout_seconds)
