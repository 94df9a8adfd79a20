"""In-process nightly trigger for the adaptation loop.

Runs inside the API process because alpha tuning and provider checks read
the live TelemetryTracker, which is process-local.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING

from src.shared.logging.error_handler import log_structured_error
from src.shared.timeout import call_with_timeout
from src.shared.types import utc_now

if TYPE_CHECKING:
    from collections.abc import Callable

    from src.brain.adaptation.policy_loop import PolicyAdaptationLoop
    from src.ports.policy_store_port import PolicyStorePort
    from src.shared.types import AdaptationResult

logger = logging.getLogger(__name__)


def seconds_until(now: datetime, hour_utc: int) -> float:
    """Seconds from now until the next hour_utc:00 UTC (tomorrow if already past)."""
    target = datetime.combine(now.date(), time(hour=hour_utc), tzinfo=now.tzinfo)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class NightlyAdaptationScheduler:
    """Background task that adapts every org once a day.

    Args:
        loop: The adaptation loop to drive.
        policy_store: Source of the org list.
        hour_utc: Hour of day (UTC) at which the run starts.
        enabled: When False, start() is a no-op.
        store_timeout_s: Bound on listing org ids.
        clock: Source of "now".
    """

    def __init__(
        self,
        *,
        loop: PolicyAdaptationLoop,
        policy_store: PolicyStorePort,
        hour_utc: int = 3,
        enabled: bool = False,
        store_timeout_s: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._loop = loop
        self._policy_store = policy_store
        self._hour_utc = hour_utc
        self._enabled = enabled
        self._store_timeout_s = store_timeout_s
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self._enabled:
            logger.info("Policy adaptation scheduler disabled")
            return
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_forever(), name="nightly-policy-adaptation")
        logger.info("Policy adaptation scheduler started (hour=%02d:00 UTC)", self._hour_utc)

    async def stop(self) -> None:
        """Ask the task to stop and wait for it.

        An in-flight run finishes the org it is on; remaining orgs are skipped.
        """
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Policy adaptation scheduler stopped")

    async def run_once(self) -> list[AdaptationResult]:
        """Adapt every org with a stored policy, now."""
        org_ids = await call_with_timeout(
            self._policy_store.list_org_ids(),
            store_name="policy_store",
            timeout_seconds=self._store_timeout_s,
        )
        logger.info("Nightly adaptation starting for %d orgs", len(org_ids))
        return await self._loop.run_nightly(org_ids, should_stop=self._stop_event.is_set)

    async def _run_forever(self) -> None:
        while not self._stop_event.is_set():
            delay = seconds_until(self._clock(), self._hour_utc)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            if self._stop_event.is_set():
                return
            try:
                await self.run_once()
            except Exception as exc:
                log_structured_error(logger, exc, component="adaptation_scheduler", outcome="retry_tomorrow")
