"""Live per-(provider, model) telemetry with EWMA smoothing.

Every completed LLM call feeds one sample:

    ewma_latency'    = alpha * latency_ms        + (1 - alpha) * ewma_latency
    ewma_error_rate' = alpha * (0 if ok else 1)  + (1 - alpha) * ewma_error_rate

The first sample for a pair seeds both averages directly. State lives for
the process lifetime and is never persisted; alpha starts at the tracker
default and is changed only by the adaptation loop via set_alpha().

Updates are O(1) and atomic per key: each (provider, model) entry has its
own lock, so samples for different pairs never contend.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.shared.errors import InvalidInputError
from src.shared.types import ProviderModelKey, TelemetrySnapshot, TelemetryState, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

_DEFAULT_ALPHA = 0.3


@dataclass
class _Entry:
    """Mutable per-key state. Only touched while holding ``lock``."""

    alpha: float
    last_updated: datetime
    ewma_latency_ms: float = 0.0
    ewma_error_rate: float = 0.0
    request_count: int = 0
    tuned_at_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def freeze(self, key: ProviderModelKey) -> TelemetryState:
        return TelemetryState(
            provider=key[0],
            model=key[1],
            ewma_latency_ms=self.ewma_latency_ms,
            ewma_error_rate=self.ewma_error_rate,
            alpha=self.alpha,
            request_count=self.request_count,
            last_updated=self.last_updated,
            tuned_at_count=self.tuned_at_count,
        )


def _validate_alpha(alpha: float) -> None:
    if isinstance(alpha, bool) or not isinstance(alpha, int | float) or not 0 < alpha <= 1:
        raise InvalidInputError(f"alpha must be in (0, 1], got {alpha!r}", field="alpha")


class TelemetryTracker:
    """Keyed store of EWMA telemetry, injected wherever it is consumed.

    Args:
        default_alpha: Smoothing factor assigned to newly observed pairs.
        known_providers: Provider catalog. When non-empty, samples for
            other providers are rejected with InvalidInputError.
        clock: Source of "now"; injectable for tests.
    """

    def __init__(
        self,
        *,
        default_alpha: float = _DEFAULT_ALPHA,
        known_providers: frozenset[str] = frozenset(),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        _validate_alpha(default_alpha)
        self._default_alpha = default_alpha
        self._known_providers = known_providers
        self._clock = clock
        self._entries: dict[ProviderModelKey, _Entry] = {}
        # Guards creation of entries only; per-key updates use the entry lock.
        self._registry_lock = threading.Lock()

    @property
    def default_alpha(self) -> float:
        return self._default_alpha

    def record_sample(
        self,
        provider: str,
        model: str,
        latency_ms: float,
        success: bool,
    ) -> TelemetryState:
        """Fold one call outcome into the pair's EWMAs and return the new state."""
        self._validate_sample(provider, model, latency_ms)
        key = (provider, model)
        entry = self._entry_for(key)
        error = 0.0 if success else 1.0

        with entry.lock:
            if entry.request_count == 0:
                entry.ewma_latency_ms = float(latency_ms)
                entry.ewma_error_rate = error
            else:
                a = entry.alpha
                entry.ewma_latency_ms = a * latency_ms + (1 - a) * entry.ewma_latency_ms
                entry.ewma_error_rate = a * error + (1 - a) * entry.ewma_error_rate
            entry.request_count += 1
            entry.last_updated = self._clock()
            state = entry.freeze(key)

        logger.debug(
            "Telemetry sample: %s/%s latency=%.1fms success=%s ewma_latency=%.1f ewma_error=%.3f",
            provider,
            model,
            latency_ms,
            success,
            state.ewma_latency_ms,
            state.ewma_error_rate,
        )
        return state

    def get_state(self, provider: str, model: str) -> TelemetryState | None:
        entry = self._entries.get((provider, model))
        if entry is None:
            return None
        with entry.lock:
            return entry.freeze((provider, model))

    def get_all_recent(
        self,
        max_age: timedelta | None = None,
    ) -> dict[ProviderModelKey, TelemetryState]:
        """Snapshot every live pair, optionally only those updated within max_age."""
        cutoff = self._clock() - max_age if max_age is not None else None
        states: dict[ProviderModelKey, TelemetryState] = {}
        for key, entry in list(self._entries.items()):
            with entry.lock:
                state = entry.freeze(key)
            if cutoff is None or state.last_updated >= cutoff:
                states[key] = state
        return states

    def get_provider_states(self, provider: str) -> list[TelemetryState]:
        return [s for (p, _), s in self.get_all_recent().items() if p == provider]

    def get_alpha(self, provider: str, model: str) -> float:
        """Current alpha for the pair, or the tracker default if unseen."""
        state = self.get_state(provider, model)
        return state.alpha if state is not None else self._default_alpha

    def set_alpha(
        self,
        provider: str,
        model: str,
        alpha: float,
        *,
        tuned_at_count: int | None = None,
        expected_tuned_at: int | None = None,
    ) -> bool:
        """Replace the pair's smoothing factor. Reserved for the adaptation loop.

        With ``expected_tuned_at`` the write only happens if nobody re-tuned
        the pair since it was read; returns False when that check fails.

        Raises:
            InvalidInputError: alpha outside (0, 1].
            KeyError: The pair has never been observed.
        """
        _validate_alpha(alpha)
        entry = self._entries.get((provider, model))
        if entry is None:
            msg = f"No telemetry for {provider}/{model}"
            raise KeyError(msg)
        with entry.lock:
            if expected_tuned_at is not None and entry.tuned_at_count != expected_tuned_at:
                return False
            old = entry.alpha
            entry.alpha = alpha
            if tuned_at_count is not None:
                entry.tuned_at_count = tuned_at_count
        logger.info("Alpha for %s/%s changed %.3f -> %.3f", provider, model, old, alpha)
        return True

    def mark_tuned(self, provider: str, model: str, request_count: int) -> None:
        """Record that alpha was evaluated at request_count without changing it."""
        entry = self._entries.get((provider, model))
        if entry is None:
            return
        with entry.lock:
            entry.tuned_at_count = request_count

    # -- Derived views --

    def should_circuit_break(
        self,
        provider: str,
        model: str,
        *,
        threshold: float = 0.5,
        min_requests: int = 5,
    ) -> bool:
        state = self.get_state(provider, model)
        if state is None or state.request_count < min_requests:
            return False
        return state.ewma_error_rate > threshold

    def circuit_broken(
        self,
        *,
        threshold: float = 0.5,
        min_requests: int = 5,
    ) -> list[TelemetryState]:
        """Pairs whose smoothed error rate exceeds threshold with enough samples."""
        return sorted(
            (
                s
                for s in self.get_all_recent().values()
                if s.request_count >= min_requests and s.ewma_error_rate > threshold
            ),
            key=lambda s: s.ewma_error_rate,
            reverse=True,
        )

    def snapshot(self) -> TelemetrySnapshot:
        states = sorted(self.get_all_recent().values(), key=lambda s: s.ewma_latency_ms)
        count = len(states)
        return TelemetrySnapshot(
            states=states,
            average_latency_ms=sum(s.ewma_latency_ms for s in states) / count if count else 0.0,
            average_error_rate=sum(s.ewma_error_rate for s in states) / count if count else 0.0,
            taken_at=self._clock(),
        )

    def clear(self) -> None:
        with self._registry_lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # -- Internal --

    def _entry_for(self, key: ProviderModelKey) -> _Entry:
        entry = self._entries.get(key)
        if entry is not None:
            return entry
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry(alpha=self._default_alpha, last_updated=self._clock())
                self._entries[key] = entry
                logger.info("Telemetry tracking started for %s/%s", key[0], key[1])
            return entry

    def _validate_sample(self, provider: str, model: str, latency_ms: float) -> None:
        if not isinstance(provider, str) or not provider:
            raise InvalidInputError("provider must be a non-empty string", field="provider")
        if not isinstance(model, str) or not model:
            raise InvalidInputError("model must be a non-empty string", field="model")
        if self._known_providers and provider not in self._known_providers:
            raise InvalidInputError(f"Unknown provider: {provider}", field="provider")
        if (
            isinstance(latency_ms, bool)
            or not isinstance(latency_ms, int | float)
            or math.isnan(latency_ms)
            or math.isinf(latency_ms)
            or latency_ms < 0
        ):
            raise InvalidInputError(
                f"latency_ms must be a finite non-negative number, got {latency_ms!r}",
                field="latency_ms",
            )
