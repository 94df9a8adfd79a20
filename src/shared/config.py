"""Governance engine settings.

Settings are resolved in three layers, later layers winning:
1. Dataclass defaults
2. YAML file named by GOVERNANCE_CONFIG (optional)
3. Environment variables (LLM_MAX_DAILY_COST, LLM_TELEMETRY_EWMA_ALPHA, ...)

Unknown YAML keys are rejected so a typo never silently falls back to a default.

Example YAML:

    max_daily_cost: 25.00
    allowed_providers: [openai, anthropic]
    alpha_tuning:
      target_variance: 0.08
    disablement:
      error_threshold: 0.4
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from src.shared.types import Policy

if TYPE_CHECKING:
    from uuid import UUID

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class AlphaTuningConfig:
    """Bounds and step for nightly EWMA smoothing-factor tuning."""

    min_alpha: float = 0.1
    max_alpha: float = 0.5
    target_variance: float = 0.1
    adjustment_step: float = 0.05
    min_samples: int = 10

    def __post_init__(self) -> None:
        if not 0 < self.min_alpha <= self.max_alpha <= 1:
            msg = f"alpha bounds must satisfy 0 < min <= max <= 1, got [{self.min_alpha}, {self.max_alpha}]"
            raise ValueError(msg)
        if self.adjustment_step <= 0:
            msg = "adjustment_step must be > 0"
            raise ValueError(msg)
        if self.target_variance <= 0:
            msg = "target_variance must be > 0"
            raise ValueError(msg)
        if self.min_samples < 1:
            msg = "min_samples must be >= 1"
            raise ValueError(msg)


@dataclass(frozen=True)
class DisablementConfig:
    """Hysteresis thresholds for automatic provider disable/re-enable.

    recovery_threshold must sit strictly below error_threshold, otherwise a
    provider could be disabled and re-enabled at the same error rate.
    """

    error_threshold: float = 0.5
    min_requests_before_disable: int = 10
    recovery_threshold: float = 0.2
    min_requests_before_enable: int = 5

    def __post_init__(self) -> None:
        if not 0 <= self.recovery_threshold < self.error_threshold <= 1:
            msg = (
                "thresholds must satisfy 0 <= recovery < error <= 1, "
                f"got recovery={self.recovery_threshold} error={self.error_threshold}"
            )
            raise ValueError(msg)
        if self.min_requests_before_disable < 1 or self.min_requests_before_enable < 1:
            msg = "minimum request counts must be >= 1"
            raise ValueError(msg)


@dataclass(frozen=True)
class GovernanceSettings:
    """System-wide defaults and tuning knobs."""

    max_daily_cost: Decimal = Decimal("10.00")
    max_request_cost: Decimal = Decimal("0.03")
    allowed_providers: frozenset[str] = frozenset({"openai", "anthropic"})
    # Provider catalog. Empty means any provider name is accepted.
    known_providers: frozenset[str] = frozenset()
    default_alpha: float = 0.3
    telemetry_max_age_s: float | None = None
    store_timeout_s: float = 2.0
    baseline_days: int = 7
    baseline_min_samples: int = 5
    health_deviation_threshold: float = 0.2
    circuit_break_threshold: float = 0.5
    circuit_break_min_requests: int = 5
    adaptation_enabled: bool = False
    adaptation_hour_utc: int = 3
    adaptation_concurrency: int = 4
    alpha_tuning: AlphaTuningConfig = field(default_factory=AlphaTuningConfig)
    disablement: DisablementConfig = field(default_factory=DisablementConfig)

    def __post_init__(self) -> None:
        if self.max_daily_cost <= 0 or self.max_request_cost <= 0:
            msg = "cost caps must be > 0"
            raise ValueError(msg)
        if not 0 < self.default_alpha <= 1:
            msg = f"default_alpha must be in (0, 1], got {self.default_alpha}"
            raise ValueError(msg)
        tuning = self.alpha_tuning
        if not tuning.min_alpha <= self.default_alpha <= tuning.max_alpha:
            msg = (
                f"default_alpha {self.default_alpha} outside alpha_tuning bounds "
                f"[{tuning.min_alpha}, {tuning.max_alpha}]"
            )
            raise ValueError(msg)
        if self.store_timeout_s <= 0:
            msg = "store_timeout_s must be > 0"
            raise ValueError(msg)
        if not 0 <= self.adaptation_hour_utc <= 23:
            msg = "adaptation_hour_utc must be in 0..23"
            raise ValueError(msg)
        if self.adaptation_concurrency < 1:
            msg = "adaptation_concurrency must be >= 1"
            raise ValueError(msg)
        if self.known_providers and not self.allowed_providers <= self.known_providers:
            unknown = sorted(self.allowed_providers - self.known_providers)
            msg = f"allowed_providers not in known_providers: {unknown}"
            raise ValueError(msg)

    def default_policy(self, org_id: UUID) -> Policy:
        """System-default policy for an org with no stored policy."""
        return Policy(
            org_id=org_id,
            max_request_cost=self.max_request_cost,
            max_daily_cost=self.max_daily_cost,
            allowed_providers=self.allowed_providers,
            min_alpha=self.alpha_tuning.min_alpha,
            max_alpha=self.alpha_tuning.max_alpha,
        )

    @property
    def provider_catalog(self) -> frozenset[str]:
        """Providers eligible for automatic re-enablement."""
        return self.known_providers or self.allowed_providers

    # -- Construction --

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GovernanceSettings:
        """Build settings from a (YAML-shaped) mapping. Unknown keys raise ValueError."""
        known = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            msg = f"Unknown governance settings keys: {unknown}"
            raise ValueError(msg)

        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key == "alpha_tuning":
                kwargs[key] = _build_section(AlphaTuningConfig, value, key)
            elif key == "disablement":
                kwargs[key] = _build_section(DisablementConfig, value, key)
            elif key in ("max_daily_cost", "max_request_cost"):
                kwargs[key] = _parse_decimal(value, key)
            elif key in ("allowed_providers", "known_providers"):
                kwargs[key] = _parse_providers(value)
            else:
                kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> GovernanceSettings:
        return cls.from_mapping(_load_yaml(Path(path)))

    @classmethod
    def load(cls, env: Mapping[str, str] | None = None) -> GovernanceSettings:
        """Resolve settings from the optional YAML file, then environment overrides."""
        env = os.environ if env is None else env
        data: dict[str, Any] = {}
        config_path = env.get("GOVERNANCE_CONFIG", "")
        if config_path:
            data = _load_yaml(Path(config_path))
            # Validate the file on its own before layering env on top.
            cls.from_mapping(data)
        data.update(_env_overrides(env))
        return cls.from_mapping(data)


def _load_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        loaded = yaml.safe_load(f)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        msg = f"{path}: top-level YAML value must be a mapping"
        raise ValueError(msg)
    return loaded


def _build_section(section_cls: type, value: Any, name: str) -> Any:
    if isinstance(value, section_cls):
        return value
    if not isinstance(value, Mapping):
        msg = f"{name} must be a mapping"
        raise ValueError(msg)
    allowed = {f.name for f in dataclasses.fields(section_cls)}
    unknown = sorted(set(value) - allowed)
    if unknown:
        msg = f"Unknown {name} keys: {unknown}"
        raise ValueError(msg)
    return section_cls(**value)


def _parse_decimal(value: Any, name: str) -> Decimal:
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation as exc:
        msg = f"{name} is not a number: {value!r}"
        raise ValueError(msg) from exc
    if not result.is_finite():
        msg = f"{name} must be finite"
        raise ValueError(msg)
    return result


def _parse_providers(value: Any) -> frozenset[str]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return frozenset(str(p).strip().lower() for p in items if str(p).strip())


# Environment variable -> (settings key, parser)
_ENV_KEYS: dict[str, tuple[str, Any]] = {
    "LLM_MAX_DAILY_COST": ("max_daily_cost", str),
    "LLM_MAX_COST_PER_REQUEST": ("max_request_cost", str),
    "LLM_ALLOWED_PROVIDERS": ("allowed_providers", str),
    "LLM_KNOWN_PROVIDERS": ("known_providers", str),
    "LLM_TELEMETRY_EWMA_ALPHA": ("default_alpha", float),
    "LLM_TELEMETRY_MAX_AGE_S": ("telemetry_max_age_s", float),
    "GOVERNANCE_STORE_TIMEOUT_S": ("store_timeout_s", float),
    "GOVERNANCE_BASELINE_DAYS": ("baseline_days", int),
    "GOVERNANCE_BASELINE_MIN_SAMPLES": ("baseline_min_samples", int),
    "ENABLE_POLICY_ADAPTATION": ("adaptation_enabled", lambda v: v.strip().lower() in _TRUE_VALUES),
    "POLICY_ADAPTATION_HOUR_UTC": ("adaptation_hour_utc", int),
    "POLICY_ADAPTATION_CONCURRENCY": ("adaptation_concurrency", int),
}


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (key, parse) in _ENV_KEYS.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = parse(raw)
        except ValueError as exc:
            msg = f"Invalid value for {var}: {raw!r}"
            raise ValueError(msg) from exc
    return overrides
