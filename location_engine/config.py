"""Runtime configuration for the location engine."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import orjson

from .models import TrackingMode


@dataclass(frozen=True)
class EngineConfig:
    """
    Every tunable of the engine with its default.

    Filter noise values are in m² / (m/s)², matching the local-metre state of
    the position filter.
    """

    # Position filter
    initial_covariance: Tuple[float, float, float, float] = (1000.0, 1000.0, 100.0, 100.0)
    reset_covariance: Tuple[float, float, float, float] = (100.0, 100.0, 10.0, 10.0)
    process_noise: Tuple[float, float, float, float] = (0.1, 0.1, 1.0, 1.0)
    default_accuracy_m: float = 10.0
    min_accuracy_m: float = 1.0

    # Sampling controller
    prediction_interval_s: float = 0.1       # 10 Hz
    fix_freshness_s: float = 2.0             # no prediction while the last fix is this fresh
    stale_reset_s: float = 120.0             # re-seed the filter after a gap this long
    max_acceleration_mps2: float = 0.8 * 9.81
    background_mode: Optional[TrackingMode] = None     # demote Active to this mode instead of stopping
    starvation_threshold_s: float = 30.0

    # Best location resolver
    staleness_threshold_s: float = 60.0
    schedule_refresh_interval_s: float = 30.0

    # Broadcaster
    broadcast_min_interval_s: float = 5.0

    # Termux location poller
    location_request_timeout_s: float = 5.0
    location_quality_threshold_m: float = 100.0
    provider_fallback_s: float = 60.0

    def replace(self, **changes) -> "EngineConfig":
        return dataclasses.replace(self, **changes)


def default_config() -> EngineConfig:
    return EngineConfig()


_TUPLE_FIELDS = {'initial_covariance', 'reset_covariance', 'process_noise'}


def config_from_dict(data: dict) -> EngineConfig:
    """Build a config from a plain mapping, rejecting unknown keys."""
    known = {f.name for f in dataclasses.fields(EngineConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")

    values = dict(data)
    for name in _TUPLE_FIELDS & set(values):
        if len(values[name]) != 4:
            raise ValueError(f"{name} needs 4 diagonal entries, got {len(values[name])}")
        values[name] = tuple(float(v) for v in values[name])
    if 'background_mode' in values and values['background_mode'] is not None:
        values['background_mode'] = TrackingMode(values['background_mode'])
    return EngineConfig(**values)


def load_config(path) -> EngineConfig:
    """Load JSON overrides from ``path`` on top of the defaults."""
    raw = Path(path).read_bytes()
    return config_from_dict(orjson.loads(raw))
