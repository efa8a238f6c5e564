"""Run options and breach thresholds."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional

from .errors import InvalidConfiguration
from .system_state import SYSTEM_METRICS

DEFAULT_LIMITS: Mapping[str, float] = MappingProxyType(
    {
        "cpu_percent": 90.0,
        "memory_percent": 90.0,
        "disk_queue_length": 2.0,
        "disk_read_latency_ms": 50.0,
        "disk_write_latency_ms": 50.0,
        "gpu_usage_percent": 90.0,
        "temperature_celsius": 85.0,
        "dpc_time_percent": 15.0,
    }
)

# Coarser second tier for DPC: compared against the run average, not per sample.
DEFAULT_DPC_AVERAGE_LIMIT = 5.0


@dataclass(frozen=True)
class ThresholdSet:
    """Per-metric breach values. A metric breaches when its value is strictly greater."""

    limits: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_LIMITS))
    dpc_average_limit: float = DEFAULT_DPC_AVERAGE_LIMIT

    def __post_init__(self) -> None:
        unknown = sorted(set(self.limits) - set(SYSTEM_METRICS))
        if unknown:
            raise InvalidConfiguration(f"unknown threshold metric(s): {', '.join(unknown)}", "thresholds", unknown)
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))

    @classmethod
    def defaults(cls) -> "ThresholdSet":
        return cls()

    def get(self, metric: str) -> Optional[float]:
        return self.limits.get(metric)

    def items(self):
        return self.limits.items()


@dataclass
class RunConfig:
    log_path: Path = field(default_factory=lambda: Path("perf_probe_log.csv"))
    interval_seconds: float = 5.0
    duration_minutes: float = 10.0
    top_processes_count: int = 5

    @property
    def duration_seconds(self) -> float:
        return self.duration_minutes * 60

    @property
    def iterations(self) -> int:
        return planned_iterations(self.interval_seconds, self.duration_seconds)

    def validate(self) -> "RunConfig":
        if not self.interval_seconds > 0:
            raise InvalidConfiguration("interval must be greater than 0 seconds", "interval_seconds", self.interval_seconds)
        if not self.duration_minutes > 0:
            raise InvalidConfiguration("duration must be greater than 0 minutes", "duration_minutes", self.duration_minutes)
        if self.top_processes_count < 1:
            raise InvalidConfiguration("top process count must be at least 1", "top_processes_count", self.top_processes_count)
        if self.iterations < 1:
            raise InvalidConfiguration(
                f"duration {self.duration_seconds:g}s is shorter than one {self.interval_seconds:g}s interval",
                "duration_minutes",
                self.duration_minutes,
            )
        return self


def planned_iterations(interval: float, duration: float) -> int:
    """``floor(duration / interval)``, guarded against binary float error (0.1 / 0.01 -> 10)."""
    if interval <= 0:
        return 0
    return max(0, math.floor(round(duration / interval, 6)))
