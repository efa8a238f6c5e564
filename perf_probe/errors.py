"""Error taxonomy shared by sampling, recording and analysis."""

from __future__ import annotations

from typing import Any, Optional


class PerfProbeError(Exception):
    """Base class for all perf-probe errors."""


class MetricUnavailable(PerfProbeError):
    """A single metric cannot be read on this host. Non-fatal."""

    def __init__(self, metric: str, reason: str = "") -> None:
        message = f"metric {metric} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.metric = metric
        self.reason = reason


class InvalidConfiguration(PerfProbeError):
    """Interval, duration, top-K or thresholds are unusable. Raised before sampling starts."""

    def __init__(self, message: str, field_name: Optional[str] = None, value: Any = None) -> None:
        super().__init__(message)
        self.field_name = field_name
        self.value = value


class RecorderWriteFailure(PerfProbeError):
    """A log row could not be written. Collection continues from memory."""


class EmptySeries(PerfProbeError):
    """Analysis was asked to run on a series without samples."""


class InvalidLog(PerfProbeError):
    """A log file is not one perf-probe wrote, or a row cannot be parsed."""
