"""
Periodic host telemetry sampler that records a time series and diagnoses bottlenecks.
"""

__all__ = ["config", "diagnostics", "errors", "ranking", "recorder", "sampler", "system_state", "cli"]
__version__ = "0.1.0"
