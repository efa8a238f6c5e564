from pathlib import Path

import pytest

from perf_probe.config import RunConfig, ThresholdSet, planned_iterations
from perf_probe.errors import InvalidConfiguration


def test_threshold_defaults():
    thresholds = ThresholdSet.defaults()
    assert thresholds.get("cpu_percent") == 90
    assert thresholds.get("disk_queue_length") == 2
    assert thresholds.get("disk_read_latency_ms") == 50
    assert thresholds.get("disk_write_latency_ms") == 50
    assert thresholds.get("gpu_usage_percent") == 90
    assert thresholds.get("temperature_celsius") == 85
    assert thresholds.get("dpc_time_percent") == 15
    assert thresholds.dpc_average_limit == 5
    assert thresholds.get("uptime_seconds") is None


def test_thresholds_are_read_only():
    thresholds = ThresholdSet({"cpu_percent": 80})
    with pytest.raises(TypeError):
        thresholds.limits["cpu_percent"] = 10


def test_thresholds_copy_their_input():
    limits = {"cpu_percent": 80.0}
    thresholds = ThresholdSet(limits)
    limits["cpu_percent"] = 1.0
    assert thresholds.get("cpu_percent") == 80.0


def test_unknown_threshold_metric_rejected():
    with pytest.raises(InvalidConfiguration) as excinfo:
        ThresholdSet({"cpu_pct": 80})
    assert excinfo.value.field_name == "thresholds"


def test_run_config_defaults():
    config = RunConfig().validate()
    assert config.log_path == Path("perf_probe_log.csv")
    assert config.interval_seconds == 5
    assert config.duration_minutes == 10
    assert config.top_processes_count == 5
    assert config.iterations == 120


@pytest.mark.parametrize(
    "overrides,field_name",
    [
        ({"interval_seconds": 0}, "interval_seconds"),
        ({"duration_minutes": 0}, "duration_minutes"),
        ({"top_processes_count": 0}, "top_processes_count"),
        ({"interval_seconds": 120, "duration_minutes": 1}, "duration_minutes"),
    ],
)
def test_run_config_rejects_bad_values(overrides, field_name):
    with pytest.raises(InvalidConfiguration) as excinfo:
        RunConfig(**overrides).validate()
    assert excinfo.value.field_name == field_name


@pytest.mark.parametrize(
    "interval,duration,expected",
    [(0.01, 0.1, 10), (5, 600, 120), (5, 14, 2), (3, 2, 0), (1, 0, 0), (0, 5, 0)],
)
def test_planned_iterations_floors(interval, duration, expected):
    assert planned_iterations(interval, duration) == expected
