import csv
from datetime import datetime, timedelta

import pytest

from perf_probe.errors import InvalidLog, RecorderWriteFailure
from perf_probe.recorder import CsvRecorder, log_columns, read_log
from perf_probe.sampler import Sampler
from perf_probe.system_state import ProcessRank, Sample, SystemMetrics


def make_sample(offset: int = 0, **metrics) -> Sample:
    values = {
        "cpu_percent": 42.5,
        "memory_percent": 61.25,
        "memory_used_gb": 9.8125,
        "memory_total_gb": 16.0,
        "disk_queue_length": 0.3333,
        "uptime_seconds": 86400.0,
    }
    values.update(metrics)
    return Sample(
        timestamp=datetime(2024, 5, 6, 7, 8, 9) + timedelta(seconds=offset),
        system=SystemMetrics(**values),
        top_by_cpu=(
            ProcessRank("ffmpeg", "carol", 180.2, 512.0, None),
            ProcessRank("Code Helper, Renderer", None, 25.0, 800.5, 0.5),
        ),
        top_by_memory=(ProcessRank("Code Helper, Renderer", None, 25.0, 800.5, 0.5),),
        top_by_io=(ProcessRank('say "hi"', "carol", 1.0, 2.0, 12.75),),
    )


def test_header_layout():
    columns = log_columns(2)
    assert columns[:3] == ["Timestamp", "CpuPercent", "MemoryPercent"]
    assert "TopCpuProc1Name" in columns
    assert "TopIoProc2IoMBps" in columns
    assert columns.index("TopCpuProc2User") < columns.index("TopMemProc1Name") < columns.index("TopIoProc1Name")
    assert len(columns) == 1 + 17 + 3 * 2 * 5


def test_round_trip(tmp_path):
    path = tmp_path / "log.csv"
    recorder = CsvRecorder(path, top_k=3).open()
    samples = [make_sample(0), make_sample(5, gpu_usage_percent=77.0)]
    for sample in samples:
        assert recorder.append(sample) is sample

    assert read_log(path) == tuple(samples)
    assert recorder.rows_written == 2


def test_unavailable_values_round_trip_as_unavailable(tmp_path):
    path = tmp_path / "log.csv"
    CsvRecorder(path, top_k=1).open().append(make_sample())
    (sample,) = read_log(path)
    assert sample.system.temperature_celsius is None
    assert sample.system.gpu_usage_percent is None
    assert sample.top_by_cpu[0].io_mbps is None


def test_values_containing_delimiter_are_quoted(tmp_path):
    path = tmp_path / "log.csv"
    CsvRecorder(path, top_k=2).open().append(make_sample())
    raw = path.read_text(encoding="utf-8")
    assert '"Code Helper, Renderer"' in raw

    with path.open(newline="", encoding="utf-8") as handle:
        header, row = list(csv.reader(handle))
    assert len(header) == len(row)


def test_open_truncates_previous_run(tmp_path):
    path = tmp_path / "log.csv"
    CsvRecorder(path, top_k=1).open().append(make_sample())
    CsvRecorder(path, top_k=1).open()
    assert read_log(path) == ()


def test_unwritable_log_raises_write_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with pytest.raises(RecorderWriteFailure):
        CsvRecorder(blocker / "log.csv", top_k=1).open()


def test_sampler_output_matches_log(tmp_path):
    class Source:
        capabilities = frozenset()

        def read_system_metrics(self):
            return SystemMetrics(cpu_percent=12.0, disk_read_mbps=3.5)

        def list_processes(self):
            return []

        def read_process_io(self):
            return {}

    path = tmp_path / "run.csv"
    series = Sampler(Source(), CsvRecorder(path, top_k=2), sleep=lambda s: None).start(1, 3, 2)
    assert read_log(path) == series


def test_rounding_precision(tmp_path):
    path = tmp_path / "log.csv"
    CsvRecorder(path, top_k=1).open().append(make_sample(cpu_percent=12.3456789))
    (sample,) = read_log(path)
    assert sample.system.cpu_percent == pytest.approx(12.3456789, abs=1e-4)


def test_blank_process_name_survives_round_trip(tmp_path):
    path = tmp_path / "log.csv"
    sample = Sample(
        timestamp=datetime(2024, 5, 6, 7, 8, 9),
        system=SystemMetrics(cpu_percent=5.0),
        top_by_cpu=(ProcessRank("", "root", 3.0, 12.0, None),),
    )
    CsvRecorder(path, top_k=2).open().append(sample)
    assert read_log(path) == (sample,)


def test_foreign_csv_rejected(tmp_path):
    path = tmp_path / "other.csv"
    path.write_text("a,b\n1,2\n", encoding="utf-8")
    with pytest.raises(InvalidLog, match="Timestamp"):
        read_log(path)


def test_non_numeric_cell_rejected(tmp_path):
    path = tmp_path / "log.csv"
    CsvRecorder(path, top_k=1).open().append(make_sample())
    text = path.read_text(encoding="utf-8").replace("42.5", "busy")
    path.write_text(text, encoding="utf-8")
    with pytest.raises(InvalidLog, match="line 2"):
        read_log(path)
