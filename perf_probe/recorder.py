"""Append samples to a CSV log and read them back for later analysis."""

from __future__ import annotations

import csv
from datetime import datetime
import logging
from pathlib import Path
import re
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import InvalidLog, RecorderWriteFailure
from .system_state import SYSTEM_METRICS, ProcessRank, Sample, Series, SystemMetrics

logger = logging.getLogger(__name__)

METRIC_COLUMNS: Dict[str, str] = {
    "cpu_percent": "CpuPercent",
    "memory_percent": "MemoryPercent",
    "memory_used_gb": "MemoryUsedGB",
    "memory_total_gb": "MemoryTotalGB",
    "page_file_usage_percent": "PageFileUsagePercent",
    "disk_read_mbps": "DiskReadMBps",
    "disk_write_mbps": "DiskWriteMBps",
    "disk_queue_length": "DiskQueueLength",
    "disk_read_latency_ms": "DiskReadLatencyMs",
    "disk_write_latency_ms": "DiskWriteLatencyMs",
    "network_sent_mbps": "NetworkSentMBps",
    "network_received_mbps": "NetworkReceivedMBps",
    "gpu_usage_percent": "GpuUsagePercent",
    "temperature_celsius": "TemperatureCelsius",
    "dpc_time_percent": "DpcTimePercent",
    "interrupts_per_sec": "InterruptsPerSec",
    "uptime_seconds": "UptimeSeconds",
}

# Column prefix and the Sample attribute each ranked block comes from.
RANK_BLOCKS: Tuple[Tuple[str, str], ...] = (
    ("TopCpuProc", "top_by_cpu"),
    ("TopMemProc", "top_by_memory"),
    ("TopIoProc", "top_by_io"),
)
RANK_FIELDS: Tuple[str, ...] = ("Name", "User", "Cpu", "MemMB", "IoMBps")

PRECISION = 4

_RANK_COLUMN = re.compile(r"^TopCpuProc(\d+)Name$")


def log_columns(top_k: int) -> List[str]:
    columns = ["Timestamp"]
    columns.extend(METRIC_COLUMNS[metric] for metric in SYSTEM_METRICS)
    for prefix, _ in RANK_BLOCKS:
        for index in range(1, top_k + 1):
            columns.extend(f"{prefix}{index}{suffix}" for suffix in RANK_FIELDS)
    return columns


class CsvRecorder:
    """Fixed-schema, append-only CSV log with one complete row per sample.

    ``open`` truncates the file and writes the header. Each ``append`` opens
    the file, writes a single row and closes it again, so a failed write
    never leaves a partial row behind for the next one.
    """

    def __init__(self, path: Union[str, Path], top_k: int) -> None:
        self.path = Path(path)
        self.top_k = top_k
        self.columns = log_columns(top_k)
        self.rows_written = 0

    def open(self) -> "CsvRecorder":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                csv.writer(handle).writerow(self.columns)
        except OSError as exc:
            raise RecorderWriteFailure(f"cannot create log {self.path}: {exc}") from exc
        logger.info("Recording samples to %s", self.path)
        return self

    def append(self, sample: Sample) -> Sample:
        row = self._to_row(sample)
        try:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                csv.writer(handle).writerow(row)
        except OSError as exc:
            raise RecorderWriteFailure(f"cannot append to log {self.path}: {exc}") from exc
        self.rows_written += 1
        return sample

    def _to_row(self, sample: Sample) -> List[str]:
        row = [sample.timestamp.isoformat()]
        row.extend(_format_number(sample.system.value(metric)) for metric in SYSTEM_METRICS)
        for _, attribute in RANK_BLOCKS:
            ranks: Sequence[ProcessRank] = getattr(sample, attribute)
            for index in range(self.top_k):
                if index < len(ranks):
                    row.extend(_rank_cells(ranks[index]))
                else:
                    row.extend([""] * len(RANK_FIELDS))
        return row


def read_log(path: Union[str, Path]) -> Series:
    """Parse a log written by :class:`CsvRecorder` back into a series."""
    with Path(path).open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        columns = reader.fieldnames or []
        if "Timestamp" not in columns:
            raise InvalidLog(f"{path} has no Timestamp column; not a perf-probe log")
        top_k = _infer_top_k(columns)
        samples = []
        for row in reader:
            try:
                samples.append(_from_row(row, top_k))
            except (TypeError, ValueError) as exc:
                raise InvalidLog(f"{path} line {reader.line_num}: {exc}") from exc
        return tuple(samples)


def _infer_top_k(columns: Sequence[str]) -> int:
    indexes = [int(match.group(1)) for match in map(_RANK_COLUMN.match, columns) if match]
    return max(indexes, default=0)


def _from_row(row: Dict[str, str], top_k: int) -> Sample:
    metrics = {metric: _parse_number(row.get(column, "")) for metric, column in METRIC_COLUMNS.items()}
    blocks = {}
    for prefix, attribute in RANK_BLOCKS:
        ranks = []
        for index in range(1, top_k + 1):
            cells = {suffix: row.get(f"{prefix}{index}{suffix}") or "" for suffix in RANK_FIELDS}
            if any(cells.values()):
                ranks.append(
                    ProcessRank(
                        name=cells["Name"],
                        user=cells["User"] or None,
                        cpu_percent=_parse_number(cells["Cpu"]) or 0.0,
                        memory_mb=_parse_number(cells["MemMB"]) or 0.0,
                        io_mbps=_parse_number(cells["IoMBps"]),
                    )
                )
        blocks[attribute] = tuple(ranks)
    return Sample(
        timestamp=datetime.fromisoformat(row["Timestamp"]),
        system=SystemMetrics(**metrics),
        **blocks,
    )


def _rank_cells(rank: ProcessRank) -> List[str]:
    return [
        rank.name,
        rank.user or "",
        _format_number(rank.cpu_percent),
        _format_number(rank.memory_mb),
        _format_number(rank.io_mbps),
    ]


def _format_number(value: Optional[float]) -> str:
    if value is None:
        return ""
    return repr(round(float(value), PRECISION))


def _parse_number(cell: str) -> Optional[float]:
    return float(cell) if cell else None
