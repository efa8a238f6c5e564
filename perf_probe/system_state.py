"""Collect host metrics and per-process usage to diagnose slowdowns over time."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, fields
from datetime import datetime
import logging
import shutil
import subprocess
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple

import psutil

from .errors import MetricUnavailable

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024**2
BYTES_PER_GB = 1024**3

CAPABILITY_GPU = "gpu"
CAPABILITY_TEMPERATURE = "temperature"


@dataclass(frozen=True)
class SystemMetrics:
    """System-wide metrics at one sampling instant.

    Every field is optional: ``None`` means the host could not provide the
    metric for this sample. It is never coerced to a number.
    """

    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None
    memory_used_gb: Optional[float] = None
    memory_total_gb: Optional[float] = None
    page_file_usage_percent: Optional[float] = None
    disk_read_mbps: Optional[float] = None
    disk_write_mbps: Optional[float] = None
    disk_queue_length: Optional[float] = None
    disk_read_latency_ms: Optional[float] = None
    disk_write_latency_ms: Optional[float] = None
    network_sent_mbps: Optional[float] = None
    network_received_mbps: Optional[float] = None
    gpu_usage_percent: Optional[float] = None
    temperature_celsius: Optional[float] = None
    dpc_time_percent: Optional[float] = None
    interrupts_per_sec: Optional[float] = None
    uptime_seconds: Optional[float] = None

    def value(self, metric: str) -> Optional[float]:
        return getattr(self, metric)


SYSTEM_METRICS: Tuple[str, ...] = tuple(f.name for f in fields(SystemMetrics))


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    user: Optional[str]
    cpu_percent: float
    memory_bytes: int


@dataclass(frozen=True)
class ProcessRank:
    name: str
    user: Optional[str]
    cpu_percent: float
    memory_mb: float
    io_mbps: Optional[float] = None


@dataclass(frozen=True)
class Sample:
    timestamp: datetime
    system: SystemMetrics
    top_by_cpu: Tuple[ProcessRank, ...] = ()
    top_by_memory: Tuple[ProcessRank, ...] = ()
    top_by_io: Tuple[ProcessRank, ...] = ()


# Chronological, never mutated after the sampler hands it out.
Series = Tuple[Sample, ...]


class MetricSource(Protocol):
    capabilities: FrozenSet[str]

    def read_system_metrics(self) -> SystemMetrics:
        ...

    def list_processes(self) -> List[ProcessInfo]:
        ...

    def read_process_io(self) -> Dict[str, float]:
        ...


def detect_capabilities() -> FrozenSet[str]:
    """Probe once for the optional subsystems this host exposes."""
    found = set()
    if shutil.which("nvidia-smi"):
        found.add(CAPABILITY_GPU)
    if hasattr(psutil, "sensors_temperatures"):
        try:
            if psutil.sensors_temperatures():
                found.add(CAPABILITY_TEMPERATURE)
        except OSError:
            pass
    return frozenset(found)


class PsutilMetricSource:
    """Point-in-time reads of OS counters through psutil.

    Rates are measured across ``window`` seconds inside a single call. System
    readers run in parallel and each one that fails or exceeds ``read_timeout``
    leaves its fields unavailable instead of failing the whole read.
    """

    def __init__(
        self,
        window: float = 0.25,
        read_timeout: float = 2.0,
        capabilities: Optional[FrozenSet[str]] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.window = window
        self.read_timeout = read_timeout
        self.capabilities = detect_capabilities() if capabilities is None else capabilities
        self._readers = self._system_readers()
        # Every reader gets a worker, plus one more each for a read still stuck
        # from the previous sample after timing out.
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or 2 * len(self._readers), thread_name_prefix="perf-probe-read"
        )

    def __enter__(self) -> "PsutilMetricSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def read_system_metrics(self) -> SystemMetrics:
        futures = {name: self._executor.submit(reader) for name, reader in self._readers.items()}
        deadline = time.monotonic() + self.read_timeout
        values: Dict[str, float] = {}
        for name, future in futures.items():
            values.update(_join(name, future, max(0.0, deadline - time.monotonic())))
        return SystemMetrics(**values)

    def _system_readers(self) -> Dict[str, Callable[[], Dict[str, float]]]:
        readers: Dict[str, Callable[[], Dict[str, float]]] = {
            "cpu": self._read_cpu,
            "memory": _read_memory,
            "disk": self._read_disk,
            "network": self._read_network,
            "dpc": self._read_dpc,
            "interrupts": self._read_interrupts,
            "uptime": _read_uptime,
        }
        if CAPABILITY_GPU in self.capabilities:
            readers["gpu"] = self._read_gpu
        if CAPABILITY_TEMPERATURE in self.capabilities:
            readers["temperature"] = _read_temperature
        return readers

    def list_processes(self) -> List[ProcessInfo]:
        processes = list(psutil.process_iter())
        _prime_cpu_percent(processes)
        time.sleep(self.window)
        return _process_usage(processes)

    def read_process_io(self) -> Dict[str, float]:
        """Bytes per second of read+write I/O, summed per process name."""
        processes = list(psutil.process_iter())
        started = time.monotonic()
        before = _io_totals(processes)
        time.sleep(self.window)
        after = _io_totals(processes)
        elapsed = max(time.monotonic() - started, 1e-6)

        rates: Dict[str, float] = {}
        for pid, (name, total) in after.items():
            if pid not in before:
                continue
            delta = max(0, total - before[pid][1])
            rates[name] = rates.get(name, 0.0) + delta / elapsed
        return rates

    def _read_cpu(self) -> Dict[str, float]:
        return {"cpu_percent": psutil.cpu_percent(interval=self.window)}

    def _read_dpc(self) -> Dict[str, float]:
        times = psutil.cpu_times_percent(interval=self.window)
        if hasattr(times, "dpc"):
            return {"dpc_time_percent": times.dpc}
        if hasattr(times, "irq"):
            return {"dpc_time_percent": times.irq + getattr(times, "softirq", 0.0)}
        raise MetricUnavailable("dpc_time_percent", "platform does not report interrupt time")

    def _read_disk(self) -> Dict[str, float]:
        started = time.monotonic()
        before = psutil.disk_io_counters()
        time.sleep(self.window)
        after = psutil.disk_io_counters()
        elapsed = max(time.monotonic() - started, 1e-6)
        if before is None or after is None:
            raise MetricUnavailable("disk", "no disk counters")

        values = {
            "disk_read_mbps": (after.read_bytes - before.read_bytes) / BYTES_PER_MB / elapsed,
            "disk_write_mbps": (after.write_bytes - before.write_bytes) / BYTES_PER_MB / elapsed,
        }
        if hasattr(before, "read_time"):
            read_ms = after.read_time - before.read_time
            write_ms = after.write_time - before.write_time
            reads = after.read_count - before.read_count
            writes = after.write_count - before.write_count
            # Little's law: average requests in flight over the window.
            values["disk_queue_length"] = (read_ms + write_ms) / (elapsed * 1000)
            values["disk_read_latency_ms"] = read_ms / reads if reads else 0.0
            values["disk_write_latency_ms"] = write_ms / writes if writes else 0.0
        return values

    def _read_network(self) -> Dict[str, float]:
        started = time.monotonic()
        before = psutil.net_io_counters()
        time.sleep(self.window)
        after = psutil.net_io_counters()
        elapsed = max(time.monotonic() - started, 1e-6)
        if before is None or after is None:
            raise MetricUnavailable("network", "no network counters")
        return {
            "network_sent_mbps": (after.bytes_sent - before.bytes_sent) / BYTES_PER_MB / elapsed,
            "network_received_mbps": (after.bytes_recv - before.bytes_recv) / BYTES_PER_MB / elapsed,
        }

    def _read_interrupts(self) -> Dict[str, float]:
        started = time.monotonic()
        before = psutil.cpu_stats().interrupts
        time.sleep(self.window)
        after = psutil.cpu_stats().interrupts
        elapsed = max(time.monotonic() - started, 1e-6)
        return {"interrupts_per_sec": max(0, after - before) / elapsed}

    def _read_gpu(self) -> Dict[str, float]:
        try:
            out = subprocess.check_output(
                ["nvidia-smi", "--query-gpu=utilization.gpu", "--format=csv,noheader,nounits"],
                stderr=subprocess.DEVNULL,
                timeout=self.read_timeout,
            ).decode()
            usages = [float(line) for line in out.split() if line.strip()]
        except (subprocess.SubprocessError, OSError, ValueError) as exc:
            raise MetricUnavailable("gpu_usage_percent", str(exc)) from exc
        if not usages:
            raise MetricUnavailable("gpu_usage_percent", "no devices reported")
        return {"gpu_usage_percent": sum(usages) / len(usages)}


def _join(name: str, future: "Future[Dict[str, float]]", timeout: float) -> Dict[str, float]:
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning("Reading %s metrics timed out; marking them unavailable", name)
    except MetricUnavailable as exc:
        logger.debug("%s", exc)
    except Exception as exc:
        # Any reader failure costs only that reader's fields.
        logger.warning("Reading %s metrics failed: %s: %s", name, type(exc).__name__, exc)
    return {}


def _read_memory() -> Dict[str, float]:
    memory = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return {
        "memory_percent": memory.percent,
        "memory_used_gb": memory.used / BYTES_PER_GB,
        "memory_total_gb": memory.total / BYTES_PER_GB,
        "page_file_usage_percent": swap.percent,
    }


def _read_uptime() -> Dict[str, float]:
    return {"uptime_seconds": time.time() - psutil.boot_time()}


def _read_temperature() -> Dict[str, float]:
    sensors = psutil.sensors_temperatures()
    readings = [entry.current for entries in sensors.values() for entry in entries if entry.current]
    if not readings:
        raise MetricUnavailable("temperature_celsius", "no thermal sensor readings")
    return {"temperature_celsius": max(readings)}


def _prime_cpu_percent(processes: Iterable[psutil.Process]) -> None:
    for proc in processes:
        try:
            proc.cpu_percent(None)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


def _process_usage(processes: Iterable[psutil.Process]) -> List[ProcessInfo]:
    usage: List[ProcessInfo] = []
    for proc in processes:
        try:
            with proc.oneshot():
                cpu = proc.cpu_percent(None)
                mem_info = proc.memory_info()
                try:
                    user: Optional[str] = proc.username()
                except (psutil.AccessDenied, KeyError):
                    # Unmapped uid or insufficient privilege
                    user = None
                usage.append(
                    ProcessInfo(
                        pid=proc.pid,
                        name=proc.name(),
                        user=user,
                        cpu_percent=cpu,
                        memory_bytes=mem_info.rss,
                    )
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return usage


def _io_totals(processes: Iterable[psutil.Process]) -> Dict[int, Tuple[str, int]]:
    totals: Dict[int, Tuple[str, int]] = {}
    for proc in processes:
        try:
            counters = proc.io_counters()
            totals[proc.pid] = (proc.name(), counters.read_bytes + counters.write_bytes)
        except (AttributeError, psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            # io_counters is missing on macOS and needs privilege for other users' processes
            continue
    return totals
