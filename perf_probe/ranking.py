"""Rank the heaviest processes at one sampling instant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Mapping, Optional, Sequence, Tuple

from .system_state import BYTES_PER_MB, ProcessInfo, ProcessRank

IDLE_PROCESS_NAMES: FrozenSet[str] = frozenset({"idle", "system idle process", "_total"})


@dataclass(frozen=True)
class Ranking:
    top_by_cpu: Tuple[ProcessRank, ...]
    top_by_memory: Tuple[ProcessRank, ...]
    top_by_io: Tuple[ProcessRank, ...]


def rank_processes(
    processes: Sequence[ProcessInfo],
    io_rates: Mapping[str, float],
    top_k: int,
) -> Ranking:
    """Pick the top ``top_k`` processes by CPU, memory and I/O.

    Order is descending by the metric with ties broken by name. A process
    without an entry in ``io_rates`` never appears in the I/O ranking.
    """
    active = [proc for proc in processes if proc.name.lower() not in IDLE_PROCESS_NAMES]
    entries = [_to_rank(proc, io_rates.get(proc.name)) for proc in active]

    by_cpu = sorted(entries, key=lambda r: (-r.cpu_percent, r.name))[:top_k]
    by_memory = sorted(entries, key=lambda r: (-r.memory_mb, r.name))[:top_k]
    by_io = sorted(_io_entries(active, io_rates), key=lambda r: (-(r.io_mbps or 0.0), r.name))[:top_k]
    return Ranking(tuple(by_cpu), tuple(by_memory), tuple(by_io))


def _to_rank(proc: ProcessInfo, io_rate: Optional[float]) -> ProcessRank:
    return ProcessRank(
        name=proc.name,
        user=proc.user,
        cpu_percent=proc.cpu_percent,
        memory_mb=proc.memory_bytes / BYTES_PER_MB,
        io_mbps=io_rate / BYTES_PER_MB if io_rate is not None else None,
    )


def _io_entries(processes: Sequence[ProcessInfo], io_rates: Mapping[str, float]) -> list[ProcessRank]:
    # I/O rates are keyed by name, so processes sharing a name fold into one entry.
    grouped: Dict[str, ProcessRank] = {}
    for proc in processes:
        rate = io_rates.get(proc.name)
        if rate is None:
            continue
        current = grouped.get(proc.name)
        if current is None:
            grouped[proc.name] = _to_rank(proc, rate)
            continue
        grouped[proc.name] = ProcessRank(
            name=current.name,
            user=current.user,
            cpu_percent=current.cpu_percent + proc.cpu_percent,
            memory_mb=current.memory_mb + proc.memory_bytes / BYTES_PER_MB,
            io_mbps=current.io_mbps,
        )
    return list(grouped.values())
