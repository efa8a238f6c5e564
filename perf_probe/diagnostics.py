"""Analyze a recorded series and explain likely bottlenecks with fixes."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import ThresholdSet
from .errors import EmptySeries
from .system_state import SYSTEM_METRICS, ProcessRank, Series

NO_ISSUES = "no issues detected"
CPU_SATURATION = "cpu saturation"
MEMORY_PRESSURE = "memory pressure"
STORAGE_BOTTLENECK = "storage bottleneck"
GPU_SATURATION = "gpu saturation"
THERMAL_THROTTLING = "thermal throttling"
DRIVER_OVERHEAD = "driver overhead"
TRANSIENT_BREACH = "transient breach"

STORAGE_METRICS = ("disk_queue_length", "disk_read_latency_ms", "disk_write_latency_ms")


@dataclass(frozen=True)
class Bottleneck:
    kind: str
    title: str
    issue: str
    evidence: str
    solutions: Sequence[str]


@dataclass(frozen=True)
class MetricSummary:
    average: Optional[float]
    maximum: Optional[float]
    samples: int


@dataclass(frozen=True)
class Breach:
    metric: str
    value: float
    threshold: float

    @property
    def description(self) -> str:
        return f"{self.metric} {self.value:.1f} > {self.threshold:g}"


@dataclass(frozen=True)
class IntervalVerdict:
    timestamp: datetime
    breaches: Tuple[Breach, ...]
    top_cpu: Optional[ProcessRank]
    top_memory: Optional[ProcessRank]
    top_io: Optional[ProcessRank]

    @property
    def descriptions(self) -> FrozenSet[str]:
        return frozenset(breach.description for breach in self.breaches)

    @property
    def metrics(self) -> FrozenSet[str]:
        return frozenset(breach.metric for breach in self.breaches)


@dataclass(frozen=True)
class ProcessAggregate:
    name: str
    cpu_count: int = 0
    memory_count: int = 0
    io_count: int = 0


@dataclass(frozen=True)
class Diagnosis:
    sample_count: int
    started: datetime
    finished: datetime
    summary: Mapping[str, MetricSummary]
    verdicts: Tuple[IntervalVerdict, ...]
    top_cpu_offenders: Tuple[ProcessAggregate, ...]
    top_memory_offenders: Tuple[ProcessAggregate, ...]
    top_io_offenders: Tuple[ProcessAggregate, ...]
    recommendations: Tuple[Bottleneck, ...]

    @property
    def healthy(self) -> bool:
        return not self.verdicts

    @property
    def kinds(self) -> FrozenSet[str]:
        return frozenset(note.kind for note in self.recommendations)


def analyze(series: Series, thresholds: Optional[ThresholdSet] = None, top_k: int = 5) -> Diagnosis:
    """Classify every interval, find repeat offenders and derive recommendations.

    Pure function of ``series`` and ``thresholds``: calling it twice on the
    same input yields equal diagnoses. ``top_k`` bounds each offender list.
    """
    if not series:
        raise EmptySeries("no samples were collected; nothing to analyze")
    thresholds = thresholds or ThresholdSet.defaults()

    summary = summarize(series)
    verdicts = tuple(interval_verdicts(series, thresholds))
    aggregates = aggregate_processes(series)
    offenders = {
        "cpu": _top_offenders(aggregates, lambda a: a.cpu_count, top_k),
        "memory": _top_offenders(aggregates, lambda a: a.memory_count, top_k),
        "io": _top_offenders(aggregates, lambda a: a.io_count, top_k),
    }
    if verdicts:
        recommendations = tuple(
            note
            for note in (rule(summary, thresholds, offenders, len(series)) for rule in _RULES)
            if note is not None
        )
        # Breaches that no rule explains still get reported.
        if not recommendations:
            recommendations = (_transient_note(verdicts, len(series)),)
    else:
        recommendations = (_healthy_note(len(series)),)

    return Diagnosis(
        sample_count=len(series),
        started=series[0].timestamp,
        finished=series[-1].timestamp,
        summary=summary,
        verdicts=verdicts,
        top_cpu_offenders=offenders["cpu"],
        top_memory_offenders=offenders["memory"],
        top_io_offenders=offenders["io"],
        recommendations=recommendations,
    )


def summarize(series: Series) -> Dict[str, MetricSummary]:
    """Average and maximum per metric, skipping samples where it was unavailable."""
    summary: Dict[str, MetricSummary] = {}
    for metric in SYSTEM_METRICS:
        values = [value for value in (sample.system.value(metric) for sample in series) if value is not None]
        if values:
            summary[metric] = MetricSummary(sum(values) / len(values), max(values), len(values))
        else:
            summary[metric] = MetricSummary(None, None, 0)
    return summary


def interval_verdicts(series: Series, thresholds: ThresholdSet) -> Iterator[IntervalVerdict]:
    """Yield a verdict for each sample with at least one strict breach."""
    for sample in series:
        breaches = tuple(
            Breach(metric, value, limit)
            for metric, limit in thresholds.items()
            for value in (sample.system.value(metric),)
            if value is not None and value > limit
        )
        if breaches:
            yield IntervalVerdict(
                timestamp=sample.timestamp,
                breaches=breaches,
                top_cpu=_first(sample.top_by_cpu),
                top_memory=_first(sample.top_by_memory),
                top_io=_first(sample.top_by_io),
            )


def aggregate_processes(series: Series) -> Dict[str, ProcessAggregate]:
    """Count how often each process name made a ranking across the run."""
    cpu: Counter = Counter()
    memory: Counter = Counter()
    io: Counter = Counter()
    for sample in series:
        cpu.update(rank.name for rank in sample.top_by_cpu)
        memory.update(rank.name for rank in sample.top_by_memory)
        io.update(rank.name for rank in sample.top_by_io)
    names = set(cpu) | set(memory) | set(io)
    return {name: ProcessAggregate(name, cpu[name], memory[name], io[name]) for name in names}


def _top_offenders(
    aggregates: Mapping[str, ProcessAggregate], count: Callable[[ProcessAggregate], int], limit: int
) -> Tuple[ProcessAggregate, ...]:
    ranked = sorted((a for a in aggregates.values() if count(a) > 0), key=lambda a: (-count(a), a.name))
    return tuple(ranked[:limit])


def _first(ranks: Sequence[ProcessRank]) -> Optional[ProcessRank]:
    return ranks[0] if ranks else None


# --- Recommendation rules -------------------------------------------------
# Each rule reads the run summary, never individual intervals.

Offenders = Mapping[str, Tuple[ProcessAggregate, ...]]
Rule = Callable[[Mapping[str, MetricSummary], ThresholdSet, Offenders, int], Optional[Bottleneck]]


def _maximum_exceeds(summary: Mapping[str, MetricSummary], thresholds: ThresholdSet, metric: str) -> bool:
    limit = thresholds.get(metric)
    maximum = summary[metric].maximum
    return limit is not None and maximum is not None and maximum > limit


def _cpu_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    if not _maximum_exceeds(summary, thresholds, "cpu_percent"):
        return None
    cpu = summary["cpu_percent"]
    return Bottleneck(
        kind=CPU_SATURATION,
        title="CPU 热点",
        issue="CPU 在采样期间多次接近满载，正在拖慢系统响应。",
        evidence=f"峰值 {cpu.maximum:.0f}% ，平均 {cpu.average:.0f}%。{_offender_summary(offenders['cpu'], 'cpu', samples)}",
        solutions=(
            "结束或暂停反复出现在 CPU 前列的进程，或在终端执行 `kill <pid>`。",
            "错开编译、转码、虚拟机等重负载任务的运行时间。",
            "检查杀毒软件或索引服务是否在高峰期进行全盘扫描。",
        ),
    )


def _memory_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    if not _maximum_exceeds(summary, thresholds, "memory_percent"):
        return None
    memory = summary["memory_percent"]
    page_file = summary["page_file_usage_percent"]
    paging = f"，交换分区峰值 {page_file.maximum:.0f}%" if page_file.maximum is not None else ""
    return Bottleneck(
        kind=MEMORY_PRESSURE,
        title="内存压力",
        issue="可用内存不足，系统可能在频繁换页导致卡顿。",
        evidence=f"内存占用峰值 {memory.maximum:.0f}%{paging}。{_offender_summary(offenders['memory'], 'memory', samples)}",
        solutions=(
            "关闭长期驻留在内存前列的应用或浏览器标签页。",
            "减少同时运行的容器、虚拟机实例数量。",
            "如果内存压力持续存在，考虑扩容物理内存。",
        ),
    )


def _storage_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    breached = [metric for metric in STORAGE_METRICS if _maximum_exceeds(summary, thresholds, metric)]
    if not breached:
        return None
    details = "，".join(f"{metric} 峰值 {summary[metric].maximum:.1f}（阈值 {thresholds.get(metric):g}）" for metric in breached)
    return Bottleneck(
        kind=STORAGE_BOTTLENECK,
        title="磁盘瓶颈",
        issue="磁盘请求排队或响应过慢，读写密集的程序会明显卡顿。",
        evidence=f"{details}。{_offender_summary(offenders['io'], 'io', samples)}",
        solutions=(
            "暂停反复出现在 I/O 前列的同步、备份或下载任务。",
            "确认磁盘剩余空间充足，必要时清理缓存与临时文件。",
            "检查磁盘健康状态，机械硬盘可考虑更换为固态硬盘。",
        ),
    )


def _gpu_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    if not _maximum_exceeds(summary, thresholds, "gpu_usage_percent"):
        return None
    gpu = summary["gpu_usage_percent"]
    return Bottleneck(
        kind=GPU_SATURATION,
        title="GPU 满载",
        issue="GPU 占用接近上限，图形渲染和硬件加速任务会排队。",
        evidence=f"GPU 峰值 {gpu.maximum:.0f}% ，平均 {gpu.average:.0f}%。",
        solutions=(
            "关闭后台的游戏、渲染或机器学习任务。",
            "在浏览器等应用中按需关闭硬件加速。",
        ),
    )


def _thermal_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    if not _maximum_exceeds(summary, thresholds, "temperature_celsius"):
        return None
    temperature = summary["temperature_celsius"]
    return Bottleneck(
        kind=THERMAL_THROTTLING,
        title="过热降频",
        issue="温度过高，处理器可能已经自动降频。",
        evidence=f"最高温度 {temperature.maximum:.0f}°C（阈值 {thresholds.get('temperature_celsius'):g}°C）。",
        solutions=(
            "清理风扇和散热孔的灰尘，保证进出风顺畅。",
            "避免在软垫上使用笔记本，必要时使用散热底座。",
            "降低持续高负载任务的并发度。",
        ),
    )


def _driver_rule(summary, thresholds, offenders, samples) -> Optional[Bottleneck]:
    dpc = summary["dpc_time_percent"]
    if dpc.average is None or dpc.average <= thresholds.dpc_average_limit:
        return None
    return Bottleneck(
        kind=DRIVER_OVERHEAD,
        title="驱动开销",
        issue="中断与延迟过程调用占用过多 CPU 时间，通常由驱动问题导致。",
        evidence=f"DPC/中断时间平均 {dpc.average:.1f}% （上限 {thresholds.dpc_average_limit:g}%），峰值 {dpc.maximum:.1f}%。",
        solutions=(
            "更新网卡、声卡、显卡和存储控制器驱动。",
            "逐个禁用不常用的外设，观察中断时间是否回落。",
        ),
    )


_RULES: List[Rule] = [_cpu_rule, _memory_rule, _storage_rule, _gpu_rule, _thermal_rule, _driver_rule]


def _healthy_note(samples: int) -> Bottleneck:
    return Bottleneck(
        kind=NO_ISSUES,
        title="未发现瓶颈",
        issue="采样期间所有指标均未超过阈值。",
        evidence=f"共分析 {samples} 个采样点。",
        solutions=(),
    )


def _transient_note(verdicts: Sequence[IntervalVerdict], samples: int) -> Bottleneck:
    counts = Counter(metric for verdict in verdicts for metric in verdict.metrics)
    breached = ", ".join(f"{metric} ({count}/{samples} 次)" for metric, count in sorted(counts.items()))
    return Bottleneck(
        kind=TRANSIENT_BREACH,
        title="短暂超限",
        issue="个别采样点超过阈值，但整体指标没有指向明确的瓶颈。",
        evidence=f"超限指标：{breached}。",
        solutions=(
            "对照超限时间点查看当时的高占用进程。",
            "延长采样时间，确认峰值是否反复出现。",
        ),
    )


def _offender_summary(offenders: Sequence[ProcessAggregate], category: str, samples: int) -> str:
    if not offenders:
        return "未能识别高占用进程。"
    attribute = {"cpu": "cpu_count", "memory": "memory_count", "io": "io_count"}[category]
    names = ", ".join(f"{agg.name} ({getattr(agg, attribute)}/{samples} 次)" for agg in offenders[:3])
    return f"主要占用：{names}。"
