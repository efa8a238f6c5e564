"""Console-friendly formatting utilities."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .diagnostics import Bottleneck, Diagnosis, IntervalVerdict, ProcessAggregate

METRIC_LABELS = {
    "cpu_percent": "CPU %",
    "memory_percent": "内存 %",
    "memory_used_gb": "已用内存 GiB",
    "page_file_usage_percent": "交换分区 %",
    "disk_read_mbps": "磁盘读 MiB/s",
    "disk_write_mbps": "磁盘写 MiB/s",
    "disk_queue_length": "磁盘队列长度",
    "disk_read_latency_ms": "读延迟 ms",
    "disk_write_latency_ms": "写延迟 ms",
    "network_sent_mbps": "网络发送 MiB/s",
    "network_received_mbps": "网络接收 MiB/s",
    "gpu_usage_percent": "GPU %",
    "temperature_celsius": "温度 °C",
    "dpc_time_percent": "DPC/中断 %",
    "interrupts_per_sec": "中断/秒",
}


def format_value(value: Optional[float]) -> str:
    return "不可用" if value is None else f"{value:.1f}"


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    lines = []
    lines.append(_format_row(headers, widths))
    lines.append(_format_row(["-" * w for w in widths], widths))
    for row in rows:
        lines.append(_format_row(row, widths))
    return "\n".join(lines)


def format_summary_table(diagnosis: Diagnosis) -> str:
    rows = [
        [label, format_value(diagnosis.summary[metric].average), format_value(diagnosis.summary[metric].maximum)]
        for metric, label in METRIC_LABELS.items()
    ]
    return render_table(["指标", "平均", "峰值"], rows)


def format_offender_table(offenders: Iterable[ProcessAggregate]) -> str:
    rows = [
        [agg.name, str(agg.cpu_count), str(agg.memory_count), str(agg.io_count)]
        for agg in offenders
    ]
    return render_table(["进程", "CPU 前列", "内存前列", "I/O 前列"], rows) if rows else "无进程数据"


def format_verdict_table(verdicts: Sequence[IntervalVerdict], limit: int = 10) -> str:
    rows = [
        [
            f"{verdict.timestamp:%H:%M:%S}",
            "; ".join(breach.description for breach in verdict.breaches),
            verdict.top_cpu.name if verdict.top_cpu else "-",
            verdict.top_io.name if verdict.top_io else "-",
        ]
        for verdict in verdicts[:limit]
    ]
    return render_table(["时间", "超限指标", "CPU 最高", "I/O 最高"], rows)


def format_bottlenecks(bottlenecks: Sequence[Bottleneck]) -> str:
    rows = [
        [bottleneck.title, bottleneck.issue, bottleneck.evidence, " / ".join(bottleneck.solutions) or "-"]
        for bottleneck in bottlenecks
    ]
    return render_table(["问题", "原因", "证据", "解决方案"], rows)


def format_diagnosis(diagnosis: Diagnosis) -> str:
    lines = [
        f"时间：{diagnosis.started:%Y-%m-%d %H:%M:%S} - {diagnosis.finished:%H:%M:%S}，共 {diagnosis.sample_count} 个采样点",
        format_summary_table(diagnosis),
        "CPU 常客：",
        format_offender_table(diagnosis.top_cpu_offenders),
        "内存常客：",
        format_offender_table(diagnosis.top_memory_offenders),
        "I/O 常客：",
        format_offender_table(diagnosis.top_io_offenders),
    ]
    if diagnosis.verdicts:
        lines.append(f"超限时段（{len(diagnosis.verdicts)} 个）：")
        lines.append(format_verdict_table(diagnosis.verdicts))
        lines.append("\n可能的瓶颈：")
    lines.append(format_bottlenecks(diagnosis.recommendations))
    return "\n".join(lines)


def _format_row(row: Sequence[str], widths: Sequence[int]) -> str:
    padded = [cell.ljust(width) for cell, width in zip(row, widths)]
    return " | ".join(padded)
