"""Entry point for the perf-probe command line tool."""

from __future__ import annotations

import argparse
from dataclasses import asdict
from datetime import datetime
import json
import logging
from pathlib import Path
import signal
import sys
from typing import Any, Dict, Optional, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from .config import RunConfig, ThresholdSet
from .diagnostics import Diagnosis, ProcessAggregate, analyze
from .errors import EmptySeries, InvalidConfiguration, InvalidLog
from .formatting import METRIC_LABELS, format_diagnosis, format_value
from .recorder import CsvRecorder, read_log
from .sampler import Sampler
from .system_state import PsutilMetricSource, Series

logger = logging.getLogger("perf_probe")

EXIT_OK = 0
EXIT_NO_DATA = 1
EXIT_BAD_CONFIG = 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        if args.top < 1:
            raise InvalidConfiguration("top process count must be at least 1", "top", args.top)
        if args.command == "analyze":
            series = read_log(args.log)
            logger.info("Loaded %d samples from %s", len(series), args.log)
        else:
            series = _monitor(args)
        diagnosis = analyze(series, ThresholdSet.defaults(), top_k=args.top)
    except InvalidConfiguration as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_BAD_CONFIG
    except (EmptySeries, InvalidLog) as exc:
        logger.error("%s", exc)
        return EXIT_NO_DATA
    except OSError as exc:
        logger.error("Cannot read log: %s", exc)
        return EXIT_NO_DATA

    if args.json:
        print(_to_json(diagnosis))
    elif args.ui:
        _render_rich(diagnosis)
    else:
        print(format_diagnosis(diagnosis))
    return EXIT_OK


def _option_parsers(suppress: bool) -> Tuple[argparse.ArgumentParser, argparse.ArgumentParser]:
    """Shared options; subcommand copies keep no defaults so earlier values survive."""

    def default(value: Any) -> Any:
        return argparse.SUPPRESS if suppress else value

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--top", type=int, default=default(5), help="每类展示的高占用进程数量")
    common.add_argument("--json", action="store_true", default=default(False), help="以 JSON 输出诊断结果")
    common.add_argument("--ui", action="store_true", default=default(False), help="以 Rich 风格输出更美观的终端 UI")
    common.add_argument("-v", "--verbose", action="store_true", default=default(False), help="输出调试日志")

    sampling = argparse.ArgumentParser(add_help=False)
    sampling.add_argument(
        "--log", type=Path, default=default(RunConfig().log_path), help="CSV 日志路径，启动时覆盖"
    )
    sampling.add_argument(
        "--interval", type=float, default=default(RunConfig.interval_seconds), help="采样间隔（秒）"
    )
    sampling.add_argument(
        "--duration", type=float, default=default(RunConfig.duration_minutes), help="采样总时长（分钟）"
    )
    return common, sampling


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perf-probe",
        description="持续采样系统指标，记录时间序列并诊断性能瓶颈。",
        parents=list(_option_parsers(suppress=False)),
    )
    common, sampling = _option_parsers(suppress=True)
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("monitor", parents=[common, sampling], help="采样并诊断（默认）")
    analyze_cmd = subparsers.add_parser("analyze", parents=[common], help="重新分析已有的 CSV 日志")
    analyze_cmd.add_argument("log", type=Path, help="perf-probe 生成的 CSV 日志")
    parser.set_defaults(command="monitor")
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="%H:%M:%S",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def _monitor(args: argparse.Namespace) -> Series:
    config = RunConfig(
        log_path=args.log,
        interval_seconds=args.interval,
        duration_minutes=args.duration,
        top_processes_count=args.top,
    ).validate()
    logger.info(
        "Sampling every %gs for %g min (%d samples), top %d processes",
        config.interval_seconds,
        config.duration_minutes,
        config.iterations,
        config.top_processes_count,
    )

    recorder = CsvRecorder(config.log_path, config.top_processes_count)
    with PsutilMetricSource() as source, Progress(
        TextColumn("[cyan]采样中"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeRemainingColumn(),
        console=Console(stderr=True),
        transient=True,
    ) as progress:
        task = progress.add_task("sampling", total=config.iterations)
        sampler = Sampler(
            source,
            recorder,
            on_progress=lambda count, total, sample: progress.update(task, completed=count),
        )
        previous = _install_signal_handlers(sampler)
        try:
            series = sampler.start(config.interval_seconds, config.duration_seconds, config.top_processes_count)
        finally:
            _restore_signal_handlers(previous)

    logger.info("Collected %d samples (%s), log at %s", len(series), sampler.state.value, config.log_path)
    return series


def _install_signal_handlers(sampler: Sampler) -> Dict[int, Any]:
    def handle(signum, frame):
        logger.warning("Received %s, stopping after the current sample", signal.Signals(signum).name)
        sampler.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle)
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _to_json(diagnosis: Diagnosis) -> str:
    payload: Dict[str, Any] = asdict(diagnosis)
    payload["healthy"] = diagnosis.healthy
    for verdict, raw in zip(diagnosis.verdicts, payload["verdicts"]):
        raw["descriptions"] = sorted(verdict.descriptions)
    return json.dumps(payload, ensure_ascii=False, indent=2, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _render_rich(diagnosis: Diagnosis) -> None:
    console = Console()

    console.print(
        Panel(
            f"采样 {diagnosis.started:%Y-%m-%d %H:%M:%S} - {diagnosis.finished:%H:%M:%S}（{diagnosis.sample_count} 个点）",
            style="bold cyan",
        )
    )

    summary = Table(title="指标概览", box=box.ROUNDED)
    summary.add_column("指标", style="bold")
    summary.add_column("平均", justify="right")
    summary.add_column("峰值", justify="right")
    for metric, label in METRIC_LABELS.items():
        stats = diagnosis.summary[metric]
        summary.add_row(label, format_value(stats.average), format_value(stats.maximum))
    console.print(summary)

    console.print(_rich_offender_table("CPU 常客", diagnosis.top_cpu_offenders))
    console.print(_rich_offender_table("内存常客", diagnosis.top_memory_offenders))
    console.print(_rich_offender_table("I/O 常客", diagnosis.top_io_offenders))

    if diagnosis.healthy:
        console.print(Panel("未发现明显瓶颈，性能正常。", style="bold green"))
        return

    issues = Table(title=f"可能的瓶颈（{len(diagnosis.verdicts)} 个超限时段）", box=box.SIMPLE_HEAD)
    issues.add_column("问题", style="bold red")
    issues.add_column("原因")
    issues.add_column("证据")
    issues.add_column("解决方案")
    for bottleneck in diagnosis.recommendations:
        issues.add_row(
            bottleneck.title,
            bottleneck.issue,
            bottleneck.evidence,
            "\n".join(bottleneck.solutions),
        )
    console.print(issues)


def _rich_offender_table(title: str, offenders: Sequence[ProcessAggregate]) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("进程")
    table.add_column("CPU 前列", justify="right")
    table.add_column("内存前列", justify="right")
    table.add_column("I/O 前列", justify="right")

    if not offenders:
        table.add_row("无进程数据", "-", "-", "-")
        return table

    for agg in offenders:
        table.add_row(agg.name, str(agg.cpu_count), str(agg.memory_count), str(agg.io_count))
    return table


if __name__ == "__main__":
    sys.exit(main())
