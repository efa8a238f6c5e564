"""Fixed-cadence collection loop that turns metric reads into samples."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
import logging
import threading
import time
from typing import Callable, List, Optional

from .config import planned_iterations
from .errors import InvalidConfiguration, RecorderWriteFailure
from .ranking import rank_processes
from .recorder import CsvRecorder
from .system_state import MetricSource, Sample, Series

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, Sample], None]


class SamplerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Sampler:
    """Drive ``source`` every ``interval`` seconds for ``duration`` seconds.

    Each step starts ``interval`` seconds after the previous one started, so
    read overhead does not stretch the cadence; a step that overruns is
    followed immediately by the next. ``cancel`` is honoured at step
    boundaries and the samples gathered so far are returned.
    """

    def __init__(
        self,
        source: MetricSource,
        recorder: Optional[CsvRecorder] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Optional[Callable[[float], object]] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.source = source
        self.recorder = recorder
        self.on_progress = on_progress
        self.state = SamplerState.IDLE
        self._cancelled = threading.Event()
        # Waiting on the event lets a cancel cut the idle gap short.
        self._sleep = sleep or self._cancelled.wait
        self._clock = clock
        self._now = now

    def cancel(self) -> None:
        self._cancelled.set()

    def start(self, interval: float, duration: float, top_k: int) -> Series:
        if self.state is not SamplerState.IDLE:
            raise InvalidConfiguration(f"sampler already {self.state.value}", "state", self.state)
        if not interval > 0:
            raise InvalidConfiguration("interval must be greater than 0 seconds", "interval", interval)
        if top_k < 1:
            raise InvalidConfiguration("top process count must be at least 1", "top_k", top_k)
        iterations = planned_iterations(interval, duration)
        if iterations < 1:
            raise InvalidConfiguration(
                f"duration {duration:g}s does not fit a single {interval:g}s interval", "duration", duration
            )

        self.state = SamplerState.RUNNING
        self._open_recorder()
        samples: List[Sample] = []
        for step in range(iterations):
            if self._cancelled.is_set():
                break
            started = self._clock()
            sample = self._capture(top_k)
            samples.append(sample)
            self._record(sample)
            if self.on_progress is not None:
                self.on_progress(len(samples), iterations, sample)
            if step + 1 < iterations:
                remaining = interval - (self._clock() - started)
                if remaining > 0:
                    self._sleep(remaining)

        if len(samples) < iterations:
            self.state = SamplerState.CANCELLED
            logger.info("Sampling cancelled after %d of %d samples", len(samples), iterations)
        else:
            self.state = SamplerState.COMPLETED
        return tuple(samples)

    def _capture(self, top_k: int) -> Sample:
        timestamp = self._now()
        system = self.source.read_system_metrics()
        ranking = rank_processes(self.source.list_processes(), self.source.read_process_io(), top_k)
        return Sample(
            timestamp=timestamp,
            system=system,
            top_by_cpu=ranking.top_by_cpu,
            top_by_memory=ranking.top_by_memory,
            top_by_io=ranking.top_by_io,
        )

    def _open_recorder(self) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.open()
        except RecorderWriteFailure as exc:
            logger.warning("%s; samples are kept in memory only", exc)

    def _record(self, sample: Sample) -> None:
        if self.recorder is None:
            return
        try:
            self.recorder.append(sample)
        except RecorderWriteFailure as exc:
            logger.warning("%s; continuing with in-memory samples", exc)
