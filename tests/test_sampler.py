from datetime import datetime

import pytest

from perf_probe.diagnostics import analyze
from perf_probe.errors import InvalidConfiguration, RecorderWriteFailure
from perf_probe.sampler import Sampler, SamplerState
from perf_probe.system_state import ProcessInfo, SystemMetrics


class FakeSource:
    capabilities = frozenset()

    def __init__(self, cpu_values=None):
        self.cpu_values = list(cpu_values or [])
        self.calls = 0

    def read_system_metrics(self):
        self.calls += 1
        cpu = self.cpu_values.pop(0) if self.cpu_values else 10.0
        return SystemMetrics(cpu_percent=cpu, memory_percent=50.0)

    def list_processes(self):
        return [
            ProcessInfo(pid=1, name="worker", user="bob", cpu_percent=30.0, memory_bytes=1024**3),
            ProcessInfo(pid=2, name="idle", user=None, cpu_percent=70.0, memory_bytes=0),
        ]

    def read_process_io(self):
        return {"worker": 1024.0**2}


class FakeClock:
    """Advances by ``step`` seconds every time it is read."""

    def __init__(self, step: float):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class ListRecorder:
    def __init__(self, fail_on=()):
        self.opened = False
        self.rows = []
        self.attempts = 0
        self.fail_on = set(fail_on)

    def open(self):
        self.opened = True
        return self

    def append(self, sample):
        attempt = self.attempts
        self.attempts += 1
        if attempt in self.fail_on:
            raise RecorderWriteFailure("disk full")
        self.rows.append(sample)
        return sample


def no_sleep(seconds):
    return None


def test_runs_planned_iterations():
    source = FakeSource()
    sampler = Sampler(source, sleep=no_sleep)
    series = sampler.start(interval=0.01, duration=0.1, top_k=3)

    assert len(series) == 10
    assert sampler.state is SamplerState.COMPLETED
    assert source.calls == 10


def test_sample_contents():
    stamp = datetime(2024, 1, 1, 12, 0, 0)
    sampler = Sampler(FakeSource([55.0]), sleep=no_sleep, now=lambda: stamp)
    (sample,) = sampler.start(interval=1, duration=1, top_k=5)

    assert sample.timestamp == stamp
    assert sample.system.cpu_percent == 55.0
    assert [r.name for r in sample.top_by_cpu] == ["worker"]
    assert sample.top_by_memory[0].memory_mb == 1024
    assert sample.top_by_io[0].io_mbps == 1


@pytest.mark.parametrize(
    "interval,duration,top_k",
    [(1, 0, 5), (0, 10, 5), (-1, 10, 5), (5, 4, 5), (1, 10, 0)],
)
def test_invalid_configuration_before_any_read(interval, duration, top_k):
    source = FakeSource()
    recorder = ListRecorder()
    sampler = Sampler(source, recorder, sleep=no_sleep)

    with pytest.raises(InvalidConfiguration):
        sampler.start(interval=interval, duration=duration, top_k=top_k)
    assert source.calls == 0
    assert not recorder.opened
    assert sampler.state is SamplerState.IDLE


def test_cancel_mid_run_keeps_partial_series():
    sampler = None

    def stop_after_four(count, total, sample):
        assert total == 10
        if count == 4:
            sampler.cancel()

    sampler = Sampler(FakeSource([95.0] * 10), on_progress=stop_after_four, sleep=no_sleep)
    series = sampler.start(interval=1, duration=10, top_k=5)

    assert len(series) == 4
    assert sampler.state is SamplerState.CANCELLED
    diagnosis = analyze(series)
    assert diagnosis.sample_count == 4
    assert len(diagnosis.verdicts) == 4


def test_cancel_interrupts_default_sleep():
    sampler = None

    def stop_now(count, total, sample):
        sampler.cancel()

    # Default sleep waits on the cancel event, so this returns without waiting an hour.
    sampler = Sampler(FakeSource(), on_progress=stop_now)
    series = sampler.start(interval=3600, duration=7200, top_k=1)
    assert len(series) == 1


def test_sleep_accounts_for_collection_time():
    sleeps = []
    sampler = Sampler(FakeSource(), sleep=sleeps.append, clock=FakeClock(step=0.25))
    sampler.start(interval=1, duration=3, top_k=1)
    # Each step reads the clock twice, 0.25s apart; no sleep after the last step.
    assert sleeps == [pytest.approx(0.75), pytest.approx(0.75)]


def test_overrun_proceeds_without_sleeping():
    sleeps = []
    sampler = Sampler(FakeSource(), sleep=sleeps.append, clock=FakeClock(step=2.0))
    series = sampler.start(interval=1, duration=3, top_k=1)
    assert len(series) == 3
    assert sleeps == []


def test_records_every_sample():
    recorder = ListRecorder()
    series = Sampler(FakeSource(), recorder, sleep=no_sleep).start(interval=1, duration=3, top_k=2)
    assert recorder.opened
    assert list(series) == recorder.rows


def test_recorder_failure_does_not_stop_collection(caplog):
    recorder = ListRecorder(fail_on={1})
    series = Sampler(FakeSource(), recorder, sleep=no_sleep).start(interval=1, duration=3, top_k=2)

    assert len(series) == 3
    assert len(recorder.rows) == 2
    assert "disk full" in caplog.text


def test_sampler_cannot_be_restarted():
    sampler = Sampler(FakeSource(), sleep=no_sleep)
    sampler.start(interval=1, duration=1, top_k=1)
    with pytest.raises(InvalidConfiguration):
        sampler.start(interval=1, duration=1, top_k=1)
