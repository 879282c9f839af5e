"""Tests for the job runtime loop: drain, debounce, flush, rebuild."""

import logging

import pytest
from watchdog.events import FileModifiedEvent

from conftest import FakeClock, FakeObserver, RecordingExecutor
from watchsync import DebounceState, JobRuntime, SyncResult


def write_event(runtime, name="file.txt"):
    runtime.handler.dispatch(FileModifiedEvent(f"{runtime.job.root}/{name}"))


def run_ticks(runtime, clock, seconds, events_at=(), step=0.2):
    """Tick every `step` seconds for `seconds`; returns the times a flush happened."""
    flushes = []
    events_at = list(events_at)
    ticks = int(round(seconds / step)) + 1
    for i in range(ticks):
        t = round(i * step, 3)
        clock.now = t
        while events_at and events_at[0] <= t:
            events_at.pop(0)
            write_event(runtime)
        if runtime.tick():
            flushes.append(t)
    return flushes


@pytest.fixture
def runtime_factory(make_job, clock):
    def _make(executor=None, **job_overrides):
        return JobRuntime(
            make_job(**job_overrides),
            executor=executor or RecordingExecutor(),
            observer=FakeObserver(),
            clock=clock,
            sleep=lambda s: None,
        )

    return _make


class TestJobRuntime:
    def test_start_builds_tree_and_starts_observer(self, runtime_factory):
        runtime = runtime_factory()
        runtime.start()

        assert runtime.observer.started
        assert runtime.observer.scheduled == [(runtime.job.root, True)]
        assert len(runtime.tree) == 4

    def test_no_events_no_flush(self, runtime_factory, clock):
        executor = RecordingExecutor()
        runtime = runtime_factory(executor)
        runtime.start()

        assert run_ticks(runtime, clock, 2.0) == []
        assert executor.calls == []

    def test_single_write_flushes_after_quiet_period(self, runtime_factory, clock):
        executor = RecordingExecutor()
        runtime = runtime_factory(executor)
        runtime.start()

        flushes = run_ticks(runtime, clock, 2.0, events_at=[0.0])

        assert len(flushes) == 1
        assert 0.5 <= flushes[0] <= 0.7
        assert executor.calls == [runtime.job]
        assert runtime.debouncer.state is DebounceState.IDLE

    def test_burst_is_coalesced(self, runtime_factory, clock):
        executor = RecordingExecutor()
        runtime = runtime_factory(executor)
        runtime.start()

        flushes = run_ticks(runtime, clock, 3.0, events_at=[0.0, 0.3, 0.6])

        assert len(flushes) == 1
        assert flushes[0] >= 1.1

    def test_many_events_in_one_tick_count_once(self, runtime_factory, clock):
        runtime = runtime_factory()
        runtime.start()
        for i in range(50):
            write_event(runtime, f"f{i}")

        assert runtime.drain() == 50
        assert runtime.drain() == 0

    def test_flush_rebuilds_tree(self, runtime_factory, clock, tree_root):
        runtime = runtime_factory()
        runtime.start()

        new_dir = tree_root / "c" / "fresh"
        new_dir.mkdir()
        write_event(runtime)
        run_ticks(runtime, clock, 0.4)
        assert str(new_dir) not in runtime.tree

        clock.now = 1.0
        assert runtime.tick()
        assert str(new_dir) in runtime.tree

    def test_failed_sync_is_logged_and_not_retried(self, runtime_factory, clock, caplog):
        executor = RecordingExecutor(SyncResult(returncode=23, lines=["rsync: connection refused"]))
        runtime = runtime_factory(executor)
        runtime.start()

        with caplog.at_level(logging.INFO, logger="watchsync"):
            flushes = run_ticks(runtime, clock, 3.0, events_at=[0.0])

        assert len(flushes) == 1
        assert len(executor.calls) == 1
        assert "[site] === RSYNC ERROR (exit code 23) ===" in caplog.text
        assert runtime.debouncer.state is DebounceState.IDLE

    def test_sync_start_failure_returns_to_idle(self, runtime_factory, clock, tree_root, caplog):
        executor = RecordingExecutor(error=FileNotFoundError(2, "No such file or directory", "rsync"))
        runtime = runtime_factory(executor)
        runtime.start()
        (tree_root / "later").mkdir()

        with caplog.at_level(logging.ERROR, logger="watchsync"):
            flushes = run_ticks(runtime, clock, 2.0, events_at=[0.0])

        assert len(flushes) == 1
        assert "Could not start sync" in caplog.text
        assert runtime.debouncer.state is DebounceState.IDLE
        assert str(tree_root / "later") in runtime.tree

    def test_change_after_flush_triggers_again(self, runtime_factory, clock):
        executor = RecordingExecutor()
        runtime = runtime_factory(executor)
        runtime.start()

        flushes = run_ticks(runtime, clock, 4.0, events_at=[0.0, 2.0])

        assert len(flushes) == 2
        assert len(executor.calls) == 2

    def test_jobs_are_independent(self, make_job, tree_root):
        """A failing job does not change the flush timing of its neighbours."""
        timings = {}
        for name, result in [
            ("ok-1", SyncResult(0, [])),
            ("broken", SyncResult(12, ["error"])),
            ("ok-2", SyncResult(0, [])),
        ]:
            clock = FakeClock()
            runtime = JobRuntime(
                make_job(name=name),
                executor=RecordingExecutor(result),
                observer=FakeObserver(),
                clock=clock,
                sleep=lambda s: None,
            )
            runtime.start()
            timings[name] = run_ticks(runtime, clock, 2.0, events_at=[0.0])

        assert timings["ok-1"] == timings["ok-2"] == timings["broken"]

    def test_run_stops_observer_on_interrupt(self, make_job):
        calls = []

        def interrupting_sleep(seconds):
            calls.append(seconds)
            raise KeyboardInterrupt

        observer = FakeObserver()
        runtime = JobRuntime(make_job(), executor=RecordingExecutor(), observer=observer, sleep=interrupting_sleep)

        with pytest.raises(KeyboardInterrupt):
            runtime.run()

        assert calls == [0.2]
        assert observer.stopped
