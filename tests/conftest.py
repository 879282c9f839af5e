"""Shared fakes for the watchsync tests."""

import pytest

from watchsync import RemoteTarget, SyncResult, WatchJob


class FakeObserver:
    """Records schedule() calls; `fail` makes scheduling raise like an exhausted inotify."""

    def __init__(self, fail=False):
        self.fail = fail
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        if self.fail:
            raise OSError(24, "inotify instance limit reached")
        self.scheduled.append((path, recursive))
        return (path, recursive)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingExecutor:
    def __init__(self, result=None, error=None):
        self.result = result or SyncResult(returncode=0, lines=[])
        self.error = error
        self.calls = []

    def run(self, job):
        self.calls.append(job)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tree_root(tmp_path):
    root = tmp_path / "src"
    (root / "a" / "b").mkdir(parents=True)
    (root / "c").mkdir()
    (root / "file.txt").write_text("x")
    return root


@pytest.fixture
def make_job(tree_root):
    def _make(**overrides):
        fields = dict(
            name="site",
            root=str(tree_root),
            quiet_period=0.5,
            remote=RemoteTarget(user="deploy", host="mirror", root="/srv/www"),
        )
        fields.update(overrides)
        return WatchJob(**fields)

    return _make
