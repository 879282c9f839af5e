# /watchsync.py
"""
WatchSync
- Watches one or more local directory trees and mirrors them to a remote host
  with rsync once the tree has been quiet for a configurable delay.
- Foreground mode: one job from a config file, logs to the console.
- Daemon mode: one isolated process per job file in /etc/watchsync.d,
  global defaults from /etc/watchsync.conf, logs to syslog.
- Each job has one recursive notification source on its root. Only directories
  found by the last walk of the tree count (no symlinks followed); the tree is
  re-walked after every sync to pick up new directories.
- Bursts of changes are coalesced: a sync runs only after `rsync.delay_ms`
  of silence, checked every 200 ms.

Config (key = value, '#' comments, must be chmod 0600/0700)
  local.root        = /srv/www
  remote.user       = deploy
  remote.host       = mirror.example.org
  remote.root       = /srv/www
  remote.password   = secret           (optional, uses sshpass)
  rsync.delete      = true
  rsync.delay_ms    = 500
  exclude           = *.tmp            (repeatable)
  watch.polling     = false            (use the polling observer)
  watch.honor_excludes = false         (don't watch / trigger on excluded paths)

Usage
  pip install watchdog pathspec colorama
  watchsync -c ./site.conf
  watchsync -d
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import getpass
import logging
import logging.handlers
import multiprocessing
import multiprocessing.connection
import os
import queue
import stat
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Optional, Sequence

from pathspec import PathSpec
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

try:
    from colorama import init as colorama_init  # type: ignore
except Exception:  # pragma: no cover
    colorama_init = None

__version__ = "1.3.0"

MAIN_CONFIG = Path("/etc/watchsync.conf")
JOBS_DIR = Path("/etc/watchsync.d")

MAX_JOBS = 64
DEFAULT_DELAY_MS = 500
POLL_INTERVAL_SEC = 0.2
EVENT_QUEUE_SIZE = 16384

LOGGER_NAME = "watchsync"


class WatchSyncError(Exception):
    pass


class ConfigError(WatchSyncError, ValueError):
    pass


class NoJobsError(ConfigError):
    pass


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    LIGHT_BROWN = "\x1b[33m"


MARKER_COLORS = {
    "RSYNC_START": Ansi.GREEN,
    "RSYNC_OK": Ansi.GREEN,
    "RSYNC_ERROR": Ansi.RED,
}

# first character of an --itemize-changes line
ITEM_COLORS = {
    ">": Ansi.GREEN,
    "<": Ansi.GREEN,
    "c": Ansi.LIGHT_BROWN,
    "*": Ansi.ORANGE,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        marker = getattr(record, "marker", None)
        if marker in MARKER_COLORS:
            return f"{MARKER_COLORS[marker]}{base}{Ansi.RESET}"

        item = getattr(record, "item", None)
        if item:
            color = ITEM_COLORS.get(item[0], "")
            if color and item in base:
                base = base.replace(item, f"{color}{item}{Ansi.RESET}", 1)

        return base


class _BelowLevel(logging.Filter):
    def __init__(self, level: int):
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.level


def _today_log_name(prefix: str = "watchsync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def _reset_logger(level: int) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    return logger


def setup_console_logger(log_dir: Optional[Path] = None, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger = _reset_logger(level)

    if colorama_init:
        colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(_BelowLevel(logging.ERROR))
    out.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.ERROR)
    err.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stderr), fmt=fmt, datefmt=datefmt))

    logger.addHandler(out)
    logger.addHandler(err)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def setup_syslog_logger(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger = _reset_logger(level)

    facility = logging.handlers.SysLogHandler.LOG_DAEMON
    try:
        handler = logging.handlers.SysLogHandler(address="/dev/log", facility=facility)
    except OSError:
        handler = logging.handlers.SysLogHandler(facility=facility)
    handler.setFormatter(logging.Formatter("watchsync[%(process)d]: %(message)s"))
    logger.addHandler(handler)
    return logger


class JobLogger(logging.LoggerAdapter):
    """Tags every record with the job name, as `[name] message` and `record.job`."""

    def process(self, msg, kwargs):
        name = self.extra["job"]
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("job", name)
        kwargs["extra"] = extra
        return f"[{name}] {msg}", kwargs


def job_logger(name: str) -> JobLogger:
    return JobLogger(logging.getLogger(LOGGER_NAME), {"job": name})


# -------------------------
# Jobs / config
# -------------------------

@dataclass(frozen=True)
class RemoteTarget:
    user: str
    host: str
    root: str
    password: str = field(default="", repr=False)

    def destination(self) -> str:
        prefix = f"{self.user}@" if self.user else ""
        return f"{prefix}{self.host}:{self.root}/"


@dataclass(frozen=True)
class WatchJob:
    name: str
    root: str
    quiet_period: float
    remote: RemoteTarget
    delete: bool = False
    excludes: tuple[str, ...] = ()
    honor_excludes: bool = False
    polling: bool = False


def default_settings() -> dict:
    return {"delay_ms": DEFAULT_DELAY_MS, "delete": False, "exclude": []}


def check_permissions(path: Path, logger: Optional[logging.Logger] = None) -> bool:
    """False if `path` is missing or accessible by group/others."""
    try:
        mode = path.stat().st_mode
    except OSError:
        return False
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        (logger or logging.getLogger(LOGGER_NAME)).error(
            "Security Error: '%s' has too open permissions. Must be 0600 or 0700.", path
        )
        return False
    return True


def _parse_bool(value: str) -> bool:
    return value == "true"


def _parse_delay(value: str, source: Path) -> int:
    try:
        delay = int(value)
    except ValueError:
        raise ConfigError(f"Invalid rsync.delay_ms '{value}' in {source}") from None
    if delay < 0:
        raise ConfigError(f"rsync.delay_ms must not be negative in {source}")
    return delay


def parse_config_file(path: Path, base: Optional[dict] = None, logger: Optional[logging.Logger] = None) -> dict:
    """
    Read one key = value file on top of a copy of `base`.
    Insecure or unreadable files contribute nothing (a warning is logged).
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    settings = dict(base or default_settings())
    settings["exclude"] = list(settings.get("exclude", []))

    if not check_permissions(path, logger):
        logger.warning("Skipping insecure config file: %s", path)
        return settings

    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        logger.warning("Could not open config file %s", path)
        return settings

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = (part.strip() for part in line.split("=", 1))

        if key == "local.root":
            root = Path(val).expanduser()
            if root.is_dir():
                settings["root"] = os.path.realpath(root)
            else:
                settings.pop("root", None)
                logger.error("Error: Invalid local.root '%s' in %s", val, path)
        elif key == "remote.user":
            settings["user"] = val
        elif key == "remote.host":
            settings["host"] = val
        elif key == "remote.root":
            settings["remote_root"] = val
        elif key == "remote.password":
            settings["password"] = val
        elif key == "rsync.delete":
            settings["delete"] = _parse_bool(val)
        elif key == "rsync.delay_ms":
            settings["delay_ms"] = _parse_delay(val, path)
        elif key == "exclude":
            settings["exclude"].append(val)
        elif key == "watch.polling":
            settings["polling"] = _parse_bool(val)
        elif key == "watch.honor_excludes":
            settings["honor_excludes"] = _parse_bool(val)

    return settings


def job_from_settings(name: str, settings: dict) -> WatchJob:
    root = settings.get("root")
    if not root:
        raise ConfigError(f"Job '{name}' has no valid local.root")
    return WatchJob(
        name=name,
        root=root,
        quiet_period=settings.get("delay_ms", DEFAULT_DELAY_MS) / 1000.0,
        remote=RemoteTarget(
            user=settings.get("user", ""),
            host=settings.get("host", ""),
            root=settings.get("remote_root", ""),
            password=settings.get("password", ""),
        ),
        delete=bool(settings.get("delete", False)),
        excludes=tuple(settings.get("exclude", ())),
        honor_excludes=bool(settings.get("honor_excludes", False)),
        polling=bool(settings.get("polling", False)),
    )


def load_foreground_job(config_file: Path, logger: Optional[logging.Logger] = None) -> WatchJob:
    settings = parse_config_file(config_file, logger=logger)
    try:
        return job_from_settings("cli", settings)
    except ConfigError:
        raise ConfigError("Configuration file is invalid or insecure.") from None


def load_daemon_jobs(
    main_config: Path = MAIN_CONFIG,
    jobs_dir: Path = JOBS_DIR,
    logger: Optional[logging.Logger] = None,
) -> tuple[WatchJob, ...]:
    """
    Build the daemon roster: `main_config` supplies defaults, every regular
    file in `jobs_dir` (sorted by name) is one job. Raises NoJobsError if empty.
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    defaults = default_settings()
    if main_config.exists():
        defaults = parse_config_file(main_config, defaults, logger)

    jobs: list[WatchJob] = []
    entries: list[Path] = []
    if not check_permissions(jobs_dir, logger):
        logger.error("Error: Config directory %s is insecure.", jobs_dir)
    else:
        try:
            entries = sorted(jobs_dir.iterdir())
        except OSError as e:
            logger.error("Could not read config directory %s: %s", jobs_dir, e)
        for entry in entries:
            if entry.is_symlink() or not entry.is_file():
                continue
            if len(jobs) >= MAX_JOBS:
                logger.warning("Job limit (%d) reached, skipping %s", MAX_JOBS, entry)
                continue
            try:
                jobs.append(job_from_settings(entry.name, parse_config_file(entry, defaults, logger)))
            except ConfigError as e:
                logger.error("Skipping job %s: %s", entry.name, e)

    if not jobs:
        raise NoJobsError(f"No valid jobs found. Check permissions and {jobs_dir}/")
    return tuple(jobs)


def prompt_password(job: WatchJob) -> WatchJob:
    password = getpass.getpass(f"Remote password for {job.remote.user}@{job.remote.host}: ").strip()
    return replace(job, remote=replace(job.remote, password=password))


# -------------------------
# Ignore matching
# -------------------------

class IgnoreMatcher:
    def __init__(self, root: str, patterns: Sequence[str]):
        self.root = root
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)

    def is_ignored(self, path: str, is_dir: bool = False) -> bool:
        rel = os.path.relpath(path, self.root)
        if rel == os.curdir or rel == os.pardir or rel.startswith(os.pardir + os.sep):
            return False
        rel_posix = Path(rel).as_posix()
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


# -------------------------
# Sync executor (rsync)
# -------------------------

@dataclass(frozen=True)
class SyncResult:
    returncode: int
    lines: list[str]

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class RsyncExecutor:
    """Runs one blocking rsync transfer of a job's root to its remote target."""

    def __init__(self, rsync: str = "rsync", sshpass: str = "sshpass"):
        self.rsync = rsync
        self.sshpass = sshpass

    def build_command(self, job: WatchJob, exclude_file: Optional[str] = None) -> list[str]:
        cmd = [self.rsync, "-az", "--itemize-changes"]
        if job.delete:
            cmd.append("--delete")
        if exclude_file:
            cmd.append(f"--exclude-from={exclude_file}")
        cmd += [f"{job.root}/", job.remote.destination()]
        if job.remote.password:
            cmd = [self.sshpass, "-e"] + cmd
        return cmd

    def build_env(self, job: WatchJob) -> Optional[dict]:
        if not job.remote.password:
            return None
        env = dict(os.environ)
        env["SSHPASS"] = job.remote.password
        return env

    def run(self, job: WatchJob) -> SyncResult:
        exclude_file = None
        try:
            if job.excludes:
                with tempfile.NamedTemporaryFile(
                    "w", prefix="watchsync_excl_", delete=False, encoding="utf-8"
                ) as f:
                    exclude_file = f.name
                    f.write("".join(f"{p}\n" for p in job.excludes))

            proc = subprocess.run(
                self.build_command(job, exclude_file),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self.build_env(job),
                text=True,
                errors="replace",
            )
        finally:
            if exclude_file:
                try:
                    os.unlink(exclude_file)
                except OSError:
                    pass

        return SyncResult(returncode=proc.returncode, lines=proc.stdout.splitlines())


def log_report(logger: logging.LoggerAdapter, result: SyncResult) -> None:
    lines = [line.strip() for line in result.lines]
    lines = [line for line in lines if line]

    if not lines and result.ok:
        return

    if lines:
        logger.info("=== RSYNC START ===", extra={"marker": "RSYNC_START"})
        for line in lines:
            logger.info("%s", line, extra={"item": line})

    if result.ok:
        logger.info("=== RSYNC OK ===", extra={"marker": "RSYNC_OK"})
    else:
        logger.error("=== RSYNC ERROR (exit code %d) ===", result.returncode, extra={"marker": "RSYNC_ERROR"})


# -------------------------
# Watch tree
# -------------------------

WATCHED_EVENT_TYPES = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED})


class ChangeCollector(FileSystemEventHandler):
    """
    Runs on the observer's threads; only hands events over to the job loop
    through a bounded queue. When the queue is full events are dropped.

    `covers` decides which directories currently count: an event is kept only
    if its parent directory (either side, for moves) is covered.
    """

    def __init__(
        self,
        events: queue.Queue,
        ignore: Optional[IgnoreMatcher] = None,
        covers: Optional[Callable[[str], bool]] = None,
    ):
        self.events = events
        self.ignore = ignore
        self.covers = covers
        self.dropped = 0

    def _is_ignored(self, event: FileSystemEvent) -> bool:
        if self.ignore is None:
            return False
        if not self.ignore.is_ignored(event.src_path, is_dir=event.is_directory):
            return False
        dest = getattr(event, "dest_path", "")
        return not dest or self.ignore.is_ignored(dest, is_dir=event.is_directory)

    def _is_covered(self, event: FileSystemEvent) -> bool:
        if self.covers is None:
            return True
        if self.covers(os.path.dirname(event.src_path)):
            return True
        dest = getattr(event, "dest_path", "")
        return bool(dest) and self.covers(os.path.dirname(dest))

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in WATCHED_EVENT_TYPES:
            return
        # the child's own created/deleted/moved event is delivered as well
        if event.event_type == EVENT_TYPE_MODIFIED and event.is_directory:
            return
        if not self._is_covered(event) or self._is_ignored(event):
            return
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.dropped += 1


class WatchTree:
    """
    Watch handle -> directory path for one job root.

    The job has a single notification source: the root scheduled recursively
    on the observer (one inotify instance per job). Which directories count
    is decided here. Every real directory found by the last walk is covered;
    directories created since then stay silent until the next `build()`.

    A handle is the directory's (st_dev, st_ino), so building is additive and
    idempotent, and a directory deleted and recreated under the same path gets
    a fresh handle. Handles of deleted directories are kept; they never match.
    """

    def __init__(
        self,
        observer,
        handler: FileSystemEventHandler,
        root: str,
        logger: logging.LoggerAdapter,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.observer = observer
        self.handler = handler
        self.root = root
        self.logger = logger
        self.ignore = ignore
        self.watch = None
        self.watches: dict[tuple[int, int], str] = {}
        # read from the observer's threads; set add/lookup are atomic
        self._paths: set[str] = set()

    def __len__(self) -> int:
        return len(self.watches)

    def __contains__(self, path: str) -> bool:
        return path in self._paths

    def covers(self, path: str) -> bool:
        return path in self._paths

    def open(self) -> None:
        """Register the root with the observer. Failing here is fatal for the job."""
        try:
            self.watch = self.observer.schedule(self.handler, self.root, recursive=True)
        except OSError as e:
            raise WatchSyncError(f"Cannot watch {self.root}: {e}") from e

    def build(self) -> int:
        """Walk the root and register every directory; returns how many were new."""
        before = len(self.watches)
        self._add_recursive(self.root)
        added = len(self.watches) - before
        if added:
            self.logger.debug("Watch tree: +%d directories (%d total)", added, len(self.watches))
        return added

    def _add(self, path: str) -> bool:
        try:
            st = os.stat(path, follow_symlinks=False)
        except OSError as e:
            self.logger.warning("Cannot watch %s: %s", path, e)
            return False
        handle = (st.st_dev, st.st_ino)
        if handle not in self.watches:
            self.watches[handle] = path
            self._paths.add(path)
        return True

    def _add_recursive(self, path: str) -> None:
        if not self._add(path):
            return
        try:
            entries = list(os.scandir(path))
        except OSError as e:
            self.logger.warning("Cannot read %s, not watching below it: %s", path, e)
            return
        for entry in entries:
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
            except OSError:
                continue
            if self.ignore is not None and self.ignore.is_ignored(entry.path, is_dir=True):
                continue
            self._add_recursive(entry.path)


# -------------------------
# Debounce
# -------------------------

class DebounceState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"


class Debouncer:
    """
    Quiet-period rule. Every change moves to (or stays in) PENDING and restarts
    the countdown; `due()` is true once `quiet_period` seconds passed without
    a change.
    """

    def __init__(self, quiet_period: float, clock: Callable[[], float] = time.monotonic):
        self.quiet_period = quiet_period
        self.clock = clock
        self.pending = False
        self.last_event_time = 0.0

    @property
    def state(self) -> DebounceState:
        return DebounceState.PENDING if self.pending else DebounceState.IDLE

    def notify(self) -> None:
        self.pending = True
        self.last_event_time = self.clock()

    def due(self) -> bool:
        return self.pending and self.clock() - self.last_event_time >= self.quiet_period

    def reset(self) -> None:
        self.pending = False


# -------------------------
# Job runtime
# -------------------------

def make_observer(job: WatchJob):
    return PollingObserver() if job.polling else Observer()


class JobRuntime:
    def __init__(
        self,
        job: WatchJob,
        executor: Optional[RsyncExecutor] = None,
        observer=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL_SEC,
        logger: Optional[logging.LoggerAdapter] = None,
    ):
        self.job = job
        self.executor = executor or RsyncExecutor()
        self.observer = observer if observer is not None else make_observer(job)
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.logger = logger or job_logger(job.name)

        ignore = IgnoreMatcher(job.root, job.excludes) if job.honor_excludes else None
        self.events: queue.Queue = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.handler = ChangeCollector(self.events, ignore)
        self.tree = WatchTree(self.observer, self.handler, job.root, self.logger, ignore)
        self.handler.covers = self.tree.covers
        self.debouncer = Debouncer(job.quiet_period, clock)
        self.flushes = 0

    def start(self) -> None:
        self.observer.start()
        self.tree.build()
        self.tree.open()
        self.logger.info("Monitoring %s", self.job.root)

    def stop(self) -> None:
        self.observer.stop()
        self.observer.join(timeout=10)

    def drain(self) -> int:
        count = 0
        while True:
            try:
                self.events.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def tick(self) -> bool:
        """One loop step: drain events, feed the debouncer, flush if due."""
        if self.drain():
            self.debouncer.notify()
        if self.debouncer.due():
            self.flush()
            return True
        return False

    def flush(self) -> None:
        try:
            result = self.executor.run(self.job)
        except OSError as e:
            self.logger.error("Could not start sync: %s", e)
        else:
            log_report(self.logger, result)
        self.flushes += 1
        self.debouncer.reset()
        self.tree.build()

    def run_forever(self) -> None:
        while True:
            self.tick()
            self.sleep(self.poll_interval)

    def run(self) -> None:
        self.start()
        try:
            self.run_forever()
        finally:
            self.stop()


def run_job(job: WatchJob) -> None:
    """Process entry point for one daemon job."""
    logger = job_logger(job.name)
    try:
        JobRuntime(job, logger=logger).run()
    except Exception:
        logger.exception("Job crashed")
        sys.exit(1)


# -------------------------
# Daemon
# -------------------------

def daemonize() -> None:
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    os.umask(0)
    os.chdir("/")

    sys.stdout.flush()
    sys.stderr.flush()
    fd = os.open(os.devnull, os.O_RDWR)
    for target in (0, 1, 2):
        os.dup2(fd, target)
    if fd > 2:
        os.close(fd)


class Supervisor:
    """
    One process per job, no restarts. `run()` returns once every child has
    exited, with each job's exit code.
    """

    def __init__(
        self,
        jobs: Sequence[WatchJob],
        target: Callable[[WatchJob], None] = run_job,
        logger: Optional[logging.Logger] = None,
    ):
        self.jobs = tuple(jobs)
        self.target = target
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.processes: list[multiprocessing.Process] = []
        self._ctx = multiprocessing.get_context("fork")

    def start(self) -> list[multiprocessing.Process]:
        if not self.jobs:
            raise NoJobsError("No valid jobs found.")
        self.logger.info("WatchSync daemon started with %d jobs", len(self.jobs))
        for job in self.jobs:
            proc = self._ctx.Process(target=self.target, args=(job,), name=f"watchsync-{job.name}")
            proc.start()
            self.processes.append(proc)
        return self.processes

    def wait(self) -> dict[str, Optional[int]]:
        by_sentinel = {p.sentinel: (job, p) for job, p in zip(self.jobs, self.processes)}
        codes: dict[str, Optional[int]] = {}
        while by_sentinel:
            for sentinel in multiprocessing.connection.wait(list(by_sentinel)):
                job, proc = by_sentinel.pop(sentinel)
                proc.join()
                codes[job.name] = proc.exitcode
                level = logging.INFO if proc.exitcode == 0 else logging.WARNING
                self.logger.log(level, "[%s] Job process %s exited with code %s", job.name, proc.pid, proc.exitcode)
        return codes

    def run(self) -> dict[str, Optional[int]]:
        self.start()
        return self.wait()


# -------------------------
# CLI / main
# -------------------------

def parse_args(argv: list[str]) -> tuple[argparse.Namespace, argparse.ArgumentParser]:
    p = argparse.ArgumentParser(
        prog="watchsync",
        description="Watch local directories and mirror them to a remote host with rsync.",
        epilog=(
            "Daemon mode logs to syslog. Foreground mode logs to stdout.\n"
            "Security note: config files and the job directory must not be group/world accessible."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-c", "--config", type=str, default=None, help="Run in FOREGROUND with this config file.")
    mode.add_argument("-d", "--daemon", action="store_true", help="Run as DAEMON, one process per job file.")
    p.add_argument("--config-file", type=str, default=str(MAIN_CONFIG), help="Daemon global config file.")
    p.add_argument("--config-dir", type=str, default=str(JOBS_DIR), help="Daemon job directory.")
    p.add_argument("--no-detach", action="store_true", help="Daemon mode without detaching; logs to the console.")
    p.add_argument("--log-dir", type=str, default=None, help="Also write console logs to a file in this directory.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    p.add_argument("--version", action="version", version=f"watchsync {__version__}")
    return p.parse_args(argv), p


def run_foreground(args: argparse.Namespace, level: int) -> int:
    logger = setup_console_logger(Path(args.log_dir) if args.log_dir else None, level)
    try:
        job = load_foreground_job(Path(args.config), logger)
    except ConfigError as e:
        logger.error("Config error: %s", e)
        return 1

    if not job.remote.password and sys.stdin.isatty():
        job = prompt_password(job)

    runtime = JobRuntime(job)
    runtime.start()
    logger.info("Watching... (Ctrl+C to stop)")
    try:
        runtime.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        runtime.stop()
        logger.info("Stopped.")
    return 0


def run_daemon(args: argparse.Namespace, level: int) -> int:
    if args.no_detach:
        logger = setup_console_logger(Path(args.log_dir) if args.log_dir else None, level)
    else:
        logger = setup_syslog_logger(level)

    try:
        jobs = load_daemon_jobs(Path(args.config_file), Path(args.config_dir), logger)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    if not args.no_detach:
        daemonize()

    Supervisor(jobs, logger=logger).run()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args, parser = parse_args(sys.argv[1:] if argv is None else argv)
    level = logging.DEBUG if args.verbose else logging.INFO

    if args.daemon:
        return run_daemon(args, level)
    if args.config:
        return run_foreground(args, level)

    parser.print_usage()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
