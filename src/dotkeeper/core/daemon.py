"""Watcher daemon.

The daemon polls the stat signature of every tracked live path, collects
changes into a burst and, once the burst has been quiet for the debounce
interval, hands the changed paths to a callback exactly once. Only one daemon
may run per base directory; :class:`DaemonLock` holds an exclusive file lock
for the daemon's whole lifetime and records its PID next to it.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from filelock import FileLock, Timeout

from .errors import DaemonError

logger = logging.getLogger(__name__)

LOCK_FILE = "daemon.lock"
PID_FILE = "daemon.pid"

Signature = Optional[Tuple[int, int, int, int]]


class DaemonLock:
    """Exclusive, single-owner lock for the daemon.

    Usage::

        with DaemonLock(base_dir):
            run_forever()
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.lock_path = self.base_dir / LOCK_FILE
        self.pid_path = self.base_dir / PID_FILE
        self._lock = FileLock(str(self.lock_path))

    @property
    def is_held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        """Take the lock and record this process's PID.

        Raises:
            DaemonError: If another daemon holds the lock.
        """
        self.base_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout as e:
            pid = read_pid(self.pid_path)
            raise DaemonError(f"Daemon is already running (PID: {pid or 'unknown'})") from e
        self.pid_path.write_text(f"{os.getpid()}\n")

    def release(self) -> None:
        if not self._lock.is_locked:
            return
        if self.pid_path.exists():
            self.pid_path.unlink()
        self._lock.release()

    def __enter__(self) -> "DaemonLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def read_pid(pid_path: Path) -> Optional[int]:
    try:
        return int(Path(pid_path).read_text().strip())
    except (OSError, ValueError):
        return None


def running_pid(base_dir: Path) -> Optional[int]:
    """PID of the running daemon, or ``None`` if no daemon holds the lock."""
    if not Path(base_dir).is_dir():
        return None
    probe = FileLock(str(Path(base_dir) / LOCK_FILE))
    try:
        probe.acquire(timeout=0)
    except Timeout:
        return read_pid(Path(base_dir) / PID_FILE) or -1
    probe.release()
    return None


def stop(base_dir: Path, timeout: float = 5.0) -> int:
    """Send SIGTERM to the running daemon and wait for it to exit.

    Returns:
        The PID that was signalled.

    Raises:
        DaemonError: If no daemon is running or it does not exit in time.
    """
    pid = running_pid(base_dir)
    if pid is None or pid < 0:
        raise DaemonError("Daemon is not running")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError as e:
        raise DaemonError(f"Daemon process {pid} not found") from e

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if running_pid(base_dir) is None:
            return pid
        time.sleep(0.1)
    raise DaemonError(f"Daemon (PID: {pid}) did not stop within {timeout}s")


class Debouncer:
    """Collects changes and releases them once a burst goes quiet."""

    def __init__(self, delay: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.delay = delay
        self.clock = clock
        self.pending: Set[str] = set()
        self._last_event: Optional[float] = None

    def add(self, paths: Iterable[str]) -> None:
        paths = set(paths)
        if paths:
            self.pending.update(paths)
            self._last_event = self.clock()

    def ready(self) -> bool:
        return (
            bool(self.pending)
            and self._last_event is not None
            and self.clock() - self._last_event >= self.delay
        )

    def drain(self) -> Set[str]:
        drained, self.pending, self._last_event = self.pending, set(), None
        return drained


class PollingWatcher:
    """Detects changes by comparing ``lstat`` signatures between polls."""

    def __init__(self, paths: Dict[str, Path]) -> None:
        self.paths = dict(paths)
        self._signatures = {key: _signature(path) for key, path in self.paths.items()}

    def poll(self) -> Set[str]:
        """Keys whose signature changed since the previous poll."""
        changed = set()
        for key, path in self.paths.items():
            current = _signature(path)
            if current != self._signatures.get(key):
                self._signatures[key] = current
                changed.add(key)
        return changed


def _signature(path: Path) -> Signature:
    try:
        st = os.lstat(path)
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size, st.st_ino, st.st_mode)


class Daemon:
    """Polling loop that fires ``on_burst`` once per debounced burst of changes.

    Attributes:
        watcher (PollingWatcher): Source of change events.
        debouncer (Debouncer): Groups events into bursts.
        on_burst (Callable): Receives the sorted changed paths of each burst.
        poll_interval (float): Seconds between polls.
    """

    def __init__(
        self,
        watcher: PollingWatcher,
        debouncer: Debouncer,
        on_burst: Callable[[List[str]], None],
        poll_interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.watcher = watcher
        self.debouncer = debouncer
        self.on_burst = on_burst
        self.poll_interval = poll_interval
        self.sleep = sleep
        self._running = False

    def step(self) -> bool:
        """Run one poll. Returns True if a burst was handed to ``on_burst``."""
        changed = self.watcher.poll()
        for path in sorted(changed):
            logger.info("Change detected: %s", path)
        self.debouncer.add(changed)
        if not self.debouncer.ready():
            return False
        burst = sorted(self.debouncer.drain())
        logger.info("Processing %d changed file(s)", len(burst))
        self.on_burst(burst)
        return True

    def stop(self, *_: object) -> None:
        self._running = False

    def run(self, max_iterations: Optional[int] = None) -> None:
        """Poll until stopped (SIGTERM/SIGINT) or ``max_iterations`` polls."""
        self._running = True
        iterations = 0
        while self._running:
            self.step()
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            self.sleep(self.poll_interval)
        logger.info("Daemon stopped")
