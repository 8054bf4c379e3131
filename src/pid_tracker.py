"""
PID Tracker Module
==================
Tracks which executable image each live PID is currently running.

strace -f shows many pids, and a single pid can execve() several times before
it exits. An example of pid/exec transitions for
``snap run --trace-exec test-snapd-sh -c /bin/true``:

    pid 20817 execve("snap-confine")
    pid 20817 execve("snap-exec")
    pid 20817 execve("/snap/test-snapd-sh/x2/bin/sh")
    pid 20817 execve("/bin/sh")
    pid 2023  execve("/bin/true")

Every transition that ends an image's run closes the live entry and produces
exactly one ExecutionRecord. Entries are removed on termination, so a pid the
kernel later reuses starts an unrelated record.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from strace_matchers import NANOSECONDS_PER_SECOND

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionRecord:
    """The completed run of one executable image in one process."""
    pid: str
    exe: str
    start: int      # nanoseconds since the epoch
    duration: int   # nanoseconds

    @property
    def end(self) -> int:
        return self.start + self.duration

    @property
    def start_seconds(self) -> float:
        return self.start / NANOSECONDS_PER_SECOND

    @property
    def duration_seconds(self) -> float:
        return self.duration / NANOSECONDS_PER_SECOND

    def contains(self, timestamp: int) -> bool:
        """Half-open lifetime check: start inclusive, end exclusive."""
        return self.start <= timestamp < self.end

    def to_dict(self):
        data = asdict(self)
        data['start_seconds'] = self.start_seconds
        data['duration_seconds'] = self.duration_seconds
        return data


@dataclass(frozen=True)
class LifecycleEntry:
    exe: str
    start: int


class PidTracker:
    """Maps each live pid to the image it runs and when that image started."""

    def __init__(self):
        self._live: Dict[str, LifecycleEntry] = {}
        self.closed_count = 0

    def __len__(self):
        return len(self._live)

    def __contains__(self, pid: str) -> bool:
        return pid in self._live

    def live_entry(self, pid: str) -> Optional[LifecycleEntry]:
        return self._live.get(pid)

    def live_pids(self) -> List[str]:
        return list(self._live)

    def _close(self, pid: str, end: int) -> ExecutionRecord:
        entry = self._live.pop(pid)
        self.closed_count += 1
        if end < entry.start:
            logger.debug(f"pid {pid} closed at {end} before its start {entry.start}")
        return ExecutionRecord(pid=pid, exe=entry.exe, start=entry.start, duration=end - entry.start)

    def on_exec(self, pid: str, timestamp: int, exe: str) -> Optional[ExecutionRecord]:
        """
        Record that ``pid`` started running ``exe``.

        Returns:
            The record for the image this pid was running before, if any
        """
        closed = None
        if pid in self._live:
            # a subsequent execve() without an intervening fork
            closed = self._close(pid, timestamp)
        self._live[pid] = LifecycleEntry(exe=exe, start=timestamp)
        return closed

    def on_terminate(self, pid: str, timestamp: int) -> Optional[ExecutionRecord]:
        """
        Record that ``pid`` stopped running.

        A pid without a live entry never exec'd or was already closed, and
        produces nothing.
        """
        if pid not in self._live:
            return None
        return self._close(pid, timestamp)

    def on_stream_end(self, first_pid: str, last_pid: str, end: int) -> Optional[ExecutionRecord]:
        """
        Close the session's process when the whole trace is one process.

        Processes which never fork are never reported terminated by a signal
        line, so the end of the log is the only end time we have.
        """
        if first_pid != last_pid or first_pid not in self._live:
            return None
        return self._close(first_pid, end)
