"""
Exec Timing Module
==================
Accumulates the run time of every exec'd image seen in an strace log.

This module handles:
- Collecting ExecutionRecords as the PID tracker closes them
- Keeping only the N slowest records when a cap is configured
- The total session time of the trace
- Rendering the timing table shown after an ``etrace exec`` run
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, TextIO

from pid_tracker import ExecutionRecord
from strace_matchers import NANOSECONDS_PER_SECOND

logger = logging.getLogger(__name__)

NANOSECONDS_PER_MINUTE = 60 * NANOSECONDS_PER_SECOND
NANOSECONDS_PER_HOUR = 60 * NANOSECONDS_PER_MINUTE


@dataclass
class DisplayOptions:
    """Options controlling how parsed results are rendered."""
    # base relative offsets on the session start instead of the earliest record
    relative_to_session_start: bool = False
    # add the program column to file reports
    show_programs: bool = False
    # list every accessed file instead of the per-program filtered report
    all_files: bool = False


def _trim_fraction(nanoseconds: int, scale: int) -> str:
    whole, fraction = divmod(nanoseconds, scale)
    digits = len(str(scale)) - 1
    fraction_text = str(fraction).rjust(digits, '0').rstrip('0')
    if fraction_text:
        return f"{whole}.{fraction_text}"
    return str(whole)


def format_duration(nanoseconds: int) -> str:
    """
    Render a duration with the largest unit that keeps it above one.

    Examples: ``0s``, ``750ns``, ``12.5µs``, ``1.25ms``, ``3.000001s``,
    ``1m2.5s``, ``1h0m0s``
    """
    if nanoseconds == 0:
        return "0s"
    sign = "-" if nanoseconds < 0 else ""
    nanoseconds = abs(nanoseconds)
    if nanoseconds < 1_000:
        return f"{sign}{nanoseconds}ns"
    if nanoseconds < 1_000_000:
        return f"{sign}{_trim_fraction(nanoseconds, 1_000)}µs"
    if nanoseconds < NANOSECONDS_PER_SECOND:
        return f"{sign}{_trim_fraction(nanoseconds, 1_000_000)}ms"
    if nanoseconds < NANOSECONDS_PER_MINUTE:
        return f"{sign}{_trim_fraction(nanoseconds, NANOSECONDS_PER_SECOND)}s"

    hours, rest = divmod(nanoseconds, NANOSECONDS_PER_HOUR)
    minutes, rest = divmod(rest, NANOSECONDS_PER_MINUTE)
    text = f"{minutes}m{_trim_fraction(rest, NANOSECONDS_PER_SECOND)}s"
    if hours:
        text = f"{hours}h{text}"
    return sign + text


class ExecveTiming:
    """
    Timings of execve calls under strace, keeping the N slowest samples.

    A cap of 0 keeps every sample.
    """

    def __init__(self, n_slowest: int = 0):
        if n_slowest < 0:
            raise ValueError("n_slowest must not be negative")
        self.n_slowest = n_slowest
        self.exe_runtimes: List[ExecutionRecord] = []
        self.total_time = 0
        self.session_start: Optional[int] = None
        self.session_end: Optional[int] = None
        self.evicted = 0

    def __len__(self):
        return len(self.exe_runtimes)

    def record(self, execution: ExecutionRecord) -> None:
        self.exe_runtimes.append(execution)
        if self.n_slowest > 0:
            self.prune()

    def prune(self) -> None:
        """Drop the fastest records until at most n_slowest remain."""
        while len(self.exe_runtimes) > self.n_slowest:
            fastest = 0
            for idx, runtime in enumerate(self.exe_runtimes):
                # <= so that on ties the later insertion is evicted
                if runtime.duration <= self.exe_runtimes[fastest].duration:
                    fastest = idx
            del self.exe_runtimes[fastest]
            self.evicted += 1

    def finalize(self, session_start: int, session_end: int) -> None:
        """Set the session bounds from the first and last lines of the log."""
        self.session_start = session_start
        self.session_end = session_end
        self.total_time = session_end - session_start

    @property
    def total_time_seconds(self) -> float:
        return self.total_time / NANOSECONDS_PER_SECOND

    def sorted_runtimes(self) -> List[ExecutionRecord]:
        return sorted(self.exe_runtimes, key=lambda runtime: runtime.start)

    def relative_offsets(self, opts: Optional[DisplayOptions] = None) -> List[Dict]:
        """
        Start and stop of each record in microseconds, ordered by start.

        Offsets are measured from the earliest retained record unless the
        options ask for the session start.
        """
        runtimes = self.sorted_runtimes()
        if not runtimes:
            return []
        base = runtimes[0].start
        if opts and opts.relative_to_session_start and self.session_start is not None:
            base = self.session_start

        rows = []
        for runtime in runtimes:
            relative_start = runtime.start - base
            rows.append({
                'start_us': relative_start // 1_000,
                'stop_us': (relative_start + runtime.duration) // 1_000,
                'elapsed': runtime.duration,
                'exe': runtime.exe,
            })
        return rows

    def display(self, w: TextIO, opts: Optional[DisplayOptions] = None) -> None:
        """Write the exec timing table."""
        rows = self.relative_offsets(opts)
        if not rows:
            return

        w.write(f"{len(rows)} exec calls during snap run:\n")
        w.write("\tStart\tStop\tElapsed\tExec\n")
        # TODO: show forked processes indented under their parent instead of
        # linearly, which needs clone() tracking in the timing profile
        for row in rows:
            w.write(f"\t{row['start_us']}\t{row['stop_us']}\t{format_duration(row['elapsed'])}\t{row['exe']}\n")
        w.write(f"Total time: {format_duration(self.total_time)}\n")

    def to_dict(self) -> Dict:
        return {
            'total_time': self.total_time,
            'total_time_seconds': self.total_time_seconds,
            'exe_runtimes': [runtime.to_dict() for runtime in self.sorted_runtimes()],
        }
