"""
Trace Parser Module
===================
Parses strace logs into exec timings and per-process file accesses.

This module drives the parsing pipeline:
- Reading a single strace log (file or fifo) or merging per-process logs
- Taking the session bounds from the first and last lines
- Feeding every line through the matchers, in priority order
- Updating the PID tracker and the timing/file accumulators
- Finalizing still-running processes and correlating file accesses
"""

import logging
from contextlib import nullcontext
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO, Union

from exec_timing import ExecveTiming
from file_access import (
    ExecvePaths,
    FileAccessCorrelator,
    FileAccessFilter,
    build_all_files_report,
    build_file_report,
)
from pid_tracker import ExecutionRecord, PidTracker
from strace_matchers import (
    EXEC_MATCHERS,
    FILE_MATCHERS,
    ExecTransition,
    LineMatch,
    LineMatcher,
    PathAccess,
    SignalTransition,
    match_line,
    parse_session_line,
)
from trace_errors import ParseError
from tracer import merge_strace_logs

logger = logging.getLogger(__name__)

TraceSource = Union[str, Path, TextIO]


class TraceParser:
    """Streams one strace log through the matchers in a single pass."""

    def __init__(self, source: TraceSource, matchers: Sequence[LineMatcher] = EXEC_MATCHERS,
                 n_slowest: int = 0, collect_paths: bool = False):
        """
        Initialize trace parser.

        Args:
            source: Path of the strace log, or an open text stream
            matchers: Line matchers, most specific first
            n_slowest: Keep only this many of the slowest exec records (0 keeps all)
            collect_paths: Keep path accesses and every execution record for correlation
        """
        self.source = source
        self.matchers = tuple(matchers)
        self.collect_paths = collect_paths

        self.tracker = PidTracker()
        self.timing = ExecveTiming(n_slowest)
        self.correlator = FileAccessCorrelator() if collect_paths else None
        # every closed record, needed in full for correlation
        self.records: List[ExecutionRecord] = []

        self.total_lines = 0
        self.match_counts: Counter = Counter()
        self.start_pid: Optional[str] = None
        self.start_time: Optional[int] = None
        self.end_pid: Optional[str] = None
        self.end_time: Optional[int] = None

    def _open(self):
        if hasattr(self.source, 'read'):
            return nullcontext(self.source)
        return open(self.source, 'r', encoding='utf-8', errors='replace')

    def _source_name(self) -> str:
        if hasattr(self.source, 'read'):
            return getattr(self.source, 'name', '<stream>')
        return str(self.source)

    def parse(self) -> 'TraceParser':
        """
        Parse the entire log.

        Raises:
            ParseError: if the first or last line has no pid and timestamp
            OSError: if the log cannot be read
        """
        logger.info(f"Parsing strace log {self._source_name()}")
        started = datetime.now()

        first_line = None
        last_line = None
        try:
            with self._open() as lines:
                for line in lines:
                    self.total_lines += 1
                    if not line.strip():
                        continue
                    if first_line is None:
                        first_line = line
                        self.start_pid, self.start_time = parse_session_line(line)
                    last_line = line

                    if self.total_lines % 100000 == 0:
                        logger.debug(f"Processed {self.total_lines} lines, {sum(self.match_counts.values())} matches")

                    self._handle(match_line(line, self.matchers))
        except OSError as e:
            logger.error(f"Error reading strace log: {e}")
            raise

        if first_line is None:
            raise ParseError(f"strace log {self._source_name()} is empty")

        self.end_pid, self.end_time = parse_session_line(last_line)

        # processes which never fork only end with the log itself
        self._close(self.tracker.on_stream_end(self.start_pid, self.end_pid, self.end_time))
        self.timing.finalize(self.start_time, self.end_time)

        duration = (datetime.now() - started).total_seconds()
        logger.info(f"Parsing complete: {sum(self.match_counts.values())} matches from "
                    f"{self.total_lines} lines in {duration:.2f}s")
        if self.tracker.live_pids():
            logger.debug(f"{len(self.tracker)} processes still running at the end of the log")
        return self

    def _handle(self, result: Optional[LineMatch]) -> None:
        if result is None:
            return
        self.match_counts[result.matcher] += 1

        if isinstance(result, ExecTransition):
            self._close(self.tracker.on_exec(result.pid, result.timestamp, result.exe))
            # the exec'd binary is itself a file the process read
            if self.correlator is not None and result.exe.startswith('/'):
                self.correlator.record(PathAccess(
                    pid=result.pid,
                    timestamp=result.timestamp,
                    syscall=result.syscall,
                    path=result.exe,
                    matcher=result.matcher,
                ))
        elif isinstance(result, SignalTransition):
            self._close(self.tracker.on_terminate(result.pid, result.timestamp))
        elif isinstance(result, PathAccess) and self.correlator is not None:
            self.correlator.record(result)

    def _close(self, record: Optional[ExecutionRecord]) -> None:
        if record is None:
            return
        self.timing.record(record)
        if self.collect_paths:
            self.records.append(record)

    def get_statistics(self) -> Dict[str, object]:
        """Get parsing statistics."""
        return {
            'total_lines': self.total_lines,
            'total_matches': sum(self.match_counts.values()),
            'matches_by_shape': dict(self.match_counts),
            'execution_records': self.tracker.closed_count,
            'retained_records': len(self.timing),
            'still_running': len(self.tracker),
            'time_range_seconds': self.timing.total_time_seconds,
        }


def trace_execve_timings(strace_log: TraceSource, n_slowest: int = 0) -> ExecveTiming:
    """
    Read an strace log and produce a timing report of the exec calls.

    Args:
        strace_log: Log written with the exec timing profile (file, fifo or stream)
        n_slowest: Keep only the n slowest exec calls, 0 keeps all of them
    """
    parser = TraceParser(strace_log, EXEC_MATCHERS, n_slowest=n_slowest)
    return parser.parse().timing


def trace_execve_with_files(strace_log: TraceSource,
                            file_filter: Optional[FileAccessFilter] = None,
                            show_programs: bool = False,
                            merge: bool = False,
                            merged_log: Optional[str] = None,
                            merge_binary: str = "strace-log-merge") -> ExecvePaths:
    """
    Read an strace log and report the files accessed by every process.

    Args:
        strace_log: Log written with the file profile; with ``merge`` this is
            the -ff pattern whose ``.<pid>`` fragments get merged first
        file_filter: Compiled path/program filters (default: report everything
            except snapd's own programs)
        show_programs: Report each (path, program) pair instead of each path
        merge: Run strace-log-merge on the fragments before parsing
        merged_log: Where to write the merged log (default: the pattern itself)

    Raises:
        MergeError: if the fragments could not be merged
        ParseError: if the first or last line has no pid and timestamp
        TraceInvariantError: if execution records of one pid overlap
    """
    if file_filter is None:
        file_filter = FileAccessFilter.build()

    source = strace_log
    if merge:
        source = merge_strace_logs(str(strace_log), merged_log, merge_binary)

    parser = TraceParser(source, FILE_MATCHERS, collect_paths=True).parse()

    all_paths = set(parser.correlator.all_paths)
    runtimes = parser.correlator.correlate(parser.records)
    files = build_file_report(runtimes, file_filter, show_programs)
    all_files = build_all_files_report(all_paths, file_filter)

    result = ExecvePaths(
        processes=runtimes,
        files=files,
        all_files=all_files,
        session_start=parser.start_time,
        session_end=parser.end_time,
    )
    logger.info(result.summary())
    return result
