"""
File Access Module
==================
Correlates file accesses from an strace log with the processes that made them.

This module handles the file tracing side of the pipeline:
- Collecting raw path accesses while the log is streamed
- Assigning each access to the process instance whose lifetime contains it
- Filtering by path and program patterns and the snapd exclude list
- Looking up file sizes for the final report
"""

import os
import re
import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Set, TextIO

from exec_timing import DisplayOptions, format_duration
from pid_tracker import ExecutionRecord
from strace_matchers import PathAccess, NANOSECONDS_PER_SECOND
from trace_errors import EtraceError, MalformedPatternError, TraceInvariantError

logger = logging.getLogger(__name__)

# programs from snapd itself, hidden unless --include-snapd-programs is given
DEFAULT_EXCLUDE_PROGRAMS = (
    # all installs
    "/usr/bin/snap",
    "/usr/lib/snapd/*",
    "/sbin/apparmor_parser",

    # core snap programs
    "/snap/core/*/usr/bin/snap",
    "/snap/core/*/usr/lib/snapd/*",

    # snapd snap
    "/snap/snapd/*/usr/bin/snap",
    "/snap/snapd/*/usr/lib/snapd/*",
)


@dataclass
class ProcessRuntime:
    """A single program and the file accesses over the course of its lifetime."""
    pid: str
    exe: str
    start: int
    duration: int
    path_accesses: List[PathAccess] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: ExecutionRecord) -> 'ProcessRuntime':
        return cls(pid=record.pid, exe=record.exe, start=record.start, duration=record.duration)

    def contains(self, timestamp: int) -> bool:
        return self.start <= timestamp < self.start + self.duration

    def to_dict(self):
        return {
            'pid': self.pid,
            'exe': self.exe,
            'start': self.start,
            'duration': self.duration,
            'path_accesses': [
                {'time': access.timestamp, 'path': access.path, 'syscall': access.syscall}
                for access in self.path_accesses
            ],
        }


@dataclass(frozen=True)
class FileAndSize:
    """A reported file. ``size`` is None when the file could not be stat'ed."""
    path: str
    size: Optional[int] = None
    program: Optional[str] = None

    def size_text(self) -> str:
        return "unknown" if self.size is None else str(self.size)

    def to_dict(self):
        return {k: v for k, v in asdict(self).items() if v is not None or k == 'size'}


def _check_glob(option: str, pattern: str) -> None:
    """Reject the glob syntax errors path matching would otherwise ignore."""
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == '\\':
            if i + 1 >= len(pattern):
                raise MalformedPatternError(option, pattern, "trailing backslash")
            i += 2
            continue
        if char == '[':
            start = i + 1
            if pattern[start:start + 1] in ('!', '^'):
                start += 1
            end = pattern.find(']', start)
            if end == -1:
                raise MalformedPatternError(option, pattern, "unterminated character class")
            if end == start:
                raise MalformedPatternError(option, pattern, "empty character class")
            i = end + 1
            continue
        i += 1


def _compile(option: str, pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise MalformedPatternError(option, pattern, str(e)) from e


def parent_dirs_regex(parent_dirs: Sequence[str]) -> str:
    """Build a regex matching the given directories and anything below them."""
    alternatives = []
    for directory in parent_dirs:
        cleaned = os.path.normpath(directory)
        if cleaned == "/":
            alternatives.append(r"/.*")
            continue
        alternatives.append(re.escape(cleaned) + r"(?:/.*)?$")
    return '^(?:' + '|'.join(alternatives) + ')'


class FileAccessFilter:
    """Decides which correlated accesses end up in the report."""

    def __init__(self, path_regex: Optional[re.Pattern] = None,
                 program_regex: Optional[re.Pattern] = None,
                 exclude_programs: Sequence[str] = DEFAULT_EXCLUDE_PROGRAMS):
        self.path_regex = path_regex
        self.program_regex = program_regex
        self.exclude_programs = tuple(exclude_programs)

    @classmethod
    def build(cls, file_regex: Optional[str] = None,
              parent_dirs: Optional[Sequence[str]] = None,
              program_regex: Optional[str] = None,
              exclude_programs: Sequence[str] = DEFAULT_EXCLUDE_PROGRAMS,
              include_snapd_programs: bool = False) -> 'FileAccessFilter':
        """
        Compile user supplied patterns, failing before any parsing happens.

        Args:
            file_regex: Regular expression paths must match
            parent_dirs: Directories paths must be under (exclusive with file_regex)
            program_regex: Regular expression the owning program must match
            exclude_programs: Globs of programs whose accesses are hidden
            include_snapd_programs: Ignore exclude_programs entirely

        Raises:
            MalformedPatternError: if any pattern does not compile
        """
        if file_regex and parent_dirs:
            raise EtraceError("cannot use --file-regex with --parent-dirs")

        path_pattern = None
        if file_regex:
            path_pattern = _compile("--file-regex", file_regex)
        elif parent_dirs:
            path_pattern = _compile("--parent-dirs", parent_dirs_regex(parent_dirs))

        program_pattern = _compile("--program-regex", program_regex) if program_regex else None

        excludes = () if include_snapd_programs else tuple(exclude_programs)
        for glob in excludes:
            _check_glob("exclude program", glob)

        return cls(path_pattern, program_pattern, excludes)

    def matches_path(self, path: str) -> bool:
        return self.path_regex is None or self.path_regex.search(path) is not None

    def program_excluded(self, exe: str) -> bool:
        program = PurePosixPath(exe)
        return any(program.match(glob) for glob in self.exclude_programs)

    def includes_program(self, exe: str) -> bool:
        if self.program_regex is not None and self.program_regex.search(exe) is None:
            return False
        return not self.program_excluded(exe)


def find_overlapping_runtimes(records: Iterable[ExecutionRecord]) -> List[tuple]:
    """Pairs of same-pid records whose lifetimes overlap."""
    by_pid: Dict[str, List[ExecutionRecord]] = defaultdict(list)
    for record in records:
        by_pid[record.pid].append(record)

    overlaps = []
    for pid_records in by_pid.values():
        ordered = sorted(pid_records, key=lambda r: r.start)
        for previous, current in zip(ordered, ordered[1:]):
            if current.start < previous.end:
                overlaps.append((previous, current))
    return overlaps


class FileAccessCorrelator:
    """Collects path accesses and assigns them to processes once all are known."""

    def __init__(self):
        self.path_accesses: List[PathAccess] = []
        self.all_paths: Set[str] = set()
        self.correlated = 0
        self.uncorrelated = 0

    def record(self, access: PathAccess) -> None:
        self.all_paths.add(access.path)
        # kept until correlate(), when every process has finished
        self.path_accesses.append(access)

    def correlate(self, records: Sequence[ExecutionRecord]) -> List[ProcessRuntime]:
        """
        Attach every recorded access to the process instance that made it.

        An access belongs to the first record, in order, with the same pid and
        a lifetime containing the access time. Accesses are consumed.

        Raises:
            TraceInvariantError: if two records of one pid overlap in time
        """
        overlaps = find_overlapping_runtimes(records)
        if overlaps:
            first, second = overlaps[0]
            raise TraceInvariantError(
                f"pid {first.pid} runs {first.exe} and {second.exe} at the same time "
                f"({len(overlaps)} overlapping execution records)"
            )

        runtimes = [ProcessRuntime.from_record(record) for record in records]
        by_pid: Dict[str, List[ProcessRuntime]] = defaultdict(list)
        for runtime in runtimes:
            by_pid[runtime.pid].append(runtime)

        for access in self.path_accesses:
            for runtime in by_pid.get(access.pid, ()):
                if runtime.contains(access.timestamp):
                    runtime.path_accesses.append(access)
                    self.correlated += 1
                    break
            else:
                self.uncorrelated += 1

        logger.debug(f"Correlated {self.correlated} path accesses, {self.uncorrelated} without a process")
        self.path_accesses = []
        return runtimes


def file_size(path: str) -> Optional[int]:
    try:
        return os.stat(path).st_size
    except OSError as e:
        logger.debug(f"Cannot stat {path}: {e}")
        return None


def build_file_report(runtimes: Iterable[ProcessRuntime], file_filter: FileAccessFilter,
                      show_programs: bool = False) -> List[FileAndSize]:
    """
    Deduplicated, filtered and sorted files accessed by the given processes.

    With ``show_programs`` each (path, program) pair is reported once,
    otherwise each path is reported once.
    """
    seen = set()
    for runtime in runtimes:
        if not file_filter.includes_program(runtime.exe):
            continue
        for access in runtime.path_accesses:
            if not file_filter.matches_path(access.path):
                continue
            seen.add((access.path, runtime.exe if show_programs else None))

    sizes: Dict[str, Optional[int]] = {}
    report = []
    for path, program in sorted(seen, key=lambda item: (item[0], item[1] or "")):
        if path not in sizes:
            sizes[path] = file_size(path)
        report.append(FileAndSize(path=path, size=sizes[path], program=program))
    return report


def build_all_files_report(paths: Iterable[str], file_filter: FileAccessFilter) -> List[FileAndSize]:
    """Every accessed path matching the path filter, regardless of process."""
    return [
        FileAndSize(path=path, size=file_size(path))
        for path in sorted(p for p in set(paths) if file_filter.matches_path(p))
    ]


class ExecvePaths:
    """The processes of one traced run and the files they accessed."""

    def __init__(self, processes: List[ProcessRuntime], files: List[FileAndSize],
                 all_files: List[FileAndSize], session_start: int, session_end: int):
        self.processes = processes
        self.files = files
        self.all_files = all_files
        self.session_start = session_start
        self.session_end = session_end
        self.total_time = session_end - session_start

    @property
    def total_time_seconds(self) -> float:
        return self.total_time / NANOSECONDS_PER_SECOND

    def display(self, w: TextIO, opts: Optional[DisplayOptions] = None) -> None:
        """Write the file access table."""
        opts = opts or DisplayOptions()
        files = self.all_files if opts.all_files else self.files
        if not files:
            return

        show_programs = opts.show_programs and not opts.all_files
        w.write(f"{len(files)} files accessed during snap run:\n")
        if show_programs:
            w.write("\tFilename\tSize (bytes)\tProgram\n")
        else:
            w.write("\tFilename\tSize (bytes)\n")
        for f in files:
            if show_programs:
                w.write(f"\t{f.path}\t{f.size_text()}\t{f.program or ''}\n")
            else:
                w.write(f"\t{f.path}\t{f.size_text()}\n")
        w.write("\n")

    def summary(self) -> str:
        return (f"{len(self.processes)} processes, {len(self.files)} reported files, "
                f"{len(self.all_files)} files accessed in {format_duration(self.total_time)}")

    def to_dict(self) -> Dict:
        return {
            'total_time': self.total_time,
            'total_time_seconds': self.total_time_seconds,
            'files': [f.to_dict() for f in self.files],
            'all_files': [f.to_dict() for f in self.all_files],
            'processes': [p.to_dict() for p in self.processes],
        }
