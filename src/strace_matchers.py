"""
Strace Line Matchers
====================
Recognizes the strace line shapes the pipeline cares about.

Each matcher turns one raw line into one of three tagged results:
- ExecTransition: a process replaced its image via execve/execveat
- SignalTransition: a process terminated (SIGCHLD/SIGTERM/SIGKILL)
- PathAccess: a syscall successfully touched a file system path

Matchers are tried in a fixed priority order and the first one that claims a
line wins, so the more specific shapes (fd + relative path, AT_FDCWD) must come
before the generic ones.

Timestamps are kept as integer nanoseconds since the epoch. strace prints
``sec.usec`` with -ttt, and parsing that text exactly keeps interval
comparisons free of float rounding.
"""

import re
import posixpath
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple, Union

from trace_errors import ParseError

NANOSECONDS_PER_SECOND = 1_000_000_000

DELETED_SUFFIX = " (deleted)"

# pid and -ttt timestamp prefix shared by every line shape
_PREFIX = r'^\s*([0-9]+)\s+([0-9]+(?:\.[0-9]+)?)\s+'

# a successful return value, optionally a hex value or an fd annotated by -y:
#   = 0
#   = 0x7f8d780a7000
#   = 10</snap/chromium/958/data-dir>
_RETURN_OK = r'\s=\s+[0-9]+(?:x[0-9a-f]+)?(?:<.*>)?\s*$'


@dataclass(frozen=True)
class ExecTransition:
    """A process (re)placed its image."""
    pid: str
    timestamp: int
    exe: str
    syscall: str = "execve"
    matcher: str = field(default="", compare=False)


@dataclass(frozen=True)
class SignalTransition:
    """A process stopped running, as reported by a signal line."""
    pid: str
    timestamp: int
    signal: str
    matcher: str = field(default="", compare=False)


@dataclass(frozen=True)
class PathAccess:
    """A single syscall accessing a file."""
    pid: str
    timestamp: int
    syscall: str
    path: str
    matcher: str = field(default="", compare=False)

    @property
    def time_seconds(self) -> float:
        return self.timestamp / NANOSECONDS_PER_SECOND


LineMatch = Union[ExecTransition, SignalTransition, PathAccess]


def parse_timestamp(text: str) -> int:
    """
    Convert an strace -ttt timestamp into integer nanoseconds.

    Args:
        text: Timestamp such as ``1574886786.247289``

    Returns:
        Nanoseconds since the epoch

    Raises:
        ValueError: if the text is not a decimal number of seconds
    """
    seconds, _, fraction = text.strip().partition('.')
    if not re.fullmatch(r'[0-9]+', seconds) or (fraction and not re.fullmatch(r'[0-9]+', fraction)):
        raise ValueError(f"malformed timestamp {text!r}")
    # anything finer than a nanosecond is truncated
    return int(seconds) * NANOSECONDS_PER_SECOND + int(fraction[:9].ljust(9, '0'))


def strip_deleted(path: str) -> str:
    """Drop the marker strace appends to fds whose backing file was unlinked."""
    if path.endswith(DELETED_SUFFIX):
        return path[:-len(DELETED_SUFFIX)]
    return path


def normalize_path(path: str) -> str:
    return posixpath.normpath(strip_deleted(path))


_SESSION_LINE_RE = re.compile(r'^\s*([0-9]+)\s+([0-9]+(?:\.[0-9]+)?)(?:\s|$)')


def parse_session_line(line: str) -> Tuple[str, int]:
    """
    Parse the pid and timestamp that start every strace -ttt line.

    Used on the first and last line of a log to find the session bounds.

    Raises:
        ParseError: if the line does not start with ``<pid> <timestamp>``
    """
    match = _SESSION_LINE_RE.match(line)
    if not match:
        raise ParseError("cannot parse pid and timestamp", line.rstrip('\n'))
    return match.group(1), parse_timestamp(match.group(2))


@dataclass(frozen=True)
class LineMatcher:
    """One line shape: a compiled pattern and the function building the result."""
    name: str
    pattern: re.Pattern
    extract: Callable[[re.Match, str], LineMatch]

    def match(self, line: str) -> Optional[LineMatch]:
        found = self.pattern.search(line)
        if not found:
            return None
        return self.extract(found, self.name)


# lines look like:
# 17363 1542815326.700248 execve("/snap/brave/44/usr/bin/update-mime-database", ["update-mime-database", "/home/egon/snap/brave/44/.local/"...], 0x1566008 /* 69 vars */) = 0
EXECVE_RE = re.compile(_PREFIX + r'execve\("([^"]+)".*\) = 0')

# lines look like:
# 14157 1542875582.816782 execveat(3, "", ["snap-update-ns", "--from-snap-confine", "test-snapd-tools"], 0x7ffce7dd6160 /* 0 vars */, AT_EMPTY_PATH) = 0
EXECVEAT_RE = re.compile(_PREFIX + r'execveat\(.*?\["([^"]+)".*\) = 0')

# both SIGCHLD and SIGTERM carry the pid of interest in si_pid:
# 17559 1542815330.242750 --- SIGCHLD {si_signo=SIGCHLD, si_code=CLD_EXITED, si_pid=17643, si_uid=1000, si_status=0, si_utime=0, si_stime=0} ---
SIGCHLD_TERM_RE = re.compile(r'^\s*[0-9]+\s+([0-9]+(?:\.[0-9]+)?)\s.*SIG(CHLD|TERM) \{.*si_pid=([0-9]+),')

# 20882 1573257274.988650 +++ killed by SIGKILL +++
SIGKILL_RE = re.compile(_PREFIX + r'\+\+\+ killed by SIGKILL \+\+\+')

# fd as the first argument and a path relative to it as the second:
# 122166 1574886795.484115 newfstatat(3</proc/122166/fd>, "9", {st_mode=S_IFREG|0644, st_size=1377694, ...}, 0) = 0
# 121041 1574886786.247289 openat(9</snap/chromium/958>, "data-dir", O_RDONLY|O_NOFOLLOW|O_CLOEXEC|O_DIRECTORY) = 10</snap/chromium/958/data-dir>
FD_AND_PATH_RE = re.compile(
    _PREFIX + r'([a-zA-Z0-9_]+)\([0-9]+<(/[^>]*)>, "([^"]+)".*' + _RETURN_OK
)

# AT_FDCWD with an absolute path as the next argument:
# 121188 1574886788.027891 openat(AT_FDCWD, "/snap/chromium/current/usr/lib/locale/en_US.UTF-8/LC_COLLATE", O_RDONLY|O_CLOEXEC) = 4</some/where>
# 120994 1574886785.937456 readlinkat(AT_FDCWD, "/snap/chromium/current", ""..., 128) = 3
ABS_PATH_WITH_CWD_RE = re.compile(
    _PREFIX + r'([a-zA-Z0-9_]+)\(AT_FDCWD,\s+"(/[^"]*)".*' + _RETURN_OK
)

# an absolute path in the first quoted position, for calls not using AT_FDCWD:
# 120990 1574886792.229066 readlink("/snap/chromium/958/etc/fonts/conf.d/65-nonlatin.conf", ""..., 4095) = 30
ABS_PATH_RE = re.compile(
    _PREFIX + r'([a-zA-Z0-9_]+)\((?!.*AT_FDCWD)[^"]*"(/[^"]+)".*\)' + _RETURN_OK
)

# any fd annotated with a path by -y, including lines FD_AND_PATH_RE claims first:
# 121188 1574886788.028095 close(3</snap/chromium/958/usr/lib/locale/aa_DJ.utf8/LC_COLLATE>) = 0
# 121188 1574886788.028052 mmap(NULL, 1244054, PROT_READ, MAP_PRIVATE, 3</snap/chromium/958/usr/lib/locale/aa_DJ.utf8/LC_COLLATE>, 0) = 0x7f8d780a7000
# does not match non-path fds:
# 27652 1587946984.879501 write(9<pipe:[200089]>, ""..., 4) = 4
FD_RE = re.compile(
    _PREFIX + r'([a-zA-Z0-9_]+)\(.*?[0-9]+<(/[^>]*)>.*' + _RETURN_OK
)


def _exec_match(match: re.Match, name: str) -> ExecTransition:
    return ExecTransition(
        pid=match.group(1),
        timestamp=parse_timestamp(match.group(2)),
        exe=match.group(3),
        syscall=name,
        matcher=name,
    )


def _signal_match(match: re.Match, name: str) -> SignalTransition:
    return SignalTransition(
        pid=match.group(3),
        timestamp=parse_timestamp(match.group(1)),
        signal="SIG" + match.group(2),
        matcher=name,
    )


def _sigkill_match(match: re.Match, name: str) -> SignalTransition:
    return SignalTransition(
        pid=match.group(1),
        timestamp=parse_timestamp(match.group(2)),
        signal="SIGKILL",
        matcher=name,
    )


def _fd_and_path_match(match: re.Match, name: str) -> PathAccess:
    # directory join, so an absolute second argument wins like the kernel does
    full_path = posixpath.join(strip_deleted(match.group(4)), match.group(5))
    return PathAccess(
        pid=match.group(1),
        timestamp=parse_timestamp(match.group(2)),
        syscall=match.group(3),
        path=normalize_path(full_path),
        matcher=name,
    )


def _path_match(match: re.Match, name: str) -> PathAccess:
    return PathAccess(
        pid=match.group(1),
        timestamp=parse_timestamp(match.group(2)),
        syscall=match.group(3),
        path=normalize_path(match.group(4)),
        matcher=name,
    )


EXEC_MATCHERS: Tuple[LineMatcher, ...] = (
    LineMatcher("execve", EXECVE_RE, _exec_match),
    LineMatcher("execveat", EXECVEAT_RE, _exec_match),
    LineMatcher("sigchld_term", SIGCHLD_TERM_RE, _signal_match),
    LineMatcher("sigkill", SIGKILL_RE, _sigkill_match),
)

PATH_MATCHERS: Tuple[LineMatcher, ...] = (
    LineMatcher("fd_and_path", FD_AND_PATH_RE, _fd_and_path_match),
    LineMatcher("abs_path_with_cwd", ABS_PATH_WITH_CWD_RE, _path_match),
    LineMatcher("abs_path", ABS_PATH_RE, _path_match),
    LineMatcher("fd", FD_RE, _path_match),
)

FILE_MATCHERS: Tuple[LineMatcher, ...] = EXEC_MATCHERS + PATH_MATCHERS


def match_line(line: str, matchers: Sequence[LineMatcher] = FILE_MATCHERS) -> Optional[LineMatch]:
    """
    Run a line through the matchers in priority order.

    Args:
        line: Raw strace line
        matchers: Ordered matchers, most specific first

    Returns:
        The result of the first matcher claiming the line, or None
    """
    for matcher in matchers:
        result = matcher.match(line)
        if result is not None:
            return result
    return None
