"""
Trace Errors Module
===================
Error types raised by the strace parsing pipeline.

Every fatal condition unwinds out of the parsing entry points as one of these
types. Per-item failures (a file that can no longer be stat'ed) are folded into
the result data instead.
"""

from typing import Optional


class EtraceError(Exception):
    """Base class for all etrace errors."""


class ParseError(EtraceError):
    """A line that must carry a session timestamp could not be parsed."""

    def __init__(self, message: str, line: Optional[str] = None):
        self.line = line
        if line is not None:
            message = f"{message}: {line!r}"
        super().__init__(message)


class MergeError(EtraceError):
    """strace-log-merge failed; ``output`` holds whatever the tool printed."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        if output.strip():
            message = f"{message}\n-----\n{output.strip()}\n-----"
        super().__init__(message)


class MalformedPatternError(EtraceError):
    """A user supplied regular expression or glob does not compile."""

    def __init__(self, option: str, pattern: str, reason: str):
        self.option = option
        self.pattern = pattern
        super().__init__(f"invalid setting for {option} ({pattern!r}): {reason}")


class TraceInvariantError(EtraceError):
    """Parsed execution records contradict each other."""


class ToolNotFoundError(EtraceError):
    """A required external program is not installed."""
