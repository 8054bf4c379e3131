"""
Tracer Module
=============
Thin wrappers over the external programs an etrace run depends on.

- strace command lines for the exec timing and file access profiles
- strace-log-merge for reassembling per-process logs
- dropping the kernel page caches before a measurement
- prepare/restore scripts
- xdotool for waiting on and closing the target's window
"""

import os
import time
import shutil
import getpass
import logging
import subprocess
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional, Sequence

from trace_config import EtraceConfig
from trace_errors import EtraceError, MergeError, ToolNotFoundError

logger = logging.getLogger(__name__)


def _run_command(command: Sequence[str], description: str, check: bool = True) -> subprocess.CompletedProcess:
    """Execute a command, capturing combined output for error reports."""
    logger.debug(f"{description}: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except FileNotFoundError as e:
        raise ToolNotFoundError(f"cannot run {command[0]}: {e}") from e

    if check and result.returncode != 0:
        logger.error(f"{description} failed with exit code {result.returncode}")
        if result.stdout:
            logger.error(result.stdout.strip())
        raise EtraceError(f"{description} failed with exit code {result.returncode}: {result.stdout.strip()}")
    return result


def add_sudo_if_needed(command: List[str], sudo_args: Sequence[str] = ()) -> List[str]:
    """Prefix a command with sudo when not running as root."""
    if os.geteuid() == 0:
        return list(command)
    sudo = shutil.which("sudo")
    if sudo is None:
        raise ToolNotFoundError("cannot use strace without running as root or without sudo")
    return [sudo, *sudo_args, *command]


def strace_command(config: EtraceConfig, extra_opts: Sequence[str], tracee_cmd: Sequence[str]) -> List[str]:
    """strace invocation running the tracee as the calling user."""
    strace_path = shutil.which(config.strace_binary)
    if strace_path is None:
        raise ToolNotFoundError("cannot find an installed strace, please try 'snap install strace-static'")

    args = [
        strace_path,
        "-u", getpass.getuser(),
        "-f",
        "-e", config.excluded_syscalls,
        *extra_opts,
        *tracee_cmd,
    ]
    return add_sudo_if_needed(args, ["-E"])


def trace_exec_command(config: EtraceConfig, strace_log: str, tracee_cmd: Sequence[str]) -> List[str]:
    """Command tracking the timings of execve{,at}() calls."""
    return strace_command(config, [
        # maximum timing accuracy for measuring exec's
        "-ttt",
        "-e", "trace=execve,execveat",
        # usually a fifo for best performance
        "-o", strace_log,
    ], tracee_cmd)


def trace_files_command(config: EtraceConfig, strace_log_pattern: str, tracee_cmd: Sequence[str]) -> List[str]:
    """Command tracking every file accessed during execution."""
    return strace_command(config, [
        # strace-log-merge needs absolute timestamps to work across day changes
        "-ttt",
        # one log per process, so no syscall line is ever interrupted
        "-ff",
        # never print string contents that could look like paths
        "-s0",
        # annotate every fd with the path it refers to
        "-y",
        # no verbose structures, they contain strings such as inet addresses
        "-everbose=none",
        # with -ff this is a pattern, strace appends .<pid> to it
        "-o", strace_log_pattern,
    ], tracee_cmd)


def merge_strace_logs(strace_log_pattern: str, destination: Optional[str] = None,
                      merge_binary: str = "strace-log-merge") -> Path:
    """
    Merge per-process strace logs into one chronological log.

    Args:
        strace_log_pattern: Pattern given to strace -ff -o
        destination: Merged log path, truncated if it exists (default: the pattern)

    Returns:
        Path of the merged log

    Raises:
        MergeError: if the merge tool fails, carrying whatever it printed
    """
    destination = Path(destination or strace_log_pattern)
    if shutil.which(merge_binary) is None:
        raise ToolNotFoundError(f"cannot find {merge_binary}, it is shipped with strace")

    logger.info(f"Merging strace logs {strace_log_pattern}.* into {destination}")
    with open(destination, 'w') as merged:
        result = subprocess.run(
            [merge_binary, strace_log_pattern],
            stdout=merged,
            stderr=subprocess.PIPE,
            text=True,
        )

    if result.returncode != 0:
        # the merge tool reports some failures on stdout, which went to the file
        try:
            output = destination.read_text(errors='replace')
        except OSError as e:
            logger.error(f"Cannot read merge output {destination}: {e}")
            output = ""
        output = output + (result.stderr or "")
        logger.error(f"{merge_binary} failed with exit code {result.returncode}")
        raise MergeError(f"{merge_binary} {strace_log_pattern} failed with exit code {result.returncode}", output)

    return destination


def free_caches():
    """Drop the kernel caches for the most accurate measurements."""
    for level in (1, 2, 3):
        _run_command(
            add_sudo_if_needed(["sysctl", "-q", f"vm.drop_caches={level}"]),
            f"Dropping caches (level {level})",
        )


def run_script(fname: str, args: Sequence[str] = ()) -> None:
    """Run a prepare/restore script found on $PATH or in the current directory."""
    path = shutil.which(fname) or str(Path.cwd() / fname)
    _run_command([path, *args], f"Running script {fname}")


@dataclass
class Window:
    """An X11 window specification for xdotool search"""
    window_class: str = ""
    name: str = ""
    class_name: str = ""

    def search_args(self) -> Optional[List[str]]:
        if self.window_class:
            return ["--class", self.window_class]
        if self.name:
            return ["--name", self.name]
        if self.class_name:
            return ["--classname", self.class_name]
        return None

    def describe(self) -> str:
        if self.window_class:
            return f"class {self.window_class}"
        if self.name:
            return f"name {self.name}"
        if self.class_name:
            return f"class name {self.class_name}"
        return "no specification"


class XDoTool:
    """Waits for, inspects and closes X11 windows with xdotool."""

    def __init__(self, attempts: int = 10, timeout: float = 60.0):
        self.attempts = attempts
        self.timeout = timeout

    def wait_for_window(self, window: Window) -> List[str]:
        """
        Block until a visible window matching the spec exists.

        Returns:
            The window ids xdotool found
        """
        search_args = window.search_args()
        if search_args is None:
            raise EtraceError("window specification is empty")

        deadline = time.monotonic() + self.timeout
        output = ""
        for attempt in range(1, self.attempts + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                result = subprocess.run(
                    ["xdotool", "search", "--sync", "--onlyvisible", *search_args],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=remaining,
                )
            except subprocess.TimeoutExpired:
                break
            except FileNotFoundError as e:
                raise ToolNotFoundError(f"cannot run xdotool: {e}") from e
            output = result.stdout.strip()
            if result.returncode == 0 and output:
                return output.splitlines()
            logger.debug(f"xdotool search attempt {attempt} failed: {output}")
        else:
            raise EtraceError(f"xdotool failed to find window with {window.describe()}: {output}")

        raise EtraceError(f"timed out waiting for window with {window.describe()} to appear")

    def close_window(self, wid: str) -> None:
        _run_command(["xdotool", "windowkill", wid], f"Closing window {wid}")

    def pid_for_window(self, wid: str) -> int:
        result = _run_command(["xdotool", "getwindowpid", wid], f"Getting pid of window {wid}")
        return int(result.stdout.strip())
