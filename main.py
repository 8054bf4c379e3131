#!/usr/bin/env python3
"""
etrace Command Line
===================
Measures program startup and traces what happens while it starts.

Subcommands:
1. exec - time the program's window appearance and every exec'd image
2. file - list every file the program's processes accessed
3. analyze-exec - exec timing report for an existing strace log
4. analyze-file - file access report for an existing strace log

Reports go to stdout (or --output-file) as text tables or JSON, logs go to
stderr.
"""

import os
import sys
import json
import time
import signal
import logging
import argparse
import tempfile
import threading
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, TextIO

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from exec_timing import DisplayOptions, ExecveTiming, format_duration
from file_access import ExecvePaths, FileAccessFilter
from graph_builder import ProcessGraphBuilder
from trace_config import ConfigManager, EtraceConfig
from trace_errors import EtraceError, ToolNotFoundError
from trace_parser import trace_execve_timings, trace_execve_with_files
from tracer import (
    Window,
    XDoTool,
    free_caches,
    run_script,
    trace_exec_command,
    trace_files_command,
)

logger = logging.getLogger("etrace")


def display_options(args) -> DisplayOptions:
    return DisplayOptions(
        relative_to_session_start=args.relative_to_session,
        show_programs=getattr(args, 'show_programs', False),
        all_files=getattr(args, 'all_files', False),
    )


def build_file_filter(args, config: EtraceConfig) -> FileAccessFilter:
    """Compile the report filters, before anything is run or parsed."""
    return FileAccessFilter.build(
        file_regex=args.file_regex,
        parent_dirs=args.parent_dirs,
        program_regex=args.program_regex,
        exclude_programs=config.exclude_programs,
        include_snapd_programs=args.include_snapd_programs,
    )


def export_to_neo4j(config: EtraceConfig, timing: Optional[ExecveTiming] = None,
                    paths: Optional[ExecvePaths] = None, clear: bool = False,
                    stats_dir: Optional[Path] = None):
    """Write a parsed result to Neo4j, saving the export statistics to stats_dir if given."""
    builder = ProcessGraphBuilder(
        uri=config.neo4j_uri,
        user=config.neo4j_user,
        password=config.neo4j_password,
    )
    if not builder.connect():
        raise EtraceError("Failed to connect to Neo4j database")

    try:
        if clear:
            builder.clear_database()
        builder.create_constraints_and_indexes()
        if timing is not None:
            builder.export_timing(timing)
        if paths is not None:
            builder.export_file_accesses(paths)
    finally:
        builder.close()

    logger.info(f"Exported {builder.stats.nodes_created} nodes and "
                f"{builder.stats.relationships_created} relationships")
    if stats_dir is not None:
        builder.save_statistics(stats_dir)
    return builder.stats


class TraceRunner:
    """Runs a target program once per repetition and collects the results."""

    def __init__(self, args, config: EtraceConfig, out: TextIO):
        self.args = args
        self.config = config
        self.out = out
        self.errors: List[str] = []
        self.xtool = XDoTool(config.window_wait_attempts, config.window_wait_timeout)

    def log_error(self, message: str):
        """Record a non-fatal error for the current run."""
        self.errors.append(message)
        logger.error(message)

    def reset_errors(self) -> List[str]:
        errors, self.errors = self.errors, []
        return errors

    def check_session(self):
        if self.args.no_window_wait:
            return
        session_type = os.environ.get("XDG_SESSION_TYPE", "")
        if session_type.strip().lower() != "x11":
            raise EtraceError(f"graphical session type {session_type} is unsupported, only x11 is supported")

    def target_command(self) -> List[str]:
        if self.args.use_snap_run:
            return ["snap", "run", *self.args.cmd]
        return list(self.args.cmd)

    def window_spec(self) -> Window:
        if self.args.class_name:
            return Window(window_class=self.args.class_name)
        if self.args.window_name:
            return Window(name=self.args.window_name)
        # the snap or program name, not "snap" when going through snap run
        return Window(window_class=os.path.basename(self.args.cmd[0]))

    def run_prepare_script(self):
        if self.args.prepare_script:
            try:
                run_script(self.args.prepare_script, self.args.prepare_script_args or [])
            except EtraceError as e:
                self.log_error(f"running prepare script: {e}")

    def run_restore_script(self):
        if self.args.restore_script:
            try:
                run_script(self.args.restore_script, self.args.restore_script_args or [])
            except EtraceError as e:
                self.log_error(f"running restore script: {e}")

    def launch(self, command: List[str]) -> int:
        """
        Start the command and wait for its window (or its exit).

        Returns:
            Nanoseconds from start until the window appeared or the command exited
        """
        if self.config.drop_caches and not self.args.keep_vm_caches:
            free_caches()

        logger.debug(f"Running: {' '.join(command)}")
        start = time.monotonic_ns()
        try:
            process = subprocess.Popen(command)
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"cannot run {command[0]}: {e}") from e

        wids: List[str] = []
        if not self.args.no_window_wait:
            try:
                wids = self.xtool.wait_for_window(self.window_spec())
            except EtraceError as e:
                self.log_error(f"waiting for window appearance: {e}")

        if self.args.no_window_wait or not wids:
            returncode = process.wait()
            if returncode != 0:
                self.log_error(f"waiting for command: exit status {returncode}")

        startup = time.monotonic_ns() - start

        if wids:
            self.close_windows(wids)
            try:
                process.wait(timeout=self.config.window_wait_timeout)
            except subprocess.TimeoutExpired:
                self.log_error(f"command {command[0]} still running after closing its windows")
                try:
                    process.kill()
                except OSError as e:
                    self.log_error(f"killing {command[0]}: {e}")
                process.wait()

        return startup

    def close_windows(self, wids: List[str]):
        """Close the windows gracefully, then kill their processes."""
        # the pids must be known before the windows go away
        pids = []
        for wid in wids:
            try:
                pids.append(self.xtool.pid_for_window(wid))
            except (EtraceError, ValueError) as e:
                self.log_error(f"getting pid for wid {wid}: {e}")
                break

        for wid in wids:
            try:
                self.xtool.close_window(wid)
            except EtraceError as e:
                self.log_error(f"closing window: {e}")

        for pid in pids:
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            except OSError as e:
                self.log_error(f"killing window process pid {pid}: {e}")

    def run_exec(self) -> Dict:
        """Time the target, tracing exec calls unless --no-trace is given."""
        self.check_session()
        opts = display_options(self.args)
        runs = []

        for iteration in range(max(self.args.repeat, 1)):
            logger.info(f"Run {iteration + 1} of {max(self.args.repeat, 1)}")
            self.run_prepare_script()
            try:
                if self.args.no_trace:
                    timing = None
                    startup = self.launch(self.target_command())
                else:
                    timing, startup = self._traced_exec_run()
            finally:
                self.run_restore_script()

            if timing is not None and not self.args.json:
                timing.display(self.out, opts)
            if not self.args.json:
                self.out.write(f"Total startup time: {format_duration(startup)}\n")

            if timing is not None and self.args.neo4j_export:
                export_to_neo4j(self.config, timing=timing, clear=self.args.neo4j_clear,
                            stats_dir=self.args.neo4j_stats_dir)

            runs.append({
                'execve_timing': timing.to_dict() if timing is not None else None,
                'time_to_display': startup,
                # not tracing, the startup time is all we know
                'time_to_run': startup if timing is None else timing.total_time,
                'errors': self.reset_errors(),
            })

        return {'runs': runs}

    def _traced_exec_run(self):
        with tempfile.TemporaryDirectory(prefix="exec-trace") as tmp:
            fifo = os.path.join(tmp, "strace.fifo")
            os.mkfifo(fifo, 0o640)
            # one writer stays open so a failing strace never blocks the reader
            writer = os.open(fifo, os.O_RDWR)

            outcome = {}

            def read_fifo():
                try:
                    outcome['timing'] = trace_execve_timings(fifo, self.args.slowest)
                except (EtraceError, OSError) as e:
                    outcome['error'] = e

            reader = threading.Thread(target=read_fifo, name="strace-fifo-reader", daemon=True)
            reader.start()

            try:
                command = trace_exec_command(self.config, fifo, self.target_command())
                startup = self.launch(command)
            finally:
                # the reader only sees EOF once every writer is closed
                os.close(writer)
                reader.join()

        if 'error' in outcome:
            self.log_error(f"cannot extract runtime data: {outcome['error']}")
            raise outcome['error']
        return outcome['timing'], startup

    def run_file(self) -> Dict:
        """Trace every file the target accessed."""
        self.check_session()
        file_filter = build_file_filter(self.args, self.config)
        self.run_prepare_script()

        try:
            with tempfile.TemporaryDirectory(prefix="file-trace") as tmp:
                strace_log = os.path.join(tmp, "strace.log")
                command = trace_files_command(self.config, strace_log, self.target_command())
                startup = self.launch(command)
                try:
                    paths = trace_execve_with_files(
                        strace_log,
                        file_filter,
                        show_programs=self.args.show_programs,
                        merge=True,
                        merge_binary=self.config.merge_binary,
                    )
                except EtraceError as e:
                    self.log_error(f"cannot extract runtime data: {e}")
                    raise
        finally:
            self.run_restore_script()

        if not self.args.json:
            paths.display(self.out, display_options(self.args))
            self.out.write(f"Total startup time: {format_duration(startup)}\n")

        if self.args.neo4j_export:
            export_to_neo4j(self.config, paths=paths, clear=self.args.neo4j_clear,
                            stats_dir=self.args.neo4j_stats_dir)

        return {
            'execve_paths': paths.to_dict(),
            'time_to_display': startup,
            'errors': self.reset_errors(),
        }


def analyze_exec(args, config: EtraceConfig, out: TextIO) -> Dict:
    """Exec timing report for an existing log."""
    timing = trace_execve_timings(args.log, args.slowest)
    if not args.json:
        timing.display(out, display_options(args))
    if args.neo4j_export:
        export_to_neo4j(config, timing=timing, clear=args.neo4j_clear, stats_dir=args.neo4j_stats_dir)
    return {'execve_timing': timing.to_dict()}


def analyze_file(args, config: EtraceConfig, out: TextIO) -> Dict:
    """File access report for an existing log, or merged log fragments."""
    file_filter = build_file_filter(args, config)
    paths = trace_execve_with_files(
        args.log,
        file_filter,
        show_programs=args.show_programs,
        merge=args.merge,
        merged_log=args.merged_log,
        merge_binary=config.merge_binary,
    )
    if not args.json:
        paths.display(out, display_options(args))
    if args.neo4j_export:
        export_to_neo4j(config, paths=paths, clear=args.neo4j_clear, stats_dir=args.neo4j_stats_dir)
    return {'execve_paths': paths.to_dict()}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Setup logging configuration."""
    log_level = logging.DEBUG if verbose else logging.INFO

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w'))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=handlers,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='etrace',
        description='Measure program startup and trace exec calls and file accesses',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Time chromium through snap run, with exec timings
  python3 main.py exec --use-snap-run chromium

  # Files under /snap accessed by the hello-world snap
  python3 main.py file --no-window-wait --use-snap-run --parent-dirs /snap hello-world

  # Report on an existing exec timing log
  python3 main.py analyze-exec --slowest 10 strace.log
        """
    )
    parser.add_argument('--config', type=Path, help='JSON config file (default: ~/.config/etrace/config.json)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', help='Also write logs to this file')
    parser.add_argument('--save-config', type=Path,
                        help='Write the effective configuration (file and environment applied) to this JSON file')

    report = argparse.ArgumentParser(add_help=False)
    report.add_argument('--json', '-j', action='store_true', help='Output results in JSON')
    report.add_argument('--output-file', '-o', help='File to write the results to (default: stdout)')
    report.add_argument('--relative-to-session', action='store_true',
                        help='Measure exec offsets from the session start instead of the first exec')
    report.add_argument('--neo4j-export', action='store_true', help='Export the parsed result to Neo4j')
    report.add_argument('--neo4j-clear', action='store_true', help='Clear etrace nodes before exporting')
    report.add_argument('--neo4j-stats-dir', type=Path,
                        help='Directory to save graph_stats.json to after a Neo4j export')

    files = argparse.ArgumentParser(add_help=False)
    files.add_argument('--file-regex', help='Regular expression of files to return, if empty all files are returned')
    files.add_argument('--parent-dirs', action='append',
                       help='Parent directory matching files must be underneath (repeatable)')
    files.add_argument('--program-regex', help='Regular expression of programs whose file accesses are returned')
    files.add_argument('--include-snapd-programs', action='store_true',
                       help='Include file accesses of snapd programs')
    files.add_argument('--show-programs', action='store_true', help='Show programs that accessed the files')
    files.add_argument('--all-files', action='store_true', help='List every accessed file, ignoring programs')

    run = argparse.ArgumentParser(add_help=False)
    run.add_argument('--use-snap-run', '-s', action='store_true', help='Run command through snap run')
    run.add_argument('--window-name', '-w', help='Window name to wait for')
    run.add_argument('--class-name', '-c', help='Window class to wait for instead of the command name')
    run.add_argument('--no-window-wait', action='store_true',
                     help="Don't wait for the window to appear, just run until the program exits")
    run.add_argument('--prepare-script', '-p', help='Script to run to prepare a run')
    run.add_argument('--prepare-script-args', action='append', help='Arg for the prepare script (repeatable)')
    run.add_argument('--restore-script', '-r', help='Script to run to restore after a run')
    run.add_argument('--restore-script-args', action='append', help='Arg for the restore script (repeatable)')
    run.add_argument('--keep-vm-caches', action='store_true', help="Don't free VM caches before running")
    run.add_argument('cmd', nargs=argparse.REMAINDER, help='Command to run')

    subparsers = parser.add_subparsers(dest='command', required=True)

    exec_parser = subparsers.add_parser('exec', parents=[report, run],
                                        help='Trace the program executions from a program')
    exec_parser.add_argument('--no-trace', '-t', action='store_true',
                             help="Don't trace the process, just time the total execution")
    exec_parser.add_argument('--repeat', '-n', type=int, default=1, help='Number of times to repeat the run')
    exec_parser.add_argument('--slowest', type=int, default=0, help='Only report the N slowest exec calls')

    subparsers.add_parser('file', parents=[report, files, run], help='Trace files accessed from a program')

    analyze_exec_parser = subparsers.add_parser('analyze-exec', parents=[report],
                                                help='Exec timings of an existing strace log')
    analyze_exec_parser.add_argument('log', help='strace log written with -ttt -f')
    analyze_exec_parser.add_argument('--slowest', type=int, default=0, help='Only report the N slowest exec calls')

    analyze_file_parser = subparsers.add_parser('analyze-file', parents=[report, files],
                                                help='File accesses of an existing strace log')
    analyze_file_parser.add_argument('log', help='strace log, or the -ff pattern with --merge')
    analyze_file_parser.add_argument('--merge', action='store_true',
                                     help='Merge the LOG.<pid> fragments with strace-log-merge first')
    analyze_file_parser.add_argument('--merged-log', help='Where to write the merged log (default: LOG)')

    return parser


def run_command(args, config: EtraceConfig, out: TextIO) -> Dict:
    if args.command in ('exec', 'file'):
        if not args.cmd:
            raise EtraceError(f"{args.command} needs a command to run")
        runner = TraceRunner(args, config, out)
        return runner.run_exec() if args.command == 'exec' else runner.run_file()
    if args.command == 'analyze-exec':
        return analyze_exec(args, config, out)
    return analyze_file(args, config, out)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        setup_logging(args.verbose, args.log_file)
    except OSError as e:
        sys.stderr.write(f"etrace: cannot open log file: {e}\n")
        return 1

    manager = ConfigManager(args.config)
    config = manager.get()

    out = sys.stdout
    try:
        if args.save_config:
            manager.save_config(args.save_config)
            logger.info(f"Saved effective config to {args.save_config}")
        if args.output_file:
            out = open(args.output_file, "w", encoding="utf-8")
        result = run_command(args, config, out)
        if args.json:
            json.dump(result, out, indent=2)
            out.write("\n")
        return 0
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 1
    except (EtraceError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    finally:
        if out is not sys.stdout:
            out.close()


if __name__ == "__main__":
    sys.exit(main())
