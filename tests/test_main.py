"""
Tests for the etrace command line in main.py.
"""

import json
from pathlib import Path
from unittest import mock

import pytest

import main

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def config_args(tmp_path):
    return ["--config", str(tmp_path / "missing-config.json")]


class TestAnalyzeExec:
    """Tests for analyze-exec."""

    def test_text_report(self, config_args, capsys):
        assert main.main(config_args + ["analyze-exec", str(FIXTURES / "exec_trace.log")]) == 0
        expected = (FIXTURES / "exec_trace.expected").read_text(encoding="utf-8")
        assert capsys.readouterr().out == expected

    def test_json_report(self, config_args, capsys):
        assert main.main(config_args + ["analyze-exec", "--json", "--slowest", "1",
                                        str(FIXTURES / "exec_trace.log")]) == 0
        data = json.loads(capsys.readouterr().out)
        runtimes = data['execve_timing']['exe_runtimes']
        assert [r['exe'] for r in runtimes] == ["/usr/lib/snapd/snap-confine"]
        assert data['execve_timing']['total_time'] == 49_752_000

    def test_output_file(self, config_args, tmp_path, capsys):
        output = tmp_path / "report.txt"
        assert main.main(config_args + ["analyze-exec", "--output-file", str(output),
                                        str(FIXTURES / "exec_trace.log")]) == 0
        assert capsys.readouterr().out == ""
        assert output.read_text(encoding="utf-8").startswith("5 exec calls during snap run:\n")

    def test_unwritable_output_file(self, config_args, tmp_path, capsys):
        output = tmp_path / "no" / "such" / "report.txt"
        assert main.main(config_args + ["analyze-exec", "--output-file", str(output),
                                        str(FIXTURES / "exec_trace.log")]) == 1
        assert capsys.readouterr().out == ""

    def test_unwritable_log_file(self, config_args, tmp_path, capsys):
        log_file = tmp_path / "no" / "such" / "etrace.log"
        assert main.main(config_args + ["--log-file", str(log_file), "analyze-exec",
                                        str(FIXTURES / "exec_trace.log")]) == 1
        assert "cannot open log file" in capsys.readouterr().err

    def test_parse_error_exits_nonzero(self, config_args, tmp_path):
        empty = tmp_path / "empty.log"
        empty.write_text("")
        assert main.main(config_args + ["analyze-exec", str(empty)]) == 1

    def test_neo4j_export(self, config_args):
        with mock.patch("main.ProcessGraphBuilder") as builder_class:
            builder = builder_class.return_value
            builder.connect.return_value = True
            assert main.main(config_args + ["analyze-exec", "--neo4j-export",
                                            str(FIXTURES / "exec_trace.log")]) == 0
        builder.create_constraints_and_indexes.assert_called_once()
        builder.export_timing.assert_called_once()
        builder.clear_database.assert_not_called()
        builder.close.assert_called_once()

    def test_neo4j_stats_dir(self, config_args, tmp_path):
        stats_dir = tmp_path / "stats"
        with mock.patch("main.ProcessGraphBuilder") as builder_class:
            builder = builder_class.return_value
            builder.connect.return_value = True
            assert main.main(config_args + ["analyze-exec", "--neo4j-export", "--neo4j-stats-dir", str(stats_dir),
                                            str(FIXTURES / "exec_trace.log")]) == 0
        builder.save_statistics.assert_called_once_with(stats_dir)

    def test_neo4j_unavailable(self, config_args):
        with mock.patch("main.ProcessGraphBuilder") as builder_class:
            builder_class.return_value.connect.return_value = False
            assert main.main(config_args + ["analyze-exec", "--neo4j-export",
                                            str(FIXTURES / "exec_trace.log")]) == 1


class TestAnalyzeFile:
    """Tests for analyze-file."""

    def test_text_report(self, config_args, capsys):
        assert main.main(config_args + ["analyze-file", "--parent-dirs", "/etrace-fixture/demo/bin",
                                        str(FIXTURES / "file_trace.log")]) == 0
        assert capsys.readouterr().out == (
            "2 files accessed during snap run:\n"
            "\tFilename\tSize (bytes)\n"
            "\t/etrace-fixture/demo/bin/demo\tunknown\n"
            "\t/etrace-fixture/demo/bin/helper\tunknown\n"
            "\n"
        )

    def test_show_programs(self, config_args, capsys):
        assert main.main(config_args + ["analyze-file", "--show-programs", "--file-regex", "libdemo",
                                        str(FIXTURES / "file_trace.log")]) == 0
        assert "\t/etrace-fixture/demo/lib/libdemo.so\tunknown\t/etrace-fixture/demo/bin/helper\n" \
            in capsys.readouterr().out

    def test_json_report(self, config_args, capsys):
        assert main.main(config_args + ["analyze-file", "--json", "--include-snapd-programs",
                                        str(FIXTURES / "file_trace.log")]) == 0
        data = json.loads(capsys.readouterr().out)
        assert len(data['execve_paths']['files']) == 7

    def test_malformed_regex(self, config_args, capsys):
        assert main.main(config_args + ["analyze-file", "--file-regex", "(",
                                        str(FIXTURES / "file_trace.log")]) == 1
        assert capsys.readouterr().out == ""

    def test_regex_with_parent_dirs(self, config_args):
        assert main.main(config_args + ["analyze-file", "--file-regex", "x", "--parent-dirs", "/etc",
                                        str(FIXTURES / "file_trace.log")]) == 1


class TestExecRuns:
    """Tests for running a program under exec."""

    def test_untraced_repeat(self, config_args, capsys):
        process = mock.Mock()
        process.wait.return_value = 0
        with mock.patch("main.subprocess.Popen", return_value=process) as popen:
            assert main.main(config_args + ["exec", "--no-trace", "--no-window-wait", "--keep-vm-caches",
                                            "--repeat", "2", "--json", "true", "--flag"]) == 0

        popen.assert_called_with(["true", "--flag"])
        assert popen.call_count == 2
        data = json.loads(capsys.readouterr().out)
        assert len(data['runs']) == 2
        run = data['runs'][0]
        assert run['execve_timing'] is None
        assert run['time_to_run'] == run['time_to_display']
        assert run['errors'] == []

    def test_failing_command_is_recorded(self, config_args, capsys):
        process = mock.Mock()
        process.wait.return_value = 3
        with mock.patch("main.subprocess.Popen", return_value=process):
            assert main.main(config_args + ["exec", "--no-trace", "--no-window-wait", "--keep-vm-caches",
                                            "--json", "false"]) == 0
        run = json.loads(capsys.readouterr().out)['runs'][0]
        assert run['errors'] == ["waiting for command: exit status 3"]

    def test_traced_run_reads_the_fifo(self, config_args, capsys):
        fixture = FIXTURES / "exec_trace.log"

        def fake_strace(config, fifo, command):
            return ["sh", "-c", f"cat '{fixture}' > '{fifo}'"]

        with mock.patch("main.trace_exec_command", side_effect=fake_strace):
            assert main.main(config_args + ["exec", "--no-window-wait", "--keep-vm-caches", "hello"]) == 0

        out = capsys.readouterr().out
        expected = fixture.with_suffix(".expected").read_text(encoding="utf-8")
        assert out.startswith(expected)
        assert "Total startup time: " in out

    def test_requires_x11_for_window_wait(self, config_args, monkeypatch):
        monkeypatch.setenv("XDG_SESSION_TYPE", "wayland")
        assert main.main(config_args + ["exec", "--no-trace", "--keep-vm-caches", "true"]) == 1

    def test_needs_a_command(self, config_args):
        assert main.main(config_args + ["exec", "--no-window-wait"]) == 1

    def test_prepare_script_failure_is_not_fatal(self, config_args, capsys):
        process = mock.Mock()
        process.wait.return_value = 0
        with mock.patch("main.subprocess.Popen", return_value=process), \
                mock.patch("main.run_script", side_effect=main.EtraceError("exit code 1")):
            assert main.main(config_args + ["exec", "--no-trace", "--no-window-wait", "--keep-vm-caches",
                                            "--prepare-script", "prep.sh", "--json", "true"]) == 0
        run = json.loads(capsys.readouterr().out)['runs'][0]
        assert run['errors'] == ["running prepare script: exit code 1"]


class TestWindowHandling:
    """Tests for waiting on and closing the target's window."""

    def make_runner(self, config_args, extra):
        args = main.build_parser().parse_args(config_args + ["exec", "--no-trace", "--keep-vm-caches"] + extra)
        return main.TraceRunner(args, main.EtraceConfig(), out=mock.Mock())

    def test_window_spec_defaults_to_command_name(self, config_args):
        runner = self.make_runner(config_args, ["--use-snap-run", "chromium"])
        assert runner.target_command() == ["snap", "run", "chromium"]
        assert runner.window_spec() == main.Window(window_class="chromium")

    def test_window_spec_prefers_class(self, config_args):
        runner = self.make_runner(config_args, ["--class-name", "Chromium", "--window-name", "x", "chromium"])
        assert runner.window_spec() == main.Window(window_class="Chromium")

    def test_window_closed_and_killed(self, config_args):
        runner = self.make_runner(config_args, ["chromium"])
        runner.xtool = mock.Mock()
        runner.xtool.wait_for_window.return_value = ["101"]
        runner.xtool.pid_for_window.return_value = 4242
        process = mock.Mock()

        with mock.patch("main.subprocess.Popen", return_value=process), \
                mock.patch("main.os.kill") as kill:
            runner.launch(["chromium"])

        runner.xtool.close_window.assert_called_once_with("101")
        kill.assert_called_once_with(4242, main.signal.SIGKILL)
        assert runner.errors == []

    def test_window_wait_failure_falls_back_to_exit(self, config_args):
        runner = self.make_runner(config_args, ["chromium"])
        runner.xtool = mock.Mock()
        runner.xtool.wait_for_window.side_effect = main.EtraceError("timed out")
        process = mock.Mock()
        process.wait.return_value = 0

        with mock.patch("main.subprocess.Popen", return_value=process):
            runner.launch(["chromium"])

        process.wait.assert_called_once_with()
        runner.xtool.close_window.assert_not_called()
        assert runner.errors == ["waiting for window appearance: timed out"]


class TestSaveConfig:
    """Tests for writing out the effective configuration."""

    def test_writes_file_and_environment_settings(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"window_wait_attempts": 3}))
        monkeypatch.setenv("ETRACE_STRACE", "/opt/strace")
        saved = tmp_path / "effective.json"

        assert main.main(["--config", str(config_file), "--save-config", str(saved),
                          "analyze-exec", str(FIXTURES / "exec_trace.log")]) == 0

        data = json.loads(saved.read_text())
        assert data['window_wait_attempts'] == 3
        assert data['strace_binary'] == "/opt/strace"
        assert data['merge_binary'] == "strace-log-merge"

    def test_unwritable_destination(self, config_args, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        assert main.main(config_args + ["--save-config", str(blocker / "config.json"),
                                        "analyze-exec", str(FIXTURES / "exec_trace.log")]) == 1
