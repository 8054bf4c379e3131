"""
Tests for exec_timing.py module.
"""

import io

import pytest

from exec_timing import DisplayOptions, ExecveTiming, format_duration
from pid_tracker import ExecutionRecord


def record(exe, start, duration, pid="1"):
    return ExecutionRecord(pid=pid, exe=exe, start=start, duration=duration)


class TestFormatDuration:
    """Tests for duration rendering."""

    @pytest.mark.parametrize("nanoseconds,expected", [
        (0, "0s"),
        (750, "750ns"),
        (1_000, "1µs"),
        (12_500, "12.5µs"),
        (1_250_000, "1.25ms"),
        (20_252_000, "20.252ms"),
        (3_000_001_000, "3.000001s"),
        (-1_500_000, "-1.5ms"),
        (59_999_000_000, "59.999s"),
        (62_500_000_000, "1m2.5s"),
        (120_000_000_000, "2m0s"),
        (3_600_000_000_000, "1h0m0s"),
        (3_723_000_001_000, "1h2m3.000001s"),
        (-90_000_000_000, "-1m30s"),
    ])
    def test_units(self, nanoseconds, expected):
        assert format_duration(nanoseconds) == expected


class TestBoundedRetention:
    """Tests for keeping only the N slowest records."""

    def test_zero_keeps_everything(self):
        timing = ExecveTiming()
        for i in range(20):
            timing.record(record(f"/bin/{i}", i * 10, i + 1))
        assert len(timing) == 20
        assert timing.evicted == 0

    def test_keeps_the_largest_durations(self):
        timing = ExecveTiming(n_slowest=3)
        for exe, duration in [("/a", 5), ("/b", 1), ("/c", 9), ("/d", 7), ("/e", 3)]:
            timing.record(record(exe, 0, duration))

        assert sorted(r.duration for r in timing.exe_runtimes) == [5, 7, 9]
        assert timing.evicted == 2

    def test_smaller_than_minimum_changes_nothing(self):
        timing = ExecveTiming(n_slowest=2)
        timing.record(record("/a", 0, 10))
        timing.record(record("/b", 0, 20))
        before = list(timing.exe_runtimes)

        timing.record(record("/c", 0, 5))
        assert timing.exe_runtimes == before

    def test_ties_keep_the_earliest_insertion(self):
        timing = ExecveTiming(n_slowest=2)
        timing.record(record("/first", 0, 10))
        timing.record(record("/big", 0, 50))
        timing.record(record("/second", 0, 10))

        assert [r.exe for r in timing.exe_runtimes] == ["/first", "/big"]

    def test_negative_cap(self):
        with pytest.raises(ValueError):
            ExecveTiming(n_slowest=-1)


class TestRelativeOffsets:
    """Tests for start/stop offsets in microseconds."""

    def test_sorted_by_start(self):
        timing = ExecveTiming()
        timing.record(record("/late", 9_000_000, 1_000))
        timing.record(record("/early", 1_000_000, 2_000_000))
        rows = timing.relative_offsets()
        assert [row['exe'] for row in rows] == ["/early", "/late"]

    def test_relative_to_earliest_record_by_default(self):
        timing = ExecveTiming()
        timing.record(record("/a", 5_000_000, 2_000_000))
        timing.record(record("/b", 8_000_000, 1_500))
        timing.finalize(1_000_000, 10_000_000)

        rows = timing.relative_offsets()
        assert (rows[0]['start_us'], rows[0]['stop_us']) == (0, 2000)
        assert (rows[1]['start_us'], rows[1]['stop_us']) == (3000, 3001)

    def test_relative_to_session_start(self):
        timing = ExecveTiming()
        timing.record(record("/a", 5_000_000, 2_000_000))
        timing.finalize(1_000_000, 10_000_000)

        rows = timing.relative_offsets(DisplayOptions(relative_to_session_start=True))
        assert (rows[0]['start_us'], rows[0]['stop_us']) == (4000, 6000)

    def test_empty(self):
        assert ExecveTiming().relative_offsets() == []


class TestDisplay:
    """Tests for the rendered timing table."""

    def test_table(self):
        timing = ExecveTiming()
        timing.record(record("/usr/bin/snap", 1_000_000_000, 10_000_000))
        timing.record(record("/bin/true", 1_010_000_000, 1_500_000, pid="2"))
        timing.finalize(1_000_000_000, 1_020_000_000)

        out = io.StringIO()
        timing.display(out)
        assert out.getvalue() == (
            "2 exec calls during snap run:\n"
            "\tStart\tStop\tElapsed\tExec\n"
            "\t0\t10000\t10ms\t/usr/bin/snap\n"
            "\t10000\t11500\t1.5ms\t/bin/true\n"
            "Total time: 20ms\n"
        )

    def test_empty_writes_nothing(self):
        timing = ExecveTiming()
        timing.finalize(0, 100)
        out = io.StringIO()
        timing.display(out)
        assert out.getvalue() == ""

    def test_finalize_total_time(self):
        timing = ExecveTiming()
        timing.finalize(1_000_000_000, 3_500_000_000)
        assert timing.total_time == 2_500_000_000
        assert timing.total_time_seconds == 2.5

    def test_to_dict(self):
        timing = ExecveTiming()
        timing.record(record("/b", 20, 5))
        timing.record(record("/a", 10, 5))
        timing.finalize(0, 100)
        data = timing.to_dict()
        assert data['total_time'] == 100
        assert [r['exe'] for r in data['exe_runtimes']] == ["/a", "/b"]
