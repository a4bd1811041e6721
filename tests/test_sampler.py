"""
Tests for the CPU Utilization Sampler
"""

import pytest
from collections import namedtuple
from unittest.mock import patch

from conftest import ScriptedCounterSource

from turboledz.errors import CounterReadError
from turboledz.sampler import (
    ProcStatCounterSource,
    PsutilCounterSource,
    UsageCounters,
    UtilizationSampler,
    utilization,
)


PROC_STAT = """cpu  {agg}
cpu0 100 0 50 500 0 0 0 0 0 0
cpu1 200 0 60 400 0 0 0 0 0 0
intr 12345
ctxt 678
"""


class TestUtilization:
    """Tests for the busy fraction formula."""

    def test_half_busy(self):
        """User 100->120 and idle 500->520 is 50% busy."""
        previous = UsageCounters(user=100, idle=500)
        current = UsageCounters(user=120, idle=520)
        assert utilization(previous, current) == pytest.approx(0.5)

    def test_nice_and_iowait_are_not_work(self):
        previous = UsageCounters()
        current = UsageCounters(user=10, nice=10, system=10, iowait=10)
        assert utilization(previous, current) == pytest.approx(0.5)

    def test_fully_busy(self):
        previous = UsageCounters(user=5, system=5)
        current = UsageCounters(user=15, system=15)
        assert utilization(previous, current) == pytest.approx(1.0)

    def test_no_elapsed_ticks(self):
        counters = UsageCounters(user=7, idle=9)
        assert utilization(counters, counters) == 0.0

    def test_counter_reset(self):
        previous = UsageCounters(user=100, idle=500)
        current = UsageCounters(user=90, idle=520)
        with pytest.raises(CounterReadError):
            utilization(previous, current)

    def test_range(self):
        previous = UsageCounters(1, 2, 3, 4, 5, 6, 7)
        current = UsageCounters(11, 13, 15, 17, 19, 21, 23)
        assert 0.0 <= utilization(previous, current) <= 1.0


class TestProcStatCounterSource:
    """Tests for reading /proc/stat."""

    def test_aggregate_line(self, tmp_path):
        stat = tmp_path / "stat"
        stat.write_text(PROC_STAT.format(agg="300 1 110 900 2 3 4 0 0 0"))
        rows = ProcStatCounterSource(str(stat)).read(1, per_core=False)
        assert rows == [UsageCounters(300, 1, 110, 900, 2, 3, 4)]

    def test_per_core_lines(self, tmp_path):
        stat = tmp_path / "stat"
        stat.write_text(PROC_STAT.format(agg="300 1 110 900 2 3 4 0 0 0"))
        rows = ProcStatCounterSource(str(stat)).read(2, per_core=True)
        assert rows[0].user == 100
        assert rows[1].system == 60

    def test_missing_core_line(self, tmp_path):
        stat = tmp_path / "stat"
        stat.write_text(PROC_STAT.format(agg="300 1 110 900 2 3 4 0 0 0"))
        with pytest.raises(CounterReadError):
            ProcStatCounterSource(str(stat)).read(3, per_core=True)

    def test_truncated_line(self, tmp_path):
        stat = tmp_path / "stat"
        stat.write_text("cpu  1 2 3\n")
        with pytest.raises(CounterReadError):
            ProcStatCounterSource(str(stat)).read(1, per_core=False)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CounterReadError):
            ProcStatCounterSource(str(tmp_path / "nope")).read(1, per_core=False)


class TestPsutilCounterSource:
    """Tests for the psutil counter source."""

    def test_seconds_become_hundredths(self):
        Times = namedtuple("Times", "user nice system idle iowait irq softirq")
        with patch("turboledz.sampler.psutil.cpu_times") as mock_times:
            mock_times.return_value = Times(1.5, 0.0, 0.25, 10.0, 0.0, 0.0, 0.0)
            rows = PsutilCounterSource().read(1, per_core=False)
        assert rows == [UsageCounters(user=150, system=25, idle=1000)]

    def test_windows_categories(self):
        Times = namedtuple("Times", "user system idle interrupt dpc")
        with patch("turboledz.sampler.psutil.cpu_times") as mock_times:
            mock_times.return_value = [Times(1.0, 1.0, 1.0, 0.5, 0.25)]
            rows = PsutilCounterSource().read(1, per_core=True)
        assert rows[0].irq == 50
        assert rows[0].softirq == 25
        assert rows[0].nice == 0

    def test_too_few_cores(self):
        Times = namedtuple("Times", "user system idle")
        with patch("turboledz.sampler.psutil.cpu_times") as mock_times:
            mock_times.return_value = [Times(1.0, 1.0, 1.0)]
            with pytest.raises(CounterReadError):
                PsutilCounterSource().read(2, per_core=True)


class TestUtilizationSampler:
    """Tests for the two-generation sampler."""

    def test_first_sample_measures_interval(self):
        source = ScriptedCounterSource([
            [UsageCounters(user=100, idle=500)],
            [UsageCounters(user=120, idle=520)],
        ])
        sampler = UtilizationSampler(source=source)
        assert source.reads == 1
        assert sampler.sample() == [pytest.approx(0.5)]

    def test_generations_advance(self):
        source = ScriptedCounterSource([
            [UsageCounters(user=0, idle=0)],
            [UsageCounters(user=10, idle=10)],
            [UsageCounters(user=40, idle=10)],
        ])
        sampler = UtilizationSampler(source=source)
        sampler.sample()
        assert sampler.sample() == [pytest.approx(1.0)]

    def test_idle_interval(self):
        source = ScriptedCounterSource([[UsageCounters(user=5)]])
        sampler = UtilizationSampler(source=source)
        assert sampler.sample() == [0.0]

    def test_per_core(self):
        source = ScriptedCounterSource([
            [UsageCounters(), UsageCounters()],
            [UsageCounters(user=10, idle=10), UsageCounters(idle=10)],
        ])
        sampler = UtilizationSampler(num_rows=2, per_core=True, source=source)
        assert sampler.sample() == [pytest.approx(0.5), 0.0]

    def test_wrong_row_count(self):
        source = ScriptedCounterSource([[UsageCounters()]])
        with pytest.raises(CounterReadError):
            UtilizationSampler(num_rows=2, per_core=True, source=source)

    def test_aggregate_is_single_row(self):
        with pytest.raises(ValueError):
            UtilizationSampler(num_rows=2, per_core=False, source=ScriptedCounterSource([[]]))

    def test_counter_reset_propagates(self):
        source = ScriptedCounterSource([
            [UsageCounters(user=100)],
            [UsageCounters(user=50)],
        ])
        sampler = UtilizationSampler(source=source)
        with pytest.raises(CounterReadError):
            sampler.sample()
