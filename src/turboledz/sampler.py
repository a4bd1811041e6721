"""
CPU Utilization Sampler

Derives busy fractions from the cumulative tick counters the OS keeps per
core. Only the delta between two generations of counters is meaningful, so
the sampler owns both generations and hands out fractions only.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, NamedTuple, Optional

import psutil

from .errors import CounterReadError

logger = logging.getLogger("turboledz.sampler")

PROC_STAT_PATH = "/proc/stat"
NUM_CATEGORIES = 7


class UsageCounters(NamedTuple):
    """Cumulative ticks spent in each CPU state."""
    user: int = 0
    nice: int = 0
    system: int = 0
    idle: int = 0
    iowait: int = 0
    irq: int = 0
    softirq: int = 0


def utilization(previous: UsageCounters, current: UsageCounters) -> float:
    """
    Busy fraction between two counter generations.

    Work is user + system time; the total is the sum of all seven categories.
    Returns 0.0 when no tick elapsed between the generations.

    Raises:
        CounterReadError: If any counter went backwards
    """
    deltas = [cur - prev for prev, cur in zip(previous, current)]
    if any(delta < 0 for delta in deltas):
        raise CounterReadError(
            f"Tick counters went backwards ({previous} -> {current}); "
            "counters were reset"
        )
    total = sum(deltas)
    if total == 0:
        return 0.0
    work = deltas[0] + deltas[2]
    return work / total


# =============================================================================
# Counter Sources
# =============================================================================

class CounterSource(ABC):
    """Provides the current cumulative tick counters."""

    @abstractmethod
    def read(self, num_rows: int, per_core: bool) -> List[UsageCounters]:
        """
        Read counters.

        Args:
            num_rows: Number of rows to return
            per_core: True for cpu0..cpuN-1, False for the aggregate line

        Raises:
            CounterReadError: If a requested row is unavailable
        """


class ProcStatCounterSource(CounterSource):
    """Reads tick counters from /proc/stat (Linux)."""

    def __init__(self, path: str = PROC_STAT_PATH):
        self.path = Path(path)

    def read(self, num_rows: int, per_core: bool) -> List[UsageCounters]:
        try:
            text = self.path.read_text()
        except OSError as e:
            raise CounterReadError(f"Cannot read {self.path}: {e}")

        lines = {}
        for line in text.splitlines():
            if line.startswith("cpu"):
                tag, _, rest = line.partition(" ")
                lines[tag] = rest.split()

        tags = [f"cpu{i}" for i in range(num_rows)] if per_core else ["cpu"]
        rows = []
        for tag in tags:
            fields = lines.get(tag)
            if fields is None:
                raise CounterReadError(f"No '{tag}' line in {self.path}")
            if len(fields) < NUM_CATEGORIES:
                raise CounterReadError(f"Truncated '{tag}' line in {self.path}")
            try:
                rows.append(UsageCounters(*(int(v) for v in fields[:NUM_CATEGORIES])))
            except ValueError:
                raise CounterReadError(f"Malformed '{tag}' line in {self.path}")
        return rows


class PsutilCounterSource(CounterSource):
    """
    Reads tick counters through psutil.

    psutil reports seconds as floats; they are converted to hundredths so the
    arithmetic stays integral. Categories a platform lacks read as 0.
    """

    TICKS_PER_SECOND = 100

    def read(self, num_rows: int, per_core: bool) -> List[UsageCounters]:
        try:
            times = psutil.cpu_times(percpu=per_core)
        except OSError as e:
            raise CounterReadError(f"psutil.cpu_times() failed: {e}")

        if not per_core:
            times = [times]
        if len(times) < num_rows:
            raise CounterReadError(
                f"psutil reported {len(times)} cores, {num_rows} requested"
            )
        return [self._to_counters(t) for t in times[:num_rows]]

    def _to_counters(self, times) -> UsageCounters:
        def ticks(name: str) -> int:
            return int(getattr(times, name, 0.0) * self.TICKS_PER_SECOND)

        return UsageCounters(
            user=ticks("user"),
            nice=ticks("nice"),
            system=ticks("system"),
            idle=ticks("idle"),
            iowait=ticks("iowait"),
            # Windows names its interrupt categories differently
            irq=ticks("irq") or ticks("interrupt"),
            softirq=ticks("softirq") or ticks("dpc"),
        )


def default_counter_source() -> CounterSource:
    """/proc/stat where it exists, psutil everywhere else."""
    if Path(PROC_STAT_PATH).exists():
        return ProcStatCounterSource()
    return PsutilCounterSource()


# =============================================================================
# Sampler
# =============================================================================

class UtilizationSampler:
    """
    Owns two generations of tick counters and turns them into fractions.

    The first generation is read at construction, so the first ``sample()``
    already measures a real interval.
    """

    def __init__(
        self,
        num_rows: int = 1,
        per_core: bool = False,
        source: Optional[CounterSource] = None,
    ):
        """
        Initialize the sampler.

        Args:
            num_rows: Number of counter rows (cores) to track
            per_core: Read per-core lines instead of the aggregate line
            source: Counter source; defaults to default_counter_source()
        """
        if num_rows < 1:
            raise ValueError("num_rows must be at least 1")
        if not per_core and num_rows != 1:
            raise ValueError("The aggregate line is a single row")
        self.num_rows = num_rows
        self.per_core = per_core
        self.source = source or default_counter_source()
        self._previous: List[UsageCounters] = self._read()
        self._current: List[UsageCounters] = list(self._previous)

    def _read(self) -> List[UsageCounters]:
        rows = self.source.read(self.num_rows, self.per_core)
        if len(rows) != self.num_rows:
            raise CounterReadError(
                f"Counter source returned {len(rows)} rows, expected {self.num_rows}"
            )
        return rows

    def sample(self) -> List[float]:
        """
        Take one sample.

        Returns:
            One utilization fraction in [0, 1] per row

        Raises:
            CounterReadError: If the source failed or a counter went backwards
        """
        self._current = self._read()
        fractions = [
            utilization(prev, cur)
            for prev, cur in zip(self._previous, self._current)
        ]
        self._previous = self._current
        return fractions
