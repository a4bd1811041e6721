"""
Frequency Stage Classification

Maps a core's current frequency onto four ordinal stages relative to its
known range. The stages drive the dual-color devices: MIN is dark, LOW green,
MID orange (both LEDs) and MAX red.
"""

import logging
from enum import IntEnum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from .errors import ClassificationDegenerate
from .topology import (
    CoreInventory,
    FrequencyRange,
    SYSFS_CPU_ROOT,
    UNKNOWN_FREQUENCY,
    cpufreq_dir,
    has_cpufreq,
)

logger = logging.getLogger("turboledz.frequency")


class FrequencyStage(IntEnum):
    MIN = 0  # minimal frequency
    LOW = 1  # below nominal
    MID = 2  # nominal or higher
    MAX = 3  # turbo boost


def _check_range(lo: int, hi: int) -> int:
    if lo < 0 or hi < 0:
        raise ClassificationDegenerate(f"unknown frequency range [{lo}, {hi}]")
    if hi <= lo:
        raise ClassificationDegenerate(f"empty frequency range [{lo}, {hi}]")
    return hi - lo


def classify(lo: int, hi: int, current: int) -> FrequencyStage:
    """
    Classify a frequency into a stage.

    The range is split into quartiles; a frequency on a threshold goes to the
    hotter stage. Degenerate or unknown ranges always classify as MIN.

    Args:
        lo: Minimum frequency of the core
        hi: Maximum frequency of the core
        current: Current frequency of the core

    Returns:
        FrequencyStage of ``current``
    """
    try:
        span = _check_range(lo, hi)
    except ClassificationDegenerate as e:
        logger.debug(f"{e}; classifying as MIN")
        return FrequencyStage.MIN

    if current < 0:
        return FrequencyStage.MIN

    t0 = lo + span // 4
    t1 = lo + span // 2
    t2 = hi - span // 4
    if current >= t2:
        return FrequencyStage.MAX
    if current > t1:
        return FrequencyStage.MID
    if current > t0:
        return FrequencyStage.LOW
    return FrequencyStage.MIN


# =============================================================================
# Current Frequency Readers
# =============================================================================

class SysfsFrequencyReader:
    """Reads ``cpuN/cpufreq/scaling_cur_freq`` (kHz)."""

    def __init__(self, sysfs_root: str = SYSFS_CPU_ROOT):
        self.sysfs_root = Path(sysfs_root)

    def __call__(self, cpu: int) -> int:
        path = cpufreq_dir(self.sysfs_root, cpu) / "scaling_cur_freq"
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            return UNKNOWN_FREQUENCY


class PsutilFrequencyReader:
    """Current frequency through psutil, converted from MHz to kHz."""

    def __init__(self):
        self._cache = None

    def refresh(self) -> None:
        try:
            self._cache = psutil.cpu_freq(percpu=True) or []
        except (OSError, NotImplementedError, AttributeError):
            self._cache = []

    def __call__(self, cpu: int) -> int:
        if self._cache is None:
            self.refresh()
        if not self._cache:
            return UNKNOWN_FREQUENCY
        freq = self._cache[cpu] if cpu < len(self._cache) else self._cache[0]
        if not freq.current or freq.current <= 0:
            return UNKNOWN_FREQUENCY
        return int(round(freq.current * 1000))


def default_frequency_reader(sysfs_root: str = SYSFS_CPU_ROOT) -> Callable[[int], int]:
    """sysfs reader where cpufreq exists, psutil otherwise."""
    if has_cpufreq(sysfs_root):
        return SysfsFrequencyReader(sysfs_root)
    return PsutilFrequencyReader()


class FrequencyStageClassifier:
    """
    Classifies the current frequency of every physical core.

    Only primary cores (``core_id_of[i] == i``) are read; their hyperthread
    siblings share the same clock.
    """

    def __init__(
        self,
        inventory: CoreInventory,
        ranges: Sequence[FrequencyRange],
        reader: Optional[Callable[[int], int]] = None,
    ):
        if len(ranges) < inventory.num_virtual_cores:
            raise ValueError(
                f"{len(ranges)} frequency ranges for {inventory.num_virtual_cores} cores"
            )
        self.inventory = inventory
        self.ranges = list(ranges)
        self.reader = reader or default_frequency_reader()
        self._primary_cores = inventory.primary_cores

        unknown = [cpu for cpu in self._primary_cores if not self.ranges[cpu].is_known]
        if unknown:
            logger.warning(f"No frequency range for cores {unknown}; they will show MIN")

    @property
    def primary_cores(self) -> List[int]:
        return list(self._primary_cores)

    def classify_all(self) -> List[FrequencyStage]:
        """
        Classify every physical core.

        Returns:
            One stage per physical core, ordered by primary core number
        """
        refresh = getattr(self.reader, "refresh", None)
        if refresh is not None:
            refresh()

        stages = []
        for cpu in self._primary_cores:
            freq_range = self.ranges[cpu]
            stages.append(classify(freq_range.min, freq_range.max, self.reader(cpu)))
        return stages
