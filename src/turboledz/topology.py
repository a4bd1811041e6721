"""
Core Topology Resolution

Determines how many virtual cores the host has, which physical core each one
belongs to, and the frequency range of each core.

A physical core is identified by its lowest-numbered virtual core. Everything
downstream finds the physical cores by filtering ``core_id_of[i] == i``, so
hyperthread siblings are never counted twice.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from .errors import TopologyError

logger = logging.getLogger("turboledz.topology")

MAX_CORES = 128
UNKNOWN_FREQUENCY = -1
SYSFS_CPU_ROOT = "/sys/devices/system/cpu"


@dataclass(frozen=True)
class CoreInventory:
    """Virtual to physical core mapping, fixed for the process lifetime."""
    num_virtual_cores: int
    num_physical_cores: int
    core_id_of: Tuple[int, ...]

    @property
    def primary_cores(self) -> List[int]:
        """Virtual cores that represent a physical core, ascending."""
        return [i for i, core_id in enumerate(self.core_id_of) if core_id == i]

    @classmethod
    def from_core_ids(cls, core_ids) -> "CoreInventory":
        """
        Build an inventory from a virtual-to-physical id list.

        Raises:
            TopologyError: If the list is empty, too long, or refers to a
                representative that does not represent itself
        """
        core_ids = tuple(int(c) for c in core_ids)
        if not core_ids or len(core_ids) > MAX_CORES:
            raise TopologyError(
                f"Unsupported number of cores: {len(core_ids)} (max {MAX_CORES})"
            )
        for cpu, core_id in enumerate(core_ids):
            if not 0 <= core_id < len(core_ids) or core_ids[core_id] != core_id:
                raise TopologyError(
                    f"cpu{cpu} maps to core {core_id}, which is not a primary core"
                )
        num_physical = sum(1 for i, c in enumerate(core_ids) if c == i)
        return cls(
            num_virtual_cores=len(core_ids),
            num_physical_cores=num_physical,
            core_id_of=core_ids,
        )


@dataclass(frozen=True)
class FrequencyRange:
    """Frequency bounds of one virtual core in kHz; -1 when unknown."""
    min: int = UNKNOWN_FREQUENCY
    base: int = UNKNOWN_FREQUENCY
    max: int = UNKNOWN_FREQUENCY

    @property
    def is_known(self) -> bool:
        return self.min >= 0 and self.max >= 0


def parse_cpu_list(text: str) -> List[int]:
    """
    Parse a kernel cpu list such as ``0,8`` or ``0-1`` or ``0-3,8-11``.

    Raises:
        ValueError: If the text is not a cpu list
    """
    cpus = []
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, end = part.split("-", 1)
            cpus.extend(range(int(start), int(end) + 1))
        else:
            cpus.append(int(part))
    if not cpus:
        raise ValueError(f"empty cpu list: {text!r}")
    return cpus


def cpufreq_dir(sysfs_root, cpu: int) -> Path:
    """Per-CPU cpufreq directory. CPUs sharing a policy each get their own link to it."""
    return Path(sysfs_root) / f"cpu{cpu}" / "cpufreq"


def has_cpufreq(sysfs_root) -> bool:
    return cpufreq_dir(sysfs_root, 0).is_dir()


def _read_int(path: Path) -> int:
    """Read an integer sysfs attribute, or UNKNOWN_FREQUENCY if absent."""
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return UNKNOWN_FREQUENCY


class CoreTopologyResolver:
    """
    Resolves the core inventory and frequency ranges of the host.

    Linux hosts are read through sysfs; elsewhere every virtual core is
    treated as its own physical core and psutil supplies frequencies.
    """

    def __init__(self, sysfs_root: str = SYSFS_CPU_ROOT):
        self.sysfs_root = Path(sysfs_root)

    def count_virtual_cores(self) -> int:
        """Number of schedulable execution contexts."""
        count = psutil.cpu_count(logical=True)
        if not count or count > MAX_CORES:
            raise TopologyError(
                f"Core enumeration reported {count} cores (supported: 1..{MAX_CORES})"
            )
        return count

    def physical_core_of(self, cpu: int) -> int:
        """Lowest-numbered sibling of ``cpu``, or ``cpu`` if unknown."""
        siblings_file = self.sysfs_root / f"cpu{cpu}" / "topology" / "thread_siblings_list"
        try:
            siblings = parse_cpu_list(siblings_file.read_text())
        except OSError:
            return cpu
        except ValueError as e:
            raise TopologyError(f"Cannot parse {siblings_file}: {e}")
        return min(siblings)

    def resolve(self) -> CoreInventory:
        """
        Determine the core inventory.

        Returns:
            CoreInventory for this host

        Raises:
            TopologyError: On zero cores, more than MAX_CORES, or a sibling
                list that does not describe a consistent topology
        """
        num_cpus = self.count_virtual_cores()
        inventory = CoreInventory.from_core_ids(
            self.physical_core_of(cpu) for cpu in range(num_cpus)
        )
        logger.info(
            f"Found {inventory.num_virtual_cores} virtual cores, "
            f"{inventory.num_physical_cores} physical cores"
        )
        return inventory

    def read_frequency_ranges(self, num_virtual_cores: int) -> List[FrequencyRange]:
        """
        Read the min/base/max frequency of every virtual core.

        Args:
            num_virtual_cores: Number of cores to read

        Returns:
            One FrequencyRange per virtual core
        """
        if has_cpufreq(self.sysfs_root):
            ranges = []
            for cpu in range(num_virtual_cores):
                policy = cpufreq_dir(self.sysfs_root, cpu)
                ranges.append(FrequencyRange(
                    min=_read_int(policy / "scaling_min_freq"),
                    base=_read_int(policy / "base_frequency"),
                    max=_read_int(policy / "scaling_max_freq"),
                ))
        else:
            ranges = self._psutil_frequency_ranges(num_virtual_cores)

        for cpu, freq_range in enumerate(ranges):
            logger.debug(
                f"cpu {cpu} minfreq: {freq_range.min} basefreq: {freq_range.base} "
                f"maxfreq: {freq_range.max}"
            )
        return ranges

    def _psutil_frequency_ranges(self, num_virtual_cores: int) -> List[FrequencyRange]:
        """Frequency ranges from psutil (MHz), converted to kHz."""
        try:
            freqs = psutil.cpu_freq(percpu=True)
        except (OSError, NotImplementedError, AttributeError):
            freqs = None

        if not freqs:
            logger.warning("No frequency information available; all cores report MIN")
            return [FrequencyRange() for _ in range(num_virtual_cores)]

        ranges = []
        for cpu in range(num_virtual_cores):
            # Some platforms report a single system-wide entry
            freq = freqs[cpu] if cpu < len(freqs) else freqs[0]
            ranges.append(FrequencyRange(
                min=_mhz_to_khz(freq.min),
                base=UNKNOWN_FREQUENCY,
                max=_mhz_to_khz(freq.max),
            ))
        return ranges


def _mhz_to_khz(value: Optional[float]) -> int:
    if not value or value <= 0:
        return UNKNOWN_FREQUENCY
    return int(round(value * 1000))
