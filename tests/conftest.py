"""
Pytest Configuration and Fixtures

Provides shared fixtures and fakes for all tests: a fake sysfs tree, a
scripted tick counter source and a recording transport.
"""

import pytest
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence
from unittest.mock import patch

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from turboledz.devices import DeviceCandidate, DeviceRecord, Transport
from turboledz.encoder import ModelKind
from turboledz.errors import DeviceWriteError
from turboledz.sampler import CounterSource, UsageCounters
from turboledz.utils import get_default_config


def build_sysfs(
    root: Path,
    core_ids: Sequence[int],
    ranges: Optional[Sequence[tuple]] = None,
    current: Optional[Sequence[int]] = None,
) -> Path:
    """
    Create a fake /sys/devices/system/cpu tree.

    Args:
        root: Directory to build in
        core_ids: Physical representative of every virtual core
        ranges: (min, base, max) per virtual core, in kHz
        current: Current frequency per virtual core, in kHz
    """
    for cpu, core_id in enumerate(core_ids):
        siblings = [str(j) for j, c in enumerate(core_ids) if c == core_id]
        topo = root / f"cpu{cpu}" / "topology"
        topo.mkdir(parents=True, exist_ok=True)
        (topo / "thread_siblings_list").write_text(",".join(siblings) + "\n")

        if ranges is not None:
            policy = root / f"cpu{cpu}" / "cpufreq"
            policy.mkdir(parents=True, exist_ok=True)
            lo, base, hi = ranges[cpu]
            (policy / "scaling_min_freq").write_text(f"{lo}\n")
            (policy / "base_frequency").write_text(f"{base}\n")
            (policy / "scaling_max_freq").write_text(f"{hi}\n")
            cur = current[cpu] if current is not None else lo
            (policy / "scaling_cur_freq").write_text(f"{cur}\n")
    return root


def link_shared_policy(root: Path, policy_cpu: int, cpus: Sequence[int]) -> None:
    """Point the cpufreq directory of every CPU in ``cpus`` at one shared policy."""
    policy = root / "cpufreq" / f"policy{policy_cpu}"
    policy.parent.mkdir(parents=True, exist_ok=True)
    (root / f"cpu{policy_cpu}" / "cpufreq").rename(policy)
    for cpu in {policy_cpu, *cpus}:
        link = root / f"cpu{cpu}" / "cpufreq"
        if link.is_dir() and not link.is_symlink():
            for attribute in link.iterdir():
                attribute.unlink()
            link.rmdir()
        link.symlink_to(policy, target_is_directory=True)


def set_current_frequency(root: Path, cpu: int, khz: int) -> None:
    (root / f"cpu{cpu}" / "cpufreq" / "scaling_cur_freq").write_text(f"{khz}\n")


class ScriptedCounterSource(CounterSource):
    """Returns the given counter generations one after another."""

    def __init__(self, generations: List[List[UsageCounters]]):
        self.generations = list(generations)
        self.reads = 0

    def read(self, num_rows: int, per_core: bool) -> List[UsageCounters]:
        index = min(self.reads, len(self.generations) - 1)
        self.reads += 1
        return list(self.generations[index])


class RecordingTransport(Transport):
    """Transport that records writes and can be told to fail."""

    def __init__(self, candidates: Optional[List[DeviceCandidate]] = None):
        self.candidates = candidates or []
        self.writes: List[tuple] = []
        self.closed: List[Any] = []
        self.failing = set()

    def enumerate(self) -> List[DeviceCandidate]:
        return list(self.candidates)

    def open(self, candidate: DeviceCandidate) -> Any:
        return candidate.path

    def write(self, handle: Any, report: bytes) -> int:
        self.writes.append((handle, bytes(report)))
        if handle in self.failing:
            raise DeviceWriteError(f"write to {handle} failed")
        return len(report)

    def close(self, handle: Any) -> None:
        self.closed.append(handle)

    def reports_for(self, handle: Any) -> List[bytes]:
        return [report for h, report in self.writes if h == handle]


@pytest.fixture
def default_config():
    """Provide default configuration."""
    return get_default_config()


@pytest.fixture
def hyperthreaded_sysfs(tmp_path):
    """2 physical / 4 virtual cores, range 800-4000 MHz, cores at minimum."""
    ranges = [(800000, 2400000, 4000000)] * 4
    return build_sysfs(tmp_path / "cpu", [0, 1, 0, 1], ranges)


@pytest.fixture
def mock_cpu_count():
    """Patch the platform core count."""
    with patch("turboledz.topology.psutil.cpu_count") as mock_count:
        yield mock_count


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def bar_device():
    return DeviceRecord(handle="bar0", model=ModelKind.M810)


@pytest.fixture
def stage_device():
    return DeviceRecord(handle="col0", model=ModelKind.M810C)
