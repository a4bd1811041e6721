"""
Tests for Core Topology Resolution

Covers:
    - Physical core representatives and hyperthread siblings
    - Core count limits
    - Frequency range discovery and unknown values
"""

import pytest
from unittest.mock import patch
from collections import namedtuple

from conftest import build_sysfs, link_shared_policy

from turboledz.errors import TopologyError
from turboledz.topology import (
    CoreInventory,
    CoreTopologyResolver,
    FrequencyRange,
    MAX_CORES,
    UNKNOWN_FREQUENCY,
    parse_cpu_list,
)


class TestParseCpuList:
    """Tests for kernel cpu list parsing."""

    def test_comma_list(self):
        assert parse_cpu_list("0,8\n") == [0, 8]

    def test_range(self):
        assert parse_cpu_list("2-3") == [2, 3]

    def test_mixed(self):
        assert parse_cpu_list("0-1,8-9") == [0, 1, 8, 9]

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            parse_cpu_list("\n")


class TestCoreInventory:
    """Tests for the inventory invariants."""

    def test_hyperthreaded_inventory(self):
        """2 physical / 4 virtual cores."""
        inventory = CoreInventory.from_core_ids([0, 1, 0, 1])
        assert inventory.num_virtual_cores == 4
        assert inventory.num_physical_cores == 2
        assert inventory.primary_cores == [0, 1]

    def test_no_smt(self):
        inventory = CoreInventory.from_core_ids([0, 1, 2])
        assert inventory.num_physical_cores == 3
        assert inventory.primary_cores == [0, 1, 2]

    def test_primary_count_matches_physical(self):
        inventory = CoreInventory.from_core_ids([0, 0, 2, 2, 4, 5])
        assert len(inventory.primary_cores) == inventory.num_physical_cores == 4

    def test_representative_must_represent_itself(self):
        with pytest.raises(TopologyError):
            CoreInventory.from_core_ids([1, 0])

    def test_out_of_range_representative(self):
        with pytest.raises(TopologyError):
            CoreInventory.from_core_ids([0, 7])

    def test_empty_rejected(self):
        with pytest.raises(TopologyError):
            CoreInventory.from_core_ids([])

    def test_immutable(self):
        inventory = CoreInventory.from_core_ids([0])
        with pytest.raises(Exception):
            inventory.num_physical_cores = 5


class TestCoreTopologyResolver:
    """Tests for resolving the topology from sysfs."""

    def test_resolve_hyperthreaded(self, hyperthreaded_sysfs, mock_cpu_count):
        mock_cpu_count.return_value = 4
        inventory = CoreTopologyResolver(str(hyperthreaded_sysfs)).resolve()
        assert inventory.core_id_of == (0, 1, 0, 1)
        assert inventory.num_physical_cores == 2

    def test_lowest_sibling_is_representative(self, tmp_path, mock_cpu_count):
        """cpu15 on an 8-core/16-thread machine belongs to core 7."""
        core_ids = [i % 8 for i in range(16)]
        root = build_sysfs(tmp_path / "cpu", core_ids)
        mock_cpu_count.return_value = 16
        inventory = CoreTopologyResolver(str(root)).resolve()
        assert inventory.core_id_of[15] == 7
        assert inventory.primary_cores == list(range(8))

    def test_missing_topology_means_own_core(self, tmp_path, mock_cpu_count):
        mock_cpu_count.return_value = 3
        inventory = CoreTopologyResolver(str(tmp_path)).resolve()
        assert inventory.core_id_of == (0, 1, 2)
        assert inventory.num_physical_cores == 3

    def test_zero_cores(self, tmp_path, mock_cpu_count):
        mock_cpu_count.return_value = 0
        with pytest.raises(TopologyError):
            CoreTopologyResolver(str(tmp_path)).resolve()

    def test_unknown_core_count(self, tmp_path, mock_cpu_count):
        mock_cpu_count.return_value = None
        with pytest.raises(TopologyError):
            CoreTopologyResolver(str(tmp_path)).resolve()

    def test_too_many_cores(self, tmp_path, mock_cpu_count):
        mock_cpu_count.return_value = MAX_CORES + 1
        with pytest.raises(TopologyError):
            CoreTopologyResolver(str(tmp_path)).resolve()

    def test_max_cores_accepted(self, tmp_path, mock_cpu_count):
        mock_cpu_count.return_value = MAX_CORES
        inventory = CoreTopologyResolver(str(tmp_path)).resolve()
        assert inventory.num_virtual_cores == MAX_CORES

    def test_garbage_sibling_list(self, tmp_path, mock_cpu_count):
        topo = tmp_path / "cpu0" / "topology"
        topo.mkdir(parents=True)
        (topo / "thread_siblings_list").write_text("zero\n")
        mock_cpu_count.return_value = 1
        with pytest.raises(TopologyError):
            CoreTopologyResolver(str(tmp_path)).resolve()


class TestFrequencyRanges:
    """Tests for frequency range discovery."""

    def test_sysfs_ranges(self, hyperthreaded_sysfs):
        ranges = CoreTopologyResolver(str(hyperthreaded_sysfs)).read_frequency_ranges(4)
        assert ranges[0] == FrequencyRange(min=800000, base=2400000, max=4000000)
        assert all(r.is_known for r in ranges)

    def test_missing_attribute_is_unknown(self, hyperthreaded_sysfs):
        (hyperthreaded_sysfs / "cpu1" / "cpufreq" / "base_frequency").unlink()
        ranges = CoreTopologyResolver(str(hyperthreaded_sysfs)).read_frequency_ranges(4)
        assert ranges[1].base == UNKNOWN_FREQUENCY
        assert ranges[1].is_known

    def test_missing_policy_is_unknown(self, hyperthreaded_sysfs):
        ranges = CoreTopologyResolver(str(hyperthreaded_sysfs)).read_frequency_ranges(6)
        assert ranges[5] == FrequencyRange()
        assert not ranges[5].is_known

    def test_shared_policy_resolves_every_cpu(self, tmp_path):
        """One policy covering cpu0-3 still gives each CPU a known range."""
        root = build_sysfs(tmp_path / "cpu", [0, 1, 2, 3], [(800000, 2400000, 4000000)] * 4)
        link_shared_policy(root, 0, [0, 1, 2, 3])
        assert not (root / "cpufreq" / "policy2").exists()
        ranges = CoreTopologyResolver(str(root)).read_frequency_ranges(4)
        assert all(r == FrequencyRange(min=800000, base=2400000, max=4000000) for r in ranges)

    def test_psutil_fallback(self, tmp_path):
        Freq = namedtuple("Freq", "current min max")
        with patch("turboledz.topology.psutil.cpu_freq") as mock_freq:
            mock_freq.return_value = [Freq(2000.0, 800.0, 4000.0)]
            ranges = CoreTopologyResolver(str(tmp_path)).read_frequency_ranges(2)
        assert ranges[0].min == 800000
        assert ranges[1].max == 4000000

    def test_no_frequency_information(self, tmp_path):
        with patch("turboledz.topology.psutil.cpu_freq") as mock_freq:
            mock_freq.return_value = None
            ranges = CoreTopologyResolver(str(tmp_path)).read_frequency_ranges(2)
        assert ranges == [FrequencyRange(), FrequencyRange()]
