"""
CPU Telemetry Adapter

Owns the core inventory, the utilization sampler and the frequency stage
classifier, and exposes them to the dispatch loop and the simulator.
"""

import platform
from typing import Dict, Any, Optional, List, Callable

import cpuinfo

from .base_adapter import HardwareInfo, TelemetryAdapter
from ..frequency import FrequencyStage, FrequencyStageClassifier, default_frequency_reader
from ..sampler import CounterSource, UtilizationSampler
from ..topology import CoreInventory, CoreTopologyResolver, FrequencyRange


class CPUAdapter(TelemetryAdapter):
    """
    CPU telemetry adapter.

    Collects:
        - Aggregate (or per-core) utilization fraction
        - Frequency stage of every physical core

    Topology errors and counter read errors are not recorded as adapter
    errors: they propagate, since the daemon cannot display correct data
    without them.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        resolver: Optional[CoreTopologyResolver] = None,
        counter_source: Optional[CounterSource] = None,
        frequency_reader: Optional[Callable[[int], int]] = None,
        per_core: bool = False,
    ):
        super().__init__(config)
        self._resolver = resolver or CoreTopologyResolver()
        self._counter_source = counter_source
        self._frequency_reader = frequency_reader
        self._per_core = per_core
        self.inventory: Optional[CoreInventory] = None
        self.ranges: List[FrequencyRange] = []
        self.sampler: Optional[UtilizationSampler] = None
        self.classifier: Optional[FrequencyStageClassifier] = None

    def initialize(self) -> bool:
        """Resolve the topology and prime the sampler."""
        if self._initialized:
            return True

        try:
            self.inventory = self._resolver.resolve()
            self.ranges = self._resolver.read_frequency_ranges(self.inventory.num_virtual_cores)
        except OSError as e:
            self.record_error(str(e))
            return False

        num_rows = self.inventory.num_virtual_cores if self._per_core else 1
        self.sampler = UtilizationSampler(
            num_rows=num_rows,
            per_core=self._per_core,
            source=self._counter_source,
        )
        self.classifier = FrequencyStageClassifier(
            self.inventory,
            self.ranges,
            self._frequency_reader or default_frequency_reader(str(self._resolver.sysfs_root)),
        )
        self._initialized = True
        return True

    @property
    def num_physical_cores(self) -> int:
        return self.inventory.num_physical_cores if self.inventory else 0

    def get_hardware_info(self) -> Optional[HardwareInfo]:
        """Get CPU identification information."""
        if self._hardware_info:
            return self._hardware_info

        try:
            cpu_data = cpuinfo.get_cpu_info()
        except Exception as e:
            self.record_error(f"cpuinfo failed: {e}")
            cpu_data = {}

        physical = self.num_physical_cores
        virtual = self.inventory.num_virtual_cores if self.inventory else 0
        self._hardware_info = HardwareInfo(
            vendor=cpu_data.get("vendor_id_raw", "Unknown"),
            model=cpu_data.get("brand_raw") or platform.processor() or "Unknown CPU",
            identifier=f"CPU_{physical}C_{virtual}T",
            additional_info={
                "physical_cores": physical,
                "logical_cores": virtual,
                "architecture": cpu_data.get("arch", platform.machine()),
                "hz_advertised": cpu_data.get("hz_advertised_friendly", ""),
            },
        )
        return self._hardware_info

    def collect_utilization(self) -> List[float]:
        """One utilization sample (aggregate, or per core)."""
        self._require_initialized()
        return self.sampler.sample()

    def collect_stages(self) -> List[FrequencyStage]:
        """Frequency stage of every physical core."""
        self._require_initialized()
        return self.classifier.classify_all()

    def core_labels(self) -> List[int]:
        """Cores are labelled by their primary virtual core number."""
        if self.classifier is None:
            return []
        return self.classifier.primary_cores

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(f"{self.adapter_name} is not initialized")

    def cleanup(self) -> None:
        """Clean up resources."""
        self._initialized = False
