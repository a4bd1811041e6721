"""
Telemetry Adapter Interface

The dispatch loop and the simulator read CPU telemetry only through
TelemetryAdapter: one utilization sample and one frequency stage per physical
core per tick. Platform specific acquisition lives in the subclasses.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field

from ..frequency import FrequencyStage

logger = logging.getLogger("turboledz.adapters")


@dataclass
class HardwareInfo:
    """Identification of the monitored processor."""
    vendor: str
    model: str
    identifier: str
    additional_info: Dict[str, Any] = field(default_factory=dict)


class TelemetryAdapter(ABC):
    """
    Abstract base class for telemetry adapters.

    Subclasses acquire the two signals the devices show:
        - collect_utilization(): busy fraction(s) in [0, 1]
        - collect_stages(): a FrequencyStage per physical core

    Fatal acquisition errors (TopologyError, CounterReadError) propagate out
    of these methods. Non-fatal trouble is counted with record_error().
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the adapter with optional configuration.

        Args:
            config: Configuration dictionary
        """
        self.config = config or {}
        self._initialized = False
        self._hardware_info: Optional[HardwareInfo] = None
        self._error_count = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def adapter_name(self) -> str:
        return self.__class__.__name__

    @property
    def error_count(self) -> int:
        """Non-fatal errors recorded so far."""
        return self._error_count

    @property
    @abstractmethod
    def num_physical_cores(self) -> int:
        """Number of physical cores; 0 before initialize()."""

    @abstractmethod
    def initialize(self) -> bool:
        """
        Discover the hardware and prime the samplers.

        Returns:
            True if the adapter is ready to collect
        """

    @abstractmethod
    def get_hardware_info(self) -> Optional[HardwareInfo]:
        """Processor identification, or None if unavailable."""

    @abstractmethod
    def collect_utilization(self) -> List[float]:
        """One utilization sample since the previous call."""

    @abstractmethod
    def collect_stages(self) -> List[FrequencyStage]:
        """Current frequency stage of every physical core."""

    @abstractmethod
    def cleanup(self) -> None:
        """Release any held resources."""

    def core_labels(self) -> List[int]:
        """Display label of each physical core, in collect_stages() order."""
        return list(range(self.num_physical_cores))

    def record_error(self, error_message: str) -> None:
        self._error_count += 1
        logger.warning(f"{self.adapter_name}: {error_message}")

