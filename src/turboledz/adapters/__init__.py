"""
Telemetry Adapters

Available Adapters:
    - cpu_adapter: Utilization and frequency stages of the host CPU
"""

from .base_adapter import HardwareInfo, TelemetryAdapter
from .cpu_adapter import CPUAdapter

__all__ = [
    "TelemetryAdapter",
    "HardwareInfo",
    "CPUAdapter",
]
