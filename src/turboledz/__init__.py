"""
Turbo LEDz - CPU Telemetry Daemon for LED Indicator Devices

Samples CPU utilization and core frequency stages and renders them onto
USB-attached Turbo LEDz bar-graph and dual-color devices.

Modules:
    - topology: Virtual/physical core resolution and frequency ranges
    - sampler: Utilization from cumulative tick counters
    - frequency: Frequency stage classification
    - smoother: Ring-buffer majority vote over stage samples
    - encoder: Device report payloads
    - devices: USB transport and device records
    - daemon: Dispatch loop and the turboledzd entry point
    - simulator: Terminal visualizer of smoothed frequency stages
    - adapters: Hardware adapter interface and the CPU telemetry adapter
    - utils: Configuration and logging helpers
"""

__version__ = "1.0.0"
__author__ = "Turbo LEDz Contributors"
__license__ = "Apache-2.0"
