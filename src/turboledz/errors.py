"""
Turbo LEDz Error Taxonomy

Fatal errors (topology, counters, device writes) propagate to the daemon and
terminate it. Degenerate frequency ranges and protocol overflow are recovered
where they are raised and never leave their module.
"""

# Process exit statuses (sysexits.h values where one applies)
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_IO_ERROR = 74
EXIT_NO_PERMISSION = 77


class TurboLedzError(Exception):
    """Base class for all Turbo LEDz errors."""


class ConfigError(TurboLedzError):
    """A configuration value is out of its valid range."""


class TopologyError(TurboLedzError):
    """Core enumeration failed or reported an unsupported core count."""


class CounterReadError(TurboLedzError):
    """A tick counter source vanished, was malformed, or went backwards."""


class ClassificationDegenerate(TurboLedzError):
    """A frequency range is empty, inverted, or unknown."""


class EncodeOverflow(TurboLedzError):
    """More physical cores than the attached devices can represent."""

    def __init__(self, num_cores: int, capacity: int):
        super().__init__(
            f"{num_cores} physical cores but devices can only show {capacity}"
        )
        self.num_cores = num_cores
        self.capacity = capacity


class DeviceOpenError(TurboLedzError):
    """A device could not be opened."""

    def __init__(self, message: str, exit_status: int = EXIT_IO_ERROR):
        super().__init__(message)
        self.exit_status = exit_status


class DeviceWriteError(TurboLedzError):
    """Writing a report to a device failed."""
