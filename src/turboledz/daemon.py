"""
Turbo LEDz Daemon

Samples CPU telemetry at the configured rate and writes it to every attached
Turbo LEDz device.

Signals:
    SIGINT, SIGTERM: blank the devices and exit
    SIGHUP: re-read the configuration
    SIGUSR1: the host is about to suspend; put the devices to sleep
    SIGUSR2: the host woke up; resume

Usage:
    turboledzd [--config path/to/config.yaml] [--freq HZ] [--verbose]
"""

import sys
import time
import select
import signal
import socket
import argparse
import logging
from enum import Enum
from typing import Dict, Any, Optional, List, Callable

from .adapters import CPUAdapter, TelemetryAdapter
from .devices import DeviceRecord, Transport, UsbTransport
from .encoder import CORES_PER_STAGE_DEVICE, PAUSE_REPORT, ReportEncoder
from .errors import (
    ConfigError,
    CounterReadError,
    DeviceOpenError,
    DeviceWriteError,
    TopologyError,
    EXIT_FAILURE,
    EXIT_IO_ERROR,
    EXIT_OK,
)
from .frequency import FrequencyStage
from .smoother import TemporalSmoother
from .utils import check_poll_frequency, get_default_config, load_config, setup_logging

# Module logger
logger = logging.getLogger("turboledz.daemon")

# Devices need a moment before and after the sleep command
PAUSE_SETTLE_SECONDS = 0.04


class LoopState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    SHUTTING_DOWN = "shutting_down"


class DispatchLoop:
    """
    Samples, encodes and writes telemetry once per tick.

    Pause, resume, reload and terminate requests may arrive from signal
    handlers at any time. The request methods only set flags, and the loop
    acts on them at the next tick boundary. The tick sleep waits on a socket
    pair that signal.set_wakeup_fd() writes to, so a signal
    cuts it short without the handler touching any lock.
    """

    def __init__(
        self,
        devices: List[DeviceRecord],
        transport: Transport,
        adapter: TelemetryAdapter,
        config: Optional[Dict[str, Any]] = None,
        config_loader: Optional[Callable[[], Dict[str, Any]]] = None,
        encoder: Optional[ReportEncoder] = None,
        settle: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the dispatch loop.

        Args:
            devices: Opened devices; the loop owns and releases them
            transport: Transport the devices were opened with
            adapter: Initialized CPU telemetry adapter
            config: Configuration dictionary
            config_loader: Called on reload to obtain a new configuration
            encoder: Report encoder
            settle: Sleep used around the pause burst
        """
        self.devices = list(devices)
        self.transport = transport
        self.adapter = adapter
        self.config = config or get_default_config()
        self._config_loader = config_loader
        self.encoder = encoder or ReportEncoder()
        self._settle = settle

        self.state = LoopState.RUNNING
        self._ticks = 0
        self._writes = 0

        # Set from signal handlers; read only at tick boundaries
        self._pause_target: Optional[bool] = None
        self._reload_requested = False
        self._terminate_requested = False
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)

        self._smoother: Optional[TemporalSmoother] = None
        self._display_stages: Optional[List[FrequencyStage]] = None
        self._apply_config()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def _apply_config(self) -> None:
        general = self.config.get("general", {})
        self.poll_frequency_hz = check_poll_frequency(general.get("poll_frequency_hz", 10))
        self.interval = 1.0 / self.poll_frequency_hz

        factor = int(general.get("supersampling", 1) or 1)
        if factor > 1 and self.stage_devices:
            self._smoother = TemporalSmoother(self.adapter.num_physical_cores, factor=factor)
        else:
            self._smoother = None
        self._display_stages = None

    @property
    def bar_devices(self) -> List[DeviceRecord]:
        return [d for d in self.devices if not d.model.uses_frequency_stages]

    @property
    def stage_devices(self) -> List[DeviceRecord]:
        return [d for d in self.devices if d.model.uses_frequency_stages]

    # -------------------------------------------------------------------------
    # Requests (signal safe)
    # -------------------------------------------------------------------------

    def request_pause(self) -> None:
        self._pause_target = True

    def request_resume(self) -> None:
        self._pause_target = False

    def request_reload(self) -> None:
        self._reload_requested = True

    def request_terminate(self) -> None:
        self._terminate_requested = True

    def wakeup_fileno(self) -> int:
        """Descriptor for signal.set_wakeup_fd()."""
        return self._wake_w.fileno()

    def _sleep(self, timeout: float) -> None:
        """Wait out the rest of the tick unless a wakeup arrives."""
        readable, _, _ = select.select([self._wake_r], [], [], timeout)
        if not readable:
            return
        try:
            while self._wake_r.recv(512):
                pass
        except BlockingIOError:
            # Drained
            pass

    def close(self) -> None:
        """Close the wakeup socket pair. Call after the signal handlers are restored."""
        self._wake_r.close()
        self._wake_w.close()

    def _apply_requests(self) -> None:
        """Act on pending requests. Called only between ticks."""
        if self._terminate_requested:
            self.state = LoopState.SHUTTING_DOWN
            return

        if self._reload_requested:
            self._reload_requested = False
            self.reload()

        target, self._pause_target = self._pause_target, None
        if target is True and self.state is LoopState.RUNNING:
            self.pause_all_devices()
        elif target is False and self.state is LoopState.PAUSED:
            logger.info("Woken up")
            self.state = LoopState.RUNNING

    def reload(self) -> None:
        """Re-read the configuration."""
        if self._config_loader is None:
            logger.info("Reload requested but no configuration source is set")
            return
        previous = self.config
        self.config = self._config_loader()
        try:
            self._apply_config()
        except ConfigError as e:
            logger.error(f"Rejected reloaded configuration: {e}")
            self.config = previous
            self._apply_config()
            return
        setup_logging(self.config)
        logger.info(f"Configuration reloaded: {self.get_status()}")

    # -------------------------------------------------------------------------
    # Device writes
    # -------------------------------------------------------------------------

    def _write(self, record: DeviceRecord, report: bytes) -> None:
        written = self.transport.write(record.handle, report)
        if written < len(report):
            raise DeviceWriteError(
                f"Short write to {record.name}: {written} of {len(report)} bytes"
            )
        self._writes += 1

    def pause_all_devices(self) -> None:
        """Put every device to sleep. Write failures are logged, not raised."""
        self.state = LoopState.PAUSED
        logger.info("Preparing to go to sleep...")
        self._settle(PAUSE_SETTLE_SECONDS)
        for record in self.devices:
            try:
                self._write(record, PAUSE_REPORT)
            except DeviceWriteError as e:
                logger.error(f"Sleep command failed: {e}")
        self._settle(PAUSE_SETTLE_SECONDS)

    def release_devices(self) -> None:
        """Close every device handle."""
        for record in self.devices:
            self.transport.close(record.handle)
        self.devices = []

    def shutdown(self) -> None:
        """Blank the devices (unless already asleep) and release them."""
        was_paused = self.state is LoopState.PAUSED
        try:
            if not was_paused:
                self.pause_all_devices()
        finally:
            self.state = LoopState.SHUTTING_DOWN
            self.release_devices()

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def _current_stages(self) -> List[FrequencyStage]:
        stages = self.adapter.collect_stages()
        if self._smoother is None:
            return stages
        collapsed = self._smoother.observe_all(stages)
        if collapsed is not None:
            self._display_stages = collapsed
        return self._display_stages or stages

    def tick(self) -> None:
        """
        Sample once and write one report to every device.

        Utilization is only sampled when a bar-graph device is attached, and
        frequencies only when a dual-color device is.

        Raises:
            DeviceWriteError: If any write fails
            CounterReadError: If the counters became unreliable
        """
        bar_devices = self.bar_devices
        stage_devices = self.stage_devices

        utilization = self.adapter.collect_utilization()[0] if bar_devices else None
        stages = None
        if stage_devices:
            stages = self._current_stages()
            self.encoder.report_overflow(len(stages), len(stage_devices))

        offset = 0
        for record in self.devices:
            report = self.encoder.encode_for(
                record.model,
                utilization=utilization,
                stages=stages,
                offset=offset,
                segments=record.segments,
            )
            if record.model.uses_frequency_stages:
                offset += CORES_PER_STAGE_DEVICE
            self._write(record, report)

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Run until terminated.

        Args:
            max_ticks: Stop after this many ticks (None runs forever)

        Returns:
            Process exit status
        """
        logger.info(
            f"Dispatch loop started: {len(self.devices)} devices, "
            f"freq={self.poll_frequency_hz}Hz"
        )
        try:
            while True:
                self._apply_requests()
                if self.state is LoopState.SHUTTING_DOWN:
                    break

                start_time = time.monotonic()
                if self.state is LoopState.RUNNING:
                    self.tick()
                self._ticks += 1
                if max_ticks is not None and self._ticks >= max_ticks:
                    break

                # Sleep for remaining interval time; requests cut it short
                elapsed = time.monotonic() - start_time
                sleep_time = max(0.0, self.interval - elapsed)
                if sleep_time > 0:
                    self._sleep(sleep_time)

            logger.info("Attempting to close down gracefully...")
            self.shutdown()
        except DeviceWriteError as e:
            logger.error(f"{e}; shutting down")
            self.pause_all_devices()
            self.release_devices()
            self.state = LoopState.SHUTTING_DOWN
            return EXIT_IO_ERROR
        except CounterReadError as e:
            logger.error(f"CPU counters are unreliable: {e}; shutting down")
            self.shutdown()
            return EXIT_FAILURE
        finally:
            if self.devices:
                # Anything else escaping the loop still blanks and releases
                logger.error("Dispatch loop aborted; blanking devices")
                self.shutdown()

        logger.info(f"Dispatch loop stopped: {self.get_status()}")
        return EXIT_OK

    def get_status(self) -> Dict[str, Any]:
        """Get current loop status."""
        return {
            "state": self.state.value,
            "ticks": self._ticks,
            "writes": self._writes,
            "poll_frequency_hz": self.poll_frequency_hz,
            "devices": [d.name for d in self.devices],
            "smoothing": self._smoother.factor if self._smoother else 1,
            "adapter_errors": self.adapter.error_count,
        }


# =============================================================================
# Entry Point
# =============================================================================

def install_signal_handlers(loop: DispatchLoop) -> Dict[int, Any]:
    """
    Route process signals to the loop's request methods.

    Returns:
        The previous handlers, keyed by signal number
    """
    handlers = {
        "SIGINT": loop.request_terminate,
        "SIGTERM": loop.request_terminate,
        "SIGHUP": loop.request_reload,
        "SIGUSR1": loop.request_pause,
        "SIGUSR2": loop.request_resume,
    }
    previous = {}
    for name, request in handlers.items():
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        previous[signum] = signal.signal(signum, lambda _signum, _frame, r=request: r())
    # The interpreter writes each caught signal number here, ending the tick sleep
    signal.set_wakeup_fd(loop.wakeup_fileno(), warn_on_full_buffer=False)
    return previous


def restore_signal_handlers(previous: Dict[int, Any]) -> None:
    """Undo install_signal_handlers()."""
    signal.set_wakeup_fd(-1)
    for signum, handler in previous.items():
        if handler is not None:
            signal.signal(signum, handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Turbo LEDz daemon - shows CPU load and core frequencies on Turbo LEDz devices"
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file",
        default=None
    )
    parser.add_argument(
        "--freq",
        type=int,
        help="Update frequency in Hertz (1-100), overrides the config file",
        default=None
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose output"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Write a single update, then blank the devices and exit"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the daemon."""
    args = build_parser().parse_args(argv)

    def read_config() -> Dict[str, Any]:
        config = load_config(args.config)
        if args.freq is not None:
            config["general"]["poll_frequency_hz"] = args.freq
        if args.verbose:
            config["debug"]["verbose"] = True
        return config

    config = read_config()
    setup_logging(config)
    logger.info("Turbo LEDz daemon starting")

    try:
        check_poll_frequency(config["general"]["poll_frequency_hz"])
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_FAILURE

    launch_pause_ms = config["general"].get("launch_pause_ms", 0)
    if launch_pause_ms > 0:
        logger.info(f"A {launch_pause_ms}ms grace period for udevd to do its work starts now")
        time.sleep(launch_pause_ms / 1000.0)
        logger.info("Commencing...")

    adapter = CPUAdapter(config)
    try:
        if not adapter.initialize():
            logger.error("Failed to initialize CPU adapter")
            return EXIT_FAILURE
    except (TopologyError, CounterReadError) as e:
        logger.error(f"Cannot read CPU telemetry: {e}")
        return EXIT_FAILURE

    info = adapter.get_hardware_info()
    if info:
        logger.info(f"CPU: {info.model} ({info.identifier})")

    transport = UsbTransport()
    try:
        devices = transport.open_all()
    except DeviceOpenError as e:
        logger.error(str(e))
        return e.exit_status
    if not devices:
        logger.error("No Turbo LEDz devices were found")
        return EXIT_FAILURE

    loop = DispatchLoop(devices, transport, adapter, config, config_loader=read_config)
    previous_handlers = install_signal_handlers(loop)
    logger.info(
        f"Mode={config['general']['display_mode']} Freq={loop.poll_frequency_hz} "
        f"numcpu={adapter.inventory.num_virtual_cores}"
    )

    try:
        return loop.run(max_ticks=1 if args.once else None)
    finally:
        restore_signal_handlers(previous_handlers)
        loop.close()
        adapter.cleanup()


if __name__ == "__main__":
    sys.exit(main())
