"""
Turbo LEDz Simulator

Shows what a dual-color device would display, in the terminal: one row per
physical core, newest sample on the right, coloured by the dominant
frequency stage of each smoothing window. Rows are redrawn from the
smoother's ring buffers after every collapse.

Usage:
    turboledz-sim [--config path/to/config.yaml]
"""

import sys
import time
import shutil
import argparse
import logging
from typing import Dict, List, Optional, TextIO

from .adapters import CPUAdapter, TelemetryAdapter
from .errors import CounterReadError, TopologyError, EXIT_FAILURE, EXIT_OK
from .frequency import FrequencyStage
from .smoother import RING_BUFFER_SIZE, TemporalSmoother
from .utils import load_config, setup_logging

logger = logging.getLogger("turboledz.simulator")

HIDE_CURSOR = "\033[?25l"
SHOW_CURSOR = "\033[?25h"
CLEAR_SCREEN = "\033[2J"
HOME = "\033[H"
RESET = "\033[0m"

# 256-colour palette entries: dark grey, green, orange, red
STAGE_COLOURS = {
    FrequencyStage.MIN: "\033[38;5;236m",
    FrequencyStage.LOW: "\033[38;5;46m",
    FrequencyStage.MID: "\033[38;5;208m",
    FrequencyStage.MAX: "\033[38;5;196m",
}
CELL = "██ "
CELL_WIDTH = 3
LABEL_WIDTH = 8


def render(smoother: TemporalSmoother, width: int, labels: Optional[List[int]] = None) -> str:
    """Render every core's smoothed history, highest core on top."""
    labels = labels or list(range(smoother.num_cores))
    lines = []
    for core in reversed(range(smoother.num_cores)):
        row = smoother.history(core, width)
        padding = (CELL_WIDTH * (width - len(row))) * " "
        cells = "".join(STAGE_COLOURS[stage] + CELL for stage in row)
        lines.append(f"cpu{labels[core]:<{LABEL_WIDTH - 3}}{padding}{cells}{RESET}")
    return "\n".join(lines)


def visible_columns(columns: int) -> int:
    return max(1, (columns - LABEL_WIDTH) // CELL_WIDTH)


def run_simulator(
    adapter: TelemetryAdapter,
    samples_per_second: int = 40,
    supersampling: int = 4,
    max_samples: Optional[int] = None,
    out: TextIO = sys.stdout,
) -> int:
    """
    Sample, smooth and draw until interrupted.

    Args:
        adapter: Initialized CPU adapter
        samples_per_second: Raw classification rate
        supersampling: Raw samples per displayed sample
        max_samples: Stop after this many raw samples (None runs forever)
        out: Stream to draw on

    Returns:
        Process exit status
    """
    num_cores = adapter.num_physical_cores
    width = visible_columns(shutil.get_terminal_size().columns)
    # Room for a full screen of windows
    capacity = max(RING_BUFFER_SIZE, width * supersampling)
    smoother = TemporalSmoother(num_cores, factor=supersampling, capacity=capacity)
    labels = adapter.core_labels()

    delay = 1.0 / samples_per_second
    count = 0
    out.write(HIDE_CURSOR + CLEAR_SCREEN)
    try:
        while max_samples is None or count < max_samples:
            if smoother.observe_all(adapter.collect_stages()) is not None:
                out.write(HOME + render(smoother, width, labels) + "\n")
                out.flush()
            count += 1
            time.sleep(delay)
    except KeyboardInterrupt:
        pass
    except CounterReadError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    finally:
        out.write(RESET + SHOW_CURSOR + "\n")
        out.flush()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the simulator."""
    parser = argparse.ArgumentParser(
        description="Turbo LEDz simulator - shows smoothed core frequency stages in the terminal"
    )
    parser.add_argument("--config", type=str, default=None, help="Path to configuration file")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(config)
    sim_config: Dict[str, int] = config.get("simulator", {})

    adapter = CPUAdapter(config)
    try:
        if not adapter.initialize():
            logger.error("Failed to initialize CPU adapter")
            return EXIT_FAILURE
    except (TopologyError, CounterReadError) as e:
        logger.error(f"Cannot read CPU telemetry: {e}")
        return EXIT_FAILURE

    try:
        return run_simulator(
            adapter,
            samples_per_second=sim_config.get("samples_per_second", 40),
            supersampling=sim_config.get("supersampling", 4),
        )
    finally:
        adapter.cleanup()


if __name__ == "__main__":
    sys.exit(main())
