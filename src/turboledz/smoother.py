"""
Temporal Smoothing of Frequency Stages

Per-tick stage classifications flicker. The smoother keeps a fixed-depth ring
buffer and a tally per physical core, and every K observations collapses the
tally into one dominant stage (ties go to the hotter stage). The ring buffer
holds the raw samples; history() replays it as one dominant stage per window
for display.
"""

import logging
from typing import Callable, List, Optional, Sequence

from .frequency import FrequencyStage

logger = logging.getLogger("turboledz.smoother")

RING_BUFFER_SIZE = 128
DEFAULT_SUPERSAMPLING = 4

CollapseListener = Callable[[int, FrequencyStage], None]


def dominant_stage(tally: Sequence[int]) -> FrequencyStage:
    """Most frequent stage in a tally indexed by stage. Ties go to the hotter stage."""
    best = FrequencyStage.MIN
    best_count = 0
    for stage in FrequencyStage:
        if tally[stage] >= best_count:
            best = stage
            best_count = tally[stage]
    return best


class SmoothingWindow:
    """Ring buffer of raw stage samples plus the tally since the last collapse."""

    def __init__(self, capacity: int = RING_BUFFER_SIZE):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        # One slot stays free to tell a full buffer from an empty one
        self._buf: List[FrequencyStage] = [FrequencyStage.MIN] * (capacity + 1)
        self.head = 0
        self.tail = 0
        self.tally = [0] * len(FrequencyStage)
        self.observations = 0
        self.dominant: Optional[FrequencyStage] = None

    def __len__(self) -> int:
        return (self.tail - self.head) % len(self._buf)

    def append(self, stage: FrequencyStage) -> None:
        """Store a sample, overwriting the oldest one when full."""
        self._buf[self.tail] = stage
        self.tail = (self.tail + 1) % len(self._buf)
        if self.tail == self.head:
            self.head = (self.head + 1) % len(self._buf)

    def samples(self) -> List[FrequencyStage]:
        """Buffered samples, oldest first."""
        return [self._buf[(self.head + i) % len(self._buf)] for i in range(len(self))]

    def collapse(self) -> FrequencyStage:
        """Pick the most frequent stage since the last collapse and reset the tally."""
        best = dominant_stage(self.tally)
        self.tally = [0] * len(FrequencyStage)
        self.dominant = best
        return best


class TemporalSmoother:
    """
    Majority vote over per-core stage samples.

    Collapse cadence is a pure counter: a core's window collapses on every
    K-th ``observe()`` for that core, regardless of wall-clock time.
    """

    def __init__(
        self,
        num_physical_cores: int,
        factor: int = DEFAULT_SUPERSAMPLING,
        capacity: int = RING_BUFFER_SIZE,
    ):
        """
        Initialize the smoother.

        Args:
            num_physical_cores: Number of windows to keep
            factor: Supersampling factor K
            capacity: Ring buffer capacity per core
        """
        if num_physical_cores < 1:
            raise ValueError("num_physical_cores must be at least 1")
        if factor < 1:
            raise ValueError("factor must be at least 1")
        self.factor = factor
        self._windows = [SmoothingWindow(capacity) for _ in range(num_physical_cores)]
        self._listeners: List[CollapseListener] = []

    @property
    def num_cores(self) -> int:
        return len(self._windows)

    def window(self, core: int) -> SmoothingWindow:
        return self._windows[core]

    def history(self, core: int, width: int) -> List[FrequencyStage]:
        """
        Replay the ring buffer of a core as collapsed windows.

        Args:
            core: Physical core index
            width: Maximum number of windows to return

        Returns:
            Dominant stage of each completed window still buffered, oldest first
        """
        window = self._windows[core]
        samples = window.samples()
        # The window still being tallied is not shown yet
        pending = window.observations % self.factor
        if pending:
            samples = samples[:-pending]
        count = min(len(samples) // self.factor, width)

        history = []
        for start in range(len(samples) - count * self.factor, len(samples), self.factor):
            tally = [0] * len(FrequencyStage)
            for stage in samples[start:start + self.factor]:
                tally[stage] += 1
            history.append(dominant_stage(tally))
        return history

    def add_listener(self, listener: CollapseListener) -> None:
        """Register a callable receiving ``(core, dominant_stage)`` on every collapse."""
        self._listeners.append(listener)

    def observe(self, core: int, stage: FrequencyStage) -> Optional[FrequencyStage]:
        """
        Record one classification for a physical core.

        Returns:
            The dominant stage if this observation completed a window,
            otherwise None
        """
        stage = FrequencyStage(stage)
        window = self._windows[core]
        window.tally[stage] += 1
        window.append(stage)
        window.observations += 1

        if window.observations % self.factor:
            return None

        dominant = window.collapse()
        for listener in self._listeners:
            listener(core, dominant)
        return dominant

    def observe_all(self, stages: Sequence[FrequencyStage]) -> Optional[List[FrequencyStage]]:
        """
        Record one classification for every physical core.

        Returns:
            The dominant stage of every core if this batch collapsed,
            otherwise None
        """
        if len(stages) != len(self._windows):
            raise ValueError(f"Expected {len(self._windows)} stages, got {len(stages)}")
        results = [self.observe(core, stage) for core, stage in enumerate(stages)]
        if any(result is None for result in results):
            return None
        return results
