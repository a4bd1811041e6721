"""
Device Report Encoding

Builds the HID report payloads the Turbo LEDz firmware understands. Every
report starts with report id 0x00. In the first data byte the high bit
(0x80) marks a data report; 0x40 alone is the sleep command.

Bar-graph report (2 bytes):  [0x00, 0x80 | bars]
Dual-color report (5 bytes): [0x00, 0x80 | green[0:5], green[5:10],
                              red[0:5], red[5:10]]

A dual-color device has LEDs for 10 physical cores. Cores beyond what the
attached devices can show are dropped; that is a hardware ceiling.
"""

import logging
from enum import Enum
from typing import Optional, Sequence

from .errors import EncodeOverflow
from .frequency import FrequencyStage

logger = logging.getLogger("turboledz.encoder")

REPORT_ID = 0x00
DATA_FLAG = 0x80
SLEEP_COMMAND = 0x40

# Single-precision machine epsilon, the rounding slack of the device firmware math
FLT_EPSILON = 1.1920929e-07
# Keeps a fully busy CPU one segment short of overflowing the bar
BAR_EPSILON = 0.5 + FLT_EPSILON

CORES_PER_STAGE_DEVICE = 10
GROUP_BITS = 5
GROUP_MASK = 0x1F

PAUSE_REPORT = bytes([REPORT_ID, SLEEP_COMMAND])


class ModelKind(Enum):
    """Turbo LEDz models, keyed by the suffix of their USB product string."""
    UNKNOWN = "unknown"
    M108M = "108m"  # 10 bars of 8 segments, 3.5" drive bay
    M108 = "108"    # 10 bars of 8 segments
    M810 = "810"    # 8 bars of 10 segments
    M810S = "810s"  # 8 bars of 10 segments, single driver
    M88S = "88s"    # 8 bars of 8 segments, single driver
    M810C = "810c"  # colour LEDs, one column per physical core

    @classmethod
    def from_product_name(cls, name: str) -> "ModelKind":
        name = (name or "").strip()
        for kind in cls:
            if kind.value == name:
                return kind
        return cls.UNKNOWN

    @property
    def segments(self) -> int:
        return 8 if self in (ModelKind.M108M, ModelKind.M108, ModelKind.M88S) else 10

    @property
    def uses_frequency_stages(self) -> bool:
        return self is ModelKind.M810C


def bar_count(fraction: float, segments: int) -> int:
    """
    Number of lit segments for a utilization fraction.

    The fraction is clamped to [0, 1]; the result lies in [0, segments - 1].
    """
    fraction = min(1.0, max(0.0, fraction))
    return int(0.5 + fraction * (segments - BAR_EPSILON))


def encode_bar_graph(fraction: float, segments: int) -> bytes:
    """Bar-graph report for a utilization fraction."""
    return bytes([REPORT_ID, bar_count(fraction, segments) | DATA_FLAG])


def stage_masks(stages: Sequence[FrequencyStage], offset: int = 0):
    """
    Green and red bitmasks for up to 10 cores starting at ``offset``.

    Bit j stands for core ``offset + j``. LOW lights green, MAX red, and MID
    both.
    """
    green = 0
    red = 0
    for bit, stage in enumerate(stages[offset:offset + CORES_PER_STAGE_DEVICE]):
        if stage in (FrequencyStage.LOW, FrequencyStage.MID):
            green |= 1 << bit
        if stage in (FrequencyStage.MID, FrequencyStage.MAX):
            red |= 1 << bit
    return green, red


def encode_stage_bitmask(stages: Sequence[FrequencyStage], offset: int = 0) -> bytes:
    """Dual-color report for the stages of up to 10 cores."""
    green, red = stage_masks(stages, offset)
    return bytes([
        REPORT_ID,
        (green & GROUP_MASK) | DATA_FLAG,
        (green >> GROUP_BITS) & GROUP_MASK,
        red & GROUP_MASK,
        (red >> GROUP_BITS) & GROUP_MASK,
    ])


def decode_stage_bitmask(report: bytes):
    """Green and red masks carried by a dual-color report."""
    if len(report) != 5 or report[0] != REPORT_ID or not report[1] & DATA_FLAG:
        raise ValueError(f"Not a dual-color report: {report.hex()}")
    green = (report[1] & GROUP_MASK) | ((report[2] & GROUP_MASK) << GROUP_BITS)
    red = (report[3] & GROUP_MASK) | ((report[4] & GROUP_MASK) << GROUP_BITS)
    return green, red


class ReportEncoder:
    """
    Chooses the encoding per device model.

    Reports an overflow once when the physical cores outnumber what the
    attached dual-color devices can show.
    """

    def __init__(self):
        self._overflow_reported = False

    def check_capacity(self, num_cores: int, num_stage_devices: int) -> None:
        """
        Raises:
            EncodeOverflow: If the stage devices cannot show every core
        """
        capacity = num_stage_devices * CORES_PER_STAGE_DEVICE
        if num_stage_devices and num_cores > capacity:
            raise EncodeOverflow(num_cores, capacity)

    def report_overflow(self, num_cores: int, num_stage_devices: int) -> None:
        """Log (once) that some cores will not be displayed."""
        try:
            self.check_capacity(num_cores, num_stage_devices)
        except EncodeOverflow as e:
            if not self._overflow_reported:
                logger.warning(f"{e}; the remaining cores are not displayed")
                self._overflow_reported = True

    def encode_for(
        self,
        model: ModelKind,
        utilization: Optional[float] = None,
        stages: Optional[Sequence[FrequencyStage]] = None,
        offset: int = 0,
        segments: Optional[int] = None,
    ) -> bytes:
        """
        Encode the report for one device.

        Args:
            model: Device model
            utilization: Busy fraction, required for bar-graph models
            stages: Per physical core stages, required for dual-color models
            offset: First core shown by this dual-color device
            segments: Segment count override for bar-graph models
        """
        if model.uses_frequency_stages:
            if stages is None:
                raise ValueError(f"{model.value} needs frequency stages")
            return encode_stage_bitmask(stages, offset)
        if utilization is None:
            raise ValueError(f"{model.value} needs a utilization sample")
        return encode_bar_graph(utilization, segments or model.segments)
