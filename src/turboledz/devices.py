"""
Turbo LEDz Device Transport

Finds Turbo LEDz devices on the USB bus, opens them and writes HID reports
to their interrupt OUT endpoint.

All Turbo LEDz devices made so far are Arduino Pro Micro based and identify
themselves with a product string of the form "Turbo LEDz <model>".
"""

import errno
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional

import usb.core
import usb.util

from .encoder import ModelKind, REPORT_ID
from .errors import (
    DeviceOpenError,
    DeviceWriteError,
    EXIT_IO_ERROR,
    EXIT_NO_PERMISSION,
)

logger = logging.getLogger("turboledz.devices")

ARDUINO_VENDOR_ID = 0x2341
PRO_MICRO_PRODUCT_ID = 0x8037
PRODUCT_PREFIX = "Turbo LEDz"

# More than 6 Turbo LEDz devices in a single PC would be silly
MAX_DEVICES = 6

# udev may apply its rules late during boot
PERMISSION_RETRIES = 5
PERMISSION_RETRY_DELAY = 1.0

WRITE_TIMEOUT_MS = 1000


@dataclass
class DeviceCandidate:
    """A device found on the bus, not opened yet."""
    path: str
    product: str
    model: ModelKind
    usb_device: Any = None


@dataclass
class DeviceHandle:
    """An opened device with its claimed interface and OUT endpoint."""
    path: str
    usb_device: Any = None
    interface_number: int = 0
    endpoint: Any = None
    detached_kernel_driver: bool = False


@dataclass
class DeviceRecord:
    """An attached device as the dispatch loop sees it."""
    handle: Any
    model: ModelKind
    segments: int = field(default=0)

    def __post_init__(self):
        if not self.segments:
            self.segments = self.model.segments

    @property
    def name(self) -> str:
        return f"{self.model.value}@{getattr(self.handle, 'path', self.handle)}"


class Transport(ABC):
    """Opens, writes to, and closes indicator devices."""

    @abstractmethod
    def enumerate(self) -> List[DeviceCandidate]:
        """Find candidate devices."""

    @abstractmethod
    def open(self, candidate: DeviceCandidate) -> Any:
        """
        Open a device.

        Raises:
            DeviceOpenError: If the device cannot be opened
        """

    @abstractmethod
    def write(self, handle: Any, report: bytes) -> int:
        """
        Write one report, including its report id byte.

        Returns:
            Number of bytes written

        Raises:
            DeviceWriteError: If the write failed
        """

    @abstractmethod
    def close(self, handle: Any) -> None:
        """Release a device. Never raises."""

    def open_all(self, max_devices: int = MAX_DEVICES) -> List[DeviceRecord]:
        """
        Open every Turbo LEDz device found.

        Returns:
            Records of the opened devices (at most ``max_devices``)

        Raises:
            DeviceOpenError: If a found device cannot be opened
        """
        candidates = self.enumerate()
        logger.info(f"Found {len(candidates)} Turbo LEDz devices")

        records: List[DeviceRecord] = []
        try:
            for candidate in candidates:
                if len(records) >= max_devices:
                    logger.warning(
                        f"Ignoring {candidate.path}: at most {max_devices} devices are supported"
                    )
                    continue
                handle = self.open(candidate)
                record = DeviceRecord(handle=handle, model=candidate.model)
                records.append(record)
                logger.info(
                    f"Opened {candidate.product} at {candidate.path} "
                    f"({record.segments} segments)"
                )
        except DeviceOpenError:
            for record in records:
                self.close(record.handle)
            raise
        return records


def _usb_path(device) -> str:
    ports = getattr(device, "port_numbers", None) or ()
    suffix = ".".join(str(p) for p in ports)
    return f"usb:{device.bus}-{suffix}" if suffix else f"usb:{device.bus}:{device.address}"


class UsbTransport(Transport):
    """pyusb based transport for Turbo LEDz devices."""

    def __init__(
        self,
        vendor_id: int = ARDUINO_VENDOR_ID,
        product_id: int = PRO_MICRO_PRODUCT_ID,
        permission_retries: int = PERMISSION_RETRIES,
        retry_delay: float = PERMISSION_RETRY_DELAY,
    ):
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.permission_retries = permission_retries
        self.retry_delay = retry_delay

    def enumerate(self) -> List[DeviceCandidate]:
        devices = usb.core.find(
            find_all=True, idVendor=self.vendor_id, idProduct=self.product_id
        )
        candidates = []
        for device in devices or []:
            path = _usb_path(device)
            try:
                product = usb.util.get_string(device, device.iProduct)
            except (usb.core.USBError, ValueError) as e:
                logger.warning(f"Skipped {path}: cannot read product name ({e})")
                continue
            logger.debug(f"type: {self.vendor_id:04x} {self.product_id:04x} path: {path} product: {product}")
            if not product:
                logger.info(f"Skipped {path} for lack of product name")
                continue
            if not product.startswith(PRODUCT_PREFIX):
                continue
            model = ModelKind.from_product_name(product[len(PRODUCT_PREFIX):])
            logger.info(f"Detected model: {model.value} at {path}")
            candidates.append(DeviceCandidate(
                path=path, product=product, model=model, usb_device=device
            ))
        return candidates

    def open(self, candidate: DeviceCandidate) -> DeviceHandle:
        attempt = 0
        while True:
            try:
                return self._claim(candidate)
            except usb.core.USBError as e:
                if e.errno != errno.EACCES:
                    raise DeviceOpenError(
                        f"Cannot open {candidate.path}: {e}", EXIT_IO_ERROR
                    )
                if attempt >= self.permission_retries:
                    raise DeviceOpenError(
                        f"No rw-permission for {candidate.path}; "
                        "the udev rules were not applied",
                        EXIT_NO_PERMISSION,
                    )
                attempt += 1
                logger.warning(f"No rw-permission for {candidate.path}. Retrying...")
                time.sleep(self.retry_delay)

    def _claim(self, candidate: DeviceCandidate) -> DeviceHandle:
        device = candidate.usb_device
        try:
            cfg = device.get_active_configuration()
        except usb.core.USBError as e:
            if e.errno == errno.EACCES:
                raise
            device.set_configuration()
            cfg = device.get_active_configuration()

        for interface in cfg:
            number = interface.bInterfaceNumber
            endpoint = usb.util.find_descriptor(
                interface,
                custom_match=lambda ep: usb.util.endpoint_direction(ep.bEndpointAddress)
                == usb.util.ENDPOINT_OUT,
            )
            if endpoint is None:
                continue
            detached = False
            if device.is_kernel_driver_active(number):
                device.detach_kernel_driver(number)
                detached = True
            usb.util.claim_interface(device, number)
            return DeviceHandle(
                path=candidate.path,
                usb_device=device,
                interface_number=number,
                endpoint=endpoint,
                detached_kernel_driver=detached,
            )

        raise DeviceOpenError(f"No OUT endpoint on {candidate.path}", EXIT_IO_ERROR)

    def write(self, handle: DeviceHandle, report: bytes) -> int:
        # Report id 0 marks an unnumbered report: only the data goes on the wire
        payload = report[1:] if report and report[0] == REPORT_ID else report
        try:
            written = handle.endpoint.write(payload, timeout=WRITE_TIMEOUT_MS)
        except usb.core.USBError as e:
            raise DeviceWriteError(
                f"Write of {len(report)} bytes to {handle.path} failed: {e}"
            )
        return written + (len(report) - len(payload))

    def close(self, handle: DeviceHandle) -> None:
        device = handle.usb_device
        try:
            usb.util.release_interface(device, handle.interface_number)
            if handle.detached_kernel_driver:
                device.attach_kernel_driver(handle.interface_number)
        except usb.core.USBError as e:
            logger.debug(f"Releasing {handle.path}: {e}")
        finally:
            usb.util.dispose_resources(device)
