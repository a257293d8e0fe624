"""USB arrival/removal subscription.

A ``UsbSubscriber`` registers arrival and removal callbacks with a platform
source and, on every notification, re-enumerates the full set of matching
devices and publishes it as one replacement tuple.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from enum import Enum
import logging
import platform
import plistlib
import subprocess
import threading
from typing import Any
from xml.parsers.expat import ExpatError

from cpuy.config import AppConfig
from cpuy.models import UsbDevice

PRODUCT_NAME = "product_name"
VENDOR_ID = "vendor_id"
PRODUCT_ID = "product_id"

EventCallback = Callable[[], None]

logger = logging.getLogger(__name__)


class UsbEnumerationError(RuntimeError):
    """The current device set could not be listed at all."""


class DeviceHandle:
    """A device reference owned by whoever drains the source iterator.

    Use it as a context manager so ``release`` runs on every exit path.
    """

    def read(self, prop: str) -> Any:
        raise NotImplementedError

    def release(self) -> None:
        pass

    def __enter__(self) -> DeviceHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class UsbSource:
    def matching(self) -> Iterator[DeviceHandle]:
        raise NotImplementedError

    def watch(self, on_arrival: EventCallback, on_removal: EventCallback) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class SubscriptionState(Enum):
    UNREGISTERED = "unregistered"
    SUBSCRIBED = "subscribed"
    STOPPED = "stopped"


class UsbSubscriber:
    def __init__(
        self, source: UsbSource, publish: Callable[[tuple[UsbDevice, ...]], None]
    ) -> None:
        self.source = source
        self.publish = publish
        self.state = SubscriptionState.UNREGISTERED
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def start(self) -> None:
        """Register both callbacks, then publish the current device set once.

        Starting spawns enumeration work, so call it from a background task.
        A subscriber that was stopped is never restarted.
        """
        with self._state_lock:
            if self.state is not SubscriptionState.UNREGISTERED:
                return
            self.source.watch(self._on_arrival, self._on_removal)
            self.state = SubscriptionState.SUBSCRIBED
        self.logger.debug("Subscribed to USB arrival and removal notifications.")
        self.refresh()

    def stop(self) -> None:
        with self._state_lock:
            previous, self.state = self.state, SubscriptionState.STOPPED
        if previous is SubscriptionState.SUBSCRIBED:
            self.source.close()

    def _on_arrival(self) -> None:
        self.logger.debug("USB arrival notification.")
        self.refresh()

    def _on_removal(self) -> None:
        self.logger.debug("USB removal notification.")
        self.refresh()

    def refresh(self) -> tuple[UsbDevice, ...] | None:
        # Serialized so notifications are processed in arrival order.
        with self._lock:
            try:
                devices = self._drain(self.source.matching())
            except UsbEnumerationError as exc:
                self.logger.warning("USB enumeration failed: %s", exc)
                return None
            self.publish(devices)
            return devices

    def _drain(self, handles: Iterator[DeviceHandle]) -> tuple[UsbDevice, ...]:
        devices: list[UsbDevice] = []
        for handle in handles:
            with handle:
                devices.append(self._read_device(handle))
        self.logger.debug("Enumerated %s USB devices.", len(devices))
        return tuple(devices)

    def _read_device(self, handle: DeviceHandle) -> UsbDevice:
        values: dict[str, Any] = {}
        for prop in (PRODUCT_NAME, VENDOR_ID, PRODUCT_ID):
            try:
                values[prop] = handle.read(prop)
            except Exception:
                self.logger.debug("USB property %s unreadable.", prop)
                values[prop] = None
        name = values[PRODUCT_NAME]
        return UsbDevice(
            name=name if isinstance(name, str) else None,
            vendor_id=_as_int(values[VENDOR_ID]),
            product_id=_as_int(values[PRODUCT_ID]),
        )


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16)
        except ValueError:
            return None
    return None


class _UdevHandle(DeviceHandle):
    def __init__(self, device: Any) -> None:
        self._device = device

    def read(self, prop: str) -> Any:
        properties = self._device.properties
        if prop == PRODUCT_NAME:
            return properties.get("ID_MODEL_FROM_DATABASE") or properties.get("ID_MODEL")
        if prop == VENDOR_ID:
            return properties["ID_VENDOR_ID"]
        if prop == PRODUCT_ID:
            return properties["ID_MODEL_ID"]
        raise KeyError(prop)

    def release(self) -> None:
        self._device = None


class UdevUsbSource(UsbSource):
    """Linux source backed by libudev via pyudev."""

    def __init__(self) -> None:
        import pyudev  # type: ignore

        self._pyudev = pyudev
        self._context = pyudev.Context()
        self._observer: Any = None

    def matching(self) -> Iterator[DeviceHandle]:
        try:
            devices = list(
                self._context.list_devices(subsystem="usb", DEVTYPE="usb_device")
            )
        except OSError as exc:
            raise UsbEnumerationError(str(exc)) from exc
        for device in devices:
            yield _UdevHandle(device)

    def watch(self, on_arrival: EventCallback, on_removal: EventCallback) -> None:
        monitor = self._pyudev.Monitor.from_netlink(self._context)
        monitor.filter_by(subsystem="usb", device_type="usb_device")

        def handle_event(device: Any) -> None:
            if device.action == "add":
                on_arrival()
            elif device.action == "remove":
                on_removal()

        self._observer = self._pyudev.MonitorObserver(
            monitor, callback=handle_event, name="usb-monitor"
        )
        self._observer.daemon = True
        self._observer.start()

    def close(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer = None


class _IoregHandle(DeviceHandle):
    def __init__(self, entry: dict[str, Any]) -> None:
        self._entry: dict[str, Any] | None = entry

    def read(self, prop: str) -> Any:
        if self._entry is None:
            raise RuntimeError("Device handle already released")
        if prop == PRODUCT_NAME:
            return self._entry.get("USB Product Name") or self._entry.get("kUSBProductString")
        if prop == VENDOR_ID:
            return self._entry["idVendor"]
        if prop == PRODUCT_ID:
            return self._entry["idProduct"]
        raise KeyError(prop)

    def release(self) -> None:
        self._entry = None


class IoregUsbSource(UsbSource):
    """macOS source that reads the IOUSB plane and polls it for changes."""

    def __init__(self, ioreg_path: str = "ioreg", poll_interval_s: float = 2.0) -> None:
        self.ioreg_path = ioreg_path
        self.poll_interval_s = poll_interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _entries(self) -> list[dict[str, Any]]:
        command = [self.ioreg_path, "-p", "IOUSB", "-l", "-w0", "-a"]
        try:
            result = subprocess.run(command, check=False, capture_output=True)
        except OSError as exc:
            raise UsbEnumerationError(f"Cannot run {self.ioreg_path}: {exc}") from exc
        if result.returncode != 0:
            raise UsbEnumerationError(
                f"{self.ioreg_path} exited with status {result.returncode}"
            )
        if not result.stdout.strip():
            return []
        try:
            root = plistlib.loads(result.stdout)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as exc:
            raise UsbEnumerationError(f"Unparsable {self.ioreg_path} output") from exc

        entries: list[dict[str, Any]] = []

        def traverse(node: Any) -> None:
            if isinstance(node, list):
                for item in node:
                    traverse(item)
                return
            if not isinstance(node, dict):
                return
            if "idVendor" in node:
                entries.append(node)
            traverse(node.get("IORegistryEntryChildren", []))

        traverse(root)
        return entries

    def matching(self) -> Iterator[DeviceHandle]:
        for entry in self._entries():
            yield _IoregHandle(entry)

    def _fingerprint(self) -> list[tuple[Any, ...]] | None:
        try:
            entries = self._entries()
        except UsbEnumerationError:
            return None
        return sorted(
            (
                str(entry.get("locationID", "")),
                str(entry.get("idVendor", "")),
                str(entry.get("idProduct", "")),
            )
            for entry in entries
        )

    def watch(self, on_arrival: EventCallback, on_removal: EventCallback) -> None:
        def poll() -> None:
            previous = self._fingerprint()
            while not self._stop.wait(self.poll_interval_s):
                current = self._fingerprint()
                if current is None or current == previous:
                    continue
                if previous is not None and len(current) < len(previous):
                    on_removal()
                else:
                    on_arrival()
                previous = current

        self._stop.clear()
        self._thread = threading.Thread(target=poll, name="usb-poller", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.poll_interval_s + 1)
            self._thread = None


def default_usb_source(config: AppConfig) -> UsbSource | None:
    system = platform.system().lower()
    if system == "linux":
        try:
            return UdevUsbSource()
        except (ImportError, OSError):
            logger.debug("libudev unavailable; USB monitoring disabled.")
            return None
    if system == "darwin":
        return IoregUsbSource(
            config.collector.ioreg_path, config.refresh.usb_poll_interval_s
        )
    logger.debug("USB monitoring unsupported on %s.", platform.system())
    return None
