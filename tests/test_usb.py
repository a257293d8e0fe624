"""Tests for the USB arrival/removal subscriber and its platform sources."""
from __future__ import annotations

import plistlib
import threading
from unittest.mock import Mock, patch

import pytest

from cpuy.config import AppConfig
from cpuy.models import UsbDevice
from cpuy.usb import (
    PRODUCT_ID,
    PRODUCT_NAME,
    VENDOR_ID,
    DeviceHandle,
    IoregUsbSource,
    SubscriptionState,
    UsbEnumerationError,
    UsbSource,
    UsbSubscriber,
    default_usb_source,
)


class FakeHandle(DeviceHandle):
    def __init__(self, properties, fail_on=()):
        self.properties = properties
        self.fail_on = set(fail_on)
        self.released = False

    def read(self, prop):
        if prop in self.fail_on:
            raise OSError(f"cannot read {prop}")
        return self.properties.get(prop)

    def release(self):
        self.released = True


class FakeSource(UsbSource):
    def __init__(self, devices=None):
        self.devices = devices or []
        self.handles = []
        self.on_arrival = None
        self.on_removal = None
        self.closed = False
        self.error = None
        self.enumerations = 0

    def matching(self):
        self.enumerations += 1
        if self.error is not None:
            raise self.error
        self.handles = [FakeHandle(*device) for device in self.devices]
        yield from self.handles

    def watch(self, on_arrival, on_removal):
        self.on_arrival = on_arrival
        self.on_removal = on_removal

    def close(self):
        self.closed = True


KEYBOARD = ({PRODUCT_NAME: "Magic Keyboard", VENDOR_ID: 0x05AC, PRODUCT_ID: 0x029C},)
MOUSE = ({PRODUCT_NAME: "USB Mouse", VENDOR_ID: "046d", PRODUCT_ID: "c077"},)


class TestUsbSubscriber:
    def test_start_registers_both_channels_and_publishes(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)

        subscriber.start()

        assert subscriber.state is SubscriptionState.SUBSCRIBED
        assert source.on_arrival is not None
        assert source.on_removal is not None
        assert published[-1] == (
            UsbDevice(name="Magic Keyboard", vendor_id=0x05AC, product_id=0x029C),
        )

    def test_start_enumerates_once(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)

        subscriber.start()

        assert source.enumerations == 1
        assert len(published) == 1

    def test_stop_before_start_never_subscribes(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)

        subscriber.stop()
        subscriber.start()

        assert source.on_arrival is None
        assert source.enumerations == 0
        assert published == []
        assert source.closed is False

    def test_start_is_idempotent(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)

        subscriber.start()
        count = len(published)
        subscriber.start()

        assert len(published) == count

    def test_event_replaces_whole_list(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)
        subscriber.start()

        source.devices = [KEYBOARD, MOUSE]
        source.on_arrival()

        assert published[-1] == (
            UsbDevice(name="Magic Keyboard", vendor_id=0x05AC, product_id=0x029C),
            UsbDevice(name="USB Mouse", vendor_id=0x046D, product_id=0xC077),
        )

    def test_zero_devices_publishes_empty_list(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)
        subscriber.start()

        source.devices = []
        source.on_removal()

        assert published[-1] == ()

    def test_handles_released_after_read(self):
        source = FakeSource([KEYBOARD, MOUSE])
        subscriber = UsbSubscriber(source, lambda devices: None)

        subscriber.refresh()

        assert source.handles
        assert all(handle.released for handle in source.handles)

    def test_partial_read_keeps_device_and_releases_handle(self):
        broken = ({PRODUCT_NAME: "Hub", VENDOR_ID: 1, PRODUCT_ID: 2}, {VENDOR_ID, PRODUCT_NAME})
        source = FakeSource([broken, MOUSE])
        subscriber = UsbSubscriber(source, lambda devices: None)

        devices = subscriber.refresh()

        assert devices[0] == UsbDevice(name=None, vendor_id=None, product_id=2)
        assert devices[1].name == "USB Mouse"
        assert all(handle.released for handle in source.handles)

    def test_enumeration_failure_keeps_previous_list(self):
        source = FakeSource([KEYBOARD])
        published = []
        subscriber = UsbSubscriber(source, published.append)
        subscriber.start()
        count = len(published)

        source.error = UsbEnumerationError("ioreg failed")
        assert subscriber.refresh() is None
        assert len(published) == count

    def test_stop_closes_source(self):
        source = FakeSource()
        subscriber = UsbSubscriber(source, lambda devices: None)
        subscriber.start()

        subscriber.stop()

        assert source.closed is True
        assert subscriber.state is SubscriptionState.STOPPED


def _ioreg_plist():
    return plistlib.dumps(
        {
            "IORegistryEntryName": "Root",
            "IORegistryEntryChildren": [
                {
                    "IORegistryEntryName": "AppleT8103USBXHCI",
                    "IORegistryEntryChildren": [
                        {
                            "USB Product Name": "USB3.1 Hub",
                            "idVendor": 3034,
                            "idProduct": 1041,
                            "locationID": 1,
                            "IORegistryEntryChildren": [
                                {
                                    "kUSBProductString": "Flash Drive",
                                    "idVendor": 2385,
                                    "idProduct": 5734,
                                    "locationID": 2,
                                }
                            ],
                        }
                    ],
                }
            ],
        }
    )


@pytest.mark.macos
class TestIoregUsbSource:
    @patch("subprocess.run")
    def test_matching_walks_registry(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout=_ioreg_plist(), stderr=b"")
        subscriber = UsbSubscriber(IoregUsbSource(), lambda devices: None)

        devices = subscriber.refresh()

        assert devices == (
            UsbDevice(name="USB3.1 Hub", vendor_id=3034, product_id=1041),
            UsbDevice(name="Flash Drive", vendor_id=2385, product_id=5734),
        )
        assert mock_run.call_args[0][0] == ["ioreg", "-p", "IOUSB", "-l", "-w0", "-a"]

    @patch("subprocess.run")
    def test_empty_output_is_no_devices(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout=b"", stderr=b"")

        assert list(IoregUsbSource().matching()) == []

    @patch("subprocess.run")
    def test_tool_failure_raises(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout=b"", stderr=b"error")

        with pytest.raises(UsbEnumerationError):
            list(IoregUsbSource().matching())

    @patch("subprocess.run")
    def test_watch_enumerates_on_poller_thread(self, mock_run):
        callers = []
        polled = threading.Event()

        def run(*args, **kwargs):
            callers.append(threading.current_thread())
            polled.set()
            return Mock(returncode=0, stdout=_ioreg_plist(), stderr=b"")

        mock_run.side_effect = run
        source = IoregUsbSource(poll_interval_s=60)

        source.watch(lambda: None, lambda: None)
        assert polled.wait(timeout=5)
        source.close()

        assert callers
        assert threading.current_thread() not in callers


class TestDefaultSource:
    def test_darwin_uses_ioreg(self):
        with patch("platform.system", return_value="Darwin"):
            source = default_usb_source(AppConfig.default())

        assert isinstance(source, IoregUsbSource)
        assert source.poll_interval_s == 2.0

    def test_unsupported_platform(self):
        with patch("platform.system", return_value="Windows"):
            assert default_usb_source(AppConfig.default()) is None

    @pytest.mark.linux
    def test_linux_without_libudev(self):
        with patch("platform.system", return_value="Linux"), patch(
            "cpuy.usb.UdevUsbSource", side_effect=ImportError("pyudev")
        ):
            assert default_usb_source(AppConfig.default()) is None
