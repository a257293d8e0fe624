"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from cpuy.config import AppConfig, CollectorConfig, RefreshConfig
from cpuy.store import TelemetryStore


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "linux: mark test as Linux-specific"
    )
    config.addinivalue_line(
        "markers", "macos: mark test as macOS-specific"
    )


@pytest.fixture
def app_config():
    """Config with a long sampling interval so the sampler stays idle in tests."""
    return AppConfig(
        collector=CollectorConfig(
            system_profiler_path="system_profiler",
            sysctl_path="sysctl",
            ioreg_path="ioreg",
            profiler_timeout_s=5.0,
        ),
        refresh=RefreshConfig(interval_s=60.0, usb_poll_interval_s=60.0, enable_usb=True),
    )


@pytest.fixture
def store():
    return TelemetryStore()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="test-background")
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def storage_document():
    """Inventory document with two disks, the first carrying two partitions."""
    return {
        "SPStorageDataType": [
            {
                "_name": "APPLE SSD AP0512Q",
                "device_model": "APPLE SSD AP0512Q",
                "device_identifier": "disk0",
                "size": "500.28 GB (500,277,790,720 bytes)",
                "_items": [
                    {
                        "_name": "Macintosh HD",
                        "mount_point": "/",
                        "file_system": "APFS",
                        "device_identifier": "disk3s1",
                        "size": "494.38 GB (494,384,795,648 bytes)",
                    },
                    {
                        "_name": "Recovery",
                        "filesystem": "APFS",
                        "device_identifier": "disk3s3",
                        "size": "5.37 GB (5,368,664,064 bytes)",
                    },
                ],
            },
            {
                "_name": "External",
                "bsd_name": "disk4",
                "size_in_bytes": 2000398934016,
            },
        ]
    }


@pytest.fixture
def displays_document():
    return {
        "SPDisplaysDataType": [
            {
                "_name": "Apple M1 Pro",
                "sppci_model": "Apple M1 Pro",
                "spdisplays_ndrvs": [
                    {
                        "_name": "Color LCD",
                        "_spdisplays_pixels": "3024 x 1964",
                        "_spdisplays_resolution": "1512 x 982 @ 120.00Hz",
                        "spdisplays_main": "spdisplays_yes",
                    },
                    {
                        "_name": "DELL U2720Q",
                        "_spdisplays_pixels": "3840 x 2160",
                        "_spdisplays_resolution": "3840 x 2160 @ 60.00Hz",
                    },
                ],
            },
            {"_name": "Apple M1 Pro"},
            {"_name": "AMD Radeon Pro 5500M"},
        ]
    }
