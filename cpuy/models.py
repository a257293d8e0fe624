"""Typed, immutable values published by the telemetry store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

PENDING = "Loading..."

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_uptime(seconds: float) -> str:
    """Render an uptime as ``Xd Yh Zm``, ``Xh Ym`` or ``Xm``."""
    total = max(0, int(seconds))
    days = total // 86400
    hours = (total % 86400) // 3600
    minutes = (total % 3600) // 60
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def bytes_to_human(value: int) -> str:
    size = float(value)
    index = 0
    while size >= 1024.0 and index < len(_BYTE_UNITS) - 1:
        size /= 1024.0
        index += 1
    return f"{size:.2f} {_BYTE_UNITS[index]}"


def _as_lists(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _as_lists(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_as_lists(item) for item in value]
    return value


@dataclass(frozen=True)
class HostSummary:
    os_version: str = PENDING
    kernel_release: str = PENDING
    hostname: str = PENDING
    uptime_s: int | None = None
    serial_number: str = PENDING

    @property
    def uptime(self) -> str:
        if self.uptime_s is None:
            return PENDING
        return format_uptime(self.uptime_s)


@dataclass(frozen=True)
class ProcessorState:
    brand: str = PENDING
    physical_cores: int = 0
    # Fraction in [0, 1]; None until two tick samples exist.
    usage: float | None = None


@dataclass(frozen=True)
class CpuTicks:
    user: float
    system: float
    idle: float
    nice: float


@dataclass(frozen=True)
class MemoryPages:
    free: int
    active: int
    inactive: int
    wired: int
    page_size: int


@dataclass(frozen=True)
class MemoryState:
    used_b: int = 0
    total_b: int = 0

    @classmethod
    def from_pages(cls, pages: MemoryPages) -> MemoryState:
        used = (pages.active + pages.inactive + pages.wired) * pages.page_size
        free = pages.free * pages.page_size
        return cls(used_b=max(0, used), total_b=max(0, used) + max(0, free))


@dataclass(frozen=True)
class Display:
    name: str
    resolution: str
    scale: float
    is_main: bool


@dataclass(frozen=True)
class Partition:
    name: str
    mount_point: str | None = None
    bsd_name: str | None = None
    fs_type: str | None = None
    size_b: int | None = None
    free_b: int | None = None


@dataclass(frozen=True)
class Disk:
    name: str
    model: str | None = None
    size_b: int | None = None
    bsd_name: str | None = None
    partitions: tuple[Partition, ...] = ()


@dataclass(frozen=True)
class UsbDevice:
    name: str | None = None
    vendor_id: int | None = None
    product_id: int | None = None


class StorageState(str, Enum):
    NOT_REQUESTED = "not_requested"
    LOADING = "loading"
    LOADED = "loaded"


@dataclass(frozen=True)
class Snapshot:
    host: HostSummary = field(default_factory=HostSummary)
    processor: ProcessorState = field(default_factory=ProcessorState)
    memory: MemoryState = field(default_factory=MemoryState)
    displays: tuple[Display, ...] = ()
    gpu_names: tuple[str, ...] = ()
    disks: tuple[Disk, ...] = ()
    mounted_volumes: tuple[Partition, ...] = ()
    usb_devices: tuple[UsbDevice, ...] = ()
    storage_state: StorageState = StorageState.NOT_REQUESTED

    def to_dict(self) -> dict[str, Any]:
        payload = _as_lists(asdict(self))
        payload["host"]["uptime"] = self.host.uptime
        payload["storage_state"] = self.storage_state.value
        return payload
