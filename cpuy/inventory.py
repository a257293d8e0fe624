"""Convert inventory documents into published model values."""

from __future__ import annotations

from collections.abc import Callable
import logging
import re
from typing import Any

from cpuy.models import Disk, Display, Partition
from cpuy.profiler import (
    DISPLAYS,
    HARDWARE,
    STORAGE,
    Document,
    array_at,
    first_matching_value,
    parse_byte_size,
)

FreeSpaceLookup = Callable[[str], int | None]

_DIMENSIONS_PATTERN = re.compile(r"(\d+)\s*x\s*(\d+)")
_MAIN_DISPLAY = "spdisplays_yes"

logger = logging.getLogger(__name__)


def _text(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _size(entry: dict[str, Any]) -> int | None:
    size = entry.get("size")
    if isinstance(size, str):
        parsed = parse_byte_size(size)
        if parsed is not None:
            return parsed
    size_in_bytes = entry.get("size_in_bytes")
    if isinstance(size_in_bytes, int) and not isinstance(size_in_bytes, bool):
        return size_in_bytes
    return None


def _mappings(items: Any) -> list[dict[str, Any]]:
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def serial_number(document: Document) -> str | None:
    if array_at(document, HARDWARE) is None:
        return None
    return first_matching_value(document, "serial_number")


def build_partition(
    entry: dict[str, Any], free_space: FreeSpaceLookup | None = None
) -> Partition:
    mount_point = _text(entry, "mount_point")
    free_b = None
    if mount_point and free_space is not None:
        free_b = free_space(mount_point)
    return Partition(
        name=_text(entry, "_name", "name") or "Partition",
        mount_point=mount_point,
        bsd_name=_text(entry, "device_identifier"),
        fs_type=_text(entry, "file_system", "filesystem"),
        size_b=_size(entry),
        free_b=free_b,
    )


def build_disks(
    document: Document, free_space: FreeSpaceLookup | None = None
) -> tuple[Disk, ...]:
    disks: list[Disk] = []
    for entry in _mappings(array_at(document, STORAGE)):
        partitions = tuple(
            build_partition(part, free_space) for part in _mappings(entry.get("_items"))
        )
        disks.append(
            Disk(
                name=_text(entry, "_name", "name") or "Disk",
                model=_text(entry, "device_model", "bsd_name"),
                size_b=_size(entry),
                bsd_name=_text(entry, "device_identifier"),
                partitions=partitions,
            )
        )
    logger.debug("Parsed %s disks from inventory.", len(disks))
    return tuple(disks)


def _dimensions(value: Any) -> tuple[int, int] | None:
    if not isinstance(value, str):
        return None
    match = _DIMENSIONS_PATTERN.search(value)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def build_display(entry: dict[str, Any]) -> Display | None:
    pixels = _dimensions(entry.get("_spdisplays_pixels"))
    logical = _dimensions(entry.get("_spdisplays_resolution"))
    if pixels is None and logical is None:
        return None
    if pixels is None:
        pixels = logical
    scale = 1.0
    if logical is not None and logical[0] > 0:
        scale = round(pixels[0] / logical[0], 2)
    return Display(
        name=_text(entry, "_name") or "Display",
        resolution=f"{pixels[0]}x{pixels[1]}",
        scale=scale,
        is_main=entry.get("spdisplays_main") == _MAIN_DISPLAY,
    )


def build_displays(document: Document) -> tuple[Display, ...]:
    displays: list[Display] = []
    for gpu in _mappings(array_at(document, DISPLAYS)):
        for entry in _mappings(gpu.get("spdisplays_ndrvs")):
            display = build_display(entry)
            if display is None:
                logger.debug("Skipping display without a resolution: %s", entry.get("_name"))
                continue
            displays.append(display)
    return tuple(displays)


def gpu_names(document: Document) -> tuple[str, ...]:
    names = {
        name
        for gpu in _mappings(array_at(document, DISPLAYS))
        if (name := _text(gpu, "_name", "sppci_model"))
    }
    return tuple(sorted(names))
