from __future__ import annotations

import logging
from pathlib import PurePath

import psutil

from cpuy.models import Partition

logger = logging.getLogger(__name__)


def free_space(mount_point: str) -> int | None:
    try:
        return int(psutil.disk_usage(mount_point).free)
    except OSError:
        logger.debug("Free space unavailable for %s.", mount_point)
        return None


def _volume_name(device: str, mount_point: str) -> str:
    name = PurePath(mount_point).name
    if name:
        return name
    return PurePath(device).name or device or mount_point


def list_mounted_volumes() -> list[Partition]:
    try:
        partitions = psutil.disk_partitions(all=False)
    except OSError:
        logger.debug("Failed to enumerate mounted filesystems.")
        return []

    volumes: list[Partition] = []
    for part in partitions:
        size_b: int | None = None
        free_b: int | None = None
        try:
            usage = psutil.disk_usage(part.mountpoint)
            size_b = int(usage.total)
            free_b = int(usage.free)
        except OSError:
            # keep the volume, only its capacity is unknown
            logger.debug("Capacity query failed for %s.", part.mountpoint)
        volumes.append(
            Partition(
                name=_volume_name(part.device, part.mountpoint),
                mount_point=part.mountpoint,
                bsd_name=part.device or None,
                fs_type=part.fstype or None,
                size_b=size_b,
                free_b=free_b,
            )
        )
    return volumes
