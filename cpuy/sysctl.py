"""Single-shot reads of kernel parameters and CPU/memory counters.

Nothing here caches or retries. A failed read is reported as ``None``.
"""

from __future__ import annotations

import logging
import os
import subprocess

import psutil

from cpuy.logging_utils import TRACE_LEVEL
from cpuy.models import CpuTicks, MemoryPages

logger = logging.getLogger(__name__)


def _page_size() -> int:
    try:
        return int(os.sysconf("SC_PAGE_SIZE"))
    except (AttributeError, ValueError, OSError):
        return 4096


def read_string_parameter(name: str, sysctl_path: str = "sysctl") -> str | None:
    try:
        result = subprocess.run(
            [sysctl_path, "-n", name],
            check=False,
            text=True,
            capture_output=True,
        )
    except OSError:
        logger.debug("Command not found: %s", sysctl_path)
        return None
    if result.returncode != 0:
        logger.debug("Parameter %s unavailable (%s).", name, result.returncode)
        return None
    value = (result.stdout or "").strip()
    logger.log(TRACE_LEVEL, "%s = %r", name, value)
    return value or None


def read_int_parameter(name: str, sysctl_path: str = "sysctl") -> int | None:
    value = read_string_parameter(name, sysctl_path)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        logger.debug("Parameter %s is not an integer: %r", name, value)
        return None


def sample_cpu_ticks() -> CpuTicks | None:
    try:
        times = psutil.cpu_times()
    except (OSError, psutil.Error):
        logger.debug("Failed to sample CPU times.")
        return None
    return CpuTicks(
        user=float(times.user),
        system=float(times.system),
        idle=float(times.idle),
        nice=float(getattr(times, "nice", 0.0)),
    )


def sample_memory_pages() -> MemoryPages | None:
    try:
        vm = psutil.virtual_memory()
    except (OSError, psutil.Error):
        logger.debug("Failed to sample virtual memory.")
        return None
    page_size = _page_size()

    def pages(attr: str) -> int:
        return int(getattr(vm, attr, 0) or 0) // page_size

    return MemoryPages(
        free=pages("free"),
        active=pages("active"),
        inactive=pages("inactive"),
        wired=pages("wired"),
        page_size=page_size,
    )


def cpu_usage(previous: CpuTicks | None, current: CpuTicks) -> float | None:
    """Busy fraction between two tick samples, or None without a baseline."""
    if previous is None:
        return None
    user = max(0.0, current.user - previous.user)
    system = max(0.0, current.system - previous.system)
    idle = max(0.0, current.idle - previous.idle)
    nice = max(0.0, current.nice - previous.nice)
    total = user + system + idle + nice
    if total <= 0:
        return 0.0
    return (user + system + nice) / total


class CpuUsageSampler:
    """Holds the tick baseline between samples.

    Only one thread may call ``sample``; the baseline is not shared.
    """

    def __init__(self) -> None:
        self._previous: CpuTicks | None = None

    def sample(self) -> float | None:
        current = sample_cpu_ticks()
        if current is None:
            return None
        usage = cpu_usage(self._previous, current)
        self._previous = current
        return usage
