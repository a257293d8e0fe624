from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import configparser

MIN_INTERVAL_S = 0.1


@dataclass(frozen=True)
class CollectorConfig:
    system_profiler_path: str = "system_profiler"
    sysctl_path: str = "sysctl"
    ioreg_path: str = "ioreg"
    profiler_timeout_s: float | None = None


@dataclass(frozen=True)
class RefreshConfig:
    interval_s: float = 1.0
    usb_poll_interval_s: float = 2.0
    enable_usb: bool = True


@dataclass(frozen=True)
class AppConfig:
    collector: CollectorConfig
    refresh: RefreshConfig

    @classmethod
    def default(cls) -> AppConfig:
        return cls(collector=CollectorConfig(), refresh=RefreshConfig())


def _get_optional(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value if value else None


def _get_optional_float(value: str | None) -> float | None:
    value = _get_optional(value)
    if value is None:
        return None
    return float(value)


def load_config(path: str | Path) -> AppConfig:
    parser = configparser.ConfigParser()
    read_files = parser.read(path)
    if not read_files:
        raise FileNotFoundError(f"Config file not found: {path}")

    # parser.get with fallback handles missing sections as well as missing keys
    collector = CollectorConfig(
        system_profiler_path=parser.get(
            "collector", "system_profiler_path", fallback="system_profiler"
        ),
        sysctl_path=parser.get("collector", "sysctl_path", fallback="sysctl"),
        ioreg_path=parser.get("collector", "ioreg_path", fallback="ioreg"),
        profiler_timeout_s=_get_optional_float(
            parser.get("collector", "profiler_timeout_s", fallback=None)
        ),
    )

    refresh = RefreshConfig(
        interval_s=max(
            MIN_INTERVAL_S, parser.getfloat("refresh", "interval_s", fallback=1.0)
        ),
        usb_poll_interval_s=max(
            MIN_INTERVAL_S,
            parser.getfloat("refresh", "usb_poll_interval_s", fallback=2.0),
        ),
        enable_usb=parser.getboolean("refresh", "enable_usb", fallback=True),
    )

    return AppConfig(collector=collector, refresh=refresh)
