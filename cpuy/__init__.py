"""CpuY live host telemetry collector."""

from cpuy.config import AppConfig, load_config
from cpuy.engine import TelemetryEngine
from cpuy.models import Snapshot, StorageState
from cpuy.profiler import InventoryUnavailable
from cpuy.schema import validate_snapshot
from cpuy.store import TelemetryStore

__all__ = [
    "AppConfig",
    "InventoryUnavailable",
    "Snapshot",
    "StorageState",
    "TelemetryEngine",
    "TelemetryStore",
    "load_config",
    "validate_snapshot",
]
