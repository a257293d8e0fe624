"""Published telemetry state.

The store holds one immutable ``Snapshot``. Writers replace named slots and
the whole snapshot is swapped under a lock, so a reader always sees a
consistent value without locking.

Observers are called on the writing thread, one write at a time, so they
see snapshots in the order they were published. They must return quickly
and must not wait on another writer.
"""

from __future__ import annotations

from collections.abc import Callable
import dataclasses
import logging
import threading
from typing import Any

from cpuy.logging_utils import TRACE_LEVEL
from cpuy.models import Snapshot

Observer = Callable[[Snapshot, frozenset[str]], None]

SLOTS = frozenset(field.name for field in dataclasses.fields(Snapshot))


class TelemetryStore:
    def __init__(self, initial: Snapshot | None = None) -> None:
        self._snapshot = initial or Snapshot()
        self._lock = threading.Lock()
        # Held across swap and dispatch; re-entrant for observers that write.
        self._dispatch_lock = threading.RLock()
        self._observers: list[Observer] = []
        self.logger = logging.getLogger(self.__class__.__name__)

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def publish(self, **slots: Any) -> Snapshot:
        unknown = set(slots) - SLOTS
        if unknown:
            raise TypeError(f"Unknown telemetry slots: {sorted(unknown)}")
        with self._dispatch_lock:
            with self._lock:
                self._snapshot = dataclasses.replace(self._snapshot, **slots)
                current = self._snapshot
                observers = list(self._observers)
            self._notify(observers, current, frozenset(slots))
        return current

    def _notify(
        self, observers: list[Observer], current: Snapshot, changed: frozenset[str]
    ) -> None:
        self.logger.log(TRACE_LEVEL, "Published slots: %s", sorted(changed))
        for observer in observers:
            try:
                observer(current, changed)
            except Exception:
                self.logger.exception("Telemetry observer failed.")

    def update(self, slot: str, transform: Callable[[Any], Any]) -> Snapshot:
        """Replace one slot with ``transform(current value)`` atomically."""
        if slot not in SLOTS:
            raise TypeError(f"Unknown telemetry slot: {slot}")
        with self._dispatch_lock:
            with self._lock:
                value = transform(getattr(self._snapshot, slot))
                self._snapshot = dataclasses.replace(self._snapshot, **{slot: value})
                current = self._snapshot
                observers = list(self._observers)
            self._notify(observers, current, frozenset((slot,)))
        return current

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe
