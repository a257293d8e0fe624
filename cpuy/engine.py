from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import replace
import logging
import platform
import socket
import threading
import time
from typing import Any

import psutil

from cpuy.config import AppConfig
from cpuy.inventory import build_disks, build_displays, gpu_names, serial_number
from cpuy.models import HostSummary, MemoryState, ProcessorState, StorageState
from cpuy.profiler import (
    DISPLAYS,
    HARDWARE,
    STORAGE,
    Document,
    InventoryUnavailable,
    query_inventory,
)
from cpuy.store import TelemetryStore
from cpuy.sysctl import (
    CpuUsageSampler,
    read_int_parameter,
    read_string_parameter,
    sample_memory_pages,
)
from cpuy.usb import UsbSource, UsbSubscriber, default_usb_source
from cpuy.volumes import free_space, list_mounted_volumes

UsbSourceFactory = Callable[[AppConfig], UsbSource | None]


def _os_version() -> str:
    release = platform.mac_ver()[0]
    if release:
        return f"macOS {release}"
    return platform.platform(terse=True)


class TelemetryEngine:
    def __init__(
        self,
        config: AppConfig | None = None,
        store: TelemetryStore | None = None,
        executor: Executor | None = None,
        usb_source_factory: UsbSourceFactory = default_usb_source,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or AppConfig.default()
        self.store = store or TelemetryStore()
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="cpuy-background"
        )
        self._usb_source_factory = usb_source_factory
        self._clock = clock
        self.usb: UsbSubscriber | None = None
        self.logger = logging.getLogger(self.__class__.__name__)

        self._sampler = CpuUsageSampler()
        self._stop = threading.Event()
        self._sampler_thread: threading.Thread | None = None
        self._init_lock = threading.Lock()
        self._storage_lock = threading.Lock()
        self._initialized = False
        self._closed = False
        self._storage_generation = 0
        self._storage_future: Future[Any] | None = None
        self._background: list[Future[Any]] = []

    def __enter__(self) -> TelemetryEngine:
        self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            self._initialized = True
        self.logger.debug("Initializing telemetry engine.")
        self.refresh_overview()
        self._fetch_cpu_static()
        self._update_memory()
        self._start_sampler()
        self._background = []
        if self._create_usb_subscriber():
            self._background.append(
                self.executor.submit(self._run_task, "usb subscription", self._start_usb)
            )
        self._background += [
            self.executor.submit(
                self._run_task, "hardware overview", self._fetch_full_overview_and_storage
            ),
            self.executor.submit(self._run_task, "displays", self._fetch_displays_and_gpus),
        ]

    def wait_for_background(self, timeout: float | None = None) -> bool:
        """Block until the startup inventory pass and any storage load finish."""
        deadline = None if timeout is None else time.monotonic() + timeout
        _, pending = wait_futures(self._background, timeout=timeout)
        if pending:
            return False
        storage = self._storage_future
        if storage is None:
            return True
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        _, pending = wait_futures([storage], timeout=remaining)
        return not pending

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self._sampler_thread is not None:
            self._sampler_thread.join(timeout=self.config.refresh.interval_s + 1)
            self._sampler_thread = None
        if self.usb is not None:
            self.usb.stop()
        if self._owns_executor:
            self.executor.shutdown(wait=wait, cancel_futures=not wait)
        self.logger.debug("Telemetry engine stopped.")

    def refresh_overview(self) -> None:
        try:
            uptime_s: int | None = int(self._clock() - psutil.boot_time())
        except (OSError, psutil.Error):
            self.logger.debug("Boot time unavailable.")
            uptime_s = None
        os_version = _os_version()
        kernel_release = platform.release()
        hostname = socket.gethostname() or "Unknown"

        def overview(host: HostSummary) -> HostSummary:
            # Uptime is non-decreasing.
            candidates = [0, host.uptime_s or 0]
            if uptime_s is not None:
                candidates.append(uptime_s)
            return replace(
                host,
                os_version=os_version,
                kernel_release=kernel_release,
                hostname=hostname,
                uptime_s=max(candidates),
            )

        self.store.update("host", overview)

    def fetch_storage_if_needed(self, force: bool = False) -> Future[Any] | None:
        with self._storage_lock:
            state = self.store.snapshot().storage_state
            if self._closed or (state is not StorageState.NOT_REQUESTED and not force):
                return None
            self._storage_generation += 1
            generation = self._storage_generation
            self.store.publish(storage_state=StorageState.LOADING)
        self.logger.info("Loading storage (force=%s).", force)
        volumes = tuple(list_mounted_volumes())
        with self._storage_lock:
            if generation == self._storage_generation:
                self.store.publish(mounted_volumes=volumes)
        future = self.executor.submit(
            self._run_task, "disk inventory", self._load_disks, generation
        )
        self._storage_future = future
        return future

    def _run_task(self, label: str, task: Callable[..., None], *args: Any) -> None:
        try:
            task(*args)
        except Exception:
            self.logger.exception("Background task '%s' failed.", label)

    def _query_inventory(self, category: str) -> Document:
        return query_inventory(
            {category},
            profiler_path=self.config.collector.system_profiler_path,
            timeout_s=self.config.collector.profiler_timeout_s,
        )

    def _fetch_cpu_static(self) -> None:
        sysctl_path = self.config.collector.sysctl_path
        brand = (
            read_string_parameter("machdep.cpu.brand_string", sysctl_path)
            or platform.processor()
            or "Unknown"
        )
        cores = (
            read_int_parameter("hw.physicalcpu", sysctl_path)
            or read_int_parameter("hw.ncpu", sysctl_path)
            or psutil.cpu_count(logical=False)
            or 0
        )
        total_b = read_int_parameter("hw.memsize", sysctl_path)
        if total_b is None:
            total_b = int(psutil.virtual_memory().total)
        self.logger.debug("CPU: %s (%s physical cores)", brand, cores)
        self.store.publish(
            processor=ProcessorState(brand=brand, physical_cores=cores, usage=None),
            memory=MemoryState(used_b=0, total_b=total_b),
        )

    def _update_live_stats(self) -> None:
        usage = self._sampler.sample()
        if usage is not None:
            self.store.update("processor", lambda cpu: replace(cpu, usage=usage))
        self._update_memory()

    def _update_memory(self) -> None:
        pages = sample_memory_pages()
        if pages is not None:
            self.store.publish(memory=MemoryState.from_pages(pages))

    def _start_sampler(self) -> None:
        interval = self.config.refresh.interval_s

        def loop() -> None:
            # The tick baseline belongs to this thread only.
            self._sampler.sample()
            while not self._stop.wait(interval):
                try:
                    self._update_live_stats()
                except Exception:
                    self.logger.exception("Live stats update failed.")

        self._sampler_thread = threading.Thread(target=loop, name="cpuy-sampler", daemon=True)
        self._sampler_thread.start()
        self.logger.debug("Sampling CPU and memory every %s seconds.", interval)

    def _create_usb_subscriber(self) -> bool:
        if not self.config.refresh.enable_usb:
            self.logger.debug("USB monitoring disabled by configuration.")
            return False
        source = self._usb_source_factory(self.config)
        if source is None:
            return False
        self.usb = UsbSubscriber(
            source, lambda devices: self.store.publish(usb_devices=devices)
        )
        return True

    def _start_usb(self) -> None:
        if self.usb is None:
            return
        try:
            self.usb.start()
        except OSError:
            self.logger.warning("USB subscription failed.", exc_info=True)

    def _fetch_full_overview_and_storage(self) -> None:
        try:
            document = self._query_inventory(HARDWARE)
        except InventoryUnavailable as exc:
            self.logger.warning("Hardware inventory unavailable: %s", exc)
        else:
            serial = serial_number(document)
            if serial:
                self.store.update("host", lambda host: replace(host, serial_number=serial))
            else:
                self.logger.debug("No serial number in hardware inventory.")
        self.fetch_storage_if_needed()

    def _fetch_displays_and_gpus(self) -> None:
        try:
            document = self._query_inventory(DISPLAYS)
        except InventoryUnavailable as exc:
            self.logger.warning("Display inventory unavailable: %s", exc)
            return
        self.store.publish(displays=build_displays(document), gpu_names=gpu_names(document))

    def _load_disks(self, generation: int) -> None:
        disks = None
        try:
            document = self._query_inventory(STORAGE)
        except InventoryUnavailable as exc:
            self.logger.warning("Storage inventory unavailable: %s", exc)
        else:
            disks = build_disks(document, free_space)
        finally:
            with self._storage_lock:
                if generation != self._storage_generation:
                    self.logger.debug("Discarding superseded storage load %s.", generation)
                elif disks is None:
                    self.store.publish(storage_state=StorageState.LOADED)
                else:
                    self.store.publish(disks=disks, storage_state=StorageState.LOADED)
