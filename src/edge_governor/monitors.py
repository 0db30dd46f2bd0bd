"""
Sampling loops.

Each monitor is an independent periodic task on its own daemon thread:
sample -> log -> check, then wait the full interval. Slow iterations are not
compensated, so the effective period is work time plus interval.
"""

import time
import logging
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from . import metrics
from .config import GovernorConfig
from .inventory import AcceleratorProbe, CadenceGate, InventoryCollector, human_size
from .logsink import GPU_USAGE_FORMAT, PLAIN_FORMAT, RESOURCE_USAGE_FORMAT, LogSink
from .mitigation import MitigationController
from .telemetry import Sample, TelemetrySource

logger = logging.getLogger(__name__)

RESOURCE_USAGE_LOG = "resource-usage.log"
GPU_USAGE_LOG = "gpu-usage.log"
RESOURCE_STATS_LOG = "resources.log"

MONITOR_NAMES = ("resource-manager", "gpu-monitor", "resource-monitor")


class LoopState(Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    LOGGING = "logging"


def _na(value, unit: str = "") -> str:
    return "N/A" if value is None else f"{value}{unit}"


class PeriodicTask:
    """
    Base class for a monitor loop.

    Subclasses implement `take_sample`, `record` and optionally `react`.
    `run_once` performs exactly one iteration synchronously.
    """

    name = "monitor"

    def __init__(self, interval: float, sink: LogSink):
        self.interval = interval
        self.sink = sink
        self.state = LoopState.IDLE
        self.iterations = 0

        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.lock = threading.Lock()

    def take_sample(self) -> Sample:
        raise NotImplementedError

    def record(self, sample: Sample) -> None:
        raise NotImplementedError

    def react(self, sample: Sample) -> None:
        pass

    def announce(self) -> None:
        """Header written once when the loop starts"""

    def run_once(self) -> Sample:
        try:
            self.state = LoopState.SAMPLING
            sample = self.take_sample()
            self.state = LoopState.LOGGING
            self.record(sample)
            self.react(sample)
            self.iterations += 1
            return sample
        finally:
            self.state = LoopState.IDLE

    def start(self) -> None:
        with self.lock:
            if self.running:
                logger.warning(f"{self.name} already running")
                return
            self.running = True
            self._stop_event.clear()
            self.announce()
            self.thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
            self.thread.start()
        logger.info(f"{self.name} started (interval={self.interval}s, log={self.sink.path})")

    def stop(self, timeout: float = 2.0) -> None:
        with self.lock:
            if not self.running:
                return
            self.running = False
            self._stop_event.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=timeout)
        logger.info(f"{self.name} stopped")

    def _loop(self) -> None:
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name} loop: {e}", exc_info=True)
            if self._stop_event.wait(self.interval):
                break


class ResourceManagerMonitor(PeriodicTask):
    """Primary monitor: combined usage line, mitigation checks, inventory"""

    name = "resource-manager"

    def __init__(
        self,
        config: GovernorConfig,
        telemetry: TelemetrySource,
        sink: LogSink,
        controller: MitigationController,
        inventory: Optional[InventoryCollector] = None,
        accelerators: Optional[AcceleratorProbe] = None,
        interval: Optional[float] = None,
    ):
        super().__init__(interval or config.sample_interval_s, sink)
        self.config = config
        self.telemetry = telemetry
        self.controller = controller
        self.inventory = inventory
        self.accelerators = accelerators

    def announce(self) -> None:
        c = self.config
        self.sink.write("Resource Manager started")
        self.sink.write(f"Memory thresholds: HIGH={c.memory_high_mb}MB, LOW={c.memory_low_mb}MB")
        self.sink.write(f"GPU threshold: HIGH={c.gpu_high_pct}%, Throttle temp: {c.gpu_throttle_temp_c}°C")
        self.sink.write(f"CPU threshold: HIGH={c.cpu_high_pct}%, Throttle temp: {c.cpu_throttle_temp_c}°C")
        self.sink.write("Starting resource monitoring loop")

    def take_sample(self) -> Sample:
        return self.telemetry.sample()

    def record(self, sample: Sample) -> None:
        if sample.memory_used_mb is None:
            memory = "N/A"
        else:
            memory = f"{sample.memory_used_mb}MB/{sample.memory_total_mb}MB ({sample.memory_pct}%)"
        self.sink.write(
            f"MEM={memory}, CPU={_na(sample.cpu_busy_pct, '%')}, "
            f"GPU={_na(sample.gpu_load_pct, '%')}, Temp={_na(sample.gpu_temp_c, '°C')}"
        )
        metrics.record_sample(sample)

    def react(self, sample: Sample) -> None:
        self.controller.evaluate(sample)
        if self.accelerators is not None:
            self.accelerators.probe_if_due()
        if self.inventory is not None:
            self.inventory.collect_if_due()


class GpuMonitor(PeriodicTask):
    """GPU-only monitor at a faster cadence; observational"""

    name = "gpu-monitor"

    def __init__(self, telemetry: TelemetrySource, sink: LogSink, interval: float = 2.0):
        super().__init__(interval, sink)
        self.telemetry = telemetry

    def announce(self) -> None:
        self.sink.write("GPU Monitor started")
        self.sink.write("Starting GPU monitoring")

    def take_sample(self) -> Sample:
        return Sample(
            timestamp=self.telemetry.clock(),
            memory_used_mb=None,
            memory_total_mb=None,
            cpu_busy_pct=None,
            gpu_load_pct=self.telemetry.gpu_load(),
            gpu_freq_mhz=self.telemetry.gpu_frequency(),
            gpu_temp_c=self.telemetry.thermal_zone("GPU"),
            cpu_temp_c=None,
        )

    def record(self, sample: Sample) -> None:
        self.sink.write(
            f"GPU Usage={_na(sample.gpu_load_pct, '%')}, "
            f"Freq={_na(sample.gpu_freq_mhz, 'MHz')}, "
            f"Temp={_na(sample.gpu_temp_c, '°C')}"
        )


class ResourceStatsMonitor(PeriodicTask):
    """Pipe-separated stats stream: Timestamp | Memory | CPU | GPU | Disk"""

    name = "resource-monitor"

    def __init__(
        self,
        telemetry: TelemetrySource,
        sink: LogSink,
        interval: float = 30.0,
        disk_path: str = "/advantech",
        now: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(interval, sink)
        self.telemetry = telemetry
        self.disk_path = disk_path
        self.now = now

    def announce(self) -> None:
        self.sink.write(f"# Resource Monitoring Started: {self.now().strftime('%a %b %d %H:%M:%S %Y')}")
        self.sink.write(f"# Interval: {self.interval:g}s")
        self.sink.write("# Format: Timestamp | Memory | CPU | GPU | Disk")

    def take_sample(self) -> Sample:
        return self.telemetry.sample()

    def record(self, sample: Sample) -> None:
        timestamp = self.now().strftime("%Y-%m-%d %H:%M:%S")

        if sample.memory_used_mb is None or not sample.memory_total_mb:
            memory = "Mem: unavailable"
        else:
            pct = sample.memory_used_mb * 100 / sample.memory_total_mb
            memory = f"Mem: {sample.memory_used_mb}/{sample.memory_total_mb}MB ({pct:.2f}%)"

        if sample.cpu_busy_pct is None:
            cpu = "CPU: N/A"
        else:
            cpu = f"CPU: {float(sample.cpu_busy_pct):.1f}%"

        if sample.gpu_load_pct is None:
            gpu = "GPU: stats unavailable"
        else:
            gpu = f"GPU: {sample.gpu_load_pct}% util"

        usage = self.telemetry.disk_usage(self.disk_path)
        if usage is None:
            disk = "Disk: unavailable"
        else:
            disk = f"Disk: {human_size(usage.used_bytes)}/{human_size(usage.total_bytes)} ({usage.percent:.1f}%)"

        self.sink.write(f"{timestamp} | {memory} | {cpu} | {gpu} | {disk}")


def build_monitors(
    config: GovernorConfig,
    names: Optional[List[str]] = None,
    interval: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> List[PeriodicTask]:
    """
    Create the requested monitors, each with its own telemetry source and sink.

    Args:
        config: Validated configuration
        names: Subset of MONITOR_NAMES (default: all enabled monitors)
        interval: Override interval, applied to every monitor built
        clock: Clock for the inventory and accelerator cadences
    """
    if names is None:
        names = ["resource-manager", "gpu-monitor"]
        if config.enable_resource_monitoring:
            names.append("resource-monitor")

    log_dir = Path(config.log_dir)
    monitors: List[PeriodicTask] = []

    for name in names:
        telemetry = TelemetrySource(config.sysfs_root, config.gpu_load_per_mille)

        if name == "resource-manager":
            sink = LogSink(log_dir / RESOURCE_USAGE_LOG, RESOURCE_USAGE_FORMAT)
            monitors.append(ResourceManagerMonitor(
                config,
                telemetry,
                sink,
                MitigationController.from_config(config, sink, telemetry),
                inventory=InventoryCollector(
                    sink, telemetry, CadenceGate(config.inventory_interval_s, clock), config.disk_paths
                ),
                accelerators=AcceleratorProbe(
                    sink, CadenceGate(config.accelerator_interval_s, clock), config.sysfs_root
                ),
                interval=interval,
            ))
        elif name == "gpu-monitor":
            sink = LogSink(log_dir / GPU_USAGE_LOG, GPU_USAGE_FORMAT)
            monitors.append(GpuMonitor(telemetry, sink, interval or config.gpu_interval_s))
        elif name == "resource-monitor":
            sink = LogSink(log_dir / RESOURCE_STATS_LOG, PLAIN_FORMAT)
            disk_path = config.disk_paths[-1] if config.disk_paths else "/"
            monitors.append(ResourceStatsMonitor(
                telemetry, sink, interval or config.stats_interval_s, disk_path
            ))
        else:
            raise ValueError(f"Unknown monitor: {name}")

    return monitors
