"""
Mitigation Controller

Hysteresis state machines for the thermal dimensions, the memory pressure
trigger and the observational utilization checks. Each controller owns its own
state; nothing here is process-global, so independent instances can be driven
side by side.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from . import metrics
from .actions import (
    GPU_INTENSIVE_PATTERN,
    FrequencyGovernor,
    ProcessInfo,
    ProcessTable,
    drop_caches,
)
from .config import GovernorConfig
from .logsink import LogSink
from .telemetry import CPU_GOVERNOR, GPU_GOVERNOR, Sample, TelemetrySource, ThermalZone

logger = logging.getLogger(__name__)


class MitigationState(Enum):
    NORMAL = "normal"
    THROTTLED = "throttled"


class MemoryController:
    """
    Memory pressure response.

    Level-triggered by default: every cycle above `high_mb` repeats the
    mitigation. With `edge_trigger` it fires once per crossing and re-arms when
    usage falls to `low_mb` or below.
    """

    def __init__(
        self,
        sink: LogSink,
        processes: ProcessTable,
        high_mb: int,
        low_mb: int,
        edge_trigger: bool = False,
        runtime_name: str = "python",
        runtime_limit_mb: int = 1000,
        drop: Callable[[], bool] = drop_caches,
    ):
        self.sink = sink
        self.processes = processes
        self.high_mb = high_mb
        self.low_mb = low_mb
        self.edge_trigger = edge_trigger
        self.runtime_name = runtime_name
        self.runtime_limit_mb = runtime_limit_mb
        self.drop = drop
        self._armed = True

    def check(self, used_mb: Optional[int]) -> bool:
        """Returns True when the mitigation ran this cycle"""
        if used_mb is None:
            return False

        if used_mb <= self.high_mb:
            if used_mb <= self.low_mb:
                self._armed = True
            return False

        if self.edge_trigger and not self._armed:
            return False

        self._armed = False
        self.mitigate(used_mb)
        return True

    def mitigate(self, used_mb: int) -> None:
        self.sink.warning(f"Memory usage high ({used_mb}MB > {self.high_mb}MB), taking action")

        if self.drop():
            self.sink.action("Dropped page cache, dentries and inodes")
        else:
            self.sink.action("Page cache drop not permitted, continuing")

        top = self.processes.top_by_memory(5)
        self.sink.block("Top memory processes:", [p.format() for p in top])

        total_mb, heaviest = self.processes.runtime_group(self.runtime_name)
        if total_mb > self.runtime_limit_mb and heaviest is not None:
            self.sink.warning(
                f"{self.runtime_name} using {total_mb}MB of memory (potential leak)"
            )
            self.sink.write(f"Heaviest {self.runtime_name} process: {heaviest.format()}")
            rss_kb = self.processes.smaps_rss_kb(heaviest.pid)
            detail = f"{rss_kb}" if rss_kb is not None else "Unknown"
            self.sink.write(f"Process {heaviest.pid} memory details: RSS={detail}kB")

        metrics.count_mitigation("memory")


class ThermalController:
    """
    Latched hysteresis for one thermal dimension.

    NORMAL -> THROTTLED when temp > throttle_temp.
    THROTTLED -> NORMAL when temp < throttle_temp - hysteresis and the governor
    is observed in powersave. Temperatures inside the band never change state.
    """

    def __init__(
        self,
        dimension: str,
        sink: LogSink,
        governor: FrequencyGovernor,
        throttle_temp_c: int,
        hysteresis_c: int = 10,
        zone_dump: Optional[Callable[[], List[ThermalZone]]] = None,
        frequency: Optional[Callable[[], Optional[int]]] = None,
    ):
        self.dimension = dimension
        self.sink = sink
        self.governor = governor
        self.throttle_temp_c = throttle_temp_c
        self.hysteresis_c = hysteresis_c
        self.zone_dump = zone_dump
        self.frequency = frequency
        self.state = MitigationState.NORMAL
        self._applied = False
        metrics.set_throttled(dimension, False)

    @property
    def exit_temp_c(self) -> int:
        return self.throttle_temp_c - self.hysteresis_c

    def update(self, temp_c: Optional[int]) -> MitigationState:
        if temp_c is None:
            return self.state

        if temp_c > self.throttle_temp_c:
            if self.state is MitigationState.NORMAL:
                self._enter(temp_c)
            elif self.governor.available and not self.governor.is_powersave():
                # someone else moved the governor while we are still hot
                self._apply_powersave()
        elif (
            self.state is MitigationState.THROTTLED
            and temp_c < self.exit_temp_c
            and self._governor_allows_exit()
        ):
            self._exit(temp_c)

        return self.state

    def _governor_allows_exit(self) -> bool:
        # Nothing to restore when the control file is absent or our write failed.
        if not self.governor.available or not self._applied:
            return True
        return self.governor.is_powersave()

    def _enter(self, temp_c: int) -> None:
        self.sink.warning(
            f"{self.dimension} temperature critical ({temp_c}°C > {self.throttle_temp_c}°C)"
        )
        if self.zone_dump is not None:
            zones = self.zone_dump()
            self.sink.block("All thermal zones:", [f"{z.zone_type}: {z.temp_c}°C" for z in zones])
            self.sink.action(f"Requesting {self.dimension} throttling due to high temperature")

        self._apply_powersave()

        if self.frequency is not None:
            freq = self.frequency()
            if freq is not None:
                self.sink.write(f"Current {self.dimension} frequency: {freq}MHz")

        self.state = MitigationState.THROTTLED
        metrics.set_throttled(self.dimension, True)
        metrics.count_mitigation(self.dimension)
        logger.warning(f"[{self.dimension}] throttled at {temp_c}°C")

    def _apply_powersave(self) -> None:
        if not self.governor.available:
            return
        self._applied = self.governor.throttle()
        if self._applied:
            self.sink.action(f"Set {self.dimension} governor to powersave mode")
        else:
            self.sink.action(f"Could not set {self.dimension} governor to powersave mode")

    def _exit(self, temp_c: int) -> None:
        if self.governor.available and self._applied:
            if self.governor.restore():
                self.sink.action(f"Restored {self.dimension} governor to normal mode")
            else:
                self.sink.action(f"Could not restore {self.dimension} governor to {self.governor.default_mode}")
        self._applied = False
        self.state = MitigationState.NORMAL
        metrics.set_throttled(self.dimension, False)
        logger.info(f"[{self.dimension}] restored at {temp_c}°C")


class UtilizationCheck:
    """Diagnostic-only load check: warns and lists processes, never acts"""

    def __init__(
        self,
        dimension: str,
        sink: LogSink,
        high_pct: int,
        offenders: Callable[[], List[ProcessInfo]],
        title: str,
    ):
        self.dimension = dimension
        self.sink = sink
        self.high_pct = high_pct
        self.offenders = offenders
        self.title = title

    def check(self, usage_pct: Optional[int]) -> bool:
        if usage_pct is None or usage_pct <= self.high_pct:
            return False
        self.sink.warning(f"{self.dimension} usage high ({usage_pct}% > {self.high_pct}%)")
        self.sink.block(self.title, [p.format() for p in self.offenders()])
        return True


class MitigationController:
    """All checks of the primary resource monitor, run in a fixed order per Sample"""

    def __init__(
        self,
        memory: MemoryController,
        gpu_usage: UtilizationCheck,
        gpu_thermal: ThermalController,
        cpu_usage: UtilizationCheck,
        cpu_thermal: ThermalController,
    ):
        self.memory = memory
        self.gpu_usage = gpu_usage
        self.gpu_thermal = gpu_thermal
        self.cpu_usage = cpu_usage
        self.cpu_thermal = cpu_thermal

    @classmethod
    def from_config(
        cls,
        config: GovernorConfig,
        sink: LogSink,
        telemetry: TelemetrySource,
        processes: Optional[ProcessTable] = None,
        drop: Optional[Callable[[], bool]] = None,
    ) -> "MitigationController":
        root = Path(config.sysfs_root)
        processes = processes or ProcessTable(root=config.sysfs_root)

        memory = MemoryController(
            sink,
            processes,
            high_mb=config.memory_high_mb,
            low_mb=config.memory_low_mb,
            edge_trigger=config.memory_edge_trigger,
            runtime_name=config.heavy_runtime_name,
            runtime_limit_mb=config.heavy_runtime_limit_mb,
            drop=drop or (lambda: drop_caches(config.sysfs_root)),
        )
        gpu_thermal = ThermalController(
            "GPU",
            sink,
            FrequencyGovernor("GPU", root / GPU_GOVERNOR, "simple_ondemand"),
            config.gpu_throttle_temp_c,
            config.hysteresis_c,
            zone_dump=telemetry.thermal_zones,
            frequency=telemetry.gpu_frequency,
        )
        cpu_thermal = ThermalController(
            "CPU",
            sink,
            FrequencyGovernor("CPU", root / CPU_GOVERNOR, "ondemand"),
            config.cpu_throttle_temp_c,
            config.hysteresis_c,
        )
        gpu_usage = UtilizationCheck(
            "GPU",
            sink,
            config.gpu_high_pct,
            lambda: processes.matching(GPU_INTENSIVE_PATTERN, limit=3),
            "GPU-intensive processes:",
        )
        cpu_usage = UtilizationCheck(
            "CPU",
            sink,
            config.cpu_high_pct,
            lambda: processes.top_by_cpu(5),
            "CPU-intensive processes:",
        )
        return cls(memory, gpu_usage, gpu_thermal, cpu_usage, cpu_thermal)

    def evaluate(self, sample: Sample) -> None:
        self.memory.check(sample.memory_used_mb)
        self.gpu_usage.check(sample.gpu_load_pct)
        self.gpu_thermal.update(sample.gpu_temp_c)
        self.cpu_usage.check(sample.cpu_busy_pct)
        self.cpu_thermal.update(sample.cpu_temp_c)
