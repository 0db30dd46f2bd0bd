"""
Telemetry Source Adapter

Read-only accessors for memory, CPU, GPU and thermal counters on a Jetson-class
device. Every accessor returns None when its source is missing or unreadable;
a host without a GPU or without thermal zones is a normal configuration.
"""

import re
import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024

GPU_LOAD = "sys/devices/gpu.0/load"
GPU_CUR_FREQ = "sys/devices/gpu.0/devfreq/gpu.0/cur_freq"
GPU_GOVERNOR = "sys/devices/gpu.0/devfreq/gpu.0/governor"
CPU_GOVERNOR = "sys/devices/system/cpu/cpu0/cpufreq/scaling_governor"
THERMAL_DIR = "sys/devices/virtual/thermal"


@dataclass(frozen=True)
class MemoryReading:
    """System memory in MB"""
    used_mb: int
    total_mb: int
    available_mb: int

    @property
    def percent(self) -> int:
        if self.total_mb <= 0:
            return 0
        return self.used_mb * 100 // self.total_mb


@dataclass(frozen=True)
class ThermalZone:
    name: str
    zone_type: str
    temp_c: int


@dataclass(frozen=True)
class DiskReading:
    path: str
    used_bytes: int
    total_bytes: int
    percent: float


@dataclass(frozen=True)
class Sample:
    """Point-in-time reading. Fields are None when the source is unavailable."""
    timestamp: float
    memory_used_mb: Optional[int]
    memory_total_mb: Optional[int]
    cpu_busy_pct: Optional[int]
    gpu_load_pct: Optional[int]
    gpu_freq_mhz: Optional[int]
    gpu_temp_c: Optional[int]
    cpu_temp_c: Optional[int]

    @property
    def memory_pct(self) -> Optional[int]:
        if self.memory_used_mb is None or not self.memory_total_mb:
            return None
        return self.memory_used_mb * 100 // self.memory_total_mb


def milli_to_unit(raw: int) -> int:
    """Divide a milli-unit reading by 1000, discarding the remainder"""
    return int(raw / 1000)


def clamp_percent(value: float) -> int:
    """Truncate to int and clamp to [0, 100]"""
    return max(0, min(100, int(value)))


def read_sysfs(path: Path) -> Optional[str]:
    """Read a pseudo-file, returning None if it is absent or unreadable"""
    try:
        return path.read_text().strip()
    except (OSError, UnicodeDecodeError):
        return None


def read_sysfs_int(path: Path) -> Optional[int]:
    raw = read_sysfs(path)
    if raw is None:
        return None
    try:
        return int(raw.split()[0])
    except (ValueError, IndexError):
        logger.debug(f"Unparseable counter in {path}: {raw!r}")
        return None


def _cpu_total_idle(times) -> Tuple[float, float]:
    # guest time is already counted in user on Linux
    total = sum(times) - getattr(times, "guest", 0) - getattr(times, "guest_nice", 0)
    idle = times.idle + getattr(times, "iowait", 0)
    return total, idle


def _zone_index(path: Path) -> Tuple[int, str]:
    match = re.search(r"(\d+)$", path.name)
    return (int(match.group(1)) if match else -1, path.name)


class TelemetrySource:
    """
    Reads raw counters from the operating environment.

    Memory and CPU come from psutil. GPU load, GPU frequency and thermal zones
    come from sysfs below `root`, which tests point at a fake tree.
    """

    def __init__(self, root: str = "/", gpu_load_per_mille: bool = False, clock=time.time):
        self.root = Path(root)
        self.gpu_load_per_mille = gpu_load_per_mille
        self.clock = clock
        # per-instance baseline; psutil.cpu_percent(None) shares one across callers
        self._last_cpu_times = None

    def path(self, relative: str) -> Path:
        return self.root / relative

    def memory(self) -> Optional[MemoryReading]:
        try:
            vm = psutil.virtual_memory()
        except Exception as e:
            logger.debug(f"Memory counters unavailable: {e}")
            return None
        return MemoryReading(
            used_mb=int(vm.used // MB),
            total_mb=int(vm.total // MB),
            available_mb=int(vm.available // MB),
        )

    def cpu_busy_percent(self) -> Optional[int]:
        """
        CPU busy time since the previous call on this instance, as a truncated
        percentage. The first call reports the average since boot.
        """
        try:
            times = psutil.cpu_times()
        except Exception as e:
            logger.debug(f"CPU counters unavailable: {e}")
            return None

        previous, self._last_cpu_times = self._last_cpu_times, times
        total, idle = _cpu_total_idle(times)
        if previous is not None:
            prev_total, prev_idle = _cpu_total_idle(previous)
            total -= prev_total
            idle -= prev_idle
        if total <= 0:
            return 0
        return clamp_percent((total - idle) * 100 / total)

    def gpu_load(self) -> Optional[int]:
        raw = read_sysfs_int(self.path(GPU_LOAD))
        if raw is None:
            return None
        if self.gpu_load_per_mille:
            return clamp_percent(raw / 10)
        return clamp_percent(raw)

    def gpu_frequency(self) -> Optional[int]:
        """Current GPU clock in MHz"""
        raw = read_sysfs_int(self.path(GPU_CUR_FREQ))
        if raw is None:
            return None
        return int(raw / 1_000_000)

    def thermal_zones(self) -> List[ThermalZone]:
        """All readable thermal zones, in zone order"""
        base = self.path(THERMAL_DIR)
        try:
            candidates = sorted(base.glob("thermal_zone*"), key=_zone_index)
        except OSError:
            return []

        zones = []
        for zone_dir in candidates:
            zone_type = read_sysfs(zone_dir / "type")
            raw_temp = read_sysfs_int(zone_dir / "temp")
            if zone_type is None or raw_temp is None:
                continue
            zones.append(ThermalZone(zone_dir.name, zone_type, milli_to_unit(raw_temp)))
        return zones

    def thermal_zone(self, kind: str) -> Optional[int]:
        """Temperature of the first zone whose type mentions `kind` (e.g. "GPU")"""
        for zone in self.thermal_zones():
            if kind in zone.zone_type:
                return zone.temp_c
        return None

    def disk_usage(self, path: str) -> Optional[DiskReading]:
        try:
            usage = psutil.disk_usage(path)
        except (OSError, ValueError) as e:
            logger.debug(f"Disk usage unavailable for {path}: {e}")
            return None
        return DiskReading(path, usage.used, usage.total, usage.percent)

    def sample(self) -> Sample:
        """Collect one Sample; unavailable sources leave their fields as None"""
        memory = self.memory()
        return Sample(
            timestamp=self.clock(),
            memory_used_mb=memory.used_mb if memory else None,
            memory_total_mb=memory.total_mb if memory else None,
            cpu_busy_pct=self.cpu_busy_percent(),
            gpu_load_pct=self.gpu_load(),
            gpu_freq_mhz=self.gpu_frequency(),
            gpu_temp_c=self.thermal_zone("GPU"),
            cpu_temp_c=self.thermal_zone("CPU"),
        )
