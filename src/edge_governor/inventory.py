"""
Low-frequency inventory collection.

Runs inside the primary resource monitor's loop but on its own cadence, so the
extended snapshot (kernel, CUDA, disks, memory breakdown) and the accelerator
probe do not add I/O to every sampling cycle.
"""

import os
import time
import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from .logsink import LogSink
from .telemetry import TelemetrySource, read_sysfs

logger = logging.getLogger(__name__)

NVCC = "/usr/local/cuda/bin/nvcc"

ACCELERATOR_NODES = {
    "DLA": ("dev/nvhost-nvdla0", "dev/nvhost-nvdla1"),
    "PVA": ("dev/nvhost-pva0", "dev/nvhost-pva1"),
    "NVENC": ("dev/nvhost-nvenc",),
    "NVDEC": ("dev/nvhost-nvdec",),
}


class CadenceGate:
    """
    Fires at most once per `interval` seconds of the injected clock.
    The first evaluation is always due.
    """

    def __init__(self, interval: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self.last_fired: Optional[float] = None

    def due(self) -> bool:
        if self.last_fired is None:
            return True
        return self.clock() - self.last_fired >= self.interval

    def record(self) -> None:
        self.last_fired = self.clock()


def human_size(num_bytes: float) -> str:
    """Size in the style of df -h / free -h"""
    for unit in ("B", "K", "M", "G", "T"):
        if abs(num_bytes) < 1024 or unit == "T":
            if unit == "B":
                return f"{int(num_bytes)}B"
            return f"{num_bytes:.1f}{unit}"
        num_bytes /= 1024
    return f"{num_bytes:.1f}T"


def memory_breakdown() -> List[str]:
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    buff_cache = getattr(vm, "buffers", 0) + getattr(vm, "cached", 0)
    return [
        f"{'':6}{'total':>9}{'used':>9}{'free':>9}{'shared':>9}{'buff/cache':>12}{'available':>11}",
        f"{'Mem:':6}{human_size(vm.total):>9}{human_size(vm.used):>9}{human_size(vm.free):>9}"
        f"{human_size(getattr(vm, 'shared', 0)):>9}{human_size(buff_cache):>12}{human_size(vm.available):>11}",
        f"{'Swap:':6}{human_size(swap.total):>9}{human_size(swap.used):>9}{human_size(swap.free):>9}",
    ]


class InventoryCollector:
    """Appends an extended system snapshot as one multi-line log entry"""

    def __init__(
        self,
        sink: LogSink,
        telemetry: TelemetrySource,
        gate: CadenceGate,
        disk_paths: Sequence[str] = ("/", "/advantech"),
        nvcc: str = NVCC,
        memory_detail: Callable[[], List[str]] = memory_breakdown,
    ):
        self.sink = sink
        self.telemetry = telemetry
        self.gate = gate
        self.disk_paths = list(disk_paths)
        self.nvcc = nvcc
        self.memory_detail = memory_detail

    def collect_if_due(self) -> bool:
        if not self.gate.due():
            return False
        self.collect()
        self.gate.record()
        return True

    def collect(self) -> None:
        lines = ["Kernel version:", f"  {self._kernel()}"]

        model = self._device_model()
        if model:
            lines += ["Device model:", f"  {model}"]

        release = self._l4t_release()
        if release:
            lines += ["L4T release:", f"  {release}"]

        cuda = self._cuda_version()
        if cuda:
            lines += ["CUDA version:"] + [f"  {line}" for line in cuda]

        lines.append("Disk usage:")
        for path in self.disk_paths:
            disk = self.telemetry.disk_usage(path)
            if disk is None:
                lines.append(f"  {path}: unavailable")
            else:
                lines.append(
                    f"  {path}: {human_size(disk.used_bytes)}/{human_size(disk.total_bytes)} "
                    f"({disk.percent:.1f}%)"
                )

        lines.append("Detailed memory info:")
        try:
            lines += [f"  {line}" for line in self.memory_detail()]
        except (OSError, psutil.Error) as e:
            lines.append(f"  unavailable ({e})")

        self.sink.block("Collecting detailed system information...", lines, indent="")
        logger.info("Inventory snapshot written")

    @staticmethod
    def _kernel() -> str:
        u = os.uname()
        return f"{u.sysname} {u.nodename} {u.release} {u.version} {u.machine}"

    def _device_model(self) -> Optional[str]:
        raw = read_sysfs(self.telemetry.path("proc/device-tree/model"))
        if not raw:
            return None
        return raw.replace("\x00", " ").strip()

    def _l4t_release(self) -> Optional[str]:
        raw = read_sysfs(self.telemetry.path("etc/nv_tegra_release"))
        if not raw:
            return None
        return raw.splitlines()[0].strip()

    def _cuda_version(self) -> Optional[List[str]]:
        if not Path(self.nvcc).is_file():
            return None
        try:
            result = subprocess.run(
                [self.nvcc, "--version"], capture_output=True, text=True, timeout=10
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"nvcc --version failed: {e}")
            return None
        return result.stdout.splitlines()[:3]


class AcceleratorProbe:
    """Logs which Jetson hardware accelerators expose device nodes"""

    def __init__(self, sink: LogSink, gate: CadenceGate, root: str = "/"):
        self.sink = sink
        self.gate = gate
        self.root = Path(root)

    def available(self) -> List[str]:
        return [
            name for name, nodes in ACCELERATOR_NODES.items()
            if any((self.root / node).exists() for node in nodes)
        ]

    def probe_if_due(self) -> Optional[List[str]]:
        if not self.gate.due():
            return None
        found = self.available()
        for name in found:
            self.sink.write(f"{name} status: Available")
        self.gate.record()
        return found
