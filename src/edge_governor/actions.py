"""
System interface used by the mitigation controllers.

Frequency governor control files, page cache eviction, process priority
reduction and process table snapshots. Writes are best-effort: a failed write is logged and reported to the
caller as False, never raised and never retried.
"""

import os
import re
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import psutil

from .telemetry import MB, read_sysfs

logger = logging.getLogger(__name__)

POWERSAVE = "powersave"
DROP_CACHES = "proc/sys/vm/drop_caches"

GPU_INTENSIVE_PATTERN = r"deepstream|yolo|tensorflow|python|inference"


class FrequencyGovernor:
    """One frequency-governor control file (GPU devfreq or CPU cpufreq)"""

    def __init__(self, name: str, path: Path, default_mode: str):
        self.name = name
        self.path = Path(path)
        self.default_mode = default_mode

    @property
    def available(self) -> bool:
        return self.path.is_file()

    def read(self) -> Optional[str]:
        """Current mode, or None if the control file is absent"""
        return read_sysfs(self.path)

    def is_powersave(self) -> bool:
        return self.read() == POWERSAVE

    def write(self, mode: str) -> bool:
        if not self.available:
            logger.debug(f"[{self.name} governor] {self.path} not present, skipping")
            return False
        try:
            self.path.write_text(mode)
            logger.info(f"[{self.name} governor] set to {mode}")
            return True
        except OSError as e:
            logger.warning(f"[{self.name} governor] could not set {mode}: {e}")
            return False

    def throttle(self) -> bool:
        return self.write(POWERSAVE)

    def restore(self) -> bool:
        return self.write(self.default_mode)


def drop_caches(root: str = "/") -> bool:
    """Flush dirty pages and drop the page cache, dentries and inodes"""
    try:
        os.sync()
    except OSError as e:
        logger.debug(f"sync failed: {e}")

    target = Path(root) / DROP_CACHES
    try:
        with open(target, "w") as f:
            f.write("3")
        return True
    except OSError as e:
        logger.warning(f"Could not drop caches via {target}: {e}")
        return False


def reduce_priority(pid: int, niceness: int = 10) -> bool:
    """
    Lower the CPU scheduling priority of a process

    A process that is already nicer than `niceness` is left alone, so this
    never raises a priority.

    Returns:
        True if the process now runs at `niceness` or nicer
    """
    try:
        proc = psutil.Process(pid)
        current = proc.nice()
        if current < niceness:
            proc.nice(niceness)
            current = niceness
    except (psutil.Error, OSError) as e:
        logger.warning(f"Could not reduce priority of process {pid}: {e}")
        return False
    logger.info(f"Process {pid} running at niceness {current}")
    return True


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    user: str
    rss_mb: int
    mem_pct: float
    cpu_pct: float
    cmdline: str = ""

    def format(self) -> str:
        command = self.cmdline or self.name
        return (
            f"{self.pid:>7} {self.user[:12]:<12} {self.cpu_pct:5.1f}%cpu "
            f"{self.mem_pct:5.1f}%mem {self.rss_mb:>7}MB {command[:120]}"
        )


def psutil_processes() -> List[ProcessInfo]:
    """Snapshot of the process table. Processes that vanish mid-scan are skipped."""
    snapshot = []
    attrs = ["pid", "name", "username", "memory_info", "memory_percent", "cpu_percent", "cmdline"]
    for proc in psutil.process_iter(attrs):
        info = proc.info
        memory_info = info.get("memory_info")
        if memory_info is None:
            continue
        snapshot.append(ProcessInfo(
            pid=info["pid"],
            name=info.get("name") or "",
            user=info.get("username") or "?",
            rss_mb=int(memory_info.rss // MB),
            mem_pct=float(info.get("memory_percent") or 0.0),
            cpu_pct=float(info.get("cpu_percent") or 0.0),
            cmdline=" ".join(info.get("cmdline") or []),
        ))
    return snapshot


class ProcessTable:
    """Ranked views over a process snapshot"""

    def __init__(self, provider: Callable[[], List[ProcessInfo]] = psutil_processes, root: str = "/"):
        self.provider = provider
        self.root = Path(root)

    def _snapshot(self) -> List[ProcessInfo]:
        try:
            return self.provider()
        except (psutil.Error, OSError) as e:
            logger.warning(f"Process table unavailable: {e}")
            return []

    def top_by_memory(self, limit: int = 5) -> List[ProcessInfo]:
        return sorted(self._snapshot(), key=lambda p: p.rss_mb, reverse=True)[:limit]

    def top_by_cpu(self, limit: int = 5) -> List[ProcessInfo]:
        return sorted(self._snapshot(), key=lambda p: p.cpu_pct, reverse=True)[:limit]

    def matching(self, pattern: str, limit: int = 3) -> List[ProcessInfo]:
        regex = re.compile(pattern)
        hits = [p for p in self._snapshot() if regex.search(p.name) or regex.search(p.cmdline)]
        return hits[:limit]

    def runtime_group(self, name: str) -> Tuple[int, Optional[ProcessInfo]]:
        """
        Aggregate resident memory of processes whose name or command line
        contains `name`

        Returns:
            (total RSS in MB, heaviest matching process or None)
        """
        group = [p for p in self._snapshot() if name in p.name or name in p.cmdline]
        if not group:
            return 0, None
        heaviest = max(group, key=lambda p: p.rss_mb)
        return sum(p.rss_mb for p in group), heaviest

    def smaps_rss_kb(self, pid: int) -> Optional[int]:
        """Rss from /proc/<pid>/smaps_rollup in kB"""
        content = read_sysfs(self.root / "proc" / str(pid) / "smaps_rollup")
        if content is None:
            return None
        for line in content.splitlines():
            if line.lower().startswith("rss:"):
                try:
                    return int(line.split()[1])
                except (ValueError, IndexError):
                    return None
        return None
