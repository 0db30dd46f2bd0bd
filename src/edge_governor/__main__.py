#!/usr/bin/env python3
"""
Edge Governor - command line entry point

    edge-governor run                 # all monitors in one process
    edge-governor resource-manager    # primary monitor only
    edge-governor gpu-monitor         # GPU monitor only
    edge-governor resource-monitor    # stats stream only
    edge-governor check-config        # validate and print the effective config
    edge-governor throttle-cpu [PID]  # renice a process (default: this one) to 10
    edge-governor clear-memory        # sync and drop the page cache once

The monitor commands run until the process is signalled. There is no drain: monitors are daemon
threads and end with the process.
"""

import os
import sys
import json
import signal
import logging
import argparse
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from . import __version__, metrics
from .actions import drop_caches, reduce_priority
from .config import ConfigError, GovernorConfig
from .monitors import MONITOR_NAMES, build_monitors
from .telemetry import TelemetrySource

logger = logging.getLogger("edge_governor")

DIAGNOSTIC_LOG = "governor.log"

TOOL_COMMANDS = ["throttle-cpu", "clear-memory"]


def configure_logging(log_dir: str, level: str = "INFO") -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.insert(0, RotatingFileHandler(
            Path(log_dir) / DIAGNOSTIC_LOG,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        ))
    except OSError as e:
        print(f"Diagnostic log unavailable in {log_dir}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="edge-governor",
        description="Adaptive resource and thermal governor for Jetson-class devices",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "check-config", *MONITOR_NAMES, *TOOL_COMMANDS],
        help="What to run (default: run all monitors)",
    )
    parser.add_argument("pid", nargs="?", type=int, help="Target process for throttle-cpu (default: this process)")
    parser.add_argument("--interval", type=float, help="Sampling interval override for a single monitor")
    parser.add_argument("--log-dir", help="Directory for the monitor logs (default: $LOG_DIR or /advantech/logs)")
    args = parser.parse_args(argv)
    if args.pid is not None and args.command != "throttle-cpu":
        parser.error("a PID is only accepted by throttle-cpu")
    return args


def throttle_cpu(pid: Optional[int]) -> int:
    pid = pid if pid is not None else os.getpid()
    print("Throttling CPU to prioritize GPU processing...")
    if not reduce_priority(pid):
        print(f"Could not reduce CPU priority of process {pid}", file=sys.stderr)
        return 1
    print(f"Process {pid} now has reduced CPU priority")
    return 0


def clear_memory(config: GovernorConfig) -> int:
    print("Clearing memory caches and buffers...")
    if not drop_caches(config.sysfs_root):
        print("Could not drop caches (root privileges required)", file=sys.stderr)
        return 1
    print("Memory cleared. Current memory status:")
    memory = TelemetrySource(config.sysfs_root).memory()
    if memory is None:
        print("  unavailable")
    else:
        print(f"  used={memory.used_mb}MB total={memory.total_mb}MB available={memory.available_mb}MB")
    return 0


def main(argv: Optional[List[str]] = None, stop_event: Optional[threading.Event] = None) -> int:
    args = parse_args(argv)

    try:
        config = GovernorConfig.from_env(log_dir=args.log_dir)
    except ConfigError as e:
        print(f"edge-governor: {e}", file=sys.stderr)
        return 2

    if args.command == "check-config":
        print(json.dumps(config.summary(), indent=2))
        return 0
    if args.command == "throttle-cpu":
        return throttle_cpu(args.pid)
    if args.command == "clear-memory":
        return clear_memory(config)

    configure_logging(config.log_dir, os.environ.get("GOVERNOR_LOG_LEVEL", "INFO"))

    if args.command == "run":
        names = None
        interval = None
    else:
        names = [args.command]
        # A monitor run on its own reads the shared INTERVAL variable
        interval = args.interval
        if interval is None and os.environ.get("INTERVAL"):
            interval = config.sample_interval_s

    try:
        monitors = build_monitors(config, names, interval)
    except OSError as e:
        logger.error(f"Cannot open monitor logs in {config.log_dir}: {e}")
        return 1

    metrics.start_exporter(config.metrics_port)

    stop_event = stop_event or threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, exiting")
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    logger.info(f"Edge governor {__version__} starting: {', '.join(m.name for m in monitors)}")
    for monitor in monitors:
        monitor.start()

    stop_event.wait()

    for monitor in monitors:
        monitor.stop(timeout=0.5)
        monitor.sink.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
