"""
Prometheus gauges for the governor. The scrape endpoint is only started when
METRICS_PORT is configured; otherwise the gauges are updated in-process only.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge, start_http_server

from .telemetry import Sample

logger = logging.getLogger(__name__)

memory_used_gauge = Gauge('governor_memory_used_mb', 'Used system memory in MB')
memory_total_gauge = Gauge('governor_memory_total_mb', 'Total system memory in MB')
cpu_busy_gauge = Gauge('governor_cpu_busy_percent', 'CPU busy percentage')
gpu_load_gauge = Gauge('governor_gpu_load_percent', 'GPU load percentage')
gpu_freq_gauge = Gauge('governor_gpu_freq_mhz', 'Current GPU frequency in MHz')
temperature_gauge = Gauge('governor_temperature_celsius', 'Thermal zone temperature', ['zone'])
throttled_gauge = Gauge('governor_throttled', '1 while a dimension is throttled', ['dimension'])
mitigations_total = Counter('governor_mitigations_total', 'Mitigation actions taken', ['dimension'])


def _set(gauge, value: Optional[int]) -> None:
    if value is not None:
        gauge.set(value)


def record_sample(sample: Sample) -> None:
    _set(memory_used_gauge, sample.memory_used_mb)
    _set(memory_total_gauge, sample.memory_total_mb)
    _set(cpu_busy_gauge, sample.cpu_busy_pct)
    _set(gpu_load_gauge, sample.gpu_load_pct)
    _set(gpu_freq_gauge, sample.gpu_freq_mhz)
    _set(temperature_gauge.labels(zone='GPU'), sample.gpu_temp_c)
    _set(temperature_gauge.labels(zone='CPU'), sample.cpu_temp_c)


def set_throttled(dimension: str, throttled: bool) -> None:
    throttled_gauge.labels(dimension=dimension).set(1 if throttled else 0)


def count_mitigation(dimension: str) -> None:
    mitigations_total.labels(dimension=dimension).inc()


def start_exporter(port: Optional[int]) -> bool:
    if not port:
        return False
    try:
        start_http_server(port)
    except OSError as e:
        logger.error(f"Could not start metrics exporter on port {port}: {e}")
        return False
    logger.info(f"Metrics exporter listening on :{port}")
    return True
