"""
Governor configuration

Threshold and cadence settings, read once from the environment at startup.
Invalid combinations are rejected before any monitor starts.
"""

import os
import logging
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the governor configuration is unusable"""


# env var -> field name
ENV_FIELDS = {
    "INTERVAL": "sample_interval_s",
    "GPU_INTERVAL": "gpu_interval_s",
    "RESOURCE_MONITOR_INTERVAL": "stats_interval_s",
    "INVENTORY_INTERVAL": "inventory_interval_s",
    "MEMORY_HIGH": "memory_high_mb",
    "MEMORY_LOW": "memory_low_mb",
    "GPU_HIGH": "gpu_high_pct",
    "CPU_HIGH": "cpu_high_pct",
    "GPU_THROTTLE_TEMP": "gpu_throttle_temp_c",
    "CPU_THROTTLE_TEMP": "cpu_throttle_temp_c",
    "MEMORY_EDGE_TRIGGER": "memory_edge_trigger",
    "HEAVY_RUNTIME": "heavy_runtime_name",
    "HEAVY_RUNTIME_LIMIT": "heavy_runtime_limit_mb",
    "GPU_LOAD_PERMILLE": "gpu_load_per_mille",
    "LOG_DIR": "log_dir",
    "SYSFS_ROOT": "sysfs_root",
    "ENABLE_RESOURCE_MONITORING": "enable_resource_monitoring",
    "METRICS_PORT": "metrics_port",
}


class GovernorConfig(BaseModel):
    """Thresholds and intervals, immutable for the lifetime of the process"""

    model_config = ConfigDict(frozen=True, extra="forbid")

    memory_high_mb: int = Field(6000, gt=0)
    memory_low_mb: int = Field(3000, ge=0)
    gpu_high_pct: int = Field(85, ge=0, le=100)
    cpu_high_pct: int = Field(85, ge=0, le=100)
    gpu_throttle_temp_c: int = 80
    cpu_throttle_temp_c: int = 85
    hysteresis_c: int = Field(10, gt=0)

    sample_interval_s: float = Field(5.0, gt=0)
    gpu_interval_s: float = Field(2.0, gt=0)
    stats_interval_s: float = Field(30.0, gt=0)
    inventory_interval_s: float = Field(3600.0, gt=0)
    accelerator_interval_s: float = Field(60.0, gt=0)

    memory_edge_trigger: bool = False
    heavy_runtime_name: str = "python"
    heavy_runtime_limit_mb: int = Field(1000, ge=0)
    gpu_load_per_mille: bool = False

    log_dir: str = "/advantech/logs"
    sysfs_root: str = "/"
    disk_paths: List[str] = Field(default_factory=lambda: ["/", "/advantech"])
    enable_resource_monitoring: bool = True
    metrics_port: Optional[int] = Field(None, gt=0, lt=65536)

    @model_validator(mode="after")
    def _check_memory_band(self):
        if self.memory_low_mb >= self.memory_high_mb:
            raise ValueError(
                f"MEMORY_LOW ({self.memory_low_mb}MB) must be below "
                f"MEMORY_HIGH ({self.memory_high_mb}MB)"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GovernorConfig":
        """
        Build configuration from environment variables

        Args:
            environ: Mapping to read from (default: os.environ)
            **overrides: Field values that win over the environment

        Returns:
            Validated GovernorConfig

        Raises:
            ConfigError: If a value is malformed or the thresholds are inconsistent
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        for env_name, field_name in ENV_FIELDS.items():
            raw = environ.get(env_name)
            if raw is None or raw.strip() == "":
                continue
            values[field_name] = _parse_bool(raw) if _is_bool_field(field_name) else raw.strip()

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(_describe(e)) from e

    def summary(self) -> Dict[str, object]:
        return self.model_dump()


def _is_bool_field(field_name: str) -> bool:
    return GovernorConfig.model_fields[field_name].annotation is bool


def _parse_bool(raw: str):
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    # let pydantic report it
    return raw


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "config"
        parts.append(f"{loc}: {item.get('msg')}")
    return "Invalid governor configuration - " + "; ".join(parts)
