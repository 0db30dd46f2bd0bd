"""
Edge Governor
Adaptive resource and thermal governor for Jetson-class edge devices
"""

__version__ = "1.0.0"

from .config import ConfigError, GovernorConfig
from .mitigation import MitigationController, MitigationState, ThermalController
from .monitors import build_monitors
from .telemetry import Sample, TelemetrySource

__all__ = [
    "ConfigError",
    "GovernorConfig",
    "MitigationController",
    "MitigationState",
    "Sample",
    "TelemetrySource",
    "ThermalController",
    "build_monitors",
]
