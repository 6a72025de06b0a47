"""
flamefuse Core

Configuration and logging setup.
"""

from flamefuse.core.config import (
    ExportConfig,
    FlameFuseConfig,
    LogLevel,
    SamplingConfig,
    get_config,
    reset_config,
    set_config,
)
from flamefuse.core.log_setup import setup_logging

__all__ = [
    "ExportConfig",
    "FlameFuseConfig",
    "LogLevel",
    "SamplingConfig",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
]
