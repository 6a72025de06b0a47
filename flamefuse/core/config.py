"""
flamefuse Configuration

Type-safe settings with Pydantic, loaded from environment variables
(prefixed with FLAMEFUSE_, nested sections separated by __) and/or a
JSON file.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for flamefuse."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SamplingConfig(BaseModel):
    """Configuration for the main-context stack sampler."""
    enabled: bool = True
    interval_ms: float = Field(default=10.0, gt=0)
    max_buffer_size: int = Field(default=18000, gt=0)


class ExportConfig(BaseModel):
    """Configuration for profile building and artifact export."""
    main_context_id: str = "main"
    main_track_name: str = "Main Thread"
    worker_track_prefix: str = "web-worker-"
    artifact_name: str = "Performance Profile"
    min_weight_us: float = Field(default=1.0, gt=0)
    nominal_event_duration_us: float = Field(default=100.0, gt=0)


class FlameFuseConfig(BaseSettings):
    """
    Main flamefuse configuration.

    Environment variables are prefixed with FLAMEFUSE_
    (e.g., FLAMEFUSE_RETRIEVAL_TIMEOUT=2.5, FLAMEFUSE_EXPORT__MAIN_TRACK_NAME=UI).
    """

    retrieval_timeout: float = Field(default=5.0, gt=0)
    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = True

    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)

    model_config = {
        "env_prefix": "FLAMEFUSE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept log levels in any case."""
        if isinstance(v, str):
            return v.upper()
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "FlameFuseConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[FlameFuseConfig] = None


def get_config() -> FlameFuseConfig:
    """Get the global flamefuse configuration instance."""
    global _config
    if _config is None:
        _config = FlameFuseConfig()
    return _config


def set_config(config: FlameFuseConfig) -> None:
    """Set the global flamefuse configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
