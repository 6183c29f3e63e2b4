"""Configuration models and parser for tether.yaml."""

from tether.config.models import (
    GeneratorConfig,
    StoreConfig,
    StreamConfig,
    TetherConfig,
    UsageConfig,
    WorkspaceConfig,
)
from tether.config.parser import ConfigError, load_config

__all__ = [
    "ConfigError",
    "GeneratorConfig",
    "StoreConfig",
    "StreamConfig",
    "TetherConfig",
    "UsageConfig",
    "WorkspaceConfig",
    "load_config",
]
