"""Typed configuration and its layered loader."""

from flotilla.config.loader import load_config, resolve_layout
from flotilla.config.schema import (
    AgentConfig,
    BridgeConfig,
    FlotillaConfig,
    GitConfig,
    IdsConfig,
    PathsConfig,
    SandboxConfig,
    StoreConfig,
)

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "FlotillaConfig",
    "GitConfig",
    "IdsConfig",
    "PathsConfig",
    "SandboxConfig",
    "StoreConfig",
    "load_config",
    "resolve_layout",
]
