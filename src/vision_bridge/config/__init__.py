"""Configuration for the vision bridge.

Resolve once, freeze, then flow: ``resolve_config()`` merges every source
into a ``ResolvedConfig`` with audit metadata, and ``to_frozen()`` turns it
into the immutable ``BridgeConfig`` the executor is built from.
"""

from .api import (
    check_environment,
    get_effective_profile,
    list_available_profiles,
    resolve_config,
    validate_profile,
)
from .audit import SourceTracker, summarize_origins
from .env_loader import EnvironmentConfigLoader
from .file_loader import ConfigFileError, FileConfigLoader
from .resolver import ConfigResolver
from .schema import BridgeSettings
from .types import BridgeConfig, ConfigOrigin, ResolvedConfig, SourceMap

__all__ = [
    "BridgeConfig",
    "BridgeSettings",
    "ConfigFileError",
    "ConfigOrigin",
    "ConfigResolver",
    "EnvironmentConfigLoader",
    "FileConfigLoader",
    "ResolvedConfig",
    "SourceMap",
    "SourceTracker",
    "check_environment",
    "get_effective_profile",
    "list_available_profiles",
    "resolve_config",
    "summarize_origins",
    "validate_profile",
]
