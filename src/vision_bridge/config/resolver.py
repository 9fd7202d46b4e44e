"""Configuration resolution with precedence handling.

Merges configuration from every source in the documented order:
Programmatic > Environment > Project file > Home file > Defaults
"""

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vision_bridge.core.exceptions import ConfigurationError

from .audit import SourceTracker, summarize_origins
from .env_loader import EnvironmentConfigLoader
from .file_loader import ConfigFileError, FileConfigLoader
from .schema import BridgeSettings, default_values
from .types import ConfigOrigin, ResolvedConfig, resolved_from_values

log = logging.getLogger(__name__)

PROFILE_ENV = "VISION_BRIDGE_PROFILE"


class ConfigResolver:
    """Resolves configuration from multiple sources with proper precedence."""

    def __init__(
        self,
        file_loader: FileConfigLoader | None = None,
        env_loader: EnvironmentConfigLoader | None = None,
    ) -> None:
        self.file_loader = file_loader or FileConfigLoader()
        self.env_loader = env_loader or EnvironmentConfigLoader()

    def resolve(
        self,
        programmatic: dict[str, Any] | None = None,
        *,
        profile: str | None = None,
        use_env_file: str | Path | None = None,
        project_root: Path | None = None,
    ) -> ResolvedConfig:
        """Resolve configuration from all sources.

        Raises:
            ConfigurationError: validation failed, the environment is invalid,
                or the project file is malformed.
        """
        tracker = SourceTracker()
        merged: dict[str, Any] = {}

        if profile is None:
            profile = self.get_effective_profile()

        def apply(values: dict[str, Any], origin: ConfigOrigin) -> None:
            for field, value in values.items():
                if field in merged:  # Only override known fields
                    merged[field] = value
                    tracker.set_origin(field, origin)
                else:
                    log.debug("Ignoring unknown config field %r from %s", field, origin)

        # Step 1: schema defaults
        for field, value in default_values().items():
            merged[field] = value
            tracker.set_origin(field, "default")

        # Step 2: home file; a broken home file never blocks resolution
        try:
            apply(self.file_loader.load_home_config(profile=profile), "file")
        except ConfigFileError as e:
            log.warning("Skipping home configuration: %s", e)

        # Step 3: project file; base-section errors are fatal, a profile
        # missing from the project file is not
        try:
            apply(
                self.file_loader.load_project_config(
                    project_root=project_root, profile=profile
                ),
                "file",
            )
        except ConfigFileError:
            if profile is None:
                raise
            log.debug("Profile %r not available in project configuration", profile)

        # Step 4: environment
        apply(self.env_loader.load_env_config(env_file=use_env_file), "env")

        # Step 5: programmatic overrides
        if programmatic:
            apply(dict(programmatic), "programmatic")

        # Step 6: validate the merged result
        try:
            settings = BridgeSettings.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        source_map = tracker.get_source_map()
        log.debug("Configuration resolved: %s", summarize_origins(source_map))
        return resolved_from_values(settings.to_dict(), source_map)

    def validate_profile_exists(
        self, profile: str, project_root: Path | None = None
    ) -> tuple[bool, bool]:
        """Return ``(exists_in_project, exists_in_home)`` for a profile."""
        available = self.file_loader.list_available_profiles(project_root)
        return profile in available["project"], profile in available["home"]

    def get_effective_profile(self) -> str | None:
        return os.getenv(PROFILE_ENV) or None

    def list_available_profiles(
        self, project_root: Path | None = None
    ) -> dict[str, list[str]]:
        return self.file_loader.list_available_profiles(project_root)
