"""File-based configuration loading with profile support.

Reads ``[tool.vision_bridge]`` from the nearest pyproject.toml and the home
file ``~/.config/vision_bridge.toml``. Both accept named profiles under a
``profiles`` table.
"""

import os
from pathlib import Path
import tomllib
from typing import Any

from vision_bridge.core.exceptions import ConfigurationError

HOME_CONFIG_ENV = "VISION_BRIDGE_CONFIG_HOME"
TOOL_SECTION = "vision_bridge"


class ConfigFileError(ConfigurationError):
    """Raised when a configuration file cannot be loaded."""

    def __init__(
        self, file_path: Path, message: str, cause: Exception | None = None
    ) -> None:
        self.file_path = file_path
        self.message = message
        self.cause = cause
        super().__init__(f"Config file error in {file_path}: {message}")


class FileConfigLoader:
    """Loads configuration from TOML files with profile support."""

    def load_project_config(
        self, project_root: Path | None = None, profile: str | None = None
    ) -> dict[str, Any]:
        """Load ``[tool.vision_bridge]`` (or one of its profiles) from pyproject.toml.

        Returns:
            The configured values; empty when there is no file or section.

        Raises:
            ConfigFileError: the file exists but cannot be parsed, or the
                requested profile is missing.
        """
        pyproject_path = self._find_pyproject_toml(project_root)
        if not pyproject_path:
            return {}

        data = self._read_toml(pyproject_path)
        section = data.get("tool", {}).get(TOOL_SECTION, {})
        if not section:
            return {}
        return self._select_profile(pyproject_path, section, profile)

    def load_home_config(self, profile: str | None = None) -> dict[str, Any]:
        """Load the home configuration file (or one of its profiles).

        Raises:
            ConfigFileError: the file exists but cannot be parsed, or the
                requested profile is missing.
        """
        home_config_path = self.home_config_path()
        if not home_config_path.exists():
            return {}
        data = self._read_toml(home_config_path)
        return self._select_profile(home_config_path, data, profile)

    def list_available_profiles(
        self, project_root: Path | None = None
    ) -> dict[str, list[str]]:
        """Profile names found in the project and home files."""
        profiles: dict[str, list[str]] = {"project": [], "home": []}

        pyproject_path = self._find_pyproject_toml(project_root)
        if pyproject_path:
            try:
                data = self._read_toml(pyproject_path)
            except ConfigFileError:
                data = {}
            section = data.get("tool", {}).get(TOOL_SECTION, {})
            profiles["project"] = list(section.get("profiles", {}).keys())

        home_config_path = self.home_config_path()
        if home_config_path.exists():
            try:
                data = self._read_toml(home_config_path)
            except ConfigFileError:
                data = {}
            profiles["home"] = list(data.get("profiles", {}).keys())

        return profiles

    def home_config_path(self) -> Path:
        """``$VISION_BRIDGE_CONFIG_HOME`` when set, else ~/.config/vision_bridge.toml."""
        override = os.environ.get(HOME_CONFIG_ENV)
        if override:
            return Path(override).expanduser()
        return Path.home() / ".config" / "vision_bridge.toml"

    # --- Internals ---

    @staticmethod
    def _read_toml(path: Path) -> dict[str, Any]:
        try:
            with path.open(mode="rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigFileError(path, f"Failed to parse TOML: {e}", cause=e) from e

    @staticmethod
    def _select_profile(
        path: Path, section: dict[str, Any], profile: str | None
    ) -> dict[str, Any]:
        if profile:
            profiles = section.get("profiles", {})
            if profile not in profiles:
                available = list(profiles.keys()) if profiles else []
                raise ConfigFileError(
                    path,
                    f"Profile '{profile}' not found. Available profiles: {available}",
                )
            return dict(profiles[profile])
        config = dict(section)
        config.pop("profiles", None)
        return config

    @staticmethod
    def _find_pyproject_toml(start_dir: Path | None = None) -> Path | None:
        current = Path(start_dir or Path.cwd()).resolve()
        while True:
            candidate = current / "pyproject.toml"
            if candidate.exists():
                return candidate
            if current == current.parent:
                return None
            current = current.parent
