"""Environment variable configuration loading.

Reads ``VISION_BRIDGE_*`` variables, the legacy ``OPENROUTER_API_KEY``, and
optionally a ``.env`` file, returning only the fields actually set.
"""

import os
from pathlib import Path
from typing import Any

from vision_bridge.core.exceptions import ConfigurationError

from .schema import BridgeSettings

ENV_PREFIX = "VISION_BRIDGE_"
LEGACY_API_KEY_ENV = "OPENROUTER_API_KEY"


def env_var_map() -> dict[str, str]:
    """Environment variable name for each settings field."""
    return {
        f"{ENV_PREFIX}{name.upper()}": name for name in BridgeSettings.model_fields
    }


class EnvironmentConfigLoader:
    """Loads configuration from environment variables."""

    def load_env_config(self, env_file: str | Path | None = None) -> dict[str, Any]:
        """Load configuration values that are set in the environment.

        Args:
            env_file: Optional .env file loaded first. Variables already in
                the environment are not overridden.

        Returns:
            Raw string values for the fields that were set; defaults are
            omitted. Coercion happens when the merged configuration is
            validated, so cross-field rules see every source.

        Raises:
            ConfigurationError: the .env file is missing or malformed.
        """
        if env_file:
            self._load_env_file(env_file)

        mapping = env_var_map()
        env_values: dict[str, Any] = {
            field_name: os.environ[env_var]
            for env_var, field_name in mapping.items()
            if env_var in os.environ
        }
        if "api_key" not in env_values and os.environ.get(LEGACY_API_KEY_ENV):
            env_values["api_key"] = os.environ[LEGACY_API_KEY_ENV]

        return env_values

    def _load_env_file(self, env_file: str | Path) -> None:
        env_path = Path(env_file)
        if not env_path.exists():
            raise ConfigurationError(f"Environment file not found: {env_path}")

        try:
            lines = env_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise ConfigurationError(
                f"Failed to read environment file {env_path}: {e}"
            ) from e

        for line_num, raw_line in enumerate(lines, 1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                raise ConfigurationError(
                    f"Invalid format at line {line_num}: {line}. "
                    "Expected KEY=VALUE format."
                )
            key, value = (part.strip() for part in line.split("=", 1))
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            if key not in os.environ:
                os.environ[key] = value

    def get_env_summary(self) -> dict[str, str]:
        """Currently set configuration variables, with secrets redacted."""
        names = [*env_var_map(), LEGACY_API_KEY_ENV]
        return {
            name: "<redacted>" if "API_KEY" in name else os.environ[name]
            for name in names
            if name in os.environ
        }
