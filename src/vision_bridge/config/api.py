"""Public entry points of the configuration system."""

from pathlib import Path
from typing import Any

from vision_bridge.core.exceptions import ConfigurationError

from .resolver import ConfigResolver
from .types import ResolvedConfig

# Shared resolver; it holds no per-call state
_resolver = ConfigResolver()


def resolve_config(
    programmatic: dict[str, Any] | None = None,
    *,
    profile: str | None = None,
    use_env_file: str | Path | None = None,
    project_root: Path | None = None,
) -> ResolvedConfig:
    """Resolve configuration from all sources with proper precedence.

    Precedence: Programmatic > Environment > Project file > Home file > Defaults

    Args:
        programmatic: Overrides with the highest precedence. Unknown fields
            are ignored.
        profile: Profile to load from configuration files. Defaults to
            ``VISION_BRIDGE_PROFILE`` when set.
        use_env_file: Optional .env file loaded before reading the environment.
        project_root: Directory to search upward from for pyproject.toml.

    Returns:
        ResolvedConfig with merged values and source tracking. Call
        ``.to_frozen()`` for the ``BridgeConfig`` the executor takes.

    Raises:
        ConfigurationError: validation failed or a configuration file is
            malformed.

    Example:
        config = resolve_config({"primary_model": "openai/gpt-4o"})
        executor = create_executor(config.to_frozen())
    """
    return _resolver.resolve(
        programmatic=programmatic,
        profile=profile,
        use_env_file=use_env_file,
        project_root=project_root,
    )


def list_available_profiles(project_root: Path | None = None) -> dict[str, list[str]]:
    """Profile names available in the project and home files."""
    return _resolver.list_available_profiles(project_root)


def get_effective_profile() -> str | None:
    return _resolver.get_effective_profile()


def validate_profile(profile: str, project_root: Path | None = None) -> dict[str, bool]:
    """Check that a profile exists in at least one configuration file.

    Raises:
        ConfigurationError: the profile is defined nowhere.
    """
    exists_in_project, exists_in_home = _resolver.validate_profile_exists(
        profile, project_root
    )
    if not exists_in_project and not exists_in_home:
        available = list_available_profiles(project_root)
        all_profiles = available["project"] + available["home"]
        raise ConfigurationError(
            f"Profile '{profile}' not found. Available profiles: {all_profiles}"
        )
    return {"project": exists_in_project, "home": exists_in_home}


def check_environment() -> dict[str, str]:
    """Currently set configuration variables, with secrets redacted."""
    return _resolver.env_loader.get_env_summary()
