"""Unit tests for configuration resolution.

These tests verify the core behaviors of the configuration module:
- Precedence: programmatic > environment > project file > home file > defaults.
- Profiles selected explicitly or through VISION_BRIDGE_PROFILE.
- Validation failures surface as ConfigurationError.
- Secrets never appear in string forms or audit output.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from vision_bridge.config import (
    BridgeConfig,
    ConfigFileError,
    FileConfigLoader,
    check_environment,
    list_available_profiles,
    resolve_config,
    summarize_origins,
    validate_profile,
)
from vision_bridge.config.schema import default_values
from vision_bridge.constants import DEFAULT_PRIMARY_MODEL
from vision_bridge.core.exceptions import ConfigurationError
from vision_bridge.executor import create_executor
from vision_bridge.pipeline.circuit_breaker import BreakerPolicy
from vision_bridge.pipeline.classification import RetryPolicy

pytestmark = pytest.mark.unit


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


def _write_project(root: Path, body: str) -> None:
    (root / "pyproject.toml").write_text(body, encoding="utf-8")


def _write_home(body: str) -> Path:
    path = FileConfigLoader().home_config_path()
    path.write_text(body, encoding="utf-8")
    return path


class TestDefaultsAndEnvironment:
    def test_defaults_when_nothing_is_configured(self, project):
        resolved = resolve_config(project_root=project)

        assert resolved.primary_model == DEFAULT_PRIMARY_MODEL
        assert resolved.api_key is None
        assert set(resolved.origin.values()) == {"default"}

    def test_environment_values_are_coerced(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "openai/gpt-4o")
        monkeypatch.setenv("VISION_BRIDGE_FALLBACK_MODELS", "openai/gpt-4o-mini, x-ai/grok-beta-vision")
        monkeypatch.setenv("VISION_BRIDGE_REQUEST_TIMEOUT", "45")
        monkeypatch.setenv("VISION_BRIDGE_ALLOWED_FORMATS", "PNG,jpeg")
        monkeypatch.setenv("VISION_BRIDGE_REQUIRE_API_KEY", "false")

        resolved = resolve_config(project_root=project)

        assert resolved.primary_model == "openai/gpt-4o"
        assert resolved.fallback_models == ("openai/gpt-4o-mini", "x-ai/grok-beta-vision")
        assert resolved.request_timeout == 45.0
        assert resolved.allowed_formats == ("png", "jpeg")
        assert resolved.require_api_key is False
        assert resolved.origin["primary_model"] == "env"
        assert resolved.origin["base_url"] == "default"

    def test_pixel_ceiling_reaches_image_policy(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_MAX_PIXELS", "1000000")
        monkeypatch.setenv("VISION_BRIDGE_REQUIRE_API_KEY", "false")

        frozen = resolve_config(project_root=project).to_frozen()

        assert frozen.image_policy.max_pixels == 1_000_000

    def test_legacy_api_key_is_read(self, project, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-legacy")

        assert resolve_config(project_root=project).api_key == "sk-legacy"

    def test_prefixed_api_key_wins_over_legacy(self, project, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-legacy")
        monkeypatch.setenv("VISION_BRIDGE_API_KEY", "sk-prefixed")

        assert resolve_config(project_root=project).api_key == "sk-prefixed"

    def test_schema_defaults_ignore_environment(self, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "env/model")

        assert default_values()["primary_model"] == DEFAULT_PRIMARY_MODEL


class TestPrecedence:
    def test_each_layer_overrides_the_one_below(self, project, monkeypatch):
        _write_home(
            'primary_model = "home/model"\n'
            "max_attempts = 5\n"
            'base_url = "https://home.test/v1"\n'
        )
        _write_project(
            project,
            "[tool.vision_bridge]\n"
            'primary_model = "project/model"\n'
            "max_attempts = 4\n",
        )
        monkeypatch.setenv("VISION_BRIDGE_MAX_ATTEMPTS", "2")

        resolved = resolve_config({"default_max_tokens": 123}, project_root=project)

        assert resolved.base_url == "https://home.test/v1"
        assert resolved.primary_model == "project/model"
        assert resolved.max_attempts == 2
        assert resolved.default_max_tokens == 123
        assert resolved.origin["base_url"] == "file"
        assert resolved.origin["max_attempts"] == "env"
        assert resolved.origin["default_max_tokens"] == "programmatic"
        assert summarize_origins(resolved.origin)["programmatic"] == 1

    def test_programmatic_beats_environment(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "env/model")

        resolved = resolve_config({"primary_model": "code/model"}, project_root=project)

        assert resolved.primary_model == "code/model"
        assert resolved.origin["primary_model"] == "programmatic"

    def test_unknown_fields_are_ignored(self, project):
        _write_project(project, '[tool.vision_bridge]\nflux_capacitor = "on"\n')

        resolved = resolve_config({"also_unknown": 1}, project_root=project)

        assert "flux_capacitor" not in resolved.origin
        assert "also_unknown" not in resolved.origin


class TestProfiles:
    PYPROJECT = (
        "[tool.vision_bridge]\n"
        'primary_model = "project/base"\n'
        "\n"
        "[tool.vision_bridge.profiles.fast]\n"
        'primary_model = "openai/gpt-4o-mini"\n'
        "request_timeout = 20\n"
        "call_timeout = 10\n"
    )

    def test_explicit_profile(self, project):
        _write_project(project, self.PYPROJECT)

        resolved = resolve_config(profile="fast", project_root=project)

        assert resolved.primary_model == "openai/gpt-4o-mini"
        assert resolved.request_timeout == 20.0

    def test_profile_from_environment(self, project, monkeypatch):
        _write_project(project, self.PYPROJECT)
        monkeypatch.setenv("VISION_BRIDGE_PROFILE", "fast")

        resolved = resolve_config(project_root=project)

        assert resolved.primary_model == "openai/gpt-4o-mini"

    def test_base_section_without_profile(self, project):
        _write_project(project, self.PYPROJECT)

        assert resolve_config(project_root=project).primary_model == "project/base"

    def test_home_profile(self, project):
        _write_home('[profiles.cheap]\nprimary_model = "openai/gpt-4o-mini"\n')

        resolved = resolve_config(profile="cheap", project_root=project)

        assert resolved.primary_model == "openai/gpt-4o-mini"
        assert resolved.origin["primary_model"] == "file"

    def test_listing_and_validation(self, project):
        _write_project(project, self.PYPROJECT)
        _write_home("[profiles.cheap]\nmax_attempts = 1\n")

        assert list_available_profiles(project) == {"project": ["fast"], "home": ["cheap"]}
        assert validate_profile("fast", project) == {"project": True, "home": False}
        with pytest.raises(ConfigurationError, match="Profile 'nope' not found"):
            validate_profile("nope", project)


class TestFileErrors:
    def test_malformed_project_file_is_fatal(self, project):
        _write_project(project, "[tool.vision_bridge\nbroken")

        with pytest.raises(ConfigFileError):
            resolve_config(project_root=project)

    def test_malformed_home_file_is_skipped(self, project, caplog):
        _write_home("this is = = not toml")

        with caplog.at_level("WARNING", logger="vision_bridge.config.resolver"):
            resolved = resolve_config(project_root=project)

        assert resolved.primary_model == DEFAULT_PRIMARY_MODEL
        assert "Skipping home configuration" in caplog.text

    def test_missing_profile_in_home_file_raises_from_loader(self):
        _write_home("[profiles.a]\nmax_attempts = 1\n")

        with pytest.raises(ConfigFileError, match="Available profiles"):
            FileConfigLoader().load_home_config(profile="b")


class TestValidation:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"call_timeout": 200, "request_timeout": 100},
            {"require_api_key": True},
            {"allowed_formats": "png,bmp"},
            {"allowed_formats": ""},
            {"image_quality": 0},
            {"max_attempts": 0},
            {"default_temperature": 3.0},
            {"max_response_length": 50},
        ],
    )
    def test_invalid_values_raise_configuration_error(self, project, overrides):
        with pytest.raises(ConfigurationError, match="Configuration validation failed"):
            resolve_config(overrides, project_root=project)

    def test_required_key_satisfied_by_environment(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_API_KEY", "sk-env")

        resolved = resolve_config({"require_api_key": True}, project_root=project)

        assert resolved.api_key == "sk-env"

    def test_invalid_environment_value(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_MAX_ATTEMPTS", "many")

        with pytest.raises(ConfigurationError):
            resolve_config(project_root=project)


class TestEnvFile:
    def test_env_file_values_are_loaded(self, project, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "# comment\n\nVISION_BRIDGE_PRIMARY_MODEL=\"openai/gpt-4o\"\n", encoding="utf-8"
        )

        with patch.dict(os.environ):
            resolved = resolve_config(use_env_file=env_file, project_root=project)

        assert resolved.primary_model == "openai/gpt-4o"
        assert resolved.origin["primary_model"] == "env"

    def test_existing_environment_is_not_overridden(self, project, tmp_path, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "from-shell")
        env_file = tmp_path / ".env"
        env_file.write_text("VISION_BRIDGE_PRIMARY_MODEL=from-file\n", encoding="utf-8")

        with patch.dict(os.environ):
            resolved = resolve_config(use_env_file=env_file, project_root=project)

        assert resolved.primary_model == "from-shell"

    def test_missing_env_file(self, project, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            resolve_config(use_env_file=tmp_path / "absent.env", project_root=project)

    def test_malformed_env_file(self, project, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("JUST_A_WORD\n", encoding="utf-8")

        with patch.dict(os.environ), pytest.raises(ConfigurationError, match="line 1"):
            resolve_config(use_env_file=env_file, project_root=project)


class TestRedactionAndAudit:
    def test_string_forms_hide_api_key(self, project):
        resolved = resolve_config({"api_key": "sk-secret-123"}, project_root=project)
        frozen = resolved.to_frozen()

        for text in (str(resolved), repr(resolved), str(frozen), repr(frozen)):
            assert "sk-secret-123" not in text
            assert "[REDACTED]" in text

    def test_audit_reports_origins_without_secrets(self, project, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "openai/gpt-4o")

        resolved = resolve_config({"api_key": "sk-secret-123"}, project_root=project)
        audit = resolved.audit()

        assert "sk-secret-123" not in audit
        assert "api_key: programmatic:<redacted>" in audit
        assert "primary_model: env:VISION_BRIDGE_PRIMARY_MODEL=openai/gpt-4o" in audit
        assert "max_attempts: default:3" in audit

    def test_environment_summary_redacts_keys(self, monkeypatch):
        monkeypatch.setenv("VISION_BRIDGE_API_KEY", "sk-secret")
        monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "openai/gpt-4o")
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-legacy")

        summary = check_environment()

        assert summary == {
            "VISION_BRIDGE_API_KEY": "<redacted>",
            "VISION_BRIDGE_PRIMARY_MODEL": "openai/gpt-4o",
            "OPENROUTER_API_KEY": "<redacted>",
        }


class TestFreezing:
    def test_to_frozen_builds_nested_policies(self, project):
        resolved = resolve_config(
            {
                "primary_model": "openai/gpt-4o",
                "fallback_models": ["openai/gpt-4o-mini"],
                "max_attempts": 4,
                "base_delay": 0.25,
                "failure_threshold": 2,
                "recovery_timeout": 5,
                "max_image_bytes": 2048,
                "allowed_formats": ["png"],
            },
            project_root=project,
        )

        config = resolved.to_frozen()

        assert isinstance(config, BridgeConfig)
        assert config.models == ("openai/gpt-4o", "openai/gpt-4o-mini")
        assert config.retry_policy == RetryPolicy(max_attempts=4, base_delay=0.25)
        assert config.breaker_policy == BreakerPolicy(
            failure_threshold=2, recovery_timeout=5.0
        )
        assert config.image_policy.max_bytes == 2048
        assert config.image_policy.allowed_formats == frozenset({"png"})

    def test_with_overrides_marks_origin(self, project):
        resolved = resolve_config(project_root=project)

        updated = resolved.with_overrides(primary_model="openai/gpt-4o", bogus=1)

        assert updated.primary_model == "openai/gpt-4o"
        assert updated.origin["primary_model"] == "programmatic"
        assert resolved.origin["primary_model"] == "default"
        assert not hasattr(updated, "bogus")


@pytest.mark.asyncio
async def test_create_executor_resolves_ambient_configuration(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("VISION_BRIDGE_PRIMARY_MODEL", "openai/gpt-4o")

    executor = create_executor()
    try:
        assert executor.config.primary_model == "openai/gpt-4o"
        assert executor.registry.available_models()[0] == "openai/gpt-4o"
    finally:
        await executor.aclose()
