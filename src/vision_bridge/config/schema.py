"""Configuration schema and validation using Pydantic.

Validates and coerces values gathered from files, the environment and
programmatic overrides into correctly typed settings with defaults.
"""

from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from vision_bridge.constants import (
    DEFAULT_BASE_DELAY,
    DEFAULT_BASE_URL,
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_FALLBACK_MODELS,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_IMAGE_QUALITY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DIMENSION,
    DEFAULT_MAX_IMAGE_BYTES,
    DEFAULT_MAX_PIXELS,
    DEFAULT_MAX_RESPONSE_LENGTH,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PRIMARY_MODEL,
    DEFAULT_RECOVERY_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STREAM_CHUNK_SIZE,
    DEFAULT_TEMPERATURE,
    SUPPORTED_IMAGE_FORMATS,
)


def _split_list(v: Any) -> Any:
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    if isinstance(v, tuple):
        return list(v)
    return v


class BridgeSettings(BaseSettings):
    """Pydantic settings schema for the vision bridge.

    Integrates with environment variables using the ``VISION_BRIDGE_``
    prefix. List fields accept comma-separated strings.
    """

    model_config = SettingsConfigDict(
        env_prefix="VISION_BRIDGE_",
        env_file=None,  # Only used when explicitly requested
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Upstream ---

    api_key: str | None = Field(default=None, description="OpenRouter API key")
    base_url: str = Field(default=DEFAULT_BASE_URL, min_length=1)
    require_api_key: bool = Field(
        default=False,
        description="Fail resolution when no API key is configured",
    )

    # --- Models ---

    primary_model: str = Field(default=DEFAULT_PRIMARY_MODEL, min_length=1)
    fallback_models: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_MODELS)
    )
    default_max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, gt=0)
    default_temperature: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    # --- Timeouts, retry and breaker ---

    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    call_timeout: float = Field(default=DEFAULT_CALL_TIMEOUT, gt=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)
    recovery_timeout: float = Field(default=DEFAULT_RECOVERY_TIMEOUT, ge=0)

    # --- Images ---

    max_image_bytes: int = Field(default=DEFAULT_MAX_IMAGE_BYTES, gt=0)
    allowed_formats: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(SUPPORTED_IMAGE_FORMATS)
    )
    max_dimension: int = Field(default=DEFAULT_MAX_DIMENSION, gt=0)
    max_pixels: int = Field(default=DEFAULT_MAX_PIXELS, gt=0)
    image_quality: int = Field(default=DEFAULT_IMAGE_QUALITY)
    fetch_timeout: float = Field(default=DEFAULT_FETCH_TIMEOUT, gt=0)

    # --- Responses ---

    max_response_length: int = Field(default=DEFAULT_MAX_RESPONSE_LENGTH, ge=100)
    stream_chunk_size: int = Field(default=DEFAULT_STREAM_CHUNK_SIZE, ge=1)

    # --- Validation Rules ---

    @field_validator("fallback_models", mode="before")
    @classmethod
    def parse_fallback_models(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("allowed_formats", mode="before")
    @classmethod
    def parse_allowed_formats(cls, v: Any) -> Any:
        v = _split_list(v)
        if isinstance(v, list):
            v = [str(item).lower() for item in v]
            unknown = sorted(set(v) - set(SUPPORTED_IMAGE_FORMATS))
            if unknown:
                raise ValueError(
                    f"Unsupported image formats: {', '.join(unknown)}. "
                    f"Must be a subset of: {', '.join(SUPPORTED_IMAGE_FORMATS)}"
                )
            if not v:
                raise ValueError("allowed_formats must not be empty")
        return v

    @field_validator("image_quality")
    @classmethod
    def check_quality(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError(f"image_quality must be within 1..100, got {v}")
        return v

    @model_validator(mode="after")
    def validate_api_key_requirement(self) -> "BridgeSettings":
        """Ensure api_key is provided when require_api_key is True."""
        if self.require_api_key and not self.api_key:
            raise ValueError(
                "api_key is required when require_api_key=True. "
                "Set VISION_BRIDGE_API_KEY or OPENROUTER_API_KEY, provide it in "
                "a config file, or pass it programmatically."
            )
        return self

    @model_validator(mode="after")
    def validate_timeouts(self) -> "BridgeSettings":
        if self.call_timeout > self.request_timeout:
            raise ValueError(
                f"call_timeout ({self.call_timeout}) must not exceed "
                f"request_timeout ({self.request_timeout})"
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary of resolved values, keyed by field name."""
        return {name: getattr(self, name) for name in type(self).model_fields}


def default_values() -> dict[str, Any]:
    """Schema defaults without consulting the environment."""
    return {
        name: field.get_default(call_default_factory=True)
        for name, field in BridgeSettings.model_fields.items()
    }
