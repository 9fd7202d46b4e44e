"""Configuration data types, following the resolve-once, freeze-then-flow pattern."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal, NamedTuple

from vision_bridge.constants import (
    DEFAULT_BASE_URL,
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_FALLBACK_MODELS,
    DEFAULT_MAX_RESPONSE_LENGTH,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PRIMARY_MODEL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STREAM_CHUNK_SIZE,
    DEFAULT_TEMPERATURE,
)
from vision_bridge.pipeline.circuit_breaker import BreakerPolicy
from vision_bridge.pipeline.classification import RetryPolicy
from vision_bridge.pipeline.image_normalizer import ImagePolicy

# --- Source Tracking Types ---

ConfigOrigin = Literal["programmatic", "env", "file", "default"]
SourceMap = Mapping[str, ConfigOrigin]

_SENSITIVE_FIELDS = frozenset({"api_key"})


class ResolvedConfig(NamedTuple):
    """Configuration after resolution from all sources, before freezing.

    Carries the origin of each field for auditing. ``to_frozen()`` produces
    the immutable ``BridgeConfig`` handed to the executor.
    """

    api_key: str | None
    base_url: str
    require_api_key: bool
    primary_model: str
    fallback_models: tuple[str, ...]
    default_max_tokens: int
    default_temperature: float
    request_timeout: float
    call_timeout: float
    max_attempts: int
    base_delay: float
    failure_threshold: int
    recovery_timeout: float
    max_image_bytes: int
    allowed_formats: tuple[str, ...]
    max_dimension: int
    max_pixels: int
    image_quality: int
    fetch_timeout: float
    max_response_length: int
    stream_chunk_size: int

    # Audit metadata: where each field value came from
    origin: SourceMap

    def __str__(self) -> str:
        """String representation with redacted API key for safe logging."""
        values = self._asdict()
        origin = values.pop("origin")
        if values["api_key"]:
            values["api_key"] = "[REDACTED]"
        body = ", ".join(f"{k}={v!r}" for k, v in values.items())
        return f"ResolvedConfig({body}, origin={dict(origin)!r})"

    def __repr__(self) -> str:
        return self.__str__()

    def to_frozen(self) -> "BridgeConfig":
        """Convert to the immutable configuration used by the pipeline."""
        return BridgeConfig(
            primary_model=self.primary_model,
            fallback_models=tuple(self.fallback_models),
            image_policy=ImagePolicy(
                max_bytes=self.max_image_bytes,
                allowed_formats=frozenset(self.allowed_formats),
                max_dimension=self.max_dimension,
                max_pixels=self.max_pixels,
                quality=self.image_quality,
                fetch_timeout=self.fetch_timeout,
            ),
            retry_policy=RetryPolicy(
                max_attempts=self.max_attempts, base_delay=self.base_delay
            ),
            breaker_policy=BreakerPolicy(
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
            ),
            api_key=self.api_key,
            base_url=self.base_url,
            request_timeout=self.request_timeout,
            call_timeout=self.call_timeout,
            default_max_tokens=self.default_max_tokens,
            default_temperature=self.default_temperature,
            max_response_length=self.max_response_length,
            stream_chunk_size=self.stream_chunk_size,
        )

    def with_overrides(self, **overrides: object) -> "ResolvedConfig":
        """New ResolvedConfig with programmatic overrides; unknown fields ignored."""
        new_values = self._asdict()
        new_origin = dict(self.origin)
        for name, value in overrides.items():
            if name in new_values and name != "origin":
                new_values[name] = value
                new_origin[name] = "programmatic"
        new_values["origin"] = new_origin
        return ResolvedConfig(**new_values)

    def audit(self) -> str:
        """Redacted report of the origin of each field."""
        lines = []
        for name in self._fields:
            if name == "origin" or name not in self.origin:
                continue
            origin = self.origin[name]
            value = getattr(self, name)
            if name in _SENSITIVE_FIELDS:
                shown = f"{origin}:None" if value is None else f"{origin}:<redacted>"
            elif origin == "env":
                shown = f"env:VISION_BRIDGE_{name.upper()}={value}"
            else:
                shown = f"{origin}:{value}"
            lines.append(f"{name}: {shown}")
        return "\n".join(lines)


@dataclass(frozen=True)
class BridgeConfig:
    """Immutable configuration the executor is built from.

    Contains only field values, no audit metadata. The model set is the
    primary model followed by the fallbacks, in that order.
    """

    primary_model: str = DEFAULT_PRIMARY_MODEL
    fallback_models: tuple[str, ...] = DEFAULT_FALLBACK_MODELS
    image_policy: ImagePolicy = field(default_factory=ImagePolicy)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    breaker_policy: BreakerPolicy = field(default_factory=BreakerPolicy)
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    default_max_tokens: int = DEFAULT_MAX_TOKENS
    default_temperature: float = DEFAULT_TEMPERATURE
    max_response_length: int = DEFAULT_MAX_RESPONSE_LENGTH
    stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE

    @property
    def models(self) -> tuple[str, ...]:
        return (self.primary_model, *self.fallback_models)

    def __str__(self) -> str:
        api_key_display = "[REDACTED]" if self.api_key else None
        return (
            f"BridgeConfig(api_key={api_key_display!r}, "
            f"primary_model={self.primary_model!r}, "
            f"fallback_models={self.fallback_models!r}, base_url={self.base_url!r}, "
            f"request_timeout={self.request_timeout!r}, "
            f"call_timeout={self.call_timeout!r})"
        )

    def __repr__(self) -> str:
        return self.__str__()


def resolved_from_values(values: Mapping[str, Any], origin: SourceMap) -> ResolvedConfig:
    """Build a ResolvedConfig from validated settings values."""
    data = {name: values[name] for name in ResolvedConfig._fields if name != "origin"}
    data["fallback_models"] = tuple(data["fallback_models"])
    data["allowed_formats"] = tuple(data["allowed_formats"])
    return ResolvedConfig(**data, origin=origin)
