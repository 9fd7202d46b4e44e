"""Core data types that flow through the bridge pipeline.

Every value here is immutable. A request is carried from stage to stage as a
sequence of new values, never by mutating a shared object, so each stage can
be tested in isolation and no stage can observe another's partial state.
"""

from __future__ import annotations

import dataclasses
from enum import Enum
import re
from types import MappingProxyType
import typing

from vision_bridge.constants import SUPPORTED_IMAGE_FORMATS
from vision_bridge.core.exceptions import (
    InvalidImageInputError,
    UnsupportedImageFormatError,
    VisionBridgeError,
)

T = typing.TypeVar("T")

# --- Minimal guard helpers ---


def _freeze_mapping(
    m: dict[str, T] | typing.Mapping[str, T] | None,
) -> typing.Mapping[str, T] | None:
    """Return an immutable mapping view or None."""
    if m is None or isinstance(m, MappingProxyType):
        return m
    return MappingProxyType(dict(m))


def _require(
    *,
    condition: bool,
    message: str,
    exc: type[Exception] = ValueError,
    field_name: str | None = None,
) -> None:
    """Centralized validation with optional field context for clearer errors."""
    if not condition:
        if field_name:
            raise exc(f"{field_name}: {message}")
        raise exc(message)


# --- Result type ---
# Stage handlers return failures as data; the orchestrator branches on them
# instead of wrapping every stage in try/except.

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure", bound=Exception)


@dataclasses.dataclass(frozen=True, slots=True)
class Success(typing.Generic[TSuccess]):
    """A successful stage result."""

    value: TSuccess


@dataclasses.dataclass(frozen=True, slots=True)
class Failure(typing.Generic[TFailure]):
    """A failed stage result, containing the error."""

    error: TFailure


Result = Success[TSuccess] | Failure[TFailure]


# --- Image references ---

_BASE64_ALPHABET = re.compile(rb"^[A-Za-z0-9+/=]+$")
_DATA_URL = re.compile(r"^data:image/([A-Za-z0-9.+-]+);base64,(.*)$", re.DOTALL)


@dataclasses.dataclass(frozen=True, slots=True)
class RemoteURL:
    """An image the bridge must fetch before forwarding."""

    url: str

    def __post_init__(self) -> None:
        _require(
            condition=isinstance(self.url, str) and bool(self.url.strip()),
            message="must be a non-empty string",
            field_name="url",
            exc=InvalidImageInputError,
        )


@dataclasses.dataclass(frozen=True, slots=True)
class InlineEncoded:
    """Base64 image bytes supplied directly by the caller."""

    encoded: bytes
    declared_format: str

    def __post_init__(self) -> None:
        _require(
            condition=isinstance(self.encoded, bytes) and len(self.encoded) > 0,
            message="must be non-empty bytes",
            field_name="encoded",
            exc=InvalidImageInputError,
        )
        _require(
            condition=self.declared_format in SUPPORTED_IMAGE_FORMATS,
            message=(
                f"unsupported format {self.declared_format!r}; "
                f"expected one of {', '.join(SUPPORTED_IMAGE_FORMATS)}"
            ),
            field_name="declared_format",
            exc=UnsupportedImageFormatError,
        )


ImageReference = RemoteURL | InlineEncoded


def parse_image_reference(value: str) -> ImageReference:
    """Turn a tool argument string into an image reference.

    ``data:image/<fmt>;base64,<payload>`` becomes ``InlineEncoded``; anything
    else is treated as a remote URL and validated by the normalizer.
    """
    _require(
        condition=isinstance(value, str) and bool(value.strip()),
        message="image reference must be a non-empty string",
        exc=InvalidImageInputError,
    )
    candidate = value.strip()
    if not candidate.startswith("data:"):
        return RemoteURL(candidate)

    match = _DATA_URL.match(candidate)
    if match is None:
        raise InvalidImageInputError(
            "Invalid data URL; expected data:image/<format>;base64,<payload>"
        )
    declared = match.group(1).lower()
    payload = match.group(2).encode("ascii", errors="replace")
    if declared not in SUPPORTED_IMAGE_FORMATS:
        raise UnsupportedImageFormatError(f"Unsupported image format: {declared}")
    if not payload or not _BASE64_ALPHABET.match(payload):
        raise InvalidImageInputError("Image payload is not valid base64")
    return InlineEncoded(encoded=payload, declared_format=declared)


_MIME_BY_FORMAT: typing.Mapping[str, str] = MappingProxyType(
    {
        "jpeg": "image/jpeg",
        "jpg": "image/jpeg",
        "png": "image/png",
        "webp": "image/webp",
        "gif": "image/gif",
    }
)


def mime_type_for(image_format: str) -> str:
    return _MIME_BY_FORMAT.get(image_format, f"image/{image_format}")


@dataclasses.dataclass(frozen=True, slots=True)
class NormalizedImage:
    """A validated, size-bounded image ready to embed in a provider request."""

    encoded: str
    format: str
    byte_size: int
    original_size: int
    width: int | None = None
    height: int | None = None
    reencoded: bool = False

    def __post_init__(self) -> None:
        _require(
            condition=bool(self.encoded),
            message="must not be empty",
            field_name="encoded",
        )
        _require(
            condition=self.format in SUPPORTED_IMAGE_FORMATS,
            message=f"unsupported format {self.format!r}",
            field_name="format",
        )
        _require(
            condition=self.byte_size > 0,
            message="must be positive",
            field_name="byte_size",
        )

    @property
    def mime_type(self) -> str:
        return mime_type_for(self.format)

    @property
    def provider_uri(self) -> str:
        """Self-contained ``data:`` URI; the provider never fetches anything."""
        return f"data:{self.mime_type};base64,{self.encoded}"


# --- Routing ---


@dataclasses.dataclass(frozen=True, slots=True)
class RoutingRequest:
    """What the caller needs from a model for one request."""

    has_image: bool = True
    requires_high_quality: bool = False
    requires_fast_response: bool = False
    max_tokens: int | None = None
    preferred_model: str | None = None
    cost_sensitive: bool = False
    fallback_allowed: bool = True

    def __post_init__(self) -> None:
        if self.max_tokens is not None:
            _require(
                condition=isinstance(self.max_tokens, int) and self.max_tokens > 0,
                message="must be a positive int",
                field_name="max_tokens",
            )


@dataclasses.dataclass(frozen=True, slots=True)
class ModelSelection:
    """The chosen model and how confident the selector is in the choice."""

    model_id: str
    confidence: float
    reason: str

    def __post_init__(self) -> None:
        _require(
            condition=0.0 <= self.confidence <= 1.0,
            message="must be within [0, 1]",
            field_name="confidence",
        )


@dataclasses.dataclass(frozen=True, slots=True)
class ModelRequirements:
    """Hard constraints a specific model is checked against."""

    has_image: bool = False
    max_tokens: int | None = None
    min_context_length: int | None = None
    streaming: bool = False
    image_format: str | None = None
    image_bytes: int | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    issues: tuple[str, ...] = ()


# --- Tool invocation ---


class ToolKind(str, Enum):
    """The tool a request was made through; drives prompt and framing."""

    ANALYZE = "analyze_image"
    DESCRIBE = "describe_image"
    EXTRACT_TEXT = "extract_text_from_image"
    GENERIC = "generic"


@dataclasses.dataclass(frozen=True, slots=True)
class ToolInvocation:
    """Boundary input: a tool name with its raw arguments."""

    tool_name: str
    arguments: typing.Mapping[str, typing.Any] = dataclasses.field(
        default_factory=dict
    )

    def __post_init__(self) -> None:
        _require(
            condition=isinstance(self.tool_name, str) and bool(self.tool_name),
            message="must be a non-empty string",
            field_name="tool_name",
            exc=TypeError,
        )
        object.__setattr__(self, "arguments", _freeze_mapping(self.arguments))


# --- Tool metadata (closed variant) ---


@dataclasses.dataclass(frozen=True, slots=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclasses.dataclass(frozen=True, slots=True)
class TextBlock:
    """One line of extracted text.

    Geometry is a line-index approximation, not a detected position.
    """

    text: str
    confidence: float
    bbox: BoundingBox


@dataclasses.dataclass(frozen=True, slots=True)
class AnalysisMetadata:
    detail_level: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class DescriptionMetadata:
    detail_level: str = "medium"
    mentioned_colors: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True, slots=True)
class TextExtractionMetadata:
    text_blocks: tuple[TextBlock, ...] = ()
    total_confidence: float = 0.0
    language: str | None = None
    geometry: str = "synthetic"


ToolMetadata = AnalysisMetadata | DescriptionMetadata | TextExtractionMetadata


# --- Responses ---


@dataclasses.dataclass(frozen=True, slots=True)
class BridgeErrorInfo:
    """Caller-visible description of a terminal failure."""

    code: str
    message: str
    category: str
    stage: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class BridgeResponse:
    """Uniform text + metadata result handed back to the caller."""

    text: str
    confidence: float
    tokens_used: int = 0
    model_used: str | None = None
    tool_metadata: ToolMetadata | None = None
    partial: bool = False
    finish_reason: str | None = None
    models_attempted: tuple[str, ...] = ()
    error: BridgeErrorInfo | None = None

    def __post_init__(self) -> None:
        _require(
            condition=0.0 <= self.confidence <= 1.0,
            message="must be within [0, 1]",
            field_name="confidence",
        )
        _require(
            condition=self.tokens_used >= 0,
            message="must be non-negative",
            field_name="tokens_used",
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


# --- Stream events ---


@dataclasses.dataclass(frozen=True, slots=True)
class StreamDelta:
    text: str


@dataclasses.dataclass(frozen=True, slots=True)
class StreamDone:
    finish_reason: str | None = None
    usage: typing.Mapping[str, int] | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class StreamFailed:
    error: VisionBridgeError


StreamEvent = StreamDelta | StreamDone | StreamFailed
