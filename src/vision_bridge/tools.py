"""Tool argument schemas, prompt builders and the tool request they produce.

The three supported tools share one pipeline. What differs between them is
validated here: the argument schema, the prompt sent upstream, the routing
hints for the selector and the generation parameters.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from vision_bridge.constants import TEXT_EXTRACTION_TEMPERATURE
from vision_bridge.core.exceptions import ToolArgumentError
from vision_bridge.core.types import RoutingRequest, ToolInvocation, ToolKind

log = logging.getLogger(__name__)

DetailLevel = Literal["low", "medium", "high"]


# --- Argument schemas ---


class _ToolArguments(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    image_url: str = Field(
        min_length=1, description="URL or base64-encoded image data"
    )


class AnalyzeImageArgs(_ToolArguments):
    """Arguments of ``analyze_image``."""

    prompt: str = Field(
        min_length=1,
        description="Analysis prompt describing what to analyze in the image",
    )
    model: str | None = Field(
        default=None,
        description="Vision model to use (optional, uses primary model by default)",
    )
    max_tokens: int | None = Field(
        default=None, gt=0, description="Maximum tokens in response"
    )
    temperature: float | None = Field(
        default=None, ge=0.0, le=2.0, description="Sampling temperature 0-2"
    )
    detail_level: DetailLevel | None = Field(
        default=None, description="Level of detail for analysis"
    )

    @field_validator("model")
    @classmethod
    def blank_model_is_none(cls, v: str | None) -> str | None:
        return v or None


class DescribeImageArgs(_ToolArguments):
    """Arguments of ``describe_image``."""

    detail_level: DetailLevel = Field(
        default="medium",
        description="Level of detail: low (brief), medium (standard), high (comprehensive)",
    )
    include_objects: bool = Field(
        default=True, description="Whether to include detected objects list"
    )
    include_colors: bool = Field(
        default=True, description="Whether to include color analysis"
    )
    include_text: bool = Field(
        default=True, description="Whether to extract any visible text"
    )


class ExtractTextArgs(_ToolArguments):
    """Arguments of ``extract_text_from_image``."""

    language: str = Field(
        default="en",
        min_length=1,
        description='Language hint for OCR (e.g., "en", "es", "fr")',
    )
    preserve_formatting: bool = Field(
        default=False, description="Whether to preserve text formatting and layout"
    )


_ARGUMENT_MODELS: dict[ToolKind, type[_ToolArguments]] = {
    ToolKind.ANALYZE: AnalyzeImageArgs,
    ToolKind.DESCRIBE: DescribeImageArgs,
    ToolKind.EXTRACT_TEXT: ExtractTextArgs,
}

_DESCRIPTIONS: dict[ToolKind, str] = {
    ToolKind.ANALYZE: "Analyze an image using vision-capable models",
    ToolKind.DESCRIBE: "Get detailed description of image content with automatic analysis",
    ToolKind.EXTRACT_TEXT: "Extract text content from images using OCR capabilities",
}


def list_tools() -> list[dict[str, Any]]:
    """Tool catalog with JSON schemas generated from the argument models."""
    return [
        {
            "name": kind.value,
            "description": _DESCRIPTIONS[kind],
            "inputSchema": model.model_json_schema(),
        }
        for kind, model in _ARGUMENT_MODELS.items()
    ]


# --- Prompt builders ---


def build_analysis_prompt(user_prompt: str, detail_level: str | None = None) -> str:
    prompt = f"Please analyze the following image in detail. {user_prompt}"
    if detail_level == "low":
        prompt += " Provide a brief, high-level analysis."
    elif detail_level == "high":
        prompt += " Provide a comprehensive, detailed analysis with specific observations."
    elif detail_level is not None:
        prompt += " Provide a balanced, detailed analysis."
    return prompt + " Focus on visual elements, composition, and any notable features."


def build_description_prompt(
    detail_level: str = "medium",
    *,
    include_objects: bool = True,
    include_colors: bool = True,
    include_text: bool = True,
) -> str:
    prompt = "Please describe this image"
    if detail_level == "low":
        prompt += " in a brief overview"
    elif detail_level == "high":
        prompt += " in comprehensive detail"
    else:
        prompt += " in detail"

    elements = []
    if include_objects:
        elements.append("objects and subjects")
    if include_colors:
        elements.append("colors and visual style")
    if include_text:
        elements.append("any visible text")
    if elements:
        prompt += f", including {', '.join(elements)}"
    return prompt + ". Be objective and descriptive."


def build_ocr_prompt(language: str = "en", preserve_formatting: bool = False) -> str:
    prompt = "Please extract all text from this image"
    if language != "en":
        prompt += f" (the text appears to be in {language})"
    if preserve_formatting:
        prompt += (
            ". Preserve the original formatting, layout, and structure as much as possible."
        )
    else:
        prompt += ". Extract the text content while maintaining readability."
    return prompt + " If no text is visible, please indicate that clearly."


# --- Tool request ---


@dataclass(frozen=True, slots=True)
class ToolRequest:
    """A validated tool call, ready for the pipeline.

    ``image_url`` is kept as given; turning it into an image reference is
    part of normalization so its failures are reported from that stage.
    """

    tool_kind: ToolKind
    image_url: str
    prompt: str
    routing: RoutingRequest
    max_tokens: int
    temperature: float
    detail_level: str | None = None
    language: str | None = None
    add_analysis_prefix: bool = True
    preserve_formatting: bool = False


def resolve_tool_kind(tool_name: str) -> ToolKind:
    try:
        kind = ToolKind(tool_name)
    except ValueError:
        kind = None
    if kind is None or kind not in _ARGUMENT_MODELS:
        raise ToolArgumentError(f"Unknown tool: {tool_name}", field_name="tool_name")
    return kind


def parse_arguments(kind: ToolKind, arguments: Any) -> _ToolArguments:
    """Validate raw arguments against the tool's schema.

    Raises:
        ToolArgumentError: the arguments failed validation.
    """
    model = _ARGUMENT_MODELS[kind]
    try:
        raw = dict(arguments or {})
    except (TypeError, ValueError) as e:
        raise ToolArgumentError(
            f"Invalid arguments for {kind.value}: expected an object"
        ) from e
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        detail = f"{field}: {first['msg']}" if field else first["msg"]
        raise ToolArgumentError(
            f"Invalid arguments for {kind.value}: {detail}", field_name=field
        ) from e


def build_tool_request(
    invocation: ToolInvocation,
    *,
    primary_model: str,
    default_max_tokens: int,
    default_temperature: float,
) -> ToolRequest:
    """Validate a tool invocation and derive prompt, routing and parameters.

    Raises:
        ToolArgumentError: unknown tool or invalid arguments.
    """
    kind = resolve_tool_kind(invocation.tool_name)
    args = parse_arguments(kind, invocation.arguments)
    log.debug("Parsed %s arguments", kind.value)

    match args:
        case AnalyzeImageArgs():
            max_tokens = args.max_tokens or default_max_tokens
            return ToolRequest(
                tool_kind=kind,
                image_url=args.image_url,
                prompt=build_analysis_prompt(args.prompt, args.detail_level),
                routing=RoutingRequest(
                    has_image=True,
                    preferred_model=args.model,
                    max_tokens=max_tokens,
                ),
                max_tokens=max_tokens,
                temperature=(
                    args.temperature
                    if args.temperature is not None
                    else default_temperature
                ),
                detail_level=args.detail_level,
            )
        case DescribeImageArgs():
            return ToolRequest(
                tool_kind=kind,
                image_url=args.image_url,
                prompt=build_description_prompt(
                    args.detail_level,
                    include_objects=args.include_objects,
                    include_colors=args.include_colors,
                    include_text=args.include_text,
                ),
                routing=RoutingRequest(
                    has_image=True,
                    requires_high_quality=args.detail_level == "high",
                ),
                max_tokens=default_max_tokens,
                temperature=default_temperature,
                detail_level=args.detail_level,
            )
        case ExtractTextArgs():
            return ToolRequest(
                tool_kind=kind,
                image_url=args.image_url,
                prompt=build_ocr_prompt(args.language, args.preserve_formatting),
                routing=RoutingRequest(has_image=True, preferred_model=primary_model),
                max_tokens=default_max_tokens,
                temperature=TEXT_EXTRACTION_TEMPERATURE,
                language=args.language,
                add_analysis_prefix=False,
                preserve_formatting=args.preserve_formatting,
            )
        case _:
            raise ToolArgumentError(f"Unsupported tool: {kind.value}")
