"""Response normalization: provider payloads into ``BridgeResponse`` values.

The single-shot and streamed paths share one formatting routine, so a
streamed request ends in the same text a non-streamed one would produce
for the same content.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
import logging
import math
import re
from typing import TYPE_CHECKING, Any

from vision_bridge.constants import (
    DEFAULT_MAX_RESPONSE_LENGTH,
    DEFAULT_STREAM_CHUNK_SIZE,
    TRUNCATION_BOUNDARY_RATIO,
    TRUNCATION_MARKER,
)
from vision_bridge.core.exceptions import ResponseFormatError, VisionBridgeError
from vision_bridge.core.types import (
    AnalysisMetadata,
    BoundingBox,
    BridgeErrorInfo,
    BridgeResponse,
    DescriptionMetadata,
    Failure,
    Result,
    StreamDelta,
    StreamDone,
    StreamEvent,
    StreamFailed,
    Success,
    TextBlock,
    TextExtractionMetadata,
    ToolKind,
    ToolMetadata,
)
from vision_bridge.pipeline.base import BaseAsyncHandler
from vision_bridge.telemetry import TelemetryContext

if TYPE_CHECKING:
    from vision_bridge.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

ELLIPSIS = "..."
OCR_LINE_CONFIDENCE = 0.8
OCR_LINE_HEIGHT = 20
OCR_CHAR_WIDTH = 10

_FRAMES: Mapping[ToolKind, str] = {
    ToolKind.ANALYZE: "Image Analysis:",
    ToolKind.DESCRIBE: "Image Description:",
}

_ANALYSIS_KEYWORDS = (
    "image",
    "picture",
    "photo",
    "visual",
    "see",
    "observe",
    "notice",
    "depicts",
    "shows",
    "displays",
    "contains",
    "features",
    "elements",
)

COLOR_VOCABULARY: tuple[str, ...] = (
    "red",
    "orange",
    "yellow",
    "green",
    "blue",
    "purple",
    "violet",
    "pink",
    "brown",
    "black",
    "white",
    "gray",
    "grey",
    "beige",
    "cyan",
    "magenta",
    "teal",
    "navy",
    "gold",
    "silver",
)
_COLOR_PATTERN = re.compile(r"\b(" + "|".join(COLOR_VOCABULARY) + r")\b", re.IGNORECASE)

_SENTENCE_END = re.compile(r"[.!?]\s*$")
_LINE_END = re.compile(r"\n\s*$")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_EXCESS_BLANKS = re.compile(r"[ \t]{2,}")

ERROR_TEMPLATE = (
    "I apologize, but I encountered an error while processing your request: "
    "{message}. Please try again."
)


# --- Content segments ---


@dataclass(frozen=True, slots=True)
class TextSegment:
    text: str


@dataclass(frozen=True, slots=True)
class ImageSegment:
    url: str


Segment = TextSegment | ImageSegment


def decode_segments(content: Sequence[Any]) -> tuple[Segment, ...]:
    """Decode a provider content list; unknown segment kinds are dropped."""
    segments: list[Segment] = []
    for item in content:
        if not isinstance(item, Mapping):
            continue
        kind = item.get("type")
        if kind == "text" and isinstance(item.get("text"), str):
            segments.append(TextSegment(item["text"]))
        elif kind == "image_url":
            image = item.get("image_url")
            url = image.get("url") if isinstance(image, Mapping) else image
            if isinstance(url, str):
                segments.append(ImageSegment(url))
    return tuple(segments)


def extract_content(raw: Mapping[str, Any]) -> str:
    """Pull the assistant text out of a chat-completions body.

    Raises:
        ResponseFormatError: the body has no choices or no message.
    """
    choices = raw.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ResponseFormatError("Invalid response format: no choices found")
    first = choices[0]
    message = first.get("message") if isinstance(first, Mapping) else None
    if not isinstance(message, Mapping):
        raise ResponseFormatError("Invalid response format: no message found")

    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [s.text for s in decode_segments(content) if isinstance(s, TextSegment)]
        return " ".join(texts) if texts else "No text content available"
    return ""


# --- Pure text helpers ---


def token_count(usage: Mapping[str, Any] | None, key: str) -> int:
    """Non-negative integer count from a usage block; anything else reads as 0."""
    if not usage:
        return 0
    value = usage.get(key)
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return 0
        return int(value)
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float) and math.isfinite(value):
        return max(int(value), 0)
    return 0


def estimate_confidence(
    text: str,
    *,
    finish_reason: str | None,
    usage: Mapping[str, Any] | None,
) -> float:
    """Heuristic confidence from length, token ratio and finish reason."""
    confidence = 0.7
    if len(text) > 200:
        confidence += 0.1
    if len(text) > 500:
        confidence += 0.1
    if usage:
        prompt = token_count(usage, "prompt_tokens")
        completion = token_count(usage, "completion_tokens")
        if completion / max(prompt, 1) > 0.5:
            confidence += 0.1
    if finish_reason == "stop":
        confidence += 0.1
    elif finish_reason == "length":
        confidence -= 0.2
    return round(min(max(confidence, 0.0), 1.0), 6)


def truncate(text: str, max_length: int) -> str:
    """Shorten ``text`` to at most ``max_length`` characters, always marked.

    Prefers the last sentence end or newline; otherwise cuts at whitespace
    and adds an ellipsis. The marker is never omitted.
    """
    if len(text) <= max_length:
        return text
    window_size = max(max_length - len(ELLIPSIS) - len(TRUNCATION_MARKER), 0)
    window = text[:window_size]
    threshold = max_length * TRUNCATION_BOUNDARY_RATIO

    boundary = max(window.rfind(ch) for ch in ".!?\n")
    if boundary > threshold:
        return window[: boundary + 1].rstrip() + TRUNCATION_MARKER

    space = max(window.rfind(" "), window.rfind("\t"))
    cut = window[:space] if space > threshold else window
    return cut.rstrip() + ELLIPSIS + TRUNCATION_MARKER


def appears_to_be_analysis(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in _ANALYSIS_KEYWORDS)


def extract_text_blocks(text: str) -> tuple[TextBlock, ...]:
    """One block per non-empty line with line-index geometry."""
    lines = [line for line in text.split("\n") if line.strip()]
    return tuple(
        TextBlock(
            text=line.strip(),
            confidence=OCR_LINE_CONFIDENCE,
            bbox=BoundingBox(
                x=0,
                y=index * OCR_LINE_HEIGHT,
                width=len(line) * OCR_CHAR_WIDTH,
                height=OCR_LINE_HEIGHT,
            ),
        )
        for index, line in enumerate(lines)
    )


def mentioned_colors(text: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for match in _COLOR_PATTERN.finditer(text):
        seen.setdefault(match.group(1).lower(), None)
    return tuple(seen)


def error_response(
    message: str,
    *,
    error: VisionBridgeError | None = None,
    stage: str | None = None,
    model_used: str | None = None,
    models_attempted: tuple[str, ...] = (),
) -> BridgeResponse:
    """Terminal error-shaped response with zero confidence."""
    if error is not None:
        info = BridgeErrorInfo(
            code=error.code,
            message=message,
            category=error.category.value,
            stage=stage,
        )
    else:
        info = BridgeErrorInfo(
            code="internal_error", message=message, category="internal", stage=stage
        )
    return BridgeResponse(
        text=ERROR_TEMPLATE.format(message=message),
        confidence=0.0,
        model_used=model_used,
        models_attempted=models_attempted,
        error=info,
    )


# --- Normalizer ---


@dataclass(frozen=True, slots=True)
class NormalizerOptions:
    max_response_length: int = DEFAULT_MAX_RESPONSE_LENGTH
    stream_chunk_size: int = DEFAULT_STREAM_CHUNK_SIZE
    add_analysis_prefix: bool = True
    preserve_formatting: bool = False

    def __post_init__(self) -> None:
        if self.max_response_length <= len(ELLIPSIS) + len(TRUNCATION_MARKER):
            raise ValueError("max_response_length: too small to hold the truncation marker")
        if self.stream_chunk_size < 1:
            raise ValueError("stream_chunk_size: must be at least 1")


@dataclass(frozen=True, slots=True)
class NormalizeCommand:
    """Stage input for ``ResponseNormalizer.handle``."""

    raw: Mapping[str, Any]
    tool_kind: ToolKind
    model_id: str | None = None
    detail_level: str | None = None
    language: str | None = None


class ResponseNormalizer(
    BaseAsyncHandler[NormalizeCommand, BridgeResponse, ResponseFormatError]
):
    """Turns provider output into the uniform text + metadata contract."""

    def __init__(
        self,
        options: NormalizerOptions | None = None,
        *,
        telemetry: TelemetryContextProtocol | None = None,
    ) -> None:
        self.options = options or NormalizerOptions()
        self._telemetry: TelemetryContextProtocol = telemetry or TelemetryContext()

    async def handle(
        self, command: NormalizeCommand
    ) -> Result[BridgeResponse, ResponseFormatError]:
        try:
            return Success(
                self.normalize(
                    command.raw,
                    command.tool_kind,
                    model_id=command.model_id,
                    detail_level=command.detail_level,
                    language=command.language,
                )
            )
        except ResponseFormatError as e:
            return Failure(e)

    def normalize(
        self,
        raw: Mapping[str, Any],
        tool_kind: ToolKind,
        *,
        model_id: str | None = None,
        detail_level: str | None = None,
        language: str | None = None,
    ) -> BridgeResponse:
        """Normalize a complete chat-completions body.

        Raises:
            ResponseFormatError: the body has no choices or no message.
        """
        content = extract_content(raw)
        choice = raw["choices"][0]
        finish_reason = choice.get("finish_reason")
        usage = raw.get("usage") if isinstance(raw.get("usage"), Mapping) else None
        return self._build(
            content,
            tool_kind,
            model_id=model_id or raw.get("model"),
            finish_reason=finish_reason,
            usage=usage,
            detail_level=detail_level,
            language=language,
        )

    async def normalize_stream(
        self,
        events: AsyncIterator[StreamEvent],
        tool_kind: ToolKind,
        *,
        model_id: str | None = None,
        detail_level: str | None = None,
        language: str | None = None,
    ) -> AsyncIterator[BridgeResponse]:
        """Yield partial responses as text arrives, then exactly one final one."""
        chunk_size = self.options.stream_chunk_size
        accumulated: list[str] = []
        pending = ""

        async for event in events:
            if isinstance(event, StreamDelta):
                accumulated.append(event.text)
                pending += event.text
                if self._should_flush(pending, chunk_size):
                    yield BridgeResponse(
                        text=pending,
                        confidence=0.5,
                        model_used=model_id,
                        partial=True,
                    )
                    pending = ""
            elif isinstance(event, StreamDone):
                yield self._build(
                    "".join(accumulated),
                    tool_kind,
                    model_id=model_id,
                    finish_reason=event.finish_reason,
                    usage=event.usage,
                    detail_level=detail_level,
                    language=language,
                )
                return
            elif isinstance(event, StreamFailed):
                self._telemetry.count("pipeline.error", stage="stream")
                yield error_response(
                    str(event.error),
                    error=event.error,
                    stage="invoking",
                    model_used=model_id,
                )
                return

        # Source ended without a terminal event.
        log.debug("Stream ended without a terminal event; finalizing what arrived")
        yield self._build(
            "".join(accumulated),
            tool_kind,
            model_id=model_id,
            finish_reason=None,
            usage=None,
            detail_level=detail_level,
            language=language,
        )

    def format_text(self, text: str, tool_kind: ToolKind) -> str:
        """Trim, tidy whitespace, apply tool framing, then truncate."""
        formatted = text.strip()
        if not self.options.preserve_formatting:
            formatted = formatted.replace("\r\n", "\n").replace("\r", "\n")
            formatted = _EXCESS_NEWLINES.sub("\n\n", formatted)
            formatted = _EXCESS_BLANKS.sub(" ", formatted)
            formatted = formatted.strip()
        if self.options.add_analysis_prefix:
            formatted = self._frame(formatted, tool_kind)
        return truncate(formatted, self.options.max_response_length)

    # --- Internals ---

    @staticmethod
    def _should_flush(pending: str, chunk_size: int) -> bool:
        return (
            len(pending) >= chunk_size
            or _SENTENCE_END.search(pending) is not None
            or _LINE_END.search(pending) is not None
        )

    @staticmethod
    def _frame(text: str, tool_kind: ToolKind) -> str:
        if not text:
            return text
        frame = _FRAMES.get(tool_kind)
        if frame is None and tool_kind is ToolKind.GENERIC and appears_to_be_analysis(text):
            frame = _FRAMES[ToolKind.ANALYZE]
        if frame is None or text.startswith(frame):
            return text
        return f"{frame}\n\n{text}"

    def _build(
        self,
        content: str,
        tool_kind: ToolKind,
        *,
        model_id: str | None,
        finish_reason: str | None,
        usage: Mapping[str, Any] | None,
        detail_level: str | None,
        language: str | None,
    ) -> BridgeResponse:
        text = self.format_text(content, tool_kind)
        tokens = token_count(usage, "total_tokens")
        confidence = estimate_confidence(
            content, finish_reason=finish_reason, usage=usage
        )
        self._telemetry.gauge("response.length", len(text), tool=tool_kind.value)
        return BridgeResponse(
            text=text,
            confidence=confidence,
            tokens_used=max(tokens, 0),
            model_used=model_id,
            tool_metadata=self._metadata(content, tool_kind, detail_level, language),
            partial=False,
            finish_reason=finish_reason,
        )

    @staticmethod
    def _metadata(
        content: str,
        tool_kind: ToolKind,
        detail_level: str | None,
        language: str | None,
    ) -> ToolMetadata | None:
        match tool_kind:
            case ToolKind.ANALYZE:
                return AnalysisMetadata(detail_level=detail_level)
            case ToolKind.DESCRIBE:
                return DescriptionMetadata(
                    detail_level=detail_level or "medium",
                    mentioned_colors=mentioned_colors(content),
                )
            case ToolKind.EXTRACT_TEXT:
                blocks = extract_text_blocks(content)
                total = (
                    sum(b.confidence for b in blocks) / len(blocks) if blocks else 0.0
                )
                return TextExtractionMetadata(
                    text_blocks=blocks, total_confidence=total, language=language
                )
            case _:
                return None
