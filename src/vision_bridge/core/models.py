"""Model capability table and the registry the selector reads from."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
import logging
import re
import threading
from typing import Literal

from vision_bridge.constants import SUPPORTED_IMAGE_FORMATS

log = logging.getLogger(__name__)

UseCase = Literal["vision", "text", "high-quality", "fast"]

_PER_1K = 1 / 1000


@dataclass(frozen=True, slots=True)
class ModelCapability:
    """Intrinsic capabilities and pricing of a model (prices per token)."""

    model_id: str
    supports_images: bool
    supports_streaming: bool
    max_image_bytes: int
    supported_formats: frozenset[str]
    max_output_tokens: int
    context_length: int
    price_per_prompt_token: float
    price_per_completion_token: float

    def accepts_format(self, image_format: str) -> bool:
        return image_format in self.supported_formats


_ALL_FORMATS = frozenset(SUPPORTED_IMAGE_FORMATS)
_NO_GIF = frozenset({"jpeg", "jpg", "png", "webp"})
_BASIC_FORMATS = frozenset({"jpeg", "jpg", "png"})


def _vision_model(
    model_id: str,
    *,
    max_image_mb: int,
    formats: frozenset[str],
    context_length: int,
    prompt_per_1k: float,
    completion_per_1k: float,
) -> ModelCapability:
    return ModelCapability(
        model_id=model_id,
        supports_images=True,
        supports_streaming=True,
        max_image_bytes=max_image_mb * 1024 * 1024,
        supported_formats=formats,
        max_output_tokens=4000,
        context_length=context_length,
        price_per_prompt_token=prompt_per_1k * _PER_1K,
        price_per_completion_token=completion_per_1k * _PER_1K,
    )


MODEL_CAPABILITIES: Mapping[str, ModelCapability] = {
    cap.model_id: cap
    for cap in (
        _vision_model(
            "x-ai/grok-beta-vision",
            max_image_mb=8,
            formats=_NO_GIF,
            context_length=128_000,
            prompt_per_1k=0.005,
            completion_per_1k=0.015,
        ),
        _vision_model(
            "google/gemini-2.0-flash-001",
            max_image_mb=20,
            formats=_ALL_FORMATS,
            context_length=1_000_000,
            prompt_per_1k=0.001,
            completion_per_1k=0.004,
        ),
        _vision_model(
            "anthropic/claude-3-5-sonnet-20241022",
            max_image_mb=5,
            formats=_BASIC_FORMATS,
            context_length=200_000,
            prompt_per_1k=0.003,
            completion_per_1k=0.015,
        ),
        _vision_model(
            "openai/gpt-4o",
            max_image_mb=20,
            formats=_ALL_FORMATS,
            context_length=128_000,
            prompt_per_1k=0.005,
            completion_per_1k=0.015,
        ),
        _vision_model(
            "openai/gpt-4o-mini",
            max_image_mb=20,
            formats=_ALL_FORMATS,
            context_length=128_000,
            prompt_per_1k=0.00015,
            completion_per_1k=0.0006,
        ),
    )
}


def default_capability(model_id: str) -> ModelCapability:
    """Conservative entry for models missing from the table: text only."""
    return ModelCapability(
        model_id=model_id,
        supports_images=False,
        supports_streaming=False,
        max_image_bytes=10 * 1024 * 1024,
        supported_formats=_BASIC_FORMATS,
        max_output_tokens=1000,
        context_length=4000,
        price_per_prompt_token=0.001 * _PER_1K,
        price_per_completion_token=0.002 * _PER_1K,
    )


VISION_PRIORITY: tuple[str, ...] = (
    "x-ai/grok-beta-vision",
    "google/gemini-2.0-flash-001",
    "anthropic/claude-3-5-sonnet-20241022",
    "openai/gpt-4o",
    "openai/gpt-4o-mini",
)

SPEED_PRIORITY: tuple[str, ...] = (
    "google/gemini-2.0-flash-001",
    "openai/gpt-4o-mini",
    "x-ai/grok-beta-vision",
    "openai/gpt-4o",
    "anthropic/claude-3-5-sonnet-20241022",
)

HIGH_QUALITY_MARKERS: tuple[str, ...] = ("gpt-4o", "claude-3-5-sonnet")
FAST_MARKERS: tuple[str, ...] = ("mini", "flash")

# A marker names the whole model: "gpt-4o" or a dated "claude-3-5-sonnet-20241022",
# never a variant such as "gpt-4o-mini".
_HIGH_QUALITY_PATTERN = re.compile(
    r"(?:^|/)(?:%s)(?:-\d{4}-?\d{2}-?\d{2})?(?::[\w.-]+)?$"
    % "|".join(re.escape(marker) for marker in HIGH_QUALITY_MARKERS)
)


def is_high_quality(model_id: str) -> bool:
    return _HIGH_QUALITY_PATTERN.search(model_id) is not None


class CapabilityRegistry:
    """Read-mostly lookup of capabilities for the configured model set.

    ``available`` is the configured order: primary first, then fallbacks.
    Reads take a snapshot; ``reload`` and ``set_capability`` swap the table
    atomically so a concurrent reader sees either the old or the new table.
    """

    def __init__(
        self,
        available: Iterable[str],
        capabilities: Mapping[str, ModelCapability] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._available: tuple[str, ...] = _dedupe(available)
        self._capabilities: dict[str, ModelCapability] = dict(
            MODEL_CAPABILITIES if capabilities is None else capabilities
        )

    def get(self, model_id: str) -> ModelCapability | None:
        return self._capabilities.get(model_id)

    def capability_for(self, model_id: str) -> ModelCapability:
        """Known capability or the conservative default."""
        return self._capabilities.get(model_id) or default_capability(model_id)

    def is_available(self, model_id: str) -> bool:
        return model_id in self._available

    def available_models(self) -> tuple[str, ...]:
        return self._available

    def reload(
        self,
        capabilities: Mapping[str, ModelCapability],
        available: Iterable[str] | None = None,
    ) -> None:
        """Replace the capability table (and optionally the model set)."""
        new_table = dict(capabilities)
        new_available = _dedupe(available) if available is not None else None
        with self._lock:
            self._capabilities = new_table
            if new_available is not None:
                self._available = new_available
        log.info(
            "Capability registry reloaded: %d models, %d available",
            len(new_table),
            len(self._available),
        )

    def set_capability(self, capability: ModelCapability) -> None:
        with self._lock:
            table = dict(self._capabilities)
            table[capability.model_id] = capability
            self._capabilities = table
        log.debug("Updated capability for %s", capability.model_id)

    def update_capability(self, model_id: str, **changes: object) -> ModelCapability:
        """Patch selected fields of a model's capability, starting from the default."""
        updated = replace(self.capability_for(model_id), **changes)  # type: ignore[arg-type]
        self.set_capability(updated)
        return updated

    def estimate_cost(
        self, model_id: str, prompt_tokens: int, completion_tokens: int
    ) -> float:
        cap = self.get(model_id)
        if cap is None:
            return 0.0
        return (
            prompt_tokens * cap.price_per_prompt_token
            + completion_tokens * cap.price_per_completion_token
        )

    def preferred_models(self, use_case: UseCase) -> tuple[str, ...]:
        """Available models suited to a use case, best first."""
        available = self._available
        if use_case == "vision":
            vision = [m for m in available if self.capability_for(m).supports_images]
            return tuple(sorted(vision, key=priority_key(VISION_PRIORITY)))
        if use_case == "high-quality":
            return tuple(m for m in available if is_high_quality(m))
        if use_case == "fast":
            return tuple(
                m for m in available if any(marker in m for marker in FAST_MARKERS)
            )
        return available


def _dedupe(models: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for model in models:
        if model:
            seen.setdefault(model, None)
    return tuple(seen)


def priority_key(priority: tuple[str, ...]):
    """Sort key placing listed models first in list order; others keep order."""
    rank = {model: i for i, model in enumerate(priority)}
    return lambda model: rank.get(model, len(priority))
