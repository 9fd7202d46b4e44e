"""Model selection with computed confidence and per-request exclusion.

Selection never fails for a capability mismatch: when no candidate meets
the hard constraints the selector degrades to the unfiltered set and lowers
its confidence instead. It only raises when there is nothing left to pick.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
import logging
import math
import threading
from typing import TYPE_CHECKING

from vision_bridge.constants import LARGE_OUTPUT_THRESHOLD, SELECTION_HISTORY_SIZE
from vision_bridge.core.exceptions import NoCandidateModelError
from vision_bridge.core.models import (
    SPEED_PRIORITY,
    VISION_PRIORITY,
    CapabilityRegistry,
    is_high_quality,
    priority_key,
)
from vision_bridge.core.types import (
    ModelRequirements,
    ModelSelection,
    RoutingRequest,
    ValidationResult,
)
from vision_bridge.telemetry import TelemetryContext

if TYPE_CHECKING:
    from vision_bridge.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.5
IMAGE_MATCH_BONUS = 0.3
HIGH_QUALITY_BONUS = 0.2
IMAGE_MISMATCH_PENALTY = 0.5


@dataclass
class SelectionMetrics:
    """Running selection statistics; confidence averaged over a fixed window."""

    total_selections: int = 0
    preferred_selections: int = 0
    degraded_selections: int = 0
    model_usage: dict[str, int] = field(default_factory=dict)
    last_selection: ModelSelection | None = None
    _history: deque[float] = field(
        default_factory=lambda: deque(maxlen=SELECTION_HISTORY_SIZE)
    )

    @property
    def average_confidence(self) -> float:
        if not self._history:
            return 0.0
        return sum(self._history) / len(self._history)

    def record(self, selection: ModelSelection) -> None:
        self.total_selections += 1
        self.model_usage[selection.model_id] = (
            self.model_usage.get(selection.model_id, 0) + 1
        )
        self._history.append(selection.confidence)
        self.last_selection = selection


class ModelSelector:
    """Picks a model for a request from the registry's available set."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        telemetry: TelemetryContextProtocol | None = None,
    ) -> None:
        self._registry = registry
        self._telemetry: TelemetryContextProtocol = telemetry or TelemetryContext()
        self._metrics = SelectionMetrics()
        self._metrics_lock = threading.Lock()

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    # --- Pure checks ---

    def validate(self, model_id: str, requirements: ModelRequirements) -> ValidationResult:
        """Check a model against hard requirements; no side effects."""
        cap = self._registry.get(model_id)
        if cap is None:
            return ValidationResult(False, ("Model capabilities not known",))

        issues: list[str] = []
        if requirements.has_image and not cap.supports_images:
            issues.append("Model does not support images")
        if requirements.max_tokens and cap.max_output_tokens < requirements.max_tokens:
            issues.append(
                f"Model max tokens ({cap.max_output_tokens}) insufficient for "
                f"request ({requirements.max_tokens})"
            )
        if (
            requirements.min_context_length
            and cap.context_length < requirements.min_context_length
        ):
            issues.append(
                f"Model context length ({cap.context_length}) insufficient "
                f"({requirements.min_context_length})"
            )
        if requirements.streaming and not cap.supports_streaming:
            issues.append("Model does not support streaming")
        if requirements.has_image and requirements.image_format:
            if not cap.accepts_format(requirements.image_format):
                issues.append(
                    f"Model does not accept {requirements.image_format} images"
                )
        if requirements.has_image and requirements.image_bytes is not None:
            if requirements.image_bytes > cap.max_image_bytes:
                issues.append(
                    f"Image size ({requirements.image_bytes} bytes) exceeds model "
                    f"limit ({cap.max_image_bytes} bytes)"
                )
        return ValidationResult(valid=not issues, issues=tuple(issues))

    def confidence_for(self, model_id: str, request: RoutingRequest) -> float:
        cap = self._registry.capability_for(model_id)
        score = BASE_CONFIDENCE
        if request.has_image and cap.supports_images:
            score += IMAGE_MATCH_BONUS
        if request.requires_high_quality and is_high_quality(model_id):
            score += HIGH_QUALITY_BONUS
        if request.has_image and not cap.supports_images:
            score -= IMAGE_MISMATCH_PENALTY
        return min(max(score, 0.0), 1.0)

    def candidates(
        self, request: RoutingRequest, excluded: Iterable[str] = ()
    ) -> tuple[str, ...]:
        """Remaining candidates in selection order, best first."""
        excluded_set = frozenset(excluded)
        pool = [
            m for m in self._registry.available_models() if m not in excluded_set
        ]
        filtered = [m for m in pool if self._meets_hard_constraints(m, request)]
        ranked = filtered or pool
        return tuple(sorted(ranked, key=priority_key(VISION_PRIORITY)))

    def has_candidates(
        self, request: RoutingRequest, excluded: Iterable[str] = ()
    ) -> bool:
        excluded_set = frozenset(excluded)
        return any(
            m not in excluded_set for m in self._registry.available_models()
        )

    # --- Selection strategies ---

    def select(
        self, request: RoutingRequest, *, excluded: Iterable[str] = ()
    ) -> ModelSelection:
        """Select the best remaining model for a request.

        Raises:
            NoCandidateModelError: every available model is excluded.
        """
        excluded_set = frozenset(excluded)
        preferred = request.preferred_model
        if (
            preferred
            and preferred not in excluded_set
            and self._registry.is_available(preferred)
            and self._meets_hard_constraints(preferred, request, strict_tokens=True)
        ):
            selection = ModelSelection(
                model_id=preferred, confidence=1.0, reason="Preferred model"
            )
            return self._record(selection, preferred=True)

        ranked = self.candidates(request, excluded_set)
        if not ranked:
            raise NoCandidateModelError(
                "No candidate model available"
                + (f" (excluded: {', '.join(sorted(excluded_set))})" if excluded_set else "")
            )

        model_id = ranked[0]
        degraded = not self._meets_hard_constraints(model_id, request)
        reason = (
            "Highest priority model; no candidate met all requirements"
            if degraded
            else "Highest priority model meeting requirements"
        )
        if excluded_set:
            reason += f" (after excluding {', '.join(sorted(excluded_set))})"
        selection = ModelSelection(
            model_id=model_id,
            confidence=self.confidence_for(model_id, request),
            reason=reason,
        )
        return self._record(selection, degraded=degraded)

    def select_cost_optimized(
        self,
        request: RoutingRequest,
        *,
        prompt_tokens: int,
        completion_tokens: int,
        excluded: Iterable[str] = (),
    ) -> ModelSelection:
        """Cheapest model meeting the hard constraints."""
        excluded_set = frozenset(excluded)
        pool = [
            m for m in self._registry.available_models() if m not in excluded_set
        ]
        if not pool:
            raise NoCandidateModelError("No candidate model available")

        best_model = pool[0]
        lowest_cost = math.inf
        requirements = self._requirements(request)
        for model_id in pool:
            cost = self._registry.estimate_cost(model_id, prompt_tokens, completion_tokens)
            if cost < lowest_cost and self.validate(model_id, requirements).valid:
                lowest_cost = cost
                best_model = model_id

        estimate = 0.0 if math.isinf(lowest_cost) else lowest_cost
        selection = ModelSelection(
            model_id=best_model,
            confidence=0.8,
            reason=f"Cost-optimized selection (estimated cost: ${estimate:.4f})",
        )
        return self._record(selection)

    def select_performance_optimized(
        self, request: RoutingRequest, *, excluded: Iterable[str] = ()
    ) -> ModelSelection:
        """Fastest known model meeting the hard constraints."""
        excluded_set = frozenset(excluded)
        available = [
            m for m in self._registry.available_models() if m not in excluded_set
        ]
        if not available:
            raise NoCandidateModelError("No candidate model available")

        requirements = self._requirements(request)
        for model_id in SPEED_PRIORITY:
            if model_id in available and self.validate(model_id, requirements).valid:
                selection = ModelSelection(
                    model_id=model_id,
                    confidence=0.9,
                    reason="Performance-optimized selection",
                )
                return self._record(selection)

        selection = ModelSelection(
            model_id=available[0],
            confidence=0.6,
            reason="Performance-optimized fallback",
        )
        return self._record(selection, degraded=True)

    # --- Metrics ---

    @property
    def metrics(self) -> SelectionMetrics:
        return self._metrics

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics = SelectionMetrics()

    # --- Internals ---

    def _requirements(self, request: RoutingRequest) -> ModelRequirements:
        return ModelRequirements(has_image=request.has_image, max_tokens=request.max_tokens)

    def _meets_hard_constraints(
        self, model_id: str, request: RoutingRequest, *, strict_tokens: bool = False
    ) -> bool:
        cap = self._registry.capability_for(model_id)
        if request.has_image and not cap.supports_images:
            return False
        if request.max_tokens is not None and (
            strict_tokens or request.max_tokens > LARGE_OUTPUT_THRESHOLD
        ):
            return cap.max_output_tokens >= request.max_tokens
        return True

    def _record(
        self,
        selection: ModelSelection,
        *,
        preferred: bool = False,
        degraded: bool = False,
    ) -> ModelSelection:
        with self._metrics_lock:
            self._metrics.record(selection)
            if preferred:
                self._metrics.preferred_selections += 1
            if degraded:
                self._metrics.degraded_selections += 1
        self._telemetry.count(
            "selector.selected", model=selection.model_id, degraded=degraded
        )
        self._telemetry.gauge("selector.confidence", selection.confidence)
        log.info(
            "Model selected: %s (confidence=%.2f, reason=%s)",
            selection.model_id,
            selection.confidence,
            selection.reason,
        )
        return selection
