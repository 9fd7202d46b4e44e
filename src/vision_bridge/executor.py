"""The primary entry point: runs one tool invocation through the pipeline.

Each request moves through ``NORMALIZING -> SELECTING -> INVOKING ->
TRANSFORMING``; a failed selection check or upstream call excludes that
model and loops back to ``SELECTING`` while candidates remain. The executor
never raises for pipeline failures. Every terminal failure becomes an
error-shaped ``BridgeResponse`` with zero confidence.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import time
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self

import httpx

from vision_bridge.config import BridgeConfig, resolve_config
from vision_bridge.core.exceptions import (
    CapabilityMismatchError,
    NoCandidateModelError,
    RequestTimeoutError,
    ResponseFormatError,
    UpstreamError,
    VisionBridgeError,
)
from vision_bridge.core.models import CapabilityRegistry
from vision_bridge.core.types import (
    BridgeResponse,
    Failure,
    ModelSelection,
    NormalizedImage,
    StreamEvent,
    StreamFailed,
    ToolInvocation,
    parse_image_reference,
)
from vision_bridge.pipeline.circuit_breaker import BreakerRegistry
from vision_bridge.pipeline.image_normalizer import ImageNormalizer
from vision_bridge.pipeline.model_selector import ModelSelector
from vision_bridge.pipeline.response_normalizer import (
    NormalizeCommand,
    NormalizerOptions,
    ResponseNormalizer,
    error_response,
)
from vision_bridge.pipeline.upstream import (
    UpstreamCall,
    UpstreamInvoker,
    build_chat_payload,
)
from vision_bridge.telemetry import TelemetryContext
from vision_bridge.tools import ToolRequest, build_tool_request

if TYPE_CHECKING:
    from vision_bridge.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

# --- Telemetry scopes/keys ---
T_STAGE = "pipeline.stage"
T_FALLBACK = "pipeline.fallback"
T_ERROR = "pipeline.error"


class Stage(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    SELECTING = "selecting"
    INVOKING = "invoking"
    TRANSFORMING = "transforming"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _RequestState:
    """Per-request bookkeeping; lives and dies with one execute call."""

    stage: Stage = Stage.IDLE
    excluded: set[str] = field(default_factory=set)
    attempted: list[str] = field(default_factory=list)
    last_error: VisionBridgeError | None = None

    @property
    def models_attempted(self) -> tuple[str, ...]:
        return tuple(self.attempted)


class BridgeExecutor:
    """Runs tool invocations through normalization, selection, invocation
    and response normalization.

    Shared collaborators (capability registry, breaker registry, HTTP client)
    may be injected; anything not injected is built from ``config``. A client
    created here is owned by the executor and closed by ``aclose()``.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        registry: CapabilityRegistry | None = None,
        breakers: BreakerRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
        telemetry: TelemetryContextProtocol | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config
        self._telemetry: TelemetryContextProtocol = telemetry or TelemetryContext()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.call_timeout)

        self.registry = registry or CapabilityRegistry(config.models)
        self.breakers = breakers or BreakerRegistry(config.breaker_policy, clock=clock)
        self.image_normalizer = ImageNormalizer(
            config.image_policy, client=self._client, telemetry=self._telemetry
        )
        self.selector = ModelSelector(self.registry, telemetry=self._telemetry)
        self.invoker = UpstreamInvoker(
            self._client,
            api_key=config.api_key,
            base_url=config.base_url,
            breakers=self.breakers,
            retry_policy=config.retry_policy,
            call_timeout=config.call_timeout,
            sleep=sleep,
            clock=clock,
            telemetry=self._telemetry,
        )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # --- Single-shot ---

    async def execute(self, invocation: ToolInvocation) -> BridgeResponse:
        """Run one tool invocation to a final response. Never raises for
        pipeline failures; cancellation still propagates."""
        state = _RequestState()
        try:
            async with asyncio.timeout(self.config.request_timeout):
                return await self._run(invocation, state)
        except TimeoutError:
            return self._timeout_response(state)

    async def _run(self, invocation: ToolInvocation, state: _RequestState) -> BridgeResponse:
        prepared = await self._prepare(invocation, state)
        if isinstance(prepared, BridgeResponse):
            return prepared
        request, image = prepared
        payload = build_chat_payload(
            request.prompt,
            image,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )

        while True:
            selection = self._select(request, image, state)
            if isinstance(selection, BridgeResponse):
                return selection
            if selection is None:
                continue

            self._enter(state, Stage.INVOKING, model=selection.model_id)
            state.attempted.append(selection.model_id)
            with self._telemetry(T_STAGE, stage=Stage.INVOKING.value):
                result = await self.invoker.handle(UpstreamCall(payload, selection))
            if isinstance(result, Failure):
                terminal = self._reject(request, state, selection.model_id, result.error)
                if terminal is not None:
                    return terminal
                continue

            self._enter(state, Stage.TRANSFORMING)
            with self._telemetry(T_STAGE, stage=Stage.TRANSFORMING.value):
                try:
                    normalized = await self._response_normalizer(request).handle(
                        NormalizeCommand(
                            raw=result.value.body,
                            tool_kind=request.tool_kind,
                            model_id=selection.model_id,
                            detail_level=request.detail_level,
                            language=request.language,
                        )
                    )
                except Exception as e:
                    log.exception(
                        "Response normalization crashed for %s", selection.model_id
                    )
                    error = ResponseFormatError(
                        f"Could not normalize response: {type(e).__name__}: {e}"
                    )
                    error.__cause__ = e
                    return self._fail(state, error, model_used=selection.model_id)
            if isinstance(normalized, Failure):
                return self._fail(state, normalized.error, model_used=selection.model_id)

            self._enter(state, Stage.DONE)
            return replace(
                normalized.value,
                model_used=selection.model_id,
                models_attempted=state.models_attempted,
            )

    # --- Streaming ---

    async def execute_streaming(
        self, invocation: ToolInvocation
    ) -> AsyncIterator[BridgeResponse]:
        """Yield partial responses as text arrives, then one final response.

        Falls back to the next candidate only while nothing has been yielded
        for the current model. The request deadline bounds every wait on the
        pipeline but not the time the consumer spends between items.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.request_timeout
        state = _RequestState()

        try:
            async with asyncio.timeout_at(deadline):
                prepared = await self._prepare(invocation, state)
        except TimeoutError:
            yield self._timeout_response(state)
            return
        if isinstance(prepared, BridgeResponse):
            yield prepared
            return
        request, image = prepared
        payload = build_chat_payload(
            request.prompt,
            image,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
            stream=True,
        )

        while True:
            selection = self._select(request, image, state)
            if isinstance(selection, BridgeResponse):
                yield selection
                return
            if selection is None:
                continue

            self._enter(state, Stage.INVOKING, model=selection.model_id)
            state.attempted.append(selection.model_id)
            async with aclosing(
                self.invoker.invoke_streaming(payload, selection)
            ) as events:
                try:
                    async with asyncio.timeout_at(deadline):
                        first = await anext(events)
                except TimeoutError:
                    yield self._timeout_response(state)
                    return

                if isinstance(first, StreamFailed):
                    terminal = self._reject(
                        request, state, selection.model_id, first.error
                    )
                    if terminal is not None:
                        yield terminal
                        return
                    continue

                self._enter(state, Stage.TRANSFORMING)
                normalizer = self._response_normalizer(request)
                async with aclosing(
                    normalizer.normalize_stream(
                        _resume(first, events, deadline),
                        request.tool_kind,
                        model_id=selection.model_id,
                        detail_level=request.detail_level,
                        language=request.language,
                    )
                ) as responses:
                    async for response in responses:
                        if not response.partial:
                            self._enter(
                                state, Stage.FAILED if response.is_error else Stage.DONE
                            )
                            response = replace(
                                response, models_attempted=state.models_attempted
                            )
                        yield response
            return

    # --- Stages ---

    async def _prepare(
        self, invocation: ToolInvocation, state: _RequestState
    ) -> tuple[ToolRequest, NormalizedImage] | BridgeResponse:
        """NORMALIZING: validate arguments and normalize the image."""
        self._enter(state, Stage.NORMALIZING, tool=invocation.tool_name)
        with self._telemetry(T_STAGE, stage=Stage.NORMALIZING.value):
            try:
                request = build_tool_request(
                    invocation,
                    primary_model=self.config.primary_model,
                    default_max_tokens=self.config.default_max_tokens,
                    default_temperature=self.config.default_temperature,
                )
                reference = parse_image_reference(request.image_url)
            except VisionBridgeError as e:
                return self._fail(state, e)

            result = await self.image_normalizer.handle(reference)
        if isinstance(result, Failure):
            return self._fail(state, result.error)
        return request, result.value

    def _select(
        self, request: ToolRequest, image: NormalizedImage, state: _RequestState
    ) -> ModelSelection | BridgeResponse | None:
        """SELECTING: pick a model and check it can take this image.

        Returns the selection, a terminal response, or None when the pick was
        rejected and another candidate should be tried.
        """
        self._enter(state, Stage.SELECTING)
        try:
            selection = self.selector.select(request.routing, excluded=state.excluded)
        except NoCandidateModelError as e:
            return self._fail(state, state.last_error or e)

        capability = self.registry.capability_for(selection.model_id)
        check = self.image_normalizer.validate_for_model(image, capability)
        if check.valid:
            return selection
        mismatch = CapabilityMismatchError(selection.model_id, check.issues)
        return self._reject(request, state, selection.model_id, mismatch)

    def _reject(
        self,
        request: ToolRequest,
        state: _RequestState,
        model_id: str,
        error: VisionBridgeError,
    ) -> BridgeResponse | None:
        """Exclude a model; return a terminal response when no fallback remains."""
        state.excluded.add(model_id)
        state.last_error = error
        if request.routing.fallback_allowed and self.selector.has_candidates(
            request.routing, state.excluded
        ):
            log.warning(
                "Model %s failed (%s): %s; falling back",
                model_id,
                error.code,
                error,
            )
            self._telemetry.count(T_FALLBACK, model=model_id, code=error.code)
            return None
        return self._fail(state, error, model_used=model_id)

    # --- Helpers ---

    def _response_normalizer(self, request: ToolRequest) -> ResponseNormalizer:
        return ResponseNormalizer(
            NormalizerOptions(
                max_response_length=self.config.max_response_length,
                stream_chunk_size=self.config.stream_chunk_size,
                add_analysis_prefix=request.add_analysis_prefix,
                preserve_formatting=request.preserve_formatting,
            ),
            telemetry=self._telemetry,
        )

    def _enter(self, state: _RequestState, stage: Stage, **detail: Any) -> None:
        log.debug("Request %s -> %s %s", state.stage.value, stage.value, detail or "")
        state.stage = stage

    def _fail(
        self,
        state: _RequestState,
        error: VisionBridgeError,
        *,
        model_used: str | None = None,
    ) -> BridgeResponse:
        failed_in = state.stage
        self._enter(state, Stage.FAILED)
        self._telemetry.count(T_ERROR, stage=failed_in.value, code=error.code)
        log.error(
            "Request failed in %s stage (%s): %s", failed_in.value, error.code, error
        )
        return error_response(
            _describe(error),
            error=error,
            stage=failed_in.value,
            model_used=model_used,
            models_attempted=state.models_attempted,
        )

    def _timeout_response(self, state: _RequestState) -> BridgeResponse:
        error = RequestTimeoutError(
            f"Request exceeded {self.config.request_timeout:g}s deadline"
        )
        return self._fail(state, error)


async def _resume(
    first: StreamEvent, events: AsyncIterator[StreamEvent], deadline: float
) -> AsyncIterator[StreamEvent]:
    """Re-attach an already consumed first event, bounding each wait by the deadline."""
    yield first
    while True:
        try:
            async with asyncio.timeout_at(deadline):
                event = await anext(events)
        except StopAsyncIteration:
            return
        except TimeoutError:
            yield StreamFailed(RequestTimeoutError("Stream exceeded request deadline"))
            return
        yield event


def _describe(error: VisionBridgeError) -> str:
    if isinstance(error, UpstreamError):
        return error.message
    return str(error)


def create_executor(config: BridgeConfig | None = None, **kwargs: Any) -> BridgeExecutor:
    """Create an executor, resolving configuration when none is given.

    This is the only place where ambient configuration is resolved; the
    pipeline itself never reads the environment or files.

    Args:
        config: Frozen configuration. When None, ``resolve_config()`` is used.
        **kwargs: Passed through to ``BridgeExecutor`` (registry, breakers,
            http_client, telemetry, sleep, clock).
    """
    final_config = config if config is not None else resolve_config().to_frozen()
    return BridgeExecutor(final_config, **kwargs)
