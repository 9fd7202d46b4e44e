"""Upstream invocation stage: retries, circuit breaking and SSE streaming.

The invoker owns no retry *policy* logic of its own; every failure is
classified by ``pipeline.classification`` and the returned decision is
executed here with an injected ``sleep`` and ``clock``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import aclosing
from dataclasses import dataclass
import json
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from vision_bridge.constants import (
    CHAT_COMPLETIONS_PATH,
    DEFAULT_APP_TITLE,
    DEFAULT_BASE_URL,
    DEFAULT_CALL_TIMEOUT,
    DEFAULT_REFERER,
    STREAMING_TIMEOUT_MULTIPLIER,
)
from vision_bridge.core.exceptions import (
    BreakerOpenError,
    UpstreamError,
    UpstreamErrorKind,
)
from vision_bridge.core.types import (
    Failure,
    ModelSelection,
    NormalizedImage,
    Result,
    StreamDelta,
    StreamDone,
    StreamEvent,
    StreamFailed,
    Success,
)
from vision_bridge.pipeline.base import BaseAsyncHandler
from vision_bridge.pipeline.circuit_breaker import BreakerRegistry, CircuitBreaker
from vision_bridge.pipeline.classification import (
    RetryPolicy,
    classify_exception,
    classify_status,
    next_retry,
)
from vision_bridge.telemetry import TelemetryContext

if TYPE_CHECKING:
    from vision_bridge.telemetry import TelemetryContextProtocol

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]

# --- Telemetry scopes/keys ---
T_INVOKE = "upstream.invoke"
T_STREAM = "upstream.stream"
T_RETRY = "upstream.retry"
T_BREAKER_TRIPPED = "breaker.tripped"


@dataclass(frozen=True, slots=True)
class UpstreamResponse:
    """A successful provider response and what it took to get it."""

    body: Mapping[str, Any]
    model_id: str
    attempts: int
    elapsed: float


@dataclass(frozen=True, slots=True)
class UpstreamCall:
    """Stage input for ``UpstreamInvoker.handle``."""

    payload: Mapping[str, Any]
    selection: ModelSelection


def build_chat_payload(
    prompt: str,
    image: NormalizedImage | None,
    *,
    max_tokens: int,
    temperature: float,
    stream: bool = False,
) -> dict[str, Any]:
    """Build a chat-completions body; the model id is filled in per attempt."""
    content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    if image is not None:
        content.append({"type": "image_url", "image_url": {"url": image.provider_uri}})
    payload: dict[str, Any] = {
        "messages": [{"role": "user", "content": content}],
        "max_tokens": max_tokens,
        "temperature": temperature,
    }
    if stream:
        payload["stream"] = True
    return payload


class UpstreamInvoker(BaseAsyncHandler[UpstreamCall, UpstreamResponse, UpstreamError]):
    """Calls the chat-completions endpoint for a selected model."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        breakers: BreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        telemetry: TelemetryContextProtocol | None = None,
        referer: str = DEFAULT_REFERER,
        app_title: str = DEFAULT_APP_TITLE,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._breakers = breakers or BreakerRegistry()
        self._retry_policy = retry_policy or RetryPolicy()
        self._call_timeout = call_timeout
        self._sleep = sleep
        self._clock = clock
        self._telemetry: TelemetryContextProtocol = telemetry or TelemetryContext()
        self._referer = referer
        self._app_title = app_title

    @property
    def endpoint_url(self) -> str:
        return f"{self._base_url}{CHAT_COMPLETIONS_PATH}"

    @property
    def breakers(self) -> BreakerRegistry:
        return self._breakers

    def breaker_for(self, model_id: str) -> CircuitBreaker:
        return self._breakers.get(self._base_url, model_id)

    async def handle(self, command: UpstreamCall) -> Result[UpstreamResponse, UpstreamError]:
        try:
            return Success(await self.invoke(command.payload, command.selection))
        except UpstreamError as e:
            return Failure(e)

    # --- Non-streaming ---

    async def invoke(
        self, payload: Mapping[str, Any], selection: ModelSelection
    ) -> UpstreamResponse:
        """Call the provider with retries.

        Raises:
            BreakerOpenError: the endpoint's breaker rejected the call.
            UpstreamError: a non-retryable failure, or retries were exhausted.
        """
        model_id = selection.model_id
        breaker = self.breaker_for(model_id)
        body = {**payload, "model": model_id}
        body.pop("stream", None)
        start = self._clock()
        attempt = 0

        with self._telemetry(T_INVOKE, model=model_id):
            while True:
                attempt += 1
                trial = breaker.before_call()
                try:
                    data = await self._post_once(body)
                except UpstreamError as err:
                    self._record_failure(breaker, err)
                    decision = next_retry(err, attempt, self._retry_policy)
                    if not decision.retry:
                        log.warning(
                            "Upstream call failed for %s after %d attempt(s): %s",
                            model_id,
                            attempt,
                            err.message,
                        )
                        raise
                    self._note_retry(model_id, attempt, err, decision.delay)
                    await self._sleep(decision.delay)
                    continue
                except BaseException:
                    if trial:
                        breaker.release_trial()
                    raise

                breaker.record_success()
                elapsed = self._clock() - start
                self._telemetry.gauge("upstream.attempts", attempt, model=model_id)
                return UpstreamResponse(
                    body=data, model_id=model_id, attempts=attempt, elapsed=elapsed
                )

    async def _post_once(self, body: Mapping[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self.endpoint_url,
                json=body,
                headers=self._headers(),
                timeout=self._call_timeout,
            )
        except httpx.RequestError as e:
            raise classify_exception(e) from e

        if not response.is_success:
            raise classify_status(
                response.status_code, headers=response.headers, body=response.content
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(
                UpstreamErrorKind.UNKNOWN,
                "Malformed response body from provider",
                retryable=False,
                status=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise UpstreamError(
                UpstreamErrorKind.UNKNOWN,
                "Provider response is not a JSON object",
                retryable=False,
                status=response.status_code,
            )
        return data

    # --- Streaming ---

    async def invoke_streaming(
        self, payload: Mapping[str, Any], selection: ModelSelection
    ) -> AsyncIterator[StreamEvent]:
        """Yield deltas ending in exactly one ``StreamDone`` or ``StreamFailed``.

        Retries happen only before the first delta reaches the consumer; once
        text has been emitted a failure ends the stream with ``StreamFailed``.
        """
        model_id = selection.model_id
        breaker = self.breaker_for(model_id)
        body = {**payload, "model": model_id, "stream": True}
        attempt = 0

        self._telemetry.count(T_STREAM, model=model_id)
        while True:
            attempt += 1
            emitted = False
            trial = False
            try:
                trial = breaker.before_call()
                async with aclosing(self._stream_once(body)) as events:
                    async for event in events:
                        if isinstance(event, StreamDelta):
                            emitted = True
                        elif isinstance(event, StreamDone):
                            # Consumers may stop pulling after the terminal event.
                            breaker.record_success()
                        yield event
                return
            except BreakerOpenError as err:
                yield StreamFailed(err)
                return
            except UpstreamError as err:
                self._record_failure(breaker, err)
                decision = next_retry(err, attempt, self._retry_policy)
                if emitted or not decision.retry:
                    log.warning(
                        "Upstream stream failed for %s (attempt %d, emitted=%s): %s",
                        model_id,
                        attempt,
                        emitted,
                        err.message,
                    )
                    yield StreamFailed(err)
                    return
                self._note_retry(model_id, attempt, err, decision.delay)
                await self._sleep(decision.delay)
                continue
            except BaseException:
                if trial:
                    breaker.release_trial()
                raise

    async def _stream_once(self, body: Mapping[str, Any]) -> AsyncIterator[StreamEvent]:
        finish_reason: str | None = None
        usage: Mapping[str, int] | None = None
        try:
            async with self._client.stream(
                "POST",
                self.endpoint_url,
                json=body,
                headers=self._headers(),
                timeout=self._call_timeout * STREAMING_TIMEOUT_MULTIPLIER,
            ) as response:
                if not response.is_success:
                    content = await response.aread()
                    raise classify_status(
                        response.status_code, headers=response.headers, body=content
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or line.startswith(":") or not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        yield StreamDone(finish_reason=finish_reason, usage=usage)
                        return
                    try:
                        chunk = json.loads(data)
                    except ValueError:
                        log.debug("Skipping malformed stream event: %.100s", data)
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if "error" in chunk:
                        raise _in_band_error(chunk["error"])
                    if isinstance(chunk.get("usage"), dict):
                        usage = chunk["usage"]
                    choices = chunk.get("choices")
                    if not isinstance(choices, list) or not choices:
                        continue
                    choice = choices[0] if isinstance(choices[0], dict) else {}
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
                    delta = choice.get("delta")
                    text = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield StreamDelta(text)
        except httpx.RequestError as e:
            raise classify_exception(e) from e
        # Connection closed without the sentinel; what arrived is still usable.
        yield StreamDone(finish_reason=finish_reason, usage=usage)

    # --- Helpers ---

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": self._referer,
            "X-Title": self._app_title,
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _record_failure(self, breaker: CircuitBreaker, err: UpstreamError) -> None:
        # A non-retryable response still proves the endpoint is reachable.
        if not err.retryable:
            breaker.record_success()
            return
        if breaker.record_failure():
            self._telemetry.count(T_BREAKER_TRIPPED, endpoint=breaker.endpoint)

    def _note_retry(
        self, model_id: str, attempt: int, err: UpstreamError, delay: float
    ) -> None:
        log.warning(
            "Retrying %s after %s (attempt %d/%d, delay %.2fs)",
            model_id,
            err.kind.value,
            attempt,
            self._retry_policy.max_attempts,
            delay,
        )
        self._telemetry.count(T_RETRY, model=model_id, kind=err.kind.value)


def _in_band_error(error: Any) -> UpstreamError:
    if isinstance(error, dict):
        message = str(error.get("message") or "Stream error")
        code = error.get("code")
        status = code if isinstance(code, int) else None
    else:
        message, status = str(error), None
    return UpstreamError(
        UpstreamErrorKind.UNKNOWN,
        f"Provider stream error: {message}",
        retryable=False,
        status=status,
    )
