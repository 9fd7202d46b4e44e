"""Exception hierarchy for the vision bridge pipeline.

Every failure that crosses a component boundary is one of these classes, and
each class carries an ``ErrorCategory`` the orchestrator uses to decide
between retry, fallback and termination.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Coarse disposition of a failure."""

    INPUT = "input"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    BREAKER_OPEN = "breaker_open"
    INTERNAL = "internal"


class VisionBridgeError(Exception):
    """Base exception for all vision bridge errors."""

    category: ErrorCategory = ErrorCategory.INTERNAL
    code: str = "internal_error"


class ConfigurationError(VisionBridgeError):
    """Raised when configuration cannot be resolved or validated."""

    code = "configuration_error"


# --- Input errors (never retried) ---


class InputError(VisionBridgeError):
    """Caller supplied something the pipeline cannot accept."""

    category = ErrorCategory.INPUT
    code = "invalid_input"

    def __init__(self, message: str, *, field_name: str | None = None) -> None:
        self.field_name = field_name
        super().__init__(message)


class ToolArgumentError(InputError):
    """Tool name unknown or tool arguments failed validation."""

    code = "invalid_arguments"


class ImageInputError(InputError):
    """Base for image reference and payload errors."""


class InvalidImageInputError(ImageInputError):
    code = "invalid_input"


class ImageUnreachableError(ImageInputError):
    code = "unreachable"


class ImageNotFoundError(ImageInputError):
    code = "not_found"


class ImageForbiddenError(ImageInputError):
    code = "forbidden"


class ImageTooLargeError(ImageInputError):
    code = "too_large"

    def __init__(self, message: str, *, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(message)


class UnsupportedImageFormatError(ImageInputError):
    code = "unsupported_format"


class ImageDecodeError(ImageInputError):
    code = "decode_error"


# --- Upstream errors ---


class UpstreamErrorKind(str, Enum):
    """Classification of an upstream failure."""

    BAD_REQUEST = "bad_request"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class UpstreamError(VisionBridgeError):
    """A classified failure talking to the inference provider."""

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str,
        *,
        retryable: bool,
        retry_after: float | None = None,
        status: int | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.retryable = retryable
        self.retry_after = retry_after
        self.status = status
        super().__init__(message)

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return ErrorCategory.TRANSIENT if self.retryable else ErrorCategory.PERMANENT

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.kind.value

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, status={self.status!r}, "
            f"retryable={self.retryable!r}, message={self.message!r})"
        )


class BreakerOpenError(UpstreamError):
    """Raised without touching the network while an endpoint's breaker is open.

    Not retried inside the attempt loop; the orchestrator treats it as
    transient and moves on to the next candidate model.
    """

    def __init__(self, endpoint: str, *, retry_in: float | None = None) -> None:
        self.endpoint = endpoint
        super().__init__(
            UpstreamErrorKind.UNKNOWN,
            f"Circuit breaker open for {endpoint}",
            retryable=False,
            retry_after=retry_in,
        )

    @property
    def category(self) -> ErrorCategory:  # type: ignore[override]
        return ErrorCategory.BREAKER_OPEN

    @property
    def code(self) -> str:  # type: ignore[override]
        return "breaker_open"


# --- Selection / response ---


class NoCandidateModelError(VisionBridgeError):
    """No configured model is available for the request."""

    category = ErrorCategory.PERMANENT
    code = "no_candidate_model"


class CapabilityMismatchError(VisionBridgeError):
    """The selected model cannot accept this request's image."""

    category = ErrorCategory.PERMANENT
    code = "capability_mismatch"

    def __init__(self, model_id: str, issues: tuple[str, ...]) -> None:
        self.model_id = model_id
        self.issues = issues
        super().__init__(f"{model_id} rejected: {'; '.join(issues)}")


class ResponseFormatError(VisionBridgeError):
    """Upstream returned a success status with an unusable body."""

    category = ErrorCategory.INTERNAL
    code = "response_format_error"


class RequestTimeoutError(VisionBridgeError):
    """The per-request deadline expired before a response was produced."""

    category = ErrorCategory.TRANSIENT
    code = "timeout"
