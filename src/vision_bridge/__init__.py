"""Vision bridge: image-capable model access for text-only callers."""

import importlib.metadata
import logging

from vision_bridge.config import BridgeConfig, ResolvedConfig, resolve_config
from vision_bridge.core.exceptions import (
    BreakerOpenError,
    ConfigurationError,
    ErrorCategory,
    ImageInputError,
    InputError,
    ToolArgumentError,
    UpstreamError,
    UpstreamErrorKind,
    VisionBridgeError,
)
from vision_bridge.core.models import CapabilityRegistry, ModelCapability
from vision_bridge.core.types import (
    BridgeErrorInfo,
    BridgeResponse,
    Failure,
    InlineEncoded,
    RemoteURL,
    Result,
    RoutingRequest,
    Success,
    ToolInvocation,
    ToolKind,
)
from vision_bridge.executor import BridgeExecutor, create_executor
from vision_bridge.pipeline.circuit_breaker import BreakerRegistry
from vision_bridge.telemetry import SimpleReporter, TelemetryContext, TelemetryReporter
from vision_bridge.tools import list_tools

# Version handling
try:
    __version__ = importlib.metadata.version("vision-bridge")
except importlib.metadata.PackageNotFoundError:
    __version__ = "development"

# Library logging stays silent unless the host application configures it.
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [  # noqa: RUF022
    # Executor
    "BridgeExecutor",
    "create_executor",
    "list_tools",
    # Configuration
    "BridgeConfig",
    "ResolvedConfig",
    "resolve_config",
    # Shared state
    "BreakerRegistry",
    "CapabilityRegistry",
    "ModelCapability",
    # Telemetry (extension points)
    "SimpleReporter",
    "TelemetryContext",
    "TelemetryReporter",
    # Types
    "BridgeErrorInfo",
    "BridgeResponse",
    "Failure",
    "InlineEncoded",
    "RemoteURL",
    "Result",
    "RoutingRequest",
    "Success",
    "ToolInvocation",
    "ToolKind",
    # Exceptions
    "BreakerOpenError",
    "ConfigurationError",
    "ErrorCategory",
    "ImageInputError",
    "InputError",
    "ToolArgumentError",
    "UpstreamError",
    "UpstreamErrorKind",
    "VisionBridgeError",
]
