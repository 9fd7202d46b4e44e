"""Base protocol for pipeline stage handlers."""

from typing import Protocol, TypeVar

from vision_bridge.core.exceptions import VisionBridgeError
from vision_bridge.core.types import Result

# Contravariant input (handlers can accept supertypes), invariant output
T_In = TypeVar("T_In", contravariant=True)
T_Out = TypeVar("T_Out")
T_Error = TypeVar("T_Error", bound=VisionBridgeError)


class BaseAsyncHandler(Protocol[T_In, T_Out, T_Error]):
    """Protocol for asynchronous pipeline stages.

    Each stage performs one transformation and reports failure as data,
    so the orchestrator can decide between fallback and termination.
    """

    async def handle(self, command: T_In) -> Result[T_Out, T_Error]:
        """Process one stage input.

        Args:
            command: The value produced by the previous stage.

        Returns:
            A Result holding either the next value or a classified error.
        """
        ...
