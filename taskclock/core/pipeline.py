"""Contract of the external message-generation pipeline a task runs through."""

from __future__ import annotations

from typing import Any, Protocol


class GenerationPipeline(Protocol):
    """
    Whatever turns a stored payload into a generated message.

    The scheduler treats it as opaque: it passes the payload through, records
    a success when the call returns and records the exception message when it
    raises. Lease takeover can invoke it twice for the same occurrence, so an
    implementation must tolerate a rare duplicate call.
    """

    async def invoke(
        self,
        payload: dict[str, Any],
        user_id: str,
        start_time: float,
    ) -> Any:
        """
        Args:
            payload: The task's stored payload document
            user_id: Owner of the task, on whose behalf the message is generated
            start_time: Unix timestamp (seconds) at which the run started

        Returns:
            Pipeline-specific result, returned to on-demand callers as-is
        """
        ...
