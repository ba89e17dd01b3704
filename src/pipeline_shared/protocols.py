"""Runtime-checkable protocols for pipeline collaborators."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from src.pipeline_shared.models import ClientContext, TaskResult


@runtime_checkable
class TaskRunner(Protocol):
    """Protocol for task executors driven by the parallel group runner."""

    async def run(self, spec: Any, context: ClientContext, stage: str) -> TaskResult:
        """Run the task described by *spec* for *context* at *stage*.

        Artifacts must be on disk and the result persisted before this
        returns.
        """
        ...


@runtime_checkable
class AlertSink(Protocol):
    """Protocol for fire-and-forget alert delivery."""

    async def send(self, event: dict[str, Any]) -> bool:
        """Deliver *event*.

        Returns:
            True when delivered.  Implementations never raise.
        """
        ...
