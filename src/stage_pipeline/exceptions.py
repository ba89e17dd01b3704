"""Custom exceptions for the stage pipeline control plane."""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ConfigurationError(PipelineError):
    """Raised for configuration issues (bad YAML, unknown pipeline, etc.)."""

    pass


class ClientNotFoundError(PipelineError):
    """Raised when a client slug is absent from the registry."""

    def __init__(self, slug: str) -> None:
        self.slug = slug
        super().__init__(f"Client '{slug}' not found in registry")


class BudgetExceededError(PipelineError):
    """Raised when a spend ceiling would be crossed."""

    def __init__(self, scope: str, spent: float, limit: float) -> None:
        self.scope = scope
        self.spent = spent
        self.limit = limit
        super().__init__(
            f"Budget exceeded ({scope}): ${spent:.2f} spent, limit is ${limit:.2f}"
        )


class TaskExecutionError(PipelineError):
    """Raised when a task executor fails for a reason other than budget."""

    def __init__(self, task: str = "", message: str = "") -> None:
        self.task = task
        super().__init__(message or f"Task '{task}' failed")


class TaskTimeoutError(TaskExecutionError):
    """Raised when a task exceeds its deadline."""

    def __init__(self, task: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(task, f"Task '{task}' timed out after {timeout}s")


class TaskGroupError(PipelineError):
    """Raised after the join barrier when one or more group members raised."""

    def __init__(self, failures: dict[str, BaseException]) -> None:
        self.failures = failures
        detail = "; ".join(f"{name}: {exc}" for name, exc in failures.items())
        super().__init__(f"{len(failures)} task(s) failed: {detail}")


class ManifestExistsError(PipelineError):
    """Raised when a manifest for the run id has already been written."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Manifest for run '{run_id}' already exists")


class MeteredCallError(PipelineError):
    """Raised when a metered call fails after retries or with a client error."""

    def __init__(self, status_code: int | None = None, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Metered call failed (status={status_code})")
