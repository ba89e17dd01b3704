"""Task Executor.

Runs one task for a client at a stage: task logic, artifact writing, the
integrity check, and persistence of ``{task}.json`` / ``{task}.md``.  A
result is always durable on disk before :meth:`TaskExecutor.run`
returns, so a consolidator can safely re-read it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from src.pipeline_shared.models import (
    ClientContext,
    Issue,
    Severity,
    TaskMetadata,
    TaskResult,
    TaskStatus,
)
from src.pipeline_shared.utils import atomic_write_json, atomic_write_text, ensure_dir, now_iso
from src.stage_pipeline.artifacts import ArtifactChecker, apply_integrity
from src.stage_pipeline.budget import BudgetLedger
from src.stage_pipeline.documents import DocumentGenerator
from src.stage_pipeline.exceptions import (
    BudgetExceededError,
    ConfigurationError,
    TaskExecutionError,
    TaskTimeoutError,
)
from src.stage_pipeline.metered import MeteredClient
from src.stage_pipeline.report import render_task_markdown
from src.stage_pipeline.tasks import TaskContext, TaskOutput, TaskSpec, run_task_logic

logger = logging.getLogger(__name__)


def persist_result(result: TaskResult, stage_dir: Path, display_name: str) -> tuple[Path, Path]:
    """Write ``{task}.json`` and ``{task}.md`` into *stage_dir*."""
    json_path = stage_dir / f"{result.task}.json"
    md_path = stage_dir / f"{result.task}.md"
    atomic_write_json(json_path, result.to_dict())
    atomic_write_text(md_path, render_task_markdown(result, display_name))
    return json_path, md_path


class TaskExecutor:
    """Executes task specs and persists their results.

    Parameters
    ----------
    output_root:
        Root of ``{output_root}/{client}/{stage}/``.
    timeout_s:
        Deadline per task.
    run_id:
        Current run id, forwarded to metered calls.
    metered:
        Optional metered client; when given, every task makes one metered
        call through *ledger* before its logic runs.
    ledger:
        Budget ledger, required together with *metered*.
    """

    def __init__(
        self,
        output_root: Path | str,
        timeout_s: float = 300,
        run_id: str | None = None,
        documents: DocumentGenerator | None = None,
        checker: ArtifactChecker | None = None,
        metered: MeteredClient | None = None,
        ledger: BudgetLedger | None = None,
    ) -> None:
        if metered is not None and ledger is None:
            raise ConfigurationError("A budget ledger is required for metered calls")
        self._output_root = Path(output_root)
        self._timeout = timeout_s
        self._run_id = run_id
        self._documents = documents or DocumentGenerator()
        self._checker = checker or ArtifactChecker()
        self._metered = metered
        self._ledger = ledger

    def stage_dir(self, context: ClientContext, stage: str) -> Path:
        return self._output_root / context.slug / stage

    async def run(self, spec: TaskSpec, context: ClientContext, stage: str) -> TaskResult:
        """Run *spec* under the configured deadline.

        Raises:
            TaskTimeoutError: If the task exceeds its deadline.
            TaskExecutionError: For any failure other than a budget denial.
        """
        try:
            return await asyncio.wait_for(self._run(spec, context, stage), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Task %s timed out after %ss", spec.name, self._timeout)
            raise TaskTimeoutError(spec.name, self._timeout) from exc

    async def _run(self, spec: TaskSpec, context: ClientContext, stage: str) -> TaskResult:
        start = time.monotonic()
        stage_dir = await asyncio.to_thread(ensure_dir, self.stage_dir(context, stage))
        ctx = TaskContext(
            spec=spec,
            client=context,
            stage=stage,
            output_root=self._output_root,
            documents=self._documents,
        )
        metadata = TaskMetadata()

        try:
            if self._metered is not None:
                prompt = self._prompt(spec, context, stage)
                response = await self._metered.call(
                    self._ledger,
                    client=context.slug,
                    stage=stage,
                    prompt=prompt,
                    run_id=self._run_id,
                    estimate=self._metered.estimate(prompt),
                )
                metadata.tokens_used = response.tokens
                metadata.cost_usd = response.cost_usd
            # Blocking work stays off the event loop.
            output = await asyncio.to_thread(run_task_logic, ctx)
        except BudgetExceededError as exc:
            logger.warning("Task %s denied by budget: %s", spec.name, exc)
            result = self._budget_blocked(spec, context, stage, exc)
        except Exception as exc:
            raise TaskExecutionError(spec.name, f"Task '{spec.name}' failed: {exc}") from exc
        else:
            await self._write_artifacts(output, ctx, stage_dir)
            result = self._to_result(spec, context, stage, output)
            check = await asyncio.to_thread(self._checker.check, result.deliverables, stage_dir)
            if not check.valid:
                logger.warning(
                    "Task %s declared %d missing artifact(s): %s",
                    spec.name,
                    len(check.missing),
                    ", ".join(m.file for m in check.missing),
                )
            apply_integrity(result, check)

        metadata.duration_ms = int((time.monotonic() - start) * 1000)
        result.metadata = metadata
        await asyncio.to_thread(persist_result, result, stage_dir, context.display_name)
        logger.info("Task %s finished for %s/%s: %s", spec.name, context.slug, stage, result.status.value)
        return result

    @staticmethod
    def _prompt(spec: TaskSpec, context: ClientContext, stage: str) -> str:
        reqs = "; ".join(context.functional_requirements) or "none listed"
        return (
            f"{spec.description} for {context.display_name} at stage {stage}. "
            f"Functional requirements: {reqs}."
        )

    async def _write_artifacts(self, output: TaskOutput, ctx: TaskContext, stage_dir: Path) -> None:
        """Render and write every declared deliverable off the event loop."""
        await asyncio.to_thread(self._write_files, output, ctx, stage_dir)

    def _write_files(self, output: TaskOutput, ctx: TaskContext, stage_dir: Path) -> None:
        # A file that cannot be written is only logged; the integrity check
        # then reports it as missing.
        for name, filename in output.deliverables.items():
            content = self._documents.render(name, filename, ctx.client, ctx.stage, output.payloads)
            try:
                atomic_write_text(stage_dir / filename, content)
            except OSError as exc:
                logger.warning("Could not write %s for %s: %s", filename, ctx.spec.name, exc)

    def _to_result(
        self, spec: TaskSpec, context: ClientContext, stage: str, output: TaskOutput
    ) -> TaskResult:
        return TaskResult(
            task=spec.name,
            version=spec.version,
            client=context.slug,
            stage=stage,
            status=output.status,
            summary=output.summary,
            deliverables=dict(output.deliverables),
            decisions=list(output.decisions),
            issues=list(output.issues),
            next_steps=list(output.next_steps),
            endpoints=list(output.endpoints),
            screens=list(output.screens),
            timestamp=now_iso(),
        )

    @staticmethod
    def _budget_blocked(
        spec: TaskSpec, context: ClientContext, stage: str, exc: BudgetExceededError
    ) -> TaskResult:
        return TaskResult(
            task=spec.name,
            version=spec.version,
            client=context.slug,
            stage=stage,
            status=TaskStatus.BLOCKED,
            summary=f"{spec.name} denied by budget",
            issues=[
                Issue(
                    severity=Severity.CRITICAL.value,
                    description=str(exc),
                    recommendation="Raise the budget ceiling or wait for the next period",
                    details={"scope": exc.scope, "spent": exc.spent, "limit": exc.limit},
                )
            ],
            timestamp=now_iso(),
        )
