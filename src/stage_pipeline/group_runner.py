"""Parallel Group Runner.

Starts every member of a task group concurrently, joins on all of them,
and only then hands the persisted results to the consolidator.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from src.pipeline_shared.models import ClientContext, ConsolidatedResult, TaskResult
from src.pipeline_shared.protocols import TaskRunner
from src.stage_pipeline.exceptions import TaskGroupError

logger = logging.getLogger(__name__)


@dataclass
class GroupOutcome:
    """Results of one group in spec order, plus the consolidation if any."""

    results: list[TaskResult] = field(default_factory=list)
    consolidated: ConsolidatedResult | None = None


class ParallelGroupRunner:
    """Runs task groups behind a join barrier.

    The concurrency is gated by a semaphore created per group.  Member
    failures never cancel siblings; they are collected and raised
    together as :class:`TaskGroupError` after every member has settled.
    """

    def __init__(
        self,
        runner: TaskRunner,
        max_concurrent: int = 3,
        consolidator: Any | None = None,
    ) -> None:
        self._runner = runner
        self._max_concurrent = max(1, max_concurrent)
        self._consolidator = consolidator

    async def run_group(
        self, specs: list[Any], context: ClientContext, stage: str
    ) -> list[TaskResult]:
        """Run *specs* concurrently and return results in spec order.

        Raises:
            TaskGroupError: If any member raised.
        """
        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def _run_one(spec: Any) -> TaskResult:
            async with semaphore:
                return await self._runner.run(spec, context, stage)

        logger.info(
            "Running %d task(s) for %s/%s (max %d concurrent)",
            len(specs),
            context.slug,
            stage,
            self._max_concurrent,
        )
        settled = await asyncio.gather(
            *(_run_one(spec) for spec in specs), return_exceptions=True
        )

        failures: dict[str, BaseException] = {}
        results: list[TaskResult] = []
        for spec, item in zip(specs, settled):
            if isinstance(item, BaseException):
                failures[spec.name] = item
                logger.error("Task %s failed: %s", spec.name, item)
            else:
                results.append(item)
        if failures:
            raise TaskGroupError(failures)
        return results

    async def run(
        self,
        specs: list[Any],
        context: ClientContext,
        stage: str,
        on_joined: Callable[[], Awaitable[Any]] | None = None,
    ) -> GroupOutcome:
        """Run the group and consolidate when it has more than one member.

        *on_joined* is awaited after the barrier, right before the
        consolidator reads the persisted results.
        """
        results = await self.run_group(specs, context, stage)
        outcome = GroupOutcome(results=results)
        if len(specs) > 1 and self._consolidator is not None:
            if on_joined is not None:
                await on_joined()
            outcome.consolidated = await asyncio.to_thread(
                self._consolidator.consolidate, stage, context, [spec.name for spec in specs]
            )
        return outcome
