"""Stage Pipeline Driver.

Drives one stage invocation through the state machine::

    idle -> gate_check -> budget_check -> executing -> [consolidating]
         -> manifest_written -> success | blocked | failed

Every invocation that gets past client loading writes exactly one run
manifest, including gate and budget denials (zero artifacts) and
executor failures (best effort).  The caller receives a tagged
:class:`StageOutcome` instead of a bare status string.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from src.pipeline_shared.constants import (
    ALERT_BLOCKED,
    ALERT_FAILED,
    ALERT_PRODUCTION_ATTEMPT,
    CONSOLIDATOR_NAME,
    CONSOLIDATOR_VERSION,
)
from src.pipeline_shared.logging import run_id_var
from src.pipeline_shared.models import (
    AgentEntry,
    ClientContext,
    ConsolidatedResult,
    RunManifest,
    RunMetrics,
    StageFamily,
    TaskResult,
    TaskStatus,
    aggregate_status,
)
from src.pipeline_shared.utils import load_json, new_run_id, now_iso
from src.stage_pipeline.alerts import AlertDispatcher, make_sink
from src.stage_pipeline.budget import BudgetDecision, BudgetLedger
from src.stage_pipeline.clients import ClientStore
from src.stage_pipeline.config import PipelineConfig, PipelineSettings
from src.stage_pipeline.consolidator import Consolidator
from src.stage_pipeline.exceptions import (
    ConfigurationError,
    PipelineError,
    TaskExecutionError,
    TaskGroupError,
)
from src.stage_pipeline.executor import TaskExecutor
from src.stage_pipeline.gates import GateDecision, GatePolicyEngine
from src.stage_pipeline.group_runner import ParallelGroupRunner
from src.stage_pipeline.manifest import ManifestStore
from src.stage_pipeline.metered import MeteredClient
from src.stage_pipeline.state_machine import FINISH_TRIGGERS, create_stage_machine
from src.stage_pipeline.tasks import TaskCatalog, TaskSpec

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class StageOutcome:
    """Common fields of every stage outcome."""

    run_id: str
    stage: str
    client: str
    manifest_path: Path | None = None
    results: list[TaskResult] = field(default_factory=list)
    consolidated: ConsolidatedResult | None = None

    status = TaskStatus.SUCCESS

    @property
    def ok(self) -> bool:
        return self.status is TaskStatus.SUCCESS


@dataclass
class StageSuccess(StageOutcome):
    """Every task (and the consolidation, if any) succeeded."""

    status = TaskStatus.SUCCESS


@dataclass
class StageBlocked(StageOutcome):
    """A precondition or an integrity rule stopped the stage."""

    reason: str = ""
    missing_gates: list[str] = field(default_factory=list)
    missing_preconditions: list[str] = field(default_factory=list)

    status = TaskStatus.BLOCKED


@dataclass
class StageFailed(StageOutcome):
    """Execution failed."""

    error: str = ""

    status = TaskStatus.FAILED


# ---------------------------------------------------------------------------
# State machine model
# ---------------------------------------------------------------------------


class StageRunModel:
    """Model object for the stage ``AsyncMachine``.

    The ``state`` attribute is managed by the machine.  Guards read the
    decisions the driver stores on the model before firing a trigger.
    """

    def __init__(self) -> None:
        self.state: str = "idle"
        self.gate_decision: GateDecision | None = None
        self.budget_decision: BudgetDecision | None = None
        self.task_count: int = 0

    def gates_allowed(self, *args, **kwargs) -> bool:
        return self.gate_decision is not None and self.gate_decision.allowed

    def within_budget(self, *args, **kwargs) -> bool:
        return self.budget_decision is not None and self.budget_decision.within_budget

    def is_group(self, *args, **kwargs) -> bool:
        return self.task_count > 1


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class StagePipelineDriver:
    """Runs stages for clients.

    One driver owns one :class:`BudgetLedger`, seeded from the manifest
    history the first time each client is seen and updated by every
    metered call afterwards.
    """

    def __init__(
        self,
        config: PipelineConfig,
        clients: ClientStore | None = None,
        manifests: ManifestStore | None = None,
        alerts: AlertDispatcher | None = None,
        ledger: BudgetLedger | None = None,
        metered: MeteredClient | None = None,
        gate_engine: GatePolicyEngine | None = None,
        catalog: TaskCatalog | None = None,
    ) -> None:
        self.config = config
        self.output_root = Path(config.paths.output_root)
        self.clients = clients or ClientStore(config.paths.clients_dir)
        self.manifests = manifests or ManifestStore(self.output_root)
        self.alerts = alerts or AlertDispatcher(enabled=config.alerts.enabled)
        self.ledger = ledger or BudgetLedger(limits=config.budget)
        self.metered = metered
        self.gate_engine = gate_engine or GatePolicyEngine(config.gates)
        self.catalog = catalog or TaskCatalog(config.stages)
        self.consolidator = Consolidator(self.output_root)

    @classmethod
    def from_config(
        cls, config: PipelineConfig, settings: PipelineSettings | None = None
    ) -> StagePipelineDriver:
        """Build a driver with the sinks and clients *config* asks for."""
        settings = settings or PipelineSettings()
        webhook = settings.alert_webhook_url or config.alerts.webhook_url
        alerts = AlertDispatcher(
            make_sink(webhook, timeout_s=config.alerts.timeout_s),
            enabled=config.alerts.enabled,
        )
        metered = None
        if config.metered.base_url:
            metered = MeteredClient(config.metered, api_key=settings.metered_api_key)
        return cls(config, alerts=alerts, metered=metered)

    def make_executor(self, run_id: str) -> TaskExecutor:
        return TaskExecutor(
            self.output_root,
            timeout_s=self.config.executor.task_timeout_s,
            run_id=run_id,
            metered=self.metered,
            ledger=self.ledger if self.metered is not None else None,
        )

    # ------------------------------------------------------------------
    # Manifest helpers
    # ------------------------------------------------------------------

    def _artifacts(
        self,
        client: str,
        stage: str,
        results: list[TaskResult],
        consolidated: ConsolidatedResult | None,
    ) -> list[str]:
        """Declared deliverables of this run that exist on disk."""
        stage_dir = self.output_root / client / stage
        artifacts: list[str] = []
        for result in results:
            for filename in result.deliverables.values():
                if (stage_dir / filename).is_file():
                    artifacts.append(f"{stage}/{filename}")
        if consolidated is not None:
            for filename in consolidated.outputs.values():
                if (stage_dir / filename).is_file():
                    artifacts.append(f"{stage}/{filename}")
        return artifacts

    @staticmethod
    def _metrics(results: list[TaskResult], artifact_count: int) -> RunMetrics:
        costs = [r.metadata.cost_usd for r in results if r.metadata.cost_usd is not None]
        tokens = [r.metadata.tokens_used for r in results if r.metadata.tokens_used is not None]
        return RunMetrics(
            artifact_count=artifact_count,
            cost_usd=round(sum(costs), 6) if costs else None,
            tokens=sum(tokens) if tokens else None,
        )

    def _write_manifest(
        self,
        run_id: str,
        context: ClientContext,
        stage: str,
        status: TaskStatus,
        *,
        family: StageFamily,
        reason: str = "",
        gates: dict[str, Any] | None = None,
        missing_gates: list[str] | None = None,
        missing_preconditions: list[str] | None = None,
        results: list[TaskResult] | None = None,
        agents: list[AgentEntry] | None = None,
        consolidated: ConsolidatedResult | None = None,
    ) -> Path:
        results = results or []
        artifacts = self._artifacts(context.slug, stage, results, consolidated)
        if agents is None:
            agents = [AgentEntry(name=r.task, status=r.status.value, version=r.version) for r in results]
            if consolidated is not None:
                agents.append(
                    AgentEntry(
                        name=CONSOLIDATOR_NAME,
                        status=TaskStatus(consolidated.status).value,
                        version=CONSOLIDATOR_VERSION,
                    )
                )
        manifest = RunManifest(
            run_id=run_id,
            client=context.slug,
            client_name=context.display_name,
            stage=stage,
            family=family.value,
            status=status.value,
            reason=reason,
            timestamp=now_iso(),
            artifacts=artifacts,
            gates={k: v for k, v in (gates or {}).items() if isinstance(v, bool)},
            missing_gates=list(missing_gates or []),
            missing_preconditions=list(missing_preconditions or []),
            agents=agents,
            metrics=self._metrics(results, len(artifacts)),
        )
        return self.manifests.write(manifest)

    def _results_from_disk(self, context: ClientContext, stage: str, specs: list[TaskSpec]) -> list[TaskResult]:
        """Whatever task records made it to disk before a failure."""
        stage_dir = self.output_root / context.slug / stage
        found: list[TaskResult] = []
        for spec in specs:
            data = load_json(stage_dir / f"{spec.name}.json")
            if isinstance(data, dict):
                try:
                    found.append(TaskResult.from_dict(data))
                except (ValueError, TypeError, AttributeError) as exc:
                    logger.warning("Ignoring unreadable record for %s: %s", spec.name, exc)
        return found

    @staticmethod
    def _blocked_reason(results: list[TaskResult], consolidated: ConsolidatedResult | None) -> str:
        parts: list[str] = []
        for r in results:
            if r.status != TaskStatus.SUCCESS:
                detail = r.issues[-1].description if r.issues else r.status.value
                parts.append(f"{r.task}: {detail}")
        if consolidated is not None and consolidated.status != TaskStatus.SUCCESS:
            if consolidated.missing_inputs:
                parts.append(f"{CONSOLIDATOR_NAME}: missing " + ", ".join(consolidated.missing_inputs))
            elif consolidated.missing_deliverables:
                parts.append(
                    f"{CONSOLIDATOR_NAME}: {consolidated.missing_deliverables} missing deliverable(s)"
                )
            else:
                parts.append(f"{CONSOLIDATOR_NAME}: critical issues reported")
        return "; ".join(parts)

    # ------------------------------------------------------------------
    # Stage run
    # ------------------------------------------------------------------

    async def run_stage(self, client: str, stage: str, run_id: str | None = None) -> StageOutcome:
        """Run *stage* for *client* and return its tagged outcome.

        Raises:
            ClientNotFoundError: If *client* is not registered.
            ConfigurationError: If the client registry cannot be read.
        """
        context = self.clients.load_client(client)
        run_id = run_id or new_run_id()
        token = run_id_var.set(run_id)
        try:
            return await self._run_stage(context, stage, run_id)
        finally:
            run_id_var.reset(token)

    async def _run_stage(self, context: ClientContext, stage: str, run_id: str) -> StageOutcome:
        model = StageRunModel()
        create_stage_machine(model)
        await model.start()
        logger.info("Run %s: %s/%s started", run_id, context.slug, stage)

        # Gate check
        gates = self.clients.load_gates(context.slug)
        decision = self.gate_engine.evaluate(stage, gates)
        model.gate_decision = decision
        if decision.family is StageFamily.PRODUCTION:
            await self.alerts.alert(
                ALERT_PRODUCTION_ATTEMPT,
                client=context.slug,
                stage=stage,
                run_id=run_id,
                reason=decision.reason,
                missing_gates=decision.missing_gates,
            )
        if model.gates_allowed():
            await model.gate_passed()
        else:
            await model.deny()
            logger.warning("Run %s blocked at gate check: %s", run_id, decision.reason)
            path = self._write_manifest(
                run_id,
                context,
                stage,
                TaskStatus.BLOCKED,
                family=decision.family,
                reason=decision.reason,
                gates=gates,
                missing_gates=decision.missing_gates,
                missing_preconditions=decision.missing_gates,
            )
            await self.alerts.alert(
                ALERT_BLOCKED,
                client=context.slug,
                stage=stage,
                run_id=run_id,
                reason=decision.reason,
                missing_gates=decision.missing_gates,
            )
            return StageBlocked(
                run_id=run_id,
                stage=stage,
                client=context.slug,
                manifest_path=path,
                reason=decision.reason,
                missing_gates=list(decision.missing_gates),
                missing_preconditions=list(decision.missing_gates),
            )

        # Budget check
        self.ledger.ensure_seeded(self.manifests, context.slug)
        budget = self.ledger.check_budget(context.slug, stage, run_id=run_id)
        model.budget_decision = budget
        if model.within_budget():
            await model.budget_passed()
        else:
            await model.deny()
            logger.warning("Run %s blocked at budget check: %s", run_id, budget.reason)
            path = self._write_manifest(
                run_id,
                context,
                stage,
                TaskStatus.BLOCKED,
                family=decision.family,
                reason=budget.reason,
                gates=gates,
                missing_preconditions=[budget.precondition],
            )
            await self.alerts.alert(
                ALERT_BLOCKED, client=context.slug, stage=stage, run_id=run_id, reason=budget.reason
            )
            return StageBlocked(
                run_id=run_id,
                stage=stage,
                client=context.slug,
                manifest_path=path,
                reason=budget.reason,
                missing_preconditions=[budget.precondition],
            )

        # Execution
        specs = self.catalog.specs_for(stage)
        model.task_count = len(specs)
        if not specs:
            return await self._fail(
                model, run_id, context, stage, decision, gates, f"No tasks configured for {stage}", []
            )

        runner = ParallelGroupRunner(
            self.make_executor(run_id),
            max_concurrent=self.config.executor.max_concurrent,
            consolidator=self.consolidator,
        )
        try:
            group = await runner.run(specs, context, stage, on_joined=model.execution_done)
        except (TaskGroupError, TaskExecutionError) as exc:
            return await self._fail(model, run_id, context, stage, decision, gates, str(exc), specs, exc)
        except Exception as exc:
            logger.exception("Run %s: unexpected error in %s", run_id, model.state)
            label = "Consolidation failed" if model.state == "consolidating" else "Execution failed"
            return await self._fail(
                model, run_id, context, stage, decision, gates, f"{label}: {exc}", specs
            )
        results = group.results
        consolidated = group.consolidated

        statuses: list[TaskStatus | str] = [r.status for r in results]
        if consolidated is not None:
            statuses.append(consolidated.status)
        final = aggregate_status(statuses)
        reason = "" if final is TaskStatus.SUCCESS else self._blocked_reason(results, consolidated)

        path = self._write_manifest(
            run_id,
            context,
            stage,
            final,
            family=decision.family,
            reason=reason,
            gates=gates,
            results=results,
            consolidated=consolidated,
        )
        await model.record_manifest()
        await getattr(model, FINISH_TRIGGERS[final.value])()
        logger.info("Run %s: %s/%s finished %s", run_id, context.slug, stage, final.value)

        common = dict(
            run_id=run_id,
            stage=stage,
            client=context.slug,
            manifest_path=path,
            results=results,
            consolidated=consolidated,
        )
        if final is TaskStatus.SUCCESS:
            return StageSuccess(**common)
        alert_type = ALERT_BLOCKED if final is TaskStatus.BLOCKED else ALERT_FAILED
        await self.alerts.alert(alert_type, client=context.slug, stage=stage, run_id=run_id, reason=reason)
        if final is TaskStatus.BLOCKED:
            return StageBlocked(reason=reason, **common)
        return StageFailed(error=reason, **common)

    async def _fail(
        self,
        model: StageRunModel,
        run_id: str,
        context: ClientContext,
        stage: str,
        decision: GateDecision,
        gates: dict[str, Any] | None,
        error: str,
        specs: list[TaskSpec],
        exc: BaseException | None = None,
    ) -> StageFailed:
        """Move to ``failed``, write a best-effort manifest and alert."""
        await model.fail()
        logger.error("Run %s failed: %s", run_id, error)

        results = self._results_from_disk(context, stage, specs)
        failures = exc.failures if isinstance(exc, TaskGroupError) else {}
        if isinstance(exc, TaskExecutionError) and exc.task:
            failures = {exc.task: exc}
        agents = [AgentEntry(name=r.task, status=r.status.value, version=r.version) for r in results]
        recorded = {r.task for r in results}
        agents.extend(
            AgentEntry(name=name, status=TaskStatus.FAILED.value)
            for name in failures
            if name not in recorded
        )

        path: Path | None = None
        try:
            path = self._write_manifest(
                run_id,
                context,
                stage,
                TaskStatus.FAILED,
                family=decision.family,
                reason=error,
                gates=gates,
                results=results,
                agents=agents,
            )
        except (PipelineError, OSError) as write_exc:
            logger.warning("Failed to write manifest for %s (non-blocking): %s", run_id, write_exc)

        await self.alerts.alert(ALERT_FAILED, client=context.slug, stage=stage, run_id=run_id, reason=error)
        return StageFailed(
            run_id=run_id,
            stage=stage,
            client=context.slug,
            manifest_path=path,
            results=results,
            error=error,
        )

    # ------------------------------------------------------------------
    # Multi-stage pipelines
    # ------------------------------------------------------------------

    async def run_pipeline(self, client: str, name: str) -> list[StageOutcome]:
        """Run the stages of pipeline *name* in order.

        Stops at the first outcome that is not a success.

        Raises:
            ConfigurationError: If *name* is not a configured pipeline.
        """
        stages = self.config.pipelines.get(name)
        if not stages:
            raise ConfigurationError(
                f"Unknown pipeline '{name}'. Available: {', '.join(sorted(self.config.pipelines))}"
            )
        outcomes: list[StageOutcome] = []
        for stage in stages:
            outcome = await self.run_stage(client, stage)
            outcomes.append(outcome)
            if not outcome.ok:
                logger.warning(
                    "Pipeline %s stopped at %s for %s: %s", name, stage, client, outcome.status.value
                )
                break
        return outcomes
