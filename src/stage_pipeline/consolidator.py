"""Consolidator for parallel task groups.

Re-reads every sibling ``{task}.json`` from disk (the file system is the
single source of truth), merges deliverables, decisions and issues,
detects cross-task conflicts and derives owned action items.  Output is a
pure function of the records on disk and the client brief: iteration
follows the expected-task order and each task's own record order.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from src.pipeline_shared.constants import CONSOLIDATOR_NAME
from src.pipeline_shared.models import (
    ActionItem,
    ClientContext,
    Conflict,
    ConsolidatedResult,
    DeliverableRecord,
    Endpoint,
    Severity,
    TaskResult,
    TaskStatus,
)
from src.pipeline_shared.utils import atomic_write_json, atomic_write_text, load_json, now_iso, slugify
from src.stage_pipeline.documents import scan_endpoints
from src.stage_pipeline.report import (
    render_blockers,
    render_consolidated_brief,
    render_consolidated_markdown,
    render_next_actions,
)

logger = logging.getLogger(__name__)

SOURCE_MISSING_ARTIFACT = "missing artifact"
SOURCE_CONFLICT = "conflict"
SOURCE_CRITICAL_ISSUE = "critical issue"

CONFLICT_TECH_STACK = "tech_stack_mismatch"
CONFLICT_COVERAGE_GAP = "coverage_gap"
CONFLICT_ENDPOINT_NAMING = "invalid_endpoint_naming"

_VALID_STATUSES = {s.value for s in TaskStatus}
_INVALID_PATH_CHARS = ("(", ")", " ")


def validate_record(data: Any) -> list[str]:
    """Basic structural validation of a persisted task record.

    Optional list fields (``issues``, ``next_steps``, ``endpoints``,
    ``screens``) may be absent but must have the right shape when present.

    Returns:
        A list of error strings; empty when the record is usable.
    """
    if not isinstance(data, dict):
        return ["Record is not an object"]
    errors: list[str] = []
    if data.get("status") not in _VALID_STATUSES:
        errors.append("Invalid or missing status")
    if not isinstance(data.get("summary"), str) or not data.get("summary"):
        errors.append("Missing or invalid summary")
    if not isinstance(data.get("deliverables"), dict):
        errors.append("Missing or invalid deliverables")
    if not isinstance(data.get("decisions"), list):
        errors.append("Missing or invalid decisions")
    for key in ("issues", "endpoints"):
        items = data.get(key) or []
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            errors.append(f"Invalid {key}: expected a list of objects")
    for key in ("next_steps", "screens"):
        if not isinstance(data.get(key) or [], list):
            errors.append(f"Invalid {key}: expected a list")
    if not isinstance(data.get("metadata") or {}, dict):
        errors.append("Invalid metadata: expected an object")
    return errors


class Consolidator:
    """Merges the persisted results of one stage's task group."""

    def __init__(self, output_root: Path | str) -> None:
        self._output_root = Path(output_root)

    def stage_dir(self, context: ClientContext, stage: str) -> Path:
        return self._output_root / context.slug / stage

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_records(
        self, stage_dir: Path, expected: list[str]
    ) -> tuple[list[TaskResult], list[str]]:
        records: list[TaskResult] = []
        missing: list[str] = []
        for name in expected:
            filename = f"{name}.json"
            data = load_json(stage_dir / filename)
            if data is None:
                missing.append(filename)
                continue
            errors = validate_record(data)
            if errors:
                logger.warning("Record %s failed validation: %s", filename, "; ".join(errors))
                missing.append(filename)
                continue
            try:
                records.append(TaskResult.from_dict(data))
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Record %s could not be parsed: %s", filename, exc)
                missing.append(filename)
        return records, missing

    # ------------------------------------------------------------------
    # Conflict rules
    # ------------------------------------------------------------------

    @staticmethod
    def _tech_stack_conflicts(records: list[TaskResult], context: ClientContext) -> list[Conflict]:
        prefs = context.tech_preferences
        if not prefs:
            return []
        preferred = prefs[0]
        conflicts: list[Conflict] = []
        for record in records:
            if "frontend" not in record.task:
                continue
            decisions = " ".join(record.decisions).lower()
            if preferred.lower() not in decisions:
                conflicts.append(
                    Conflict(
                        kind=CONFLICT_TECH_STACK,
                        severity=Severity.MEDIUM.value,
                        description=f"{record.task} didn't mention preferred tech: {preferred}",
                        tasks=[record.task],
                        recommendation="Verify tech stack alignment with constraints",
                        details={"preferred": preferred},
                    )
                )
        return conflicts

    @staticmethod
    def _coverage_conflicts(
        deliverables: list[DeliverableRecord], context: ClientContext
    ) -> list[Conflict]:
        filenames = " ".join(d.file for d in deliverables).lower()
        uncovered = [
            req for req in context.functional_requirements if slugify(req) not in filenames
        ]
        if not uncovered:
            return []
        return [
            Conflict(
                kind=CONFLICT_COVERAGE_GAP,
                severity=Severity.HIGH.value,
                description=f"{len(uncovered)} functional requirements not reflected in deliverables",
                recommendation="Review requirements coverage in design and API specs",
                details={"uncovered": uncovered},
            )
        ]

    @staticmethod
    def _record_endpoints(record: TaskResult, stage_dir: Path) -> list[Endpoint]:
        """Structured endpoints when the record has them, else a line scan."""
        if record.endpoints:
            return list(record.endpoints)
        endpoints: list[Endpoint] = []
        for filename in record.deliverables.values():
            if "api-spec" not in filename:
                continue
            path = stage_dir / filename
            if not path.is_file():
                continue
            try:
                endpoints.extend(scan_endpoints(path.read_text(encoding="utf-8"), filename))
            except OSError as exc:
                logger.warning("Cannot read %s: %s", path, exc)
        return endpoints

    @staticmethod
    def _endpoint_conflicts(records: list[TaskResult], endpoints: dict[str, list[Endpoint]]) -> list[Conflict]:
        conflicts: list[Conflict] = []
        for record in records:
            invalid = [
                ep
                for ep in endpoints.get(record.task, [])
                if any(ch in ep.path for ch in _INVALID_PATH_CHARS)
            ]
            if not invalid:
                continue
            file = invalid[0].file or "api-spec.md"
            conflicts.append(
                Conflict(
                    kind=CONFLICT_ENDPOINT_NAMING,
                    severity=Severity.MEDIUM.value,
                    description=f"{len(invalid)} API endpoints have non-slug-safe names",
                    tasks=[record.task],
                    recommendation="Normalize endpoint slugs (remove spaces, parentheses)",
                    details={
                        "file": file,
                        "examples": [{"line": ep.line, "endpoint": ep.path} for ep in invalid[:3]],
                    },
                )
            )
        return conflicts

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def consolidate(
        self, stage: str, context: ClientContext, expected_tasks: list[str]
    ) -> ConsolidatedResult:
        """Consolidate the persisted records of *expected_tasks* at *stage*.

        Returns:
            The consolidated result, also persisted as ``coordinator.json``
            and ``coordinator.md`` alongside its deliverables.
        """
        stage_dir = self.stage_dir(context, stage)
        records, missing_inputs = self._load_records(stage_dir, expected_tasks)

        if missing_inputs:
            logger.warning(
                "Cannot consolidate %s/%s: missing %s", context.slug, stage, ", ".join(missing_inputs)
            )
            result = ConsolidatedResult(
                stage=stage,
                client=context.slug,
                status=TaskStatus.BLOCKED,
                summary="Cannot consolidate - missing task outputs",
                total_issues=1,
                issues=[
                    {
                        "task": CONSOLIDATOR_NAME,
                        "severity": Severity.CRITICAL.value,
                        "description": f"Missing {len(missing_inputs)} task output(s): "
                        + ", ".join(missing_inputs),
                        "recommendation": "Ensure all tasks in the stage completed",
                    }
                ],
                missing_inputs=missing_inputs,
                timestamp=now_iso(),
            )
            self._persist(result, context, stage_dir, len(expected_tasks))
            return result

        deliverables: list[DeliverableRecord] = []
        decisions: list[dict[str, str]] = []
        issues: list[dict[str, Any]] = []
        next_steps: list[dict[str, str]] = []
        endpoints: dict[str, list[Endpoint]] = {}
        screens: list[str] = []
        for record in records:
            for key, filename in record.deliverables.items():
                deliverables.append(
                    DeliverableRecord(
                        task=record.task,
                        key=key,
                        file=filename,
                        exists=(stage_dir / filename).is_file(),
                    )
                )
            decisions.extend({"task": record.task, "decision": d} for d in record.decisions)
            issues.extend(
                {
                    "task": record.task,
                    "severity": i.severity,
                    "description": i.description,
                    "recommendation": i.recommendation,
                }
                for i in record.issues
            )
            next_steps.extend({"task": record.task, "action": s} for s in record.next_steps)
            endpoints[record.task] = self._record_endpoints(record, stage_dir)
            screens.extend(record.screens)

        missing = [d for d in deliverables if not d.exists]
        conflicts = (
            self._tech_stack_conflicts(records, context)
            + self._coverage_conflicts(deliverables, context)
            + self._endpoint_conflicts(records, endpoints)
        )
        action_items = self._action_items(stage, context, missing, conflicts, issues)

        has_critical = any(i["severity"] == Severity.CRITICAL.value for i in issues)
        status = TaskStatus.BLOCKED if (missing or has_critical) else TaskStatus.SUCCESS

        result = ConsolidatedResult(
            stage=stage,
            client=context.slug,
            status=status,
            summary=f"Consolidated outputs from {len(records)} tasks for stage {stage}",
            total_deliverables=len(deliverables),
            missing_deliverables=len(missing),
            total_decisions=len(decisions),
            total_issues=len(issues),
            deliverables=deliverables,
            decisions=decisions,
            issues=issues,
            next_steps=next_steps,
            conflicts=conflicts,
            action_items=action_items,
            endpoints=[ep for eps in endpoints.values() for ep in eps],
            screens=screens,
            timestamp=now_iso(),
        )
        self._persist(result, context, stage_dir, len(records))
        logger.info(
            "Consolidated %d task(s) for %s/%s: %s (%d action items, %d conflicts)",
            len(records),
            context.slug,
            stage,
            status.value,
            len(action_items),
            len(conflicts),
        )
        return result

    @staticmethod
    def _action_items(
        stage: str,
        context: ClientContext,
        missing: list[DeliverableRecord],
        conflicts: list[Conflict],
        issues: list[dict[str, Any]],
    ) -> list[ActionItem]:
        """Missing deliverables first, then conflicts, then critical issues."""
        items: list[ActionItem] = []

        def _next_id() -> str:
            return f"{stage}-AI-{len(items) + 1:03d}"

        for d in missing:
            items.append(
                ActionItem(
                    id=_next_id(),
                    owner=d.task,
                    severity=Severity.HIGH.value,
                    title=f"Create missing artifact: {d.file}",
                    source=SOURCE_MISSING_ARTIFACT,
                    evidence=f"deliverable {d.key} declared but file not found",
                    next_step=f"Write {d.file} to {context.slug}/{stage}/",
                )
            )
        for c in conflicts:
            items.append(
                ActionItem(
                    id=_next_id(),
                    owner=c.tasks[0] if c.tasks else "team",
                    severity=c.severity,
                    title=c.description,
                    source=SOURCE_CONFLICT,
                    evidence=str(c.details.get("file", c.kind)),
                    next_step=c.recommendation,
                )
            )
        for issue in issues:
            if issue["severity"] != Severity.CRITICAL.value:
                continue
            items.append(
                ActionItem(
                    id=_next_id(),
                    owner=issue["task"],
                    severity=Severity.CRITICAL.value,
                    title=issue["description"],
                    source=SOURCE_CRITICAL_ISSUE,
                    evidence=issue.get("recommendation") or "See task output",
                    next_step=issue.get("recommendation") or "Resolve critical issue",
                )
            )
        return items

    def _persist(
        self,
        result: ConsolidatedResult,
        context: ClientContext,
        stage_dir: Path,
        task_count: int,
    ) -> None:
        """Write coordinator records and the consolidated deliverables."""
        name = context.display_name
        outputs = {
            "consolidated_brief": "consolidated-brief.md",
            "next_actions": "next-actions.md",
            "owners": "owners.json",
        }
        if result.issues or result.conflicts:
            outputs["blockers"] = "blockers.md"
        result.outputs = outputs

        atomic_write_text(stage_dir / outputs["consolidated_brief"], render_consolidated_brief(result, name))
        atomic_write_text(stage_dir / outputs["next_actions"], render_next_actions(result))
        owners: dict[str, list[str]] = {}
        for item in result.action_items:
            owners.setdefault(item.owner, []).append(item.id)
        atomic_write_json(stage_dir / outputs["owners"], owners)
        if "blockers" in outputs:
            atomic_write_text(stage_dir / outputs["blockers"], render_blockers(result))

        atomic_write_json(stage_dir / f"{CONSOLIDATOR_NAME}.json", result.to_dict())
        atomic_write_text(
            stage_dir / f"{CONSOLIDATOR_NAME}.md",
            render_consolidated_markdown(result, name, task_count),
        )
