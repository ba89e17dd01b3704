"""Markdown rendering for task and consolidated results."""

from __future__ import annotations

from src.pipeline_shared.models import ConsolidatedResult, TaskResult, TaskStatus

_STATUS_LABELS = {
    TaskStatus.SUCCESS: "Success",
    TaskStatus.BLOCKED: "Blocked",
    TaskStatus.FAILED: "Failed",
}


def _status_label(status: TaskStatus | str) -> str:
    return _STATUS_LABELS.get(TaskStatus(status), str(status))


def _or_none(lines: list[str], empty: str) -> str:
    return "\n".join(lines) if lines else empty


def render_task_markdown(result: TaskResult, display_name: str) -> str:
    """Human-readable companion of ``{task}.json``."""
    meta = result.metadata
    tokens = meta.tokens_used if meta.tokens_used is not None else "Unknown"
    cost = f"${meta.cost_usd:.4f}" if meta.cost_usd is not None else "Unknown"
    deliverables = [f"- {key}: {value}" for key, value in result.deliverables.items()]
    decisions = [f"{i}. {d}" for i, d in enumerate(result.decisions, start=1)]
    issues = [f"- **{i.severity}**: {i.description}" for i in result.issues]
    steps = [f"{i}. [ ] {s}" for i, s in enumerate(result.next_steps, start=1)]

    return f"""# {result.task} - {display_name} - {result.stage}

**Date:** {result.timestamp[:10]}
**Status:** {_status_label(result.status)}

---

## Summary
{result.summary}

---

## Deliverables
{_or_none(deliverables, "- No deliverables")}

---

## Key Decisions
{_or_none(decisions, "- No decisions recorded")}

---

## Issues Identified
{_or_none(issues, "- No issues")}

---

## Next Steps
{_or_none(steps, "- No next steps")}

---

## Metadata
- Execution Time: {meta.duration_ms}ms
- Tokens Used: {tokens}
- Cost: {cost}
"""


def render_consolidated_markdown(
    consolidated: ConsolidatedResult, display_name: str, task_count: int
) -> str:
    """Human-readable companion of ``coordinator.json``."""
    deliverables = [
        f"- [{'x' if d.exists else ' '}] **[{d.task}]** {d.key} -> {d.file}"
        for d in consolidated.deliverables
    ]
    decisions = [
        f"{i}. [{d['task']}] {d['decision']}"
        for i, d in enumerate(consolidated.decisions, start=1)
    ]
    issues = [
        f"- [{i['task']}] **{i['severity']}**: {i['description']}"
        for i in consolidated.issues
    ]
    conflicts = [f"- **{c.severity}** ({c.kind}): {c.description}" for c in consolidated.conflicts]

    return f"""# Consolidation - {display_name} - {consolidated.stage}

**Date:** {consolidated.timestamp[:10]}
**Status:** {_status_label(consolidated.status)}
**Tasks Consolidated:** {task_count}

---

## Summary
{consolidated.summary}

---

## Consolidated Metrics
- **Deliverables:** {consolidated.total_deliverables} ({consolidated.missing_deliverables} missing)
- **Decisions Made:** {consolidated.total_decisions}
- **Issues Identified:** {consolidated.total_issues}
- **Action Items:** {len(consolidated.action_items)}
- **Conflicts:** {len(consolidated.conflicts)}

---

## All Deliverables
{_or_none(deliverables, "- No deliverables")}

---

## Decisions by Task
{_or_none(decisions, "- No decisions")}

---

## Issues & Blockers
{_or_none(issues, "- No issues")}

---

## Conflicts
{_or_none(conflicts, "- No conflicts")}

---

## Action Items with Owners
{render_action_items(consolidated)}
"""


def render_action_items(consolidated: ConsolidatedResult) -> str:
    if not consolidated.action_items:
        return "- No actions"
    return "\n".join(
        f"- **{a.id}** ({a.severity}): {a.title}\n"
        f"  - Next: {a.next_step or '-'}\n"
        f"  - Owner: {a.owner or 'unassigned'}"
        for a in consolidated.action_items
    )


def render_consolidated_brief(consolidated: ConsolidatedResult, display_name: str) -> str:
    lines = [
        f"# Consolidated Brief - {display_name} - {consolidated.stage}",
        "",
        consolidated.summary,
        "",
        "## Decisions",
    ]
    lines.extend(f"- [{d['task']}] {d['decision']}" for d in consolidated.decisions)
    lines.extend(["", "## Deliverables"])
    lines.extend(f"- {d.file} ({d.task})" for d in consolidated.deliverables if d.exists)
    return "\n".join(lines) + "\n"


def render_next_actions(consolidated: ConsolidatedResult) -> str:
    return f"# Next Actions - {consolidated.stage}\n\n{render_action_items(consolidated)}\n"


def render_blockers(consolidated: ConsolidatedResult) -> str:
    lines = [f"# Blockers - {consolidated.stage}", "", "## Issues"]
    lines.extend(
        f"- [{i['task']}] **{i['severity']}**: {i['description']}" for i in consolidated.issues
    )
    lines.extend(["", "## Conflicts"])
    lines.extend(f"- **{c.severity}**: {c.description}" for c in consolidated.conflicts)
    return "\n".join(lines) + "\n"
