"""Tests for group consolidation, conflict detection and action items."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.pipeline_shared.models import ClientContext, Endpoint, Issue, TaskResult, TaskStatus
from src.stage_pipeline.consolidator import (
    CONFLICT_COVERAGE_GAP,
    CONFLICT_ENDPOINT_NAMING,
    CONFLICT_TECH_STACK,
    SOURCE_CONFLICT,
    SOURCE_CRITICAL_ISSUE,
    SOURCE_MISSING_ARTIFACT,
    Consolidator,
    validate_record,
)
from src.stage_pipeline.executor import persist_result

TASKS = ["designer-agent", "frontend-agent", "backend-agent"]


@pytest.fixture
def bare_context() -> ClientContext:
    """A client with no requirements or preferences, so no conflicts fire."""
    return ClientContext(slug="acme", name="Acme Corp", brief={})


@pytest.fixture
def stage_dir(output_root: Path) -> Path:
    d = output_root / "acme" / "S2"
    d.mkdir(parents=True)
    return d


def _write(stage_dir: Path, result: TaskResult, create_files: bool = True) -> None:
    if create_files:
        for filename in result.deliverables.values():
            (stage_dir / filename).write_text("content", encoding="utf-8")
    persist_result(result, stage_dir, "Acme Corp")


def _record(task: str, deliverables: dict[str, str], **kwargs) -> TaskResult:
    return TaskResult(
        task=task,
        client="acme",
        stage="S2",
        summary=f"{task} output",
        deliverables=deliverables,
        **kwargs,
    )


def _write_group(stage_dir: Path, frontend_decisions: list[str] | None = None) -> None:
    _write(stage_dir, _record("designer-agent", {"wireframes_notes": "wireframes-notes.md"}, screens=["Login"]))
    _write(
        stage_dir,
        _record(
            "frontend-agent",
            {"component_structure": "component-structure.md"},
            decisions=frontend_decisions if frontend_decisions is not None else ["Selected React for frontend"],
        ),
    )
    _write(
        stage_dir,
        _record(
            "backend-agent",
            {"api_spec": "api-spec.md"},
            endpoints=[Endpoint(method="GET", path="/api/users", file="api-spec.md", line=4)],
        ),
    )


class TestValidateRecord:
    def test_valid(self) -> None:
        data = _record("x", {}, decisions=[]).to_dict()
        assert validate_record(data) == []

    def test_not_a_dict(self) -> None:
        assert validate_record([]) == ["Record is not an object"]

    def test_reports_each_problem(self) -> None:
        errors = validate_record({"status": "done", "summary": "", "deliverables": [], "decisions": {}})
        assert len(errors) == 4

    @pytest.mark.parametrize(
        "field, value",
        [
            ("issues", ["free text issue"]),
            ("endpoints", ["GET /api/users"]),
            ("next_steps", "ship it"),
            ("screens", {"Login": 1}),
            ("metadata", ["fast"]),
        ],
    )
    def test_malformed_optional_fields(self, field: str, value) -> None:
        data = _record("x", {}).to_dict()
        data[field] = value
        errors = validate_record(data)
        assert len(errors) == 1
        assert field in errors[0]


class TestMissingInputs:
    def test_missing_record_blocks_with_single_critical_issue(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write(stage_dir, _record("designer-agent", {"wireframes_notes": "wireframes-notes.md"}))
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.missing_inputs == ["frontend-agent.json", "backend-agent.json"]
        assert len(result.issues) == 1
        assert result.issues[0]["severity"] == "critical"
        assert result.issues[0]["task"] == "coordinator"
        assert (stage_dir / "coordinator.json").is_file()

    def test_invalid_record_counts_as_missing(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write_group(stage_dir)
        (stage_dir / "backend-agent.json").write_text(json.dumps({"status": "nope"}), encoding="utf-8")
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.missing_inputs == ["backend-agent.json"]

    def test_string_issues_count_as_missing(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write_group(stage_dir)
        data = json.loads((stage_dir / "frontend-agent.json").read_text(encoding="utf-8"))
        data["issues"] = ["free text issue"]
        (stage_dir / "frontend-agent.json").write_text(json.dumps(data), encoding="utf-8")

        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.missing_inputs == ["frontend-agent.json"]

    def test_unparseable_record_counts_as_missing(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write_group(stage_dir)
        data = json.loads((stage_dir / "designer-agent.json").read_text(encoding="utf-8"))
        data["metadata"] = {"duration_ms": "soon"}
        (stage_dir / "designer-agent.json").write_text(json.dumps(data), encoding="utf-8")

        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.missing_inputs == ["designer-agent.json"]


class TestConsolidate:
    def test_clean_group_succeeds(self, output_root: Path, stage_dir: Path, bare_context: ClientContext) -> None:
        _write_group(stage_dir)
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.SUCCESS
        assert result.total_deliverables == 3
        assert result.missing_deliverables == 0
        assert result.conflicts == []
        assert result.action_items == []
        assert result.screens == ["Login"]
        assert [e.path for e in result.endpoints] == ["/api/users"]
        assert [d["task"] for d in result.decisions] == ["frontend-agent"]

    def test_outputs_written(self, output_root: Path, stage_dir: Path, bare_context: ClientContext) -> None:
        _write_group(stage_dir)
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert set(result.outputs) == {"consolidated_brief", "next_actions", "owners"}
        for filename in result.outputs.values():
            assert (stage_dir / filename).is_file()
        assert not (stage_dir / "blockers.md").exists()
        data = json.loads((stage_dir / "coordinator.json").read_text(encoding="utf-8"))
        assert data["status"] == "success"
        assert data["outputs"]["owners"] == "owners.json"
        assert (stage_dir / "coordinator.md").is_file()

    def test_missing_deliverable_blocks_and_owns_action_item(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write(stage_dir, _record("designer-agent", {"wireframes_notes": "wireframes-notes.md"}))
        _write(stage_dir, _record("frontend-agent", {"component_structure": "component-structure.md"}))
        _write(stage_dir, _record("backend-agent", {"api_spec": "api-spec.md"}), create_files=False)

        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.missing_deliverables == 1
        assert len(result.action_items) == 1
        item = result.action_items[0]
        assert item.id == "S2-AI-001"
        assert item.owner == "backend-agent"
        assert item.source == SOURCE_MISSING_ARTIFACT
        assert item.title == "Create missing artifact: api-spec.md"
        owners = json.loads((stage_dir / "owners.json").read_text(encoding="utf-8"))
        assert owners == {"backend-agent": ["S2-AI-001"]}

    def test_critical_issue_blocks(self, output_root: Path, stage_dir: Path, bare_context: ClientContext) -> None:
        _write_group(stage_dir)
        _write(
            stage_dir,
            _record(
                "backend-agent",
                {"api_spec": "api-spec.md"},
                status=TaskStatus.BLOCKED,
                issues=[Issue(severity="critical", description="Schema unknown", recommendation="Ask client")],
            ),
        )
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.BLOCKED
        assert result.has_critical_issue is True
        assert [a.source for a in result.action_items] == [SOURCE_CRITICAL_ISSUE]
        assert result.action_items[0].owner == "backend-agent"
        assert (stage_dir / "blockers.md").is_file()

    def test_non_critical_issue_does_not_block(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write_group(stage_dir)
        _write(
            stage_dir,
            _record("backend-agent", {"api_spec": "api-spec.md"}, issues=[Issue(severity="medium", description="x")]),
        )
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert result.status == TaskStatus.SUCCESS
        assert result.total_issues == 1


class TestConflicts:
    def test_tech_stack_mismatch(self, output_root: Path, stage_dir: Path) -> None:
        context = ClientContext(slug="acme", brief={"constraints": {"tech_preferences": ["Vue"]}})
        _write_group(stage_dir, frontend_decisions=["Selected React for frontend"])
        result = Consolidator(output_root).consolidate("S2", context, TASKS)
        kinds = [c.kind for c in result.conflicts]
        assert kinds == [CONFLICT_TECH_STACK]
        assert result.conflicts[0].tasks == ["frontend-agent"]
        assert result.status == TaskStatus.SUCCESS
        assert result.action_items[0].source == SOURCE_CONFLICT
        assert result.action_items[0].owner == "frontend-agent"

    def test_preferred_tech_match_is_case_insensitive(self, output_root: Path, stage_dir: Path) -> None:
        context = ClientContext(slug="acme", brief={"constraints": {"tech_preferences": ["REACT"]}})
        _write_group(stage_dir)
        result = Consolidator(output_root).consolidate("S2", context, TASKS)
        assert result.conflicts == []

    def test_coverage_gap(self, output_root: Path, stage_dir: Path) -> None:
        context = ClientContext(
            slug="acme", brief={"requirements": {"functional": ["Wireframes Notes", "Payments"]}}
        )
        _write_group(stage_dir)
        result = Consolidator(output_root).consolidate("S2", context, TASKS)
        gaps = [c for c in result.conflicts if c.kind == CONFLICT_COVERAGE_GAP]
        assert len(gaps) == 1
        assert gaps[0].details["uncovered"] == ["Payments"]
        assert gaps[0].severity == "high"
        assert result.action_items[0].owner == "team"

    def test_endpoint_naming(self, output_root: Path, stage_dir: Path, bare_context: ClientContext) -> None:
        _write_group(stage_dir)
        _write(
            stage_dir,
            _record(
                "backend-agent",
                {"api_spec": "api-spec.md"},
                endpoints=[
                    Endpoint(method="GET", path="/api/user-login-(oauth)", file="api-spec.md", line=5),
                    Endpoint(method="GET", path="/api/users", file="api-spec.md", line=6),
                ],
            ),
        )
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert [c.kind for c in result.conflicts] == [CONFLICT_ENDPOINT_NAMING]
        conflict = result.conflicts[0]
        assert conflict.details["examples"] == [{"line": 5, "endpoint": "/api/user-login-(oauth)"}]
        assert result.action_items[0].evidence == "api-spec.md"

    def test_endpoints_scanned_from_file_when_record_has_none(
        self, output_root: Path, stage_dir: Path, bare_context: ClientContext
    ) -> None:
        _write_group(stage_dir)
        _write(stage_dir, _record("backend-agent", {"api_spec": "api-spec.md"}))
        (stage_dir / "api-spec.md").write_text("# API\n- **GET** /api/bad(name)\n", encoding="utf-8")
        result = Consolidator(output_root).consolidate("S2", bare_context, TASKS)
        assert [e.line for e in result.endpoints] == [2]
        assert [c.kind for c in result.conflicts] == [CONFLICT_ENDPOINT_NAMING]

    def test_action_item_order_and_ids(self, output_root: Path, stage_dir: Path) -> None:
        context = ClientContext(
            slug="acme",
            brief={
                "requirements": {"functional": ["Payments"]},
                "constraints": {"tech_preferences": ["Vue"]},
            },
        )
        _write(stage_dir, _record("designer-agent", {"wireframes_notes": "wireframes-notes.md"}))
        _write(
            stage_dir,
            _record("frontend-agent", {"component_structure": "component-structure.md"}, decisions=["React"]),
        )
        _write(
            stage_dir,
            _record(
                "backend-agent",
                {"api_spec": "api-spec.md"},
                issues=[Issue(severity="critical", description="No data model")],
            ),
            create_files=False,
        )
        result = Consolidator(output_root).consolidate("S2", context, TASKS)
        assert [a.source for a in result.action_items] == [
            SOURCE_MISSING_ARTIFACT,
            SOURCE_CONFLICT,
            SOURCE_CONFLICT,
            SOURCE_CRITICAL_ISSUE,
        ]
        assert [a.id for a in result.action_items] == ["S2-AI-001", "S2-AI-002", "S2-AI-003", "S2-AI-004"]

    def test_consolidation_is_deterministic(self, output_root: Path, stage_dir: Path) -> None:
        context = ClientContext(slug="acme", brief={"requirements": {"functional": ["Payments"]}})
        _write_group(stage_dir)
        consolidator = Consolidator(output_root)
        first = consolidator.consolidate("S2", context, TASKS).to_dict()
        second = consolidator.consolidate("S2", context, TASKS).to_dict()
        first.pop("timestamp")
        second.pop("timestamp")
        assert first == second
