"""Tests for the artifact integrity checker."""

from __future__ import annotations

from pathlib import Path

from src.pipeline_shared.models import Issue, TaskResult, TaskStatus
from src.stage_pipeline.artifacts import ArtifactCheck, ArtifactChecker, MissingArtifact, apply_integrity


def _result(status: TaskStatus = TaskStatus.SUCCESS) -> TaskResult:
    return TaskResult(
        task="backend-agent",
        client="acme",
        stage="S2",
        status=status,
        summary="Backend",
        deliverables={"api_spec": "api-spec.md", "db_schema": "database-schema.md"},
    )


class TestArtifactChecker:
    def test_all_present(self, tmp_path: Path) -> None:
        (tmp_path / "api-spec.md").write_text("x")
        (tmp_path / "database-schema.md").write_text("x")
        check = ArtifactChecker().check(_result().deliverables, tmp_path)
        assert check.valid is True
        assert check.missing == []
        assert check.checked == 2

    def test_missing_sorted_by_name(self, tmp_path: Path) -> None:
        deliverables = {"zeta": "z.md", "alpha": "a.md", "mid": "m.md"}
        (tmp_path / "m.md").write_text("x")
        check = ArtifactChecker().check(deliverables, tmp_path)
        assert check.valid is False
        assert [m.name for m in check.missing] == ["alpha", "zeta"]
        assert check.missing[0].expected_path == str(tmp_path / "a.md")

    def test_directory_does_not_count_as_file(self, tmp_path: Path) -> None:
        (tmp_path / "api-spec.md").mkdir()
        check = ArtifactChecker().check({"api_spec": "api-spec.md"}, tmp_path)
        assert check.valid is False

    def test_idempotent(self, tmp_path: Path) -> None:
        checker = ArtifactChecker()
        deliverables = {"api_spec": "api-spec.md"}
        assert checker.check(deliverables, tmp_path) == checker.check(deliverables, tmp_path)

    def test_nothing_declared_is_valid(self, tmp_path: Path) -> None:
        check = ArtifactChecker().check({}, tmp_path)
        assert check.valid is True
        assert check.checked == 0


class TestApplyIntegrity:
    def test_valid_check_leaves_result_alone(self) -> None:
        result = apply_integrity(_result(), ArtifactCheck(valid=True, checked=2))
        assert result.status == TaskStatus.SUCCESS
        assert result.issues == []

    def test_success_downgraded_to_blocked(self) -> None:
        check = ArtifactCheck(
            valid=False,
            missing=[MissingArtifact(name="api_spec", file="api-spec.md", expected_path="/x/api-spec.md")],
            checked=2,
        )
        result = apply_integrity(_result(), check)
        assert result.status == TaskStatus.BLOCKED
        issue = result.issues[-1]
        assert issue.severity == "high"
        assert issue.description == "Missing deliverables: api-spec.md"
        assert issue.details == {"missing": ["api_spec"]}

    def test_failed_status_kept(self) -> None:
        result = _result(TaskStatus.FAILED)
        result.issues.append(Issue(severity="medium", description="earlier"))
        check = ArtifactCheck(
            valid=False,
            missing=[MissingArtifact(name="api_spec", file="api-spec.md", expected_path="")],
        )
        apply_integrity(result, check)
        assert result.status == TaskStatus.FAILED
        assert len(result.issues) == 2
