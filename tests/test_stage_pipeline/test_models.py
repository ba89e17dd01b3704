"""Tests for shared result and manifest models."""

from __future__ import annotations

import pytest

from src.pipeline_shared.models import RunManifest, TaskResult, TaskStatus, aggregate_status


class TestAggregateStatus:
    @pytest.mark.parametrize(
        "statuses, expected",
        [
            ([TaskStatus.BLOCKED, TaskStatus.SUCCESS], TaskStatus.BLOCKED),
            ([TaskStatus.FAILED, TaskStatus.BLOCKED], TaskStatus.BLOCKED),
            ([TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.BLOCKED], TaskStatus.BLOCKED),
            ([TaskStatus.FAILED, TaskStatus.SUCCESS], TaskStatus.FAILED),
            ([TaskStatus.SUCCESS, TaskStatus.SUCCESS], TaskStatus.SUCCESS),
            ([], TaskStatus.SUCCESS),
            (["success", "blocked"], TaskStatus.BLOCKED),
            (["failed", TaskStatus.SUCCESS], TaskStatus.FAILED),
        ],
    )
    def test_precedence(self, statuses, expected) -> None:
        assert aggregate_status(statuses) is expected

    def test_unknown_status_rejected(self) -> None:
        with pytest.raises(ValueError):
            aggregate_status(["done"])


class TestTaskResult:
    def test_round_trip_keeps_status_value(self) -> None:
        result = TaskResult(task="backend-agent", client="acme", stage="S2", status=TaskStatus.BLOCKED)
        data = result.to_dict()
        assert data["status"] == "blocked"
        assert TaskResult.from_dict(data).status is TaskStatus.BLOCKED

    def test_missing_status_reads_as_failed(self) -> None:
        assert TaskResult.from_dict({"task": "x"}).status is TaskStatus.FAILED

    def test_string_issue_rejected(self) -> None:
        with pytest.raises(AttributeError):
            TaskResult.from_dict({"task": "x", "status": "success", "issues": ["free text"]})


class TestRunManifest:
    def test_missing_preconditions_parsed(self) -> None:
        manifest = RunManifest.from_dict(
            {
                "run_id": "RUN-1",
                "client": "acme",
                "stage": "S2",
                "status": "blocked",
                "timestamp": "2026-01-05T00:00:00Z",
                "missing_preconditions": ["payment_verified", "budget:run"],
            }
        )
        assert manifest.missing_preconditions == ["payment_verified", "budget:run"]
        assert manifest.missing_gates == []

    def test_older_manifest_without_preconditions(self) -> None:
        manifest = RunManifest.from_dict({"run_id": "RUN-1", "status": "success"})
        assert manifest.missing_preconditions == []
