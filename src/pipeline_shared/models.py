"""Shared data models for the stage pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class StageFamily(str, Enum):
    """Gate-policy family a stage token belongs to."""
    PRESALES = "presales"
    DELIVERY = "delivery"
    PRODUCTION = "production"
    UNKNOWN = "unknown"


class TaskStatus(str, Enum):
    """Outcome of a task, a consolidation, or a whole stage run."""
    SUCCESS = "success"
    BLOCKED = "blocked"
    FAILED = "failed"


class Severity(str, Enum):
    """Severity shared by issues, conflicts, and action items."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def aggregate_status(statuses: list[TaskStatus | str]) -> TaskStatus:
    """Fold a set of statuses with ``blocked > failed > success`` precedence."""
    values = {TaskStatus(s) for s in statuses}
    if TaskStatus.BLOCKED in values:
        return TaskStatus.BLOCKED
    if TaskStatus.FAILED in values:
        return TaskStatus.FAILED
    return TaskStatus.SUCCESS


@dataclass
class ClientContext:
    """Immutable per-invocation view of a client and its project brief."""
    slug: str
    name: str = ""
    current_stage: str = ""
    brief: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.slug

    @property
    def requirements(self) -> dict[str, Any]:
        return self.brief.get("requirements") or {}

    @property
    def constraints(self) -> dict[str, Any]:
        return self.brief.get("constraints") or {}

    @property
    def project(self) -> dict[str, Any]:
        return self.brief.get("project") or {}

    @property
    def functional_requirements(self) -> list[str]:
        return [str(r) for r in self.requirements.get("functional") or []]

    @property
    def tech_preferences(self) -> list[str]:
        return [str(t) for t in self.constraints.get("tech_preferences") or []]


@dataclass
class Issue:
    """A problem reported by a task or synthesised by the control plane."""
    severity: str
    description: str
    recommendation: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        return cls(
            severity=str(data.get("severity", Severity.MEDIUM.value)),
            description=str(data.get("description", "")),
            recommendation=str(data.get("recommendation", "")),
            details=dict(data.get("details") or {}),
        )


@dataclass
class Endpoint:
    """An HTTP endpoint declared by an API-producing task."""
    method: str
    path: str
    file: str = ""
    line: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Endpoint:
        return cls(
            method=str(data.get("method", "")).upper(),
            path=str(data.get("path", "")),
            file=str(data.get("file", "")),
            line=int(data.get("line", 0) or 0),
        )


@dataclass
class TaskMetadata:
    """Execution metadata attached to a task result."""
    duration_ms: int = 0
    tokens_used: int | None = None
    cost_usd: float | None = None


@dataclass
class TaskResult:
    """Result of one task executor invocation.

    Persisted to ``{task}.json`` (machine-readable) and ``{task}.md``
    (human-readable) in the stage directory before any consolidator is
    allowed to read it.
    """
    task: str
    client: str
    stage: str
    status: TaskStatus = TaskStatus.SUCCESS
    summary: str = ""
    version: str = "1.0"
    deliverables: dict[str, str] = field(default_factory=dict)
    decisions: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    endpoints: list[Endpoint] = field(default_factory=list)
    screens: list[str] = field(default_factory=list)
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    timestamp: str = ""

    @property
    def has_critical_issue(self) -> bool:
        return any(i.severity == Severity.CRITICAL.value for i in self.issues)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = TaskStatus(self.status).value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        meta = data.get("metadata") or {}
        return cls(
            task=str(data.get("task", "")),
            client=str(data.get("client", "")),
            stage=str(data.get("stage", "")),
            status=TaskStatus(data.get("status", TaskStatus.FAILED.value)),
            summary=str(data.get("summary", "")),
            version=str(data.get("version", "1.0")),
            deliverables={str(k): str(v) for k, v in (data.get("deliverables") or {}).items()},
            decisions=[str(d) for d in data.get("decisions") or []],
            issues=[Issue.from_dict(i) for i in data.get("issues") or []],
            next_steps=[str(s) for s in data.get("next_steps") or []],
            endpoints=[Endpoint.from_dict(e) for e in data.get("endpoints") or []],
            screens=[str(s) for s in data.get("screens") or []],
            metadata=TaskMetadata(
                duration_ms=int(meta.get("duration_ms", 0) or 0),
                tokens_used=meta.get("tokens_used"),
                cost_usd=meta.get("cost_usd"),
            ),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class DeliverableRecord:
    """A deliverable declared by one task, with its on-disk existence."""
    task: str
    key: str
    file: str
    exists: bool


@dataclass
class Conflict:
    """A cross-task inconsistency found by the consolidator."""
    kind: str
    severity: str
    description: str
    tasks: list[str] = field(default_factory=list)
    recommendation: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionItem:
    """An owned follow-up derived by the consolidator."""
    id: str
    owner: str
    severity: str
    title: str
    source: str
    evidence: str = ""
    next_step: str = ""


@dataclass
class ConsolidatedResult:
    """Merged view of the sibling results of one parallel group."""
    stage: str
    client: str
    status: TaskStatus = TaskStatus.SUCCESS
    summary: str = ""
    total_deliverables: int = 0
    missing_deliverables: int = 0
    total_decisions: int = 0
    total_issues: int = 0
    deliverables: list[DeliverableRecord] = field(default_factory=list)
    decisions: list[dict[str, str]] = field(default_factory=list)
    issues: list[dict[str, Any]] = field(default_factory=list)
    next_steps: list[dict[str, str]] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    action_items: list[ActionItem] = field(default_factory=list)
    missing_inputs: list[str] = field(default_factory=list)
    endpoints: list[Endpoint] = field(default_factory=list)
    screens: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    timestamp: str = ""

    @property
    def has_critical_issue(self) -> bool:
        return any(i.get("severity") == Severity.CRITICAL.value for i in self.issues)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = TaskStatus(self.status).value
        return data


@dataclass
class AgentEntry:
    """Per-task line of a run manifest."""
    name: str
    status: str
    version: str = "1.0"


@dataclass
class RunMetrics:
    """Aggregate metrics recorded in a run manifest."""
    artifact_count: int = 0
    cost_usd: float | None = None
    tokens: int | None = None


@dataclass
class RunManifest:
    """Authoritative, append-only record of one pipeline invocation."""
    run_id: str
    client: str
    stage: str
    status: str
    timestamp: str
    client_name: str = ""
    family: str = StageFamily.UNKNOWN.value
    reason: str = ""
    artifacts: list[str] = field(default_factory=list)
    gates: dict[str, bool] = field(default_factory=dict)
    missing_gates: list[str] = field(default_factory=list)
    # Every unmet precondition of a denial: gate flags and "budget:<scope>".
    missing_preconditions: list[str] = field(default_factory=list)
    agents: list[AgentEntry] = field(default_factory=list)
    metrics: RunMetrics = field(default_factory=RunMetrics)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunManifest:
        metrics = data.get("metrics") or {}
        return cls(
            run_id=str(data.get("run_id", "")),
            client=str(data.get("client", "")),
            stage=str(data.get("stage", "")),
            status=str(data.get("status", "")),
            timestamp=str(data.get("timestamp", "")),
            client_name=str(data.get("client_name", "")),
            family=str(data.get("family", StageFamily.UNKNOWN.value)),
            reason=str(data.get("reason", "")),
            artifacts=[str(a) for a in data.get("artifacts") or []],
            gates=dict(data.get("gates") or {}),
            missing_gates=[str(g) for g in data.get("missing_gates") or []],
            missing_preconditions=[str(p) for p in data.get("missing_preconditions") or []],
            agents=[
                AgentEntry(
                    name=str(a.get("name", "")),
                    status=str(a.get("status", "")),
                    version=str(a.get("version", "1.0")),
                )
                for a in data.get("agents") or []
            ],
            metrics=RunMetrics(
                artifact_count=int(metrics.get("artifact_count", 0) or 0),
                cost_usd=metrics.get("cost_usd"),
                tokens=metrics.get("tokens"),
            ),
        )
