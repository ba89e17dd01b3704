"""Task catalog and per-role task logic.

The catalog maps a stage token to the task specs bound to it.  Each task
name resolves to a role (``designer``, ``backend``, ``qa``, ...) whose
handler turns the client context into a :class:`TaskOutput`: the
declared deliverables plus decisions, issues and next steps.  Handlers
never write files; the executor renders and writes every deliverable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from src.pipeline_shared.constants import CONSOLIDATOR_NAME, QA_SOURCE_STAGE
from src.pipeline_shared.models import (
    ClientContext,
    Endpoint,
    Issue,
    Severity,
    TaskStatus,
)
from src.pipeline_shared.utils import load_json
from src.stage_pipeline.documents import DocumentGenerator, scan_endpoints, scan_screens

logger = logging.getLogger(__name__)

TASK_DESCRIPTIONS: dict[str, str] = {
    "presales-agent": "Presales discovery and proposal",
    "setup-agent": "Project environment setup",
    "planning-agent": "Delivery planning",
    "designer-agent": "UI/UX design",
    "frontend-agent": "Frontend architecture",
    "backend-agent": "Backend API and data design",
    "qa-agent": "QA test planning",
    "deployment-agent": "Deployment planning",
}

_ROLES = ("presales", "setup", "planning", "designer", "frontend", "backend", "qa", "deployment")

SECURITY_TESTS: list[dict[str, Any]] = [
    {
        "id": "SEC-001",
        "title": "Authentication required for protected endpoints",
        "preconditions": ["unauthenticated user"],
        "steps": ["Attempt to access protected API without token"],
        "expected": ["Status 401", "Error message: Unauthorized"],
    },
    {
        "id": "SEC-002",
        "title": "SQL injection prevention",
        "preconditions": ["user input fields available"],
        "steps": ["Submit SQL injection payload in input"],
        "expected": ["Input sanitized", "No database error", "Invalid input message"],
    },
    {
        "id": "SEC-003",
        "title": "XSS prevention",
        "preconditions": ["user can input text"],
        "steps": ["Submit script tag in input field"],
        "expected": ["Script not executed", "Text escaped properly"],
    },
    {
        "id": "SEC-004",
        "title": "CSRF token validation",
        "preconditions": ["CSRF protection enabled"],
        "steps": ["Submit form without CSRF token"],
        "expected": ["Status 403", "Request rejected"],
    },
    {
        "id": "SEC-005",
        "title": "Rate limiting on API endpoints",
        "preconditions": ["rate limit: 100/min"],
        "steps": ["Send 101 requests within 1 minute"],
        "expected": ["First 100 succeed", "101st returns 429"],
    },
]


@dataclass
class TaskSpec:
    """A task bound to a stage."""

    name: str
    version: str = "1.0"
    description: str = ""

    @property
    def role(self) -> str:
        lowered = self.name.lower()
        for role in _ROLES:
            if role in lowered:
                return role
        return "generic"


@dataclass
class TaskOutput:
    """What a role handler produced, before artifacts are written."""

    summary: str
    status: TaskStatus = TaskStatus.SUCCESS
    deliverables: dict[str, str] = field(default_factory=dict)
    decisions: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    endpoints: list[Endpoint] = field(default_factory=list)
    screens: list[str] = field(default_factory=list)
    # Structured content for JSON deliverables, keyed by file name
    payloads: dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskContext:
    """Inputs available to a role handler."""

    spec: TaskSpec
    client: ClientContext
    stage: str
    output_root: Path
    documents: DocumentGenerator = field(default_factory=DocumentGenerator)

    def stage_dir(self, stage: str | None = None) -> Path:
        return self.output_root / self.client.slug / (stage or self.stage)


class TaskCatalog:
    """Stage token -> ordered task specs."""

    def __init__(self, stages: dict[str, list[str]]) -> None:
        self._stages = {k.upper(): list(v) for k, v in stages.items()}

    def stages(self) -> list[str]:
        return list(self._stages)

    def specs_for(self, stage: str) -> list[TaskSpec]:
        """Return the specs bound to *stage* (case-insensitive), or ``[]``."""
        return [
            TaskSpec(name=name, description=TASK_DESCRIPTIONS.get(name, name))
            for name in self._stages.get(stage.upper(), [])
        ]


# ---------------------------------------------------------------------------
# Role handlers
# ---------------------------------------------------------------------------


def _summary(ctx: TaskContext) -> str:
    return f"{ctx.spec.description or ctx.spec.name} for {ctx.client.display_name}"


_PRESALES_DELIVERABLES: dict[str, dict[str, str]] = {
    "PS0": {"discovery_questions": "discovery-questions.md"},
    "PS1": {"requirements_doc": "requirements.md"},
    "PS2": {"design_doc": "design.md", "tech_stack": "tech-stack.md"},
    "PS3": {"proposal": "proposal.md"},
    "PS4": {"contract_draft": "contract-draft.md"},
    "PS5": {"kickoff_plan": "kickoff-plan.md"},
}


def _presales(ctx: TaskContext) -> TaskOutput:
    stage = ctx.stage.upper()
    out = TaskOutput(
        summary=_summary(ctx),
        deliverables=dict(_PRESALES_DELIVERABLES.get(stage, {"presales_notes": "presales-notes.md"})),
    )
    budget = ctx.client.constraints.get("budget")
    if stage == "PS0":
        if budget is not None:
            out.decisions.append(f"Budget: ${budget} USD")
        out.next_steps.extend(["Schedule discovery call", "Send discovery questionnaire"])
    elif stage == "PS1":
        out.decisions.append(
            f"{len(ctx.client.functional_requirements)} functional requirements captured"
        )
        out.next_steps.append("Review requirements with client")
    elif stage == "PS2":
        prefs = ctx.client.tech_preferences
        out.decisions.append(f"Selected {prefs[0] if prefs else 'React + Node.js'} stack")
        out.next_steps.append("Create high-level architecture")
    elif stage == "PS3":
        out.decisions.append("Proposal drafted from discovery and design outputs")
        out.next_steps.append("Send proposal for approval")
    elif stage == "PS4":
        out.decisions.append("Contract terms drafted")
        out.next_steps.append("Collect contract signature")
    else:
        out.decisions.append("Kickoff plan prepared")
        out.next_steps.append("Verify payment before delivery starts")
    return out


def _setup(ctx: TaskContext) -> TaskOutput:
    return TaskOutput(
        summary=_summary(ctx),
        deliverables={"setup_checklist": "project-setup.md"},
        decisions=["Repository and environments provisioned"],
        next_steps=["Share access with the delivery team"],
    )


def _planning(ctx: TaskContext) -> TaskOutput:
    count = len(ctx.client.functional_requirements)
    return TaskOutput(
        summary=_summary(ctx),
        deliverables={"project_plan": "project-plan.md", "backlog": "backlog.md"},
        decisions=[f"Planned {count} functional requirement(s) into the backlog"],
        next_steps=["Review plan with client"],
    )


def _designer(ctx: TaskContext) -> TaskOutput:
    deliverables = {"wireframes_notes": "wireframes-notes.md", "design_system": "design-system.md"}
    wireframes = ctx.documents.render(
        "wireframes_notes", deliverables["wireframes_notes"], ctx.client, ctx.stage
    )
    screens = scan_screens(wireframes)
    return TaskOutput(
        summary=_summary(ctx),
        deliverables=deliverables,
        decisions=[
            f"Created {len(screens)} key screens based on requirements",
            "Defined color palette and typography",
        ],
        next_steps=["Review wireframes with client"],
        screens=screens,
    )


def _frontend(ctx: TaskContext) -> TaskOutput:
    prefs = ctx.client.tech_preferences
    tech = prefs[0] if prefs else "React"
    return TaskOutput(
        summary=_summary(ctx),
        deliverables={
            "component_structure": "component-structure.md",
            "state_management": "state-management.md",
        },
        decisions=[f"Selected {tech} for frontend", "Planned component hierarchy"],
        next_steps=["Scaffold component library"],
    )


def _backend(ctx: TaskContext) -> TaskOutput:
    deliverables = {"api_spec": "api-spec.md", "db_schema": "database-schema.md"}
    spec_text = ctx.documents.render("api_spec", deliverables["api_spec"], ctx.client, ctx.stage)
    endpoints = scan_endpoints(spec_text, deliverables["api_spec"])
    return TaskOutput(
        summary=_summary(ctx),
        deliverables=deliverables,
        decisions=[
            f"Designed {len(endpoints)} API endpoints",
            "Defined database schema with relationships",
        ],
        next_steps=["Review API contract with frontend"],
        endpoints=endpoints,
    )


def _deployment(ctx: TaskContext) -> TaskOutput:
    return TaskOutput(
        summary=_summary(ctx),
        deliverables={"deployment_plan": "deployment-plan.md", "runbook": "runbook.md"},
        decisions=[f"Prepared {ctx.stage} rollout"],
        next_steps=["Confirm release window with client"],
    )


def _generic(ctx: TaskContext) -> TaskOutput:
    return TaskOutput(
        summary=_summary(ctx),
        deliverables={"notes": f"{ctx.spec.name}-notes.md"},
    )


def _load_source_consolidation(ctx: TaskContext) -> dict[str, Any] | None:
    data = load_json(ctx.stage_dir(QA_SOURCE_STAGE) / f"{CONSOLIDATOR_NAME}.json")
    return data if isinstance(data, dict) else None


def _source_endpoints(source: dict[str, Any], source_dir: Path) -> list[Endpoint]:
    """Endpoints from the structured channel, else scanned from api-spec files."""
    if source.get("endpoints"):
        return [Endpoint.from_dict(e) for e in source["endpoints"] if isinstance(e, dict)]
    endpoints: list[Endpoint] = []
    for d in source.get("deliverables") or []:
        if "api-spec" in str(d.get("file", "")) and d.get("exists"):
            path = source_dir / d["file"]
            try:
                endpoints.extend(scan_endpoints(path.read_text(encoding="utf-8"), d["file"]))
            except OSError as exc:
                logger.warning("Cannot read %s: %s", path, exc)
    return endpoints


def _source_screens(source: dict[str, Any], source_dir: Path) -> list[str]:
    if source.get("screens"):
        return [str(s) for s in source["screens"]]
    screens: list[str] = []
    for d in source.get("deliverables") or []:
        if "wireframes" in str(d.get("file", "")) and d.get("exists"):
            path = source_dir / d["file"]
            try:
                screens.extend(scan_screens(path.read_text(encoding="utf-8")))
            except OSError as exc:
                logger.warning("Cannot read %s: %s", path, exc)
    return screens


def _qa(ctx: TaskContext) -> TaskOutput:
    out = TaskOutput(summary=_summary(ctx))
    source = _load_source_consolidation(ctx)
    if source is None:
        out.status = TaskStatus.BLOCKED
        out.issues.append(
            Issue(
                severity=Severity.CRITICAL.value,
                description=f"{QA_SOURCE_STAGE} consolidation not found - cannot create test plan",
                recommendation=f"Run {QA_SOURCE_STAGE} stage first",
            )
        )
        return out

    source_dir = ctx.stage_dir(QA_SOURCE_STAGE)
    endpoints = _source_endpoints(source, source_dir)
    screens = _source_screens(source, source_dir)
    action_items = [a for a in source.get("action_items") or [] if isinstance(a, dict)]

    test_cases: list[dict[str, Any]] = []
    for i, ep in enumerate(endpoints, start=1):
        test_cases.append(
            {
                "id": f"TC-API-{i:03d}",
                "title": f"{ep.method} {ep.path} returns valid response",
                "preconditions": ["user authenticated", "valid request payload"],
                "steps": [
                    f"Send {ep.method} request to {ep.path}",
                    "Validate response status code",
                    "Validate response schema",
                ],
                "expected": ["Status 200 or 201", "Valid JSON response", "Response matches API spec"],
                "source": f"{ep.file or 'api-spec.md'}:{ep.line}",
            }
        )
    for i, screen in enumerate(screens, start=1):
        test_cases.append(
            {
                "id": f"TC-UI-{i:03d}",
                "title": f"{screen} - UI elements render correctly",
                "preconditions": ["user logged in", "screen accessible"],
                "steps": [f"Navigate to {screen}", "Verify all UI elements present", "Test interactions"],
                "expected": ["Screen loads within 3s", "All elements visible", "No console errors"],
                "source": "wireframes-notes.md",
            }
        )
    acceptance = [
        {
            "id": f"AC-{i:03d}",
            "title": item.get("title", ""),
            "criteria": [
                f"Issue resolved: {item.get('title', '')}",
                "Evidence provided",
                f"Verified by {item.get('owner', 'team')}",
            ],
            "owner": item.get("owner", "team"),
            "priority": item.get("severity", Severity.MEDIUM.value),
        }
        for i, item in enumerate(action_items, start=1)
    ]

    out.deliverables = {
        "test_plan": "test-plan.md",
        "test_cases": "test-cases.json",
        "acceptance_criteria": "acceptance-criteria.json",
        "security_tests": "security-tests.json",
    }
    out.payloads = {
        "test-cases.json": test_cases,
        "security-tests.json": [dict(t) for t in SECURITY_TESTS],
        "acceptance-criteria.json": acceptance,
    }
    out.decisions = [
        f"Generated {len(test_cases)} test cases from {len(endpoints)} endpoints + {len(screens)} screens",
        f"Created {len(SECURITY_TESTS)} security test scenarios (OWASP-based)",
        f"Defined acceptance criteria for {len(action_items)} action items",
    ]
    out.next_steps = [
        "Review test plan with team",
        "Set up test automation framework",
        f"Execute {len(test_cases)} test cases",
        "Perform security testing",
    ]
    return out


ROLE_HANDLERS: dict[str, Callable[[TaskContext], TaskOutput]] = {
    "presales": _presales,
    "setup": _setup,
    "planning": _planning,
    "designer": _designer,
    "frontend": _frontend,
    "backend": _backend,
    "qa": _qa,
    "deployment": _deployment,
    "generic": _generic,
}


def run_task_logic(ctx: TaskContext) -> TaskOutput:
    """Dispatch *ctx* to its role handler."""
    handler = ROLE_HANDLERS.get(ctx.spec.role, _generic)
    output = handler(ctx)
    if any(i.severity == Severity.CRITICAL.value for i in output.issues):
        output.status = TaskStatus.BLOCKED
    return output
