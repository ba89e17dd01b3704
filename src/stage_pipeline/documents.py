"""Template-based document generator for task deliverables.

Content is chosen by the deliverable's file name.  JSON deliverables are
written from structured payloads supplied by the task; everything else
comes from a markdown template filled from the client brief.
"""

from __future__ import annotations

import json
import re
from typing import Any

from src.pipeline_shared.models import ClientContext, Endpoint

ENDPOINT_LINE_RE = re.compile(
    r"- \*\*(GET|POST|PUT|PATCH|DELETE)\*\*\s+(/api/[^\s]+)", re.IGNORECASE
)
_NUMBERED_RE = re.compile(r"^\d+\.\s*")
_WHITESPACE_RE = re.compile(r"\s+")


def endpoint_slug(requirement: str) -> str:
    """Path segment for a requirement: lower-cased, whitespace to ``-``."""
    return _WHITESPACE_RE.sub("-", requirement.lower())


def scan_endpoints(text: str, file: str = "") -> list[Endpoint]:
    """Extract ``- **METHOD** /api/...`` lines from an API spec document."""
    endpoints: list[Endpoint] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        match = ENDPOINT_LINE_RE.search(line)
        if match:
            endpoints.append(
                Endpoint(method=match.group(1).upper(), path=match.group(2), file=file, line=lineno)
            )
    return endpoints


def scan_screens(text: str) -> list[str]:
    """Return the numbered entries of the ``## Screens`` section."""
    screens: list[str] = []
    in_section = False
    for line in text.splitlines():
        if "## Screens" in line:
            in_section = True
        elif in_section and line.startswith("##"):
            in_section = False
        elif in_section and _NUMBERED_RE.match(line):
            screens.append(_NUMBERED_RE.sub("", line).strip())
    return screens


class DocumentGenerator:
    """Renders deliverable content for a client at a stage."""

    def render(
        self,
        name: str,
        filename: str,
        context: ClientContext,
        stage: str,
        payloads: dict[str, Any] | None = None,
    ) -> str:
        """Return the content for deliverable *name* written to *filename*.

        Args:
            name: Deliverable key, e.g. ``"api_spec"``.
            filename: Target file name, e.g. ``"api-spec.md"``.
            context: Client context supplying project and requirements.
            stage: Stage token.
            payloads: Structured data for JSON deliverables, keyed by
                file name.
        """
        payloads = payloads or {}
        if filename.endswith(".json"):
            return json.dumps(payloads.get(filename, []), indent=2)

        title = context.project.get("title") or context.display_name
        requirements = context.functional_requirements

        if "wireframes" in filename:
            return self._wireframes(title, context.project.get("description", ""), requirements)
        if "design-system" in filename:
            return (
                "# Design System\n\n"
                "## Colors\n- Primary: #007bff\n- Secondary: #6c757d\n\n"
                "## Typography\n- Headings: Inter, sans-serif\n- Body: System UI\n"
            )
        if "api-spec" in filename:
            return self._api_spec(requirements)
        if "database-schema" in filename:
            return self._database_schema(requirements)
        if "component-structure" in filename:
            return (
                "# Component Structure\n\n"
                "## Component Hierarchy\n- App\n  - Header\n  - Main\n  - Footer\n"
            )
        if "test-plan" in filename:
            return self._test_plan(title, requirements, payloads)
        return self._placeholder(name, context, stage)

    @staticmethod
    def _wireframes(title: str, description: str, requirements: list[str]) -> str:
        lines = [
            f"# Wireframes - {title}",
            "",
            "## Overview",
            description or "UI/UX wireframes for the project",
            "",
            "## Screens",
        ]
        lines.extend(f"{i}. {req}" for i, req in enumerate(requirements, start=1))
        return "\n".join(lines) + "\n"

    @staticmethod
    def _api_spec(requirements: list[str]) -> str:
        lines = ["# API Specification", "", "## Endpoints"]
        for i, req in enumerate(requirements, start=1):
            slug = endpoint_slug(req)
            lines.extend(
                [
                    f"### {i}. {req}",
                    f"- **GET** /api/{slug}",
                    f"- **POST** /api/{slug}",
                    "",
                ]
            )
        return "\n".join(lines) + "\n"

    @staticmethod
    def _database_schema(requirements: list[str]) -> str:
        lines = ["# Database Schema", "", "## Tables"]
        for req in requirements:
            table = req.split(" ")[0].lower() if req else "entity"
            lines.extend(
                [
                    f"### {table}",
                    "- id (UUID)",
                    "- created_at (TIMESTAMP)",
                    "- updated_at (TIMESTAMP)",
                    "",
                ]
            )
        return "\n".join(lines) + "\n"

    @staticmethod
    def _test_plan(title: str, requirements: list[str], payloads: dict[str, Any]) -> str:
        lines = ["# Test Plan", "", "## Overview", f"Test plan for {title}", ""]
        lines.append("## Functional Tests")
        lines.extend(f"{i}. Test: {req}" for i, req in enumerate(requirements, start=1))
        cases = payloads.get("test-cases.json") or []
        if cases:
            lines.extend(["", "## Derived Test Cases"])
            lines.extend(f"- {c['id']}: {c['title']}" for c in cases)
        security = payloads.get("security-tests.json") or []
        if security:
            lines.extend(["", "## Security Tests"])
            lines.extend(f"- {s['id']}: {s['title']}" for s in security)
        return "\n".join(lines) + "\n"

    @staticmethod
    def _placeholder(name: str, context: ClientContext, stage: str) -> str:
        heading = name.replace("_", " ").upper()
        return (
            f"# {heading}\n\n"
            f"Generated for {context.display_name} - Stage {stage}\n\n"
            "*Placeholder artifact. Replace with generated content.*\n"
        )
