"""Artifact Integrity Checker.

A task may declare deliverables it failed to write.  The checker compares
declared deliverables against the file system, and :func:`apply_integrity`
makes sure such a result never passes as ``success``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from src.pipeline_shared.models import Issue, Severity, TaskResult, TaskStatus


@dataclass
class MissingArtifact:
    """A declared deliverable with no file on disk."""

    name: str
    file: str
    expected_path: str


@dataclass
class ArtifactCheck:
    """Outcome of one integrity check."""

    valid: bool
    missing: list[MissingArtifact] = field(default_factory=list)
    checked: int = 0


class ArtifactChecker:
    """Pure existence check of declared deliverables."""

    def check(self, deliverables: dict[str, str], output_dir: Path | str) -> ArtifactCheck:
        """Check every declared deliverable under *output_dir*.

        Idempotent: the result depends only on the declared mapping and
        the files present, and ``missing`` is ordered by name.
        """
        output_dir = Path(output_dir)
        missing = [
            MissingArtifact(name=name, file=filename, expected_path=str(output_dir / filename))
            for name, filename in sorted(deliverables.items())
            if not (output_dir / filename).is_file()
        ]
        return ArtifactCheck(valid=not missing, missing=missing, checked=len(deliverables))


def apply_integrity(result: TaskResult, check: ArtifactCheck) -> TaskResult:
    """Record missing artifacts on *result* and downgrade ``success``.

    Only ``success`` is downgraded (to ``blocked``).  A result that is
    already ``blocked`` or ``failed`` keeps its status but still gets the
    issue appended.
    """
    if check.valid:
        return result
    files = ", ".join(m.file for m in check.missing)
    result.issues.append(
        Issue(
            severity=Severity.HIGH.value,
            description=f"Missing deliverables: {files}",
            recommendation="Re-run the task or generate the missing files",
            details={"missing": [m.name for m in check.missing]},
        )
    )
    if result.status == TaskStatus.SUCCESS:
        result.status = TaskStatus.BLOCKED
    return result
