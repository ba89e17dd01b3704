"""Run manifest writer and store.

One manifest per invocation at ``{output_root}/{client}/runs/{run_id}.json``.
Manifests are append-only: writing a run id that already has a manifest
raises :class:`ManifestExistsError` and the existing file is never touched.
"""

from __future__ import annotations

import logging
from pathlib import Path

from src.pipeline_shared.constants import RUNS_DIR
from src.pipeline_shared.models import RunManifest
from src.pipeline_shared.utils import atomic_write_json, load_json
from src.stage_pipeline.exceptions import ManifestExistsError

logger = logging.getLogger(__name__)


class ManifestStore:
    """Reads and appends run manifests under an output root."""

    def __init__(self, output_root: Path | str) -> None:
        self._output_root = Path(output_root)

    def runs_dir(self, client: str) -> Path:
        return self._output_root / client / RUNS_DIR

    def path_for(self, client: str, run_id: str) -> Path:
        return self.runs_dir(client) / f"{run_id}.json"

    def write(self, manifest: RunManifest) -> Path:
        """Persist *manifest* once.

        Raises:
            ManifestExistsError: If a manifest for the run id exists.
        """
        path = self.path_for(manifest.client, manifest.run_id)
        if path.exists():
            raise ManifestExistsError(manifest.run_id)
        atomic_write_json(path, manifest.to_dict())
        logger.info(
            "Manifest written for %s: %s (%d artifact(s))",
            manifest.run_id,
            manifest.status,
            len(manifest.artifacts),
        )
        return path

    def read(self, client: str, run_id: str) -> RunManifest | None:
        data = load_json(self.path_for(client, run_id))
        if not isinstance(data, dict):
            return None
        return RunManifest.from_dict(data)

    def list_manifests(self, client: str) -> list[RunManifest]:
        """Return *client*'s manifests ordered by run id.

        Unreadable files are skipped with a warning.
        """
        runs_dir = self.runs_dir(client)
        if not runs_dir.is_dir():
            return []
        manifests: list[RunManifest] = []
        for path in sorted(runs_dir.glob("*.json")):
            data = load_json(path)
            if not isinstance(data, dict):
                logger.warning("Skipping unreadable manifest %s", path)
                continue
            manifests.append(RunManifest.from_dict(data))
        return manifests

    def recent(self, client: str, limit: int = 10) -> list[RunManifest]:
        """Most recent *limit* manifests, newest first."""
        manifests = sorted(
            self.list_manifests(client), key=lambda m: (m.timestamp, m.run_id), reverse=True
        )
        return manifests[:limit]
