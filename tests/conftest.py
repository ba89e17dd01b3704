"""Shared test fixtures for the stage pipeline test suite."""
from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Callable

import pytest

from src.pipeline_shared.models import ClientContext
from src.stage_pipeline.alerts import AlertDispatcher
from src.stage_pipeline.config import PathsConfig, PipelineConfig
from src.stage_pipeline.pipeline import StagePipelineDriver


SAMPLE_BRIEF: dict[str, Any] = {
    "project": {
        "title": "Acme Portal",
        "description": "Customer portal for Acme Corp",
    },
    "requirements": {
        "functional": ["User Login", "Dashboard"],
    },
    "constraints": {
        "budget": 5000,
        "tech_preferences": ["React", "Node.js"],
    },
}

OPEN_DELIVERY_GATES: dict[str, Any] = {
    "payment_verified": True,
    "contract_signed": True,
    "dns_verified": False,
    "ssl_verified": False,
}


class RecordingSink:
    """Alert sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def send(self, event: dict[str, Any]) -> bool:
        self.events.append(event)
        return True

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]


@pytest.fixture
def clients_dir(tmp_path: Path) -> Path:
    """Provide an empty client registry directory."""
    d = tmp_path / "clients"
    d.mkdir()
    (d / "clients.json").write_text(json.dumps({"clients": []}), encoding="utf-8")
    return d


@pytest.fixture
def output_root(tmp_path: Path) -> Path:
    d = tmp_path / "outputs"
    d.mkdir()
    return d


@pytest.fixture
def make_client(clients_dir: Path) -> Callable[..., Path]:
    """Register a client and write its brief and gate records.

    Pass ``gates=None`` to leave the gates file out entirely.
    """

    def _make(
        slug: str,
        name: str = "",
        brief: dict[str, Any] | None = None,
        gates: dict[str, Any] | None = None,
        current_stage: str = "S2",
    ) -> Path:
        registry_path = clients_dir / "clients.json"
        registry = json.loads(registry_path.read_text(encoding="utf-8"))
        registry["clients"].append(
            {"slug": slug, "name": name or slug.title(), "current_stage": current_stage}
        )
        registry_path.write_text(json.dumps(registry), encoding="utf-8")

        client_dir = clients_dir / slug
        client_dir.mkdir(exist_ok=True)
        (client_dir / "brief.json").write_text(
            json.dumps(SAMPLE_BRIEF if brief is None else brief), encoding="utf-8"
        )
        if gates is not None:
            (client_dir / "gates.json").write_text(json.dumps(gates), encoding="utf-8")
        return client_dir

    return _make


@pytest.fixture
def acme(make_client: Callable[..., Path]) -> str:
    """A client whose delivery gates are open."""
    make_client("acme", name="Acme Corp", gates=dict(OPEN_DELIVERY_GATES))
    return "acme"


@pytest.fixture
def client_context() -> ClientContext:
    return ClientContext(slug="acme", name="Acme Corp", current_stage="S2", brief=SAMPLE_BRIEF)


@pytest.fixture
def pipeline_config(clients_dir: Path, output_root: Path) -> PipelineConfig:
    """Default configuration pointed at the temp directories."""
    return PipelineConfig(
        paths=PathsConfig(clients_dir=str(clients_dir), output_root=str(output_root))
    )


@pytest.fixture
def alert_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def driver(pipeline_config: PipelineConfig, alert_sink: RecordingSink) -> StagePipelineDriver:
    """Driver with a recording alert sink and no metered client."""
    return StagePipelineDriver(pipeline_config, alerts=AlertDispatcher(alert_sink))


@pytest.fixture
def sample_brief() -> dict[str, Any]:
    return copy.deepcopy(SAMPLE_BRIEF)
