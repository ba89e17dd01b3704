"""Tests for ClientStore registry, brief and gate loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from src.stage_pipeline.clients import ClientStore
from src.stage_pipeline.exceptions import ClientNotFoundError, ConfigurationError


class TestRegistry:
    def test_missing_registry(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            ClientStore(tmp_path).list_clients()

    def test_malformed_registry(self, tmp_path: Path) -> None:
        (tmp_path / "clients.json").write_text(json.dumps({"clients": "acme"}), encoding="utf-8")
        with pytest.raises(ConfigurationError):
            ClientStore(tmp_path).list_clients()

    def test_list_form_accepted(self, tmp_path: Path) -> None:
        (tmp_path / "clients.json").write_text(
            json.dumps([{"slug": "acme"}, {"name": "no slug"}, "junk"]), encoding="utf-8"
        )
        assert ClientStore(tmp_path).list_clients() == [{"slug": "acme"}]

    def test_load_client(self, clients_dir: Path, acme: str) -> None:
        context = ClientStore(clients_dir).load_client(acme)
        assert context.slug == "acme"
        assert context.display_name == "Acme Corp"
        assert context.current_stage == "S2"
        assert context.functional_requirements == ["User Login", "Dashboard"]
        assert context.tech_preferences == ["React", "Node.js"]

    def test_unknown_client(self, clients_dir: Path, acme: str) -> None:
        with pytest.raises(ClientNotFoundError) as exc_info:
            ClientStore(clients_dir).load_client("globex")
        assert exc_info.value.slug == "globex"


class TestRecords:
    def test_missing_brief_is_empty(self, clients_dir: Path) -> None:
        assert ClientStore(clients_dir).load_brief("ghost") == {}

    def test_missing_gates_is_none(self, clients_dir: Path, make_client) -> None:
        make_client("nogates", gates=None)
        assert ClientStore(clients_dir).load_gates("nogates") is None

    def test_non_mapping_gates_is_none(self, clients_dir: Path, make_client) -> None:
        client_dir = make_client("listgates", gates=None)
        (client_dir / "gates.json").write_text("[true]", encoding="utf-8")
        assert ClientStore(clients_dir).load_gates("listgates") is None

    def test_gates_read_fresh(self, clients_dir: Path, make_client) -> None:
        client_dir = make_client("fresh", gates={"payment_verified": False})
        store = ClientStore(clients_dir)
        assert store.load_gates("fresh") == {"payment_verified": False}
        (client_dir / "gates.json").write_text(json.dumps({"payment_verified": True}), encoding="utf-8")
        assert store.load_gates("fresh") == {"payment_verified": True}

    def test_display_name_falls_back_to_slug(self, clients_dir: Path) -> None:
        (clients_dir / "clients.json").write_text(json.dumps({"clients": [{"slug": "bare"}]}), encoding="utf-8")
        assert ClientStore(clients_dir).load_client("bare").display_name == "bare"
