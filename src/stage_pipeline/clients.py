"""Client registry, brief and gate-state loading.

Everything here is read fresh on each invocation; the core never writes
client records.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from src.pipeline_shared.constants import (
    CLIENT_BRIEF_FILE,
    CLIENT_GATES_FILE,
    CLIENT_REGISTRY_FILE,
)
from src.pipeline_shared.models import ClientContext
from src.pipeline_shared.utils import load_json
from src.stage_pipeline.exceptions import ClientNotFoundError, ConfigurationError

logger = logging.getLogger(__name__)


class ClientStore:
    """Reads ``{clients_dir}/clients.json`` and per-client records."""

    def __init__(self, clients_dir: Path | str) -> None:
        self.clients_dir = Path(clients_dir)

    @property
    def registry_path(self) -> Path:
        return self.clients_dir / CLIENT_REGISTRY_FILE

    def list_clients(self) -> list[dict[str, Any]]:
        """Return the raw registry entries.

        Raises:
            ConfigurationError: If the registry is missing or malformed.
        """
        raw = load_json(self.registry_path)
        if raw is None:
            raise ConfigurationError(
                f"Client registry not found or unreadable: {self.registry_path}"
            )
        entries = raw.get("clients") if isinstance(raw, dict) else raw
        if not isinstance(entries, list):
            raise ConfigurationError(
                f"Client registry must contain a 'clients' list: {self.registry_path}"
            )
        return [e for e in entries if isinstance(e, dict) and e.get("slug")]

    def load_brief(self, slug: str) -> dict[str, Any]:
        """Return the client's project brief, or ``{}`` when absent."""
        brief = load_json(self.clients_dir / slug / CLIENT_BRIEF_FILE)
        if not isinstance(brief, dict):
            logger.debug("No brief for client %s", slug)
            return {}
        return brief

    def load_gates(self, slug: str) -> dict[str, Any] | None:
        """Return the client's gate flags.

        ``None`` means no gate record exists, which the gate engine treats
        as every gate closed.
        """
        gates = load_json(self.clients_dir / slug / CLIENT_GATES_FILE)
        if gates is None:
            logger.warning("Gates file not found for %s, all gates closed", slug)
            return None
        if not isinstance(gates, dict):
            logger.warning("Gates file for %s is not a mapping, all gates closed", slug)
            return None
        return gates

    def load_client(self, slug: str) -> ClientContext:
        """Build a :class:`ClientContext` for *slug*.

        Raises:
            ClientNotFoundError: If *slug* is not in the registry.
        """
        for entry in self.list_clients():
            if entry.get("slug") == slug:
                context = ClientContext(
                    slug=slug,
                    name=str(entry.get("name", "")),
                    current_stage=str(entry.get("current_stage", "")),
                    brief=self.load_brief(slug),
                )
                logger.info("Client loaded: %s (stage %s)", slug, context.current_stage or "-")
                return context
        raise ClientNotFoundError(slug)
