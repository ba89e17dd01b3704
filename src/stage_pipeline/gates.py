"""Gate Policy Engine.

Decides whether a stage may run given a client's gate flags.  Evaluation
is a pure function of ``(stage, gate_state, config)``: it performs no I/O
and holds no mutable state, so the same inputs always produce the same
decision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.pipeline_shared.constants import (
    GATE_CONTRACT_SIGNED,
    GATE_PAYMENT_VERIFIED,
    PRODUCTION_REQUIRED_GATES,
)
from src.pipeline_shared.models import StageFamily
from src.stage_pipeline.config import GatesConfig

_PRESALES_PREFIXES = ("presales", "ps")
_DELIVERY_PREFIXES = ("delivery", "s")


@dataclass
class GateDecision:
    """Result of a gate evaluation."""

    allowed: bool
    reason: str
    missing_gates: list[str] = field(default_factory=list)
    family: StageFamily = StageFamily.UNKNOWN
    required_gates: list[str] = field(default_factory=list)


class GatePolicyEngine:
    """Maps a stage token to a family and checks the family's gate flags."""

    def __init__(self, config: GatesConfig | None = None) -> None:
        self._config = config or GatesConfig()

    def classify(self, stage: str) -> StageFamily:
        """Return the family for *stage*.

        Prefix matching is case-insensitive and the first match wins in
        the order production, presales, delivery.
        """
        token = stage.strip().lower()
        if not token:
            return StageFamily.UNKNOWN
        tokens = {t.lower() for t in self._config.production_tokens}
        prefixes = tuple(p.lower() for p in self._config.production_prefixes)
        if token in tokens or token.startswith(prefixes):
            return StageFamily.PRODUCTION
        if token.startswith(_PRESALES_PREFIXES):
            return StageFamily.PRESALES
        if token.startswith(_DELIVERY_PREFIXES):
            return StageFamily.DELIVERY
        return StageFamily.UNKNOWN

    def is_presales_terminal(self, stage: str) -> bool:
        token = stage.strip().lower()
        return (
            token == self._config.presales_terminal_stage.lower()
            or token.endswith("terminal")
        )

    def required_gates(self, stage: str) -> list[str] | None:
        """Return the gate flags *stage* needs, in policy order.

        ``None`` means the stage is unknown and the unknown-stage policy
        applies.
        """
        family = self.classify(stage)
        if family is StageFamily.PRODUCTION:
            return list(PRODUCTION_REQUIRED_GATES)
        if family is StageFamily.PRESALES:
            if self.is_presales_terminal(stage):
                return [GATE_CONTRACT_SIGNED]
            return []
        if family is StageFamily.DELIVERY:
            return [GATE_PAYMENT_VERIFIED]
        return None

    def evaluate(self, stage: str, gate_state: dict[str, Any] | None) -> GateDecision:
        """Decide whether *stage* may run.

        A flag counts as open only when its value is exactly ``True``.
        Missing keys and non-boolean values are closed.

        Args:
            stage: Stage token, e.g. ``"S2"`` or ``"PS5"``.
            gate_state: Client gate flags; ``None`` means no record exists.

        Returns:
            A :class:`GateDecision`.  On denial ``missing_gates`` lists the
            closed flags in policy order.
        """
        gates = gate_state or {}
        family = self.classify(stage)
        required = self.required_gates(stage)

        if required is None:
            if self._config.unknown_stage_policy == "allow":
                return GateDecision(
                    allowed=True,
                    reason=f"Unknown stage '{stage}' allowed by policy",
                    family=family,
                )
            return GateDecision(
                allowed=False,
                reason=f"Unknown stage '{stage}' denied by policy",
                family=family,
            )

        if not required:
            return GateDecision(
                allowed=True, reason="No gates required", family=family
            )

        missing = [name for name in required if gates.get(name) is not True]
        if missing:
            return GateDecision(
                allowed=False,
                reason="Missing gates: " + ", ".join(missing),
                missing_gates=missing,
                family=family,
                required_gates=required,
            )
        return GateDecision(
            allowed=True,
            reason="All required gates satisfied",
            family=family,
            required_gates=required,
        )
