"""Budget ledger.

Tracks cumulative spend per run, per ``(client, stage)``, per client and
per ``(client, day)``, and answers whether a further call may proceed.
The ledger is seeded once from the manifest history and then updated
incrementally after every metered call.  Costs that are negative or not
numbers are ignored, so every total is monotonically non-decreasing.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from src.pipeline_shared.models import RunManifest
from src.pipeline_shared.utils import today_utc
from src.stage_pipeline.config import BudgetConfig
from src.stage_pipeline.exceptions import BudgetExceededError

logger = logging.getLogger(__name__)

SCOPE_RUN = "run"
SCOPE_STAGE = "stage"
SCOPE_CLIENT = "client"
SCOPE_CLIENT_DAY = "client_day"


def _valid_cost(cost: Any) -> float | None:
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        return None
    if math.isnan(cost) or math.isinf(cost) or cost < 0:
        return None
    return float(cost)


@dataclass
class BudgetDecision:
    """Result of :meth:`BudgetLedger.check_budget`."""

    within_budget: bool
    spent: float = 0.0
    limit: float | None = None
    scope: str = ""
    reason: str = ""

    @property
    def precondition(self) -> str:
        """The failing ceiling as a manifest precondition, e.g. ``budget:run``."""
        return f"budget:{self.scope}"


@dataclass
class Reservation:
    """An in-flight estimate counted against the ceilings until released."""

    id: str
    client: str
    stage: str
    run_id: str | None
    day: str
    amount: float


@dataclass
class BudgetLedger:
    """Running spend totals checked against configured ceilings."""

    limits: BudgetConfig = field(default_factory=BudgetConfig)

    _by_run: dict[str, float] = field(default_factory=dict, repr=False)
    _by_stage: dict[tuple[str, str], float] = field(default_factory=dict, repr=False)
    _by_client: dict[str, float] = field(default_factory=dict, repr=False)
    _by_day: dict[tuple[str, str], float] = field(default_factory=dict, repr=False)
    _reservations: dict[str, Reservation] = field(default_factory=dict, repr=False)
    _seeded: set[str] = field(default_factory=set, repr=False)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_from_manifests(self, manifests: Iterable[RunManifest]) -> int:
        """Add the recorded cost of each manifest to the totals.

        Returns:
            Number of manifests that contributed a cost.
        """
        counted = 0
        for manifest in manifests:
            cost = _valid_cost(manifest.metrics.cost_usd)
            if cost is None:
                continue
            day = manifest.timestamp[:10] if manifest.timestamp else today_utc()
            self._add(manifest.run_id, manifest.client, manifest.stage, cost, day)
            counted += 1
        return counted

    @classmethod
    def from_history(
        cls, store: Any, client: str, limits: BudgetConfig | None = None
    ) -> BudgetLedger:
        """Build a ledger seeded from *client*'s manifests in *store*."""
        ledger = cls(limits=limits or BudgetConfig())
        ledger.ensure_seeded(store, client)
        return ledger

    def ensure_seeded(self, store: Any, client: str) -> None:
        """Seed *client* from *store* unless that already happened."""
        if client in self._seeded:
            return
        counted = self.seed_from_manifests(store.list_manifests(client))
        self._seeded.add(client)
        logger.debug("Budget ledger seeded for %s from %d manifest(s)", client, counted)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _add(self, run_id: str | None, client: str, stage: str, cost: float, day: str) -> None:
        if run_id:
            self._by_run[run_id] = self._by_run.get(run_id, 0.0) + cost
        key = (client, stage)
        self._by_stage[key] = self._by_stage.get(key, 0.0) + cost
        self._by_client[client] = self._by_client.get(client, 0.0) + cost
        day_key = (client, day)
        self._by_day[day_key] = self._by_day.get(day_key, 0.0) + cost

    def record(
        self,
        run_id: str | None,
        client: str,
        stage: str,
        cost: Any,
        day: str | None = None,
    ) -> float:
        """Record the cost of a completed call.

        Returns:
            The amount actually recorded (0.0 when *cost* was ignored).
        """
        valid = _valid_cost(cost)
        if valid is None:
            logger.warning("Ignoring invalid cost %r for %s/%s", cost, client, stage)
            return 0.0
        self._add(run_id, client, stage, valid, day or today_utc())
        return valid

    def reserve(
        self,
        client: str,
        stage: str,
        estimate: float,
        run_id: str | None = None,
        day: str | None = None,
    ) -> Reservation:
        """Check and hold *estimate* against every ceiling.

        Raises:
            BudgetExceededError: If the estimate would cross a ceiling.
        """
        amount = _valid_cost(estimate) or 0.0
        decision = self.check_budget(client, stage, run_id=run_id, estimate=amount, day=day)
        if not decision.within_budget:
            raise BudgetExceededError(decision.scope, decision.spent, decision.limit or 0.0)
        reservation = Reservation(
            id=uuid.uuid4().hex,
            client=client,
            stage=stage,
            run_id=run_id,
            day=day or today_utc(),
            amount=amount,
        )
        self._reservations[reservation.id] = reservation
        return reservation

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation.  Releasing twice is a no-op."""
        self._reservations.pop(reservation.id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def spent_for_run(self, run_id: str) -> float:
        return self._by_run.get(run_id, 0.0)

    def spent_for_stage(self, client: str, stage: str) -> float:
        return self._by_stage.get((client, stage), 0.0)

    def spent_for_client(self, client: str) -> float:
        return self._by_client.get(client, 0.0)

    def spent_for_day(self, client: str, day: str | None = None) -> float:
        return self._by_day.get((client, day or today_utc()), 0.0)

    def _reserved(self, match) -> float:
        return sum(r.amount for r in self._reservations.values() if match(r))

    def check_budget(
        self,
        client: str,
        stage: str,
        run_id: str | None = None,
        estimate: float = 0.0,
        day: str | None = None,
    ) -> BudgetDecision:
        """Check every configured ceiling for a prospective call.

        A ceiling rejects when ``spent + reserved >= limit``, or when an
        estimate is given and ``spent + reserved + estimate > limit``.

        Returns:
            The first failing ceiling's decision, or an in-budget decision
            reporting the client total.
        """
        day = day or today_utc()
        estimate = _valid_cost(estimate) or 0.0
        checks: list[tuple[str, float | None, float, float]] = [
            (
                SCOPE_RUN,
                self.limits.per_run_usd if run_id else None,
                self.spent_for_run(run_id) if run_id else 0.0,
                self._reserved(lambda r: run_id is not None and r.run_id == run_id),
            ),
            (
                SCOPE_STAGE,
                self.limits.per_stage_usd,
                self.spent_for_stage(client, stage),
                self._reserved(lambda r: r.client == client and r.stage == stage),
            ),
            (
                SCOPE_CLIENT,
                self.limits.per_client_total_usd,
                self.spent_for_client(client),
                self._reserved(lambda r: r.client == client),
            ),
            (
                SCOPE_CLIENT_DAY,
                self.limits.per_client_day_usd,
                self.spent_for_day(client, day),
                self._reserved(lambda r: r.client == client and r.day == day),
            ),
        ]
        for scope, limit, spent, reserved in checks:
            if limit is None:
                continue
            committed = spent + reserved
            if committed >= limit:
                return BudgetDecision(
                    within_budget=False,
                    spent=committed,
                    limit=limit,
                    scope=scope,
                    reason=(
                        f"Budget exhausted for {scope}: "
                        f"${committed:.2f} of ${limit:.2f}"
                    ),
                )
            if estimate > 0 and committed + estimate > limit:
                return BudgetDecision(
                    within_budget=False,
                    spent=committed,
                    limit=limit,
                    scope=scope,
                    reason=(
                        f"Estimated ${estimate:.2f} would exceed {scope} budget: "
                        f"${committed:.2f} of ${limit:.2f}"
                    ),
                )
        return BudgetDecision(
            within_budget=True,
            spent=self.spent_for_client(client),
            limit=self.limits.per_client_total_usd,
            scope=SCOPE_CLIENT,
            reason="Within budget",
        )

    def summary(self, client: str) -> dict[str, Any]:
        """Serialise *client*'s totals and ceilings."""
        return {
            "client": client,
            "total_usd": self.spent_for_client(client),
            "today_usd": self.spent_for_day(client),
            "stages": {
                stage: cost
                for (c, stage), cost in sorted(self._by_stage.items())
                if c == client
            },
            "reserved_usd": self._reserved(lambda r: r.client == client),
            "limits": {
                "per_run_usd": self.limits.per_run_usd,
                "per_stage_usd": self.limits.per_stage_usd,
                "per_client_total_usd": self.limits.per_client_total_usd,
                "per_client_day_usd": self.limits.per_client_day_usd,
            },
        }
