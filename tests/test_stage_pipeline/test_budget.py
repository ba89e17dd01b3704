"""Tests for BudgetLedger accounting and ceiling checks."""

from __future__ import annotations

import pytest

from src.pipeline_shared.models import RunManifest, RunMetrics
from src.stage_pipeline.budget import (
    SCOPE_CLIENT,
    SCOPE_CLIENT_DAY,
    SCOPE_RUN,
    SCOPE_STAGE,
    BudgetLedger,
)
from src.stage_pipeline.config import BudgetConfig
from src.stage_pipeline.exceptions import BudgetExceededError

DAY = "2026-03-01"


def _manifest(run_id: str, stage: str, cost, client: str = "acme", ts: str = DAY + "T10:00:00+00:00") -> RunManifest:
    return RunManifest(
        run_id=run_id,
        client=client,
        stage=stage,
        status="success",
        timestamp=ts,
        metrics=RunMetrics(cost_usd=cost),
    )


class _FakeStore:
    def __init__(self, manifests: list[RunManifest]) -> None:
        self.manifests = manifests
        self.calls = 0

    def list_manifests(self, client: str) -> list[RunManifest]:
        self.calls += 1
        return [m for m in self.manifests if m.client == client]


class TestRecord:
    def test_record_updates_every_total(self) -> None:
        ledger = BudgetLedger()
        assert ledger.record("RUN-1", "acme", "S2", 0.5, day=DAY) == 0.5
        assert ledger.spent_for_run("RUN-1") == 0.5
        assert ledger.spent_for_stage("acme", "S2") == 0.5
        assert ledger.spent_for_client("acme") == 0.5
        assert ledger.spent_for_day("acme", DAY) == 0.5

    @pytest.mark.parametrize("cost", [-1.0, float("nan"), float("inf"), "0.5", None, True])
    def test_invalid_costs_ignored(self, cost) -> None:
        ledger = BudgetLedger()
        assert ledger.record("RUN-1", "acme", "S2", cost, day=DAY) == 0.0
        assert ledger.spent_for_client("acme") == 0.0

    def test_totals_never_decrease(self) -> None:
        ledger = BudgetLedger()
        seen = []
        for cost in [0.1, -5.0, 0.2, float("nan"), 0.0]:
            ledger.record(None, "acme", "S2", cost, day=DAY)
            seen.append(ledger.spent_for_client("acme"))
        assert seen == sorted(seen)
        assert ledger.spent_for_client("acme") == pytest.approx(0.3)

    def test_clients_are_isolated(self) -> None:
        ledger = BudgetLedger()
        ledger.record(None, "acme", "S2", 1.0, day=DAY)
        assert ledger.spent_for_client("globex") == 0.0


class TestCheckBudget:
    def test_within_budget(self) -> None:
        ledger = BudgetLedger()
        decision = ledger.check_budget("acme", "S2", day=DAY)
        assert decision.within_budget is True
        assert decision.reason == "Within budget"

    def test_reaching_limit_rejects(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_stage_usd=1.0))
        ledger.record(None, "acme", "S2", 1.0, day=DAY)
        decision = ledger.check_budget("acme", "S2", day=DAY)
        assert decision.within_budget is False
        assert decision.scope == SCOPE_STAGE
        assert decision.limit == 1.0

    def test_run_ceiling_only_applies_with_run_id(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_run_usd=0.5))
        ledger.record("RUN-1", "acme", "S2", 0.5, day=DAY)
        assert ledger.check_budget("acme", "S2", run_id="RUN-1", day=DAY).scope == SCOPE_RUN
        assert ledger.check_budget("acme", "S2", run_id="RUN-2", day=DAY).within_budget is True

    def test_client_total_ceiling(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_client_total_usd=2.0, per_stage_usd=None))
        ledger.record(None, "acme", "S1", 1.0, day="2026-02-01")
        ledger.record(None, "acme", "S2", 1.0, day=DAY)
        decision = ledger.check_budget("acme", "S3", day=DAY)
        assert decision.scope == SCOPE_CLIENT
        assert "Budget exhausted" in decision.reason

    def test_daily_ceiling_resets_per_day(self) -> None:
        ledger = BudgetLedger(
            limits=BudgetConfig(per_client_day_usd=1.0, per_stage_usd=None, per_client_total_usd=None)
        )
        ledger.record(None, "acme", "S2", 1.0, day=DAY)
        assert ledger.check_budget("acme", "S2", day=DAY).scope == SCOPE_CLIENT_DAY
        assert ledger.check_budget("acme", "S2", day="2026-03-02").within_budget is True

    def test_estimate_that_would_cross_rejects(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_stage_usd=1.0))
        ledger.record(None, "acme", "S2", 0.8, day=DAY)
        assert ledger.check_budget("acme", "S2", day=DAY, estimate=0.1).within_budget is True
        decision = ledger.check_budget("acme", "S2", day=DAY, estimate=0.3)
        assert decision.within_budget is False
        assert "Estimated" in decision.reason

    def test_unbounded_limits(self) -> None:
        ledger = BudgetLedger(
            limits=BudgetConfig(
                per_run_usd=None, per_stage_usd=None, per_client_total_usd=None, per_client_day_usd=None
            )
        )
        ledger.record("RUN-1", "acme", "S2", 1_000_000.0, day=DAY)
        assert ledger.check_budget("acme", "S2", run_id="RUN-1", day=DAY).within_budget is True


class TestReservations:
    def test_reservation_counts_until_released(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_stage_usd=1.0))
        reservation = ledger.reserve("acme", "S2", 0.6, day=DAY)
        assert ledger.check_budget("acme", "S2", day=DAY, estimate=0.6).within_budget is False
        ledger.release(reservation)
        assert ledger.check_budget("acme", "S2", day=DAY, estimate=0.6).within_budget is True

    def test_reserve_raises_when_over(self) -> None:
        ledger = BudgetLedger(limits=BudgetConfig(per_stage_usd=1.0))
        ledger.record(None, "acme", "S2", 0.9, day=DAY)
        with pytest.raises(BudgetExceededError) as exc_info:
            ledger.reserve("acme", "S2", 0.5, day=DAY)
        assert exc_info.value.scope == SCOPE_STAGE

    def test_release_twice_is_noop(self) -> None:
        ledger = BudgetLedger()
        reservation = ledger.reserve("acme", "S2", 0.1, day=DAY)
        ledger.release(reservation)
        ledger.release(reservation)
        assert ledger.summary("acme")["reserved_usd"] == 0.0


class TestSeeding:
    def test_seed_from_manifests(self) -> None:
        ledger = BudgetLedger()
        counted = ledger.seed_from_manifests(
            [_manifest("RUN-1", "S1", 0.25), _manifest("RUN-2", "S2", None), _manifest("RUN-3", "S2", -3)]
        )
        assert counted == 1
        assert ledger.spent_for_client("acme") == 0.25
        assert ledger.spent_for_day("acme", DAY) == 0.25
        assert ledger.spent_for_run("RUN-1") == 0.25

    def test_ensure_seeded_reads_history_once(self) -> None:
        store = _FakeStore([_manifest("RUN-1", "S1", 0.5)])
        ledger = BudgetLedger()
        ledger.ensure_seeded(store, "acme")
        ledger.ensure_seeded(store, "acme")
        assert store.calls == 1
        assert ledger.spent_for_client("acme") == 0.5

    def test_from_history(self) -> None:
        store = _FakeStore([_manifest("RUN-1", "S1", 0.5), _manifest("RUN-2", "S1", 9.0, client="globex")])
        ledger = BudgetLedger.from_history(store, "acme", BudgetConfig())
        assert ledger.spent_for_client("acme") == 0.5
        assert ledger.spent_for_client("globex") == 0.0

    def test_summary(self) -> None:
        ledger = BudgetLedger()
        ledger.record(None, "acme", "S1", 0.5)
        ledger.record(None, "acme", "S2", 0.25)
        summary = ledger.summary("acme")
        assert summary["client"] == "acme"
        assert summary["total_usd"] == 0.75
        assert summary["today_usd"] == 0.75
        assert summary["stages"] == {"S1": 0.5, "S2": 0.25}
        assert summary["limits"]["per_client_total_usd"] == 25.0
