from datetime import timedelta
from decimal import Decimal

import pytest

from autotrader.config.config import RiskConfig
from autotrader.domain.models import (
    AuthorityStatus,
    CheckOutcome,
    LedgerSnapshot,
    Reservation,
    RiskAssessment,
    RiskCheck,
    utcnow,
)
from autotrader.risk.entry_gate import EntryGate, capacity_rejection
from autotrader.risk.risk_evaluator import RiskEvaluator

SIZE = Decimal("1")


class TestEntryGate:
    def setup_method(self):
        self.gate = EntryGate(RiskConfig())
        self.evaluator = RiskEvaluator(RiskConfig())
        self.empty = LedgerSnapshot()

    def test_safe_candidate_is_admitted(self, strategy, safe_signals):
        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), self.empty, SIZE)

        assert decision.admitted
        assert decision.reason is None

    def test_disabled_strategy_rejects_first(self, strategy, safe_signals):
        disabled = strategy.evolve(enabled=False)
        risky = self.evaluator.evaluate(safe_signals(sellable=False))

        decision = self.gate.admit(disabled, risky, self.empty, SIZE)

        assert decision.reason == "strategy_disabled"

    def test_score_above_limit_rejects_with_risk_score(self, strategy, safe_signals):
        signals = safe_signals()
        passing = tuple(
            RiskCheck(name=name, outcome=CheckOutcome.PASS, reason="ok") for name in self.evaluator.check_names
        )
        assessment = RiskAssessment(asset_id=signals.asset_id, score=61, checks=passing, signals=signals)

        for _ in range(3):
            decision = self.gate.admit(strategy, assessment, self.empty, SIZE)
            assert not decision.admitted
            assert decision.reason == "risk_score"

    def test_score_equal_to_limit_passes(self, strategy, safe_signals):
        signals = safe_signals()
        passing = tuple(
            RiskCheck(name=name, outcome=CheckOutcome.PASS, reason="ok") for name in self.evaluator.check_names
        )
        assessment = RiskAssessment(asset_id=signals.asset_id, score=60, checks=passing, signals=signals)

        assert self.gate.admit(strategy, assessment, self.empty, SIZE).admitted

    def test_unknown_required_check_rejects(self, strategy, safe_signals):
        assessment = self.evaluator.evaluate(safe_signals(liquidity_locked=None))

        decision = self.gate.admit(strategy, assessment, self.empty, SIZE)

        assert decision.reason == "required_check:liquidity_locked"
        assert decision.detail == "unknown"

    def test_failed_required_check_rejects(self, strategy, safe_signals):
        signals = safe_signals(authority=AuthorityStatus(mint_authority_present=False, freeze_authority_present=True))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(signals), self.empty, SIZE)

        assert decision.reason == "required_check:authority_revoked"

    def test_optional_check_is_not_required(self, strategy, safe_signals):
        strategy = strategy.evolve(require_liquidity_locked=False)

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals(liquidity_locked=False)), self.empty, SIZE)

        assert decision.admitted

    def test_liquidity_below_strategy_minimum(self, strategy, safe_signals):
        # Passes the evaluator threshold (5) but not the strategy filter (10)
        decision = self.gate.admit(
            strategy, self.evaluator.evaluate(safe_signals(liquidity=Decimal("7"))), self.empty, SIZE
        )

        assert decision.reason == "liquidity"

    def test_missing_holders_follow_admit_policy(self, strategy, safe_signals):
        strategy = strategy.evolve(max_concentration_pct=None)

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals(holder_stats=None)), self.empty, SIZE)

        assert decision.admitted

    def test_missing_holder_stats_reject_on_concentration(self, strategy, safe_signals):
        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals(holder_stats=None)), self.empty, SIZE)

        assert decision.reason == "concentration"

    def test_missing_transfer_tax_follows_reject_policy(self, strategy, safe_signals):
        decision = self.gate.admit(
            strategy, self.evaluator.evaluate(safe_signals(transfer_tax_pct=None)), self.empty, SIZE
        )

        assert decision.reason == "transfer_tax"
        assert decision.detail == "signal unavailable"

    def test_policy_can_be_flipped(self, strategy, safe_signals):
        gate = EntryGate(RiskConfig(unknown_policy={"transfer_tax": "admit"}))

        decision = gate.admit(strategy, self.evaluator.evaluate(safe_signals(transfer_tax_pct=None)), self.empty, SIZE)

        assert decision.admitted

    def test_asset_too_old(self, strategy, safe_signals):
        signals = safe_signals(created_at=utcnow() - timedelta(minutes=500))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(signals), self.empty, SIZE)

        assert decision.reason == "asset_age"

    def test_oversized_request(self, strategy, safe_signals):
        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), self.empty, Decimal("2"))

        assert decision.reason == "position_size"

    def test_duplicate_asset(self, strategy, safe_signals, make_position):
        snapshot = LedgerSnapshot(positions=(make_position(asset_id="MINT_SAFE", strategy_id=strategy.id),))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), snapshot, SIZE)

        assert decision.reason == "duplicate_asset"

    def test_in_flight_reservation_counts_as_held(self, strategy, safe_signals):
        snapshot = LedgerSnapshot(
            reservations=(Reservation("r1", strategy_id="other", asset_id="MINT_SAFE", size=SIZE),)
        )

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), snapshot, SIZE)

        assert decision.reason == "duplicate_asset"

    def test_max_concurrent_positions(self, strategy, safe_signals, make_position):
        strategy = strategy.evolve(max_concurrent_positions=2)
        snapshot = LedgerSnapshot(positions=(
            make_position(asset_id="A", strategy_id=strategy.id, entry_size=Decimal("0.1")),
            make_position(asset_id="B", strategy_id=strategy.id, entry_size=Decimal("0.1")),
        ))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), snapshot, SIZE)

        assert decision.reason == "max_concurrent_positions"

    def test_budget(self, strategy, safe_signals, make_position):
        snapshot = LedgerSnapshot(positions=(
            make_position(asset_id="A", strategy_id=strategy.id, entry_size=Decimal("1.5")),
            make_position(asset_id="B", strategy_id=strategy.id, entry_size=Decimal("1")),
        ))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), snapshot, SIZE)

        assert decision.reason == "budget"

    def test_other_strategies_do_not_consume_budget(self, strategy, safe_signals, make_position):
        snapshot = LedgerSnapshot(positions=(
            make_position(asset_id="A", strategy_id="someone-else", entry_size=Decimal("3")),
        ))

        decision = self.gate.admit(strategy, self.evaluator.evaluate(safe_signals()), snapshot, SIZE)

        assert decision.admitted


def test_capacity_rejection_none_when_room(strategy):
    assert capacity_rejection(strategy, "MINT_A", SIZE, LedgerSnapshot()) is None


@pytest.mark.parametrize("size", [Decimal("0"), Decimal("-1")])
def test_capacity_rejection_non_positive_size(strategy, size):
    assert capacity_rejection(strategy, "MINT_A", size, LedgerSnapshot()).reason == "position_size"
