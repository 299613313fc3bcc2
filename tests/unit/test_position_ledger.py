"""
Position ledger: budget, single-transition and watermark invariants.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from autotrader.domain.events import LifecycleEventType
from autotrader.domain.models import CloseOutcome, ExitReason, PositionStatus, TxRef
from autotrader.exceptions import InvariantViolation
from autotrader.execution.position_ledger import PositionLedger

ONE = Decimal("1")


def _open(ledger, strategy, asset_id, size=ONE, price=Decimal("2")):
    rid = ledger.reserve(strategy, asset_id, size)
    assert rid is not None
    return ledger.open(strategy, asset_id, size, price, size / price, reservation_id=rid)


class TestReservations:
    def setup_method(self):
        self.ledger = PositionLedger()

    def test_reserve_holds_budget_until_released(self, strategy):
        rids = [self.ledger.reserve(strategy, f"MINT_{i}", ONE) for i in range(3)]

        assert all(rids)
        assert self.ledger.committed(strategy.id) == Decimal("3")
        assert self.ledger.reserve(strategy, "MINT_X", ONE) is None

        assert self.ledger.release(rids[0])
        assert self.ledger.reserve(strategy, "MINT_X", ONE) is not None

    def test_release_unknown_reservation(self):
        assert not self.ledger.release("nope")

    def test_duplicate_asset_refused(self, strategy):
        assert self.ledger.reserve(strategy, "MINT_A", ONE)
        assert self.ledger.reserve(strategy.evolve(id="other", name="other"), "MINT_A", ONE) is None

    def test_concurrent_reservations_never_exceed_budget(self, strategy):
        strategy = strategy.evolve(max_concurrent_positions=50)
        barrier = threading.Barrier(20)

        def attempt(i):
            barrier.wait()
            return self.ledger.reserve(strategy, f"MINT_{i}", ONE)

        with ThreadPoolExecutor(max_workers=20) as pool:
            results = list(pool.map(attempt, range(20)))

        assert sum(1 for r in results if r) == 3
        assert self.ledger.committed(strategy.id) <= strategy.total_budget

    def test_unconfirmed_entries_carry_tx(self, strategy):
        rid = self.ledger.reserve(strategy, "MINT_A", ONE)
        tx = TxRef(signature="sig-1", last_valid_block_height=10)

        self.ledger.attach_entry_tx(rid, tx)

        pending = self.ledger.unconfirmed_entries()
        assert [r.reservation_id for r in pending] == [rid]
        assert pending[0].tx_ref == tx
        assert self.ledger.bump_recheck(rid) == 1

    def test_reservation_keeps_strategy_as_reserved(self, strategy):
        rid = self.ledger.reserve(strategy, "MINT_A", ONE)
        self.ledger.attach_entry_tx(rid, TxRef(signature="sig-1"))

        [pending] = self.ledger.unconfirmed_entries()

        assert pending.strategy == strategy
        assert pending.strategy.stop_loss_pct == strategy.stop_loss_pct

    def test_has_reservation_until_consumed(self, strategy):
        rid = self.ledger.reserve(strategy, "MINT_A", ONE)
        assert self.ledger.has_reservation(rid)

        self.ledger.open(strategy, "MINT_A", ONE, Decimal("2"), Decimal("0.5"), reservation_id=rid)

        assert not self.ledger.has_reservation(rid)
        assert not self.ledger.has_reservation("missing")

    def test_attach_to_unknown_reservation_is_invariant_violation(self):
        with pytest.raises(InvariantViolation):
            self.ledger.attach_entry_tx("missing", TxRef(signature="s"))


class TestLifecycle:
    def setup_method(self):
        self.store = MagicMock()
        self.store.load_positions.return_value = []
        self.events = MagicMock()
        self.ledger = PositionLedger(self.store, self.events)

    def _event_types(self):
        return [c.args[0].event_type for c in self.events.publish.call_args_list]

    def test_open_creates_active_position_with_frozen_exits(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")

        position = self.ledger.get(position_id)
        assert position.status == PositionStatus.ACTIVE
        assert position.stop_loss_pct == strategy.stop_loss_pct
        assert position.max_hold_minutes == strategy.max_hold_minutes
        assert position.highest_price == Decimal("2")
        assert self.ledger.unconfirmed_entries() == []
        assert self.store.save_positions.called
        assert self._event_types() == [LifecycleEventType.OPENED]

    def test_open_over_budget_is_noop(self, strategy):
        for i in range(3):
            _open(self.ledger, strategy, f"MINT_{i}")

        position_id = self.ledger.open(strategy, "MINT_X", ONE, Decimal("2"), Decimal("0.5"))

        assert position_id is None
        assert len(self.ledger.list_positions()) == 3

    def test_refused_open_keeps_its_reservation(self, strategy):
        rid = self.ledger.reserve(strategy, "MINT_A", ONE)

        assert self.ledger.open(strategy, "MINT_A", Decimal("5"), ONE, ONE, reservation_id=rid) is None

        snapshot = self.ledger.snapshot()
        assert [r.reservation_id for r in snapshot.reservations] == [rid]

    def test_reads_return_copies(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")

        copy = self.ledger.get(position_id)
        copy.status = PositionStatus.CLOSED

        assert self.ledger.get(position_id).status == PositionStatus.ACTIVE

    def test_highest_price_is_monotonic(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")

        for price in ("2.5", "2.2", "3", "1", "0", "-1"):
            self.ledger.record_price(position_id, Decimal(price))

        position = self.ledger.get(position_id)
        assert position.highest_price == Decimal("3")
        assert position.current_price == Decimal("1")

    def test_record_prices_batch(self, strategy):
        a = _open(self.ledger, strategy, "MINT_A")
        b = _open(self.ledger, strategy, "MINT_B")

        updated = self.ledger.record_prices({a: Decimal("4"), b: Decimal("1"), "ghost": Decimal("9")})

        assert {p.position_id for p in updated} == {a, b}
        assert self.ledger.get(a).highest_price == Decimal("4")

    def test_concurrent_mark_closing_exactly_one_wins(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")
        barrier = threading.Barrier(10)

        def attempt(_):
            barrier.wait()
            return self.ledger.mark_closing(position_id, ExitReason.STOP_LOSS)

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(attempt, range(10)))

        assert results.count(True) == 1
        assert self.ledger.get(position_id).status == PositionStatus.CLOSING

    def test_closing_position_still_holds_budget(self, strategy):
        for i in range(3):
            _open(self.ledger, strategy, f"MINT_{i}")
        first = self.ledger.list_positions()[0]
        self.ledger.mark_closing(first.position_id, ExitReason.MANUAL)

        assert self.ledger.reserve(strategy, "MINT_X", ONE) is None

    def test_finalize_closed_frees_budget(self, strategy):
        for i in range(3):
            _open(self.ledger, strategy, f"MINT_{i}")
        first = self.ledger.list_positions()[0]
        self.ledger.mark_closing(first.position_id, ExitReason.TAKE_PROFIT)

        closed = self.ledger.finalize(
            first.position_id,
            CloseOutcome.CLOSED,
            exit_price=Decimal("3"),
            exit_proceeds=Decimal("1.5"),
        )

        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_reason == ExitReason.TAKE_PROFIT
        assert closed.realized_pnl == Decimal("0.5")
        assert self.ledger.reserve(strategy, "MINT_X", ONE) is not None
        assert self._event_types()[-2:] == [LifecycleEventType.CLOSING, LifecycleEventType.CLOSED]

    def test_finalize_requires_closing(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")

        with pytest.raises(InvariantViolation):
            self.ledger.finalize(position_id, CloseOutcome.CLOSED, exit_price=ONE, exit_proceeds=ONE)

    def test_finalize_twice_is_invariant_violation(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")
        self.ledger.mark_closing(position_id, ExitReason.MANUAL)
        self.ledger.finalize(position_id, CloseOutcome.FAILED, failure_reason="no route")

        with pytest.raises(InvariantViolation):
            self.ledger.finalize(position_id, CloseOutcome.CLOSED)

    def test_failed_position_is_terminal(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")
        self.ledger.mark_closing(position_id, ExitReason.STOP_LOSS)

        failed = self.ledger.finalize(position_id, CloseOutcome.FAILED, failure_reason="no route")

        assert failed.failure_reason == "no route"
        assert not self.ledger.mark_closing(position_id, ExitReason.MANUAL)
        assert self.ledger.record_price(position_id, Decimal("5")) is None
        assert self._event_types()[-1] == LifecycleEventType.FAILED

    def test_close_submission_tracking(self, strategy):
        position_id = _open(self.ledger, strategy, "MINT_A")
        with pytest.raises(InvariantViolation):
            self.ledger.record_close_submission(position_id, TxRef(signature="early"))

        self.ledger.mark_closing(position_id, ExitReason.MANUAL)
        tx = TxRef(signature="sell-1")
        after = self.ledger.record_close_submission(position_id, tx, Decimal("1.1"))
        assert after.close_attempts == 1
        assert after.expected_exit_proceeds == Decimal("1.1")

        # Same transaction again is not a new attempt
        assert self.ledger.record_close_submission(position_id, tx, Decimal("1.1")).close_attempts == 1

        cleared = self.ledger.record_close_submission(position_id, None)
        assert cleared.close_tx_ref is None
        assert cleared.expected_exit_proceeds is None
        assert self.ledger.note_close_attempt(position_id) == 2

    def test_load_restores_positions(self, strategy, make_position):
        active = make_position(asset_id="MINT_A", strategy_id=strategy.id)
        closing = make_position(asset_id="MINT_B", strategy_id=strategy.id, status=PositionStatus.CLOSING)
        closed = make_position(asset_id="MINT_C", strategy_id=strategy.id, status=PositionStatus.CLOSED)
        self.store.load_positions.return_value = [active, closing, closed]

        assert self.ledger.load() == 2
        assert [p.asset_id for p in self.ledger.closing_positions()] == ["MINT_B"]
        assert self.ledger.committed(strategy.id) == Decimal("2")
        counts = self.ledger.counts()
        assert counts["active"] == 1
        assert counts["closed"] == 1
        assert counts["reserved"] == 0
