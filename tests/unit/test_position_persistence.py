import json
import sqlite3
from decimal import Decimal

import pytest

from autotrader.domain.models import ExitReason, PositionStatus, TxRef, utcnow
from autotrader.execution.position_persistence import PositionPersistence


@pytest.fixture
def store(tmp_path):
    persistence = PositionPersistence(str(tmp_path / "state" / "positions.db"))
    yield persistence
    persistence.close()


@pytest.fixture
def positions(make_position):
    active = make_position(asset_id="MINT_A", entry_price=Decimal("0.000123456789"))
    active.highest_price = Decimal("0.0002")
    active.current_price = Decimal("0.00015")
    active.last_price_at = utcnow()
    active.entry_tx_ref = TxRef(signature="buy-sig", last_valid_block_height=12345)

    closing = make_position(asset_id="MINT_B", status=PositionStatus.CLOSING)
    closing.closing_reason = ExitReason.TRAILING_STOP
    closing.closing_started_at = utcnow()
    closing.close_tx_ref = TxRef(signature="sell-sig")
    closing.expected_exit_proceeds = Decimal("1.05")
    closing.close_attempts = 2

    closed = make_position(asset_id="MINT_C", status=PositionStatus.CLOSED, max_hold_minutes=None)
    closed.exit_reason = ExitReason.TAKE_PROFIT
    closed.exit_price = Decimal("151")
    closed.exit_proceeds = Decimal("1.51")
    closed.exit_tx_ref = TxRef(signature="exit-sig")
    closed.closed_at = utcnow()
    return [active, closing, closed]


def test_round_trip_preserves_every_field(store, positions):
    store.save_positions(positions)

    loaded = store.load_positions()

    assert sorted(loaded, key=lambda p: p.asset_id) == sorted(positions, key=lambda p: p.asset_id)


def test_save_of_load_is_stable(store, positions):
    store.save_positions(positions)
    first = store.load_positions()

    store.save_positions(first)

    assert store.load_positions() == first


def test_save_replaces_the_whole_set(store, positions):
    store.save_positions(positions)
    store.save_positions(positions[:1])

    assert [p.asset_id for p in store.load_positions()] == ["MINT_A"]


def test_load_single_position(store, positions):
    store.save_positions(positions)

    assert store.load_position("pos-MINT_B").close_attempts == 2
    assert store.load_position("missing") is None


def test_corrupt_record_raises(store, positions, tmp_path):
    store.save_positions(positions[:1])
    conn = sqlite3.connect(store.db_path)
    with conn:
        conn.execute("UPDATE positions SET record_json = ?", (json.dumps({"position_id": "pos-MINT_A"}),))
    conn.close()

    with pytest.raises(KeyError):
        store.load_positions()


def test_reopen_sees_saved_state(tmp_path, positions):
    path = str(tmp_path / "positions.db")
    first = PositionPersistence(path)
    first.save_positions(positions)
    first.close()

    second = PositionPersistence(path)
    try:
        assert len(second.load_positions()) == 3
    finally:
        second.close()
