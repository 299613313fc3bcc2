"""
Pytest configuration and shared fixtures.
"""
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional

import pytest

from autotrader.config.config import ExecutionConfig
from autotrader.domain.models import (
    AssetSignals,
    AuthorityStatus,
    HolderStats,
    Position,
    utcnow,
)
from autotrader.exceptions import PriceUnavailable, SignalUnavailable
from autotrader.strategy.strategy_config import StrategyConfig


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class StaticPrices:
    """Dict-backed PriceSource; set `fail` to make the next fetches raise."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices: Dict[str, Decimal] = dict(prices or {})
        self.fail = False
        self.calls = 0

    async def get_prices(self, asset_ids):
        self.calls += 1
        if self.fail:
            raise PriceUnavailable("price feed down")
        return {a: self.prices[a] for a in asset_ids if a in self.prices}


class FakeSignalProvider:
    """SignalProvider serving canned AssetSignals; a missing field raises SignalUnavailable."""

    def __init__(self):
        self.signals: Dict[str, AssetSignals] = {}

    def _field(self, asset_id, name):
        value = getattr(self.signals.get(asset_id), name, None)
        if value is None:
            raise SignalUnavailable(f"{name} unknown for {asset_id}")
        return value

    async def liquidity(self, asset_id):
        return self._field(asset_id, "liquidity")

    async def holder_stats(self, asset_id):
        return self._field(asset_id, "holder_stats")

    async def authority_status(self, asset_id):
        return self._field(asset_id, "authority")

    async def lock_status(self, asset_id):
        return self._field(asset_id, "liquidity_locked")

    async def transfer_tax(self, asset_id):
        return self._field(asset_id, "transfer_tax_pct")

    async def sellability_probe(self, asset_id):
        return self._field(asset_id, "sellable")

    async def created_at(self, asset_id):
        return self._field(asset_id, "created_at")


@pytest.fixture
def static_prices():
    return StaticPrices()


@pytest.fixture
def fake_signals():
    return FakeSignalProvider()


@pytest.fixture
def strategy():
    return StrategyConfig(
        name="test",
        max_position_size=Decimal("1"),
        total_budget=Decimal("3"),
        max_concurrent_positions=3,
        max_risk_score=60,
        min_liquidity=Decimal("10"),
        min_holders=50,
    )


@pytest.fixture
def fast_execution_config():
    """No backoff waits and short confirmation timeouts."""
    return ExecutionConfig(
        max_retries=2,
        retry_base_delay_seconds=0.0,
        retry_max_backoff_seconds=0.0,
        quote_timeout_seconds=1.0,
        submit_timeout_seconds=1.0,
        confirm_timeout_seconds=0.2,
        confirm_poll_interval_seconds=0.05,
        max_confirm_rechecks=2,
        max_close_attempts=2,
    )


@pytest.fixture
def safe_signals():
    """Signals that pass every check of the default risk config and strategy."""
    def _make(asset_id: str = "MINT_SAFE", **overrides) -> AssetSignals:
        values = dict(
            asset_id=asset_id,
            liquidity=Decimal("100"),
            holder_stats=HolderStats(holder_count=500, top_holder_concentration_pct=Decimal("20")),
            authority=AuthorityStatus(mint_authority_present=False, freeze_authority_present=False),
            liquidity_locked=True,
            transfer_tax_pct=Decimal("0"),
            sellable=True,
            created_at=utcnow() - timedelta(minutes=30),
        )
        values.update(overrides)
        return AssetSignals(**values)
    return _make


@pytest.fixture
def make_position():
    def _make(
        asset_id: str = "MINT_A",
        strategy_id: str = "strat-1",
        entry_price: Decimal = Decimal("100"),
        entry_size: Decimal = Decimal("1"),
        **overrides,
    ) -> Position:
        values = dict(
            position_id=f"pos-{asset_id}",
            asset_id=asset_id,
            strategy_id=strategy_id,
            entry_price=entry_price,
            entry_size=entry_size,
            quantity=entry_size / entry_price,
            stop_loss_pct=Decimal("15"),
            take_profit_pct=Decimal("50"),
            trailing_stop_pct=Decimal("5"),
            max_hold_minutes=240,
        )
        values.update(overrides)
        return Position(**values)
    return _make
