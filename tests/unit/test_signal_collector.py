import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from autotrader.data.signal_collector import SIGNAL_METHODS, SignalCollector
from autotrader.domain.models import AuthorityStatus, HolderStats, utcnow
from autotrader.exceptions import InvariantViolation, SignalUnavailable


def _provider():
    provider = MagicMock()
    provider.liquidity = AsyncMock(return_value=Decimal("100"))
    provider.holder_stats = AsyncMock(return_value=HolderStats(holder_count=500, top_holder_concentration_pct=Decimal("20")))
    provider.authority_status = AsyncMock(return_value=AuthorityStatus(mint_authority_present=False, freeze_authority_present=False))
    provider.lock_status = AsyncMock(return_value=True)
    provider.transfer_tax = AsyncMock(return_value=Decimal("0"))
    provider.sellability_probe = AsyncMock(return_value=True)
    provider.created_at = AsyncMock(return_value=utcnow() - timedelta(minutes=30))
    return provider


@pytest.mark.asyncio
async def test_collects_every_signal():
    provider = _provider()

    signals = await SignalCollector(provider, timeout=1.0).collect("MINT_A")

    assert signals.asset_id == "MINT_A"
    assert signals.liquidity == Decimal("100")
    assert signals.holder_stats.holder_count == 500
    assert signals.authority.revoked
    assert signals.sellable is True
    for method in SIGNAL_METHODS.values():
        getattr(provider, method).assert_awaited_once_with("MINT_A")


@pytest.mark.asyncio
async def test_failing_provider_leaves_signal_missing():
    provider = _provider()
    provider.liquidity.side_effect = SignalUnavailable("pool lookup failed")
    provider.transfer_tax.side_effect = RuntimeError("unexpected payload")

    signals = await SignalCollector(provider, timeout=1.0).collect("MINT_A")

    assert signals.liquidity is None
    assert signals.transfer_tax_pct is None
    assert signals.holder_stats is not None


@pytest.mark.asyncio
async def test_slow_provider_times_out_to_missing():
    provider = _provider()

    async def slow(asset_id):
        await asyncio.sleep(5)
        return False

    provider.sellability_probe = slow

    signals = await SignalCollector(provider, timeout=0.05).collect("MINT_A")

    assert signals.sellable is None
    assert signals.liquidity == Decimal("100")


@pytest.mark.asyncio
async def test_invariant_errors_are_not_swallowed():
    provider = _provider()
    provider.lock_status.side_effect = InvariantViolation("broken")

    with pytest.raises(InvariantViolation):
        await SignalCollector(provider, timeout=1.0).collect("MINT_A")
