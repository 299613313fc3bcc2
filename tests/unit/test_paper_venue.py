from decimal import Decimal

import pytest

from autotrader.config.config import PaperConfig
from autotrader.domain.models import ConfirmStatus, TradeSide, TxRef
from autotrader.exceptions import ConfirmationTimeout, QuoteFailed, SubmitFailed
from autotrader.execution.execution_gateway import ExecutionGateway
from autotrader.paper.paper_venue import PaperVenue


@pytest.fixture
def venue(static_prices):
    static_prices.prices["MINT_A"] = Decimal("2")
    return PaperVenue(static_prices, PaperConfig(simulated_slippage_bps=50))


@pytest.mark.asyncio
async def test_buy_quote_includes_slippage(venue):
    quote = await venue.quote("MINT_A", TradeSide.BUY, Decimal("1"), 100)

    assert quote.in_amount == Decimal("1")
    assert quote.out_amount == Decimal("1") / Decimal("2.01")
    assert quote.raw["paper"] is True


@pytest.mark.asyncio
async def test_sell_quote_includes_slippage(venue):
    quote = await venue.quote("MINT_A", TradeSide.SELL, Decimal("10"), 100)

    assert quote.out_amount == Decimal("19.90")


@pytest.mark.asyncio
async def test_quote_without_price_fails(venue):
    with pytest.raises(QuoteFailed):
        await venue.quote("UNKNOWN", TradeSide.BUY, Decimal("1"), 100)


@pytest.mark.asyncio
async def test_quote_when_price_feed_down(venue, static_prices):
    static_prices.fail = True

    with pytest.raises(QuoteFailed):
        await venue.quote("MINT_A", TradeSide.BUY, Decimal("1"), 100)


@pytest.mark.asyncio
async def test_round_trip_through_gateway(venue, fast_execution_config):
    gateway = ExecutionGateway(venue, venue, venue, fast_execution_config)

    bought = await gateway.buy("MINT_A", Decimal("1"))
    assert bought.confirmed
    assert venue.holdings["MINT_A"] == bought.out_amount

    sold = await gateway.sell("MINT_A", bought.out_amount)
    assert sold.confirmed
    assert venue.holdings["MINT_A"] == Decimal("0")
    assert len(venue.fills) == 2
    # Two legs of 50 bps slippage lose money
    assert venue.quote_balance_delta < 0


@pytest.mark.asyncio
async def test_cannot_sell_more_than_held(venue):
    quote = await venue.quote("MINT_A", TradeSide.SELL, Decimal("5"), 100)
    tx = await venue.build(quote)

    with pytest.raises(SubmitFailed):
        await venue.submit(await venue.sign(tx))


@pytest.mark.asyncio
async def test_confirm_is_idempotent_and_unknown_signatures_expire(venue):
    quote = await venue.quote("MINT_A", TradeSide.BUY, Decimal("1"), 100)
    tx_ref = await venue.submit(await venue.sign(await venue.build(quote)))

    assert await venue.confirm(tx_ref, 1.0) == ConfirmStatus.CONFIRMED
    assert await venue.confirm(tx_ref, 1.0) == ConfirmStatus.CONFIRMED
    assert len(venue.fills) == 1
    assert await venue.confirm(TxRef(signature="never-sent"), 1.0) == ConfirmStatus.EXPIRED


@pytest.mark.asyncio
async def test_fill_delay_longer_than_timeout(static_prices):
    static_prices.prices["MINT_A"] = Decimal("2")
    venue = PaperVenue(static_prices, PaperConfig(simulate_fill_delay_ms=200))
    quote = await venue.quote("MINT_A", TradeSide.BUY, Decimal("1"), 100)
    tx_ref = await venue.submit(await venue.build(quote))

    with pytest.raises(ConfirmationTimeout):
        await venue.confirm(tx_ref, 0.05)
    assert "MINT_A" not in venue.holdings
