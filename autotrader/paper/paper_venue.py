"""
Paper trading venue.

Implements SwapVenue, Signer and ChainClient with virtual execution:
quotes are priced from the live PriceSource with simulated slippage,
"transactions" are JSON payloads, and every submitted transaction
confirms after an optional simulated delay. Holdings and realized
quote-currency flow are tracked so a dry run can be inspected.
"""
import asyncio
import json
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from autotrader.config.config import PaperConfig
from autotrader.domain.models import ConfirmStatus, Quote, TradeSide, TxRef, utcnow
from autotrader.domain.protocols import PriceSource
from autotrader.exceptions import ConfirmationTimeout, OperationalError, QuoteFailed, SubmitFailed
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)

_BPS = Decimal("10000")


class PaperVenue:
    """
    Paper venue.

    Mimics a swap venue plus chain but settles instantly in memory.
    """

    def __init__(self, prices: PriceSource, config: Optional[PaperConfig] = None):
        self.prices = prices
        self.config = config or PaperConfig()

        self.holdings: Dict[str, Decimal] = {}
        self.quote_balance_delta = Decimal("0")
        self.fills: List[dict] = []
        self._pending: Dict[str, dict] = {}
        self._settled: Dict[str, ConfirmStatus] = {}

    # ========== SwapVenue ==========

    async def quote(self, asset_id: str, side: TradeSide, amount: Decimal, slippage_bps: int) -> Quote:
        try:
            prices = await self.prices.get_prices([asset_id])
        except OperationalError as e:
            raise QuoteFailed(f"no price for {asset_id}: {e}") from e
        price = prices.get(asset_id)
        if price is None or price <= 0:
            raise QuoteFailed(f"no price for {asset_id}")

        impact = Decimal(self.config.simulated_slippage_bps) / _BPS
        if side == TradeSide.BUY:
            fill_price = price * (1 + impact)
            out_amount = amount / fill_price
        else:
            fill_price = price * (1 - impact)
            out_amount = amount * fill_price

        return Quote(
            asset_id=asset_id,
            side=side,
            in_amount=amount,
            out_amount=out_amount,
            price_impact_pct=impact * 100,
            slippage_bps=slippage_bps,
            raw={"paper": True, "mid_price": str(price)},
        )

    async def build(self, quote: Quote) -> bytes:
        payload = {
            "asset_id": quote.asset_id,
            "side": quote.side.value,
            "in_amount": str(quote.in_amount),
            "out_amount": str(quote.out_amount),
        }
        return json.dumps(payload).encode()

    # ========== Signer ==========

    async def sign(self, unsigned: bytes) -> bytes:
        return unsigned

    # ========== ChainClient ==========

    async def submit(self, signed: bytes) -> TxRef:
        try:
            payload = json.loads(signed)
        except ValueError as e:
            raise SubmitFailed(f"unreadable paper transaction: {e}") from e

        if payload["side"] == TradeSide.SELL.value:
            held = self.holdings.get(payload["asset_id"], Decimal("0"))
            if held < Decimal(payload["in_amount"]):
                raise SubmitFailed(f"paper holdings of {payload['asset_id']} too small: {held}")

        signature = f"paper-{uuid.uuid4().hex}"
        self._pending[signature] = payload
        return TxRef(signature=signature, last_valid_block_height=None)

    async def confirm(self, tx_ref: TxRef, timeout: float) -> ConfirmStatus:
        if tx_ref.signature in self._settled:
            return self._settled[tx_ref.signature]
        payload = self._pending.get(tx_ref.signature)
        if payload is None:
            return ConfirmStatus.EXPIRED

        delay = self.config.simulate_fill_delay_ms / 1000
        if delay > timeout:
            await asyncio.sleep(timeout)
            raise ConfirmationTimeout("paper fill delay exceeds timeout", signature=tx_ref.signature)
        if delay:
            await asyncio.sleep(delay)

        self._settle(tx_ref.signature, payload)
        return ConfirmStatus.CONFIRMED

    def _settle(self, signature: str, payload: dict) -> None:
        asset_id = payload["asset_id"]
        in_amount = Decimal(payload["in_amount"])
        out_amount = Decimal(payload["out_amount"])
        if payload["side"] == TradeSide.BUY.value:
            self.holdings[asset_id] = self.holdings.get(asset_id, Decimal("0")) + out_amount
            self.quote_balance_delta -= in_amount
        else:
            self.holdings[asset_id] = self.holdings.get(asset_id, Decimal("0")) - in_amount
            self.quote_balance_delta += out_amount

        del self._pending[signature]
        self._settled[signature] = ConfirmStatus.CONFIRMED
        self.fills.append({**payload, "signature": signature, "timestamp": utcnow().isoformat()})
        logger.info(
            "Paper fill",
            side=payload["side"],
            asset_id=asset_id,
            in_amount=str(in_amount),
            out_amount=str(out_amount),
            signature=signature,
        )
