"""
Execution Gateway - single swap flow point.

CRITICAL: Every buy and sell MUST go through this gateway.

Each swap runs quote -> build -> sign -> submit -> confirm:
1. Every external call has its own timeout
2. QuoteFailed / SubmitFailed are retried with exponential backoff
   (a fresh quote each time, nothing was accepted on-chain yet)
3. Confirmation is never retried by resubmitting; a confirmation timeout
   is reported as TIMED_OUT so the caller re-checks the same transaction
4. Failures come back as a SwapResult, never as an exception, except
   InvariantError which always propagates
"""
import asyncio
from decimal import Decimal
from typing import Awaitable, Dict, Optional, Tuple, Type, TypeVar

from autotrader.config.config import ExecutionConfig
from autotrader.domain.models import ConfirmStatus, Quote, SwapResult, TradeSide, TxRef
from autotrader.domain.protocols import ChainClient, Signer, SwapVenue
from autotrader.exceptions import (
    ConfirmationTimeout,
    DataError,
    InvariantError,
    OperationalError,
    QuoteFailed,
    SubmitFailed,
)
from autotrader.utils.retry import call_with_retry
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Extra wall-clock allowance on top of the chain client's own confirm timeout
_CONFIRM_GRACE_SECONDS = 5.0


class ExecutionGateway:
    """Buy/sell primitives over a swap venue, a signer and a chain client."""

    def __init__(
        self,
        venue: SwapVenue,
        signer: Signer,
        chain: ChainClient,
        config: Optional[ExecutionConfig] = None,
    ):
        self.venue = venue
        self.signer = signer
        self.chain = chain
        self.config = config or ExecutionConfig()

        self.metrics: Dict[str, int] = {
            "swaps_requested": 0,
            "swaps_submitted": 0,
            "swaps_confirmed": 0,
            "swaps_failed": 0,
            "swaps_timed_out": 0,
            "quote_failures": 0,
            "submit_failures": 0,
            "rechecks": 0,
        }

    # ========== PUBLIC API ==========

    async def buy(self, asset_id: str, amount: Decimal, slippage_bps: Optional[int] = None) -> SwapResult:
        """Spend `amount` quote units on `asset_id`."""
        return await self._swap(TradeSide.BUY, asset_id, amount, slippage_bps)

    async def sell(self, asset_id: str, quantity: Decimal, slippage_bps: Optional[int] = None) -> SwapResult:
        """Sell `quantity` units of `asset_id` back to the quote currency."""
        return await self._swap(TradeSide.SELL, asset_id, quantity, slippage_bps)

    async def recheck(self, tx_ref: TxRef, timeout: Optional[float] = None) -> ConfirmStatus:
        """Ask the chain again about a transaction whose outcome was unknown."""
        self.metrics["rechecks"] += 1
        return await self._confirm(tx_ref, timeout or self.config.confirm_poll_interval_seconds)

    # ========== SWAP FLOW ==========

    async def _swap(
        self,
        side: TradeSide,
        asset_id: str,
        amount: Decimal,
        slippage_bps: Optional[int],
    ) -> SwapResult:
        self.metrics["swaps_requested"] += 1
        slippage = slippage_bps or self.config.default_slippage_bps

        try:
            quote, tx_ref = await call_with_retry(
                self._quote_and_submit,
                side,
                asset_id,
                amount,
                slippage,
                max_retries=self.config.max_retries,
                base_delay=self.config.retry_base_delay_seconds,
                max_backoff=self.config.retry_max_backoff_seconds,
                transient_errors=(QuoteFailed, SubmitFailed),
            )
        except InvariantError:
            raise
        except (OperationalError, DataError) as e:
            self.metrics["swaps_failed"] += 1
            logger.error(
                "Swap not submitted",
                side=side.value,
                asset_id=asset_id,
                amount=str(amount),
                error=str(e),
                error_type=type(e).__name__,
            )
            return SwapResult(status=ConfirmStatus.FAILED, side=side, asset_id=asset_id, error=str(e))

        self.metrics["swaps_submitted"] += 1
        status = await self._confirm(tx_ref, self.config.confirm_timeout_seconds)

        if status == ConfirmStatus.CONFIRMED:
            self.metrics["swaps_confirmed"] += 1
        elif status == ConfirmStatus.TIMED_OUT:
            self.metrics["swaps_timed_out"] += 1
        else:
            self.metrics["swaps_failed"] += 1

        logger.info(
            "Swap resolved",
            side=side.value,
            asset_id=asset_id,
            status=status.value,
            signature=tx_ref.signature,
            in_amount=str(quote.in_amount),
            out_amount=str(quote.out_amount),
        )
        return SwapResult(status=status, side=side, asset_id=asset_id, tx_ref=tx_ref, quote=quote)

    async def _quote_and_submit(
        self,
        side: TradeSide,
        asset_id: str,
        amount: Decimal,
        slippage_bps: int,
    ) -> Tuple[Quote, TxRef]:
        try:
            quote = await self._timed(
                self.venue.quote(asset_id, side, amount, slippage_bps),
                self.config.quote_timeout_seconds,
                QuoteFailed,
                "quote",
            )
            if quote.out_amount <= 0 or quote.in_amount <= 0:
                raise QuoteFailed(f"empty quote for {asset_id}: in={quote.in_amount} out={quote.out_amount}")
        except QuoteFailed:
            self.metrics["quote_failures"] += 1
            raise

        try:
            unsigned = await self._timed(
                self.venue.build(quote), self.config.quote_timeout_seconds, SubmitFailed, "build"
            )
            signed = await self._timed(
                self.signer.sign(unsigned), self.config.submit_timeout_seconds, SubmitFailed, "sign"
            )
            tx_ref = await self._timed(
                self.chain.submit(signed), self.config.submit_timeout_seconds, SubmitFailed, "submit"
            )
        except SubmitFailed:
            self.metrics["submit_failures"] += 1
            raise

        return quote, tx_ref

    async def _confirm(self, tx_ref: TxRef, timeout: float) -> ConfirmStatus:
        try:
            return await asyncio.wait_for(
                self.chain.confirm(tx_ref, timeout),
                timeout=timeout + _CONFIRM_GRACE_SECONDS,
            )
        except (asyncio.TimeoutError, ConfirmationTimeout):
            logger.warning("Confirmation timed out", signature=tx_ref.signature, timeout=timeout)
            return ConfirmStatus.TIMED_OUT
        except OperationalError as e:
            # Outcome unknown; the caller re-checks the same signature later
            logger.warning("Confirmation check failed", signature=tx_ref.signature, error=str(e))
            return ConfirmStatus.TIMED_OUT

    @staticmethod
    async def _timed(
        awaitable: Awaitable[T],
        timeout: float,
        error_cls: Type[OperationalError],
        step: str,
    ) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{step} timed out after {timeout}s") from e
