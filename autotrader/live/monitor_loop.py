"""
Monitor loop: price refresh -> exit policy -> close.

Each cycle:
1. Resume CLOSING positions that have no close task running (restart, or a
   close that timed out or failed last cycle)
2. Alert on CLOSING positions stuck longer than the configured threshold
3. Fetch prices for every ACTIVE position in one batch (skip on failure)
4. Record prices (the ledger keeps the watermark monotonic)
5. Evaluate the exit policy; a triggered exit is marked CLOSING first and
   then closed in its own task

A close never resubmits while a previous sell's outcome is unknown: the
stored close transaction is re-checked before any new sell.
"""
import asyncio
import time
from typing import Dict, Optional

from autotrader.config.config import ExecutionConfig, MonitorConfig
from autotrader.domain.models import (
    CloseOutcome,
    ConfirmStatus,
    ExitReason,
    Position,
    PositionStatus,
    utcnow,
)
from autotrader.domain.protocols import PriceSource
from autotrader.exceptions import InvariantError, OperationalError
from autotrader.execution.execution_gateway import ExecutionGateway
from autotrader.execution.exit_policy import ExitPolicy
from autotrader.execution.position_ledger import PositionLedger
from autotrader.strategy.registry import StrategyRegistry
from autotrader.monitoring.logger import cycle_context, get_logger

logger = get_logger(__name__)


class MonitorLoop:
    def __init__(
        self,
        ledger: PositionLedger,
        prices: PriceSource,
        gateway: ExecutionGateway,
        registry: Optional[StrategyRegistry] = None,
        exit_policy: Optional[ExitPolicy] = None,
        config: Optional[MonitorConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
        price_timeout: float = 10.0,
    ):
        self.ledger = ledger
        self.prices = prices
        self.gateway = gateway
        self.registry = registry
        self.exit_policy = exit_policy or ExitPolicy()
        self.config = config or MonitorConfig()
        self.execution_config = execution_config or ExecutionConfig()
        self.price_timeout = price_timeout

        self.active = False
        self.cycle_count = 0
        self.last_cycle_at: Optional[float] = None
        self._close_tasks: Dict[str, asyncio.Task] = {}

    # ========== LOOP ==========

    async def run(self) -> None:
        self.active = True
        logger.info("Monitor loop started", interval=self.config.interval_seconds)
        try:
            while self.active:
                started = time.monotonic()
                try:
                    await self.run_cycle()
                except InvariantError:
                    logger.critical("Invariant broken in monitor cycle", exc_info=True)
                except Exception as e:
                    logger.error("Error in monitor cycle", error=str(e), exc_info=True)
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(1.0, self.config.interval_seconds - elapsed))
        except asyncio.CancelledError:
            logger.info("Monitor loop cancelled")
        finally:
            self.active = False

    def stop(self) -> None:
        self.active = False

    async def run_cycle(self) -> Dict[str, int]:
        self.cycle_count += 1
        self.last_cycle_at = time.time()
        with cycle_context("monitor", self.cycle_count):
            return await self._monitor()

    async def _monitor(self) -> Dict[str, int]:
        summary = {"monitored": 0, "priced": 0, "exits": 0, "resumed": 0}

        summary["resumed"] = self.resume_closing()
        self._alert_stuck()

        positions = self.ledger.active_positions()
        summary["monitored"] = len(positions)
        if not positions:
            return summary

        asset_ids = sorted({p.asset_id for p in positions})
        try:
            prices = await asyncio.wait_for(self.prices.get_prices(asset_ids), timeout=self.price_timeout)
        except (OperationalError, asyncio.TimeoutError) as e:
            logger.warning("Price fetch failed, monitor cycle skipped", error=str(e) or type(e).__name__)
            return summary

        updated = self.ledger.record_prices(
            {p.position_id: prices[p.asset_id] for p in positions if p.asset_id in prices}
        )
        summary["priced"] = len(updated)
        missing = [a for a in asset_ids if a not in prices]
        if missing:
            logger.warning("No price for held assets", asset_ids=missing)

        now = utcnow()
        for position in updated:
            decision = self.exit_policy.evaluate(position, position.current_price, now)
            if decision.should_exit and self.trigger_close(position.position_id, decision.reason):
                summary["exits"] += 1
                logger.info(
                    "Exit triggered",
                    position_id=position.position_id,
                    asset_id=position.asset_id,
                    reason=decision.reason.value,
                    price=str(position.current_price),
                    trigger_price=str(decision.trigger_price),
                )

        if summary["exits"] or summary["resumed"]:
            logger.info("MONITOR_CYCLE_SUMMARY", **summary)
        return summary

    # ========== CLOSE ==========

    def trigger_close(self, position_id: str, reason: ExitReason) -> bool:
        """Mark the position CLOSING and start its close task. False if it was not ACTIVE."""
        if not self.ledger.mark_closing(position_id, reason):
            return False
        self._spawn_close(position_id)
        return True

    def resume_closing(self) -> int:
        resumed = 0
        for position in self.ledger.closing_positions():
            if self._spawn_close(position.position_id):
                resumed += 1
        return resumed

    def in_flight(self) -> int:
        return sum(1 for t in self._close_tasks.values() if not t.done())

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for running close tasks without cancelling them. True if all finished."""
        tasks = [t for t in self._close_tasks.values() if not t.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning("Close tasks still running", count=len(pending))
        return not pending

    def _spawn_close(self, position_id: str) -> bool:
        existing = self._close_tasks.get(position_id)
        if existing is not None and not existing.done():
            return False
        task = asyncio.create_task(self._close(position_id))
        self._close_tasks[position_id] = task
        task.add_done_callback(lambda t, pid=position_id: self._close_done(pid, t))
        return True

    def _close_done(self, position_id: str, task: asyncio.Task) -> None:
        if self._close_tasks.get(position_id) is task:
            del self._close_tasks[position_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.critical(
                "Close task crashed",
                position_id=position_id,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _close(self, position_id: str) -> None:
        position = self.ledger.get(position_id)
        if position is None or position.status != PositionStatus.CLOSING:
            return

        try:
            if position.close_tx_ref is not None:
                if await self._resolve_pending_close(position):
                    return
                position = self.ledger.get(position_id)

            if position.close_attempts >= self.execution_config.max_close_attempts:
                self.ledger.finalize(
                    position_id, CloseOutcome.FAILED, failure_reason="close_attempts_exhausted"
                )
                return

            await self._sell(position)
        except InvariantError:
            raise
        except Exception as e:
            # Position stays CLOSING and is resumed next cycle
            logger.error(
                "Close attempt errored",
                position_id=position_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )

    async def _resolve_pending_close(self, position: Position) -> bool:
        """
        Re-check the stored close transaction.

        Returns True when the close is settled or still unknown, False when
        the transaction definitely did not land and a new sell may go out.
        """
        status = await self.gateway.recheck(position.close_tx_ref)
        if status == ConfirmStatus.CONFIRMED:
            proceeds = position.expected_exit_proceeds
            if proceeds is None:
                proceeds = position.current_price * position.quantity
            self.ledger.finalize(
                position.position_id,
                CloseOutcome.CLOSED,
                exit_price=proceeds / position.quantity,
                exit_proceeds=proceeds,
                exit_tx_ref=position.close_tx_ref,
            )
            return True
        if status == ConfirmStatus.TIMED_OUT:
            logger.warning(
                "Close still unconfirmed",
                position_id=position.position_id,
                signature=position.close_tx_ref.signature,
                attempts=position.close_attempts,
            )
            return True

        logger.info(
            "Close transaction did not land",
            position_id=position.position_id,
            signature=position.close_tx_ref.signature,
            status=status.value,
        )
        self.ledger.record_close_submission(position.position_id, None)
        return False

    async def _sell(self, position: Position) -> None:
        position_id = position.position_id
        result = await self.gateway.sell(position.asset_id, position.quantity, self._slippage_for(position))

        if result.confirmed:
            proceeds = result.out_amount
            self.ledger.record_close_submission(position_id, result.tx_ref, proceeds)
            self.ledger.finalize(
                position_id,
                CloseOutcome.CLOSED,
                exit_price=proceeds / position.quantity,
                exit_proceeds=proceeds,
                exit_tx_ref=result.tx_ref,
            )
            return

        if result.ambiguous and result.tx_ref is not None:
            self.ledger.record_close_submission(position_id, result.tx_ref, result.out_amount)
            logger.warning(
                "Close confirmation unknown, will re-check",
                position_id=position_id,
                signature=result.tx_ref.signature,
            )
            return

        if result.tx_ref is not None:
            self.ledger.record_close_submission(position_id, result.tx_ref)
            attempts = self.ledger.record_close_submission(position_id, None).close_attempts
        else:
            attempts = self.ledger.note_close_attempt(position_id)

        logger.warning(
            "Close attempt failed",
            position_id=position_id,
            status=result.status.value,
            error=result.error,
            attempts=attempts,
            max_attempts=self.execution_config.max_close_attempts,
        )
        if attempts >= self.execution_config.max_close_attempts:
            self.ledger.finalize(position_id, CloseOutcome.FAILED, failure_reason=result.error or result.status.value)

    def _slippage_for(self, position: Position) -> Optional[int]:
        if self.registry is None:
            return None
        strategy = self.registry.get(position.strategy_id)
        return strategy.slippage_bps if strategy else None

    def _alert_stuck(self) -> None:
        now = utcnow()
        threshold = self.config.stuck_closing_alert_seconds
        for position in self.ledger.closing_positions():
            if position.closing_started_at is None:
                continue
            age = (now - position.closing_started_at).total_seconds()
            if age > threshold:
                logger.error(
                    "STUCK_CLOSING",
                    position_id=position.position_id,
                    asset_id=position.asset_id,
                    closing_seconds=int(age),
                    close_attempts=position.close_attempts,
                    signature=position.close_tx_ref.signature if position.close_tx_ref else None,
                )
