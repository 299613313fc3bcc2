"""
Scan loop: discovery -> signals -> risk -> entry gate -> open.

Each cycle:
1. Re-check entries whose confirmation was unknown last time
2. Snapshot enabled strategies (skip the cycle when there are none)
3. Fetch a bounded candidate batch (skip the cycle when discovery fails)
4. Collect signals and score candidates concurrently, bounded by a semaphore
5. For each strategy that admits a candidate: reserve capacity, buy,
   then record the position once the swap confirms

A buy whose confirmation times out keeps its reservation and is re-checked
on later cycles; it is never assumed to have succeeded.
"""
import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from autotrader.config.config import ExecutionConfig, ScanConfig
from autotrader.data.signal_collector import SignalCollector
from autotrader.domain.models import AdmissionDecision, ConfirmStatus, Quote, TxRef
from autotrader.domain.protocols import DiscoveryFeed
from autotrader.exceptions import InvariantError, OperationalError
from autotrader.execution.execution_gateway import ExecutionGateway
from autotrader.execution.position_ledger import PositionLedger
from autotrader.risk.entry_gate import EntryGate, capacity_rejection
from autotrader.risk.risk_evaluator import RiskEvaluator
from autotrader.strategy.registry import StrategyRegistry
from autotrader.strategy.strategy_config import StrategyConfig
from autotrader.monitoring.logger import cycle_context, get_logger

logger = get_logger(__name__)


@dataclass
class EntryResult:
    """Outcome of one entry attempt: opened, pending, rejected or failed."""
    status: str
    asset_id: str
    strategy_id: str
    position_id: Optional[str] = None
    reason: Optional[str] = None


class ScanLoop:
    def __init__(
        self,
        registry: StrategyRegistry,
        ledger: PositionLedger,
        discovery: DiscoveryFeed,
        collector: SignalCollector,
        evaluator: RiskEvaluator,
        gate: EntryGate,
        gateway: ExecutionGateway,
        config: Optional[ScanConfig] = None,
        execution_config: Optional[ExecutionConfig] = None,
        discovery_timeout: float = 15.0,
    ):
        self.registry = registry
        self.ledger = ledger
        self.discovery = discovery
        self.collector = collector
        self.evaluator = evaluator
        self.gate = gate
        self.gateway = gateway
        self.config = config or ScanConfig()
        self.execution_config = execution_config or ExecutionConfig()
        self.discovery_timeout = discovery_timeout

        self.active = False
        self.cycle_count = 0
        self.last_cycle_at: Optional[float] = None

    # ========== LOOP ==========

    async def run(self) -> None:
        self.active = True
        logger.info("Scan loop started", interval=self.config.interval_seconds)
        try:
            while self.active:
                started = time.monotonic()
                try:
                    await self.run_cycle()
                except OperationalError as e:
                    logger.warning("Scan cycle skipped", error=str(e), error_type=type(e).__name__)
                except Exception as e:
                    logger.error("Error in scan cycle", error=str(e), exc_info=True)
                elapsed = time.monotonic() - started
                await asyncio.sleep(max(1.0, self.config.interval_seconds - elapsed))
        except asyncio.CancelledError:
            logger.info("Scan loop cancelled")
        finally:
            self.active = False

    def stop(self) -> None:
        self.active = False

    async def run_cycle(self) -> Dict[str, int]:
        self.cycle_count += 1
        self.last_cycle_at = time.time()
        with cycle_context("scan", self.cycle_count):
            return await self._scan()

    async def _scan(self) -> Dict[str, int]:
        summary = {
            "candidates": 0, "evaluated": 0, "rejected": 0,
            "opened": 0, "pending": 0, "failed": 0, "rechecked": 0,
        }

        summary["rechecked"] = await self.recheck_unconfirmed()

        strategies = self.registry.snapshot_enabled()
        if not strategies:
            logger.debug("No enabled strategies, scan skipped")
            return summary

        try:
            candidates = await asyncio.wait_for(self.discovery.list_candidates(), timeout=self.discovery_timeout)
        except (OperationalError, asyncio.TimeoutError) as e:
            logger.warning("Discovery failed, scan skipped", error=str(e) or type(e).__name__)
            return summary

        held = self.ledger.snapshot().held_assets()
        batch = [c for c in dict.fromkeys(candidates) if c not in held][: self.config.batch_size]
        summary["candidates"] = len(batch)

        semaphore = asyncio.Semaphore(self.config.max_parallel)
        outcomes = await asyncio.gather(
            *(self._process_candidate(asset_id, strategies, semaphore, summary) for asset_id in batch),
            return_exceptions=True,
        )
        # Every candidate has finished; only invariant breaks get here
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        logger.info("SCAN_CYCLE_SUMMARY", strategies=len(strategies), **summary)
        return summary

    async def _process_candidate(
        self,
        asset_id: str,
        strategies: List[StrategyConfig],
        semaphore: asyncio.Semaphore,
        summary: Dict[str, int],
    ) -> None:
        async with semaphore:
            try:
                await self._evaluate_candidate(asset_id, strategies, summary)
            except InvariantError:
                raise
            except Exception as e:
                summary["failed"] += 1
                logger.error(
                    "Candidate processing failed",
                    asset_id=asset_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    async def _evaluate_candidate(
        self, asset_id: str, strategies: List[StrategyConfig], summary: Dict[str, int]
    ) -> None:
        signals = await self.collector.collect(asset_id)
        assessment = self.evaluator.evaluate(signals)
        summary["evaluated"] += 1

        for strategy in strategies:
            decision = self.gate.admit(
                strategy, assessment, self.ledger.snapshot(), strategy.max_position_size
            )
            if not decision.admitted:
                summary["rejected"] += 1
                logger.debug(
                    "Candidate rejected",
                    asset_id=asset_id,
                    strategy=strategy.name,
                    reason=decision.reason,
                    risk_score=assessment.score,
                )
                continue

            result = await self.execute_entry(strategy, asset_id, strategy.max_position_size)
            summary[result.status] = summary.get(result.status, 0) + 1
            if result.status in ("opened", "pending"):
                # The asset is now held; other strategies would hit duplicate_asset
                break

    # ========== ENTRY ==========

    async def execute_entry(self, strategy: StrategyConfig, asset_id: str, size: Decimal) -> EntryResult:
        """Reserve capacity, buy, and record the position on confirmation."""
        reservation_id = self.ledger.reserve(strategy, asset_id, size)
        if reservation_id is None:
            decision = self._capacity_reason(strategy, asset_id, size)
            return EntryResult("rejected", asset_id, strategy.id, reason=decision.reason if decision else "capacity")

        try:
            result = await self.gateway.buy(asset_id, size, strategy.slippage_bps)
        except Exception:
            self.ledger.release(reservation_id)
            raise

        if result.confirmed:
            position_id = self._record_entry(strategy, asset_id, reservation_id, result.quote, result.tx_ref)
            if position_id is None:
                return EntryResult("failed", asset_id, strategy.id, reason="ledger_refused")
            return EntryResult("opened", asset_id, strategy.id, position_id=position_id)

        if result.ambiguous and result.tx_ref is not None:
            self.ledger.attach_entry_tx(reservation_id, result.tx_ref, result.quote)
            logger.warning(
                "Entry confirmation unknown, will re-check",
                asset_id=asset_id,
                strategy=strategy.name,
                signature=result.tx_ref.signature,
            )
            return EntryResult("pending", asset_id, strategy.id, reason="confirmation_timeout")

        self.ledger.release(reservation_id)
        return EntryResult("failed", asset_id, strategy.id, reason=result.error or result.status.value)

    def _capacity_reason(self, strategy: StrategyConfig, asset_id: str, size: Decimal) -> Optional[AdmissionDecision]:
        return capacity_rejection(strategy, asset_id, size, self.ledger.snapshot())

    def _record_entry(
        self,
        strategy: StrategyConfig,
        asset_id: str,
        reservation_id: str,
        quote: Quote,
        tx_ref: Optional[TxRef],
    ) -> Optional[str]:
        if not self.ledger.has_reservation(reservation_id):
            # Another cycle already recorded or released this entry
            logger.debug("Reservation already resolved", reservation_id=reservation_id, asset_id=asset_id)
            return None
        entry_size = quote.in_amount
        quantity = quote.out_amount
        position_id = self.ledger.open(
            strategy,
            asset_id,
            entry_size=entry_size,
            entry_price=entry_size / quantity,
            quantity=quantity,
            reservation_id=reservation_id,
            entry_tx_ref=tx_ref,
        )
        if position_id is None:
            logger.critical(
                "CONFIRMED_ENTRY_NOT_RECORDED",
                asset_id=asset_id,
                strategy=strategy.name,
                signature=tx_ref.signature if tx_ref else None,
            )
            self.ledger.release(reservation_id)
        return position_id

    async def recheck_unconfirmed(self) -> int:
        """Resolve entries whose confirmation was unknown. Returns how many were checked."""
        pending = self.ledger.unconfirmed_entries()
        for reservation in pending:
            status = await self.gateway.recheck(reservation.tx_ref)
            if status == ConfirmStatus.CONFIRMED:
                # Exit parameters come from the strategy as it was at entry, even if since deleted
                strategy = reservation.strategy or self.registry.get(reservation.strategy_id)
                if strategy is None or reservation.quote is None:
                    logger.critical(
                        "CONFIRMED_ENTRY_NOT_RECORDED",
                        asset_id=reservation.asset_id,
                        strategy_id=reservation.strategy_id,
                        signature=reservation.tx_ref.signature,
                    )
                    continue
                self._record_entry(
                    strategy, reservation.asset_id, reservation.reservation_id, reservation.quote, reservation.tx_ref
                )
            elif status in (ConfirmStatus.FAILED, ConfirmStatus.EXPIRED):
                logger.info(
                    "Unconfirmed entry did not land",
                    asset_id=reservation.asset_id,
                    status=status.value,
                    signature=reservation.tx_ref.signature,
                )
                self.ledger.release(reservation.reservation_id)
            else:
                rechecks = self.ledger.bump_recheck(reservation.reservation_id)
                log = logger.error if rechecks >= self.execution_config.max_confirm_rechecks else logger.warning
                log(
                    "Entry still unconfirmed",
                    asset_id=reservation.asset_id,
                    signature=reservation.tx_ref.signature,
                    rechecks=rechecks,
                )
        return len(pending)
