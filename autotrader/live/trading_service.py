"""
Trading service.

Wires configuration, strategy registry, position ledger, data adapters,
execution gateway and both loops, and exposes the control API:
positions, strategies, manual open/close, the lifecycle event stream,
performance and status.

Paper mode (system.dry_run, the default) routes execution through
PaperVenue. Live mode needs an injected Signer; keys are never loaded here.
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from autotrader.config.config import Config
from autotrader.data.birdeye_client import BirdeyeClient
from autotrader.data.discovery import HttpDiscoveryFeed, StaticDiscoveryFeed
from autotrader.data.jupiter_client import JupiterClient, JupiterPriceSource, JupiterSwapVenue
from autotrader.data.raydium_client import RaydiumPoolClient
from autotrader.data.rpc_client import SolanaRpcClient
from autotrader.data.signal_collector import SignalCollector
from autotrader.data.signal_provider import ChainSignalProvider
from autotrader.domain.events import EventBus
from autotrader.domain.models import AdmissionDecision, ExitReason, Position, PositionStatus
from autotrader.domain.protocols import (
    ChainClient,
    DiscoveryFeed,
    PositionStore,
    PriceSource,
    SignalProvider,
    Signer,
    SwapVenue,
)
from autotrader.exceptions import ConfigurationError
from autotrader.execution.execution_gateway import ExecutionGateway
from autotrader.execution.position_ledger import PositionLedger
from autotrader.execution.position_persistence import PositionPersistence
from autotrader.live.monitor_loop import MonitorLoop
from autotrader.live.scan_loop import ScanLoop
from autotrader.paper.paper_venue import PaperVenue
from autotrader.reporting.performance import PerformanceStats, compute_performance
from autotrader.risk.entry_gate import EntryGate
from autotrader.risk.risk_evaluator import RiskEvaluator
from autotrader.strategy.registry import StrategyRegistry
from autotrader.strategy.strategy_config import StrategyConfig
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class TradingService:
    """Owns the scan and monitor tasks and every shared component."""

    def __init__(
        self,
        config: Config,
        *,
        store: Optional[PositionStore] = None,
        registry: Optional[StrategyRegistry] = None,
        discovery: Optional[DiscoveryFeed] = None,
        signal_provider: Optional[SignalProvider] = None,
        prices: Optional[PriceSource] = None,
        venue: Optional[SwapVenue] = None,
        signer: Optional[Signer] = None,
        chain: Optional[ChainClient] = None,
    ):
        self.config = config
        self.events = EventBus(config.monitoring.event_queue_size)

        self.store = store if store is not None else PositionPersistence(config.persistence.positions_db_path)
        self.ledger = PositionLedger(self.store, self.events)
        self.registry = registry if registry is not None else StrategyRegistry(config.persistence.strategies_path)

        data = config.data
        self._jupiter = JupiterClient(data.jupiter_api_url, data.price_api_url, data.request_timeout_seconds)
        self._rpc = SolanaRpcClient(
            data.rpc_url,
            request_timeout=data.request_timeout_seconds,
            poll_interval=config.execution.confirm_poll_interval_seconds,
        )

        self.prices = prices or JupiterPriceSource(self._jupiter, data.quote_mint)
        self.discovery = discovery or self._build_discovery()
        self.signal_provider = signal_provider or ChainSignalProvider(
            self._rpc,
            self._jupiter,
            BirdeyeClient(data.birdeye_api_url, data.birdeye_api_key, data.request_timeout_seconds)
            if data.birdeye_api_key else None,
            data.quote_mint,
            data.quote_decimals,
            pools=RaydiumPoolClient(data.pool_api_url, data.request_timeout_seconds),
            burn_addresses=data.lp_burn_addresses,
            locker_owners=data.lp_locker_owners,
            secured_min_pct=data.lp_secured_min_pct,
        )

        self.paper: Optional[PaperVenue] = None
        venue, signer, chain = self._build_execution(venue, signer, chain)
        self.gateway = ExecutionGateway(venue, signer, chain, config.execution)

        self.collector = SignalCollector(self.signal_provider, data.signal_timeout_seconds)
        self.evaluator = RiskEvaluator(config.risk)
        self.gate = EntryGate(config.risk)

        self.scan_loop = ScanLoop(
            self.registry,
            self.ledger,
            self.discovery,
            self.collector,
            self.evaluator,
            self.gate,
            self.gateway,
            config=config.scan,
            execution_config=config.execution,
            discovery_timeout=data.request_timeout_seconds,
        )
        self.monitor_loop = MonitorLoop(
            self.ledger,
            self.prices,
            self.gateway,
            registry=self.registry,
            config=config.monitor,
            execution_config=config.execution,
            price_timeout=data.request_timeout_seconds,
        )

        self.running = False
        self._started_at: Optional[float] = None
        self._tasks: List[asyncio.Task] = []
        self._shutdown = asyncio.Event()

    def _build_discovery(self) -> DiscoveryFeed:
        data = self.config.data
        if data.discovery_url:
            return HttpDiscoveryFeed(data.discovery_url, data.request_timeout_seconds, limit=self.config.scan.batch_size)
        return StaticDiscoveryFeed(data.watchlist)

    def _build_execution(self, venue, signer, chain):
        if self.config.system.dry_run:
            if venue is None and signer is None and chain is None:
                self.paper = PaperVenue(self.prices, self.config.paper)
                return self.paper, self.paper, self.paper
            if venue is None or signer is None or chain is None:
                raise ConfigurationError("venue, signer and chain must be injected together")
            return venue, signer, chain

        if signer is None:
            raise ConfigurationError("Live trading (system.dry_run=false) requires an injected Signer")
        if venue is None:
            if not self.config.data.wallet_public_key:
                raise ConfigurationError("Live trading requires data.wallet_public_key")
            venue = JupiterSwapVenue(
                self._jupiter,
                self._rpc,
                self.config.data.quote_mint,
                self.config.data.quote_decimals,
                self.config.data.wallet_public_key,
            )
        return venue, signer, chain or self._rpc

    @property
    def mode(self) -> str:
        return "paper" if self.paper is not None else "live"

    # ========== LIFECYCLE ==========

    async def start(self) -> None:
        if self.running:
            return
        logger.info("Starting trading service", mode=self.mode, environment=self.config.environment)

        self.registry.load()
        seeded = self.registry.ensure_default()
        if seeded is not None:
            logger.info("Seeded default strategy", strategy_id=seeded.id)
        restored = self.ledger.load()
        counts = self.ledger.counts()
        logger.info(
            "Ledger restored",
            positions=restored,
            active=counts[PositionStatus.ACTIVE.value],
            closing=counts[PositionStatus.CLOSING.value],
        )

        self.running = True
        self._started_at = time.monotonic()
        self._tasks = [asyncio.create_task(self.monitor_loop.run(), name="monitor_loop")]
        if self.config.scan.enabled:
            self._tasks.append(asyncio.create_task(self.scan_loop.run(), name="scan_loop"))
        else:
            logger.warning("Scanning disabled, only open positions are monitored")

    async def stop(self) -> None:
        """
        Stop both loops, then wait for in-flight closes.

        Close tasks are never cancelled; positions still CLOSING after the
        grace period are resumed on the next start.
        """
        if not self.running:
            return
        logger.info("Stopping trading service")
        self.running = False
        self.scan_loop.stop()
        self.monitor_loop.stop()

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        drained = await self.monitor_loop.drain(timeout=self.config.system.shutdown_grace_seconds)
        if not drained:
            closing = self.ledger.closing_positions()
            logger.warning(
                "Shutdown with closes in flight",
                closing=[p.position_id for p in closing],
            )

        if isinstance(self.store, PositionPersistence):
            self.store.close()
        logger.info("Trading service stopped")

    async def run_forever(self) -> None:
        """Start, then block until request_shutdown() or cancellation."""
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    # ========== POSITIONS ==========

    def list_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        return self.ledger.list_positions(status)

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.ledger.get(position_id)

    async def request_manual_open(
        self,
        strategy_id: str,
        asset_id: str,
        size: Optional[Decimal] = None,
    ) -> AdmissionDecision:
        """
        Run signals, risk and the entry gate for one asset, then the normal
        open path. Returns the gate's decision; an admitted entry whose swap
        fails comes back rejected with the failure as reason.

        Raises:
            KeyError: unknown strategy
        """
        strategy = self.registry.get(strategy_id)
        if strategy is None:
            raise KeyError(f"Unknown strategy {strategy_id}")
        size = Decimal(str(size)) if size is not None else strategy.max_position_size

        signals = await self.collector.collect(asset_id)
        assessment = self.evaluator.evaluate(signals)
        decision = self.gate.admit(strategy, assessment, self.ledger.snapshot(), size)
        logger.info(
            "Manual open requested",
            strategy=strategy.name,
            asset_id=asset_id,
            size=str(size),
            risk_score=assessment.score,
            admitted=decision.admitted,
            reason=decision.reason,
        )
        if not decision.admitted:
            return decision

        result = await self.scan_loop.execute_entry(strategy, asset_id, size)
        if result.status == "opened":
            return AdmissionDecision(admitted=True, detail=result.position_id)
        if result.status == "pending":
            return AdmissionDecision(admitted=True, detail="pending_confirmation")
        return AdmissionDecision.reject(result.reason or result.status)

    def request_manual_close(self, position_id: str) -> bool:
        """Start a manual close. False if the position is not ACTIVE."""
        return self.monitor_loop.trigger_close(position_id, ExitReason.MANUAL)

    # ========== STRATEGIES ==========

    def list_strategies(self) -> List[StrategyConfig]:
        return self.registry.list_strategies()

    def upsert_strategy(self, strategy: Union[StrategyConfig, Dict[str, Any]]) -> StrategyConfig:
        if isinstance(strategy, dict):
            strategy = StrategyConfig(**strategy)
        return self.registry.upsert(strategy)

    def toggle_strategy(self, strategy_id: str, enabled: Optional[bool] = None) -> StrategyConfig:
        return self.registry.toggle(strategy_id, enabled)

    def delete_strategy(self, strategy_id: str) -> bool:
        open_positions = [p for p in self.ledger.list_positions() if p.strategy_id == strategy_id and p.holds_budget]
        if open_positions:
            # Open positions keep the exit parameters they were opened with
            logger.warning("Deleting strategy with open positions", strategy_id=strategy_id, open=len(open_positions))
        return self.registry.delete(strategy_id)

    # ========== EVENTS / REPORTING ==========

    def subscribe_events(self) -> asyncio.Queue:
        return self.events.subscribe()

    def unsubscribe_events(self, queue: asyncio.Queue) -> None:
        self.events.unsubscribe(queue)

    def performance(self, strategy_id: Optional[str] = None) -> PerformanceStats:
        return compute_performance(self.ledger.list_positions(), strategy_id)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "mode": self.mode,
            "environment": self.config.environment,
            "uptime_seconds": int(time.monotonic() - self._started_at) if self._started_at and self.running else 0,
            "strategies": len(self.registry.list_strategies()),
            "enabled_strategies": len(self.registry.snapshot_enabled()),
            "positions": self.ledger.counts(),
            "closes_in_flight": self.monitor_loop.in_flight(),
            "scan_cycles": self.scan_loop.cycle_count,
            "monitor_cycles": self.monitor_loop.cycle_count,
            "execution": dict(self.gateway.metrics),
            "event_subscribers": self.events.subscriber_count,
            "events_dropped": self.events.dropped_total,
        }
