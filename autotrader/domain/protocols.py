"""
Domain protocols (interfaces) for dependency inversion.

These define the contracts that external adapters must implement, so the
risk, ledger and loop code depend on abstractions rather than on a
particular venue, chain or data provider. Real implementations live in
autotrader.data and autotrader.paper; tests pass in-memory fakes.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from autotrader.domain.events import LifecycleEvent
from autotrader.domain.models import (
    AuthorityStatus,
    ConfirmStatus,
    HolderStats,
    Position,
    Quote,
    TradeSide,
    TxRef,
)


@runtime_checkable
class DiscoveryFeed(Protocol):
    async def list_candidates(self, cursor: Optional[str] = None) -> List[str]: ...


@runtime_checkable
class SignalProvider(Protocol):
    """
    Raw risk signals for one asset.

    Each method may raise SignalUnavailable (or any other error); the
    signal collector turns failures into missing signals.
    """

    async def liquidity(self, asset_id: str) -> Decimal: ...

    async def holder_stats(self, asset_id: str) -> HolderStats: ...

    async def authority_status(self, asset_id: str) -> AuthorityStatus: ...

    async def lock_status(self, asset_id: str) -> bool: ...

    async def transfer_tax(self, asset_id: str) -> Decimal: ...

    async def sellability_probe(self, asset_id: str) -> bool: ...

    async def created_at(self, asset_id: str) -> datetime: ...


@runtime_checkable
class PriceSource(Protocol):
    async def get_prices(self, asset_ids: Sequence[str]) -> Dict[str, Decimal]: ...


@runtime_checkable
class SwapVenue(Protocol):
    async def quote(self, asset_id: str, side: TradeSide, amount: Decimal, slippage_bps: int) -> Quote: ...

    async def build(self, quote: Quote) -> bytes: ...


@runtime_checkable
class Signer(Protocol):
    async def sign(self, unsigned: bytes) -> bytes: ...


@runtime_checkable
class ChainClient(Protocol):
    async def submit(self, signed: bytes) -> TxRef: ...

    async def confirm(self, tx_ref: TxRef, timeout: float) -> ConfirmStatus: ...


@runtime_checkable
class PositionStore(Protocol):
    def load_positions(self) -> List[Position]: ...

    def save_positions(self, positions: List[Position]) -> None: ...


@runtime_checkable
class EventSink(Protocol):
    """Anything that accepts lifecycle events (EventBus in production)."""

    def publish(self, event: LifecycleEvent) -> None: ...


class _NoopEventSink:
    """No-op sink for use in tests or when nobody listens."""

    def publish(self, event: LifecycleEvent) -> None:
        pass


noop_event_sink = _NoopEventSink()
