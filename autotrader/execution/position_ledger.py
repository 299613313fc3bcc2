"""
Position Ledger - single source of truth for positions.

ENFORCES:
1. Budget: per strategy, entry size of ACTIVE + CLOSING positions plus
   in-flight reservations never exceeds total_budget
2. At most one ACTIVE/CLOSING position or reservation per asset
3. highest_price never decreases
4. ACTIVE -> CLOSING happens exactly once; CLOSING -> CLOSED | FAILED only
5. Every mutation is persisted and emitted as a lifecycle event

Locking (acquire in this order, never the reverse):
    strategy lock  -> claims lock -> position lock
The index lock guards the dicts themselves and is never held while taking
another lock. No lock is held across an await.
"""
import threading
import uuid
from decimal import Decimal
from typing import Dict, List, Optional

from autotrader.domain.events import LifecycleEvent, LifecycleEventType
from autotrader.domain.models import (
    CloseOutcome,
    ExitReason,
    LedgerSnapshot,
    Position,
    PositionStatus,
    Quote,
    Reservation,
    TxRef,
    utcnow,
)
from autotrader.domain.protocols import EventSink, PositionStore, noop_event_sink
from autotrader.exceptions import InvariantViolation
from autotrader.risk.entry_gate import capacity_rejection
from autotrader.strategy.strategy_config import StrategyConfig
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def check_invariant(condition: bool, message: str) -> None:
    """Assert an invariant. Raises InvariantViolation if false."""
    if not condition:
        logger.critical(f"INVARIANT VIOLATION: {message}")
        raise InvariantViolation(message)


class PositionLedger:
    """Owns every Position and Reservation. All reads return copies."""

    def __init__(
        self,
        store: Optional[PositionStore] = None,
        events: EventSink = noop_event_sink,
    ):
        self._store = store
        self._events = events

        self._positions: Dict[str, Position] = {}
        self._reservations: Dict[str, Reservation] = {}

        self._index_lock = threading.RLock()
        self._claims_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._locks_guard = threading.Lock()
        self._strategy_locks: Dict[str, threading.Lock] = {}
        self._position_locks: Dict[str, threading.Lock] = {}

    # ========== LOCK HELPERS ==========

    def _strategy_lock(self, strategy_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._strategy_locks.setdefault(strategy_id, threading.Lock())

    def _position_lock(self, position_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._position_locks.setdefault(position_id, threading.Lock())

    def _lookup(self, position_id: str) -> Optional[Position]:
        with self._index_lock:
            return self._positions.get(position_id)

    def _copy(self, position: Position) -> Position:
        with self._position_lock(position.position_id):
            return position.copy()

    # ========== STARTUP ==========

    def load(self) -> int:
        """Hydrate from the store. Returns number of non-terminal positions."""
        if self._store is None:
            return 0
        loaded = self._store.load_positions()
        with self._index_lock:
            self._positions = {p.position_id: p for p in loaded}
        live = [p for p in loaded if not p.is_terminal]
        logger.info(
            "Ledger loaded",
            total=len(loaded),
            active=sum(1 for p in live if p.status == PositionStatus.ACTIVE),
            closing=sum(1 for p in live if p.status == PositionStatus.CLOSING),
        )
        return len(live)

    # ========== READS ==========

    def get(self, position_id: str) -> Optional[Position]:
        position = self._lookup(position_id)
        return self._copy(position) if position is not None else None

    def list_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        with self._index_lock:
            positions = list(self._positions.values())
        copies = [self._copy(p) for p in positions]
        if status is not None:
            copies = [p for p in copies if p.status == status]
        return sorted(copies, key=lambda p: p.opened_at)

    def snapshot(self) -> LedgerSnapshot:
        with self._index_lock:
            positions = list(self._positions.values())
            reservations = [self._copy_reservation(r) for r in self._reservations.values()]
        return LedgerSnapshot(
            positions=tuple(self._copy(p) for p in positions),
            reservations=tuple(reservations),
        )

    @staticmethod
    def _copy_reservation(r: Reservation) -> Reservation:
        return Reservation(
            reservation_id=r.reservation_id,
            strategy_id=r.strategy_id,
            asset_id=r.asset_id,
            size=r.size,
            created_at=r.created_at,
            tx_ref=r.tx_ref,
            quote=r.quote,
            rechecks=r.rechecks,
            strategy=r.strategy,
        )

    def committed(self, strategy_id: str) -> Decimal:
        return self.snapshot().committed(strategy_id)

    # ========== RESERVATIONS ==========

    def reserve(self, strategy: StrategyConfig, asset_id: str, size: Decimal) -> Optional[str]:
        """
        Atomically claim capacity for an entry swap.

        Returns a reservation id, or None when the size, duplicate,
        concurrency or budget rule would be broken.
        """
        with self._strategy_lock(strategy.id), self._claims_lock:
            rejection = capacity_rejection(strategy, asset_id, size, self.snapshot())
            if rejection is not None:
                logger.info(
                    "Reservation refused",
                    strategy=strategy.name,
                    asset_id=asset_id,
                    size=str(size),
                    reason=rejection.reason,
                )
                return None
            reservation = Reservation(
                reservation_id=str(uuid.uuid4()),
                strategy_id=strategy.id,
                asset_id=asset_id,
                size=size,
                strategy=strategy,
            )
            with self._index_lock:
                self._reservations[reservation.reservation_id] = reservation

        logger.debug(
            "Capacity reserved",
            reservation_id=reservation.reservation_id,
            strategy=strategy.name,
            asset_id=asset_id,
            size=str(size),
        )
        return reservation.reservation_id

    def release(self, reservation_id: str) -> bool:
        with self._claims_lock:
            with self._index_lock:
                reservation = self._reservations.pop(reservation_id, None)
        if reservation is None:
            return False
        logger.debug("Reservation released", reservation_id=reservation_id, asset_id=reservation.asset_id)
        return True

    def attach_entry_tx(self, reservation_id: str, tx_ref: TxRef, quote: Optional[Quote] = None) -> None:
        """Remember an entry transaction whose confirmation is still unknown."""
        with self._index_lock:
            reservation = self._reservations.get(reservation_id)
            check_invariant(reservation is not None, f"Unknown reservation {reservation_id}")
            reservation.tx_ref = tx_ref
            if quote is not None:
                reservation.quote = quote

    def bump_recheck(self, reservation_id: str) -> int:
        with self._index_lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                return 0
            reservation.rechecks += 1
            return reservation.rechecks

    def has_reservation(self, reservation_id: str) -> bool:
        with self._index_lock:
            return reservation_id in self._reservations

    def unconfirmed_entries(self) -> List[Reservation]:
        """Reservations with a submitted entry transaction awaiting a verdict."""
        with self._index_lock:
            return [self._copy_reservation(r) for r in self._reservations.values() if r.tx_ref is not None]

    # ========== LIFECYCLE ==========

    def open(
        self,
        strategy: StrategyConfig,
        asset_id: str,
        entry_size: Decimal,
        entry_price: Decimal,
        quantity: Decimal,
        *,
        reservation_id: Optional[str] = None,
        entry_tx_ref: Optional[TxRef] = None,
    ) -> Optional[str]:
        """
        Record a confirmed entry as an ACTIVE position.

        This is the authoritative budget check. An open that would exceed
        the strategy budget is a logged no-op returning None. A matching
        reservation is consumed on success.
        """
        with self._strategy_lock(strategy.id), self._claims_lock:
            with self._index_lock:
                reservation = self._reservations.pop(reservation_id, None) if reservation_id else None
            if reservation is not None:
                check_invariant(
                    reservation.strategy_id == strategy.id and reservation.asset_id == asset_id,
                    f"Reservation {reservation_id} does not belong to {strategy.id}/{asset_id}",
                )

            rejection = capacity_rejection(strategy, asset_id, entry_size, self.snapshot())
            if rejection is not None:
                if reservation is not None:
                    with self._index_lock:
                        self._reservations[reservation.reservation_id] = reservation
                logger.warning(
                    "Open refused",
                    strategy=strategy.name,
                    asset_id=asset_id,
                    entry_size=str(entry_size),
                    reason=rejection.reason,
                    detail=rejection.detail,
                )
                return None

            position = Position(
                position_id=str(uuid.uuid4()),
                asset_id=asset_id,
                strategy_id=strategy.id,
                entry_price=entry_price,
                entry_size=entry_size,
                quantity=quantity,
                entry_tx_ref=entry_tx_ref,
                stop_loss_pct=strategy.stop_loss_pct,
                take_profit_pct=strategy.take_profit_pct,
                trailing_stop_pct=strategy.trailing_stop_pct,
                max_hold_minutes=strategy.max_hold_minutes,
            )
            with self._index_lock:
                self._positions[position.position_id] = position

        logger.info(
            "Position opened",
            position_id=position.position_id,
            strategy=strategy.name,
            asset_id=asset_id,
            entry_size=str(entry_size),
            entry_price=str(entry_price),
            quantity=str(quantity),
        )
        self._persist()
        self._emit(LifecycleEventType.OPENED, position, entry_price=str(entry_price), entry_size=str(entry_size))
        return position.position_id

    def record_price(self, position_id: str, price: Decimal) -> Optional[Position]:
        """Update current price and the watermark, then persist."""
        updated = self._apply_price(position_id, price)
        if updated is not None:
            self._persist()
        return updated

    def record_prices(self, prices: Dict[str, Decimal]) -> List[Position]:
        """Batch form of record_price with a single persist."""
        updated = [p for p in (self._apply_price(pid, price) for pid, price in prices.items()) if p is not None]
        if updated:
            self._persist()
        return updated

    def _apply_price(self, position_id: str, price: Decimal) -> Optional[Position]:
        position = self._lookup(position_id)
        if position is None or price <= 0:
            return None
        with self._position_lock(position_id):
            if position.is_terminal:
                return None
            position.current_price = price
            if price > position.highest_price:
                position.highest_price = price
            position.last_price_at = utcnow()
            return position.copy()

    def mark_closing(self, position_id: str, reason: ExitReason) -> bool:
        """
        ACTIVE -> CLOSING. Returns True for exactly one caller; False when
        the position is unknown or not ACTIVE.
        """
        position = self._lookup(position_id)
        if position is None:
            return False
        with self._position_lock(position_id):
            if position.status != PositionStatus.ACTIVE:
                return False
            position.status = PositionStatus.CLOSING
            position.closing_reason = reason
            position.closing_started_at = utcnow()
            snapshot = position.copy()

        logger.info(
            "Position closing",
            position_id=position_id,
            asset_id=snapshot.asset_id,
            reason=reason.value,
            price=str(snapshot.current_price),
        )
        self._persist()
        self._emit(LifecycleEventType.CLOSING, snapshot, reason=reason.value)
        return True

    def record_close_submission(
        self,
        position_id: str,
        tx_ref: Optional[TxRef],
        expected_proceeds: Optional[Decimal] = None,
    ) -> Position:
        """
        Store the in-flight close transaction (None clears it after a
        definite failure). A new tx_ref counts as one close attempt.
        """
        position = self._lookup(position_id)
        check_invariant(position is not None, f"Unknown position {position_id}")
        with self._position_lock(position_id):
            check_invariant(
                position.status == PositionStatus.CLOSING,
                f"Close submission for {position_id} in state {position.status.value}",
            )
            if tx_ref is not None and tx_ref != position.close_tx_ref:
                position.close_attempts += 1
            position.close_tx_ref = tx_ref
            position.expected_exit_proceeds = expected_proceeds if tx_ref is not None else None
            snapshot = position.copy()
        self._persist()
        return snapshot

    def note_close_attempt(self, position_id: str) -> int:
        """Count a close attempt that never produced a transaction."""
        position = self._lookup(position_id)
        check_invariant(position is not None, f"Unknown position {position_id}")
        with self._position_lock(position_id):
            position.close_attempts += 1
            attempts = position.close_attempts
        self._persist()
        return attempts

    def finalize(
        self,
        position_id: str,
        outcome: CloseOutcome,
        *,
        exit_price: Optional[Decimal] = None,
        exit_proceeds: Optional[Decimal] = None,
        exit_tx_ref: Optional[TxRef] = None,
        failure_reason: Optional[str] = None,
    ) -> Position:
        """
        CLOSING -> CLOSED | FAILED.

        Raises:
            InvariantViolation: position unknown or not CLOSING
        """
        position = self._lookup(position_id)
        check_invariant(position is not None, f"finalize on unknown position {position_id}")

        with self._strategy_lock(position.strategy_id), self._position_lock(position_id):
            check_invariant(
                position.status == PositionStatus.CLOSING,
                f"finalize on {position_id} in state {position.status.value}",
            )
            now = utcnow()
            if outcome == CloseOutcome.CLOSED:
                position.status = PositionStatus.CLOSED
                position.exit_reason = position.closing_reason
                position.exit_price = exit_price
                position.exit_proceeds = exit_proceeds
                position.exit_tx_ref = exit_tx_ref or position.close_tx_ref
            else:
                position.status = PositionStatus.FAILED
                position.failure_reason = failure_reason or "close_failed"
            position.closed_at = now
            snapshot = position.copy()

        if snapshot.status == PositionStatus.CLOSED:
            logger.info(
                "Position closed",
                position_id=position_id,
                asset_id=snapshot.asset_id,
                reason=snapshot.exit_reason.value if snapshot.exit_reason else None,
                exit_price=str(snapshot.exit_price),
                pnl=str(snapshot.realized_pnl),
            )
            self._persist()
            self._emit(
                LifecycleEventType.CLOSED,
                snapshot,
                reason=snapshot.exit_reason.value if snapshot.exit_reason else None,
                exit_price=str(snapshot.exit_price),
                pnl=str(snapshot.realized_pnl),
            )
        else:
            logger.error(
                "Position close failed",
                position_id=position_id,
                asset_id=snapshot.asset_id,
                failure_reason=snapshot.failure_reason,
                close_attempts=snapshot.close_attempts,
            )
            self._persist()
            self._emit(LifecycleEventType.FAILED, snapshot, failure_reason=snapshot.failure_reason)
        return snapshot

    # ========== PERSISTENCE & EVENTS ==========

    def _persist(self) -> None:
        if self._store is None:
            return
        with self._persist_lock:
            with self._index_lock:
                positions = list(self._positions.values())
            self._store.save_positions([self._copy(p) for p in positions])

    def _emit(self, event_type: LifecycleEventType, position: Position, **details) -> None:
        self._events.publish(
            LifecycleEvent(
                event_type=event_type,
                position_id=position.position_id,
                asset_id=position.asset_id,
                strategy_id=position.strategy_id,
                details=details,
            )
        )

    # ========== STATS ==========

    def counts(self) -> Dict[str, int]:
        with self._index_lock:
            positions = list(self._positions.values())
            reserved = len(self._reservations)
        counts = {s.value: 0 for s in PositionStatus}
        for p in positions:
            counts[p.status.value] += 1
        counts["reserved"] = reserved
        return counts

    def closing_positions(self) -> List[Position]:
        return self.list_positions(PositionStatus.CLOSING)

    def active_positions(self) -> List[Position]:
        return self.list_positions(PositionStatus.ACTIVE)
