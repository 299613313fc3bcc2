"""
Domain models for the autotrader.

These are the core business objects used throughout the application.
All timestamps use UTC timezone-aware datetimes and all amounts are Decimal.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

if TYPE_CHECKING:
    from autotrader.strategy.strategy_config import StrategyConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TradeSide(str, Enum):
    """Swap direction relative to the quote currency."""
    BUY = "buy"
    SELL = "sell"


# ============ RISK ============

class CheckOutcome(str, Enum):
    """Three-valued result of a single risk check."""
    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class HolderStats:
    holder_count: int
    top_holder_concentration_pct: Decimal


@dataclass(frozen=True)
class AuthorityStatus:
    mint_authority_present: bool
    freeze_authority_present: bool

    @property
    def revoked(self) -> bool:
        return not self.mint_authority_present and not self.freeze_authority_present


@dataclass(frozen=True)
class AssetSignals:
    """
    Raw signals for one candidate asset.

    Every field except `asset_id` is optional; None means the signal could
    not be obtained and must be treated as unknown, never as a pass.
    """
    asset_id: str
    liquidity: Optional[Decimal] = None
    holder_stats: Optional[HolderStats] = None
    authority: Optional[AuthorityStatus] = None
    liquidity_locked: Optional[bool] = None
    transfer_tax_pct: Optional[Decimal] = None
    sellable: Optional[bool] = None
    created_at: Optional[datetime] = None

    def age_minutes(self, now: datetime) -> Optional[Decimal]:
        if self.created_at is None:
            return None
        return Decimal(str((now - self.created_at).total_seconds())) / Decimal("60")


@dataclass(frozen=True)
class RiskCheck:
    name: str
    outcome: CheckOutcome
    reason: str
    weight_applied: int = 0


@dataclass(frozen=True)
class RiskAssessment:
    """Immutable result of scoring one candidate. Higher score is riskier."""
    asset_id: str
    score: int
    checks: Tuple[RiskCheck, ...]
    signals: AssetSignals
    evaluated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not 0 <= self.score <= 100:
            raise ValueError(f"Risk score out of range: {self.score}")

    def check(self, name: str) -> Optional[RiskCheck]:
        for c in self.checks:
            if c.name == name:
                return c
        return None

    def outcome(self, name: str) -> CheckOutcome:
        c = self.check(name)
        return c.outcome if c is not None else CheckOutcome.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "score": self.score,
            "checks": [
                {"name": c.name, "outcome": c.outcome.value, "reason": c.reason, "weight": c.weight_applied}
                for c in self.checks
            ],
        }


@dataclass(frozen=True)
class AdmissionDecision:
    """Entry gate verdict. `reason` is None when admitted."""
    admitted: bool
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def admit(cls) -> "AdmissionDecision":
        return cls(admitted=True)

    @classmethod
    def reject(cls, reason: str, detail: Optional[str] = None) -> "AdmissionDecision":
        return cls(admitted=False, reason=reason, detail=detail)


# ============ POSITIONS ============

class PositionStatus(str, Enum):
    """
    Position lifecycle.

    ACTIVE -> CLOSING -> CLOSED | FAILED

    CLOSED and FAILED are terminal. Only ACTIVE positions are evaluated
    for exits, and CLOSING is entered exactly once.
    """
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class ExitReason(str, Enum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    MAX_HOLD_TIME = "max_hold_time"
    MANUAL = "manual"


class CloseOutcome(str, Enum):
    """Terminal outcome passed to the ledger when a close resolves."""
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class TxRef:
    """Handle to a submitted transaction, enough to re-check it later."""
    signature: str
    last_valid_block_height: Optional[int] = None
    submitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "last_valid_block_height": self.last_valid_block_height,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["TxRef"]:
        if not data:
            return None
        return cls(
            signature=data["signature"],
            last_valid_block_height=data.get("last_valid_block_height"),
            submitted_at=_dt(data.get("submitted_at")) or utcnow(),
        )


@dataclass
class Position:
    """
    One open or historical position.

    Entry fields and the exit parameters captured from the strategy at
    entry never change after creation. Only the ledger mutates a Position;
    everything else works on copies.
    """
    asset_id: str
    strategy_id: str
    entry_price: Decimal
    entry_size: Decimal
    quantity: Decimal
    position_id: str
    opened_at: datetime = field(default_factory=utcnow)
    entry_tx_ref: Optional[TxRef] = None

    # Exit parameters frozen at entry
    stop_loss_pct: Optional[Decimal] = None
    take_profit_pct: Optional[Decimal] = None
    trailing_stop_pct: Optional[Decimal] = None
    max_hold_minutes: Optional[int] = None

    # Mutable
    status: PositionStatus = PositionStatus.ACTIVE
    current_price: Optional[Decimal] = None
    highest_price: Decimal = Decimal("0")
    last_price_at: Optional[datetime] = None
    closing_reason: Optional[ExitReason] = None
    closing_started_at: Optional[datetime] = None
    close_tx_ref: Optional[TxRef] = None
    expected_exit_proceeds: Optional[Decimal] = None
    close_attempts: int = 0

    # Terminal
    exit_price: Optional[Decimal] = None
    exit_proceeds: Optional[Decimal] = None
    exit_reason: Optional[ExitReason] = None
    exit_tx_ref: Optional[TxRef] = None
    closed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if self.highest_price < self.entry_price:
            self.highest_price = self.entry_price
        if self.current_price is None:
            self.current_price = self.entry_price

    @property
    def is_terminal(self) -> bool:
        return self.status in (PositionStatus.CLOSED, PositionStatus.FAILED)

    @property
    def holds_budget(self) -> bool:
        """Active and Closing positions count against the strategy budget."""
        return self.status in (PositionStatus.ACTIVE, PositionStatus.CLOSING)

    @property
    def realized_pnl(self) -> Optional[Decimal]:
        if self.status != PositionStatus.CLOSED or self.exit_proceeds is None:
            return None
        return self.exit_proceeds - self.entry_size

    @property
    def realized_pnl_pct(self) -> Optional[Decimal]:
        pnl = self.realized_pnl
        if pnl is None or self.entry_size == 0:
            return None
        return pnl / self.entry_size * Decimal("100")

    @property
    def unrealized_pnl_pct(self) -> Decimal:
        if self.entry_price == 0 or self.current_price is None:
            return Decimal("0")
        return (self.current_price - self.entry_price) / self.entry_price * Decimal("100")

    def copy(self) -> "Position":
        return replace(self)

    # ========== SERIALIZATION (for persistence) ==========

    def to_dict(self) -> Dict[str, Any]:
        """Serialize position for persistence."""
        return {
            "position_id": self.position_id,
            "asset_id": self.asset_id,
            "strategy_id": self.strategy_id,
            "entry_price": str(self.entry_price),
            "entry_size": str(self.entry_size),
            "quantity": str(self.quantity),
            "opened_at": self.opened_at.isoformat(),
            "entry_tx_ref": self.entry_tx_ref.to_dict() if self.entry_tx_ref else None,
            "stop_loss_pct": str(self.stop_loss_pct) if self.stop_loss_pct is not None else None,
            "take_profit_pct": str(self.take_profit_pct) if self.take_profit_pct is not None else None,
            "trailing_stop_pct": str(self.trailing_stop_pct) if self.trailing_stop_pct is not None else None,
            "max_hold_minutes": self.max_hold_minutes,
            "status": self.status.value,
            "current_price": str(self.current_price) if self.current_price is not None else None,
            "highest_price": str(self.highest_price),
            "last_price_at": self.last_price_at.isoformat() if self.last_price_at else None,
            "closing_reason": self.closing_reason.value if self.closing_reason else None,
            "closing_started_at": self.closing_started_at.isoformat() if self.closing_started_at else None,
            "close_tx_ref": self.close_tx_ref.to_dict() if self.close_tx_ref else None,
            "expected_exit_proceeds": str(self.expected_exit_proceeds) if self.expected_exit_proceeds is not None else None,
            "close_attempts": self.close_attempts,
            "exit_price": str(self.exit_price) if self.exit_price is not None else None,
            "exit_proceeds": str(self.exit_proceeds) if self.exit_proceeds is not None else None,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "exit_tx_ref": self.exit_tx_ref.to_dict() if self.exit_tx_ref else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        """Deserialize position from persistence."""
        return cls(
            position_id=data["position_id"],
            asset_id=data["asset_id"],
            strategy_id=data["strategy_id"],
            entry_price=Decimal(data["entry_price"]),
            entry_size=Decimal(data["entry_size"]),
            quantity=Decimal(data["quantity"]),
            opened_at=datetime.fromisoformat(data["opened_at"]),
            entry_tx_ref=TxRef.from_dict(data.get("entry_tx_ref")),
            stop_loss_pct=_dec(data.get("stop_loss_pct")),
            take_profit_pct=_dec(data.get("take_profit_pct")),
            trailing_stop_pct=_dec(data.get("trailing_stop_pct")),
            max_hold_minutes=data.get("max_hold_minutes"),
            status=PositionStatus(data["status"]),
            current_price=_dec(data.get("current_price")),
            highest_price=Decimal(data["highest_price"]),
            last_price_at=_dt(data.get("last_price_at")),
            closing_reason=ExitReason(data["closing_reason"]) if data.get("closing_reason") else None,
            closing_started_at=_dt(data.get("closing_started_at")),
            close_tx_ref=TxRef.from_dict(data.get("close_tx_ref")),
            expected_exit_proceeds=_dec(data.get("expected_exit_proceeds")),
            close_attempts=data.get("close_attempts", 0),
            exit_price=_dec(data.get("exit_price")),
            exit_proceeds=_dec(data.get("exit_proceeds")),
            exit_reason=ExitReason(data["exit_reason"]) if data.get("exit_reason") else None,
            exit_tx_ref=TxRef.from_dict(data.get("exit_tx_ref")),
            closed_at=_dt(data.get("closed_at")),
            failure_reason=data.get("failure_reason"),
        )


@dataclass(frozen=True)
class ExitDecision:
    """Exit policy verdict for one position at one price."""
    should_exit: bool
    reason: Optional[ExitReason] = None
    trigger_price: Optional[Decimal] = None

    @classmethod
    def hold(cls) -> "ExitDecision":
        return cls(should_exit=False)


# ============ EXECUTION ============

class ConfirmStatus(str, Enum):
    """Chain confirmation result. TIMED_OUT means the outcome is unknown."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Quote:
    """
    Swap quote from the venue.

    For BUY, `in_amount` is quote currency and `out_amount` is asset
    quantity; for SELL it is the reverse.
    """
    asset_id: str
    side: TradeSide
    in_amount: Decimal
    out_amount: Decimal
    price_impact_pct: Decimal = Decimal("0")
    slippage_bps: int = 0
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def price(self) -> Decimal:
        """Quote currency per unit of asset."""
        if self.side == TradeSide.BUY:
            return self.in_amount / self.out_amount if self.out_amount else Decimal("0")
        return self.out_amount / self.in_amount if self.in_amount else Decimal("0")


@dataclass(frozen=True)
class SwapResult:
    """Outcome of one buy or sell through the execution gateway."""
    status: ConfirmStatus
    side: TradeSide
    asset_id: str
    tx_ref: Optional[TxRef] = None
    quote: Optional[Quote] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.status == ConfirmStatus.CONFIRMED

    @property
    def ambiguous(self) -> bool:
        return self.status == ConfirmStatus.TIMED_OUT

    @property
    def in_amount(self) -> Optional[Decimal]:
        return self.quote.in_amount if self.quote else None

    @property
    def out_amount(self) -> Optional[Decimal]:
        return self.quote.out_amount if self.quote else None


# ============ LEDGER VIEWS ============

@dataclass
class Reservation:
    """Capacity held for an entry swap that has not yet become a position."""
    reservation_id: str
    strategy_id: str
    asset_id: str
    size: Decimal
    created_at: datetime = field(default_factory=utcnow)
    tx_ref: Optional[TxRef] = None
    quote: Optional[Quote] = None
    rechecks: int = 0
    # Strategy as configured when capacity was reserved
    strategy: Optional["StrategyConfig"] = None


@dataclass(frozen=True)
class LedgerSnapshot:
    """Point-in-time copy of positions and in-flight reservations."""
    positions: Tuple[Position, ...] = ()
    reservations: Tuple[Reservation, ...] = ()
    taken_at: datetime = field(default_factory=utcnow)

    def held_assets(self) -> frozenset:
        held = {p.asset_id for p in self.positions if p.holds_budget}
        held.update(r.asset_id for r in self.reservations)
        return frozenset(held)

    def open_count(self, strategy_id: str) -> int:
        return (
            sum(1 for p in self.positions if p.strategy_id == strategy_id and p.holds_budget)
            + sum(1 for r in self.reservations if r.strategy_id == strategy_id)
        )

    def committed(self, strategy_id: str) -> Decimal:
        """Entry size of Active+Closing positions plus reserved size."""
        total = sum(
            (p.entry_size for p in self.positions if p.strategy_id == strategy_id and p.holds_budget),
            Decimal("0"),
        )
        total += sum(
            (r.size for r in self.reservations if r.strategy_id == strategy_id),
            Decimal("0"),
        )
        return total
