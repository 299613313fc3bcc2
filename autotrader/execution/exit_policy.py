"""
Exit policy.

Pure decision function over (position, current price, now). Rules are
checked in priority order and the first match wins:

    1. stop_loss      price <= entry * (1 - sl/100)
    2. take_profit    price >= entry * (1 + tp/100)
    3. trailing_stop  price <= watermark * (1 - ts/100)
    4. max_hold_time  now - opened_at >= max_hold

The watermark is max(highest_price, price), so a price that sets a new
high is never itself a trailing-stop trigger. Thresholds come from the
parameters frozen on the position at entry.
"""
from datetime import datetime, timedelta
from decimal import Decimal

from autotrader.domain.models import ExitDecision, ExitReason, Position, PositionStatus

_HUNDRED = Decimal("100")


class ExitPolicy:
    """Evaluates exit triggers for ACTIVE positions."""

    def evaluate(self, position: Position, current_price: Decimal, now: datetime) -> ExitDecision:
        if position.status != PositionStatus.ACTIVE:
            return ExitDecision.hold()

        entry = position.entry_price

        if position.stop_loss_pct is not None:
            stop = entry * (1 - position.stop_loss_pct / _HUNDRED)
            if current_price <= stop:
                return ExitDecision(True, ExitReason.STOP_LOSS, stop)

        if position.take_profit_pct is not None:
            target = entry * (1 + position.take_profit_pct / _HUNDRED)
            if current_price >= target:
                return ExitDecision(True, ExitReason.TAKE_PROFIT, target)

        if position.trailing_stop_pct is not None:
            watermark = max(position.highest_price, current_price)
            trail = watermark * (1 - position.trailing_stop_pct / _HUNDRED)
            if current_price <= trail:
                return ExitDecision(True, ExitReason.TRAILING_STOP, trail)

        if position.max_hold_minutes is not None:
            if now - position.opened_at >= timedelta(minutes=position.max_hold_minutes):
                return ExitDecision(True, ExitReason.MAX_HOLD_TIME, current_price)

        return ExitDecision.hold()
