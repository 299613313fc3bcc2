from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from rich.console import Console
from rich.table import Table

from autotrader.domain.models import Position, PositionStatus

_ZERO = Decimal("0")


@dataclass
class PerformanceStats:
    """Closed-trade statistics, optionally broken down per strategy."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: Decimal = _ZERO
    win_rate: Decimal = _ZERO
    avg_roi: Decimal = _ZERO
    total_entry_value: Decimal = _ZERO
    failed_closes: int = 0
    by_exit_reason: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        for key in ("total_pnl", "win_rate", "avg_roi", "total_entry_value"):
            data[key] = str(data[key])
        return data


def compute_performance(positions: Iterable[Position], strategy_id: Optional[str] = None) -> PerformanceStats:
    """
    Aggregate realized results over CLOSED positions.

    FAILED positions never realized a price, so they are only counted in
    failed_closes. ROI is averaged per trade, in percent.
    """
    stats = PerformanceStats()
    rois: List[Decimal] = []

    for position in positions:
        if strategy_id is not None and position.strategy_id != strategy_id:
            continue
        if position.status == PositionStatus.FAILED:
            stats.failed_closes += 1
            continue
        if position.status != PositionStatus.CLOSED or position.realized_pnl is None:
            continue

        pnl = position.realized_pnl
        stats.total_trades += 1
        stats.total_pnl += pnl
        stats.total_entry_value += position.entry_size
        if pnl > 0:
            stats.winning_trades += 1
        else:
            stats.losing_trades += 1
        if position.realized_pnl_pct is not None:
            rois.append(position.realized_pnl_pct)
        reason = position.exit_reason.value if position.exit_reason else "unknown"
        stats.by_exit_reason[reason] = stats.by_exit_reason.get(reason, 0) + 1

    if stats.total_trades:
        stats.win_rate = Decimal(stats.winning_trades) / Decimal(stats.total_trades) * Decimal("100")
    if rois:
        stats.avg_roi = sum(rois, _ZERO) / Decimal(len(rois))
    return stats


def render_performance(stats: PerformanceStats, console: Optional[Console] = None) -> None:
    console = console or Console()
    if stats.total_trades == 0 and stats.failed_closes == 0:
        console.print("[yellow]No closed trades yet.[/yellow]")
        return

    table = Table(title="Performance")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Trades", f"{stats.total_trades} ({stats.winning_trades}W-{stats.losing_trades}L)")
    table.add_row("Win rate", f"{stats.win_rate:.1f}%")
    pnl_style = "green" if stats.total_pnl >= 0 else "red"
    table.add_row("Total PnL", f"[{pnl_style}]{stats.total_pnl:.6f}[/{pnl_style}]")
    table.add_row("Average ROI", f"{stats.avg_roi:.2f}%")
    table.add_row("Total entry value", f"{stats.total_entry_value:.6f}")
    table.add_row("Failed closes", str(stats.failed_closes))
    for reason, count in sorted(stats.by_exit_reason.items()):
        table.add_row(f"  exit: {reason}", str(count))
    console.print(table)


def render_positions(positions: List[Position], console: Optional[Console] = None) -> None:
    console = console or Console()
    if not positions:
        console.print("[yellow]No positions.[/yellow]")
        return

    table = Table(title=f"Positions ({len(positions)})")
    table.add_column("ID", style="dim")
    table.add_column("Asset")
    table.add_column("Status")
    table.add_column("Entry", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("PnL %", justify="right")
    table.add_column("Opened")

    for p in positions:
        if p.status == PositionStatus.CLOSED and p.realized_pnl_pct is not None:
            pnl_pct = p.realized_pnl_pct
        else:
            pnl_pct = p.unrealized_pnl_pct
        style = "green" if pnl_pct >= 0 else "red"
        table.add_row(
            p.position_id[:8],
            p.asset_id[:12],
            p.status.value,
            f"{p.entry_price:.8g}",
            f"{(p.exit_price or p.current_price):.8g}",
            f"[{style}]{pnl_pct:.2f}[/{style}]",
            p.opened_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
