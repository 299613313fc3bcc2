"""
CLI entrypoint for the autotrader.

Provides commands to run the trader, inspect positions and performance,
and manage strategies.
"""
import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Optional

import typer

from autotrader.config.config import Config, load_config
from autotrader.config.dotenv_loader import load_dotenv_files
from autotrader.domain.models import PositionStatus
from autotrader.exceptions import ConfigurationError, StrategyValidationError
from autotrader.execution.position_persistence import PositionPersistence
from autotrader.reporting.performance import compute_performance, render_performance, render_positions
from autotrader.strategy.registry import StrategyRegistry
from autotrader.strategy.strategy_config import StrategyConfig
from autotrader.monitoring.logger import get_logger, setup_logging

app = typer.Typer(
    name="autotrader",
    help="Risk-gated autonomous swap trader",
    add_completion=False,
)

logger = get_logger(__name__)

ConfigOption = typer.Option(None, "--config", help="Path to config file (defaults to the packaged config.yaml)")


def _load(config_path: Optional[Path]) -> Config:
    load_dotenv_files()
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return config


def _registry(config: Config) -> StrategyRegistry:
    registry = StrategyRegistry(config.persistence.strategies_path)
    try:
        registry.load()
    except ConfigurationError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return registry


def _resolve_strategy(registry: StrategyRegistry, key: str) -> StrategyConfig:
    strategy = registry.get(key) or registry.get_by_name(key)
    if strategy is None:
        typer.secho(f"No strategy with id or name '{key}'", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return strategy


@app.command()
def run(config_path: Optional[Path] = ConfigOption):
    """
    Run the scan and monitor loops until interrupted.

    Paper mode unless system.dry_run is false; live mode needs a Signer
    wired in code and is refused here.

    Example:
        autotrader run --config my_config.yaml
    """
    config = _load(config_path)

    if not config.system.dry_run:
        typer.secho(
            "Live trading needs a Signer injected into TradingService; "
            "the CLI only runs paper mode (set DRY_RUN=true).",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)

    from autotrader.live.trading_service import TradingService

    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        config.monitoring.log_file,
        mode="paper",
        environment=config.environment,
    )

    logger.info("Starting autotrader")

    async def run_service():
        service = TradingService(config)
        await service.run_forever()

    try:
        asyncio.run(run_service())
    except KeyboardInterrupt:
        logger.info("Autotrader stopped by user")
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Autotrader failed", error=str(e), exc_info=True)
        raise typer.Exit(1)


@app.command()
def positions(
    config_path: Optional[Path] = ConfigOption,
    status: Optional[str] = typer.Option(None, "--status", help="active, closing, closed or failed"),
):
    """List persisted positions."""
    config = _load(config_path)
    status_filter = None
    if status:
        try:
            status_filter = PositionStatus(status.lower())
        except ValueError:
            typer.secho(f"Unknown status '{status}'", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)

    store = PositionPersistence(config.persistence.positions_db_path)
    try:
        loaded = store.load_positions()
    finally:
        store.close()
    if status_filter is not None:
        loaded = [p for p in loaded if p.status == status_filter]
    render_positions(loaded)


@app.command()
def strategies(config_path: Optional[Path] = ConfigOption):
    """List configured strategies."""
    config = _load(config_path)
    registry = _registry(config)
    items = registry.list_strategies()
    if not items:
        typer.echo("No strategies configured (a default one is created on first run).")
        return
    for s in items:
        state = typer.style("enabled", fg=typer.colors.GREEN) if s.enabled else typer.style("disabled", fg=typer.colors.YELLOW)
        typer.echo(
            f"{s.id}  {s.name:<20} v{s.version:<3} {state}  "
            f"size={s.max_position_size} budget={s.total_budget} max_pos={s.max_concurrent_positions} "
            f"risk<={s.max_risk_score} sl={s.stop_loss_pct} tp={s.take_profit_pct} trail={s.trailing_stop_pct}"
        )


@app.command("add-strategy")
def add_strategy(
    name: str = typer.Argument(..., help="Unique strategy name"),
    preset: str = typer.Option("default", "--preset", help="default, conservative or aggressive"),
    max_position_size: Optional[float] = typer.Option(None, "--max-position-size", help="Quote units per entry"),
    total_budget: Optional[float] = typer.Option(None, "--total-budget", help="Quote units across open positions"),
    max_risk_score: Optional[int] = typer.Option(None, "--max-risk-score", help="Highest admissible risk score"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the strategy disabled"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Create a strategy from a preset, with optional overrides.

    Example:
        autotrader add-strategy scalper --preset aggressive --total-budget 1.0
    """
    config = _load(config_path)
    registry = _registry(config)

    overrides = {"enabled": not disabled}
    if max_position_size is not None:
        overrides["max_position_size"] = Decimal(str(max_position_size))
    if total_budget is not None:
        overrides["total_budget"] = Decimal(str(total_budget))
    if max_risk_score is not None:
        overrides["max_risk_score"] = max_risk_score

    try:
        strategy = StrategyConfig.preset(name, preset).evolve(**overrides)
        strategy = registry.upsert(strategy)
    except (ValueError, StrategyValidationError) as e:
        typer.secho(f"Invalid strategy: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.secho(f"Strategy '{strategy.name}' saved ({strategy.id})", fg=typer.colors.GREEN)


@app.command()
def toggle(
    strategy: str = typer.Argument(..., help="Strategy id or name"),
    enable: Optional[bool] = typer.Option(None, "--enable/--disable", help="Set explicitly instead of flipping"),
    config_path: Optional[Path] = ConfigOption,
):
    """Enable or disable a strategy (flips it when neither flag is given)."""
    config = _load(config_path)
    registry = _registry(config)
    target = _resolve_strategy(registry, strategy)
    updated = registry.toggle(target.id, enable)
    typer.echo(f"Strategy '{updated.name}' is now {'enabled' if updated.enabled else 'disabled'}")


@app.command()
def performance(
    config_path: Optional[Path] = ConfigOption,
    strategy: Optional[str] = typer.Option(None, "--strategy", help="Restrict to one strategy (id or name)"),
):
    """Closed-trade statistics from persisted positions."""
    config = _load(config_path)
    strategy_id = None
    if strategy:
        strategy_id = _resolve_strategy(_registry(config), strategy).id

    store = PositionPersistence(config.persistence.positions_db_path)
    try:
        loaded = store.load_positions()
    finally:
        store.close()
    render_performance(compute_performance(loaded, strategy_id))


@app.command("validate-config")
def validate_config(config_path: Optional[Path] = ConfigOption):
    """Load and validate the configuration, then print a summary."""
    config = _load(config_path)
    typer.secho("Configuration OK", fg=typer.colors.GREEN)
    typer.echo(f"  environment:   {config.environment}")
    typer.echo(f"  mode:          {'paper' if config.system.dry_run else 'live'}")
    typer.echo(f"  scan:          {'on' if config.scan.enabled else 'off'} every {config.scan.interval_seconds}s")
    typer.echo(f"  monitor:       every {config.monitor.interval_seconds}s")
    discovery = config.data.discovery_url or f"watchlist ({len(config.data.watchlist)} assets)"
    typer.echo(f"  discovery:     {discovery}")
    typer.echo(f"  positions db:  {config.persistence.positions_db_path}")
    typer.echo(f"  strategies:    {config.persistence.strategies_path}")


if __name__ == "__main__":
    app()
