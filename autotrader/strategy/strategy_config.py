"""
Strategy configuration.

A strategy bundles entry filters, a budget and exit parameters. Instances
are immutable; edits go through `StrategyRegistry.upsert`, which stores a
new version. Positions copy the exit parameters at entry, so editing a
strategy never changes how an already-open position exits.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autotrader.domain.models import utcnow

# Required-check flag -> risk evaluator check name
REQUIRED_CHECK_FLAGS: Dict[str, str] = {
    "require_authority_revoked": "authority_revoked",
    "require_liquidity_locked": "liquidity_locked",
    "require_sellable": "sellable",
    "require_tax_bounded": "tax_bounded",
    "require_concentration_bounded": "concentration_bounded",
}

PresetKind = Literal["default", "conservative", "aggressive"]


class StrategyConfig(BaseModel):
    """Named, versioned strategy."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(min_length=1, max_length=64)
    enabled: bool = True
    version: int = Field(default=1, ge=1)

    # Position sizing & budget (quote units)
    max_concurrent_positions: int = Field(default=3, ge=1)
    max_position_size: Decimal = Field(default=Decimal("0.05"), gt=0)
    total_budget: Decimal = Field(default=Decimal("0.2"), gt=0)

    # Exit conditions
    stop_loss_pct: Optional[Decimal] = Field(default=Decimal("15"), gt=0, lt=100)
    take_profit_pct: Optional[Decimal] = Field(default=Decimal("50"), gt=0)
    trailing_stop_pct: Optional[Decimal] = Field(default=Decimal("5"), gt=0, lt=100)
    max_hold_minutes: int = Field(default=240, gt=0)

    # Entry filters
    min_liquidity: Decimal = Field(default=Decimal("10"), ge=0)
    max_risk_score: int = Field(default=60, ge=0, le=100)
    min_holders: int = Field(default=50, ge=0)
    max_asset_age_minutes: Optional[int] = Field(default=120, gt=0)
    max_transfer_tax_pct: Optional[Decimal] = Field(default=Decimal("5"), ge=0, le=100)
    max_concentration_pct: Optional[Decimal] = Field(default=Decimal("60"), ge=0, le=100)
    require_authority_revoked: bool = True
    require_liquidity_locked: bool = True
    require_sellable: bool = True
    require_tax_bounded: bool = False
    require_concentration_bounded: bool = False

    # Transaction overrides
    slippage_bps: Optional[int] = Field(default=None, ge=1, le=5000)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_budget(self) -> "StrategyConfig":
        if self.max_position_size > self.total_budget:
            raise ValueError("max_position_size cannot be greater than total_budget")
        return self

    @property
    def required_checks(self) -> tuple:
        """Risk check names that must PASS for admission, in evaluator order."""
        return tuple(check for flag, check in REQUIRED_CHECK_FLAGS.items() if getattr(self, flag))

    def evolve(self, **changes: Any) -> "StrategyConfig":
        """Return a validated copy with `changes` applied."""
        data = self.model_dump()
        data.update(changes)
        return StrategyConfig(**data)

    def touch(self) -> "StrategyConfig":
        return self.evolve(version=self.version + 1, updated_at=utcnow())

    @classmethod
    def preset(cls, name: str, kind: PresetKind = "default") -> "StrategyConfig":
        """Build one of the stock strategies."""
        if kind == "default":
            return cls(name=name)
        if kind == "conservative":
            return cls(
                name=name,
                max_position_size=Decimal("0.01"),
                total_budget=Decimal("0.1"),
                max_risk_score=30,
                min_liquidity=Decimal("20"),
                min_holders=100,
                stop_loss_pct=Decimal("10"),
                take_profit_pct=Decimal("30"),
                trailing_stop_pct=Decimal("3"),
            )
        if kind == "aggressive":
            return cls(
                name=name,
                max_position_size=Decimal("0.1"),
                total_budget=Decimal("0.5"),
                max_risk_score=75,
                min_liquidity=Decimal("5"),
                min_holders=30,
                stop_loss_pct=Decimal("20"),
                take_profit_pct=Decimal("100"),
                trailing_stop_pct=Decimal("10"),
            )
        raise ValueError(f"Unknown strategy preset: {kind}")
