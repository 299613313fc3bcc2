"""
Entry gate: ordered, short-circuiting admit/reject decision.

Predicates run in a fixed order and the first failing one names the
rejection reason, so the same inputs always produce the same reason:

    1. strategy_disabled
    2. risk_score
    3. required_check:<name>     (UNKNOWN is a rejection)
    4. liquidity, holders, asset_age, concentration, transfer_tax
       (a missing signal follows RiskConfig.unknown_policy)
    5. position_size
    6. duplicate_asset
    7. max_concurrent_positions
    8. budget

The gate reads a LedgerSnapshot and never mutates anything; the ledger
re-checks capacity atomically when the reservation is taken.
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from autotrader.config.config import RiskConfig
from autotrader.domain.models import (
    AdmissionDecision,
    AssetSignals,
    CheckOutcome,
    LedgerSnapshot,
    RiskAssessment,
    utcnow,
)
from autotrader.strategy.strategy_config import StrategyConfig
from autotrader.monitoring.logger import get_logger

logger = get_logger(__name__)


def capacity_rejection(
    strategy: StrategyConfig,
    asset_id: str,
    size: Decimal,
    snapshot: LedgerSnapshot,
) -> Optional[AdmissionDecision]:
    """
    Size, duplicate, concurrency and budget predicates (steps 5-8).

    Shared by the gate and the ledger so both apply identical rules.
    Returns None when there is room.
    """
    if size <= 0 or size > strategy.max_position_size:
        return AdmissionDecision.reject(
            "position_size", f"size {size} outside (0, {strategy.max_position_size}]"
        )
    if asset_id in snapshot.held_assets():
        return AdmissionDecision.reject("duplicate_asset", f"{asset_id} already held or in flight")
    open_count = snapshot.open_count(strategy.id)
    if open_count >= strategy.max_concurrent_positions:
        return AdmissionDecision.reject(
            "max_concurrent_positions",
            f"{open_count} open of {strategy.max_concurrent_positions}",
        )
    remaining = strategy.total_budget - snapshot.committed(strategy.id)
    if remaining < size:
        return AdmissionDecision.reject("budget", f"remaining {remaining} < {size}")
    return None


class EntryGate:
    """Decides whether one strategy may open one candidate."""

    def __init__(self, risk_config: Optional[RiskConfig] = None):
        self.risk_config = risk_config or RiskConfig()

    def admit(
        self,
        strategy: StrategyConfig,
        assessment: RiskAssessment,
        snapshot: LedgerSnapshot,
        requested_size: Decimal,
        now: Optional[datetime] = None,
    ) -> AdmissionDecision:
        now = now or utcnow()
        decision = self._evaluate(strategy, assessment, snapshot, requested_size, now)
        logger.debug(
            "Entry gate decision",
            strategy=strategy.name,
            asset_id=assessment.asset_id,
            admitted=decision.admitted,
            reason=decision.reason,
            risk_score=assessment.score,
        )
        return decision

    def _evaluate(
        self,
        strategy: StrategyConfig,
        assessment: RiskAssessment,
        snapshot: LedgerSnapshot,
        size: Decimal,
        now: datetime,
    ) -> AdmissionDecision:
        if not strategy.enabled:
            return AdmissionDecision.reject("strategy_disabled")

        if assessment.score > strategy.max_risk_score:
            return AdmissionDecision.reject(
                "risk_score", f"score {assessment.score} > {strategy.max_risk_score}"
            )

        for check_name in strategy.required_checks:
            outcome = assessment.outcome(check_name)
            if outcome != CheckOutcome.PASS:
                return AdmissionDecision.reject(f"required_check:{check_name}", outcome.value)

        for name, predicate in self._signal_filters(strategy, now):
            verdict = predicate(assessment.signals)
            if verdict is None:
                if self.risk_config.policy_for(name) == "reject":
                    return AdmissionDecision.reject(name, "signal unavailable")
            elif not verdict:
                return AdmissionDecision.reject(name)

        rejection = capacity_rejection(strategy, assessment.asset_id, size, snapshot)
        if rejection is not None:
            return rejection

        return AdmissionDecision.admit()

    @staticmethod
    def _signal_filters(strategy: StrategyConfig, now: datetime) -> List:
        """(name, predicate) pairs; a predicate returns None for a missing signal."""
        filters: List[tuple[str, Callable[[AssetSignals], Optional[bool]]]] = [
            ("liquidity", lambda s: None if s.liquidity is None else s.liquidity >= strategy.min_liquidity),
            (
                "holders",
                lambda s: None if s.holder_stats is None else s.holder_stats.holder_count >= strategy.min_holders,
            ),
        ]
        if strategy.max_asset_age_minutes is not None:
            limit = Decimal(strategy.max_asset_age_minutes)
            filters.append(
                ("asset_age", lambda s: None if s.created_at is None else s.age_minutes(now) <= limit)
            )
        if strategy.max_concentration_pct is not None:
            filters.append((
                "concentration",
                lambda s: None if s.holder_stats is None
                else s.holder_stats.top_holder_concentration_pct <= strategy.max_concentration_pct,
            ))
        if strategy.max_transfer_tax_pct is not None:
            filters.append((
                "transfer_tax",
                lambda s: None if s.transfer_tax_pct is None else s.transfer_tax_pct <= strategy.max_transfer_tax_pct,
            ))
        return filters
