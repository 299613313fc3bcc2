"""
Risk evaluator.

Turns raw AssetSignals into a RiskAssessment: an ordered list of
three-valued checks and a 0-100 score (higher is riskier).

A missing signal yields UNKNOWN for its check. UNKNOWN never counts as a
pass and is not silently turned into a worst-case FAIL either: it adds
its own configurable weight, and the entry gate decides what a required
UNKNOWN check means for admission.

The evaluator is pure: same signals and config, same assessment.
"""
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from autotrader.config.config import RiskConfig
from autotrader.domain.models import AssetSignals, CheckOutcome, RiskAssessment, RiskCheck

# (outcome, reason) for one check; outcome None means the signal was missing
_CheckResult = Tuple[Optional[bool], str]


class RiskEvaluator:
    """Scores candidates against the configured thresholds and weights."""

    def __init__(self, config: Optional[RiskConfig] = None):
        self.config = config or RiskConfig()
        self._checks: List[Tuple[str, Callable[[AssetSignals], _CheckResult]]] = [
            ("liquidity", self._check_liquidity),
            ("holder_count", self._check_holder_count),
            ("concentration_bounded", self._check_concentration),
            ("authority_revoked", self._check_authority),
            ("liquidity_locked", self._check_liquidity_locked),
            ("tax_bounded", self._check_tax),
            ("sellable", self._check_sellable),
        ]

    @property
    def check_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self._checks)

    def evaluate(self, signals: AssetSignals) -> RiskAssessment:
        checks: List[RiskCheck] = []
        score = 0

        for name, fn in self._checks:
            passed, reason = fn(signals)
            if passed is None:
                weight = self.config.unknown_weights.get(name, 0)
                outcome = CheckOutcome.UNKNOWN
            elif passed:
                weight = 0
                outcome = CheckOutcome.PASS
            else:
                weight = self.config.fail_weights.get(name, 0)
                outcome = CheckOutcome.FAIL
            score += weight
            checks.append(RiskCheck(name=name, outcome=outcome, reason=reason, weight_applied=weight))

        return RiskAssessment(
            asset_id=signals.asset_id,
            score=max(0, min(100, score)),
            checks=tuple(checks),
            signals=signals,
        )

    # ========== INDIVIDUAL CHECKS ==========

    def _check_liquidity(self, s: AssetSignals) -> _CheckResult:
        if s.liquidity is None:
            return None, "liquidity unavailable"
        minimum = Decimal(str(self.config.min_liquidity))
        if s.liquidity < minimum:
            return False, f"liquidity {s.liquidity} below {minimum}"
        return True, f"liquidity {s.liquidity}"

    def _check_holder_count(self, s: AssetSignals) -> _CheckResult:
        if s.holder_stats is None:
            return None, "holder stats unavailable"
        if s.holder_stats.holder_count < self.config.min_holders:
            return False, f"{s.holder_stats.holder_count} holders below {self.config.min_holders}"
        return True, f"{s.holder_stats.holder_count} holders"

    def _check_concentration(self, s: AssetSignals) -> _CheckResult:
        if s.holder_stats is None:
            return None, "holder stats unavailable"
        pct = s.holder_stats.top_holder_concentration_pct
        limit = Decimal(str(self.config.max_concentration_pct))
        if pct > limit:
            return False, f"top holders own {pct}% (max {limit}%)"
        return True, f"top holders own {pct}%"

    def _check_authority(self, s: AssetSignals) -> _CheckResult:
        if s.authority is None:
            return None, "authority status unavailable"
        present = []
        if s.authority.mint_authority_present:
            present.append("mint")
        if s.authority.freeze_authority_present:
            present.append("freeze")
        if present:
            return False, f"{'/'.join(present)} authority present"
        return True, "authorities revoked"

    def _check_liquidity_locked(self, s: AssetSignals) -> _CheckResult:
        if s.liquidity_locked is None:
            return None, "lock status unavailable"
        return s.liquidity_locked, "liquidity locked" if s.liquidity_locked else "liquidity not locked"

    def _check_tax(self, s: AssetSignals) -> _CheckResult:
        if s.transfer_tax_pct is None:
            return None, "transfer tax unavailable"
        limit = Decimal(str(self.config.max_transfer_tax_pct))
        if s.transfer_tax_pct > limit:
            return False, f"transfer tax {s.transfer_tax_pct}% above {limit}%"
        return True, f"transfer tax {s.transfer_tax_pct}%"

    def _check_sellable(self, s: AssetSignals) -> _CheckResult:
        if s.sellable is None:
            return None, "sell probe unavailable"
        return s.sellable, "sell probe passed" if s.sellable else "sell probe failed"
