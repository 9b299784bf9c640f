"""
Decision Producer

Turns portfolio state plus external intel into a list of tier-classified
candidate decisions. Producers are pure: they read the state handed to
them and never touch venues, the ledger or the clock beyond `now`.

Tier classification (classify_tier):
- critical urgency with bypass enabled -> AUTO
- abs(impact) <= AUTO_TIER_USD          -> AUTO (silent)
- abs(impact) <= NOTIFY_TIER_USD        -> AUTO (notify)
- otherwise                             -> APPROVAL
- a "danger" market condition raises the result one level

@module producer
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import (
    AUTO_TIER_USD,
    COOLDOWN_HOURS,
    CRITICAL_BYPASS_APPROVAL,
    MAX_DECISIONS_PER_CYCLE,
    NOTIFY_TIER_USD,
    STOP_LOSS_PCT,
    STRATEGY_CAPS,
)
from .errors import ProducerError
from .models import Decision, DecisionType, Position, Strategy, Tier, Urgency


logger = logging.getLogger(__name__)

URGENCY_RANK = {Urgency.CRITICAL: 0, Urgency.HIGH: 1, Urgency.MEDIUM: 2, Urgency.LOW: 3}

# Decision used to unwind a losing position, per strategy
EXIT_DECISION = {
    Strategy.PERP_HEDGE: DecisionType.CLOSE_HEDGE,
    Strategy.AMM_LIQUIDITY: DecisionType.LP_CLOSE,
    Strategy.LIQUID_STAKING: DecisionType.UNSTAKE,
    Strategy.LENDING_LOOP: DecisionType.REPAY,
    Strategy.PREDICTION_MARKET: DecisionType.MARKET_EXIT,
    Strategy.SWAP: DecisionType.MARKET_EXIT,
}

# Decisions that add exposure and are subject to strategy caps
OPENING_DECISIONS = {
    DecisionType.OPEN_HEDGE: Strategy.PERP_HEDGE,
    DecisionType.STAKE: Strategy.LIQUID_STAKING,
    DecisionType.BORROW: Strategy.LENDING_LOOP,
    DecisionType.LP_OPEN: Strategy.AMM_LIQUIDITY,
    DecisionType.MARKET_BUY: Strategy.PREDICTION_MARKET,
}

MIN_IDLE_DEPLOY_USD = 100.0
HEDGE_RATIO = 0.5


@dataclass
class PortfolioState:
    """Ledger-derived snapshot handed to the producer."""
    positions: List[Position]
    metrics: Dict[str, Any]
    venue_health: Dict[str, bool] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def exposure(self, strategy: Strategy) -> float:
        return sum(p.current_value_usd for p in self.positions if p.strategy == strategy)

    def has_open(self, strategy: Strategy) -> bool:
        return any(p.strategy == strategy for p in self.positions)


def classify_tier(
    impact_usd: float,
    urgency: Urgency,
    market_condition: str = "normal",
    auto_tier_usd: float = AUTO_TIER_USD,
    notify_tier_usd: float = NOTIFY_TIER_USD,
    critical_bypass: bool = CRITICAL_BYPASS_APPROVAL,
) -> Tuple[Tier, bool]:
    """
    Classify a decision.

    Returns:
        (tier, notify) where notify means "execute but tell the admin"
    """
    if urgency == Urgency.CRITICAL and critical_bypass:
        return Tier.AUTO, True

    magnitude = abs(impact_usd)
    if magnitude <= auto_tier_usd:
        level = 0
    elif magnitude <= notify_tier_usd:
        level = 1
    else:
        level = 2

    if market_condition == "danger":
        level = min(level + 1, 2)

    if level == 2:
        return Tier.APPROVAL, True
    return Tier.AUTO, level == 1


def check_exposure(
    strategy: Strategy,
    amount_usd: float,
    current_exposure_usd: float,
    caps: Optional[Dict[str, float]] = None,
) -> Tuple[bool, str]:
    """Would adding `amount_usd` keep `strategy` under its cap?"""
    caps = STRATEGY_CAPS if caps is None else caps
    cap = caps.get(strategy.value)
    if cap is None:
        return True, ""
    if current_exposure_usd + amount_usd > cap:
        return False, (
            f"{strategy.value} exposure ${current_exposure_usd:.2f} + ${amount_usd:.2f} "
            f"exceeds cap ${cap:.2f}"
        )
    return True, ""


class CooldownTracker:
    """
    Minimum spacing between executions of the same decision type.

    Timestamps are kept as ISO strings so the map drops straight into the
    persisted agent state.
    """

    def __init__(self, hours: Optional[Dict[str, float]] = None):
        self.hours = dict(COOLDOWN_HOURS if hours is None else hours)
        self._last: Dict[str, datetime] = {}

    @property
    def longest(self) -> timedelta:
        return timedelta(hours=max(self.hours.values(), default=0.0))

    def is_ready(self, decision_type: DecisionType, now: Optional[datetime] = None) -> bool:
        last = self._last.get(decision_type.value)
        if last is None:
            return True
        hours = self.hours.get(decision_type.value, 0.0)
        now = now or datetime.now(timezone.utc)
        return now - last >= timedelta(hours=hours)

    def mark(self, decision_type: DecisionType, now: Optional[datetime] = None) -> None:
        self._last[decision_type.value] = now or datetime.now(timezone.utc)

    def export(self) -> Dict[str, str]:
        return {k: v.isoformat() for k, v in self._last.items()}

    def restore(self, saved: Dict[str, str], now: Optional[datetime] = None) -> int:
        """Load persisted timestamps, skipping any older than the longest cooldown."""
        now = now or datetime.now(timezone.utc)
        restored = 0
        for key, value in (saved or {}).items():
            try:
                ts = datetime.fromisoformat(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring bad cooldown timestamp for {key}: {value!r}")
                continue
            if now - ts > self.longest:
                continue
            self._last[key] = ts
            restored += 1
        return restored


class DecisionProducer(ABC):
    """Contract for anything that proposes decisions."""

    @abstractmethod
    def produce(
        self,
        state: PortfolioState,
        intel: Dict[str, Any],
        cooldowns: CooldownTracker,
    ) -> List[Decision]:
        """Return candidate decisions, already tier-classified."""


class RuleBasedProducer(DecisionProducer):
    """
    Default producer.

    Rules, in order:
    1. stop-loss exit for any position down more than STOP_LOSS_PCT of cost basis
    2. open a hedge when intel reports danger and staking exposure is unhedged
    3. stake idle capital reported by intel, within the staking cap
    """

    def __init__(
        self,
        max_decisions: int = MAX_DECISIONS_PER_CYCLE,
        stop_loss_pct: float = STOP_LOSS_PCT,
        caps: Optional[Dict[str, float]] = None,
    ):
        self.max_decisions = max_decisions
        self.stop_loss_pct = stop_loss_pct
        self.caps = STRATEGY_CAPS if caps is None else caps

    def produce(
        self,
        state: PortfolioState,
        intel: Dict[str, Any],
        cooldowns: CooldownTracker,
    ) -> List[Decision]:
        condition = intel.get("market_condition", "normal")
        candidates: List[Decision] = []

        for position in state.positions:
            decision = self._stop_loss(position, condition)
            if decision:
                candidates.append(decision)

        try:
            hedge = self._hedge(state, intel, condition)
            stake = self._stake_idle(state, intel, condition)
        except (TypeError, ValueError, AttributeError) as e:
            raise ProducerError(f"unusable intel: {e}") from e
        candidates.extend(d for d in (hedge, stake) if d)

        ready = [
            d for d in candidates
            if d.type != DecisionType.SKIP and cooldowns.is_ready(d.type, state.generated_at)
        ]
        ready.sort(key=lambda d: (URGENCY_RANK[d.urgency], -abs(d.estimated_impact_usd)))
        return ready[: self.max_decisions]

    def _make(
        self,
        decision_type: DecisionType,
        urgency: Urgency,
        reasoning: str,
        impact: float,
        params: Dict[str, Any],
        condition: str,
        intel_used: List[str],
    ) -> Decision:
        tier, notify = classify_tier(impact, urgency, condition)
        params = dict(params)
        params["notify"] = notify
        return Decision(
            type=decision_type,
            tier=tier,
            urgency=urgency,
            reasoning=reasoning,
            estimated_impact_usd=round(impact, 2),
            params=params,
            intel_used=intel_used,
        )

    def _stop_loss(self, position: Position, condition: str) -> Optional[Decision]:
        if position.cost_basis_usd <= 0:
            return None
        loss = position.cost_basis_usd - position.current_value_usd
        if loss < position.cost_basis_usd * self.stop_loss_pct:
            return None
        return self._make(
            EXIT_DECISION[position.strategy],
            Urgency.HIGH,
            f"Stop-loss: {position.description or position.asset} down "
            f"${loss:.2f} on ${position.cost_basis_usd:.2f} cost basis",
            position.current_value_usd,
            {
                "position_id": position.id,
                "strategy": position.strategy.value,
                "asset": position.asset,
                "fraction": 1.0,
            },
            condition,
            ["ledger"],
        )

    def _hedge(self, state: PortfolioState, intel: Dict[str, Any], condition: str) -> Optional[Decision]:
        if condition != "danger" or state.has_open(Strategy.PERP_HEDGE):
            return None
        exposure = state.exposure(Strategy.LIQUID_STAKING)
        if exposure <= 0:
            return None
        size_usd = exposure * HEDGE_RATIO
        asset = intel.get("hedge_asset", "SOL")
        price = float(intel.get("prices", {}).get(asset, 0.0))
        if price <= 0:
            return None
        return self._make(
            DecisionType.OPEN_HEDGE,
            Urgency.HIGH,
            f"Market danger: hedge {HEDGE_RATIO:.0%} of ${exposure:.2f} staking exposure with a {asset} short",
            size_usd,
            {
                "asset": asset,
                "amount_usd": round(size_usd, 2),
                "amount_units": size_usd / price,
                "price": price,
            },
            condition,
            ["market_condition", "prices"],
        )

    def _stake_idle(self, state: PortfolioState, intel: Dict[str, Any], condition: str) -> Optional[Decision]:
        if condition == "danger":
            return None
        idle = float(intel.get("idle_capital_usd", 0.0))
        if idle < MIN_IDLE_DEPLOY_USD:
            return None
        asset = intel.get("staking_asset", "SOL")
        price = float(intel.get("prices", {}).get(asset, 0.0))
        if price <= 0:
            return None
        cap = self.caps.get(Strategy.LIQUID_STAKING.value, 0.0)
        headroom = cap - state.exposure(Strategy.LIQUID_STAKING)
        amount_usd = min(idle * 0.5, headroom)
        if amount_usd < MIN_IDLE_DEPLOY_USD:
            return None
        return self._make(
            DecisionType.STAKE,
            Urgency.LOW,
            f"Stake ${amount_usd:.2f} of ${idle:.2f} idle capital into {asset}",
            amount_usd,
            {
                "asset": asset,
                "amount_units": amount_usd / price,
                "amount_usd": round(amount_usd, 2),
                "price": price,
            },
            condition,
            ["idle_capital_usd", "prices"],
        )
