"""
================================================================================
RISK MANAGER
================================================================================

Turns a signal plus a fresh account/positions snapshot into a bounded share
quantity and an execute / reduce / reject recommendation:

1. Base size      portfolio x max trade risk x clamp(confidence) / price
2. Multipliers    unusual flow, large trades, sentiment conflict, weak
                  strength - combined multiplier capped at 1.5x
3. Limits         position count -> buying power -> portfolio risk ceiling
                  (each step can only shrink the size)
4. Risk score     weighted heuristic in [0, 1]
5. Recommendation reject / reduce / execute

Policy violations never raise - they come back as reject/reduce with a
reason. Each assessment is a pure function of its inputs.

================================================================================
"""

import logging
import math
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import List, Optional, Tuple

from qppf_trader.config import (
    Account, BrokerPosition, FlowSentiment, Recommendation, RiskAssessment,
    RiskReport, RiskStatus, Signal,
    MAX_PORTFOLIO_RISK, MAX_TRADE_RISK, MIN_CONFIDENCE, MAX_RISK_SCORE,
    MAX_DRAWDOWN, MAX_POSITION_COUNT,
    MIN_CONFIDENCE_SCALE, MAX_CONFIDENCE_SCALE,
    UNUSUAL_FLOW_SIZE_BOOST, SENTIMENT_OVERRIDE, LARGE_TRADES_SIZE_MIN,
    LARGE_TRADES_SIZE_BOOST, CONFLICT_SIZE_PENALTY, WEAK_SIGNAL_STRENGTH,
    WEAK_SIGNAL_PENALTY, MAX_RISK_MULTIPLIER, REDUCE_FRACTION,
    EMERGENCY_RISK_MULTIPLE,
    CONFIDENCE_RISK_WEIGHT, POSITION_RISK_WEIGHT, CONFLICT_RISK_WEIGHT,
    CONCENTRATION_RISK_WEIGHT, TIMING_RISK_WEIGHT,
    OPEN_CLOSE_TIMING_RISK, BASE_TIMING_RISK,
    MARKET_OPEN_HOUR, MARKET_CLOSE_HOUR, OPEN_RISK_UNTIL_MINUTE, CLOSE_RISK_FROM_MINUTE
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskParameters:
    """Tunable risk limits"""
    max_portfolio_risk: float = MAX_PORTFOLIO_RISK   # Max fraction of portfolio deployed
    max_trade_risk: float = MAX_TRADE_RISK           # Max fraction per trade
    min_confidence: float = MIN_CONFIDENCE
    max_risk_score: float = MAX_RISK_SCORE
    max_drawdown: float = MAX_DRAWDOWN
    max_position_count: int = MAX_POSITION_COUNT


class RiskManager:
    """
    Position sizing and trade validation
    """

    def __init__(self, params: RiskParameters = None, **overrides):
        self.params = replace(params or RiskParameters(), **overrides)

    # =========================================================================
    # ASSESSMENT
    # =========================================================================

    def assess_trade(
        self,
        signal: Signal,
        flow: FlowSentiment,
        account: Optional[Account],
        positions: List[BrokerPosition],
        current_price: float,
        now: datetime = None
    ) -> RiskAssessment:
        """
        Assess a potential trade

        Parameters:
        -----------
        signal : Signal - Latest scored signal
        flow : FlowSentiment - Flow statistics the signal was built from
        account : Account - Fresh broker snapshot (None if unreachable)
        positions : List[BrokerPosition] - Open positions
        current_price : float - Fresh underlying price

        Returns:
        --------
        RiskAssessment
        """
        positions = positions or []
        reasons: List[str] = []

        blocked = self._account_block_reason(account, current_price)
        if blocked:
            logger.warning(f"Trade rejected: {blocked}")
            return RiskAssessment(
                position_size=0,
                risk_score=1.0,
                max_position_size=0,
                confidence_multiplier=0.0,
                risk_amount=0.0,
                recommendation=Recommendation.REJECT,
                reasons=[blocked]
            )

        base_size = self.calculate_base_position_size(
            account.portfolio_value, signal.confidence, current_price
        )
        adjusted_size, multiplier = self.apply_risk_multipliers(base_size, signal, flow, reasons)
        limited_size = self.check_portfolio_limits(adjusted_size, account, positions, current_price, reasons)
        position_size = max(0, int(math.floor(limited_size)))

        risk_score = self.calculate_risk_score(
            signal, flow, position_size, account, positions, current_price, now
        )

        recommendation = Recommendation.EXECUTE
        if signal.confidence < self.params.min_confidence:
            recommendation = Recommendation.REJECT
            reasons.append(
                f"Confidence {signal.confidence * 100:.1f}% below minimum {self.params.min_confidence * 100:.1f}%"
            )
        elif risk_score > self.params.max_risk_score:
            recommendation = Recommendation.REJECT
            reasons.append(
                f"Risk score {risk_score * 100:.1f}% exceeds maximum {self.params.max_risk_score * 100:.1f}%"
            )
        elif limited_size < base_size * REDUCE_FRACTION:
            recommendation = Recommendation.REDUCE
            reasons.append("Position size significantly reduced due to risk limits")

        if recommendation == Recommendation.REJECT:
            position_size = 0

        assessment = RiskAssessment(
            position_size=position_size,
            risk_score=risk_score,
            max_position_size=int(math.floor(account.portfolio_value * self.params.max_trade_risk / current_price)),
            confidence_multiplier=multiplier,
            risk_amount=position_size * current_price,
            recommendation=recommendation,
            reasons=reasons
        )

        logger.info(
            f"Risk assessment: {recommendation.value} {position_size} shares "
            f"(risk score {risk_score:.2f}, base {base_size:.2f})"
        )
        return assessment

    @staticmethod
    def _account_block_reason(account: Optional[Account], current_price: float) -> Optional[str]:
        if account is None:
            return "Broker account unavailable"
        if account.trading_blocked:
            return "Trading blocked on account"
        if account.portfolio_value <= 0:
            return "Portfolio value unavailable"
        if current_price is None or current_price <= 0:
            return "Current price unavailable"
        return None

    def should_execute_trade(self, assessment: RiskAssessment) -> bool:
        """The only gate a caller must honor before submitting an order"""
        return assessment.recommendation == Recommendation.EXECUTE and assessment.position_size > 0

    # =========================================================================
    # SIZING
    # =========================================================================

    def calculate_base_position_size(
        self,
        portfolio_value: float,
        confidence: float,
        current_price: float
    ) -> float:
        """Shares before multipliers and limits"""
        base_risk_amount = portfolio_value * self.params.max_trade_risk
        confidence_scale = max(MIN_CONFIDENCE_SCALE, min(MAX_CONFIDENCE_SCALE, confidence))
        risk_amount = base_risk_amount * confidence_scale
        shares = risk_amount / current_price

        logger.debug(
            f"Position sizing: portfolio=${portfolio_value:,.2f} risk={self.params.max_trade_risk:.1%} "
            f"amount=${risk_amount:,.2f} price=${current_price:.2f} shares={shares:.2f}"
        )
        return shares

    def apply_risk_multipliers(
        self,
        base_size: float,
        signal: Signal,
        flow: FlowSentiment,
        reasons: List[str]
    ) -> Tuple[float, float]:
        """
        Scale the base size by signal quality

        Returns:
        --------
        (adjusted_size, multiplier) - multiplier capped at 1.5
        """
        multiplier = 1.0

        if flow.has_unusual_flow and abs(flow.sentiment_score) > SENTIMENT_OVERRIDE:
            multiplier *= UNUSUAL_FLOW_SIZE_BOOST
            reasons.append("Boosted for strong unusual options flow")

        if flow.large_trade_count >= LARGE_TRADES_SIZE_MIN:
            multiplier *= LARGE_TRADES_SIZE_BOOST
            reasons.append(f"Boosted for {flow.large_trade_count} large trades")

        if signal.sentiment != flow.dominant_sentiment and flow.has_unusual_flow:
            multiplier *= CONFLICT_SIZE_PENALTY
            reasons.append("Reduced for conflicting sentiment signals")

        if signal.strength < WEAK_SIGNAL_STRENGTH:
            multiplier *= WEAK_SIGNAL_PENALTY
            reasons.append("Reduced for low signal strength")

        multiplier = min(MAX_RISK_MULTIPLIER, multiplier)
        return base_size * multiplier, multiplier

    def check_portfolio_limits(
        self,
        size: float,
        account: Account,
        positions: List[BrokerPosition],
        current_price: float,
        reasons: List[str]
    ) -> float:
        """Position count, buying power, portfolio risk - in that order"""
        if len(positions) >= self.params.max_position_count:
            reasons.append(f"Maximum position count ({self.params.max_position_count}) reached")
            return 0.0

        adjusted = size

        if adjusted * current_price > account.buying_power:
            adjusted = max(0.0, account.buying_power / current_price)
            reasons.append("Reduced to available buying power")

        current_risk = self.calculate_current_portfolio_risk(account, positions)
        new_trade_risk = adjusted * current_price / account.portfolio_value

        if current_risk + new_trade_risk > self.params.max_portfolio_risk:
            remaining = self.params.max_portfolio_risk - current_risk
            if remaining <= 0:
                adjusted = 0.0
                reasons.append("Portfolio risk limit reached")
            else:
                adjusted = remaining * account.portfolio_value / current_price
                reasons.append("Reduced to stay within portfolio risk limit")

        return max(0.0, adjusted)

    @staticmethod
    def calculate_current_portfolio_risk(account: Account, positions: List[BrokerPosition]) -> float:
        """Gross position value as a fraction of the portfolio"""
        if account.portfolio_value <= 0:
            return 0.0
        total = sum(pos.market_value for pos in positions)
        return total / account.portfolio_value

    # =========================================================================
    # RISK SCORE
    # =========================================================================

    def calculate_risk_score(
        self,
        signal: Signal,
        flow: FlowSentiment,
        position_size: float,
        account: Account,
        positions: List[BrokerPosition],
        current_price: float,
        now: datetime = None
    ) -> float:
        """
        Heuristic composite in [0, 1] - not a calibrated risk measure
        """
        confidence_risk = (1.0 - signal.confidence) * CONFIDENCE_RISK_WEIGHT

        risk_budget = account.portfolio_value * self.params.max_trade_risk
        if risk_budget > 0:
            position_risk = min(position_size * current_price / risk_budget, 1.0) * POSITION_RISK_WEIGHT
        else:
            position_risk = POSITION_RISK_WEIGHT

        conflict = flow.has_unusual_flow and signal.sentiment != flow.dominant_sentiment
        conflict_risk = (1.0 if conflict else 0.0) * CONFLICT_RISK_WEIGHT

        if self.params.max_position_count > 0:
            concentration = min(len(positions) / self.params.max_position_count, 1.0)
        else:
            concentration = 1.0
        concentration_risk = concentration * CONCENTRATION_RISK_WEIGHT

        timing_risk = self.market_timing_risk(now) * TIMING_RISK_WEIGHT

        total = confidence_risk + position_risk + conflict_risk + concentration_risk + timing_risk
        return max(0.0, min(1.0, total))

    @staticmethod
    def market_timing_risk(now: datetime = None) -> float:
        """Elevated in the first and last 15 minutes of the session"""
        if now is None:
            now = datetime.now()
        if now.hour == MARKET_OPEN_HOUR and now.minute < OPEN_RISK_UNTIL_MINUTE:
            return OPEN_CLOSE_TIMING_RISK
        if now.hour == MARKET_CLOSE_HOUR - 1 and now.minute > CLOSE_RISK_FROM_MINUTE:
            return OPEN_CLOSE_TIMING_RISK
        return BASE_TIMING_RISK

    # =========================================================================
    # REPORTING / PARAMETERS
    # =========================================================================

    def generate_risk_report(self, account: Account, positions: List[BrokerPosition]) -> RiskReport:
        """Portfolio-level risk status for monitoring"""
        positions = positions or []
        portfolio_risk = self.calculate_current_portfolio_risk(account, positions)
        recommendations = []
        status = RiskStatus.LOW

        if portfolio_risk > self.params.max_portfolio_risk * 0.8:
            status = RiskStatus.HIGH
            recommendations.append("Portfolio risk approaching limit - consider reducing positions")
        elif portfolio_risk > self.params.max_portfolio_risk * 0.6:
            status = RiskStatus.MEDIUM
            recommendations.append("Portfolio risk at medium level - monitor closely")

        if len(positions) >= self.params.max_position_count:
            status = RiskStatus.CRITICAL
            recommendations.append("Maximum position count reached - no new positions allowed")

        if account.portfolio_value > 0:
            unrealized_pct = sum(p.unrealized_pl for p in positions) / account.portfolio_value
            if unrealized_pct < -self.params.max_drawdown:
                status = RiskStatus.CRITICAL
                recommendations.append(
                    f"Drawdown {unrealized_pct * 100:.1f}% exceeds limit - consider stopping trading"
                )

        return RiskReport(
            portfolio_risk=portfolio_risk,
            position_count=len(positions),
            available_capacity=max(0.0, self.params.max_portfolio_risk - portfolio_risk),
            risk_status=status,
            recommendations=recommendations
        )

    def get_max_emergency_position(self, portfolio_value: float, current_price: float) -> int:
        """Hard ceiling: twice the per-trade risk"""
        if current_price <= 0:
            return 0
        max_risk_amount = portfolio_value * self.params.max_trade_risk * EMERGENCY_RISK_MULTIPLE
        return int(math.floor(max_risk_amount / current_price))

    def get_risk_parameters(self) -> RiskParameters:
        return self.params

    def update_risk_parameters(self, **changes) -> RiskParameters:
        """Partial update; unknown names raise ValueError"""
        known = {f.name for f in fields(RiskParameters)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown risk parameters: {', '.join(sorted(unknown))}")
        self.params = replace(self.params, **changes)
        logger.info(f"Risk parameters updated: {changes}")
        return self.params
