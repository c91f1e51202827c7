"""
================================================================================
SIGNAL SCORER
================================================================================

Combines options-flow sentiment, the gamma exposure profile and recent
price/volume history into:

- direction   LONG / SHORT / FLAT
- confidence  [0, 0.95]
- strength    [0, 1]
- supporting reasons for each side

Direction is two-tier:
1. |sentiment| > 0.4 decides outright
2. Otherwise independent factors each cast one bullish or bearish vote.
   A side needs at least 2 votes AND strictly more votes than the other
   side; a tie is always FLAT.

GEX interpretation:
- Above the Zero Gamma Level dealers are long gamma and hedge against the
  move (dampening) -> bullish vote
- Below it dealers are short gamma and hedge with the move (amplifying)
  -> bearish vote

================================================================================
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from qppf_trader.config import (
    Direction, FlowSentiment, GEXProfile, MarketData, Signal,
    BASE_CONFIDENCE, MAX_CONFIDENCE, UNUSUAL_FLOW_BOOST,
    STRONG_SENTIMENT_LEVEL, STRONG_SENTIMENT_BOOST,
    MODERATE_SENTIMENT_LEVEL, MODERATE_SENTIMENT_BOOST,
    LARGE_TRADES_MIN, LARGE_TRADES_BOOST,
    ACTIVE_FLOW_MIN_ALERTS, ACTIVE_FLOW_BOOST,
    ZGL_DISTANCE_PCT, ZGL_DISTANCE_BOOST, GEX_ALIGNMENT_BOOST,
    LOW_VOLUME_THRESHOLD, LOW_VOLUME_PENALTY,
    SENTIMENT_OVERRIDE, MIN_DIRECTION_VOTES, INSTITUTIONAL_PREMIUM,
    HIGH_VOLUME_THRESHOLD, TIGHT_SPREAD_PCT, MOMENTUM_PERIODS,
    MARKET_HOURS_BIAS_ENABLED,
    STRENGTH_CONFIDENCE_WEIGHT, STRENGTH_UNUSUAL_WEIGHT,
    STRENGTH_LARGE_TRADE_WEIGHT, STRENGTH_SENTIMENT_WEIGHT,
    STRENGTH_LARGE_TRADE_NORM,
    MARKET_OPEN_HOUR, MARKET_OPEN_MINUTE, MARKET_CLOSE_HOUR, MARKET_CLOSE_MINUTE
)

logger = logging.getLogger(__name__)


def _sign(x: float) -> int:
    if x > 0:
        return 1
    if x < 0:
        return -1
    return 0


class SignalScorer:
    """
    Stateless scoring of one cycle's inputs

    Parameters:
    -----------
    market_hours_bias : bool
        Enables the time-of-day bullish vote (off by default - unvalidated)
    """

    def __init__(self, market_hours_bias: bool = MARKET_HOURS_BIAS_ENABLED):
        self.market_hours_bias = market_hours_bias

    # =========================================================================
    # CONFIDENCE
    # =========================================================================

    def confidence(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None
    ) -> float:
        """
        Additive boosts on a 0.5 base, illiquidity penalty, capped at 0.95
        """
        confidence = BASE_CONFIDENCE

        if flow.has_unusual_flow:
            confidence += UNUSUAL_FLOW_BOOST

        sentiment_strength = abs(flow.sentiment_score)
        if sentiment_strength > STRONG_SENTIMENT_LEVEL:
            confidence += STRONG_SENTIMENT_BOOST
        elif sentiment_strength > MODERATE_SENTIMENT_LEVEL:
            confidence += MODERATE_SENTIMENT_BOOST

        if flow.large_trade_count > LARGE_TRADES_MIN:
            confidence += LARGE_TRADES_BOOST

        if flow.recent_alert_count > ACTIVE_FLOW_MIN_ALERTS:
            confidence += ACTIVE_FLOW_BOOST

        zgl = gex.zero_gamma_level if gex is not None else None
        if zgl:
            if abs(market.price - zgl) / zgl > ZGL_DISTANCE_PCT:
                confidence += ZGL_DISTANCE_BOOST
            if self._gex_aligned(gex, market.price):
                confidence += GEX_ALIGNMENT_BOOST

        if market.volume < LOW_VOLUME_THRESHOLD:
            confidence *= LOW_VOLUME_PENALTY

        return max(0.0, min(MAX_CONFIDENCE, confidence))

    @staticmethod
    def _gex_aligned(gex: GEXProfile, price: float) -> bool:
        """Positive GEX below ZGL, or negative GEX above it"""
        zgl = gex.zero_gamma_level
        return (gex.total_gex > 0 and price < zgl) or (gex.total_gex < 0 and price > zgl)

    # =========================================================================
    # DIRECTION
    # =========================================================================

    def count_votes(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None,
        price_history: Sequence[float] = (),
        now: datetime = None
    ) -> Tuple[int, int]:
        """
        Tally (bullish, bearish) factor votes

        Each factor votes at most once, and only when it has an opinion.
        """
        votes = []
        sentiment_sign = _sign(flow.sentiment_score)
        prices = list(price_history)

        # Flow alert balance
        votes.append(_sign(flow.bullish_count - flow.bearish_count))

        # Institutional size: big average premium on busy flow
        if flow.avg_premium > INSTITUTIONAL_PREMIUM and flow.recent_alert_count > ACTIVE_FLOW_MIN_ALERTS:
            votes.append(sentiment_sign)

        if gex is not None:
            if gex.zero_gamma_level:
                votes.append(_sign(market.price - gex.zero_gamma_level))
            votes.append(_sign(gex.call_gex - abs(gex.put_gex)))

        # Heavy volume confirms the latest price change
        if market.volume > HIGH_VOLUME_THRESHOLD and len(prices) >= 2:
            votes.append(_sign(prices[-1] - prices[-2]))

        # Tight market confirms the flow
        if market.bid > 0 and market.ask > 0 and market.spread < market.price * TIGHT_SPREAD_PCT:
            votes.append(sentiment_sign)

        if self.market_hours_bias and self._is_market_hours(now or datetime.now()):
            votes.append(1)

        if len(prices) >= MOMENTUM_PERIODS:
            votes.append(_sign(prices[-1] - prices[-MOMENTUM_PERIODS]))

        bullish = sum(1 for v in votes if v > 0)
        bearish = sum(1 for v in votes if v < 0)
        return bullish, bearish

    def direction(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None,
        price_history: Sequence[float] = (),
        now: datetime = None
    ) -> Direction:
        """LONG / SHORT / FLAT"""
        if flow.sentiment_score > SENTIMENT_OVERRIDE:
            return Direction.LONG
        if flow.sentiment_score < -SENTIMENT_OVERRIDE:
            return Direction.SHORT

        bullish, bearish = self.count_votes(flow, market, gex, price_history, now)
        logger.debug(f"Direction votes: {bullish} bullish / {bearish} bearish")

        if bullish >= MIN_DIRECTION_VOTES and bullish > bearish:
            return Direction.LONG
        if bearish >= MIN_DIRECTION_VOTES and bearish > bullish:
            return Direction.SHORT
        return Direction.FLAT

    @staticmethod
    def _is_market_hours(now: datetime) -> bool:
        if now.weekday() >= 5:
            return False
        market_open = now.replace(hour=MARKET_OPEN_HOUR, minute=MARKET_OPEN_MINUTE, second=0, microsecond=0)
        market_close = now.replace(hour=MARKET_CLOSE_HOUR, minute=MARKET_CLOSE_MINUTE, second=0, microsecond=0)
        return market_open <= now <= market_close

    # =========================================================================
    # STRENGTH
    # =========================================================================

    def strength(self, flow: FlowSentiment, confidence: float) -> float:
        """Weighted sum, capped (not renormalized) at 1.0"""
        strength = confidence * STRENGTH_CONFIDENCE_WEIGHT

        if flow.has_unusual_flow:
            strength += STRENGTH_UNUSUAL_WEIGHT

        large_trade_ratio = min(flow.large_trade_count / STRENGTH_LARGE_TRADE_NORM, 1.0)
        strength += large_trade_ratio * STRENGTH_LARGE_TRADE_WEIGHT

        strength += abs(flow.sentiment_score) * STRENGTH_SENTIMENT_WEIGHT

        return max(0.0, min(1.0, strength))

    # =========================================================================
    # REASONS
    # =========================================================================

    def long_reasons(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None,
        price_history: Sequence[float] = ()
    ) -> List[str]:
        reasons = []
        prices = list(price_history)

        if flow.sentiment_score > MODERATE_SENTIMENT_LEVEL:
            reasons.append(f"Strong bullish sentiment ({flow.sentiment_score * 100:.1f}%)")

        if flow.bullish_count > flow.bearish_count:
            reasons.append(f"More bullish alerts ({flow.bullish_count} vs {flow.bearish_count})")

        if flow.large_trade_count > LARGE_TRADES_MIN:
            reasons.append(f"{flow.large_trade_count} large premium trades detected")

        if flow.avg_premium > INSTITUTIONAL_PREMIUM:
            reasons.append(f"High average premium (${flow.avg_premium / 1000:.1f}k)")

        if gex is not None:
            if gex.zero_gamma_level and market.price > gex.zero_gamma_level:
                reasons.append(f"Price above zero gamma level ({gex.zero_gamma_level:.2f})")
            if gex.call_gex > abs(gex.put_gex):
                reasons.append(f"Call gamma dominates ({gex.call_gex:.3f}B vs {abs(gex.put_gex):.3f}B)")

        if len(prices) >= MOMENTUM_PERIODS and prices[-1] > prices[-MOMENTUM_PERIODS]:
            reasons.append("Recent upward price momentum")

        return reasons

    def short_reasons(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None,
        price_history: Sequence[float] = ()
    ) -> List[str]:
        reasons = []
        prices = list(price_history)

        if flow.sentiment_score < -MODERATE_SENTIMENT_LEVEL:
            reasons.append(f"Strong bearish sentiment ({flow.sentiment_score * 100:.1f}%)")

        if flow.bearish_count > flow.bullish_count:
            reasons.append(f"More bearish alerts ({flow.bearish_count} vs {flow.bullish_count})")

        if flow.large_trade_count > LARGE_TRADES_MIN and flow.sentiment_score < 0:
            reasons.append(f"{flow.large_trade_count} large bearish trades detected")

        if gex is not None:
            if gex.zero_gamma_level and market.price < gex.zero_gamma_level:
                reasons.append(f"Price below zero gamma level ({gex.zero_gamma_level:.2f})")
            if abs(gex.put_gex) > gex.call_gex:
                reasons.append(f"Put gamma dominates ({abs(gex.put_gex):.3f}B vs {gex.call_gex:.3f}B)")

        if len(prices) >= MOMENTUM_PERIODS and prices[-1] < prices[-MOMENTUM_PERIODS]:
            reasons.append("Recent downward price momentum")

        return reasons

    # =========================================================================
    # FULL SCORE
    # =========================================================================

    def score(
        self,
        flow: FlowSentiment,
        market: MarketData,
        gex: Optional[GEXProfile] = None,
        price_history: Sequence[float] = (),
        now: datetime = None
    ) -> Signal:
        """Score one cycle into an immutable Signal"""
        if now is None:
            now = datetime.now()

        confidence = self.confidence(flow, market, gex)
        direction = self.direction(flow, market, gex, price_history, now)
        strength = self.strength(flow, confidence)

        return Signal(
            direction=direction,
            confidence=confidence,
            strength=strength,
            sentiment=flow.dominant_sentiment,
            long_reasons=self.long_reasons(flow, market, gex, price_history),
            short_reasons=self.short_reasons(flow, market, gex, price_history),
            market_data=market,
            flow=flow,
            gex=gex,
            timestamp=now
        )
