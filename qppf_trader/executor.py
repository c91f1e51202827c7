"""
================================================================================
TRADE EXECUTOR
================================================================================

Last step of a cycle: submits an order only when the risk assessment says
EXECUTE with a positive size and the signal has a direction.

    LONG  -> BUY
    SHORT -> SELL

================================================================================
"""

import logging

from qppf_trader.config import Direction, OrderSide, RiskAssessment, Signal, TradeResult
from qppf_trader.risk import RiskManager

logger = logging.getLogger(__name__)


class TradeExecutor:
    """
    Gatekeeper between risk assessment and the broker

    Parameters:
    -----------
    broker : object with submit_order(symbol, side, quantity, order_type)
    risk_manager : RiskManager
    """

    def __init__(self, broker, risk_manager: RiskManager):
        self.broker = broker
        self.risk_manager = risk_manager

    def execute(self, signal: Signal, assessment: RiskAssessment) -> TradeResult:
        if signal.direction == Direction.FLAT:
            return TradeResult(success=False, message="No trade: signal is FLAT")

        if not self.risk_manager.should_execute_trade(assessment):
            reason = assessment.reasons[-1] if assessment.reasons else assessment.recommendation.value
            logger.info(f"Trade not executed ({assessment.recommendation.value}): {reason}")
            return TradeResult(success=False, message=f"No trade: {reason}")

        side = OrderSide.BUY if signal.direction == Direction.LONG else OrderSide.SELL
        symbol = signal.market_data.symbol

        logger.info(
            f"Executing {side.value.upper()} {assessment.position_size} {symbol} "
            f"(confidence {signal.confidence * 100:.1f}%, risk score {assessment.risk_score:.2f})"
        )
        result = self.broker.submit_order(symbol, side, assessment.position_size, 'market')

        if not result.success:
            logger.error(f"Order failed for {symbol}: {result.message}")
        return result
