"""
================================================================================
QPPF ALGORITHM
================================================================================

Per-symbol session handle. Owns the only mutable state in the pipeline
(AlgorithmState + latest signal) and wires one scoring cycle:

    market data + flow alerts
        -> FlowSentiment
        -> OptionContracts (+ synthetic floor) -> GEXProfile
        -> SignalScorer -> Signal

One instance per symbol; nothing is shared between instances.

================================================================================
"""

import logging
import math
from copy import deepcopy
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np

from qppf_trader.config import (
    AlgorithmState, Direction, FlowAlert, FlowSentiment, MarketData,
    Sentiment, Signal,
    DEFAULT_SYMBOL, SYNTHETIC_SEED,
    SIMULATION_MIN_CONFIDENCE, SIMULATION_BASE_SHARES
)
from qppf_trader.flow import analyze_flow, contracts_from_alerts
from qppf_trader.gex import GammaExposureEstimator
from qppf_trader.signals import SignalScorer

logger = logging.getLogger(__name__)


class QPPFAlgorithm:
    """
    Signal generation for one symbol

    Parameters:
    -----------
    symbol : str
    scorer : SignalScorer
    estimator : GammaExposureEstimator
    rng : np.random.Generator - Source for synthetic contracts (seeded)
    """

    def __init__(
        self,
        symbol: str = DEFAULT_SYMBOL,
        scorer: SignalScorer = None,
        estimator: GammaExposureEstimator = None,
        rng: np.random.Generator = None
    ):
        self.symbol = symbol
        self.scorer = scorer or SignalScorer()
        self.estimator = estimator or GammaExposureEstimator()
        self.rng = rng if rng is not None else np.random.default_rng(SYNTHETIC_SEED)
        self.state = AlgorithmState(symbol=symbol)
        self.latest_signal: Optional[Signal] = None

        logger.info(f"QPPF algorithm initialized for {symbol}")

    # =========================================================================
    # SIGNAL GENERATION
    # =========================================================================

    def generate_signal(
        self,
        market_data: MarketData,
        alerts: List[FlowAlert],
        now: datetime = None
    ) -> Signal:
        """
        Run one scoring cycle

        Always returns a Signal - a neutral FLAT one when there is no flow
        or scoring fails on bad data.
        """
        if now is None:
            now = datetime.now()

        self.state.price_history.append(market_data.price)
        self.state.volume_history.append(market_data.volume)

        if not alerts:
            logger.warning(f"No options flow for {self.symbol} - emitting neutral signal")
            signal = self.neutral_signal(market_data, "No options flow available", now)
            self.latest_signal = signal
            return signal

        try:
            flow = analyze_flow(alerts, now)

            contracts = contracts_from_alerts(alerts)
            contracts, _ = self.estimator.ensure_min_contracts(
                contracts, market_data.price, self.rng, now
            )
            gex = self.estimator.calculate_gex(contracts, market_data.price, now)

            signal = self.scorer.score(flow, market_data, gex, self.state.price_history, now)
        except Exception as e:
            logger.error(f"Error generating signal for {self.symbol}: {e}")
            signal = self.neutral_signal(market_data, "Error in signal generation", now)

        self.latest_signal = signal
        logger.info(
            f"Generated signal: {signal.direction.value} "
            f"(confidence: {signal.confidence * 100:.1f}%, strength: {signal.strength * 100:.1f}%)"
        )
        return signal

    @staticmethod
    def neutral_signal(market_data: MarketData, reason: str, now: datetime = None) -> Signal:
        """FLAT, zero confidence, zero strength"""
        return Signal(
            direction=Direction.FLAT,
            confidence=0.0,
            strength=0.0,
            sentiment=Sentiment.NEUTRAL,
            long_reasons=[],
            short_reasons=[reason],
            market_data=market_data,
            flow=FlowSentiment(),
            gex=None,
            timestamp=now or datetime.now()
        )

    # =========================================================================
    # SIMULATION
    # =========================================================================

    def simulate_trade_execution(self, signal: Signal, now: datetime = None) -> bool:
        """
        Paper position from a signal (no broker)

        Skips FLAT signals and confidence below 0.6.
        """
        if signal.direction == Direction.FLAT or signal.confidence < SIMULATION_MIN_CONFIDENCE:
            return False

        size = int(math.floor(SIMULATION_BASE_SHARES * signal.confidence))
        self.state.position_size = size if signal.direction == Direction.LONG else -size
        self.state.entry_price = signal.market_data.price
        self.state.entry_time = now or datetime.now()
        self.state.trades_executed += 1
        self.state.is_active = True

        logger.info(f"Simulated trade: {signal.direction.value} {size} shares at ${signal.market_data.price:.2f}")
        return True

    def current_pnl(self, current_price: float) -> float:
        if not self.state.is_active or self.state.position_size == 0:
            return 0.0
        return (current_price - self.state.entry_price) * self.state.position_size

    # =========================================================================
    # STATE
    # =========================================================================

    def get_state(self) -> AlgorithmState:
        """Copy - callers never mutate the live state"""
        return deepcopy(self.state)

    def reset(self):
        self.state = AlgorithmState(symbol=self.symbol)
        self.latest_signal = None
        logger.info(f"QPPF algorithm state reset for {self.symbol}")

    def get_statistics(self) -> Dict:
        prices = self.state.price_history
        return {
            'symbol': self.state.symbol,
            'trades_executed': self.state.trades_executed,
            'total_pnl': self.state.total_pnl,
            'current_position': self.state.position_size,
            'entry_price': self.state.entry_price,
            'entry_time': self.state.entry_time,
            'is_active': self.state.is_active,
            'price_history_length': len(prices),
            'avg_price': sum(prices) / len(prices) if prices else 0.0,
        }
