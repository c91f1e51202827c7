"""
Shared fixtures for the QPPF test suite.

All times are pinned to a mid-session Wednesday so window, expiry and
timing-risk calculations are deterministic.
"""

from datetime import datetime, timedelta

import numpy as np
import pytest

from qppf_trader.config import (
    Account, BrokerPosition, Direction, FlowAlert, FlowSentiment, MarketData,
    OptionContract, OptionType, Sentiment, Signal
)
from qppf_trader.flow import infer_sentiment


NOW = datetime(2024, 6, 12, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def market_data(now):
    """SPY-like quote: liquid, one-cent spread"""
    return MarketData(
        symbol="SPY",
        price=450.0,
        volume=50_000_000,
        bid=449.99,
        ask=450.01,
        timestamp=now
    )


@pytest.fixture
def make_alert(now):
    def _make(option_type="call", premium=25_000.0, minutes_ago=10, strike=450.0,
              days_to_expiry=30, volume=100, open_interest=1000):
        return FlowAlert(
            symbol="SPY",
            strike=strike,
            expiry=(now + timedelta(days=days_to_expiry)).date(),
            option_type=option_type,
            premium=premium,
            volume=volume,
            open_interest=open_interest,
            timestamp=now - timedelta(minutes=minutes_ago),
            sentiment=infer_sentiment(option_type),
            alert_type="sweep"
        )
    return _make


@pytest.fixture
def make_contract(now):
    def _make(strike=450.0, option_type=OptionType.CALL, open_interest=1000,
              implied_volatility=0.30, days_to_expiry=30, premium=None):
        return OptionContract(
            strike=strike,
            expiry=(now + timedelta(days=days_to_expiry)).date(),
            option_type=option_type,
            open_interest=open_interest,
            implied_volatility=implied_volatility,
            premium=premium
        )
    return _make


@pytest.fixture
def neutral_flow():
    return FlowSentiment()


@pytest.fixture
def bullish_flow():
    return FlowSentiment(
        sentiment_score=0.6,
        total_alert_count=10,
        recent_alert_count=8,
        bullish_count=6,
        bearish_count=1,
        avg_premium=30_000.0,
        large_trade_count=3,
        has_unusual_flow=True,
        dominant_sentiment=Sentiment.BULLISH
    )


@pytest.fixture
def account():
    return Account(portfolio_value=100_000.0, buying_power=50_000.0, cash=50_000.0)


@pytest.fixture
def make_position():
    def _make(symbol="AAPL", qty=10, current_price=100.0, unrealized_pl=0.0):
        return BrokerPosition(
            symbol=symbol,
            qty=qty,
            current_price=current_price,
            unrealized_pl=unrealized_pl,
            avg_entry_price=current_price
        )
    return _make


@pytest.fixture
def make_signal(now):
    def _make(direction=Direction.LONG, confidence=0.9, strength=0.8,
              sentiment=Sentiment.BULLISH, price=100.0, symbol="SPY", flow=None):
        return Signal(
            direction=direction,
            confidence=confidence,
            strength=strength,
            sentiment=sentiment,
            long_reasons=[],
            short_reasons=[],
            market_data=MarketData(symbol=symbol, price=price, volume=50_000_000,
                                   bid=price - 0.01, ask=price + 0.01, timestamp=now),
            flow=flow or FlowSentiment(),
            gex=None,
            timestamp=now
        )
    return _make
