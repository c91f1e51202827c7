"""
One-cycle and loop behavior of TradingSession with fake providers.
"""

import numpy as np
import pytest

from qppf_trader.algorithm import QPPFAlgorithm
from qppf_trader.config import (
    Account, Direction, MarketData, OrderSide, Recommendation, TradeResult, FALLBACK_PRICE
)
from qppf_trader.errors import UpstreamUnavailableError
from qppf_trader.executor import TradeExecutor
from qppf_trader.main import TradingSession
from qppf_trader.risk import RiskManager


class FakeMarket:
    def __init__(self, prices):
        self.prices = list(prices)

    def get_market_data(self, symbol):
        price = self.prices.pop(0)
        if price is None:
            raise UpstreamUnavailableError("market", "down")
        return MarketData(symbol=symbol, price=price, volume=50_000_000, bid=0.0, ask=0.0)


class FakeFlow:
    def __init__(self, alerts=None, fail=False):
        self.alerts = alerts or []
        self.fail = fail

    def get_options_flow(self, symbol):
        if self.fail:
            raise UpstreamUnavailableError("unusual_whales", "down")
        return self.alerts


class FakeBroker:
    def __init__(self, account=None, fail=False):
        self.account = account
        self.fail = fail
        self.orders = []

    def get_account(self):
        if self.fail:
            raise UpstreamUnavailableError("robinhood", "down")
        return self.account

    def get_positions(self):
        if self.fail:
            raise UpstreamUnavailableError("robinhood", "down")
        return []

    def submit_order(self, symbol, side, quantity, order_type='market'):
        self.orders.append((symbol, side, quantity))
        return TradeResult(success=True, message="filled", order_id="1", side=side, quantity=quantity)


@pytest.fixture
def bullish_alerts(make_alert):
    return [make_alert('call', premium=60_000, minutes_ago=m) for m in range(5, 60, 5)]


def _session(market, flow, broker, sleeps=None):
    risk_manager = RiskManager()
    return TradingSession(
        algorithm=QPPFAlgorithm("SPY", rng=np.random.default_rng(42)),
        market_data=market,
        flow_provider=flow,
        broker=broker,
        risk_manager=risk_manager,
        executor=TradeExecutor(broker, risk_manager),
        interval=30,
        retry_interval=10,
        sleep=(sleeps.append if sleeps is not None else lambda s: None)
    )


class TestRunCycle:
    def test_bullish_cycle_executes(self, bullish_alerts, now):
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([450.0]), FakeFlow(bullish_alerts), broker)

        result = session.run_cycle(now)

        assert result['signal'].direction == Direction.LONG
        assert result['assessment'].recommendation == Recommendation.EXECUTE
        assert result['trade'].success
        assert broker.orders[0][1] == OrderSide.BUY
        assert broker.orders[0][2] == result['assessment'].position_size
        assert session.algorithm.state.trades_executed == 1
        assert len(session.trade_log) == 1

    def test_flow_outage_gives_flat_signal(self, now):
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([450.0]), FakeFlow(fail=True), broker)

        result = session.run_cycle(now)

        assert result['signal'].direction == Direction.FLAT
        assert result['assessment'].recommendation == Recommendation.REJECT
        assert result['trade'] is None
        assert broker.orders == []

    def test_broker_outage_rejects(self, bullish_alerts, now):
        broker = FakeBroker(fail=True)
        session = _session(FakeMarket([450.0]), FakeFlow(bullish_alerts), broker)

        result = session.run_cycle(now)

        assert result['assessment'].recommendation == Recommendation.REJECT
        assert result['assessment'].position_size == 0
        assert broker.orders == []

    def test_market_data_falls_back(self, now):
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([None, 452.0, None]), FakeFlow(), broker)

        first = session.run_cycle(now)
        assert first['signal'].market_data.price == FALLBACK_PRICE

        session.run_cycle(now)
        third = session.run_cycle(now)
        assert third['signal'].market_data.price == 452.0

    def test_signal_only_without_executor(self, bullish_alerts, now):
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([450.0]), FakeFlow(bullish_alerts), broker)
        session.executor = None

        result = session.run_cycle(now)

        assert result['trade'] is None
        assert broker.orders == []


class TestRunLoop:
    def test_sleeps_interval_between_cycles(self):
        sleeps = []
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([450.0, 451.0, 452.0]), FakeFlow(), broker, sleeps)

        session.run(max_cycles=3)

        assert session.cycle_count == 3
        assert sleeps == [30, 30]
        assert not session.running

    def test_retry_interval_after_error(self):
        sleeps = []
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        # Empty price list -> IndexError inside the cycle
        session = _session(FakeMarket([]), FakeFlow(), broker, sleeps)

        session.run(max_cycles=2)

        assert sleeps == [10]

    def test_stop_is_cooperative(self):
        broker = FakeBroker(Account(portfolio_value=100_000.0, buying_power=50_000.0))
        session = _session(FakeMarket([450.0] * 10), FakeFlow(), broker)
        session._sleep = lambda s: session.stop()

        session.run()

        assert session.cycle_count == 1
        assert not session.running
