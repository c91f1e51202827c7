"""
RobinhoodClient against a fake robin_stocks module (no network).
"""

from types import SimpleNamespace

import pytest
import requests

from qppf_trader import robinhood
from qppf_trader.config import OrderSide
from qppf_trader.errors import NotAuthenticatedError, UpstreamUnavailableError
from qppf_trader.resilience import ResilientCaller, RetryPolicy
from qppf_trader.robinhood import RobinhoodClient


class FakeRobinhood:
    def __init__(self):
        self.orders = []
        self.quote = {
            'last_trade_price': '450.25',
            'last_extended_hours_trade_price': None,
            'bid_price': '450.20',
            'ask_price': '450.30',
        }
        self.stocks = SimpleNamespace(
            get_quotes=lambda symbol: [self.quote],
            get_fundamentals=lambda symbol: [{'volume': '61234567.000000'}],
        )
        self.profiles = SimpleNamespace(
            load_portfolio_profile=lambda: {'equity': '100000.00'},
            load_account_profile=lambda: {
                'buying_power': '25000.00', 'cash': '20000.00',
                'deactivated': False, 'only_position_closing_trades': False,
            },
        )
        self.account = SimpleNamespace(
            get_day_trades=lambda: {'equity_day_trades': [{}, {}]},
            build_holdings=lambda: {
                'AAPL': {'quantity': '10.0000', 'price': '190.50',
                         'average_buy_price': '180.00', 'equity_change': '105.00'},
                'DEAD': {'quantity': '0', 'price': '1.00'},
            },
        )
        self.orders_api = SimpleNamespace(
            order_buy_market=lambda symbol, qty: self._order('buy', symbol, qty),
            order_sell_market=lambda symbol, qty: self._order('sell', symbol, qty),
            order_buy_limit=lambda symbol, qty, price: self._order('buy_limit', symbol, qty, price),
            order_sell_limit=lambda symbol, qty, price: self._order('sell_limit', symbol, qty, price),
        )
        self.logged_in = False

    def _order(self, kind, symbol, qty, price=None):
        self.orders.append((kind, symbol, qty, price))
        return {'id': f"order-{len(self.orders)}", 'state': 'queued'}

    def login(self, username, password, store_session=True, mfa_code=None):
        self.logged_in = True
        return {'access_token': 'token'}

    def logout(self):
        self.logged_in = False


@pytest.fixture
def fake_rh(monkeypatch):
    fake = FakeRobinhood()
    module = SimpleNamespace(
        login=fake.login,
        logout=fake.logout,
        stocks=fake.stocks,
        profiles=fake.profiles,
        account=fake.account,
        orders=fake.orders_api,
    )
    monkeypatch.setattr(robinhood, "rh", module)
    return fake


def _client(paper_trading=False):
    caller = ResilientCaller("robinhood", RetryPolicy(max_attempts=1), sleep=lambda s: None)
    return RobinhoodClient(paper_trading=paper_trading, caller=caller)


@pytest.fixture
def client(fake_rh):
    c = _client()
    assert c.login("user@example.com", "secret")
    return c


def test_requires_login(fake_rh):
    with pytest.raises(NotAuthenticatedError):
        _client().get_account()


def test_login_without_credentials(fake_rh, monkeypatch):
    monkeypatch.setattr(robinhood, "ROBINHOOD_USERNAME", "")
    monkeypatch.setattr(robinhood, "ROBINHOOD_PASSWORD", "")
    assert not _client().login()


def test_market_data(client):
    md = client.get_market_data("SPY")
    assert md.symbol == "SPY"
    assert md.price == pytest.approx(450.25)
    assert md.bid == pytest.approx(450.20)
    assert md.ask == pytest.approx(450.30)
    assert md.volume == 61_234_567


def test_market_data_prefers_extended_hours(client, fake_rh):
    fake_rh.quote['last_extended_hours_trade_price'] = '451.00'
    assert client.get_market_data("SPY").price == pytest.approx(451.0)


def test_market_data_invalid_price(client, fake_rh):
    fake_rh.quote['last_trade_price'] = '0'
    with pytest.raises(UpstreamUnavailableError):
        client.get_market_data("SPY")


def test_account(client):
    account = client.get_account()
    assert account.portfolio_value == pytest.approx(100_000.0)
    assert account.buying_power == pytest.approx(25_000.0)
    assert account.cash == pytest.approx(20_000.0)
    assert account.day_trade_count == 2
    assert not account.trading_blocked


def test_positions(client):
    positions = client.get_positions()
    assert len(positions) == 1
    pos = positions[0]
    assert pos.symbol == "AAPL"
    assert pos.qty == 10
    assert pos.market_value == pytest.approx(1905.0)
    assert pos.unrealized_pl == pytest.approx(105.0)


def test_live_market_order(client, fake_rh):
    result = client.submit_order("SPY", OrderSide.BUY, 5)
    assert result.success
    assert result.order_id == "order-1"
    assert fake_rh.orders == [('buy', 'SPY', 5, None)]


def test_live_limit_order(client, fake_rh):
    result = client.submit_order("SPY", OrderSide.SELL, 3, 'limit', limit_price=451.2)
    assert result.success
    assert fake_rh.orders == [('sell_limit', 'SPY', 3, 451.2)]


def test_limit_order_needs_price(client, fake_rh):
    result = client.submit_order("SPY", OrderSide.BUY, 3, 'limit')
    assert not result.success
    assert fake_rh.orders == []


def test_paper_order_not_sent(fake_rh):
    client = _client(paper_trading=True)
    result = client.submit_order("SPY", OrderSide.SELL, 7)
    assert result.success
    assert result.order_id == "paper-1"
    assert result.quantity == 7
    assert fake_rh.orders == []


def test_zero_quantity_rejected(client, fake_rh):
    assert not client.submit_order("SPY", OrderSide.BUY, 0).success
    assert fake_rh.orders == []


def test_broker_rejection(client, fake_rh):
    fake_rh.orders_api.order_buy_market = lambda symbol, qty: {'detail': 'Not enough buying power.'}
    result = client.submit_order("SPY", OrderSide.BUY, 5)
    assert not result.success
    assert result.message == 'Not enough buying power.'


def test_lost_order_response_not_resubmitted(fake_rh):
    submissions = []

    def flaky_buy(symbol, qty):
        submissions.append((symbol, qty))
        if len(submissions) == 1:
            raise requests.exceptions.ReadTimeout("read timed out")
        return {'id': f"order-{len(submissions)}"}

    fake_rh.orders_api.order_buy_market = flaky_buy
    client = RobinhoodClient(paper_trading=False)
    assert client.login("user@example.com", "secret")

    result = client.submit_order("SPY", OrderSide.BUY, 10)

    assert submissions == [("SPY", 10)]
    assert not result.success
    assert client.order_caller.breaker is client.caller.breaker
    assert client.caller.breaker.failure_count == 1


def test_logout(client, fake_rh):
    client.logout()
    assert not client.authenticated
    assert not fake_rh.logged_in
