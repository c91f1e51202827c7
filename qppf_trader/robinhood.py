"""
================================================================================
ROBINHOOD BROKER CLIENT
================================================================================

Broker boundary for the QPPF trader:
- Authentication
- Market data (quote + daily volume)
- Account snapshot (portfolio value, buying power)
- Open stock positions
- Equity order submission (market / limit)

Every robin_stocks call runs through a ResilientCaller, so transport
failures surface as UpstreamUnavailableError.

================================================================================
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

import robin_stocks.robinhood as rh

from qppf_trader.config import (
    Account, BrokerPosition, MarketData, OrderSide, TradeResult,
    ROBINHOOD_USERNAME, ROBINHOOD_PASSWORD, PAPER_TRADING
)
from qppf_trader.errors import NotAuthenticatedError, UpstreamUnavailableError
from qppf_trader.resilience import ResilientCaller, RetryPolicy

logger = logging.getLogger(__name__)


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class RobinhoodClient:
    """
    Robinhood client for one trading session

    Parameters:
    -----------
    paper_trading : bool - Log orders instead of sending them
    caller : ResilientCaller - Retry/circuit breaker around every read call

    Orders go through a single-attempt caller sharing the same breaker, so a
    lost response never resubmits an order the broker may have accepted.
    """

    def __init__(self, paper_trading: bool = PAPER_TRADING, caller: ResilientCaller = None):
        self.paper_trading = paper_trading
        self.caller = caller or ResilientCaller("robinhood")
        self.order_caller = ResilientCaller(
            f"{self.caller.name}_orders",
            RetryPolicy(max_attempts=1),
            breaker=self.caller.breaker
        )
        self.authenticated = False
        self.login_time: Optional[datetime] = None
        self._paper_order_count = 0

    # =========================================================================
    # AUTHENTICATION
    # =========================================================================

    def login(
        self,
        username: str = None,
        password: str = None,
        mfa_code: str = None
    ) -> bool:
        """
        Login to Robinhood

        Parameters:
        -----------
        username : str - Email (defaults to ROBINHOOD_USERNAME)
        password : str - Password (defaults to ROBINHOOD_PASSWORD)
        mfa_code : str - 2FA code if enabled

        Returns:
        --------
        bool : Success
        """
        username = username or ROBINHOOD_USERNAME
        password = password or ROBINHOOD_PASSWORD

        if not username or not password:
            logger.error("No Robinhood credentials - set ROBINHOOD_USERNAME / ROBINHOOD_PASSWORD")
            return False

        logger.info(f"Logging into Robinhood as {username}...")

        kwargs = {'store_session': True}
        if mfa_code:
            kwargs['mfa_code'] = mfa_code

        try:
            result = self.caller.call(rh.login, username, password, **kwargs)
        except UpstreamUnavailableError as e:
            logger.error(f"Login error: {e}")
            return False

        if not result:
            logger.error("Login failed - no result returned")
            return False

        self.authenticated = True
        self.login_time = datetime.now()
        logger.info("Login successful")
        return True

    def logout(self):
        """Logout from Robinhood"""
        if self.authenticated:
            try:
                rh.logout()
            except Exception as e:
                logger.warning(f"Logout error: {e}")
        self.authenticated = False
        logger.info("Logged out")

    def _check_auth(self):
        if not self.authenticated:
            raise NotAuthenticatedError("Not authenticated. Call login() first.")

    # =========================================================================
    # MARKET DATA
    # =========================================================================

    def get_market_data(self, symbol: str) -> MarketData:
        """
        Current quote for symbol

        Price is the last trade (extended hours when present), volume comes
        from the day's fundamentals.
        """
        self._check_auth()

        quotes = self.caller.call(rh.stocks.get_quotes, symbol) or []
        quote = quotes[0] if quotes and quotes[0] else None
        if quote is None:
            raise UpstreamUnavailableError("robinhood", f"no quote for {symbol}")

        price = _float(quote.get('last_extended_hours_trade_price')) or _float(quote.get('last_trade_price'))
        if price <= 0:
            raise UpstreamUnavailableError("robinhood", f"invalid price for {symbol}")

        fundamentals = self.caller.call(rh.stocks.get_fundamentals, symbol) or []
        volume = _float(fundamentals[0].get('volume')) if fundamentals and fundamentals[0] else 0.0

        return MarketData(
            symbol=symbol,
            price=price,
            volume=int(volume),
            bid=_float(quote.get('bid_price')),
            ask=_float(quote.get('ask_price')),
            timestamp=datetime.now()
        )

    # =========================================================================
    # ACCOUNT DATA
    # =========================================================================

    def get_account(self) -> Account:
        """Portfolio value, buying power and trading status"""
        self._check_auth()

        portfolio = self.caller.call(rh.profiles.load_portfolio_profile) or {}
        account = self.caller.call(rh.profiles.load_account_profile) or {}
        day_trades = self.caller.call(rh.account.get_day_trades) or {}

        if not portfolio or not account:
            raise UpstreamUnavailableError("robinhood", "empty account profile")

        blocked = bool(account.get('deactivated')) or bool(account.get('only_position_closing_trades'))

        return Account(
            portfolio_value=_float(portfolio.get('equity')),
            buying_power=_float(account.get('buying_power')),
            cash=_float(account.get('cash')),
            day_trade_count=len(day_trades.get('equity_day_trades', []) or []),
            trading_blocked=blocked
        )

    def get_positions(self) -> List[BrokerPosition]:
        """Open stock positions"""
        self._check_auth()

        holdings: Dict[str, Dict] = self.caller.call(rh.account.build_holdings) or {}

        positions = []
        for symbol, holding in holdings.items():
            qty = _float(holding.get('quantity'))
            if qty == 0:
                continue
            positions.append(BrokerPosition(
                symbol=symbol,
                qty=qty,
                current_price=_float(holding.get('price')),
                unrealized_pl=_float(holding.get('equity_change')),
                avg_entry_price=_float(holding.get('average_buy_price'))
            ))
        return positions

    # =========================================================================
    # ORDER EXECUTION
    # =========================================================================

    def submit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: int,
        order_type: str = 'market',
        limit_price: float = None
    ) -> TradeResult:
        """
        Submit an equity order

        Parameters:
        -----------
        symbol : str
        side : OrderSide - BUY or SELL
        quantity : int - Shares (> 0)
        order_type : str - 'market' or 'limit'
        limit_price : float - Required for limit orders

        Returns:
        --------
        TradeResult : success flag, broker order id when available
        """
        if quantity <= 0:
            return TradeResult(success=False, message="Quantity must be positive", side=side)

        if order_type == 'limit' and not limit_price:
            return TradeResult(success=False, message="Limit order requires a limit price", side=side)

        if self.paper_trading:
            self._paper_order_count += 1
            order_id = f"paper-{self._paper_order_count}"
            logger.info(f"[PAPER] {side.value.upper()} {quantity} {symbol} ({order_type}"
                        f"{f' @ {limit_price:.2f}' if limit_price else ''})")
            return TradeResult(
                success=True,
                message=f"Paper {side.value} order for {quantity} {symbol}",
                order_id=order_id,
                side=side,
                quantity=quantity
            )

        self._check_auth()

        if order_type == 'limit':
            fn = rh.orders.order_buy_limit if side == OrderSide.BUY else rh.orders.order_sell_limit
            args = (symbol, quantity, round(limit_price, 2))
        else:
            fn = rh.orders.order_buy_market if side == OrderSide.BUY else rh.orders.order_sell_market
            args = (symbol, quantity)

        try:
            result = self.order_caller.call(fn, *args) or {}
        except UpstreamUnavailableError as e:
            logger.error(f"Error submitting {side.value} order for {symbol}: {e}")
            return TradeResult(success=False, message=str(e), side=side)

        order_id = result.get('id')
        if not order_id:
            message = result.get('detail') or "Order rejected by broker"
            logger.error(f"{side.value.upper()} order for {symbol} rejected: {message}")
            return TradeResult(success=False, message=message, side=side)

        logger.info(f"{side.value.upper()} order submitted: {quantity} {symbol} (id: {order_id})")
        return TradeResult(
            success=True,
            message=f"{side.value} order submitted for {quantity} {symbol}",
            order_id=order_id,
            side=side,
            quantity=quantity
        )
