"""
================================================================================
OPTIONS FLOW
================================================================================

Unusual-options-flow alerts -> FlowSentiment and OptionContracts.

- parse_alert: tolerant parser for provider payloads
- analyze_flow: rolling 2-hour sentiment statistics
- contract_from_alert: alert -> OptionContract for gamma exposure
- UnusualWhalesClient: HTTP client for /api/option-trades/flow-alerts

================================================================================
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import requests

from qppf_trader.config import (
    FlowAlert, FlowSentiment, OptionContract, OptionType, Sentiment,
    FLOW_WINDOW_HOURS, LARGE_TRADE_PREMIUM, UNUSUAL_FLOW_MIN_ALERTS,
    DOMINANT_SENTIMENT_THRESHOLD, RECENT_ALERTS_KEPT,
    UNUSUAL_WHALES_API_KEY, UNUSUAL_WHALES_BASE_URL, HTTP_TIMEOUT_SECONDS
)
from qppf_trader.errors import UpstreamUnavailableError
from qppf_trader.resilience import ResilientCaller

logger = logging.getLogger(__name__)


# =============================================================================
# PARSING
# =============================================================================

def _number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        return None


def _parse_timestamp(value: Any, now: datetime) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif value:
        try:
            ts = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
        except ValueError:
            return now
    else:
        return now

    # Compare in naive local time
    if ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


def infer_sentiment(option_type: str) -> Sentiment:
    """Calls are bullish, puts bearish"""
    option_type = (option_type or '').lower()
    if option_type == 'call':
        return Sentiment.BULLISH
    if option_type == 'put':
        return Sentiment.BEARISH
    return Sentiment.NEUTRAL


def parse_alert(raw: Dict, now: datetime = None) -> FlowAlert:
    """
    Build a FlowAlert from a provider payload

    Missing fields fall back to zero / empty values - never raises on
    absent keys.
    """
    if now is None:
        now = datetime.now()

    option_type = (raw.get('option_type') or raw.get('optionType') or '').lower()

    return FlowAlert(
        symbol=raw.get('symbol') or raw.get('ticker') or '',
        strike=_number(raw.get('strike_price', raw.get('strike'))),
        expiry=_parse_date(raw.get('expiration_date') or raw.get('expiry')),
        option_type=option_type,
        premium=_number(raw.get('premium', raw.get('price'))),
        volume=int(_number(raw.get('size', raw.get('volume')))),
        open_interest=int(_number(raw.get('open_interest', raw.get('openInterest')))),
        timestamp=_parse_timestamp(raw.get('timestamp') or raw.get('created_at'), now),
        sentiment=infer_sentiment(option_type),
        alert_type=raw.get('trade_type') or raw.get('alert_type') or ''
    )


# =============================================================================
# SENTIMENT
# =============================================================================

def analyze_flow(alerts: List[FlowAlert], now: datetime = None) -> FlowSentiment:
    """
    Options-flow statistics over the recent window

    Parameters:
    -----------
    alerts : List[FlowAlert] - Newest first, as the provider returns them
    now : datetime - Window anchor

    Returns:
    --------
    FlowSentiment : neutral zeros when there are no alerts
    """
    if not alerts:
        return FlowSentiment()

    if now is None:
        now = datetime.now()
    cutoff = now - timedelta(hours=FLOW_WINDOW_HOURS)
    recent = [a for a in alerts if a.timestamp > cutoff]

    bullish = sum(1 for a in recent if a.sentiment == Sentiment.BULLISH)
    bearish = sum(1 for a in recent if a.sentiment == Sentiment.BEARISH)
    n = len(recent)

    score = (bullish - bearish) / n if n > 0 else 0.0
    avg_premium = sum(a.premium for a in recent) / n if n > 0 else 0.0
    large_trades = sum(1 for a in recent if a.premium > LARGE_TRADE_PREMIUM)

    if score > DOMINANT_SENTIMENT_THRESHOLD:
        dominant = Sentiment.BULLISH
    elif score < -DOMINANT_SENTIMENT_THRESHOLD:
        dominant = Sentiment.BEARISH
    else:
        dominant = Sentiment.NEUTRAL

    return FlowSentiment(
        sentiment_score=score,
        total_alert_count=len(alerts),
        recent_alert_count=n,
        bullish_count=bullish,
        bearish_count=bearish,
        avg_premium=avg_premium,
        large_trade_count=large_trades,
        has_unusual_flow=n > UNUSUAL_FLOW_MIN_ALERTS,
        dominant_sentiment=dominant,
        recent_alerts=recent[:RECENT_ALERTS_KEPT]
    )


def contract_from_alert(alert: FlowAlert) -> Optional[OptionContract]:
    """
    Convert a flow alert into an OptionContract

    Open interest falls back to traded volume. Flow alerts carry no IV, so
    the estimator derives it from the premium.
    """
    if not alert.strike or not alert.expiry or not alert.volume:
        return None

    return OptionContract(
        strike=alert.strike,
        expiry=alert.expiry,
        option_type=OptionType.PUT if alert.option_type == 'put' else OptionType.CALL,
        open_interest=alert.open_interest or alert.volume,
        implied_volatility=None,
        premium=alert.premium or None,
        volume=alert.volume
    )


def contracts_from_alerts(alerts: List[FlowAlert]) -> List[OptionContract]:
    contracts = []
    for alert in alerts:
        contract = contract_from_alert(alert)
        if contract is not None:
            contracts.append(contract)
    return contracts


# =============================================================================
# PROVIDER CLIENT
# =============================================================================

class UnusualWhalesClient:
    """
    Unusual Whales flow-alert client

    Any transport or payload problem surfaces as UpstreamUnavailableError so
    the trading loop can decide how to degrade.
    """

    FLOW_ENDPOINT = "/api/option-trades/flow-alerts"

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        session: requests.Session = None,
        caller: ResilientCaller = None
    ):
        self.api_key = api_key or UNUSUAL_WHALES_API_KEY
        self.base_url = base_url or UNUSUAL_WHALES_BASE_URL
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        self.caller = caller or ResilientCaller("unusual_whales")

    def _get(self, endpoint: str, params: Dict = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        resp = self.session.get(url, params=params, timeout=HTTP_TIMEOUT_SECONDS)
        resp.raise_for_status()
        return resp.json()

    def get_options_flow(
        self,
        symbol: str,
        start: str = None,
        end: str = None,
        now: datetime = None
    ) -> List[FlowAlert]:
        """
        Fetch flow alerts for symbol (default window: last 24 hours)
        """
        if now is None:
            now = datetime.now()
        params = {
            "symbol": symbol,
            "start": start or (now - timedelta(days=1)).strftime('%Y-%m-%d'),
            "end": end or now.strftime('%Y-%m-%d'),
        }
        logger.debug(f"Fetching options flow for {symbol} from {params['start']} to {params['end']}")

        body = self.caller.call(self._get, self.FLOW_ENDPOINT, params)

        data = body.get('data', body) if isinstance(body, dict) else body
        if not isinstance(data, list):
            raise UpstreamUnavailableError("unusual_whales", "flow response is not a list")

        alerts = [parse_alert(item, now) for item in data if isinstance(item, dict)]
        logger.info(f"Received {len(alerts)} flow alerts for {symbol}")
        return alerts
