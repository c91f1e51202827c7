"""
================================================================================
QPPF SIGNAL & RISK ENGINE - CONFIGURATION
================================================================================

Computes a composite trading signal for an equity/ETF from:

1. OPTIONS FLOW SENTIMENT
   - Rolling 2-hour window of unusual options alerts
   - Bullish/bearish counts, large premium trades

2. GAMMA EXPOSURE (GEX)
   - Black-Scholes unit gamma per contract
   - Dealer GEX per 1% move, spot profile, Zero Gamma Level

3. PRICE / VOLUME MOMENTUM
   - Short-horizon momentum from the rolling price history

4. RISK MANAGEMENT
   - Confidence-scaled sizing, risk multipliers
   - Position count, buying power and portfolio risk ceilings

All thresholds live here as named constants. The data model types shared by
the estimator, scorer and risk manager are defined at the bottom.

================================================================================
CONFIGURATION
================================================================================
"""

import os
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Deque, List, Optional

from dotenv import load_dotenv

load_dotenv()

# =============================================================================
# AUTHENTICATION - read from environment / .env
# =============================================================================

ROBINHOOD_USERNAME = os.environ.get("ROBINHOOD_USERNAME", "")
ROBINHOOD_PASSWORD = os.environ.get("ROBINHOOD_PASSWORD", "")
UNUSUAL_WHALES_API_KEY = os.environ.get("UNUSUAL_WHALES_API_KEY", "")
UNUSUAL_WHALES_BASE_URL = "https://api.unusualwhales.com"

# =============================================================================
# TRADING MODE
# =============================================================================

PAPER_TRADING = os.environ.get("PAPER_TRADING", "true").lower() not in ("0", "false", "no")
DEFAULT_SYMBOL = os.environ.get("QPPF_SYMBOL", "SPY")

# =============================================================================
# GAMMA EXPOSURE (Black-Scholes)
# =============================================================================

RISK_FREE_RATE = 0.05          # 5% annual
DIVIDEND_YIELD = 0.02          # 2% annual
CONTRACT_SIZE = 100            # Shares per option contract
GEX_MOVE_PCT = 0.01            # Exposure quoted per 1% move
GEX_SCALE = 1e9                # Reported in billions
DEFAULT_IV = 0.30              # When neither IV nor premium is known
MIN_IV = 0.10                  # IV estimate clamp
MAX_IV = 2.00
MIN_DAYS_TO_EXPIRY = 1.0       # Never zero or negative
BUSINESS_DAYS_PER_YEAR = 262

# Spot profile: +/-20% band, 41 levels
PROFILE_LOW_PCT = 0.80
PROFILE_HIGH_PCT = 1.20
PROFILE_LEVELS = 41

# Synthetic contract floor (sparse live flow)
MIN_REAL_CONTRACTS = 10
SYNTHETIC_STRIKE_PCTS = [0.90, 0.95, 0.98, 1.00, 1.02, 1.05, 1.10]
SYNTHETIC_DAYS_TO_EXPIRY = 30
SYNTHETIC_SEED = 42

# =============================================================================
# OPTIONS FLOW
# =============================================================================

FLOW_WINDOW_HOURS = 2          # Rolling window for "recent" alerts
LARGE_TRADE_PREMIUM = 50_000   # $50k premium = large trade
UNUSUAL_FLOW_MIN_ALERTS = 2    # Unusual when recent alerts > 2
DOMINANT_SENTIMENT_THRESHOLD = 0.2
RECENT_ALERTS_KEPT = 5

# =============================================================================
# SIGNAL CONFIGURATION
# =============================================================================

# Confidence
BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95          # Never certain
UNUSUAL_FLOW_BOOST = 0.3
STRONG_SENTIMENT_LEVEL = 0.5
STRONG_SENTIMENT_BOOST = 0.2
MODERATE_SENTIMENT_LEVEL = 0.3
MODERATE_SENTIMENT_BOOST = 0.1
LARGE_TRADES_MIN = 2           # > 2 large trades
LARGE_TRADES_BOOST = 0.15
ACTIVE_FLOW_MIN_ALERTS = 5     # > 5 recent alerts
ACTIVE_FLOW_BOOST = 0.1
ZGL_DISTANCE_PCT = 0.02        # Price > 2% from ZGL
ZGL_DISTANCE_BOOST = 0.1
GEX_ALIGNMENT_BOOST = 0.05
LOW_VOLUME_THRESHOLD = 1_000_000
LOW_VOLUME_PENALTY = 0.8

# Direction
SENTIMENT_OVERRIDE = 0.4       # |sentiment| > 0.4 decides outright
MIN_DIRECTION_VOTES = 2
INSTITUTIONAL_PREMIUM = 20_000 # Avg premium proxy for institutional size
HIGH_VOLUME_THRESHOLD = 30_000_000  # SPY-specific
TIGHT_SPREAD_PCT = 0.0001      # 0.01% of price
MOMENTUM_PERIODS = 3
MARKET_HOURS_BIAS_ENABLED = False  # Time-of-day direction vote (unvalidated)

# Strength weights (sum may exceed 1; result is capped)
STRENGTH_CONFIDENCE_WEIGHT = 0.5
STRENGTH_UNUSUAL_WEIGHT = 0.3
STRENGTH_LARGE_TRADE_WEIGHT = 0.2
STRENGTH_SENTIMENT_WEIGHT = 0.3
STRENGTH_LARGE_TRADE_NORM = 5

# History
HISTORY_LENGTH = 100

# Simulated execution
SIMULATION_MIN_CONFIDENCE = 0.6
SIMULATION_BASE_SHARES = 100

# =============================================================================
# RISK MANAGEMENT
# =============================================================================

MAX_PORTFOLIO_RISK = 0.05      # 5% of portfolio deployed
MAX_TRADE_RISK = 0.02          # 2% per trade
MIN_CONFIDENCE = 0.60
MAX_RISK_SCORE = 0.50
MAX_DRAWDOWN = 0.15
MAX_POSITION_COUNT = 10

MIN_CONFIDENCE_SCALE = 0.1     # Sizing clamp on confidence
MAX_CONFIDENCE_SCALE = 1.0
UNUSUAL_FLOW_SIZE_BOOST = 1.2
LARGE_TRADES_SIZE_MIN = 3
LARGE_TRADES_SIZE_BOOST = 1.15
CONFLICT_SIZE_PENALTY = 0.8
WEAK_SIGNAL_STRENGTH = 0.6
WEAK_SIGNAL_PENALTY = 0.9
MAX_RISK_MULTIPLIER = 1.5
REDUCE_FRACTION = 0.5          # Reduce when limited size < 50% of base
EMERGENCY_RISK_MULTIPLE = 2

# Risk score weights
CONFIDENCE_RISK_WEIGHT = 0.4
POSITION_RISK_WEIGHT = 0.3
CONFLICT_RISK_WEIGHT = 0.15
CONCENTRATION_RISK_WEIGHT = 0.1
TIMING_RISK_WEIGHT = 0.05
OPEN_CLOSE_TIMING_RISK = 0.3
BASE_TIMING_RISK = 0.1

# =============================================================================
# TIMING CONFIGURATION
# =============================================================================

POLL_INTERVAL_SECONDS = 30     # Signal every 30 seconds
RETRY_INTERVAL_SECONDS = 10    # After an error
FALLBACK_PRICE = 450.50

# Market hours (Eastern Time)
MARKET_OPEN_HOUR = 9
MARKET_OPEN_MINUTE = 30
MARKET_CLOSE_HOUR = 16
MARKET_CLOSE_MINUTE = 0
OPEN_RISK_UNTIL_MINUTE = 45    # 9:30-9:45 elevated risk
CLOSE_RISK_FROM_MINUTE = 45    # 15:45-16:00 elevated risk

# =============================================================================
# RESILIENT CLIENTS
# =============================================================================

HTTP_TIMEOUT_SECONDS = 10
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0
RETRY_MAX_DELAY = 30.0
RETRY_BACKOFF = 2.0
BREAKER_FAILURE_THRESHOLD = 5
BREAKER_RESET_SECONDS = 60

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL = os.environ.get("QPPF_LOG_LEVEL", "INFO")
LOG_DIR = "logs"
LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'

# =============================================================================
# ENUMS
# =============================================================================

class OptionType(Enum):
    CALL = "call"
    PUT = "put"

class Direction(Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    FLAT = "FLAT"

class Sentiment(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"

class Recommendation(Enum):
    EXECUTE = "execute"
    REDUCE = "reduce"
    REJECT = "reject"

class RiskStatus(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"

# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class OptionContract:
    """Single option line used for gamma exposure"""
    strike: float
    expiry: date
    option_type: OptionType
    open_interest: int
    implied_volatility: Optional[float] = None
    premium: Optional[float] = None
    volume: Optional[int] = None

    @property
    def is_call(self) -> bool:
        return self.option_type == OptionType.CALL


@dataclass(frozen=True)
class StrikeGEX:
    """Exposure aggregated at one strike (billions)"""
    strike: float
    gex: float
    call_gex: float
    put_gex: float


@dataclass(frozen=True)
class ProfilePoint:
    """Total exposure at a hypothetical spot level (billions)"""
    spot_level: float
    total_gex: float


@dataclass(frozen=True)
class GEXProfile:
    """Gamma exposure snapshot, $ per 1% move in billions"""
    total_gex: float
    call_gex: float
    put_gex: float
    zero_gamma_level: Optional[float]
    current_spot: float
    per_strike: List[StrikeGEX] = field(default_factory=list)
    spot_profile: List[ProfilePoint] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def call_wall(self) -> Optional[float]:
        """Strike with the largest call exposure"""
        calls = [s for s in self.per_strike if s.call_gex > 0]
        if not calls:
            return None
        return max(calls, key=lambda s: s.call_gex).strike

    @property
    def put_wall(self) -> Optional[float]:
        """Strike with the largest (absolute) put exposure"""
        puts = [s for s in self.per_strike if s.put_gex < 0]
        if not puts:
            return None
        return min(puts, key=lambda s: s.put_gex).strike


@dataclass(frozen=True)
class FlowAlert:
    """Raw options-flow alert from the flow provider"""
    symbol: str
    strike: float
    expiry: Optional[date]
    option_type: str
    premium: float
    volume: int
    open_interest: int
    timestamp: datetime
    sentiment: Sentiment = Sentiment.NEUTRAL
    alert_type: str = ""


@dataclass(frozen=True)
class FlowSentiment:
    """Aggregate statistics over the recent alert window"""
    sentiment_score: float = 0.0
    total_alert_count: int = 0
    recent_alert_count: int = 0
    bullish_count: int = 0
    bearish_count: int = 0
    avg_premium: float = 0.0
    large_trade_count: int = 0
    has_unusual_flow: bool = False
    dominant_sentiment: Sentiment = Sentiment.NEUTRAL
    recent_alerts: List[FlowAlert] = field(default_factory=list)


@dataclass(frozen=True)
class MarketData:
    """Quote snapshot for one cycle"""
    symbol: str
    price: float
    volume: int
    bid: float
    ask: float
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass(frozen=True)
class Signal:
    """Scored trading signal - one per cycle"""
    direction: Direction
    confidence: float
    strength: float
    sentiment: Sentiment
    long_reasons: List[str]
    short_reasons: List[str]
    market_data: MarketData
    flow: FlowSentiment
    gex: Optional[GEXProfile] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AlgorithmState:
    """Mutable per-symbol state, owned by a single algorithm instance"""
    symbol: str
    position_size: int = 0
    entry_price: float = 0.0
    entry_time: Optional[datetime] = None
    price_history: Deque[float] = field(default_factory=lambda: deque(maxlen=HISTORY_LENGTH))
    volume_history: Deque[int] = field(default_factory=lambda: deque(maxlen=HISTORY_LENGTH))
    trades_executed: int = 0
    total_pnl: float = 0.0
    is_active: bool = False


@dataclass(frozen=True)
class Account:
    """Broker account snapshot"""
    portfolio_value: float
    buying_power: float
    cash: float = 0.0
    day_trade_count: int = 0
    trading_blocked: bool = False


@dataclass(frozen=True)
class BrokerPosition:
    """Open position as reported by the broker"""
    symbol: str
    qty: float
    current_price: float
    unrealized_pl: float = 0.0
    avg_entry_price: float = 0.0

    @property
    def market_value(self) -> float:
        return abs(self.qty * self.current_price)


@dataclass(frozen=True)
class RiskAssessment:
    """Risk-bounded sizing decision for one signal"""
    position_size: int
    risk_score: float
    max_position_size: int
    confidence_multiplier: float
    risk_amount: float
    recommendation: Recommendation
    reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RiskReport:
    """Portfolio-level risk status for monitoring"""
    portfolio_risk: float
    position_count: int
    available_capacity: float
    risk_status: RiskStatus
    recommendations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TradeResult:
    """Outcome of an order submission attempt"""
    success: bool
    message: str
    order_id: Optional[str] = None
    side: Optional[OrderSide] = None
    quantity: int = 0


def print_config():
    """Print current configuration"""
    mode = "LIVE TRADING" if not PAPER_TRADING else "PAPER TRADING"
    print(f"""
{'='*70}
QPPF SIGNAL & RISK ENGINE
{'='*70}
Mode:             {mode}
Symbol:           {DEFAULT_SYMBOL}
Poll Interval:    {POLL_INTERVAL_SECONDS}s (retry {RETRY_INTERVAL_SECONDS}s)
{'='*70}
Risk Limits:
  Per Trade:      {MAX_TRADE_RISK:.0%}
  Portfolio:      {MAX_PORTFOLIO_RISK:.0%}
  Min Confidence: {MIN_CONFIDENCE:.0%}
  Max Risk Score: {MAX_RISK_SCORE:.0%}
  Max Positions:  {MAX_POSITION_COUNT}
{'='*70}
Flow Window:      {FLOW_WINDOW_HOURS}h (large trade > ${LARGE_TRADE_PREMIUM:,.0f})
GEX Profile:      {PROFILE_LEVELS} levels, {PROFILE_LOW_PCT:.0%}-{PROFILE_HIGH_PCT:.0%} of spot
{'='*70}
    """)
