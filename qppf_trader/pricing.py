"""
================================================================================
BLACK-SCHOLES PRICING ENGINE
================================================================================

Implements:
- Black-Scholes option pricing
- Gamma (the input to dealer gamma exposure) and Vega
- Implied volatility (Brent's method + Newton-Raphson fallback)
- A bounded IV estimate for flow contracts that carry a premium but no IV

================================================================================
"""

import numpy as np
from scipy.stats import norm
from scipy.optimize import brentq
import logging

from qppf_trader.config import (
    OptionType,
    RISK_FREE_RATE, DIVIDEND_YIELD, MIN_IV, MAX_IV
)

logger = logging.getLogger(__name__)


class BlackScholes:
    """
    European Black-Scholes with a continuous dividend yield

    Only what the GEX path needs: price and vega to back IV out of a
    flow premium, and unit gamma e^(-qT)·N'(d1) / (S·σ·√T) for exposure.
    T is in years.
    """

    def __init__(self, risk_free_rate: float = RISK_FREE_RATE, dividend_yield: float = DIVIDEND_YIELD):
        self.r = risk_free_rate
        self.q = dividend_yield

    @staticmethod
    def _validate_inputs(S: float, K: float, T: float, sigma: float) -> bool:
        # Degenerate contracts carry no gamma or vega
        return S > 0 and K > 0 and T > 0 and sigma > 0

    def _d1(self, S: float, K: float, T: float, sigma: float) -> float:
        return (np.log(S / K) + (self.r - self.q + 0.5 * sigma**2) * T) / (sigma * np.sqrt(T))

    def price(self, S: float, K: float, T: float, sigma: float, option_type: OptionType) -> float:
        """Theoretical premium; intrinsic value at or past expiry"""
        if T <= 0:
            if option_type == OptionType.CALL:
                return max(S - K, 0.0)
            return max(K - S, 0.0)

        if not self._validate_inputs(S, K, T, sigma):
            return 0.0

        d1 = self._d1(S, K, T, sigma)
        d2 = d1 - sigma * np.sqrt(T)

        if option_type == OptionType.CALL:
            price = (S * np.exp(-self.q * T) * norm.cdf(d1) -
                     K * np.exp(-self.r * T) * norm.cdf(d2))
        else:
            price = (K * np.exp(-self.r * T) * norm.cdf(-d2) -
                     S * np.exp(-self.q * T) * norm.cdf(-d1))

        return max(float(price), 0.0)

    def gamma(self, S: float, K: float, T: float, sigma: float) -> float:
        """Unit gamma, identical for calls and puts; 0.0 for degenerate inputs"""
        if not self._validate_inputs(S, K, T, sigma):
            return 0.0

        d1 = self._d1(S, K, T, sigma)

        return float((np.exp(-self.q * T) * norm.pdf(d1)) / (S * sigma * np.sqrt(T)))

    def vega(self, S: float, K: float, T: float, sigma: float) -> float:
        """dV/dsigma per 1.00 of volatility"""
        if not self._validate_inputs(S, K, T, sigma):
            return 0.0

        d1 = self._d1(S, K, T, sigma)

        return float(S * np.exp(-self.q * T) * np.sqrt(T) * norm.pdf(d1))

    def implied_volatility(
        self,
        market_price: float,
        S: float, K: float, T: float,
        option_type: OptionType,
        precision: float = 1e-6,
        max_iterations: int = 100
    ) -> float:
        """
        Volatility that reproduces market_price, or 0.0 when none exists

        Brent on [0.001, 5.0] first, Newton from 0.30 if Brent cannot bracket.
        """
        if market_price <= 0 or T <= 0 or S <= 0 or K <= 0:
            return 0.0

        if option_type == OptionType.CALL:
            intrinsic = max(S - K, 0)
        else:
            intrinsic = max(K - S, 0)

        # Price below intrinsic is invalid
        if market_price < intrinsic * 0.99:
            return 0.0

        def objective(sigma):
            return self.price(S, K, T, sigma, option_type) - market_price

        try:
            return float(brentq(objective, 0.001, 5.0, xtol=precision, maxiter=max_iterations))
        except (ValueError, RuntimeError):
            pass

        # Fallback: Newton-Raphson
        sigma = 0.30
        for _ in range(max_iterations):
            price = self.price(S, K, T, sigma, option_type)
            vega = self.vega(S, K, T, sigma)

            if abs(vega) < 1e-10:
                return 0.0

            diff = market_price - price
            if abs(diff) < precision:
                return sigma

            sigma = max(0.001, min(sigma + diff / vega, 5.0))

        return 0.0


def approximate_implied_volatility(
    premium: float,
    spot: float,
    strike: float,
    time_to_expiry: float,
    is_call: bool
) -> float:
    """
    Closed-form ATM approximation: premium / reference * sqrt(2π / T)

    Crude - used only when the solver cannot bracket a root.
    """
    if premium <= 0 or time_to_expiry <= 0:
        return MIN_IV
    reference = spot if is_call else strike
    if reference <= 0:
        return MIN_IV
    iv = premium / reference * np.sqrt(2 * np.pi / time_to_expiry)
    return float(np.clip(iv, MIN_IV, MAX_IV))


def estimate_implied_volatility(
    premium: float,
    spot: float,
    strike: float,
    time_to_expiry: float,
    is_call: bool,
    model: BlackScholes = None
) -> float:
    """
    Estimate IV for a contract quoted by premium only

    Always within [MIN_IV, MAX_IV].
    """
    model = model or BlackScholes()
    option_type = OptionType.CALL if is_call else OptionType.PUT

    iv = model.implied_volatility(premium, spot, strike, time_to_expiry, option_type)
    if iv <= 0:
        logger.debug(f"IV solver failed for K={strike} premium={premium}, using approximation")
        return approximate_implied_volatility(premium, spot, strike, time_to_expiry, is_call)

    return float(np.clip(iv, MIN_IV, MAX_IV))
