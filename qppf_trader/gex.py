"""
================================================================================
GAMMA EXPOSURE (GEX) ESTIMATOR
================================================================================

Turns a list of option contracts plus a spot price into a dealer gamma
exposure profile.

GEX Formula (per contract, $ per 1% move):
    GEX = unit_gamma * open_interest * 100 * spot^2 * 0.01

Sign convention:
    Calls contribute positive exposure, puts negative. This assumes dealers
    are net long calls and short puts - the standard GEX convention, not a
    measured fact about dealer books.

Zero Gamma Level (ZGL):
    Spot price where total GEX crosses zero, found by re-pricing gamma across
    41 spot levels in a +/-20% band and linearly interpolating the first sign
    change.

Reference: https://perfiliev.com/blog/how-to-calculate-gamma-exposure-and-zero-gamma-level/

================================================================================
"""

import numpy as np
from scipy.stats import norm
from typing import Dict, List, Optional, Tuple
from datetime import date, datetime, time, timedelta
import logging

from qppf_trader.config import (
    OptionContract, OptionType, GEXProfile, StrikeGEX, ProfilePoint,
    RISK_FREE_RATE, DIVIDEND_YIELD, CONTRACT_SIZE, GEX_MOVE_PCT, GEX_SCALE,
    DEFAULT_IV, MIN_DAYS_TO_EXPIRY, BUSINESS_DAYS_PER_YEAR,
    PROFILE_LOW_PCT, PROFILE_HIGH_PCT, PROFILE_LEVELS,
    MIN_REAL_CONTRACTS, SYNTHETIC_STRIKE_PCTS, SYNTHETIC_DAYS_TO_EXPIRY,
    SYNTHETIC_SEED
)
from qppf_trader.pricing import BlackScholes, estimate_implied_volatility

logger = logging.getLogger(__name__)


class GammaExposureEstimator:
    """
    Black-Scholes based dealer gamma exposure

    Pure function of its inputs - no I/O, no state between calls.
    """

    def __init__(
        self,
        risk_free_rate: float = RISK_FREE_RATE,
        dividend_yield: float = DIVIDEND_YIELD,
        contract_size: int = CONTRACT_SIZE
    ):
        self.r = risk_free_rate
        self.q = dividend_yield
        self.contract_size = contract_size
        self.bs = BlackScholes(risk_free_rate, dividend_yield)

    # =========================================================================
    # PER-CONTRACT MATH
    # =========================================================================

    def unit_gamma(
        self,
        spot: float,
        strike: float,
        time_to_expiry: float,
        implied_vol: float,
        risk_free_rate: float = None,
        dividend_yield: float = None
    ) -> float:
        """
        Black-Scholes gamma for one option (independent of open interest)

        Returns 0.0 for time_to_expiry <= 0, implied_vol <= 0 or spot <= 0.
        """
        if time_to_expiry <= 0 or implied_vol <= 0 or spot <= 0:
            return 0.0

        if risk_free_rate is None and dividend_yield is None:
            return self.bs.gamma(spot, strike, time_to_expiry, implied_vol)

        model = BlackScholes(
            self.r if risk_free_rate is None else risk_free_rate,
            self.q if dividend_yield is None else dividend_yield
        )
        return model.gamma(spot, strike, time_to_expiry, implied_vol)

    @staticmethod
    def time_to_expiry(expiry: date, now: datetime = None) -> float:
        """
        Business-day scaled year fraction until expiry

        Days are floored at one, so the result is always positive.
        """
        if now is None:
            now = datetime.now()
        expiry_dt = datetime.combine(expiry, time.min)
        diff_days = (expiry_dt - now).total_seconds() / 86400
        diff_days = max(MIN_DAYS_TO_EXPIRY, diff_days)
        return diff_days / 365 * (BUSINESS_DAYS_PER_YEAR / 365)

    def contract_gex(
        self,
        unit_gamma: float,
        contracts: float,
        spot: float,
        is_call: bool = True
    ) -> float:
        """Signed dollar exposure per 1% move: calls +, puts -"""
        gex = unit_gamma * contracts * self.contract_size * spot * spot * GEX_MOVE_PCT
        return gex if is_call else -gex

    def resolve_iv(self, contract: OptionContract, spot: float, time_to_expiry: float) -> float:
        """Explicit IV, else estimated from premium, else DEFAULT_IV"""
        if contract.implied_volatility:
            return contract.implied_volatility
        if contract.premium:
            return estimate_implied_volatility(
                contract.premium, spot, contract.strike, time_to_expiry, contract.is_call,
                model=self.bs
            )
        return DEFAULT_IV

    @staticmethod
    def _usable(contract: OptionContract) -> bool:
        return bool(contract.strike and contract.expiry and contract.open_interest > 0)

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    def calculate_gex(
        self,
        contracts: List[OptionContract],
        current_spot: float,
        now: datetime = None
    ) -> GEXProfile:
        """
        Calculate total GEX, per-strike GEX, spot profile and ZGL

        Parameters:
        -----------
        contracts : List[OptionContract]
        current_spot : float - Underlying price
        now : datetime - Valuation time (defaults to now)

        Returns:
        --------
        GEXProfile : all exposure figures in billions
        """
        if now is None:
            now = datetime.now()

        usable = [c for c in contracts if self._usable(c)]
        logger.debug(f"Calculating GEX for {len(usable)}/{len(contracts)} contracts at spot {current_spot}")

        total_call = 0.0
        total_put = 0.0
        per_strike: Dict[float, List[float]] = {}

        for contract in usable:
            T = self.time_to_expiry(contract.expiry, now)
            iv = self.resolve_iv(contract, current_spot, T)
            gamma = self.unit_gamma(current_spot, contract.strike, T, iv)
            gex = self.contract_gex(gamma, contract.open_interest, current_spot, contract.is_call)

            bucket = per_strike.setdefault(contract.strike, [0.0, 0.0])
            if contract.is_call:
                total_call += gex
                bucket[0] += gex
            else:
                total_put += gex
                bucket[1] += gex

        call_gex = total_call / GEX_SCALE
        put_gex = total_put / GEX_SCALE

        strikes = [
            StrikeGEX(
                strike=strike,
                gex=(call + put) / GEX_SCALE,
                call_gex=call / GEX_SCALE,
                put_gex=put / GEX_SCALE
            )
            for strike, (call, put) in sorted(per_strike.items())
        ]

        profile = self.spot_profile(usable, current_spot, now)
        zgl = self.find_zero_gamma_level(profile)

        return GEXProfile(
            total_gex=call_gex + put_gex,
            call_gex=call_gex,
            put_gex=put_gex,
            zero_gamma_level=zgl,
            current_spot=current_spot,
            per_strike=strikes,
            spot_profile=profile,
            timestamp=now
        )

    def spot_profile(
        self,
        contracts: List[OptionContract],
        current_spot: float,
        now: datetime = None
    ) -> List[ProfilePoint]:
        """
        Total GEX re-priced at PROFILE_LEVELS spot levels across the band

        IV is resolved once per contract at the current spot; gamma is
        recomputed at every level (contracts x levels grid).
        """
        if now is None:
            now = datetime.now()
        if current_spot <= 0:
            return []

        levels = np.linspace(current_spot * PROFILE_LOW_PCT, current_spot * PROFILE_HIGH_PCT, PROFILE_LEVELS)
        usable = [c for c in contracts if self._usable(c)]
        if not usable:
            return [ProfilePoint(float(s), 0.0) for s in levels]

        K = np.array([c.strike for c in usable], dtype=float)
        T = np.array([self.time_to_expiry(c.expiry, now) for c in usable])
        sigma = np.array([self.resolve_iv(c, current_spot, t) for c, t in zip(usable, T)])
        oi = np.array([c.open_interest for c in usable], dtype=float)
        sign = np.array([1.0 if c.is_call else -1.0 for c in usable])

        gamma = self._gamma_grid(levels, K, T, sigma)
        scale = self.contract_size * levels**2 * GEX_MOVE_PCT
        totals = (gamma * oi * sign).sum(axis=1) * scale

        return [
            ProfilePoint(spot_level=float(s), total_gex=float(g) / GEX_SCALE)
            for s, g in zip(levels, totals)
        ]

    def _gamma_grid(self, spots: np.ndarray, K: np.ndarray, T: np.ndarray, sigma: np.ndarray) -> np.ndarray:
        """Unit gamma for every (spot level, contract) pair"""
        S = spots[:, None]
        valid = (T > 0) & (sigma > 0) & (K > 0)
        T_safe = np.where(valid, T, 1.0)
        sigma_safe = np.where(valid, sigma, 1.0)
        K_safe = np.where(valid, K, 1.0)

        sqrt_t = np.sqrt(T_safe)
        d1 = (np.log(S / K_safe) + (self.r - self.q + 0.5 * sigma_safe**2) * T_safe) / (sigma_safe * sqrt_t)
        gamma = np.exp(-self.q * T_safe) * norm.pdf(d1) / (S * sigma_safe * sqrt_t)

        return np.where(valid, gamma, 0.0)

    @staticmethod
    def find_zero_gamma_level(profile: List[ProfilePoint]) -> Optional[float]:
        """
        First zero crossing of the spot profile, linearly interpolated

        Returns None when total GEX never changes sign across the band.
        """
        for current, nxt in zip(profile, profile[1:]):
            if (current.total_gex > 0 and nxt.total_gex < 0) or (current.total_gex < 0 and nxt.total_gex > 0):
                return nxt.spot_level - (nxt.spot_level - current.spot_level) * nxt.total_gex / (
                    nxt.total_gex - current.total_gex
                )
        return None

    # =========================================================================
    # SYNTHETIC FALLBACK
    # =========================================================================

    @staticmethod
    def synthetic_contracts(
        spot: float,
        rng: np.random.Generator = None,
        now: datetime = None
    ) -> List[OptionContract]:
        """
        Call+put pairs around spot with bounded random OI / IV / premium

        Only a data-sufficiency floor for sparse flow - not market data.
        """
        if rng is None:
            rng = np.random.default_rng(SYNTHETIC_SEED)
        if now is None:
            now = datetime.now()
        expiry = (now + timedelta(days=SYNTHETIC_DAYS_TO_EXPIRY)).date()

        contracts = []
        for pct in SYNTHETIC_STRIKE_PCTS:
            strike = float(round(spot * pct))
            for option_type in (OptionType.CALL, OptionType.PUT):
                intrinsic = spot - strike if option_type == OptionType.CALL else strike - spot
                contracts.append(OptionContract(
                    strike=strike,
                    expiry=expiry,
                    option_type=option_type,
                    open_interest=int(rng.integers(1000, 6000)),
                    implied_volatility=float(rng.uniform(0.20, 0.50)),
                    premium=float(max(1.0, intrinsic + rng.uniform(0, 10))),
                    volume=int(rng.integers(100, 600))
                ))
        return contracts

    def ensure_min_contracts(
        self,
        contracts: List[OptionContract],
        spot: float,
        rng: np.random.Generator = None,
        now: datetime = None
    ) -> Tuple[List[OptionContract], bool]:
        """
        Top up sparse contract lists with the synthetic set

        Returns:
        --------
        (contracts, used_synthetic)
        """
        real = [c for c in contracts if self._usable(c)]
        if len(real) >= MIN_REAL_CONTRACTS:
            return list(contracts), False

        logger.warning(
            f"Only {len(real)} usable option contracts (< {MIN_REAL_CONTRACTS}) - "
            f"adding synthetic contracts around {spot:.2f}"
        )
        return list(contracts) + self.synthetic_contracts(spot, rng, now), True
