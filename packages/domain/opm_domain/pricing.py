"""Black-Scholes option pricing.

The OPM treats every slice of enterprise value between two breakpoints as a
call spread on the whole company. This module prices those calls.

Formula (European call with continuous dividend yield):

    C = S * e^(-qT) * N(d1) - K * e^(-rT) * N(d2)
    d1 = [ln(S/K) + (r - q + sigma^2 / 2) * T] / (sigma * sqrt(T))
    d2 = d1 - sigma * sqrt(T)

Degenerate inputs never raise:
    - spot <= 0: the call is worthless
    - strike <= 0: the call is the discounted spot, S * e^(-qT)
    - time <= 0 or volatility <= 0: intrinsic value,
      max(S * e^(-qT) - K * e^(-rT), 0), since the valuation date can
      coincide with the liquidity date
"""

import math
from dataclasses import dataclass
from typing import Optional

from scipy.stats import norm

from .schemas import BlackScholesParams


@dataclass(frozen=True)
class CallResult:
    """Call value with the intermediate Black-Scholes terms.

    ``d1``/``d2`` are None when the degenerate-input policy applied and no
    distribution terms were computed.
    """

    value: float
    d1: Optional[float] = None
    d2: Optional[float] = None
    nd1: float = 1.0
    nd2: float = 1.0


@dataclass(frozen=True)
class CallGreeks:
    """Sensitivities of a call.

    Vega and rho are per 1 percentage point, theta per calendar day, matching
    how valuation reports quote them.
    """

    delta: float
    gamma: float
    vega: float
    theta: float
    rho: float


def black_scholes_call(
    spot: float,
    strike: float,
    time: float,
    vol: float,
    rate: float,
    dividend_yield: float = 0.0,
) -> CallResult:
    """Price a European call and return the intermediate terms."""
    if spot <= 0:
        return CallResult(value=0.0, nd1=0.0, nd2=0.0)

    discounted_spot = spot * math.exp(-dividend_yield * time)

    if strike <= 0:
        return CallResult(value=discounted_spot)

    if time <= 0 or vol <= 0:
        intrinsic = discounted_spot - strike * math.exp(-rate * time)
        in_the_money = intrinsic > 0
        return CallResult(
            value=max(intrinsic, 0.0),
            nd1=1.0 if in_the_money else 0.0,
            nd2=1.0 if in_the_money else 0.0,
        )

    sqrt_t = math.sqrt(time)
    d1 = (math.log(spot / strike) + (rate - dividend_yield + 0.5 * vol * vol) * time) / (vol * sqrt_t)
    d2 = d1 - vol * sqrt_t
    nd1 = float(norm.cdf(d1))
    nd2 = float(norm.cdf(d2))

    value = discounted_spot * nd1 - strike * math.exp(-rate * time) * nd2

    # Rounding can leave deep out-of-the-money calls a hair below zero
    return CallResult(value=max(value, 0.0), d1=d1, d2=d2, nd1=nd1, nd2=nd2)


def call_value(
    spot: float,
    strike: float,
    time: float,
    vol: float,
    rate: float,
    dividend_yield: float = 0.0,
) -> float:
    """Black-Scholes value of a European call (always >= 0)."""
    return black_scholes_call(spot, strike, time, vol, rate, dividend_yield).value


def call_spread(
    spot: float,
    lower_strike: float,
    upper_strike: Optional[float],
    params: BlackScholesParams,
) -> float:
    """Value of the slice of ``spot`` between two strikes.

    Long a call at ``lower_strike``, short a call at ``upper_strike``. With
    no upper strike the slice is uncapped and equals the lower call.
    """
    time, vol, rate, dividend_yield = params.as_floats()
    lower = call_value(spot, lower_strike, time, vol, rate, dividend_yield)
    if upper_strike is None:
        return lower
    upper = call_value(spot, upper_strike, time, vol, rate, dividend_yield)
    return max(lower - upper, 0.0)


def call_greeks(
    spot: float,
    strike: float,
    time: float,
    vol: float,
    rate: float,
    dividend_yield: float = 0.0,
) -> CallGreeks:
    """Closed-form Greeks of a European call.

    Raises:
        ValueError: If spot, strike, time or volatility is not positive
    """
    if spot <= 0 or strike <= 0 or time <= 0 or vol <= 0:
        raise ValueError(
            "Greeks require positive spot, strike, time and volatility, got "
            f"spot={spot}, strike={strike}, time={time}, vol={vol}"
        )

    result = black_scholes_call(spot, strike, time, vol, rate, dividend_yield)
    sqrt_t = math.sqrt(time)
    pdf_d1 = float(norm.pdf(result.d1))
    dividend_discount = math.exp(-dividend_yield * time)
    rate_discount = math.exp(-rate * time)

    delta = dividend_discount * result.nd1
    gamma = dividend_discount * pdf_d1 / (spot * vol * sqrt_t)
    vega = spot * dividend_discount * pdf_d1 * sqrt_t / 100
    theta = (
        -(spot * dividend_discount * pdf_d1 * vol) / (2 * sqrt_t)
        - rate * strike * rate_discount * result.nd2
        + dividend_yield * spot * dividend_discount * result.nd1
    ) / 365
    rho = strike * time * rate_discount * result.nd2 / 100

    return CallGreeks(delta=delta, gamma=gamma, vega=vega, theta=theta, rho=rho)
