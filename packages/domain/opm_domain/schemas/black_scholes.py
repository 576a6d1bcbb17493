"""Black-Scholes parameter models.

One set of parameters describes one valuation scenario. During a backsolve
only the enterprise value (the spot of every call) varies; these parameters
stay fixed, which is why the model is frozen.
"""

from decimal import Decimal
from pydantic import Field

from .base import FrozenModel


class BlackScholesParams(FrozenModel):
    """Black-Scholes inputs shared by every breakpoint call in a scenario.

    Example:
        BlackScholesParams(
            time_to_liquidity=Decimal("3"),    # 3 years to exit
            volatility=Decimal("0.60"),        # 60% equity volatility
            risk_free_rate=Decimal("0.045"),   # 4.5% treasury yield
        )
    """

    time_to_liquidity: Decimal = Field(
        gt=0,
        description="Years until the expected liquidity event (T)"
    )

    volatility: Decimal = Field(
        gt=0,
        description="Annualized equity volatility as decimal (sigma), e.g. 0.60 for 60%"
    )

    risk_free_rate: Decimal = Field(
        ge=-1,
        le=1,
        description="Annualized risk-free rate as decimal (r); may be negative in low-rate regimes"
    )

    dividend_yield: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Continuous dividend yield as decimal (q), typically 0 for private companies"
    )

    def as_floats(self) -> tuple[float, float, float, float]:
        """Return ``(time, volatility, rate, dividend_yield)`` for the pricer."""
        return (
            float(self.time_to_liquidity),
            float(self.volatility),
            float(self.risk_free_rate),
            float(self.dividend_yield),
        )
