"""Backsolve request models.

Requests are built once per call by the caller (or the service boundary),
consumed by one optimizer run, and never persisted.

Field-level constraints live here. Cross-field rules (target class present in
the share totals, exactly one backsolve scenario, probability sums) are
checked by the optimizers so that every rejection carries the failing field
name in a ``RequestValidationError``.
"""

from typing import Dict, List, Literal, Optional, Tuple
from decimal import Decimal
from pydantic import Field, model_validator

from .base import DomainModel, MoneyAmount
from .black_scholes import BlackScholesParams
from .breakpoints import Breakpoint


ProbabilityFormat = Literal["fraction", "percentage"]
SolverMethod = Literal["hybrid", "bisection"]


# =============================================================================
# Solver Options
# =============================================================================

class SolverOptions(DomainModel):
    """Per-request overrides for the root finder.

    Unset fields fall back to ``opm_domain.config.settings``.
    """

    tolerance: Optional[float] = Field(
        default=None,
        gt=0,
        allow_inf_nan=False,
        description="Tolerance on the per-share price residual, relative for prices below 1.0"
    )

    max_iterations: Optional[int] = Field(
        default=None,
        ge=1,
        description="Maximum refinement iterations after bracketing"
    )

    initial_bracket: Optional[Tuple[float, float]] = Field(
        default=None,
        description="Starting (low, high) enterprise values; high grows if it does not bound the root"
    )

    method: Optional[SolverMethod] = Field(
        default=None,
        description="'hybrid' (secant with bisection fallback) or 'bisection'"
    )

    @model_validator(mode='after')
    def validate_bracket(self):
        """Validate that the bracket is ordered and non-negative."""
        if self.initial_bracket is not None:
            lo, hi = self.initial_bracket
            if lo < 0:
                raise ValueError("initial_bracket lower bound cannot be negative")
            if hi <= lo:
                raise ValueError("initial_bracket upper bound must exceed lower bound")
        return self


# =============================================================================
# Single Backsolve
# =============================================================================

class BacksolveRequest(DomainModel):
    """Single-scenario backsolve request.

    Example:
        BacksolveRequest(
            target_fmv=Decimal("1.25"),
            security_class_id="common",
            black_scholes_params=BlackScholesParams(...),
            breakpoints=[...],
            total_shares=Decimal("20000000"),
            share_class_totals={"common": 12_000_000, "series_a": 4_000_000, ...},
        )
    """

    target_fmv: Decimal = Field(
        description="Observed price per share to reproduce (must be positive)"
    )

    security_class_id: str = Field(
        description="Security class whose price is observed"
    )

    black_scholes_params: BlackScholesParams

    breakpoints: List[Breakpoint] = Field(
        default_factory=list,
        description="Breakpoints from the waterfall provider (any order)"
    )

    total_shares: Decimal = Field(
        description="Total shares outstanding across all classes (seeds the search bracket)"
    )

    share_class_totals: Dict[str, Decimal] = Field(
        default_factory=dict,
        description="Share count per security class"
    )

    solver_options: Optional[SolverOptions] = None


# =============================================================================
# Weighted (PWERM) Backsolve
# =============================================================================

class WeightedScenario(BlackScholesParams):
    """Scenario in a weighted backsolve.

    Carries its own Black-Scholes parameters (exit paths can differ in
    horizon and volatility) and either a fixed enterprise value or the
    ``is_backsolve`` flag marking it as the scenario to solve.

    Example:
        WeightedScenario(name="IPO", probability=Decimal("0.3"),
                         time_to_liquidity=Decimal("2"), volatility=Decimal("0.5"),
                         risk_free_rate=Decimal("0.04"),
                         enterprise_value=Decimal("150000000"))
        WeightedScenario(name="Stay private", probability=Decimal("0.7"),
                         time_to_liquidity=Decimal("4"), volatility=Decimal("0.65"),
                         risk_free_rate=Decimal("0.045"), is_backsolve=True)
    """

    name: str = Field(min_length=1, description="Scenario name (e.g., 'IPO', 'M&A')")

    probability: Decimal = Field(
        ge=0,
        description="Scenario weight, as a fraction or a percentage per the request format"
    )

    enterprise_value: Optional[MoneyAmount] = Field(
        default=None,
        description="Fixed enterprise value; required unless is_backsolve is set"
    )

    is_backsolve: bool = Field(
        default=False,
        description="Whether this scenario's enterprise value is solved for"
    )

    breakpoints: Optional[List[Breakpoint]] = Field(
        default=None,
        description="Scenario-specific breakpoints; the request's breakpoints apply when unset"
    )

    share_class_totals: Optional[Dict[str, Decimal]] = Field(
        default=None,
        description="Scenario-specific share counts; the request's totals apply when unset"
    )

    def black_scholes_params(self) -> BlackScholesParams:
        """Black-Scholes parameters of this scenario alone."""
        return BlackScholesParams(
            time_to_liquidity=self.time_to_liquidity,
            volatility=self.volatility,
            risk_free_rate=self.risk_free_rate,
            dividend_yield=self.dividend_yield,
        )


class WeightedBacksolveRequest(DomainModel):
    """Weighted backsolve across PWERM scenarios."""

    target_fmv: Decimal = Field(
        description="Observed price per share the probability-weighted blend must match"
    )

    security_class_id: str

    scenarios: List[WeightedScenario] = Field(default_factory=list)

    breakpoints: List[Breakpoint] = Field(default_factory=list)

    total_shares: Decimal

    share_class_totals: Dict[str, Decimal] = Field(default_factory=dict)

    probability_format: ProbabilityFormat = Field(
        default="fraction",
        description="Whether probabilities are fractions (sum to 1) or percentages (sum to 100)"
    )

    solver_options: Optional[SolverOptions] = None


# =============================================================================
# Hybrid PWERM
# =============================================================================

class HybridScenario(DomainModel):
    """Scenario with its own observed price, backsolved independently."""

    id: Optional[str] = None

    name: str = Field(min_length=1)

    probability: Decimal = Field(ge=0)

    target_fmv: Decimal = Field(description="Price per share to reproduce in this scenario")

    black_scholes_params: Optional[BlackScholesParams] = Field(
        default=None,
        description="Scenario overrides; global parameters apply when unset"
    )

    breakpoints: Optional[List[Breakpoint]] = None


class HybridPWERMRequest(DomainModel):
    """Hybrid PWERM request: one backsolve per scenario, blended by probability."""

    security_class_id: str

    scenarios: List[HybridScenario] = Field(default_factory=list)

    global_black_scholes_params: BlackScholesParams

    global_breakpoints: List[Breakpoint] = Field(default_factory=list)

    total_shares: Decimal

    share_class_totals: Dict[str, Decimal] = Field(default_factory=dict)

    probability_format: ProbabilityFormat = "fraction"

    target_weighted_fmv: Optional[Decimal] = Field(
        default=None,
        description="Optional blended price to compare against"
    )

    solver_options: Optional[SolverOptions] = None
