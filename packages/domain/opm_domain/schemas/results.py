"""Allocation and backsolve result models.

Results are produced once per request and are immutable afterwards. Values
are floats: they come out of the Black-Scholes arithmetic, which runs in
binary floating point. Field names are snake_case in Python and camelCase
when dumped with ``by_alias=True`` for the JSON boundary.
"""

from typing import Dict, List, Optional, Tuple
from pydantic import Field

from .base import FrozenModel
from .black_scholes import BlackScholesParams
from ..errors import AllocationError


# =============================================================================
# Allocation
# =============================================================================

class ClassAllocation(FrozenModel):
    """Value allocated to one security class at a given enterprise value."""

    security_class: str
    shares: float = Field(description="Class share count (0 when the cap table has none)")
    total_value: float = Field(description="Sum of the class's shares of every tranche")
    value_per_share: float = Field(description="total_value / shares, or 0 when shares is 0")
    percent_of_total: float = Field(description="Share of total distributed value, 0-100")


class TrancheAllocation(FrozenModel):
    """Call spread between one breakpoint and the next.

    ``upper_strike`` is None for the highest breakpoint, whose tranche is an
    uncapped call.
    """

    breakpoint_id: str
    kind: str
    lower_strike: float
    upper_strike: Optional[float] = None
    lower_call_value: float
    upper_call_value: float
    tranche_value: float
    participation_total: float = Field(description="Sum of participation percentages at the breakpoint")
    allocations: Dict[str, float] = Field(default_factory=dict)


class AllocationResult(FrozenModel):
    """Forward OPM allocation for one enterprise value."""

    enterprise_value: float
    by_class: List[ClassAllocation] = Field(default_factory=list)
    tranches: List[TrancheAllocation] = Field(default_factory=list)
    total_value_distributed: float = 0.0
    unallocated_value: float = Field(
        default=0.0,
        description="Enterprise value not distributed (below the first breakpoint, dividend leakage, partial participation)"
    )
    valid: bool = True
    validation_errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    def get_class(self, security_class: str) -> Optional[ClassAllocation]:
        """Allocation row for ``security_class``, or None."""
        for allocation in self.by_class:
            if allocation.security_class == security_class:
                return allocation
        return None

    def price_of(self, security_class: str) -> float:
        """Per-share value of ``security_class``.

        Raises:
            AllocationError: If the class is unknown or has no shares
        """
        allocation = self.get_class(security_class)
        if allocation is None:
            raise AllocationError(
                f"Security class '{security_class}' is not in the share class totals",
                security_class=security_class,
            )
        if allocation.shares <= 0:
            raise AllocationError(
                f"Security class '{security_class}' has zero shares; price per share is undefined",
                security_class=security_class,
            )
        return allocation.total_value / allocation.shares


# =============================================================================
# Single Backsolve
# =============================================================================

class BacksolveMetadata(FrozenModel):
    """Diagnostics for one backsolve run."""

    execution_time_ms: float
    method: str
    methods_attempted: List[str] = Field(default_factory=list)
    evaluations: int = 0
    bracket_expansions: int = 0
    initial_bracket: Optional[Tuple[float, float]] = None
    final_bracket: Optional[Tuple[float, float]] = None
    residual: float = 0.0
    termination_reason: str = ""


class BacksolveResult(FrozenModel):
    """Outcome of a single-scenario backsolve."""

    enterprise_value: float
    target_fmv: float = Field(serialization_alias="targetFMV")
    actual_fmv: float = Field(serialization_alias="actualFMV")
    error: float = Field(description="actual_fmv - target_fmv")
    converged: bool
    iterations: int
    method: str
    allocation: AllocationResult
    metadata: BacksolveMetadata
    warnings: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        """Converged with a valid final allocation."""
        return self.converged and self.allocation.valid


# =============================================================================
# Weighted Backsolve
# =============================================================================

class ScenarioResult(FrozenModel):
    """One scenario's contribution to a weighted backsolve."""

    name: str
    probability: float = Field(description="Normalized probability (fraction)")
    enterprise_value: float
    fmv_per_share: float
    weighted_contribution: float
    is_backsolve: bool
    black_scholes_params: BlackScholesParams
    allocation: AllocationResult


class WeightedBacksolveMetadata(FrozenModel):
    """Diagnostics for one weighted backsolve run."""

    execution_time_ms: float
    iterations: int
    method: str
    methods_attempted: List[str] = Field(default_factory=list)
    evaluations: int = 0
    fixed_weighted_sum: float = 0.0
    required_backsolve_fmv: float = 0.0
    residual: float = 0.0
    termination_reason: str = ""


class WeightedBacksolveResult(FrozenModel):
    """Outcome of a weighted (PWERM) backsolve."""

    target_fmv: float = Field(serialization_alias="targetFMV")
    actual_weighted_fmv: float = Field(serialization_alias="actualWeightedFMV")
    error: float
    converged: bool
    scenario_results: List[ScenarioResult] = Field(default_factory=list)
    backsolve_scenario_index: int
    metadata: WeightedBacksolveMetadata
    warnings: List[str] = Field(default_factory=list)
    failed_scenarios: List[str] = Field(default_factory=list)

    @property
    def backsolve_scenario(self) -> ScenarioResult:
        return self.scenario_results[self.backsolve_scenario_index]

    @property
    def success(self) -> bool:
        return self.converged and not self.failed_scenarios


# =============================================================================
# Hybrid PWERM
# =============================================================================

class HybridScenarioResult(FrozenModel):
    """One independently backsolved hybrid scenario."""

    scenario_id: Optional[str] = None
    scenario_name: str
    probability: float
    target_fmv: float = Field(serialization_alias="targetFMV")
    calculated_fmv: float = Field(serialization_alias="calculatedFMV")
    enterprise_value: float
    converged: bool
    weighted_contribution: float
    percent_of_weighted_value: float
    allocation: Optional[AllocationResult] = None
    error_message: Optional[str] = None


class WeightedStatistics(FrozenModel):
    """Probability-weighted distribution of scenario prices."""

    weighted_mean: float
    weighted_variance: float
    weighted_std_dev: float
    coefficient_of_variation: float
    percentile_25: float
    percentile_50: float
    percentile_75: float


class HybridPWERMResult(FrozenModel):
    """Outcome of a hybrid PWERM orchestration."""

    weighted_fmv: float = Field(serialization_alias="weightedFMV")
    weighted_enterprise_value: float
    error: Optional[float] = Field(
        default=None,
        description="weighted_fmv - target_weighted_fmv when a target was given"
    )
    converged: bool
    scenario_results: List[HybridScenarioResult] = Field(default_factory=list)
    statistics: WeightedStatistics
    execution_time_ms: float
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
