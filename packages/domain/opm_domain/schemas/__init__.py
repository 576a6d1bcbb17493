"""OPM backsolve domain schemas.

This package contains all Pydantic models for the backsolve domain layer:
- Base types and conventions
- Breakpoints and participation schedules
- Black-Scholes parameters
- Requests (single, weighted, hybrid)
- Allocation and backsolve results

Usage:
    from opm_domain.schemas import (
        Breakpoint, Participant, BlackScholesParams,
        BacksolveRequest, WeightedBacksolveRequest, WeightedScenario,
    )
"""

# Base types
from .base import (
    DomainModel,
    FrozenModel,
    ShareCount,
    MoneyAmount,
    Percentage,
    SecurityClassId,
    BreakpointId,
)

# Breakpoints
from .breakpoints import (
    BreakpointKind,
    Participant,
    Breakpoint,
    sort_breakpoints,
)

# Black-Scholes
from .black_scholes import BlackScholesParams

# Requests
from .requests import (
    ProbabilityFormat,
    SolverMethod,
    SolverOptions,
    BacksolveRequest,
    WeightedScenario,
    WeightedBacksolveRequest,
    HybridScenario,
    HybridPWERMRequest,
)

# Results
from .results import (
    ClassAllocation,
    TrancheAllocation,
    AllocationResult,
    BacksolveMetadata,
    BacksolveResult,
    ScenarioResult,
    WeightedBacksolveMetadata,
    WeightedBacksolveResult,
    HybridScenarioResult,
    WeightedStatistics,
    HybridPWERMResult,
)

__all__ = [
    # Base types
    "DomainModel",
    "FrozenModel",
    "ShareCount",
    "MoneyAmount",
    "Percentage",
    "SecurityClassId",
    "BreakpointId",
    # Breakpoints
    "BreakpointKind",
    "Participant",
    "Breakpoint",
    "sort_breakpoints",
    # Black-Scholes
    "BlackScholesParams",
    # Requests
    "ProbabilityFormat",
    "SolverMethod",
    "SolverOptions",
    "BacksolveRequest",
    "WeightedScenario",
    "WeightedBacksolveRequest",
    "HybridScenario",
    "HybridPWERMRequest",
    # Results
    "ClassAllocation",
    "TrancheAllocation",
    "AllocationResult",
    "BacksolveMetadata",
    "BacksolveResult",
    "ScenarioResult",
    "WeightedBacksolveMetadata",
    "WeightedBacksolveResult",
    "HybridScenarioResult",
    "WeightedStatistics",
    "HybridPWERMResult",
]
