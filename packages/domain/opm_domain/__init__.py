"""OPM Backsolve Engine - Option Pricing Model valuation and backsolve.

This package inverts the OPM waterfall to recover the enterprise value
implied by an observed price per share:
- Black-Scholes call pricing and call-spread tranche valuation
- Breakpoint waterfall allocation across security classes
- Single-scenario, weighted (PWERM) and hybrid PWERM backsolves
- Per-request audit trails and DataFrame blocks for reporting

The domain layer is designed to be:
- Framework-agnostic (the service returns plain JSON-ready envelopes)
- Testable (pure Python with Pydantic validation)
- Deterministic (no I/O inside the solver loop)
"""

from .schemas import *  # noqa: F403, F401
from .errors import AllocationError, BacksolveError, RequestValidationError, UpstreamError  # noqa: F401
from .waterfall import WaterfallValuator  # noqa: F401
from .solver import RootFinder, RootResult  # noqa: F401
from .audit import AuditTrailLogger  # noqa: F401
from .optimizers import BacksolveOptimizer, ScenarioOrchestrator, WeightedBacksolveOptimizer  # noqa: F401

__version__ = "0.1.0"
