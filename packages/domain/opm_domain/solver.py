"""Shared root finder for the backsolve optimizers.

Solves ``func(x) = target`` for a function that is non-decreasing in x on
[0, inf), which is what an OPM price is as a function of enterprise value.

1. Bracket: start from [lo, hi] (default [0, seed]) and grow hi
   geometrically until func(hi) >= target
2. Refine: false-position (secant) steps kept inside the bracket, falling
   back to bisection when a step leaves the bracket or the same endpoint has
   moved twice in a row
3. Stop when |func(x) - target| < tolerance * scale, where scale is |target|
   capped at 1.0. The tolerance is absolute for targets of at least 1.0 and
   relative below that, so sub-cent prices still pin down x

Non-convergence never raises. The result carries converged=False, the best
estimate seen and one of the termination reasons below.
"""

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import structlog

from .audit import ITERATION_CATEGORY, AuditTrailLogger
from .config import BacksolveSettings

logger = structlog.get_logger()

CONVERGED = "converged"
BRACKET_EXPANSION_FAILED = "bracket_expansion_failed"
NOT_BRACKETED = "not_bracketed"
MAX_ITERATIONS_REACHED = "max_iterations_reached"
BRACKET_COLLAPSED = "bracket_collapsed"

# Relative bracket width below which no further progress is possible
BRACKET_COLLAPSE_EPSILON = 1e-15

# Smallest target magnitude the convergence threshold scales with
TARGET_SCALE_FLOOR = 1e-15


@dataclass(frozen=True)
class RootIteration:
    """One refinement step."""

    iteration: int
    x: float
    value: float
    residual: float
    lower: float
    upper: float
    step: str


@dataclass(frozen=True)
class RootResult:
    root: float
    residual: float
    converged: bool
    iterations: int
    evaluations: int
    expansions: int
    bracket: Tuple[float, float]
    reason: str
    steps: Tuple[str, ...] = ()
    history: Tuple[RootIteration, ...] = field(default_factory=tuple)


class _Objective:
    """Counts evaluations and remembers the best point seen (latest on ties)."""

    def __init__(self, func: Callable[[float], float], target: float):
        self.func = func
        self.target = target
        self.evaluations = 0
        self.best_x = 0.0
        self.best_residual = math.inf

    def __call__(self, x: float) -> float:
        self.evaluations += 1
        value = float(self.func(x))
        residual = value - self.target
        if abs(residual) <= abs(self.best_residual):
            self.best_x, self.best_residual = x, residual
        return residual


class RootFinder:
    """Bracketing secant/bisection hybrid.

    Args:
        tolerance: Tolerance on |func(x) - target|, scaled down for targets
            below 1.0
        max_iterations: Refinement steps allowed after bracketing
        max_bracket_expansions: Times hi may grow before giving up
        method: 'hybrid' (secant with bisection fallback) or 'bisection'
        expansion_factor: Growth factor for hi during bracketing
        audit: Optional per-request audit trail
    """

    def __init__(
        self,
        tolerance: float = 1e-7,
        max_iterations: int = 100,
        max_bracket_expansions: int = 60,
        method: str = "hybrid",
        expansion_factor: float = 2.0,
        audit: Optional[AuditTrailLogger] = None,
    ):
        if not math.isfinite(tolerance) or tolerance <= 0:
            raise ValueError(f"tolerance must be positive and finite, got {tolerance}")
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        if expansion_factor <= 1:
            raise ValueError(f"expansion_factor must exceed 1, got {expansion_factor}")
        if method not in ("hybrid", "bisection"):
            raise ValueError(f"Unknown solver method: {method}")

        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.max_bracket_expansions = max_bracket_expansions
        self.method = method
        self.expansion_factor = expansion_factor
        self.audit = audit

    @classmethod
    def from_settings(
        cls,
        settings: BacksolveSettings,
        options=None,
        audit: Optional[AuditTrailLogger] = None,
    ) -> "RootFinder":
        """Build a finder from settings, letting per-request SolverOptions override."""
        tolerance = settings.TOLERANCE
        max_iterations = settings.MAX_ITERATIONS
        method = settings.SOLVER_METHOD
        if options is not None:
            tolerance = options.tolerance or tolerance
            max_iterations = options.max_iterations or max_iterations
            method = options.method or method
        return cls(
            tolerance=tolerance,
            max_iterations=max_iterations,
            max_bracket_expansions=settings.MAX_BRACKET_EXPANSIONS,
            method=method,
            expansion_factor=settings.BRACKET_EXPANSION_FACTOR,
            audit=audit,
        )

    def threshold(self, target: float) -> float:
        """Largest |func(x) - target| accepted as converged for ``target``."""
        scale = min(1.0, max(abs(target), TARGET_SCALE_FLOOR))
        return self.tolerance * scale

    def solve(
        self,
        func: Callable[[float], float],
        target: float = 0.0,
        initial_bracket: Optional[Tuple[float, float]] = None,
        seed: Optional[float] = None,
    ) -> RootResult:
        """Find x with func(x) = target.

        Args:
            func: Non-decreasing function of x >= 0
            target: Value to hit
            initial_bracket: Starting (lo, hi); hi still grows if needed
            seed: Starting hi when no bracket is given (defaults to 1.0)

        Returns:
            RootResult; check ``converged`` and ``reason``
        """
        g = _Objective(func, target)
        threshold = self.threshold(target)

        if initial_bracket is not None:
            lo, hi = float(initial_bracket[0]), float(initial_bracket[1])
        else:
            lo = 0.0
            hi = float(seed) if seed is not None and seed > 0 else 1.0

        self._audit("info", "bracket", "Initial bracket", lower=lo, upper=hi)

        g_hi = g(hi)
        if abs(g_hi) < threshold:
            return self._finish(g, hi, g_hi, True, 0, 0, (lo, hi), CONVERGED, [], [])

        g_lo = g(lo)
        if abs(g_lo) < threshold:
            return self._finish(g, lo, g_lo, True, 0, 0, (lo, hi), CONVERGED, [], [])

        if g_lo > 0 and lo > 0:
            # A caller bracket can start above the root; retry from zero
            self._audit("warning", "bracket", "Lower bound above root, retrying from zero", lower=lo)
            lo = 0.0
            g_lo = g(lo)
            if abs(g_lo) < threshold:
                return self._finish(g, lo, g_lo, True, 0, 0, (lo, hi), CONVERGED, [], [])

        if g_lo > 0:
            self._audit("error", "bracket", "Function exceeds target at zero", residual=g_lo)
            return self._finish(g, g.best_x, g.best_residual, False, 0, 0, (lo, hi), NOT_BRACKETED, [], [])

        expansions = 0
        while g_hi < 0:
            if expansions >= self.max_bracket_expansions:
                self._audit(
                    "error", "bracket", "Bracket expansion limit reached",
                    expansions=expansions, upper=hi, residual=g_hi,
                )
                return self._finish(
                    g, g.best_x, g.best_residual, False, 0, expansions, (lo, hi),
                    BRACKET_EXPANSION_FAILED, [], [],
                )
            # func is non-decreasing, so the old hi is a valid lower bound
            lo, g_lo = hi, g_hi
            hi = hi * self.expansion_factor
            g_hi = g(hi)
            expansions += 1
            self._audit("debug", "bracket", "Expanded bracket", lower=lo, upper=hi, residual=g_hi)
            if abs(g_hi) < threshold:
                return self._finish(g, hi, g_hi, True, 0, expansions, (lo, hi), CONVERGED, [], [])

        return self._refine(g, lo, hi, g_lo, g_hi, expansions, threshold)

    def _refine(
        self,
        g: _Objective,
        lo: float,
        hi: float,
        g_lo: float,
        g_hi: float,
        expansions: int,
        threshold: float,
    ) -> RootResult:
        history: List[RootIteration] = []
        steps: List[str] = []
        last_moved = None
        same_side = 0

        for iteration in range(1, self.max_iterations + 1):
            x, step = self._next_point(lo, hi, g_lo, g_hi, same_side)
            if step not in steps:
                steps.append(step)

            g_x = g(x)
            history.append(RootIteration(
                iteration=iteration,
                x=x,
                value=g_x + g.target,
                residual=g_x,
                lower=lo,
                upper=hi,
                step=step,
            ))
            self._audit(
                "debug", ITERATION_CATEGORY, f"Iteration {iteration}",
                iteration=iteration, x=x, residual=g_x, lower=lo, upper=hi, step=step,
            )

            if abs(g_x) < threshold:
                return self._finish(g, x, g_x, True, iteration, expansions, (lo, hi), CONVERGED, steps, history)

            if g_x < 0:
                lo, g_lo = x, g_x
                moved = "lower"
            else:
                hi, g_hi = x, g_x
                moved = "upper"

            if step == "bisection":
                same_side = 0
            else:
                same_side = same_side + 1 if moved == last_moved else 1
            last_moved = moved

            if hi - lo <= max(abs(hi), 1.0) * BRACKET_COLLAPSE_EPSILON:
                self._audit("warning", "result", "Bracket collapsed before reaching tolerance", lower=lo, upper=hi)
                return self._finish(
                    g, g.best_x, g.best_residual, False, iteration, expansions, (lo, hi),
                    BRACKET_COLLAPSED, steps, history,
                )

        self._audit("warning", "result", "Iteration limit reached", iterations=self.max_iterations)
        return self._finish(
            g, g.best_x, g.best_residual, False, self.max_iterations, expansions, (lo, hi),
            MAX_ITERATIONS_REACHED, steps, history,
        )

    def _next_point(self, lo: float, hi: float, g_lo: float, g_hi: float, same_side: int) -> Tuple[float, str]:
        midpoint = 0.5 * (lo + hi)
        if self.method == "bisection" or g_hi == g_lo or same_side >= 2:
            return midpoint, "bisection"

        x = hi - g_hi * (hi - lo) / (g_hi - g_lo)
        if not (lo < x < hi) or not math.isfinite(x):
            return midpoint, "bisection"
        return x, "secant"

    def _finish(
        self,
        g: _Objective,
        root: float,
        residual: float,
        converged: bool,
        iterations: int,
        expansions: int,
        bracket: Tuple[float, float],
        reason: str,
        steps: List[str],
        history: List[RootIteration],
    ) -> RootResult:
        result = RootResult(
            root=root,
            residual=residual,
            converged=converged,
            iterations=iterations,
            evaluations=g.evaluations,
            expansions=expansions,
            bracket=bracket,
            reason=reason,
            steps=tuple(steps),
            history=tuple(history),
        )
        self._audit(
            "info" if converged else "warning", "result", f"Root finder finished: {reason}",
            root=root, residual=residual, iterations=iterations, evaluations=g.evaluations,
        )
        logger.debug(
            "root_finder_finished",
            reason=reason,
            converged=converged,
            root=root,
            residual=residual,
            iterations=iterations,
            evaluations=g.evaluations,
        )
        return result

    def _audit(self, level: str, category: str, message: str, **data) -> None:
        if self.audit is not None:
            getattr(self.audit, level)(category, message, **data)
