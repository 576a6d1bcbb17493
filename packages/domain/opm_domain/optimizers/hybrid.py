"""Hybrid PWERM orchestration.

Each scenario carries its own observed price and is backsolved independently
with its merged Black-Scholes parameters and breakpoints. The results are
blended by probability:

    weighted_fmv = sum(p_i * calculated_fmv_i)
    weighted_enterprise_value = sum(p_i * enterprise_value_i)

A scenario that fails validation or allocation is recorded and excluded from
the blend; it does not abort the run. Weighted statistics (mean, variance,
standard deviation, coefficient of variation and the 25th/50th/75th
percentiles) describe the spread of the successful scenarios' prices.
"""

import time
from typing import List, Optional

import numpy as np
import structlog

from ..audit import AuditTrailLogger
from ..config import BacksolveSettings, settings as default_settings
from ..errors import AllocationError, RequestValidationError
from ..schemas import (
    BacksolveRequest,
    HybridPWERMRequest,
    HybridPWERMResult,
    HybridScenario,
    HybridScenarioResult,
    WeightedStatistics,
)
from .backsolve import BacksolveOptimizer
from .weighted import normalize_probabilities

logger = structlog.get_logger()


def weighted_percentile(values: np.ndarray, weights: np.ndarray, percentile: float) -> float:
    """Smallest value whose cumulative weight reaches ``percentile`` (0-100)."""
    if not 0 <= percentile <= 100:
        raise ValueError(f"percentile must be between 0 and 100, got {percentile}")
    order = np.argsort(values, kind="stable")
    cumulative = np.cumsum(weights[order])
    index = int(np.searchsorted(cumulative, percentile / 100.0 * cumulative[-1] - 1e-12))
    return float(values[order][min(index, len(values) - 1)])


def weighted_statistics(values: List[float], weights: List[float]) -> WeightedStatistics:
    """Probability-weighted distribution statistics.

    Weights are renormalized to sum to 1. An empty input yields all zeros.
    """
    if not values or sum(weights) <= 0:
        return WeightedStatistics(
            weighted_mean=0.0,
            weighted_variance=0.0,
            weighted_std_dev=0.0,
            coefficient_of_variation=0.0,
            percentile_25=0.0,
            percentile_50=0.0,
            percentile_75=0.0,
        )

    x = np.asarray(values, dtype=float)
    w = np.asarray(weights, dtype=float)
    w = w / w.sum()

    mean = float(np.dot(w, x))
    variance = float(np.dot(w, (x - mean) ** 2))
    std_dev = float(np.sqrt(variance))

    return WeightedStatistics(
        weighted_mean=mean,
        weighted_variance=variance,
        weighted_std_dev=std_dev,
        coefficient_of_variation=std_dev / mean if mean > 0 else 0.0,
        percentile_25=weighted_percentile(x, w, 25),
        percentile_50=weighted_percentile(x, w, 50),
        percentile_75=weighted_percentile(x, w, 75),
    )


class ScenarioOrchestrator:
    """Run one backsolve per hybrid scenario and blend the results."""

    def __init__(
        self,
        audit: Optional[AuditTrailLogger] = None,
        settings: Optional[BacksolveSettings] = None,
    ):
        self.audit = audit if audit is not None else AuditTrailLogger("hybrid_pwerm")
        self.settings = settings or default_settings

    def run(self, request: HybridPWERMRequest) -> HybridPWERMResult:
        """Backsolve every scenario and compute the weighted result.

        Raises:
            RequestValidationError: If the scenario list or probabilities are invalid
        """
        started = time.perf_counter()
        self.audit.start(
            "Hybrid PWERM",
            security_class=request.security_class_id,
            scenarios=len(request.scenarios),
        )

        if not request.scenarios:
            raise RequestValidationError("scenarios", "at least one scenario is required")
        if not request.security_class_id:
            raise RequestValidationError("securityClassId", "is required")

        probabilities = normalize_probabilities(
            [s.probability for s in request.scenarios],
            request.probability_format,
            self.settings.PROBABILITY_TOLERANCE,
        )

        outcomes = []
        errors: List[str] = []
        warnings: List[str] = []
        for scenario, probability in zip(request.scenarios, probabilities):
            outcome = self._run_scenario(request, scenario, probability)
            if outcome.error_message:
                errors.append(f"Scenario '{scenario.name}': {outcome.error_message}")
            elif not outcome.converged:
                warnings.append(f"Scenario '{scenario.name}' did not converge")
            outcomes.append(outcome)

        succeeded = [o for o in outcomes if o.error_message is None]
        weighted_fmv = sum(o.probability * o.calculated_fmv for o in succeeded)
        weighted_ev = sum(o.probability * o.enterprise_value for o in succeeded)
        if len(succeeded) < len(outcomes):
            warnings.append(
                f"{len(outcomes) - len(succeeded)} scenario(s) failed and are excluded from the weighted value"
            )

        scenario_results = [
            o.model_copy(update={
                "percent_of_weighted_value": (
                    o.weighted_contribution / weighted_fmv * 100 if weighted_fmv > 0 else 0.0
                ),
            })
            for o in outcomes
        ]

        statistics = weighted_statistics(
            [o.calculated_fmv for o in succeeded],
            [o.probability for o in succeeded],
        )

        error = None
        if request.target_weighted_fmv is not None:
            error = weighted_fmv - float(request.target_weighted_fmv)
            if abs(error) > self.settings.VERIFICATION_TOLERANCE:
                warnings.append(
                    f"Weighted FMV {weighted_fmv:.4f} differs from the target "
                    f"{float(request.target_weighted_fmv):.4f}"
                )

        converged = not errors and all(o.converged for o in outcomes)
        execution_ms = (time.perf_counter() - started) * 1000

        self.audit.step(
            "Blended scenarios",
            weighted_fmv=weighted_fmv,
            weighted_enterprise_value=weighted_ev,
            failed=len(outcomes) - len(succeeded),
        )
        logger.info(
            "hybrid_pwerm_complete",
            security_class=request.security_class_id,
            scenarios=len(outcomes),
            failed=len(outcomes) - len(succeeded),
            weighted_fmv=weighted_fmv,
            weighted_enterprise_value=weighted_ev,
            converged=converged,
            execution_time_ms=round(execution_ms, 3),
        )

        return HybridPWERMResult(
            weighted_fmv=weighted_fmv,
            weighted_enterprise_value=weighted_ev,
            error=error,
            converged=converged,
            scenario_results=scenario_results,
            statistics=statistics,
            execution_time_ms=execution_ms,
            errors=errors,
            warnings=warnings,
        )

    def _run_scenario(
        self,
        request: HybridPWERMRequest,
        scenario: HybridScenario,
        probability: float,
    ) -> HybridScenarioResult:
        self.audit.step(f"Backsolving scenario '{scenario.name}'", probability=probability)
        params = scenario.black_scholes_params or request.global_black_scholes_params
        breakpoints = scenario.breakpoints if scenario.breakpoints is not None else request.global_breakpoints

        try:
            result = BacksolveOptimizer(audit=self.audit, settings=self.settings).backsolve(
                BacksolveRequest(
                    target_fmv=scenario.target_fmv,
                    security_class_id=request.security_class_id,
                    black_scholes_params=params,
                    breakpoints=breakpoints,
                    total_shares=request.total_shares,
                    share_class_totals=request.share_class_totals,
                    solver_options=request.solver_options,
                )
            )
        except (RequestValidationError, AllocationError) as exc:
            self.audit.error("result", f"Scenario '{scenario.name}' failed", error=str(exc))
            logger.warning("hybrid_scenario_failed", scenario=scenario.name, error=str(exc))
            return HybridScenarioResult(
                scenario_id=scenario.id,
                scenario_name=scenario.name,
                probability=probability,
                target_fmv=float(scenario.target_fmv),
                calculated_fmv=0.0,
                enterprise_value=0.0,
                converged=False,
                weighted_contribution=0.0,
                percent_of_weighted_value=0.0,
                error_message=str(exc),
            )

        return HybridScenarioResult(
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            probability=probability,
            target_fmv=result.target_fmv,
            calculated_fmv=result.actual_fmv,
            enterprise_value=result.enterprise_value,
            converged=result.converged,
            weighted_contribution=probability * result.actual_fmv,
            percent_of_weighted_value=0.0,
            allocation=result.allocation,
        )
