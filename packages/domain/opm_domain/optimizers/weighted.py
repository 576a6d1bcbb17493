"""Weighted (PWERM) OPM backsolve.

Scenarios blend into one price per share:

    weighted_fmv(V) = sum(p_i * price_i(V_i))

Every scenario but one has a fixed enterprise value and is priced once. The
backsolve scenario substitutes the candidate V, and the root finder solves
weighted_fmv(V) = target. Each scenario prices with its own Black-Scholes
parameters, breakpoints and share counts (falling back to the request's).

Validation:
    - At least 2 scenarios, exactly one flagged is_backsolve
    - Fixed scenarios carry a positive enterprise value
    - Probabilities sum to 1 (fraction) or 100 (percentage)
    - The backsolve scenario has a positive probability
"""

import time
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import structlog

from ..audit import AuditTrailLogger
from ..config import BacksolveSettings, settings as default_settings
from ..errors import AllocationError, RequestValidationError
from ..schemas import (
    AllocationResult,
    Breakpoint,
    ScenarioResult,
    WeightedBacksolveMetadata,
    WeightedBacksolveRequest,
    WeightedBacksolveResult,
    WeightedScenario,
    sort_breakpoints,
)
from ..solver import NOT_BRACKETED, RootFinder
from ..waterfall import WaterfallValuator
from .backsolve import validate_share_class_totals

logger = structlog.get_logger()


class _PreparedScenario:
    """A scenario with its effective inputs resolved."""

    def __init__(
        self,
        scenario: WeightedScenario,
        probability: float,
        breakpoints: List[Breakpoint],
        share_class_totals: Dict[str, Decimal],
    ):
        self.scenario = scenario
        self.probability = probability
        self.breakpoints = sort_breakpoints(breakpoints)
        self.share_class_totals = share_class_totals
        self.valuator = WaterfallValuator(scenario.black_scholes_params())

    def allocate(self, enterprise_value: float) -> AllocationResult:
        return self.valuator.allocate(enterprise_value, self.breakpoints, self.share_class_totals)


def normalize_probabilities(
    probabilities: List[Decimal],
    probability_format: str,
    tolerance: float,
    field: str = "scenarios",
) -> List[float]:
    """Convert probabilities to fractions and check they sum to 1.

    Raises:
        RequestValidationError: If a probability is out of range or the sum is off
    """
    scale = 100.0 if probability_format == "percentage" else 1.0
    for index, probability in enumerate(probabilities):
        if probability < 0 or float(probability) > scale:
            raise RequestValidationError(
                f"{field}[{index}].probability",
                f"must be between 0 and {scale:g}, got {probability}",
            )

    fractions = [float(p) / scale for p in probabilities]
    total = sum(fractions)
    if abs(total - 1.0) > tolerance:
        expected = "100" if probability_format == "percentage" else "1"
        raise RequestValidationError(
            field, f"probabilities must sum to {expected}, got {total * scale:g}"
        )
    return fractions


class WeightedBacksolveOptimizer:
    """Backsolve one scenario's enterprise value so a PWERM blend hits a target.

    Example:
        result = WeightedBacksolveOptimizer().backsolve(request)
        result.backsolve_scenario.enterprise_value
    """

    def __init__(
        self,
        audit: Optional[AuditTrailLogger] = None,
        settings: Optional[BacksolveSettings] = None,
    ):
        self.audit = audit if audit is not None else AuditTrailLogger("weighted_backsolve")
        self.settings = settings or default_settings

    def backsolve(self, request: WeightedBacksolveRequest) -> WeightedBacksolveResult:
        """Solve for the backsolve scenario's enterprise value.

        Raises:
            RequestValidationError: If the request is invalid
            AllocationError: If a scenario cannot price the target class
        """
        started = time.perf_counter()
        target = float(request.target_fmv)
        security = request.security_class_id

        self.audit.start(
            "OPM weighted backsolve",
            security_class=security,
            target_fmv=target,
            scenarios=len(request.scenarios),
        )
        backsolve_index, prepared = self._prepare(request)
        backsolve = prepared[backsolve_index]
        self.audit.step("Validated request", backsolve_scenario=backsolve.scenario.name)

        # Fixed scenarios do not depend on the unknown, price them once
        fixed_allocations: Dict[int, AllocationResult] = {}
        fixed_sum = 0.0
        for index, item in enumerate(prepared):
            if index == backsolve_index:
                continue
            allocation = item.allocate(float(item.scenario.enterprise_value))
            fixed_allocations[index] = allocation
            price = allocation.price_of(security)
            fixed_sum += item.probability * price
            self.audit.info(
                "request",
                f"Priced fixed scenario '{item.scenario.name}'",
                enterprise_value=allocation.enterprise_value,
                fmv_per_share=price,
                probability=item.probability,
            )

        required_fmv = (target - fixed_sum) / backsolve.probability
        self.audit.step("Priced fixed scenarios", fixed_weighted_sum=fixed_sum, required_backsolve_fmv=required_fmv)

        def objective(enterprise_value: float) -> float:
            price = backsolve.allocate(enterprise_value).price_of(security)
            weighted = fixed_sum + backsolve.probability * price
            self.audit.debug(
                "evaluation",
                "Evaluated candidate enterprise value",
                enterprise_value=enterprise_value,
                price=price,
                weighted_fmv=weighted,
                residual=weighted - target,
            )
            return weighted

        options = request.solver_options
        finder = RootFinder.from_settings(self.settings, options, audit=self.audit)
        initial_bracket = options.initial_bracket if options is not None else None
        seed_fmv = required_fmv if required_fmv > 0 else target
        seed = seed_fmv * float(request.total_shares)

        root = finder.solve(objective, target=target, initial_bracket=initial_bracket, seed=seed)

        scenario_results, failed, actual = self._collect(
            prepared, backsolve_index, fixed_allocations, root.root, security
        )

        warnings = []
        if not root.converged:
            warnings.append(
                f"Optimization did not fully converge ({root.reason}) after "
                f"{root.iterations} iterations; residual {root.residual:.6g}"
            )
            if root.reason == NOT_BRACKETED:
                warnings.append(
                    f"Fixed scenarios alone contribute {fixed_sum:.4f} per share, "
                    f"at or above the target of {target:.4f}"
                )
        if abs(actual - target) > self.settings.VERIFICATION_TOLERANCE:
            warnings.append(
                f"Verification failed: weighted price is {actual:.4f}, target {target:.4f}"
            )
        for name in failed:
            warnings.append(f"Scenario '{name}' produced an invalid allocation")
        for result in scenario_results:
            warnings.extend(f"{result.name}: {w}" for w in result.allocation.warnings)

        execution_ms = (time.perf_counter() - started) * 1000
        self.audit.step(
            "Finished",
            enterprise_value=root.root,
            actual_weighted_fmv=actual,
            converged=root.converged,
            reason=root.reason,
        )
        logger.info(
            "weighted_backsolve_complete",
            security_class=security,
            target_fmv=target,
            backsolve_scenario=backsolve.scenario.name,
            enterprise_value=root.root,
            actual_weighted_fmv=actual,
            converged=root.converged,
            iterations=root.iterations,
            failed_scenarios=failed,
            execution_time_ms=round(execution_ms, 3),
        )

        return WeightedBacksolveResult(
            target_fmv=target,
            actual_weighted_fmv=actual,
            error=actual - target,
            converged=root.converged,
            scenario_results=scenario_results,
            backsolve_scenario_index=backsolve_index,
            metadata=WeightedBacksolveMetadata(
                execution_time_ms=execution_ms,
                iterations=root.iterations,
                method=finder.method,
                methods_attempted=list(root.steps),
                evaluations=root.evaluations,
                fixed_weighted_sum=fixed_sum,
                required_backsolve_fmv=required_fmv,
                residual=root.residual,
                termination_reason=root.reason,
            ),
            warnings=warnings,
            failed_scenarios=failed,
        )

    # =========================================================================
    # Validation
    # =========================================================================

    def _prepare(self, request: WeightedBacksolveRequest) -> Tuple[int, List[_PreparedScenario]]:
        """Validate the request and resolve each scenario's inputs.

        Returns:
            (index of the backsolve scenario, prepared scenarios in input order)
        """
        if request.target_fmv <= 0:
            raise RequestValidationError("targetFmv", f"must be positive, got {request.target_fmv}")

        if not request.security_class_id:
            raise RequestValidationError("securityClassId", "is required")

        if request.total_shares <= 0:
            raise RequestValidationError("totalShares", f"must be positive, got {request.total_shares}")

        scenarios = request.scenarios
        if len(scenarios) < 2:
            raise RequestValidationError(
                "scenarios", f"at least 2 scenarios are required, got {len(scenarios)}"
            )

        flagged = [i for i, s in enumerate(scenarios) if s.is_backsolve]
        if len(flagged) != 1:
            raise RequestValidationError(
                "scenarios",
                f"exactly one scenario must be flagged isBacksolve, got {len(flagged)}",
            )
        backsolve_index = flagged[0]

        for index, scenario in enumerate(scenarios):
            if scenario.is_backsolve:
                continue
            if scenario.enterprise_value is None or scenario.enterprise_value <= 0:
                raise RequestValidationError(
                    f"scenarios[{index}].enterpriseValue",
                    f"fixed scenario '{scenario.name}' needs a positive enterprise value",
                )

        probabilities = normalize_probabilities(
            [s.probability for s in scenarios],
            request.probability_format,
            self.settings.PROBABILITY_TOLERANCE,
        )
        if probabilities[backsolve_index] <= 0:
            raise RequestValidationError(
                f"scenarios[{backsolve_index}].probability",
                "the backsolve scenario needs a positive probability",
            )

        prepared = []
        for index, scenario in enumerate(scenarios):
            breakpoints = scenario.breakpoints if scenario.breakpoints is not None else request.breakpoints
            if not breakpoints:
                raise RequestValidationError(
                    f"scenarios[{index}].breakpoints",
                    f"no breakpoints for scenario '{scenario.name}'",
                )

            totals = (
                scenario.share_class_totals
                if scenario.share_class_totals is not None
                else request.share_class_totals
            )
            shares = totals.get(request.security_class_id)
            if shares is None or shares <= 0:
                raise AllocationError(
                    f"Security class '{request.security_class_id}' has no shares",
                    security_class=request.security_class_id,
                ).for_scenario(scenario.name)
            validate_share_class_totals(
                totals,
                request.security_class_id,
                field=f"scenarios[{index}].shareClassTotals"
                if scenario.share_class_totals is not None
                else "shareClassTotals",
            )

            prepared.append(_PreparedScenario(scenario, probabilities[index], breakpoints, totals))

        if not any(bp.participates(request.security_class_id) for bp in prepared[backsolve_index].breakpoints):
            raise RequestValidationError(
                "securityClassId",
                f"'{request.security_class_id}' does not participate in any breakpoint "
                f"of the backsolve scenario",
            )

        return backsolve_index, prepared

    # =========================================================================
    # Results
    # =========================================================================

    def _collect(
        self,
        prepared: List[_PreparedScenario],
        backsolve_index: int,
        fixed_allocations: Dict[int, AllocationResult],
        enterprise_value: float,
        security: str,
    ) -> Tuple[List[ScenarioResult], List[str], float]:
        """Per-scenario breakdown at the solved value.

        Returns:
            (scenario results, names of scenarios with invalid allocations,
            weighted price per share)
        """
        results = []
        failed = []
        weighted = 0.0

        for index, item in enumerate(prepared):
            if index == backsolve_index:
                allocation = item.allocate(enterprise_value)
            else:
                allocation = fixed_allocations[index]

            price = allocation.price_of(security)
            contribution = item.probability * price
            weighted += contribution

            if not allocation.valid:
                failed.append(item.scenario.name)
                self.audit.error(
                    "result",
                    f"Scenario '{item.scenario.name}' produced an invalid allocation",
                    errors=allocation.validation_errors,
                )

            results.append(ScenarioResult(
                name=item.scenario.name,
                probability=item.probability,
                enterprise_value=allocation.enterprise_value,
                fmv_per_share=price,
                weighted_contribution=contribution,
                is_backsolve=index == backsolve_index,
                black_scholes_params=item.scenario.black_scholes_params(),
                allocation=allocation,
            ))

        return results, failed, weighted
