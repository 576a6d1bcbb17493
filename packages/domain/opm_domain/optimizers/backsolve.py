"""Single-scenario OPM backsolve.

Finds the enterprise value at which the OPM allocation prices one security
class at an observed fair market value:

    f(V) = WaterfallValuator(params).allocate(V, ...).price_of(class) - target

The search starts from [0, target x total shares] and is driven by the shared
RootFinder. Requests are validated before any iteration; a search that does
not converge is reported in the result, not raised.
"""

import time
from typing import List, Optional

import structlog

from ..audit import AuditTrailLogger
from ..config import BacksolveSettings, settings as default_settings
from ..errors import RequestValidationError
from ..schemas import BacksolveMetadata, BacksolveRequest, BacksolveResult, sort_breakpoints
from ..solver import RootFinder, RootResult
from ..waterfall import WaterfallValuator

logger = structlog.get_logger()


class BacksolveOptimizer:
    """Backsolve enterprise value from one observed price per share.

    Example:
        optimizer = BacksolveOptimizer(audit=AuditTrailLogger())
        result = optimizer.backsolve(request)
        if result.converged:
            print(result.enterprise_value)
    """

    def __init__(
        self,
        audit: Optional[AuditTrailLogger] = None,
        settings: Optional[BacksolveSettings] = None,
    ):
        self.audit = audit if audit is not None else AuditTrailLogger("backsolve")
        self.settings = settings or default_settings

    def backsolve(self, request: BacksolveRequest) -> BacksolveResult:
        """Solve for the enterprise value matching ``request.target_fmv``.

        Raises:
            RequestValidationError: If the request is invalid (before any iteration)
        """
        started = time.perf_counter()
        security = request.security_class_id
        target = float(request.target_fmv)

        self.audit.start("OPM backsolve", security_class=security, target_fmv=target)
        self.validate(request)
        self.audit.step(
            "Validated request",
            breakpoints=len(request.breakpoints),
            total_shares=float(request.total_shares),
        )

        valuator = WaterfallValuator(request.black_scholes_params)
        breakpoints = sort_breakpoints(request.breakpoints)
        totals = request.share_class_totals

        def objective(enterprise_value: float) -> float:
            price = valuator.price_of(enterprise_value, breakpoints, totals, security)
            self.audit.debug(
                "evaluation",
                "Evaluated candidate enterprise value",
                enterprise_value=enterprise_value,
                price=price,
                residual=price - target,
            )
            return price

        options = request.solver_options
        finder = RootFinder.from_settings(self.settings, options, audit=self.audit)
        initial_bracket = options.initial_bracket if options is not None else None
        seed = target * float(request.total_shares)

        self.audit.step("Solving", method=finder.method, seed=seed)
        root = finder.solve(objective, target=target, initial_bracket=initial_bracket, seed=seed)

        allocation = valuator.allocate(root.root, breakpoints, totals)
        actual = allocation.price_of(security)
        warnings = self._warnings(root, actual, target)
        warnings.extend(allocation.warnings)
        warnings.extend(allocation.validation_errors)

        execution_ms = (time.perf_counter() - started) * 1000
        self.audit.step(
            "Finished",
            enterprise_value=root.root,
            actual_fmv=actual,
            converged=root.converged,
            reason=root.reason,
        )
        logger.info(
            "backsolve_complete",
            security_class=security,
            target_fmv=target,
            enterprise_value=root.root,
            actual_fmv=actual,
            converged=root.converged,
            iterations=root.iterations,
            reason=root.reason,
            execution_time_ms=round(execution_ms, 3),
        )

        return BacksolveResult(
            enterprise_value=root.root,
            target_fmv=target,
            actual_fmv=actual,
            error=actual - target,
            converged=root.converged,
            iterations=root.iterations,
            method=finder.method,
            allocation=allocation,
            metadata=BacksolveMetadata(
                execution_time_ms=execution_ms,
                method=finder.method,
                methods_attempted=list(root.steps),
                evaluations=root.evaluations,
                bracket_expansions=root.expansions,
                initial_bracket=initial_bracket or (0.0, seed),
                final_bracket=root.bracket,
                residual=root.residual,
                termination_reason=root.reason,
            ),
            warnings=warnings,
        )

    def validate(self, request: BacksolveRequest) -> None:
        """Reject requests that cannot be solved.

        Raises:
            RequestValidationError: Naming the first failing field
        """
        if request.target_fmv <= 0:
            raise RequestValidationError("targetFmv", f"must be positive, got {request.target_fmv}")

        if not request.security_class_id:
            raise RequestValidationError("securityClassId", "is required")

        if not request.breakpoints:
            raise RequestValidationError("breakpoints", "at least one breakpoint is required")

        if request.total_shares <= 0:
            raise RequestValidationError("totalShares", f"must be positive, got {request.total_shares}")

        validate_share_class_totals(request.share_class_totals, request.security_class_id)

        if not any(bp.participates(request.security_class_id) for bp in request.breakpoints):
            raise RequestValidationError(
                "securityClassId",
                f"'{request.security_class_id}' does not participate in any breakpoint",
            )

    def _warnings(self, root: RootResult, actual: float, target: float) -> List[str]:
        warnings = []
        if not root.converged:
            warnings.append(
                f"Optimization did not fully converge ({root.reason}) after "
                f"{root.iterations} iterations; residual {root.residual:.6g}"
            )
            self.audit.warning("result", "Optimization did not converge", reason=root.reason)
        if abs(actual - target) > self.settings.VERIFICATION_TOLERANCE:
            warnings.append(
                f"Verification failed: price at solved value is {actual:.4f}, target {target:.4f}"
            )
            self.audit.warning("result", "Verification failed", actual_fmv=actual, target_fmv=target)
        return warnings


def validate_share_class_totals(totals, security_class_id: str, field: str = "shareClassTotals") -> None:
    """Share totals must be positive and include the target class."""
    if not totals:
        raise RequestValidationError(field, "share class totals are required")

    for security_class, shares in totals.items():
        if shares <= 0:
            raise RequestValidationError(
                field, f"'{security_class}' must have a positive share count, got {shares}"
            )

    if security_class_id not in totals:
        raise RequestValidationError(
            "securityClassId", f"'{security_class_id}' is not in the share class totals"
        )
