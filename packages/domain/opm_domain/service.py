"""Request boundary for backsolve calls.

BacksolveService is framework-agnostic: an HTTP handler (or a CLI, or a
job) passes it a valuation id and a JSON-shaped payload and returns the
envelope it gets back.

    {"success": bool, "data": {...} | None, "error": {...} | None, "auditTrail": [...]}

The service:
1. Validates the payload (camelCase keys)
2. Fetches breakpoints, share counts and, when the payload has none, the
   observed price from collaborators
3. Merges Black-Scholes overrides over provider (or settings) defaults
4. Runs the optimizer and serializes the result with camelCase keys

Error mapping:
    - pydantic ValidationError / RequestValidationError -> validation_error
    - AllocationError -> allocation_error
    - UpstreamError -> upstream_error
    - non-convergence -> success False, convergence_failed, data still set
    - anything else -> internal_error with a generic message (logged)
"""

from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Union

import structlog
from pydantic import AliasChoices, Field, TypeAdapter, ValidationError

from .audit import AuditTrailLogger
from .config import BacksolveSettings, settings as default_settings
from .errors import BacksolveError, UpstreamError
from .optimizers import BacksolveOptimizer, ScenarioOrchestrator, WeightedBacksolveOptimizer
from .schemas import (
    BacksolveRequest,
    BlackScholesParams,
    Breakpoint,
    DomainModel,
    HybridPWERMRequest,
    HybridScenario,
    ProbabilityFormat,
    SolverOptions,
    WeightedBacksolveRequest,
    WeightedScenario,
)

logger = structlog.get_logger()

_BREAKPOINTS = TypeAdapter(List[Breakpoint])
_SHARE_TOTALS = TypeAdapter(Dict[str, Decimal])

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred while running the backsolve"


# =============================================================================
# Collaborators
# =============================================================================

class BreakpointsProvider(Protocol):
    def get_breakpoints(self, valuation_id: str) -> List[Union[Breakpoint, Mapping[str, Any]]]:
        """Breakpoints for a valuation, as models or camelCase mappings."""
        ...


class CapTableProvider(Protocol):
    def get_share_class_totals(self, valuation_id: str) -> Mapping[str, Any]:
        """Share count per security class."""
        ...

    def get_price_per_share(self, valuation_id: str, security_class_id: str) -> Any:
        """Observed price per share of a security class."""
        ...


class BlackScholesDefaultsProvider(Protocol):
    def get_defaults(self, valuation_id: str) -> BlackScholesParams:
        ...


# =============================================================================
# Payloads
# =============================================================================

class BlackScholesOverrides(DomainModel):
    """Optional Black-Scholes overrides shared by the payloads."""

    volatility: Optional[Decimal] = None
    risk_free_rate: Optional[Decimal] = None
    time_to_liquidity: Optional[Decimal] = None
    dividend_yield: Optional[Decimal] = None

    def merged_with(self, defaults: BlackScholesParams) -> BlackScholesParams:
        """Defaults with every set override applied."""
        return BlackScholesParams(
            time_to_liquidity=_first(self.time_to_liquidity, defaults.time_to_liquidity),
            volatility=_first(self.volatility, defaults.volatility),
            risk_free_rate=_first(self.risk_free_rate, defaults.risk_free_rate),
            dividend_yield=_first(self.dividend_yield, defaults.dividend_yield),
        )


class SingleBacksolvePayload(BlackScholesOverrides):
    security_class_id: str = Field(min_length=1)
    target_fmv: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("targetFmv", "targetFMV", "target_fmv"),
        description="Observed price; fetched from the cap table provider when unset",
    )
    solver_options: Optional[SolverOptions] = None


class ScenarioPayload(BlackScholesOverrides):
    name: str = Field(min_length=1)
    probability: Decimal
    enterprise_value: Optional[Decimal] = None
    is_backsolve: bool = False


class WeightedBacksolvePayload(DomainModel):
    scenarios: List[ScenarioPayload] = Field(default_factory=list)
    security_class_id: str = Field(min_length=1)
    probability_format: ProbabilityFormat = "fraction"
    target_fmv: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("targetFmv", "targetFMV", "target_fmv"),
    )
    solver_options: Optional[SolverOptions] = None


class HybridScenarioPayload(DomainModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    probability: Decimal
    target_fmv: Decimal = Field(validation_alias=AliasChoices("targetFmv", "targetFMV", "target_fmv"))
    black_scholes_params: Optional[BlackScholesOverrides] = Field(
        default=None,
        description="Merged over the global parameters; the global set applies when unset",
    )
    breakpoints: Optional[List[Breakpoint]] = None


class HybridBacksolvePayload(DomainModel):
    scenarios: List[HybridScenarioPayload] = Field(default_factory=list)
    security_class_id: str = Field(min_length=1)
    global_black_scholes_params: Optional[BlackScholesOverrides] = None
    probability_format: ProbabilityFormat = "fraction"
    target_weighted_fmv: Optional[Decimal] = Field(
        default=None,
        validation_alias=AliasChoices("targetWeightedFmv", "targetWeightedFMV", "target_weighted_fmv"),
    )
    solver_options: Optional[SolverOptions] = None


def _first(value: Optional[Decimal], default: Decimal) -> Decimal:
    return default if value is None else value


# =============================================================================
# Service
# =============================================================================

class BacksolveService:
    """Resolves collaborator data, runs backsolves and builds response envelopes.

    Example:
        service = BacksolveService(breakpoints_api, cap_table_api)
        response = service.single_backsolve("val_123", {"securityClassId": "common"})
        if response["success"]:
            response["data"]["enterpriseValue"]
    """

    def __init__(
        self,
        breakpoints_provider: BreakpointsProvider,
        cap_table_provider: CapTableProvider,
        defaults_provider: Optional[BlackScholesDefaultsProvider] = None,
        settings: Optional[BacksolveSettings] = None,
    ):
        self.breakpoints_provider = breakpoints_provider
        self.cap_table_provider = cap_table_provider
        self.defaults_provider = defaults_provider
        self.settings = settings or default_settings

    def single_backsolve(
        self,
        valuation_id: str,
        payload: Union[SingleBacksolvePayload, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        audit = AuditTrailLogger(f"single_backsolve:{valuation_id}")
        return self._respond("single_backsolve", valuation_id, audit, lambda: self._single(valuation_id, payload, audit))

    def weighted_backsolve(
        self,
        valuation_id: str,
        payload: Union[WeightedBacksolvePayload, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        audit = AuditTrailLogger(f"weighted_backsolve:{valuation_id}")
        return self._respond("weighted_backsolve", valuation_id, audit, lambda: self._weighted(valuation_id, payload, audit))

    def hybrid_backsolve(
        self,
        valuation_id: str,
        payload: Union[HybridBacksolvePayload, Mapping[str, Any]],
    ) -> Dict[str, Any]:
        audit = AuditTrailLogger(f"hybrid_backsolve:{valuation_id}")
        return self._respond("hybrid_backsolve", valuation_id, audit, lambda: self._hybrid(valuation_id, payload, audit))

    # =========================================================================
    # Operations
    # =========================================================================

    def _single(self, valuation_id: str, payload: Any, audit: AuditTrailLogger) -> Dict[str, Any]:
        payload = SingleBacksolvePayload.model_validate(payload)
        security = payload.security_class_id

        breakpoints = self._fetch_breakpoints(valuation_id)
        totals = self._fetch_share_totals(valuation_id)
        target = payload.target_fmv
        if target is None:
            target = self._fetch_price(valuation_id, security)
        params = payload.merged_with(self._defaults(valuation_id))

        request = BacksolveRequest(
            target_fmv=target,
            security_class_id=security,
            black_scholes_params=params,
            breakpoints=breakpoints,
            total_shares=sum(totals.values(), Decimal("0")),
            share_class_totals=totals,
            solver_options=payload.solver_options,
        )
        result = BacksolveOptimizer(audit=audit, settings=self.settings).backsolve(request)
        return result.model_dump(by_alias=True, mode="json")

    def _weighted(self, valuation_id: str, payload: Any, audit: AuditTrailLogger) -> Dict[str, Any]:
        payload = WeightedBacksolvePayload.model_validate(payload)
        security = payload.security_class_id

        breakpoints = self._fetch_breakpoints(valuation_id)
        totals = self._fetch_share_totals(valuation_id)
        target = payload.target_fmv
        if target is None:
            target = self._fetch_price(valuation_id, security)
        defaults = self._defaults(valuation_id)

        scenarios = []
        for scenario in payload.scenarios:
            params = scenario.merged_with(defaults)
            scenarios.append(WeightedScenario(
                name=scenario.name,
                probability=scenario.probability,
                enterprise_value=None if scenario.is_backsolve else scenario.enterprise_value,
                is_backsolve=scenario.is_backsolve,
                time_to_liquidity=params.time_to_liquidity,
                volatility=params.volatility,
                risk_free_rate=params.risk_free_rate,
                dividend_yield=params.dividend_yield,
            ))

        request = WeightedBacksolveRequest(
            target_fmv=target,
            security_class_id=security,
            scenarios=scenarios,
            breakpoints=breakpoints,
            total_shares=sum(totals.values(), Decimal("0")),
            share_class_totals=totals,
            probability_format=payload.probability_format,
            solver_options=payload.solver_options,
        )
        result = WeightedBacksolveOptimizer(audit=audit, settings=self.settings).backsolve(request)
        return result.model_dump(by_alias=True, mode="json")

    def _hybrid(self, valuation_id: str, payload: Any, audit: AuditTrailLogger) -> Dict[str, Any]:
        payload = HybridBacksolvePayload.model_validate(payload)

        breakpoints = self._fetch_breakpoints(valuation_id)
        totals = self._fetch_share_totals(valuation_id)
        global_overrides = payload.global_black_scholes_params or BlackScholesOverrides()
        global_params = global_overrides.merged_with(self._defaults(valuation_id))

        scenarios = [
            HybridScenario(
                id=scenario.id,
                name=scenario.name,
                probability=scenario.probability,
                target_fmv=scenario.target_fmv,
                black_scholes_params=(
                    None if scenario.black_scholes_params is None
                    else scenario.black_scholes_params.merged_with(global_params)
                ),
                breakpoints=scenario.breakpoints,
            )
            for scenario in payload.scenarios
        ]

        request = HybridPWERMRequest(
            security_class_id=payload.security_class_id,
            scenarios=scenarios,
            global_black_scholes_params=global_params,
            global_breakpoints=breakpoints,
            total_shares=sum(totals.values(), Decimal("0")),
            share_class_totals=totals,
            probability_format=payload.probability_format,
            target_weighted_fmv=payload.target_weighted_fmv,
            solver_options=payload.solver_options,
        )
        result = ScenarioOrchestrator(audit=audit, settings=self.settings).run(request)
        return result.model_dump(by_alias=True, mode="json")

    # =========================================================================
    # Collaborators
    # =========================================================================

    def _fetch_breakpoints(self, valuation_id: str) -> List[Breakpoint]:
        return self._call_upstream(
            "breakpoints",
            {"valuationId": valuation_id},
            lambda: _BREAKPOINTS.validate_python(self.breakpoints_provider.get_breakpoints(valuation_id)),
        )

    def _fetch_share_totals(self, valuation_id: str) -> Dict[str, Decimal]:
        return self._call_upstream(
            "cap_table",
            {"valuationId": valuation_id},
            lambda: _SHARE_TOTALS.validate_python(dict(self.cap_table_provider.get_share_class_totals(valuation_id))),
        )

    def _fetch_price(self, valuation_id: str, security_class_id: str) -> Decimal:
        def fetch() -> Decimal:
            price = self.cap_table_provider.get_price_per_share(valuation_id, security_class_id)
            # A missing price is rejected later as a non-positive target
            return Decimal("0") if price is None else Decimal(str(price))

        return self._call_upstream(
            "cap_table",
            {"valuationId": valuation_id, "securityClassId": security_class_id},
            fetch,
        )

    def _defaults(self, valuation_id: str) -> BlackScholesParams:
        if self.defaults_provider is None:
            return BlackScholesParams(
                time_to_liquidity=Decimal(str(self.settings.DEFAULT_TIME_TO_LIQUIDITY)),
                volatility=Decimal(str(self.settings.DEFAULT_VOLATILITY)),
                risk_free_rate=Decimal(str(self.settings.DEFAULT_RISK_FREE_RATE)),
                dividend_yield=Decimal(str(self.settings.DEFAULT_DIVIDEND_YIELD)),
            )
        return self._call_upstream(
            "defaults",
            {"valuationId": valuation_id},
            lambda: BlackScholesParams.model_validate(self.defaults_provider.get_defaults(valuation_id)),
        )

    def _call_upstream(self, collaborator: str, requested: Dict[str, Any], fetch: Callable[[], Any]) -> Any:
        try:
            return fetch()
        except Exception as exc:
            logger.warning(
                "upstream_fetch_failed",
                collaborator=collaborator,
                requested=requested,
                error=str(exc),
            )
            raise UpstreamError(collaborator, requested, f"{type(exc).__name__}: {exc}") from exc

    # =========================================================================
    # Envelope
    # =========================================================================

    def _respond(
        self,
        operation: str,
        valuation_id: str,
        audit: AuditTrailLogger,
        run: Callable[[], Dict[str, Any]],
    ) -> Dict[str, Any]:
        log = logger.bind(operation=operation, valuation_id=valuation_id)
        try:
            data = run()
        except ValidationError as exc:
            log.info("backsolve_rejected", error="validation_error")
            return self._envelope(False, None, _validation_error(exc), audit)
        except BacksolveError as exc:
            log.info("backsolve_rejected", error=exc.code, message=str(exc))
            return self._envelope(False, None, exc.to_dict(), audit)
        except Exception:
            log.exception("backsolve_internal_error")
            return self._envelope(
                False,
                None,
                {"error": "internal_error", "message": INTERNAL_ERROR_MESSAGE, "detail": None},
                audit,
            )

        if not data["converged"]:
            error = _convergence_error(data)
            log.warning("backsolve_not_converged", detail=error["detail"])
            return self._envelope(False, data, error, audit)

        log.info("backsolve_succeeded")
        return self._envelope(True, data, None, audit)

    @staticmethod
    def _envelope(
        success: bool,
        data: Optional[Dict[str, Any]],
        error: Optional[Dict[str, Any]],
        audit: AuditTrailLogger,
    ) -> Dict[str, Any]:
        return {
            "success": success,
            "data": data,
            "error": error,
            "auditTrail": audit.to_records(),
        }


def _convergence_error(data: Dict[str, Any]) -> Dict[str, Any]:
    if "metadata" not in data:
        # Hybrid results report per-scenario outcomes instead of one solver run
        return {
            "error": "convergence_failed",
            "message": "One or more hybrid scenarios failed or did not converge",
            "detail": {
                "scenarios": [s["scenarioName"] for s in data["scenarioResults"] if not s["converged"]],
                "errors": data["errors"],
            },
        }
    return {
        "error": "convergence_failed",
        "message": "Backsolve optimization did not converge",
        "detail": {
            "iterations": data.get("iterations", data["metadata"].get("iterations")),
            "residual": data["metadata"]["residual"],
            "reason": data["metadata"]["terminationReason"],
        },
    }


def _validation_error(exc: ValidationError) -> Dict[str, Any]:
    errors = [
        {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
        for error in exc.errors()
    ]
    first = errors[0] if errors else {"field": "", "message": str(exc)}
    return {
        "error": "validation_error",
        "message": first["message"],
        "detail": {"field": first["field"], "errors": errors},
    }
