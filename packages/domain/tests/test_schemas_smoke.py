"""Smoke tests for schema validation.

These tests verify that:
1. All schemas can be imported
2. Basic instantiation works
3. Field validation catches obvious errors
4. camelCase payloads validate and results dump with camelCase keys
"""

import pytest
from decimal import Decimal
from pydantic import ValidationError

from opm_domain.schemas import (
    # Breakpoints
    Participant,
    Breakpoint,
    sort_breakpoints,
    # Black-Scholes
    BlackScholesParams,
    # Requests
    SolverOptions,
    BacksolveRequest,
    WeightedScenario,
    HybridScenario,
    # Results
    AllocationResult,
    ClassAllocation,
    HybridPWERMResult,
    WeightedStatistics,
)


class TestBasicInstantiation:
    """Test that basic schema instantiation works."""

    def test_participant(self):
        """Test creating a participant with the default share count."""
        participant = Participant(security_class="common", participation_percent=Decimal("0.75"))
        assert participant.participating_shares == Decimal("0")

    def test_breakpoint_defaults(self):
        """Test a breakpoint with no id, kind or participants."""
        breakpoint = Breakpoint(value=Decimal("1000000"))
        assert breakpoint.id is None
        assert breakpoint.kind == "pro_rata_distribution"
        assert breakpoint.total_participation == Decimal("0")

    def test_black_scholes_as_floats(self):
        """Test converting parameters for the pricer."""
        params = BlackScholesParams(
            time_to_liquidity=Decimal("3"),
            volatility=Decimal("0.6"),
            risk_free_rate=Decimal("0.045"),
        )
        assert params.as_floats() == (3.0, 0.6, 0.045, 0.0)

    def test_weighted_scenario_params(self):
        """Test extracting a scenario's own Black-Scholes parameters."""
        scenario = WeightedScenario(
            name="IPO",
            probability=Decimal("0.3"),
            enterprise_value=Decimal("150000000"),
            time_to_liquidity=Decimal("2"),
            volatility=Decimal("0.5"),
            risk_free_rate=Decimal("0.04"),
        )
        params = scenario.black_scholes_params()
        assert isinstance(params, BlackScholesParams)
        assert params.volatility == Decimal("0.5")


class TestFieldValidation:
    """Test that field validation catches obvious errors."""

    def test_negative_breakpoint_value(self):
        with pytest.raises(ValidationError):
            Breakpoint(value=Decimal("-1"))

    def test_unknown_breakpoint_kind(self):
        with pytest.raises(ValidationError):
            Breakpoint(value=Decimal("0"), kind="dividend")

    def test_zero_volatility(self):
        with pytest.raises(ValidationError):
            BlackScholesParams(
                time_to_liquidity=Decimal("1"),
                volatility=Decimal("0"),
                risk_free_rate=Decimal("0.04"),
            )

    def test_negative_rate_allowed(self):
        params = BlackScholesParams(
            time_to_liquidity=Decimal("1"),
            volatility=Decimal("0.3"),
            risk_free_rate=Decimal("-0.005"),
        )
        assert params.risk_free_rate < 0

    def test_black_scholes_params_are_frozen(self):
        params = BlackScholesParams(
            time_to_liquidity=Decimal("1"),
            volatility=Decimal("0.3"),
            risk_free_rate=Decimal("0.04"),
        )
        with pytest.raises(ValidationError):
            params.volatility = Decimal("0.4")

    @pytest.mark.parametrize("bracket", [(-1.0, 10.0), (10.0, 10.0), (10.0, 5.0)])
    def test_invalid_solver_bracket(self, bracket):
        with pytest.raises(ValidationError, match="initial_bracket"):
            SolverOptions(initial_bracket=bracket)

    def test_non_positive_solver_tolerance(self):
        with pytest.raises(ValidationError):
            SolverOptions(tolerance=0)

    @pytest.mark.parametrize("tolerance", [float("inf"), float("nan")])
    def test_non_finite_solver_tolerance(self, tolerance):
        with pytest.raises(ValidationError):
            SolverOptions(tolerance=tolerance)

    def test_negative_scenario_probability(self):
        with pytest.raises(ValidationError):
            HybridScenario(name="Base", probability=Decimal("-0.1"), target_fmv=Decimal("1"))


class TestSerialization:
    """camelCase in, camelCase out."""

    def test_request_from_camel_case_payload(self):
        request = BacksolveRequest.model_validate({
            "targetFmv": "1.25",
            "securityClassId": "common",
            "blackScholesParams": {"timeToLiquidity": "3", "volatility": "0.6", "riskFreeRate": "0.045"},
            "breakpoints": [{
                "value": "0",
                "participants": [{"securityClass": "common", "participationPercent": "1"}],
            }],
            "totalShares": "1000000",
            "shareClassTotals": {"common": "1000000"},
            "solverOptions": {"maxIterations": 20, "initialBracket": [0, 5000000]},
        })
        assert request.target_fmv == Decimal("1.25")
        assert request.breakpoints[0].participants[0].security_class == "common"
        assert request.solver_options.max_iterations == 20
        assert request.solver_options.initial_bracket == (0.0, 5000000.0)

    def test_snake_case_names_accepted(self):
        options = SolverOptions(max_iterations=5, method="bisection")
        assert options.model_dump(by_alias=True, exclude_none=True) == {"maxIterations": 5, "method": "bisection"}

    def test_result_dump_uses_fmv_acronyms(self):
        result = HybridPWERMResult(
            weighted_fmv=1.5,
            weighted_enterprise_value=2.0e7,
            converged=True,
            statistics=WeightedStatistics(
                weighted_mean=1.5,
                weighted_variance=0.0,
                weighted_std_dev=0.0,
                coefficient_of_variation=0.0,
                percentile_25=1.5,
                percentile_50=1.5,
                percentile_75=1.5,
            ),
            execution_time_ms=1.0,
        )
        data = result.model_dump(by_alias=True)
        assert data["weightedFMV"] == 1.5
        assert data["weightedEnterpriseValue"] == 2.0e7
        assert data["statistics"]["coefficientOfVariation"] == 0.0


class TestHelpers:

    def test_sort_breakpoints_is_stable(self):
        breakpoints = [
            Breakpoint(id="c", value=Decimal("10")),
            Breakpoint(id="a", value=Decimal("0")),
            Breakpoint(id="b", value=Decimal("10")),
        ]
        assert [bp.id for bp in sort_breakpoints(breakpoints)] == ["a", "c", "b"]

    def test_allocation_get_class(self):
        allocation = AllocationResult(
            enterprise_value=100.0,
            by_class=[ClassAllocation(
                security_class="common",
                shares=10.0,
                total_value=100.0,
                value_per_share=10.0,
                percent_of_total=100.0,
            )],
        )
        assert allocation.get_class("common").total_value == 100.0
        assert allocation.get_class("series_a") is None
        assert allocation.price_of("common") == 10.0
