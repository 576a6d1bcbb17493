"""Tests for the weighted (PWERM) backsolve.

Tests cover:
- Consistency with a forward-priced blend
- Fraction and percentage probability formats
- Scenario-specific breakpoints and Black-Scholes parameters
- Validation of scenario lists and probabilities
- Targets the fixed scenarios alone already exceed
"""

import pytest
from decimal import Decimal

from opm_domain.errors import AllocationError, RequestValidationError
from opm_domain.optimizers import WeightedBacksolveOptimizer, normalize_probabilities
from opm_domain.schemas import WeightedBacksolveRequest
from opm_domain.waterfall import WaterfallValuator


FIXED_EV = 30_000_000
BACKSOLVE_EV = 20_000_000


@pytest.fixture
def blended_target(bs_params, breakpoints, share_class_totals):
    """Common's blended price with 40% at $20M and 60% at $30M."""
    valuator = WaterfallValuator(bs_params)
    backsolve_price = valuator.price_of(BACKSOLVE_EV, breakpoints, share_class_totals, "common")
    fixed_price = valuator.price_of(FIXED_EV, breakpoints, share_class_totals, "common")
    return 0.4 * backsolve_price + 0.6 * fixed_price


@pytest.fixture
def make_request(breakpoints, share_class_totals, total_shares, scenario_factory):
    def _make(target, scenarios=None, **overrides):
        if scenarios is None:
            scenarios = [
                scenario_factory("Stay private", "0.4", is_backsolve=True),
                scenario_factory("M&A", "0.6", enterprise_value=FIXED_EV),
            ]
        fields = dict(
            target_fmv=Decimal(repr(target)),
            security_class_id="common",
            scenarios=scenarios,
            breakpoints=breakpoints,
            total_shares=total_shares,
            share_class_totals=share_class_totals,
        )
        fields.update(overrides)
        return WeightedBacksolveRequest(**fields)
    return _make


# =============================================================================
# Consistency
# =============================================================================

def test_recovers_backsolve_enterprise_value(make_request, blended_target):
    result = WeightedBacksolveOptimizer().backsolve(make_request(blended_target))

    assert result.converged
    assert result.success
    assert result.backsolve_scenario_index == 0
    assert result.backsolve_scenario.name == "Stay private"
    assert result.backsolve_scenario.enterprise_value == pytest.approx(BACKSOLVE_EV, rel=1e-4)
    assert result.actual_weighted_fmv == pytest.approx(blended_target, abs=1e-6)
    assert result.failed_scenarios == []


def test_contributions_sum_to_weighted_price(make_request, blended_target):
    result = WeightedBacksolveOptimizer().backsolve(make_request(blended_target))

    assert sum(s.weighted_contribution for s in result.scenario_results) == pytest.approx(
        result.actual_weighted_fmv
    )
    for scenario in result.scenario_results:
        assert scenario.weighted_contribution == pytest.approx(scenario.probability * scenario.fmv_per_share)


def test_fixed_scenario_keeps_its_enterprise_value(make_request, blended_target):
    result = WeightedBacksolveOptimizer().backsolve(make_request(blended_target))
    fixed = result.scenario_results[1]
    assert not fixed.is_backsolve
    assert fixed.enterprise_value == FIXED_EV


def test_metadata_reports_required_backsolve_price(make_request, blended_target):
    result = WeightedBacksolveOptimizer().backsolve(make_request(blended_target))
    metadata = result.metadata
    backsolve = result.backsolve_scenario

    assert metadata.termination_reason == "converged"
    assert metadata.required_backsolve_fmv == pytest.approx(backsolve.fmv_per_share, abs=1e-5)
    assert metadata.fixed_weighted_sum + 0.4 * backsolve.fmv_per_share == pytest.approx(
        blended_target, abs=1e-6
    )


def test_percentage_format_matches_fraction(make_request, blended_target, scenario_factory):
    fraction = WeightedBacksolveOptimizer().backsolve(make_request(blended_target))
    percentage = WeightedBacksolveOptimizer().backsolve(make_request(
        blended_target,
        scenarios=[
            scenario_factory("Stay private", "40", is_backsolve=True),
            scenario_factory("M&A", "60", enterprise_value=FIXED_EV),
        ],
        probability_format="percentage",
    ))

    assert percentage.converged
    assert [s.probability for s in percentage.scenario_results] == pytest.approx([0.4, 0.6])
    assert percentage.backsolve_scenario.enterprise_value == pytest.approx(
        fraction.backsolve_scenario.enterprise_value, rel=1e-6
    )


def test_backsolve_scenario_may_come_last(make_request, blended_target, scenario_factory):
    result = WeightedBacksolveOptimizer().backsolve(make_request(
        blended_target,
        scenarios=[
            scenario_factory("M&A", "0.6", enterprise_value=FIXED_EV),
            scenario_factory("Stay private", "0.4", is_backsolve=True),
        ],
    ))
    assert result.backsolve_scenario_index == 1
    assert result.backsolve_scenario.enterprise_value == pytest.approx(BACKSOLVE_EV, rel=1e-4)


# =============================================================================
# Scenario Inputs
# =============================================================================

class TestScenarioInputs:

    def test_scenario_specific_breakpoints(self, make_request, scenario_factory, single_breakpoint):
        request = make_request(
            2.0,
            scenarios=[
                scenario_factory("Stay private", "0.5", is_backsolve=True),
                scenario_factory("Dissolution", "0.5", enterprise_value=FIXED_EV, breakpoints=single_breakpoint),
            ],
        )
        result = WeightedBacksolveOptimizer().backsolve(request)

        # Common takes everything under the dissolution breakpoints
        assert result.scenario_results[1].fmv_per_share == pytest.approx(FIXED_EV / 12_000_000)
        assert result.converged

    def test_scenario_parameters_are_used(self, make_request, scenario_factory, blended_target):
        request = make_request(
            blended_target,
            scenarios=[
                scenario_factory("Stay private", "0.4", is_backsolve=True),
                scenario_factory("IPO", "0.6", enterprise_value=FIXED_EV, volatility="0.30", time_to_liquidity="1"),
            ],
        )
        result = WeightedBacksolveOptimizer().backsolve(request)

        ipo = result.scenario_results[1]
        assert float(ipo.black_scholes_params.volatility) == 0.30
        assert float(ipo.black_scholes_params.time_to_liquidity) == 1.0
        # A different fixed price moves the solved value away from $20M
        assert result.converged
        assert result.backsolve_scenario.enterprise_value != pytest.approx(BACKSOLVE_EV, rel=1e-4)


# =============================================================================
# Validation
# =============================================================================

class TestValidation:

    def test_single_scenario_rejected(self, make_request, scenario_factory):
        request = make_request(1.0, scenarios=[scenario_factory("Only", "1", is_backsolve=True)])
        with pytest.raises(RequestValidationError, match="at least 2 scenarios"):
            WeightedBacksolveOptimizer().backsolve(request)

    @pytest.mark.parametrize("flags", [(False, False), (True, True)])
    def test_exactly_one_backsolve_scenario(self, make_request, scenario_factory, flags):
        scenarios = [
            scenario_factory("A", "0.5", enterprise_value=FIXED_EV, is_backsolve=flags[0]),
            scenario_factory("B", "0.5", enterprise_value=FIXED_EV, is_backsolve=flags[1]),
        ]
        with pytest.raises(RequestValidationError, match="exactly one scenario"):
            WeightedBacksolveOptimizer().backsolve(make_request(1.0, scenarios=scenarios))

    def test_fixed_scenario_needs_enterprise_value(self, make_request, scenario_factory):
        scenarios = [
            scenario_factory("A", "0.5", is_backsolve=True),
            scenario_factory("B", "0.5"),
        ]
        with pytest.raises(RequestValidationError) as exc_info:
            WeightedBacksolveOptimizer().backsolve(make_request(1.0, scenarios=scenarios))
        assert exc_info.value.field == "scenarios[1].enterpriseValue"

    def test_probabilities_must_sum_to_one(self, make_request, scenario_factory):
        scenarios = [
            scenario_factory("A", "0.5", is_backsolve=True),
            scenario_factory("B", "0.4", enterprise_value=FIXED_EV),
        ]
        with pytest.raises(RequestValidationError, match="must sum to 1"):
            WeightedBacksolveOptimizer().backsolve(make_request(1.0, scenarios=scenarios))

    def test_zero_backsolve_probability_rejected(self, make_request, scenario_factory):
        scenarios = [
            scenario_factory("A", "0", is_backsolve=True),
            scenario_factory("B", "1", enterprise_value=FIXED_EV),
        ]
        with pytest.raises(RequestValidationError) as exc_info:
            WeightedBacksolveOptimizer().backsolve(make_request(1.0, scenarios=scenarios))
        assert exc_info.value.field == "scenarios[0].probability"

    def test_non_positive_target_rejected(self, make_request):
        with pytest.raises(RequestValidationError, match="targetFmv"):
            WeightedBacksolveOptimizer().backsolve(make_request(0.0))

    def test_zero_share_scenario_raises_allocation_error(self, make_request, scenario_factory):
        scenarios = [
            scenario_factory("Stay private", "0.5", is_backsolve=True),
            scenario_factory(
                "Recap",
                "0.5",
                enterprise_value=FIXED_EV,
                share_class_totals={"common": Decimal("0"), "series_a": Decimal("4000000")},
            ),
        ]
        with pytest.raises(AllocationError, match="Scenario 'Recap'") as exc_info:
            WeightedBacksolveOptimizer().backsolve(make_request(1.0, scenarios=scenarios))
        assert exc_info.value.scenario == "Recap"
        assert exc_info.value.security_class == "common"


# =============================================================================
# Unreachable Targets
# =============================================================================

def test_fixed_scenarios_above_target_are_not_bracketed(
    make_request, scenario_factory, bs_params, breakpoints, share_class_totals
):
    fixed_price = WaterfallValuator(bs_params).price_of(500_000_000, breakpoints, share_class_totals, "common")
    scenarios = [
        scenario_factory("Stay private", "0.4", is_backsolve=True),
        scenario_factory("IPO", "0.6", enterprise_value=500_000_000),
    ]

    result = WeightedBacksolveOptimizer().backsolve(make_request(0.3 * fixed_price, scenarios=scenarios))

    assert not result.converged
    assert result.metadata.termination_reason == "not_bracketed"
    assert result.metadata.required_backsolve_fmv < 0
    assert any("Fixed scenarios alone contribute" in w for w in result.warnings)


# =============================================================================
# Probability Normalization
# =============================================================================

class TestNormalizeProbabilities:

    def test_fractions_pass_through(self):
        assert normalize_probabilities([Decimal("0.25"), Decimal("0.75")], "fraction", 1e-4) == [0.25, 0.75]

    def test_percentages_scaled(self):
        assert normalize_probabilities([Decimal("30"), Decimal("70")], "percentage", 1e-4) == pytest.approx(
            [0.3, 0.7]
        )

    def test_small_rounding_tolerated(self):
        result = normalize_probabilities([Decimal("0.33333"), Decimal("0.66666")], "fraction", 1e-4)
        assert sum(result) == pytest.approx(1, abs=1e-4)

    def test_percentage_sum_error_mentions_hundred(self):
        with pytest.raises(RequestValidationError, match="must sum to 100"):
            normalize_probabilities([Decimal("30"), Decimal("60")], "percentage", 1e-4)

    def test_fraction_above_one_rejected(self):
        with pytest.raises(RequestValidationError, match="between 0 and 1") as exc_info:
            normalize_probabilities([Decimal("1.5"), Decimal("-0.5")], "fraction", 1e-4)
        assert exc_info.value.field == "scenarios[0].probability"
