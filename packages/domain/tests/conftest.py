"""Shared fixtures for the OPM backsolve tests.

The reference cap table:
- common: 12M shares
- series_a: 4M shares, $10M 1x liquidation preference
- options: 4M shares

Breakpoints:
- $0: Series A recovers its preference
- $10M: common catches up alone
- $40M: Series A converts and shares pro rata with common (75/25)
- $60M: options exercise and join (60/20/20)
"""

from decimal import Decimal

import pytest

from opm_domain.config import BacksolveSettings
from opm_domain.schemas import (
    BlackScholesParams,
    Breakpoint,
    Participant,
    WeightedScenario,
)


def participant(security_class, percent, shares=0):
    return Participant(
        security_class=security_class,
        participating_shares=Decimal(str(shares)),
        participation_percent=Decimal(str(percent)),
    )


def make_scenario(
    name,
    probability,
    enterprise_value=None,
    is_backsolve=False,
    volatility="0.60",
    time_to_liquidity="3",
    risk_free_rate="0.045",
    **overrides,
):
    return WeightedScenario(
        name=name,
        probability=Decimal(str(probability)),
        enterprise_value=None if enterprise_value is None else Decimal(str(enterprise_value)),
        is_backsolve=is_backsolve,
        volatility=Decimal(volatility),
        time_to_liquidity=Decimal(time_to_liquidity),
        risk_free_rate=Decimal(risk_free_rate),
        **overrides,
    )


@pytest.fixture
def bs_params():
    """3 years, 60% volatility, 4.5% risk-free, no dividends."""
    return BlackScholesParams(
        time_to_liquidity=Decimal("3"),
        volatility=Decimal("0.60"),
        risk_free_rate=Decimal("0.045"),
    )


@pytest.fixture
def share_class_totals():
    return {
        "common": Decimal("12000000"),
        "series_a": Decimal("4000000"),
        "options": Decimal("4000000"),
    }


@pytest.fixture
def total_shares(share_class_totals):
    return sum(share_class_totals.values())


@pytest.fixture
def breakpoints():
    return [
        Breakpoint(
            id="bp_pref",
            value=Decimal("0"),
            kind="liquidation_preference",
            description="Series A 1x preference",
            participants=[participant("series_a", "1", 4_000_000)],
        ),
        Breakpoint(
            id="bp_common",
            value=Decimal("10000000"),
            kind="pro_rata_distribution",
            description="Common catch-up",
            participants=[participant("common", "1", 12_000_000)],
        ),
        Breakpoint(
            id="bp_conversion",
            value=Decimal("40000000"),
            kind="voluntary_conversion",
            description="Series A converts",
            participants=[
                participant("common", "0.75", 12_000_000),
                participant("series_a", "0.25", 4_000_000),
            ],
        ),
        Breakpoint(
            id="bp_options",
            value=Decimal("60000000"),
            kind="option_exercise",
            description="Options exercise",
            participants=[
                participant("common", "0.6", 12_000_000),
                participant("series_a", "0.2", 4_000_000),
                participant("options", "0.2", 4_000_000),
            ],
        ),
    ]


@pytest.fixture
def single_breakpoint():
    """One breakpoint at zero, all value to common."""
    return [
        Breakpoint(
            id="bp_all",
            value=Decimal("0"),
            participants=[participant("common", "1", 1_000_000)],
        )
    ]


@pytest.fixture
def settings():
    """Settings with a bounded bracket search, independent of the environment."""
    return BacksolveSettings(MAX_BRACKET_EXPANSIONS=10, _env_file=None)


@pytest.fixture
def scenario_factory():
    """Builds WeightedScenario objects with the reference Black-Scholes inputs."""
    return make_scenario


@pytest.fixture
def participant_factory():
    return participant
