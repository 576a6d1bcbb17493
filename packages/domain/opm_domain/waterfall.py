"""OPM waterfall valuation.

Allocates an enterprise value across security classes using breakpoints:

1. Sort breakpoints ascending by value (stable for ties)
2. Price a call on the enterprise value struck at every breakpoint
3. Each tranche (B_i, B_i+1) is worth C(B_i) - C(B_i+1); the highest
   breakpoint is an uncapped call C(B_n)
4. Split every tranche among the breakpoint's participants by
   participation percent
5. Sum per class and divide by the class share count

Because a call spread's value never decreases as the spot rises, the price of
any class with positive participation is non-decreasing in enterprise value.
The root finder relies on that.
"""

import math
from typing import Dict, List, Mapping, Optional
from decimal import Decimal

import structlog

from .pricing import call_value
from .schemas import (
    AllocationResult,
    BlackScholesParams,
    Breakpoint,
    ClassAllocation,
    TrancheAllocation,
    sort_breakpoints,
)

logger = structlog.get_logger()

# Distributed value may exceed the enterprise value by this much before the
# allocation is flagged invalid
OVER_DISTRIBUTION_TOLERANCE = 0.01
PARTIAL_PARTICIPATION_TOLERANCE = 1e-9


class WaterfallValuator:
    """Forward OPM allocation for one set of Black-Scholes parameters.

    One valuator per scenario: weighted backsolves build one for each
    scenario because horizons and volatilities differ across exit paths.

    Example:
        valuator = WaterfallValuator(BlackScholesParams(
            time_to_liquidity=Decimal("3"), volatility=Decimal("0.6"),
            risk_free_rate=Decimal("0.045"),
        ))
        allocation = valuator.allocate(25_000_000, breakpoints, share_class_totals)
        common_price = allocation.price_of("common")
    """

    def __init__(self, params: BlackScholesParams):
        self.params = params
        self._time, self._vol, self._rate, self._dividend_yield = params.as_floats()

    def allocate(
        self,
        enterprise_value: float,
        breakpoints: List[Breakpoint],
        share_class_totals: Mapping[str, Decimal],
    ) -> AllocationResult:
        """Allocate ``enterprise_value`` across security classes.

        Args:
            enterprise_value: Total equity value (spot of every call)
            breakpoints: Breakpoints in any order
            share_class_totals: Share count per security class

        Returns:
            AllocationResult with per-class and per-tranche values
        """
        ev = float(enterprise_value)
        ordered = sort_breakpoints(breakpoints)

        call_values = [self._call(ev, float(bp.value)) for bp in ordered]

        tranches: List[TrancheAllocation] = []
        class_values: Dict[str, float] = {}
        warnings: List[str] = []

        for index, bp in enumerate(ordered):
            is_last = index == len(ordered) - 1
            lower_call = call_values[index]
            upper_call = 0.0 if is_last else call_values[index + 1]
            tranche_value = max(lower_call - upper_call, 0.0)
            breakpoint_id = bp.id or f"bp_{index}"

            participation_total = float(bp.total_participation)
            if tranche_value > 0 and participation_total < 1 - PARTIAL_PARTICIPATION_TOLERANCE:
                warnings.append(
                    f"Breakpoint {breakpoint_id} allocates {participation_total:.4%} of its tranche; "
                    f"the remainder is unallocated"
                )

            allocations: Dict[str, float] = {}
            for participant in bp.participants:
                share = tranche_value * float(participant.participation_percent)
                allocations[participant.security_class] = share
                class_values[participant.security_class] = (
                    class_values.get(participant.security_class, 0.0) + share
                )

            tranches.append(TrancheAllocation(
                breakpoint_id=breakpoint_id,
                kind=bp.kind,
                lower_strike=float(bp.value),
                upper_strike=None if is_last else float(ordered[index + 1].value),
                lower_call_value=lower_call,
                upper_call_value=upper_call,
                tranche_value=tranche_value,
                participation_total=participation_total,
                allocations=allocations,
            ))

        total_distributed = sum(class_values.values())
        by_class = self._by_class(class_values, share_class_totals, total_distributed)
        errors = self._validate(ev, total_distributed, by_class)

        return AllocationResult(
            enterprise_value=ev,
            by_class=by_class,
            tranches=tranches,
            total_value_distributed=total_distributed,
            unallocated_value=ev - total_distributed,
            valid=not errors,
            validation_errors=errors,
            warnings=warnings,
        )

    def price_of(
        self,
        enterprise_value: float,
        breakpoints: List[Breakpoint],
        share_class_totals: Mapping[str, Decimal],
        security_class: str,
    ) -> float:
        """Per-share value of ``security_class`` at ``enterprise_value``."""
        return self.allocate(enterprise_value, breakpoints, share_class_totals).price_of(security_class)

    def _call(self, spot: float, strike: float) -> float:
        return call_value(spot, strike, self._time, self._vol, self._rate, self._dividend_yield)

    def _by_class(
        self,
        class_values: Dict[str, float],
        share_class_totals: Mapping[str, Decimal],
        total_distributed: float,
    ) -> List[ClassAllocation]:
        """Per-class rows, covering every class with value or shares."""
        classes = list(share_class_totals.keys())
        classes += [c for c in class_values if c not in share_class_totals]

        rows = []
        for security_class in classes:
            value = class_values.get(security_class, 0.0)
            shares = float(share_class_totals.get(security_class, 0))
            rows.append(ClassAllocation(
                security_class=security_class,
                shares=shares,
                total_value=value,
                value_per_share=value / shares if shares > 0 else 0.0,
                percent_of_total=value / total_distributed * 100 if total_distributed > 0 else 0.0,
            ))

        # Largest allocation first
        rows.sort(key=lambda row: row.total_value, reverse=True)
        return rows

    def _validate(
        self,
        enterprise_value: float,
        total_distributed: float,
        by_class: List[ClassAllocation],
    ) -> List[str]:
        errors = []

        if not math.isfinite(total_distributed):
            errors.append("Total value distributed is not finite")
        elif total_distributed > enterprise_value * (1 + OVER_DISTRIBUTION_TOLERANCE) + 1e-9:
            errors.append(
                f"Total value distributed ({total_distributed:,.2f}) exceeds "
                f"enterprise value ({enterprise_value:,.2f})"
            )

        for row in by_class:
            if not math.isfinite(row.total_value):
                errors.append(f"Allocation value is not finite for {row.security_class}")
            elif row.total_value < 0:
                errors.append(f"Negative allocation for {row.security_class}: {row.total_value}")

        if errors:
            logger.warning(
                "opm_allocation_invalid",
                enterprise_value=enterprise_value,
                errors=errors,
            )
        return errors


def allocate(
    enterprise_value: float,
    breakpoints: List[Breakpoint],
    share_class_totals: Mapping[str, Decimal],
    params: BlackScholesParams,
) -> AllocationResult:
    """Shortcut for ``WaterfallValuator(params).allocate(...)``."""
    return WaterfallValuator(params).allocate(enterprise_value, breakpoints, share_class_totals)
