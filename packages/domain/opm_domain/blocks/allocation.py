"""Forward OPM allocation block.

Values a cap table at a given enterprise value and lays the allocation out
as DataFrames.

Output DataFrames:
- opm_allocation_by_class: One row per security class, largest value first
- opm_tranches: One row per tranche and participating class
"""

from typing import List

import pandas as pd

from .base import Block, BlockContext
from ..schemas import AllocationResult, BlackScholesParams
from ..waterfall import WaterfallValuator

BY_CLASS_COLUMNS = [
    "security_class",
    "shares",
    "total_value",
    "value_per_share",
    "percent_of_total",
]

TRANCHE_COLUMNS = [
    "breakpoint_id",
    "kind",
    "lower_strike",
    "upper_strike",
    "lower_call_value",
    "upper_call_value",
    "tranche_value",
    "participation_total",
    "security_class",
    "allocated_value",
]


def allocation_by_class_frame(allocation: AllocationResult) -> pd.DataFrame:
    """Per-class allocation table."""
    rows = [row.model_dump(include=set(BY_CLASS_COLUMNS)) for row in allocation.by_class]
    return pd.DataFrame(rows, columns=BY_CLASS_COLUMNS)


def tranche_frame(allocation: AllocationResult) -> pd.DataFrame:
    """Long-form tranche table.

    A tranche nobody participates in still gets one row, with
    ``security_class`` None and ``allocated_value`` 0.
    """
    rows = []
    for tranche in allocation.tranches:
        base = {
            "breakpoint_id": tranche.breakpoint_id,
            "kind": tranche.kind,
            "lower_strike": tranche.lower_strike,
            "upper_strike": tranche.upper_strike,
            "lower_call_value": tranche.lower_call_value,
            "upper_call_value": tranche.upper_call_value,
            "tranche_value": tranche.tranche_value,
            "participation_total": tranche.participation_total,
        }
        if not tranche.allocations:
            rows.append({**base, "security_class": None, "allocated_value": 0.0})
        for security_class, value in tranche.allocations.items():
            rows.append({**base, "security_class": security_class, "allocated_value": value})
    return pd.DataFrame(rows, columns=TRANCHE_COLUMNS)


class AllocationBlock(Block):
    """Values the cap table at one enterprise value.

    Inputs (from context):
        - enterprise_value: Enterprise value to allocate
        - breakpoints: List[Breakpoint]
        - share_class_totals: Dict[str, Decimal]
        - black_scholes_params: BlackScholesParams

    Outputs (to context):
        - opm_allocation: AllocationResult
        - opm_allocation_by_class: DataFrame with columns:
            * security_class, shares, total_value, value_per_share, percent_of_total
        - opm_tranches: DataFrame with columns:
            * breakpoint_id, kind, lower_strike, upper_strike (NaN when uncapped),
              lower_call_value, upper_call_value, tranche_value,
              participation_total, security_class, allocated_value
    """

    def __init__(
        self,
        enterprise_value_key: str = "enterprise_value",
        breakpoints_key: str = "breakpoints",
        share_class_totals_key: str = "share_class_totals",
        params_key: str = "black_scholes_params",
    ):
        self.enterprise_value_key = enterprise_value_key
        self.breakpoints_key = breakpoints_key
        self.share_class_totals_key = share_class_totals_key
        self.params_key = params_key

    def inputs(self) -> List[str]:
        return [
            self.enterprise_value_key,
            self.breakpoints_key,
            self.share_class_totals_key,
            self.params_key,
        ]

    def outputs(self) -> List[str]:
        return ["opm_allocation", "opm_allocation_by_class", "opm_tranches"]

    def execute(self, context: BlockContext) -> None:
        params: BlackScholesParams = context.get(self.params_key)
        allocation = WaterfallValuator(params).allocate(
            float(context.get(self.enterprise_value_key)),
            context.get(self.breakpoints_key),
            context.get(self.share_class_totals_key),
        )
        context.set("opm_allocation", allocation)
        context.set("opm_allocation_by_class", allocation_by_class_frame(allocation))
        context.set("opm_tranches", tranche_frame(allocation))
