"""Backsolve blocks.

Run the optimizers inside a block pipeline and tabulate what they did.

Output DataFrames:
- backsolve_audit_trail: Every audit event of a single backsolve
- weighted_backsolve_scenarios: One row per PWERM scenario
- backsolve_iterations: Root-finder refinement history
"""

from typing import List, Optional

import pandas as pd

from .base import Block, BlockContext
from ..audit import ITERATION_CATEGORY, AuditTrailLogger
from ..config import BacksolveSettings
from ..optimizers import BacksolveOptimizer, WeightedBacksolveOptimizer
from ..schemas import BacksolveRequest, BacksolveResult, WeightedBacksolveRequest, WeightedBacksolveResult

SCENARIO_COLUMNS = [
    "name",
    "probability",
    "enterprise_value",
    "fmv_per_share",
    "weighted_contribution",
    "is_backsolve",
    "time_to_liquidity",
    "volatility",
    "risk_free_rate",
    "dividend_yield",
    "valid",
]

ITERATION_COLUMNS = [
    "iteration",
    "enterprise_value",
    "price",
    "residual",
    "lower",
    "upper",
    "step",
]


class BacksolveBlock(Block):
    """Single-scenario backsolve.

    Inputs (from context):
        - backsolve_request: BacksolveRequest

    Outputs (to context):
        - backsolve_result: BacksolveResult
        - backsolve_audit_trail: DataFrame of audit events (see
          AuditTrailLogger.to_frame)

    Example:
        context = BlockContext()
        context.set("backsolve_request", request)
        BacksolveBlock().execute(context)
        context.get("backsolve_result").enterprise_value
    """

    def __init__(
        self,
        request_key: str = "backsolve_request",
        settings: Optional[BacksolveSettings] = None,
    ):
        self.request_key = request_key
        self.settings = settings

    def inputs(self) -> List[str]:
        return [self.request_key]

    def outputs(self) -> List[str]:
        return ["backsolve_result", "backsolve_audit_trail"]

    def execute(self, context: BlockContext) -> None:
        request: BacksolveRequest = context.get(self.request_key)
        audit = AuditTrailLogger("backsolve_block")
        result = BacksolveOptimizer(audit=audit, settings=self.settings).backsolve(request)
        context.set("backsolve_result", result)
        context.set("backsolve_audit_trail", audit.to_frame())


class WeightedBacksolveBlock(Block):
    """Weighted (PWERM) backsolve.

    Inputs (from context):
        - weighted_backsolve_request: WeightedBacksolveRequest

    Outputs (to context):
        - weighted_backsolve_result: WeightedBacksolveResult
        - weighted_backsolve_scenarios: DataFrame with columns:
            * name, probability (fraction), enterprise_value, fmv_per_share,
              weighted_contribution, is_backsolve
            * time_to_liquidity, volatility, risk_free_rate, dividend_yield
            * valid: Whether the scenario's allocation passed validation
    """

    def __init__(
        self,
        request_key: str = "weighted_backsolve_request",
        settings: Optional[BacksolveSettings] = None,
    ):
        self.request_key = request_key
        self.settings = settings

    def inputs(self) -> List[str]:
        return [self.request_key]

    def outputs(self) -> List[str]:
        return ["weighted_backsolve_result", "weighted_backsolve_scenarios"]

    def execute(self, context: BlockContext) -> None:
        request: WeightedBacksolveRequest = context.get(self.request_key)
        result = WeightedBacksolveOptimizer(settings=self.settings).backsolve(request)
        context.set("weighted_backsolve_result", result)
        context.set("weighted_backsolve_scenarios", self._scenario_frame(result))

    def _scenario_frame(self, result: WeightedBacksolveResult) -> pd.DataFrame:
        rows = []
        for scenario in result.scenario_results:
            time, vol, rate, dividend_yield = scenario.black_scholes_params.as_floats()
            rows.append({
                "name": scenario.name,
                "probability": scenario.probability,
                "enterprise_value": scenario.enterprise_value,
                "fmv_per_share": scenario.fmv_per_share,
                "weighted_contribution": scenario.weighted_contribution,
                "is_backsolve": scenario.is_backsolve,
                "time_to_liquidity": time,
                "volatility": vol,
                "risk_free_rate": rate,
                "dividend_yield": dividend_yield,
                "valid": scenario.allocation.valid,
            })
        return pd.DataFrame(rows, columns=SCENARIO_COLUMNS)


class IterationHistoryBlock(Block):
    """Root-finder history of a single backsolve.

    Inputs (from context):
        - backsolve_result: BacksolveResult (for the target price)
        - backsolve_audit_trail: DataFrame from BacksolveBlock

    Outputs (to context):
        - backsolve_iterations: DataFrame with columns:
            * iteration: Refinement step number (1-based)
            * enterprise_value: Candidate enterprise value
            * price: Price per share at the candidate
            * residual: price - target
            * lower, upper: Bracket before the step
            * step: 'secant' or 'bisection'

    A backsolve that converged while bracketing has no refinement steps and
    yields an empty frame.
    """

    def __init__(
        self,
        result_key: str = "backsolve_result",
        audit_key: str = "backsolve_audit_trail",
    ):
        self.result_key = result_key
        self.audit_key = audit_key

    def inputs(self) -> List[str]:
        return [self.result_key, self.audit_key]

    def outputs(self) -> List[str]:
        return ["backsolve_iterations"]

    def execute(self, context: BlockContext) -> None:
        result: BacksolveResult = context.get(self.result_key)
        events: pd.DataFrame = context.get(self.audit_key)

        if events.empty or "category" not in events.columns:
            context.set("backsolve_iterations", pd.DataFrame(columns=ITERATION_COLUMNS))
            return

        steps = events[events["category"] == ITERATION_CATEGORY]
        if steps.empty:
            context.set("backsolve_iterations", pd.DataFrame(columns=ITERATION_COLUMNS))
            return

        history = pd.DataFrame({
            "iteration": steps["iteration"].astype(int),
            "enterprise_value": steps["x"].astype(float),
            "price": steps["residual"].astype(float) + result.target_fmv,
            "residual": steps["residual"].astype(float),
            "lower": steps["lower"].astype(float),
            "upper": steps["upper"].astype(float),
            "step": steps["step"],
        })
        context.set("backsolve_iterations", history.reset_index(drop=True))
