"""Computation blocks for OPM backsolve analysis.

Blocks wrap the valuator and optimizers so results come out as pandas
DataFrames for downstream consumption.

Architecture:
    Requests (schemas) → Blocks (computation) → DataFrames (output)

Available blocks:
- AllocationBlock: Forward OPM allocation at a given enterprise value
- BacksolveBlock: Single-scenario backsolve plus its audit trail
- WeightedBacksolveBlock: PWERM backsolve plus a per-scenario table
- IterationHistoryBlock: Root-finder refinement history

Usage:
    from opm_domain.blocks import BlockContext, BlockExecutor, BacksolveBlock, IterationHistoryBlock

    context = BlockContext()
    context.set("backsolve_request", request)
    BlockExecutor([IterationHistoryBlock(), BacksolveBlock()]).execute(context)

    iterations_df = context.get("backsolve_iterations")
"""

from .base import Block, BlockContext, BlockExecutor, CircularDependencyError, topological_sort
from .allocation import AllocationBlock, allocation_by_class_frame, tranche_frame
from .backsolve import BacksolveBlock, WeightedBacksolveBlock, IterationHistoryBlock

__all__ = [
    "Block",
    "BlockContext",
    "BlockExecutor",
    "CircularDependencyError",
    "topological_sort",
    "AllocationBlock",
    "allocation_by_class_frame",
    "tranche_frame",
    "BacksolveBlock",
    "WeightedBacksolveBlock",
    "IterationHistoryBlock",
]
