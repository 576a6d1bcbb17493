"""Backsolve optimizers.

- BacksolveOptimizer: one observed price, one scenario
- WeightedBacksolveOptimizer: PWERM blend with one scenario solved
- ScenarioOrchestrator: hybrid PWERM, one backsolve per scenario
"""

from .backsolve import BacksolveOptimizer
from .weighted import WeightedBacksolveOptimizer, normalize_probabilities
from .hybrid import ScenarioOrchestrator, weighted_percentile, weighted_statistics

__all__ = [
    "BacksolveOptimizer",
    "WeightedBacksolveOptimizer",
    "normalize_probabilities",
    "ScenarioOrchestrator",
    "weighted_percentile",
    "weighted_statistics",
]
