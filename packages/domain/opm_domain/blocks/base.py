"""Block pipeline primitives.

Backsolve results are turned into tables by small computation blocks wired
together through a shared context:
- BlockContext: keyed store that blocks read from and write to
- Block: declares the keys it reads and writes and computes in execute()
- BlockExecutor: orders blocks by their data dependencies and runs them,
  checking inputs before and outputs after each block
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger()


# =============================================================================
# Block Context
# =============================================================================

@dataclass
class BlockContext:
    """Keyed store shared by the blocks of one pipeline run.

    Example:
        context = BlockContext()
        context.set("backsolve_request", request)
        BlockExecutor([BacksolveBlock(), IterationHistoryBlock()]).execute(context)
        iterations_df = context.get("backsolve_iterations")
    """

    _data: Dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        """Value stored under ``key``.

        Raises:
            KeyError: If nothing is stored under ``key``
        """
        if key not in self._data:
            raise KeyError(f"Key '{key}' not found in context. Available keys: {self.keys()}")
        return self._data[key]

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def has(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> List[str]:
        return list(self._data.keys())


# =============================================================================
# Block
# =============================================================================

class Block(ABC):
    """One computation step of a pipeline.

    Subclasses name the context keys they consume in ``inputs()`` and the keys
    they produce in ``outputs()``. The executor uses those declarations to
    order blocks, so a block never runs before the block producing its input.
    """

    @abstractmethod
    def inputs(self) -> List[str]:
        """Context keys this block reads."""

    @abstractmethod
    def outputs(self) -> List[str]:
        """Context keys this block writes."""

    @abstractmethod
    def execute(self, context: BlockContext) -> None:
        """Read inputs from ``context``, compute, write outputs to ``context``."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(inputs={self.inputs()}, outputs={self.outputs()})"


# =============================================================================
# Dependency Resolution
# =============================================================================

class CircularDependencyError(Exception):
    """Raised when block inputs and outputs form a cycle."""


def topological_sort(blocks: List[Block]) -> List[Block]:
    """Order blocks so every producer runs before its consumers.

    Blocks with no dependency between them keep their relative input order.
    Inputs no block produces must already be in the context.

    Raises:
        ValueError: If two blocks declare the same output
        CircularDependencyError: If the dependencies form a cycle
    """
    producers: Dict[str, Block] = {}
    for block in blocks:
        for key in block.outputs():
            if key in producers:
                raise ValueError(f"Multiple blocks produce '{key}': {producers[key]} and {block}")
            producers[key] = block

    pending = {id(block): 0 for block in blocks}
    consumers: Dict[int, List[Block]] = {id(block): [] for block in blocks}
    for block in blocks:
        for key in block.inputs():
            producer = producers.get(key)
            if producer is not None and producer is not block:
                consumers[id(producer)].append(block)
                pending[id(block)] += 1

    ready: Deque[Block] = deque(block for block in blocks if pending[id(block)] == 0)
    ordered: List[Block] = []
    while ready:
        block = ready.popleft()
        ordered.append(block)
        for consumer in consumers[id(block)]:
            pending[id(consumer)] -= 1
            if pending[id(consumer)] == 0:
                ready.append(consumer)

    if len(ordered) != len(blocks):
        stuck = [block for block in blocks if pending[id(block)] > 0]
        raise CircularDependencyError(f"Circular dependency detected among blocks: {stuck}")
    return ordered


# =============================================================================
# Block Executor
# =============================================================================

class BlockExecutor:
    """Runs blocks in dependency order against one context.

    Example:
        executor = BlockExecutor([IterationHistoryBlock(), BacksolveBlock()])
        context = BlockContext()
        context.set("backsolve_request", request)
        executor.execute(context)
        result = context.get("backsolve_result")
    """

    def __init__(self, blocks: List[Block]):
        self.blocks = blocks
        self._ordered: Optional[List[Block]] = None

    @property
    def execution_order(self) -> List[Block]:
        if self._ordered is None:
            self._ordered = topological_sort(self.blocks)
        return self._ordered

    def execute(self, context: BlockContext) -> BlockContext:
        """Run every block and return the populated context.

        Raises:
            CircularDependencyError: If the blocks depend on each other in a cycle
            KeyError: If a block's input is missing when it is about to run
            ValueError: If a block does not write one of its declared outputs
        """
        for block in self.execution_order:
            missing = [key for key in block.inputs() if not context.has(key)]
            if missing:
                raise KeyError(
                    f"Block {block} requires inputs {missing} that are not in context. "
                    f"Available keys: {context.keys()}"
                )

            started = time.perf_counter()
            block.execute(context)
            logger.debug(
                "block_executed",
                block=block.__class__.__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )

            for key in block.outputs():
                if not context.has(key):
                    raise ValueError(f"Block {block} declared output '{key}' but didn't write it to context")

        return context
