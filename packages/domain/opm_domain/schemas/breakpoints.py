"""Breakpoint models.

A breakpoint is an enterprise-value threshold at which the way incremental
value is shared across security classes changes. Breakpoints are produced
by an external waterfall-allocation service; this module only describes and
validates them.

Breakpoint kinds:
    - liquidation_preference: Senior classes recover their preference
    - pro_rata_distribution: Classes share value on an as-converted basis
    - option_exercise: An option or warrant tranche comes into the money
    - voluntary_conversion: Non-participating preferred converts to common
    - participation_cap: Participating preferred hits its cap and drops out
"""

from typing import List, Literal, Optional
from decimal import Decimal
from pydantic import Field, model_validator

from .base import (
    DomainModel,
    MoneyAmount,
    Percentage,
    SecurityClassId,
    ShareCount,
    BreakpointId,
)


BreakpointKind = Literal[
    "liquidation_preference",
    "pro_rata_distribution",
    "option_exercise",
    "voluntary_conversion",
    "participation_cap",
]

# Slack allowed on the participation sum before it counts as over 100%
PARTICIPATION_SUM_TOLERANCE = Decimal("1e-9")


# =============================================================================
# Participant
# =============================================================================

class Participant(DomainModel):
    """A security class sharing in value above a breakpoint.

    Example:
        Above a $10M breakpoint, common (12M shares) and converted Series A
        (4M shares) share pro-rata:
            Participant(security_class="common", participating_shares=12_000_000,
                        participation_percent=Decimal("0.75"))
            Participant(security_class="series_a", participating_shares=4_000_000,
                        participation_percent=Decimal("0.25"))
    """

    security_class: SecurityClassId = Field(
        description="Security class receiving a share of the tranche"
    )

    participating_shares: ShareCount = Field(
        default=Decimal("0"),
        description="Shares of this class participating at the breakpoint (informational)"
    )

    participation_percent: Percentage = Field(
        description="Fraction of the tranche above this breakpoint allocated to the class"
    )


# =============================================================================
# Breakpoint
# =============================================================================

class Breakpoint(DomainModel):
    """Enterprise-value threshold with its participation schedule.

    The tranche starting at this breakpoint runs up to the next breakpoint
    (or is uncapped for the highest one) and is shared by ``participants``.

    Participation percentages must sum to at most 1. A sum below 1 leaves
    part of the tranche unallocated, which the valuator reports as a warning.
    Same-valued breakpoints are legal: they are processed in input order and
    the tranche between them has zero width.
    """

    id: Optional[BreakpointId] = Field(
        default=None,
        description="Identifier assigned by the breakpoint provider"
    )

    value: MoneyAmount = Field(
        description="Enterprise value at which this breakpoint becomes active"
    )

    kind: BreakpointKind = Field(
        default="pro_rata_distribution",
        description="Category of breakpoint"
    )

    description: Optional[str] = Field(
        default=None,
        description="What happens at this breakpoint (e.g., 'Series A 1x preference satisfied')"
    )

    participants: List[Participant] = Field(
        default_factory=list,
        description="Securities sharing value above this breakpoint"
    )

    @model_validator(mode='after')
    def validate_participation(self):
        """Reject over-allocated or duplicated participation schedules."""
        seen = set()
        for participant in self.participants:
            if participant.security_class in seen:
                raise ValueError(
                    f"Security class '{participant.security_class}' appears more than once "
                    f"at breakpoint {self.id or self.value}"
                )
            seen.add(participant.security_class)

        total = self.total_participation
        if total > Decimal("1") + PARTICIPATION_SUM_TOLERANCE:
            raise ValueError(
                f"Participation percentages at breakpoint {self.id or self.value} "
                f"sum to {total}, which exceeds 1"
            )
        return self

    @property
    def total_participation(self) -> Decimal:
        """Sum of participation percentages at this breakpoint."""
        return sum((p.participation_percent for p in self.participants), Decimal("0"))

    def participates(self, security_class: str) -> bool:
        """Whether ``security_class`` receives any share of this tranche."""
        return any(
            p.security_class == security_class and p.participation_percent > 0
            for p in self.participants
        )


def sort_breakpoints(breakpoints: List[Breakpoint]) -> List[Breakpoint]:
    """Return breakpoints ascending by value.

    The sort is stable, so breakpoints sharing a value keep their input order.
    """
    return sorted(breakpoints, key=lambda bp: bp.value)
