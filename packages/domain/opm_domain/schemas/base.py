"""Base classes and type system for OPM domain models.

This module provides the foundational types, validators, and base classes
used throughout the backsolve schema system.
"""

from decimal import Decimal
from typing import Annotated
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel

# =============================================================================
# Base Models
# =============================================================================

class DomainModel(BaseModel):
    """Base class for all request-side domain models.

    Provides common configuration for all Pydantic models in the domain layer:
    - Validation on assignment for runtime safety
    - camelCase aliases so JSON payloads can be validated directly
    - Population by field name for Python callers
    """

    model_config = ConfigDict(
        frozen=False,
        validate_assignment=True,  # Validate on field assignment
        use_enum_values=True,  # Use enum values in JSON
        alias_generator=to_camel,
        populate_by_name=True,  # Accept snake_case names too
        arbitrary_types_allowed=True,
    )


class FrozenModel(DomainModel):
    """Base class for models that must not change once built.

    Black-Scholes parameters and all computed results are immutable: the
    solver only varies the enterprise value, never the inputs around it.
    """

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Type Aliases - Numeric
# =============================================================================

ShareCount = Annotated[
    Decimal,
    Field(ge=0, description="Number of shares (non-negative)")
]

MoneyAmount = Annotated[
    Decimal,
    Field(ge=0, description="Currency amount (non-negative)")
]

Percentage = Annotated[
    Decimal,
    Field(ge=0, le=1, description="Percentage as decimal (0.0 to 1.0)")
]


# =============================================================================
# ID Conventions
# =============================================================================

SecurityClassId = Annotated[
    str,
    Field(
        min_length=1,
        description="Security class identifier as used by the cap table (e.g., 'common', 'Series A Preferred')"
    )
]

BreakpointId = Annotated[
    str,
    Field(
        description="Breakpoint identifier (e.g., 'bp_0', 'series_a_lp')"
    )
]


# =============================================================================
# ID Examples and Conventions
# =============================================================================
#
# Security Class IDs:
#   - "common" - Common stock
#   - "series_a_preferred" - Series A Preferred
#   - "Options @ $1.25" - Option tranche keyed by strike, as breakpoint
#     providers label them
#
# Breakpoint IDs:
#   - "bp_0", "bp_1", ... - Positional IDs assigned by the provider
#   - Left unset, the valuator labels tranches "bp_<index>" after sorting
#
# =============================================================================
