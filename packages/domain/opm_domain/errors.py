"""Exception taxonomy for the backsolve engine.

- RequestValidationError: caller-correctable input problems, raised before
  any iteration runs.
- AllocationError: an allocation cannot produce a price (missing class, zero
  shares), optionally naming the scenario it happened in.
- UpstreamError: a collaborator (breakpoints, cap table, defaults) failed.

Convergence failures are not exceptions: optimizers report them in the
result with ``converged=False`` so callers keep the best estimate.
"""

from typing import Any, Dict, Optional


class BacksolveError(Exception):
    """Base class for all engine errors."""

    code = "backsolve_error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": str(self), "detail": None}


class RequestValidationError(BacksolveError, ValueError):
    """Raised when a request fails validation.

    Args:
        field: Name of the offending request field (e.g., 'target_fmv')
        message: Human-readable description
    """

    code = "validation_error"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "detail": {"field": self.field}}


class AllocationError(BacksolveError):
    """Raised when an allocation cannot price the requested security."""

    code = "allocation_error"

    def __init__(
        self,
        message: str,
        security_class: Optional[str] = None,
        scenario: Optional[str] = None,
    ):
        super().__init__(message)
        self.security_class = security_class
        self.scenario = scenario

    def for_scenario(self, scenario: str) -> "AllocationError":
        """Copy of this error attributed to ``scenario``."""
        return AllocationError(
            f"Scenario '{scenario}': {self}",
            security_class=self.security_class,
            scenario=scenario,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": str(self),
            "detail": {"securityClass": self.security_class, "scenario": self.scenario},
        }


class UpstreamError(BacksolveError):
    """Raised when a collaborator fetch fails.

    Args:
        collaborator: Which provider failed ('breakpoints', 'cap_table', 'defaults')
        requested: What was asked of it (e.g., {'valuation_id': 'val_123'})
        detail: What the provider returned or raised
    """

    code = "upstream_error"

    def __init__(self, collaborator: str, requested: Dict[str, Any], detail: str):
        super().__init__(f"{collaborator} provider failed: {detail}")
        self.collaborator = collaborator
        self.requested = requested
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": str(self),
            "detail": {
                "collaborator": self.collaborator,
                "requested": self.requested,
                "upstream": self.detail,
            },
        }
