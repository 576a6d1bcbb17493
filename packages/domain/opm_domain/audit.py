"""Per-request audit trail.

An AuditTrailLogger is created for one backsolve request, threaded through
the optimizer and root finder as an explicit argument, and handed back to the
caller with the result. Events are append-only and keep their insertion
order. Info events in the request and step categories, warnings and errors
are also mirrored to the process log through structlog at their own level.
Debug detail such as iterations and evaluations stays in the trail.

Categories used by the engine:
    - request: validation and setup
    - bracket: root bracketing and expansion
    - iteration: one root-finder refinement step
    - evaluation: one objective evaluation (candidate value, price, residual)
    - result: termination and verification
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

import pandas as pd
import structlog

logger = structlog.get_logger()

AuditLevel = Literal["debug", "info", "warning", "error"]

ITERATION_CATEGORY = "iteration"
STEP_CATEGORY = "step"
REQUEST_CATEGORY = "request"

_MIRRORED_CATEGORIES = (REQUEST_CATEGORY, STEP_CATEGORY)


@dataclass(frozen=True)
class AuditEvent:
    """One entry in the audit trail."""

    sequence: int
    elapsed_ms: float
    level: AuditLevel
    category: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "elapsedMs": self.elapsed_ms,
            "level": self.level,
            "category": self.category,
            "message": self.message,
            "data": dict(self.data),
        }


class AuditTrailLogger:
    """Ordered, append-only event sink for one request.

    Example:
        audit = AuditTrailLogger()
        audit.start("Single backsolve")
        audit.info("request", "Validated request", security_class="common")
        audit.to_frame()
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self._events: List[AuditEvent] = []
        self._started = time.perf_counter()
        self._step = 0

    # =========================================================================
    # Appending
    # =========================================================================

    def start(self, message: str, **data: Any) -> None:
        """Mark the start of a run. Nested runs share the logger's clock."""
        self._log("info", REQUEST_CATEGORY, f"=== {message} ===", data)

    def step(self, message: str, **data: Any) -> None:
        """Record a numbered high-level step."""
        self._step += 1
        self._log("info", STEP_CATEGORY, f"Step {self._step}: {message}", data)

    def debug(self, category: str, message: str, **data: Any) -> None:
        self._log("debug", category, message, data)

    def info(self, category: str, message: str, **data: Any) -> None:
        self._log("info", category, message, data)

    def warning(self, category: str, message: str, **data: Any) -> None:
        self._log("warning", category, message, data)

    def error(self, category: str, message: str, **data: Any) -> None:
        self._log("error", category, message, data)

    def _log(self, level: AuditLevel, category: str, message: str, data: Dict[str, Any]) -> None:
        event = AuditEvent(
            sequence=len(self._events) + 1,
            elapsed_ms=(time.perf_counter() - self._started) * 1000,
            level=level,
            category=category,
            message=message,
            data=data,
        )
        self._events.append(event)
        if level == "debug" or (level == "info" and category not in _MIRRORED_CATEGORIES):
            return
        getattr(logger, level)(
            "audit_event",
            audit=self.name,
            level_name=level,
            category=category,
            message=message,
            **data,
        )

    # =========================================================================
    # Reading
    # =========================================================================

    @property
    def events(self) -> Tuple[AuditEvent, ...]:
        """All events in insertion order."""
        return tuple(self._events)

    def by_category(self, category: str) -> List[AuditEvent]:
        return [e for e in self._events if e.category == category]

    def by_level(self, level: AuditLevel) -> List[AuditEvent]:
        return [e for e in self._events if e.level == level]

    def iterations(self) -> List[AuditEvent]:
        """Root-finder refinement steps, in order."""
        return self.by_category(ITERATION_CATEGORY)

    @property
    def has_errors(self) -> bool:
        return any(e.level == "error" for e in self._events)

    @property
    def has_warnings(self) -> bool:
        return any(e.level == "warning" for e in self._events)

    def to_records(self) -> List[Dict[str, Any]]:
        """JSON-ready list of events (camelCase keys)."""
        return [e.to_record() for e in self._events]

    def to_frame(self) -> pd.DataFrame:
        """Events as a DataFrame, one column per event data key.

        Returns:
            DataFrame with sequence, elapsed_ms, level, category, message and
            the union of all data keys (NaN where an event lacks a key)
        """
        columns = ["sequence", "elapsed_ms", "level", "category", "message"]
        if not self._events:
            return pd.DataFrame(columns=columns)

        rows = []
        for event in self._events:
            row = {
                "sequence": event.sequence,
                "elapsed_ms": event.elapsed_ms,
                "level": event.level,
                "category": event.category,
                "message": event.message,
            }
            for key, value in event.data.items():
                if key not in row:
                    row[key] = value
            rows.append(row)
        return pd.DataFrame(rows)

    def get_full_log(self) -> str:
        """Human-readable trail, one line per event."""
        lines = []
        for event in self._events:
            line = (
                f"[{event.elapsed_ms:10.3f}ms] {event.level.upper():<7} "
                f"{event.category:<12} {event.message}"
            )
            if event.data:
                details = ", ".join(f"{k}={_format_value(v)}" for k, v in event.data.items())
                line = f"{line} ({details})"
            lines.append(line)
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._events)


def _format_value(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.6g}"
    return str(value)
