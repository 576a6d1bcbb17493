"""Tests for the per-request audit trail."""

import pytest
from structlog.testing import capture_logs

from opm_domain.audit import AuditTrailLogger


@pytest.fixture
def audit():
    audit = AuditTrailLogger("test")
    audit.start("Single backsolve", security_class="common")
    audit.step("Validated request", breakpoints=4)
    audit.debug("iteration", "Refined", iteration=1, x=5.0, residual=0.25)
    audit.debug("iteration", "Refined", iteration=2, x=4.0, residual=-0.01)
    audit.warning("result", "Verification failed", actual_fmv=1.1)
    return audit


def test_events_keep_insertion_order(audit):
    assert [e.sequence for e in audit.events] == [1, 2, 3, 4, 5]
    elapsed = [e.elapsed_ms for e in audit.events]
    assert elapsed == sorted(elapsed)


def test_start_and_step_messages(audit):
    start, step = audit.events[:2]
    assert start.category == "request"
    assert start.message == "=== Single backsolve ==="
    assert step.category == "step"
    assert step.message == "Step 1: Validated request"

    audit.step("Solving")
    assert audit.events[-1].message == "Step 2: Solving"


def test_filters(audit):
    assert len(audit.iterations()) == 2
    assert [e.data["iteration"] for e in audit.iterations()] == [1, 2]
    assert len(audit.by_level("debug")) == 2
    assert audit.by_category("missing") == []


def test_warning_and_error_flags(audit):
    assert audit.has_warnings
    assert not audit.has_errors
    audit.error("result", "Scenario failed")
    assert audit.has_errors


def test_events_are_read_only(audit):
    events = audit.events
    assert isinstance(events, tuple)
    with pytest.raises(AttributeError):
        events[0].message = "changed"


def test_records_use_camel_case(audit):
    record = audit.to_records()[0]
    assert set(record) == {"sequence", "elapsedMs", "level", "category", "message", "data"}
    assert record["data"] == {"security_class": "common"}


def test_frame_has_one_column_per_data_key(audit):
    frame = audit.to_frame()
    assert len(frame) == 5
    assert {"sequence", "elapsed_ms", "level", "category", "message", "iteration", "x", "residual"} <= set(
        frame.columns
    )
    assert frame["x"].isna().sum() == 3


def test_empty_trail():
    audit = AuditTrailLogger()
    assert len(audit) == 0
    assert audit.to_records() == []
    frame = audit.to_frame()
    assert frame.empty
    assert list(frame.columns) == ["sequence", "elapsed_ms", "level", "category", "message"]
    assert audit.get_full_log() == ""


def test_full_log_is_one_line_per_event(audit):
    log = audit.get_full_log()
    lines = log.splitlines()
    assert len(lines) == 5
    assert "WARNING" in lines[-1]
    assert "actual_fmv=1.1" in lines[-1]
    assert "x=5" in lines[2]


def test_only_steps_and_problems_reach_the_process_log(audit):
    with capture_logs() as logs:
        audit.debug("evaluation", "Evaluated", price=1.0)
        audit.info("bracket", "Initial bracket", lower=0.0)
        audit.step("Solving")
        audit.warning("result", "Verification failed")
        audit.error("result", "Scenario failed")

    assert [(entry["log_level"], entry["message"]) for entry in logs] == [
        ("info", "Step 2: Solving"),
        ("warning", "Verification failed"),
        ("error", "Scenario failed"),
    ]
    assert len(audit) == 10
