from __future__ import annotations

import pytest

from tier_runtime.core.contracts import (
    ComponentRef,
    Finding,
    InvocationResult,
    InvocationStatus,
    Priority,
    Severity,
    StepOutcome,
    StepPolicy,
    Tier,
    TriggerEvent,
    TriggerKind,
)
from tier_runtime.core.errors import ComponentDisabled, ComponentNotFound, CycleDetected, FrameworkError, InvocationTimeout
from tier_runtime.core.run_errors import classify_invocation_exception


def test_tier_parse_is_case_insensitive_and_rejects_unknown() -> None:
    assert Tier.parse(" Agent ") is Tier.AGENT
    with pytest.raises(ValueError):
        Tier.parse("plugin")


def test_priority_rank_orders_high_first() -> None:
    ranked = sorted([Priority.LOW, Priority.HIGH, Priority.MEDIUM], key=lambda p: p.rank)
    assert ranked == [Priority.HIGH, Priority.MEDIUM, Priority.LOW]


def test_severity_parse_accepts_aliases_and_degrades_unknown_to_info() -> None:
    assert Severity.parse("high") is Severity.ERROR
    assert Severity.parse("WARN") is Severity.WARNING
    assert Severity.parse("fatal") is Severity.CRITICAL
    assert Severity.parse("whatever") is Severity.INFO
    assert Severity.CRITICAL.weight > Severity.ERROR.weight > Severity.WARNING.weight > Severity.INFO.weight


def test_status_ok_only_for_success_variants() -> None:
    assert InvocationStatus.SUCCESS.is_ok
    assert InvocationStatus.SUCCESS_WITH_WARNINGS.is_ok
    for s in (InvocationStatus.TIMEOUT, InvocationStatus.SKIPPED, InvocationStatus.NOT_FOUND, InvocationStatus.ERROR):
        assert not s.is_ok


def test_trigger_event_constructors() -> None:
    assert TriggerEvent.file_saved("a.py").kind is TriggerKind.FILE_SAVED
    ev = TriggerEvent.commit(["a.py", "b.py"], message="fix bug")
    assert ev.payload == {"paths": ["a.py", "b.py"], "message": "fix bug"}
    assert TriggerEvent.conversation("hi").payload["text"] == "hi"


def test_result_to_jsonable_is_stable() -> None:
    result = InvocationResult(
        status=InvocationStatus.SUCCESS_WITH_WARNINGS,
        findings=(Finding("lint", Severity.WARNING, "unused import", location="a.py:3"),),
        component=ComponentRef(Tier.COMMAND, "review"),
        call_id="c1",
        reason="best-effort steps failed: x",
        steps=(StepOutcome("x", InvocationStatus.TIMEOUT, StepPolicy.BEST_EFFORT, reason="late", target="agent:x"),),
    )
    data = result.to_jsonable()
    assert data["status"] == "success-with-warnings"
    assert data["component"] == "command:review"
    assert data["findings"] == [
        {"source_component": "lint", "severity": "warning", "message": "unused import", "location": "a.py:3"}
    ]
    assert data["steps"] == [
        {"step": "x", "status": "timeout", "policy": "best-effort", "target": "agent:x", "reason": "late"}
    ]
    assert result.failed_steps[0].step_id == "x"


def test_classify_invocation_exception_maps_statuses() -> None:
    assert classify_invocation_exception(CycleDetected("loop")).status is InvocationStatus.CYCLE_DETECTED
    assert classify_invocation_exception(InvocationTimeout("late")).status is InvocationStatus.TIMEOUT
    assert classify_invocation_exception(ComponentDisabled("off")).status is InvocationStatus.DISABLED
    assert classify_invocation_exception(ComponentNotFound("gone")).status is InvocationStatus.NOT_FOUND
    assert classify_invocation_exception(TimeoutError()).status is InvocationStatus.TIMEOUT

    failure = classify_invocation_exception(FrameworkError(code="X_BAD", message="bad"))
    assert failure.status is InvocationStatus.ERROR
    assert failure.code == "X_BAD"

    other = classify_invocation_exception(RuntimeError("boom"))
    assert other.status is InvocationStatus.ERROR
    assert other.code == "UNHANDLED_EXCEPTION"
