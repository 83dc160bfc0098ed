from __future__ import annotations

import threading
import time

import pytest

from tier_runtime.config.loader import RuntimeConfig, TimeoutsConfig
from tier_runtime.core.context import CancellationToken, InvocationContext
from tier_runtime.core.contracts import ComponentRef, InvocationResult, InvocationStatus, Tier
from tier_runtime.core.deadlines import ChildCollector, TimeoutManager, run_with_deadline
from tier_runtime.core.errors import InvocationTimeout, PermissionViolation
from tier_runtime.registry.validator import build_descriptor
from tier_runtime.safety.capabilities import ALL

AGENT = ComponentRef(Tier.AGENT, "reviewer")


def _ctx(timeout_sec=None, *, token=None) -> InvocationContext:
    return InvocationContext.root(
        component=AGENT, allowed_tools=frozenset({ALL}), timeout_sec=timeout_sec, max_depth=2, token=token
    )


def _wait_cancelled(ctx: InvocationContext, limit: float = 5.0) -> None:
    end = time.monotonic() + limit
    while not ctx.is_cancelled() and time.monotonic() < end:
        time.sleep(0.005)


def test_token_cancellation_cascades_down_only() -> None:
    parent = CancellationToken()
    child = parent.child()
    grandchild = child.child()

    child.cancel("stop child")
    assert grandchild.is_cancelled()
    assert grandchild.reason == "stop child"
    assert not parent.is_cancelled()

    parent.cancel("stop all")
    parent.cancel("ignored")
    assert parent.reason == "stop all"
    assert child.reason == "stop child"


def test_derive_takes_the_earlier_deadline() -> None:
    root = _ctx(timeout_sec=10.0)
    shorter = root.derive(component=ComponentRef(Tier.SKILL, "a"), callee_tools=frozenset(), timeout_sec=1.0)
    longer = root.derive(component=ComponentRef(Tier.SKILL, "b"), callee_tools=frozenset(), timeout_sec=60.0)
    unbounded = root.derive(component=ComponentRef(Tier.SKILL, "c"), callee_tools=frozenset(), timeout_sec=None)

    assert shorter.deadline < root.deadline
    assert longer.deadline == root.deadline
    assert unbounded.deadline == root.deadline
    assert _ctx().remaining_sec() is None


def test_checkpoint_cancels_token_once_deadline_passes() -> None:
    ctx = _ctx(timeout_sec=0)
    with pytest.raises(InvocationTimeout) as ei:
        ctx.checkpoint(what="model")
    assert ctx.token.is_cancelled()
    assert ei.value.status is InvocationStatus.TIMEOUT
    assert ei.value.details["checkpoint"] == "model"


def test_parent_cancellation_stops_child_at_checkpoint() -> None:
    root = _ctx()
    child = root.derive(component=ComponentRef(Tier.SKILL, "lint"), callee_tools=frozenset(), timeout_sec=None)
    child.checkpoint()
    root.token.cancel("host cancelled")
    with pytest.raises(InvocationTimeout, match="host cancelled"):
        child.checkpoint()


def test_run_with_deadline_returns_value_and_propagates_errors() -> None:
    assert run_with_deadline(_ctx(timeout_sec=5), lambda: 42, name="answer") == 42

    def _boom() -> int:
        raise KeyError("nope")

    with pytest.raises(KeyError):
        run_with_deadline(_ctx(timeout_sec=5), _boom)


def test_run_with_deadline_times_out_and_cancels_token() -> None:
    ctx = _ctx(timeout_sec=0.05)
    release = threading.Event()
    with pytest.raises(InvocationTimeout):
        run_with_deadline(ctx, lambda: release.wait(2.0), name="slow")
    assert ctx.token.is_cancelled()
    release.set()


def test_run_bounded_returns_partial_children_on_timeout() -> None:
    manager = TimeoutManager()
    ctx = _ctx(timeout_sec=0.1)
    finished = InvocationResult(status=InvocationStatus.SUCCESS, sequence=2)

    def body(collector: ChildCollector) -> InvocationResult:
        collector.add_child(finished)
        _wait_cancelled(ctx)
        ctx.checkpoint()
        return InvocationResult(status=InvocationStatus.SUCCESS)

    started = time.monotonic()
    result = manager.run_bounded(ctx, body)

    assert time.monotonic() - started < 2.0
    assert result.status is InvocationStatus.TIMEOUT
    assert result.children == (finished,)
    assert result.component == AGENT
    assert result.call_id == ctx.call_id
    assert ctx.token.is_cancelled()


def test_run_bounded_uses_timeout_handler() -> None:
    ctx = _ctx(timeout_sec=0.05)

    def body(collector: ChildCollector) -> InvocationResult:
        _wait_cancelled(ctx)
        return InvocationResult(status=InvocationStatus.SUCCESS)

    def handler(collector: ChildCollector, reason: str) -> InvocationResult:
        return InvocationResult(status=InvocationStatus.TIMEOUT, reason=f"handled: {reason}")

    result = TimeoutManager().run_bounded(ctx, body, on_timeout=handler)
    assert result.reason.startswith("handled: ")
    assert result.sequence == ctx.sequence


def test_run_bounded_classifies_body_exceptions_and_keeps_children() -> None:
    ctx = _ctx(timeout_sec=5)
    child = InvocationResult(status=InvocationStatus.SUCCESS, sequence=2)

    def body(collector: ChildCollector) -> InvocationResult:
        collector.add_child(child)
        raise PermissionViolation("write denied", code="CAPABILITY_DENIED")

    result = TimeoutManager().run_bounded(ctx, body)
    assert result.status is InvocationStatus.PERMISSION_VIOLATION
    assert result.reason == "write denied"
    assert result.children == (child,)


def test_run_bounded_already_expired_runs_inline_and_times_out() -> None:
    ctx = _ctx(timeout_sec=0)
    calls = []

    def body(collector: ChildCollector) -> InvocationResult:
        calls.append(threading.current_thread())
        ctx.checkpoint()
        return InvocationResult(status=InvocationStatus.SUCCESS)

    result = TimeoutManager().run_bounded(ctx, body)
    assert result.status is InvocationStatus.TIMEOUT
    assert calls == [threading.current_thread()]


def test_timeout_for_prefers_explicit_then_tier_defaults() -> None:
    config = RuntimeConfig(timeouts=TimeoutsConfig(skill_sec=3, agent_sec=100, agent_iteration_sec=10, command_sec=50))
    manager = TimeoutManager(config)

    skill, _ = build_descriptor({"tier": "skill", "name": "s", "description": "x"})
    timed, _ = build_descriptor({"tier": "skill", "name": "t", "description": "x", "timeout": "2s"})
    agent, _ = build_descriptor({"tier": "agent", "name": "a", "description": "x", "max_iterations": 4})
    command, _ = build_descriptor({"tier": "command", "name": "c", "description": "x"})

    assert manager.timeout_for(skill) == 3
    assert manager.timeout_for(timed) == 2
    assert manager.timeout_for(agent) == 40
    assert manager.timeout_for(command) == 50
