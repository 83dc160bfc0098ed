"""
Timeout & Cancellation Manager。

要点：
- 每次调用都带 deadline：descriptor 显式 timeout 优先，否则按 tier 默认值（见 `RuntimeConfig.default_timeout_for`）
- 调用主体在独立线程中执行；调用方最多等待到 deadline，到期后置位该调用子树的取消令牌并立即返回 `timeout`
- 取消是协作式的：主体线程在下一个 checkpoint 观察到令牌并停止；正在进行的工具调用会执行完但不再继续
- 超时结果携带已完成的子调用结果（部分结果），已完成调用保持其原状态
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from tier_runtime.config.loader import RuntimeConfig
from tier_runtime.core.context import InvocationContext
from tier_runtime.core.contracts import Finding, InvocationResult, InvocationStatus, StepOutcome
from tier_runtime.core.errors import InvocationTimeout
from tier_runtime.core.run_errors import classify_invocation_exception

logger = logging.getLogger(__name__)

# 等待主体时轮询取消令牌的间隔（秒）
_POLL_SEC = 0.02

T = TypeVar("T")


class ChildCollector:
    """
    调用主体的部分结果收集器（线程安全）。

    说明：
    - 子调用、workflow step 结局与本节点 findings 在产生时即写入
    - 超时路径只读取快照，不等待主体线程
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._children: List[InvocationResult] = []
        self._steps: List[StepOutcome] = []
        self._findings: List[Finding] = []

    def add_child(self, result: InvocationResult) -> None:
        with self._lock:
            self._children.append(result)

    def add_step(self, outcome: StepOutcome) -> None:
        with self._lock:
            self._steps.append(outcome)

    def add_finding(self, finding: Finding) -> None:
        with self._lock:
            self._findings.append(finding)

    def children(self) -> Tuple[InvocationResult, ...]:
        with self._lock:
            return tuple(self._children)

    def steps(self) -> Tuple[StepOutcome, ...]:
        with self._lock:
            return tuple(self._steps)

    def findings(self) -> Tuple[Finding, ...]:
        with self._lock:
            return tuple(self._findings)


Body = Callable[[ChildCollector], InvocationResult]
TimeoutHandler = Callable[[ChildCollector, str], InvocationResult]


def _wait_done(ctx: InvocationContext, done: threading.Event) -> bool:
    """等待主体完成；deadline 到期或令牌被置位时返回 False。"""

    while True:
        remaining = ctx.remaining_sec()
        if done.wait(_POLL_SEC if remaining is None else min(_POLL_SEC, remaining)):
            return True
        if ctx.is_cancelled():
            return done.is_set()
        if ctx.expired():
            return done.is_set()


def run_with_deadline(ctx: InvocationContext, fn: Callable[[], T], *, name: str = "") -> T:
    """
    在 deadline 内执行 fn（独立线程），返回其结果或透传其异常。

    异常：
    - InvocationTimeout：deadline 到期或令牌被置位（fn 线程继续运行直到自行结束）
    """

    ctx.checkpoint(what=f"start:{name}")
    box: dict[str, Any] = {}
    done = threading.Event()

    def _target() -> None:
        try:
            box["value"] = fn()
        except Exception as exc:
            box["error"] = exc
        finally:
            done.set()

    t = threading.Thread(target=_target, name=f"tier-runtime:{name or ctx.component}", daemon=True)
    t.start()
    if not _wait_done(ctx, done):
        if not ctx.token.is_cancelled():
            ctx.token.cancel("deadline exceeded")
        raise InvocationTimeout(
            f"{name or ctx.component} did not finish before its deadline",
            details={"call_id": ctx.call_id, "reason": ctx.token.reason},
        )
    if "error" in box:
        raise box["error"]
    return box["value"]


class TimeoutManager:
    """按 tier 计算 timeout，并在 deadline 内运行调用主体。"""

    def __init__(self, config: Optional[RuntimeConfig] = None) -> None:
        self._config = config or RuntimeConfig()

    def timeout_for(self, descriptor: Any) -> float:
        """
        descriptor 的有效 timeout（秒）。

        规则：
        - 显式 `timeout` 优先
        - Agent：按 `max_iterations * agent_iteration_sec`（不超过 `agent_sec`）
        - 其它：tier 默认
        """

        explicit = getattr(descriptor, "timeout", None)
        if explicit is not None:
            return float(explicit)
        return self._config.default_timeout_for(
            descriptor.tier_enum,
            max_iterations=getattr(descriptor, "max_iterations", None),
        )

    def run_bounded(
        self,
        ctx: InvocationContext,
        body: Body,
        *,
        on_timeout: Optional[TimeoutHandler] = None,
    ) -> InvocationResult:
        """
        在 deadline 内运行调用主体，总是返回一个 InvocationResult。

        参数：
        - ctx：本次调用上下文（deadline + 令牌）
        - body：调用主体；通过 collector 上报部分结果
        - on_timeout：可选；超时时用 collector 快照构造结果（默认：timeout + 已完成子结果）

        说明：
        - 进入时已过期：先置位令牌再同步执行主体；主体在第一个 checkpoint 即返回
        - 主体抛出的异常在此统一分类为结果状态
        """

        collector = ChildCollector()

        if ctx.expired() or ctx.is_cancelled():
            if not ctx.token.is_cancelled():
                ctx.token.cancel("deadline exceeded")
            return self._run_inline(ctx, body, collector)

        box: dict[str, Any] = {}
        done = threading.Event()

        def _target() -> None:
            try:
                box["result"] = body(collector)
            except Exception as exc:
                box["error"] = exc
            finally:
                done.set()

        t = threading.Thread(target=_target, name=f"tier-runtime:{ctx.component}", daemon=True)
        t.start()
        if _wait_done(ctx, done):
            if "error" in box:
                return self.failure_result(ctx, box["error"], collector)
            return self._stamp(ctx, box["result"])

        if not ctx.token.is_cancelled():
            ctx.token.cancel("deadline exceeded")
        reason = f"{ctx.component} stopped: {ctx.token.reason or 'deadline exceeded'}"
        logger.warning("invocation timed out: %s (call_id=%s)", reason, ctx.call_id)
        if on_timeout is not None:
            return self._stamp(ctx, on_timeout(collector, reason))
        return self._stamp(
            ctx,
            InvocationResult(
                status=InvocationStatus.TIMEOUT,
                findings=collector.findings(),
                reason=reason,
                children=collector.children(),
                steps=collector.steps(),
            ),
        )

    def _run_inline(self, ctx: InvocationContext, body: Body, collector: ChildCollector) -> InvocationResult:
        try:
            return self._stamp(ctx, body(collector))
        except Exception as exc:
            return self.failure_result(ctx, exc, collector)

    def failure_result(self, ctx: InvocationContext, exc: BaseException, collector: ChildCollector) -> InvocationResult:
        """把主体异常转换为结果（保留已完成子结果）。"""

        failure = classify_invocation_exception(exc)
        if failure.status is InvocationStatus.ERROR:
            logger.warning("invocation failed: %s: %s", ctx.component, failure.reason)
        else:
            logger.info("invocation ended with %s: %s", failure.status.value, failure.reason)
        return self._stamp(
            ctx,
            InvocationResult(
                status=failure.status,
                findings=collector.findings(),
                reason=failure.reason,
                children=collector.children(),
                steps=collector.steps(),
            ),
        )

    @staticmethod
    def _stamp(ctx: InvocationContext, result: InvocationResult) -> InvocationResult:
        """补齐结果的调用身份字段（component / call_id / sequence / elapsed）。"""

        return replace(
            result,
            component=result.component or ctx.component,
            call_id=result.call_id or ctx.call_id,
            sequence=ctx.sequence,
            elapsed_ms=ctx.elapsed_ms(),
            findings=tuple(f.with_sequence(ctx.sequence) for f in result.findings),
        )


__all__ = ["ChildCollector", "TimeoutManager", "run_with_deadline"]
