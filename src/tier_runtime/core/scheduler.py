"""
Execution Scheduler。

- Skill 派发：每个命中的 Skill 作为独立任务提交到有界线程池；提交顺序即调度顺序（priority → 注册顺序），
  完成顺序不做保证。结果是异步的建议，从不阻塞调用方。
- Command workflow：按依赖图执行 step；无依赖关系的 step 并行（不超过池上限），有依赖的 step 在依赖完成后执行。
  失败策略逐 step：required 中止其余 step 并传播失败；best-effort 记录失败并继续（依赖它的 step 照常执行）。
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple, TypeVar

from tier_runtime.core.context import InvocationContext
from tier_runtime.core.contracts import InvocationResult, InvocationStatus, StepOutcome, StepPolicy
from tier_runtime.core.deadlines import ChildCollector
from tier_runtime.registry.models import WorkflowStep

logger = logging.getLogger(__name__)

T = TypeVar("T")

StepRunner = Callable[[WorkflowStep, Mapping[str, str], InvocationContext], InvocationResult]


@dataclass(frozen=True)
class Dispatch(Generic[T]):
    """一次池化派发（order 为调度顺序）。"""

    item: T
    order: int
    future: "Future[InvocationResult]"


class SkillScheduler:
    """有界 Skill 线程池（惰性创建；`shutdown()` 释放）。"""

    def __init__(self, *, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._max = int(max_concurrency)
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None

    @property
    def max_concurrency(self) -> int:
        return self._max

    def _executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._max, thread_name_prefix="tier-runtime-skill")
            return self._pool

    def submit_all(
        self,
        items: Sequence[T],
        fn: Callable[[T], InvocationResult],
        *,
        on_result: Optional[Callable[[T, InvocationResult], None]] = None,
    ) -> List[Dispatch[T]]:
        """
        按顺序提交 items。

        参数：
        - fn：单项执行函数（必须自行把失败转换为结果，不抛异常）
        - on_result：可选；每项完成时回调（在工作线程中调用；回调异常只记录日志）
        """

        pool = self._executor()
        out: List[Dispatch[T]] = []
        for i, item in enumerate(items):
            fut = pool.submit(fn, item)
            if on_result is not None:
                fut.add_done_callback(_make_callback(item, on_result))
            out.append(Dispatch(item=item, order=i, future=fut))
        return out

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)


def _make_callback(item: T, on_result: Callable[[T, InvocationResult], None]) -> Callable[["Future[InvocationResult]"], None]:
    def _cb(fut: "Future[InvocationResult]") -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        try:
            on_result(item, fut.result())
        except Exception:
            # 宿主回调失败不得影响调度器
            logger.exception("skill result callback failed")

    return _cb


@dataclass(frozen=True)
class WorkflowRun:
    """
    workflow 执行结果。

    字段：
    - status：Command 整体状态
    - steps：各 step 结局（按声明顺序）
    - outputs：成功 step 的输出（供下游 step 使用）
    - reason：非成功时的原因
    """

    status: InvocationStatus
    steps: Tuple[StepOutcome, ...]
    outputs: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None


def overall_status(steps: Sequence[StepOutcome], *, deadline_expired: bool) -> Tuple[InvocationStatus, Optional[str]]:
    """
    由 step 结局推导 Command 整体状态。

    - Command 自身 deadline 到期且有 step 超时 → timeout
    - 任一 required step 失败 → 该 step 的状态
    - 仅 best-effort step 失败 → success-with-warnings
    - 否则 → success
    """

    if deadline_expired and any(s.status is InvocationStatus.TIMEOUT for s in steps):
        return InvocationStatus.TIMEOUT, "command deadline exceeded"
    for s in steps:
        if s.policy is StepPolicy.REQUIRED and s.failed and s.status is not InvocationStatus.SKIPPED:
            return s.status, f"required step {s.step_id} failed: {s.status.value}"
    failed = [s.step_id for s in steps if s.failed]
    if failed:
        return InvocationStatus.SUCCESS_WITH_WARNINGS, f"best-effort steps failed: {', '.join(failed)}"
    return InvocationStatus.SUCCESS, None


def workflow_layers(steps: Sequence[WorkflowStep]) -> List[List[str]]:
    """
    按依赖把 step 分层：同一层内的 step 之间无依赖，可并行。

    说明：层内保持声明顺序；存在环或未知依赖时，剩余 step 不出现在结果中（加载期校验已拒绝这类 workflow）。
    """

    placed: Dict[str, int] = {}
    layers: List[List[str]] = []
    remaining = list(steps)
    while remaining:
        layer = [s for s in remaining if all(d in placed for d in s.depends_on)]
        if not layer:
            break
        for s in layer:
            placed[s.id] = len(layers)
        layers.append([s.id for s in layer])
        remaining = [s for s in remaining if s.id not in placed]
    return layers


class WorkflowScheduler:
    """Command workflow 的依赖图执行器。"""

    def __init__(self, *, max_concurrency: int = 4) -> None:
        self._max = max(1, int(max_concurrency))

    def run(
        self,
        ctx: InvocationContext,
        steps: Sequence[WorkflowStep],
        *,
        run_step: StepRunner,
        collector: ChildCollector,
    ) -> WorkflowRun:
        """
        执行 workflow。

        参数：
        - ctx：Command 的调用上下文
        - steps：已校验的 step 列表（无环、依赖均存在）
        - run_step：单 step 执行函数（总是返回结果，不抛异常）
        - collector：step 结果与结局在产生时写入（超时路径读取）
        """

        declared = {s.id: i for i, s in enumerate(steps)}
        # step 共享的子令牌：required 失败时只中止 workflow 内的调用
        wf_ctx = replace(ctx, token=ctx.token.child())
        pending: List[WorkflowStep] = list(steps)
        running: Dict["Future[InvocationResult]", WorkflowStep] = {}
        finished: Dict[str, StepOutcome] = {}
        outputs: Dict[str, str] = {}
        abort_reason: Optional[str] = None

        def _record(outcome: StepOutcome) -> None:
            finished[outcome.step_id] = outcome
            collector.add_step(outcome)

        workers = max(1, min(self._max, len(steps)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tier-runtime-step") as pool:
            while pending or running:
                if abort_reason is not None:
                    for s in pending:
                        _record(StepOutcome(s.id, InvocationStatus.SKIPPED, s.policy, reason=abort_reason, target=s.target))
                    pending = []
                else:
                    ready = [s for s in pending if all(d in finished for d in s.depends_on)]
                    for s in ready:
                        pending.remove(s)
                        if wf_ctx.expired() or wf_ctx.is_cancelled():
                            _record(
                                StepOutcome(
                                    s.id,
                                    InvocationStatus.TIMEOUT,
                                    s.policy,
                                    reason=wf_ctx.token.reason or "deadline exceeded before step start",
                                    target=s.target,
                                )
                            )
                            continue
                        upstream = {d: outputs[d] for d in s.depends_on if d in outputs}
                        logger.debug("workflow %s: start step %s", ctx.component, s.id)
                        running[pool.submit(run_step, s, upstream, wf_ctx)] = s
                    if not running and pending and not ready:
                        for s in pending:
                            _record(
                                StepOutcome(s.id, InvocationStatus.SKIPPED, s.policy, reason="unsatisfiable dependencies", target=s.target)
                            )
                        pending = []

                if not running:
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for fut in done:
                    s = running.pop(fut)
                    result = fut.result()
                    collector.add_child(result)
                    status = result.status
                    reason = result.reason
                    if abort_reason is not None and status is InvocationStatus.TIMEOUT and not ctx.expired():
                        status, reason = InvocationStatus.SKIPPED, abort_reason
                    outcome = StepOutcome(s.id, status, s.policy, reason=reason, target=s.target)
                    _record(outcome)
                    if result.ok and result.output is not None:
                        outputs[s.id] = result.output
                    if outcome.failed and s.policy is StepPolicy.REQUIRED and abort_reason is None:
                        abort_reason = f"required step {s.id} failed: {status.value}"
                        logger.info("workflow %s aborted: %s", ctx.component, abort_reason)
                        wf_ctx.token.cancel(abort_reason)
                    elif outcome.failed:
                        logger.info("workflow %s: best-effort step %s failed: %s", ctx.component, s.id, status.value)

        ordered = tuple(sorted(finished.values(), key=lambda o: declared.get(o.step_id, len(declared))))
        status, reason = overall_status(ordered, deadline_expired=ctx.expired())
        return WorkflowRun(status=status, steps=ordered, outputs=outputs, reason=reason)


__all__ = ["Dispatch", "SkillScheduler", "WorkflowRun", "WorkflowScheduler", "overall_status", "workflow_layers"]
