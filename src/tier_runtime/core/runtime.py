"""
TierRuntime：调用管线。

数据流：
事件 → Trigger Matcher（Skill）或显式调用（Agent/Command）
→ 解析目标（notFound / disabled 在派发前判定）
→ Invocation Graph Controller 校验调用边（仅嵌套调用）
→ 派生 InvocationContext（deadline / 令牌 / 能力交集）
→ TimeoutManager 在 deadline 内运行主体（Skill/Agent：模型循环；Command：workflow）
→ 嵌套调用递归经过同一管线
→ 顶层由 Report Aggregator 合并整棵子树的 findings

约束：
- 顶层调用入口处取一次 registry 快照，整个调用生命周期使用同一快照
- 调用方总能拿到结果（可能是部分结果）与原因；调用期异常不会逃逸到调度器
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from tier_runtime.config.loader import RuntimeConfig
from tier_runtime.core.component_runner import ComponentRunner
from tier_runtime.core.context import CancellationToken, InvocationContext
from tier_runtime.core.contracts import (
    ComponentRef,
    Finding,
    InvocationResult,
    InvocationStatus,
    Severity,
    StepOutcome,
    Tier,
    TriggerEvent,
    TriggerKind,
)
from tier_runtime.core.deadlines import ChildCollector, TimeoutManager, run_with_deadline
from tier_runtime.core.errors import ComponentDisabled, ComponentNotFound, UserError
from tier_runtime.core.invocation_line import coerce_parameters, bind_arguments, parse_invocation_line
from tier_runtime.core.report import ReportAggregator
from tier_runtime.core.run_errors import classify_invocation_exception
from tier_runtime.core.scheduler import Dispatch, SkillScheduler, WorkflowScheduler
from tier_runtime.llm.protocol import ModelCollaborator, validate_model_collaborator
from tier_runtime.registry.models import AgentDescriptor, CommandDescriptor, SkillDescriptor, WorkflowStep
from tier_runtime.registry.snapshot import Registry, RegistrySnapshot
from tier_runtime.safety.capabilities import INVOKE_COMPONENT
from tier_runtime.safety.graph import InvocationGraphController
from tier_runtime.safety.sandbox import CapabilitySandbox
from tier_runtime.tools.builtin import register_builtin_tools
from tier_runtime.tools.registry import ToolExecutionContext, ToolRegistry
from tier_runtime.triggers.matcher import TriggerMatcher

logger = logging.getLogger(__name__)

Descriptor = Union[SkillDescriptor, AgentDescriptor, CommandDescriptor]


class TaskContext:
    """
    side task 的执行上下文。

    说明：
    - 长时间运行的 task 必须周期性调用 `checkpoint()`（或轮询 `cancelled()`）以响应取消
    - `add_finding()` 产出的 finding 会进入 Command 的合并报告
    """

    def __init__(
        self,
        *,
        ctx: InvocationContext,
        task: str,
        command: str,
        step_id: str,
        input: str,
        parameters: Mapping[str, Any],
        upstream: Mapping[str, str],
    ) -> None:
        self.ctx = ctx
        self.task = task
        self.command = command
        self.step_id = step_id
        self.input = input
        self.parameters = dict(parameters)
        self.upstream = dict(upstream)
        self._lock = threading.Lock()
        self._findings: List[Finding] = []

    def checkpoint(self) -> None:
        self.ctx.checkpoint(what=f"task:{self.task}")

    def cancelled(self) -> bool:
        return self.ctx.is_cancelled() or self.ctx.expired()

    def add_finding(
        self,
        message: str,
        *,
        severity: Union[Severity, str] = Severity.INFO,
        location: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        sev = severity if isinstance(severity, Severity) else Severity.parse(severity)
        with self._lock:
            self._findings.append(
                Finding(
                    source_component=self.task,
                    severity=sev,
                    message=str(message),
                    location=location,
                    category=category,
                    sequence=self.ctx.sequence,
                )
            )

    def findings(self) -> Tuple[Finding, ...]:
        with self._lock:
            return tuple(self._findings)


TaskFn = Callable[[TaskContext], Any]


@dataclass(frozen=True)
class EventDispatch:
    """
    一次事件派发（Skill 结果异步可得）。

    字段：
    - event：触发事件
    - dispatches：按调度顺序的池化派发
    - snapshot_version：本次派发使用的快照版本
    """

    event: TriggerEvent
    dispatches: Tuple[Dispatch[SkillDescriptor], ...] = ()
    snapshot_version: int = 0
    aggregator: ReportAggregator = field(default_factory=ReportAggregator, repr=False, compare=False)

    @property
    def skills(self) -> List[str]:
        return [d.item.name for d in self.dispatches]

    def done(self) -> bool:
        return all(d.future.done() for d in self.dispatches)

    def results(self, timeout: Optional[float] = None) -> List[InvocationResult]:
        """等待并按调度顺序返回各 Skill 的结果。"""

        deadline = None if timeout is None else time.monotonic() + timeout
        out: List[InvocationResult] = []
        for d in self.dispatches:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            out.append(d.future.result(timeout=remaining))
        return out

    def report(self, timeout: Optional[float] = None) -> Tuple[Finding, ...]:
        """合并所有 Skill 的 findings（不依赖完成顺序）。"""

        findings: List[Finding] = []
        for r in self.results(timeout=timeout):
            findings.extend(r.findings)
        return self.aggregator.merge(findings)


def _event_text(event: TriggerEvent) -> str:
    payload = event.payload or {}
    if event.kind is TriggerKind.FILE_SAVED:
        return f"file saved: {payload.get('path', '')}"
    if event.kind is TriggerKind.COMMIT:
        paths = ", ".join(str(p) for p in payload.get("paths") or [])
        return f"commit: {payload.get('message', '')}\nchanged: {paths}".strip()
    return str(payload.get("text") or "")


def _require_component(snapshot: RegistrySnapshot, ref: ComponentRef) -> Descriptor:
    """
    在快照中查找可派发的目标。

    异常：
    - ComponentNotFound：快照中没有该组件
    - ComponentDisabled：组件存在但被禁用
    """

    desc = snapshot.get(ref.tier, ref.name)
    if desc is None:
        raise ComponentNotFound(f"{ref} is not registered", code="COMPONENT_NOT_FOUND", details={"target": str(ref)})
    if not desc.enabled:
        raise ComponentDisabled(f"{ref} is disabled", code="COMPONENT_DISABLED", details={"target": str(ref)})
    return desc


class TierRuntime:
    """
    三层组件运行时。

    参数：
    - registry：descriptor 注册表（顶层调用入口处读取当前快照）
    - model：外部模型协作方
    - config：运行时配置（默认内置值）
    - tools：工具注册表（默认：以 workspace_root 为根的 builtin 工具）
    - workspace_root：builtin 工具的根目录（默认当前目录）
    """

    def __init__(
        self,
        *,
        registry: Registry,
        model: ModelCollaborator,
        config: Optional[RuntimeConfig] = None,
        tools: Optional[ToolRegistry] = None,
        workspace_root: Optional[Path] = None,
    ) -> None:
        validate_model_collaborator(model)
        self._registry = registry
        self._config = config or RuntimeConfig()
        if tools is None:
            tools = ToolRegistry(ctx=ToolExecutionContext(workspace_root=Path(workspace_root or Path.cwd())))
            register_builtin_tools(tools)
        self._tools = tools
        self._sandbox = CapabilitySandbox()
        self._graph = InvocationGraphController()
        self._timeouts = TimeoutManager(self._config)
        self._runner = ComponentRunner(model=model, tools=tools, sandbox=self._sandbox)
        self._matcher = TriggerMatcher()
        self._aggregator = ReportAggregator()
        self._skills = SkillScheduler(max_concurrency=self._config.scheduler.max_concurrency)
        self._workflows = WorkflowScheduler(max_concurrency=self._config.scheduler.max_concurrency)
        self._tasks_lock = threading.Lock()
        self._tasks: Dict[str, TaskFn] = {}

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    # ---- lifecycle ----

    def close(self) -> None:
        self._skills.shutdown(wait=False)

    def __enter__(self) -> "TierRuntime":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- side tasks ----

    def register_task(self, name: str, fn: TaskFn, *, override: bool = False) -> None:
        """注册 workflow side task（`task: <name>` step 使用）。"""

        key = str(name or "").strip()
        if not key:
            raise UserError("side task name must be non-empty", code="TASK_INVALID")
        with self._tasks_lock:
            if key in self._tasks and not override:
                raise UserError(f"side task already registered: {key}", code="TASK_DUPLICATE")
            self._tasks[key] = fn

    # ---- public entry points ----

    def invoke_agent(
        self,
        name: str,
        text: str = "",
        *,
        extra: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> InvocationResult:
        """同步调用一个 Agent（阻塞直到返回或 deadline 到期）。"""

        snapshot = self._registry.current()
        return self._invoke_top(snapshot, ComponentRef(Tier.AGENT, str(name)), text, dict(extra or {}), token=token)

    def invoke_skill(
        self,
        name: str,
        text: str = "",
        *,
        extra: Optional[Mapping[str, Any]] = None,
        token: Optional[CancellationToken] = None,
    ) -> InvocationResult:
        """直接同步运行一个 Skill（不经过 Trigger Matcher）。"""

        snapshot = self._registry.current()
        return self._invoke_top(snapshot, ComponentRef(Tier.SKILL, str(name)), text, dict(extra or {}), token=token)

    def run_command(
        self,
        name: str,
        args: Optional[Mapping[str, Any]] = None,
        *,
        input: str = "",
        token: Optional[CancellationToken] = None,
    ) -> InvocationResult:
        """
        运行一个 Command。

        异常：
        - UserError：参数未声明 / 缺失必填 / 类型非法（调用开始之前）
        """

        snapshot = self._registry.current()
        ref = ComponentRef(Tier.COMMAND, str(name))
        desc, failure = self._resolve(snapshot, ref)
        if failure is not None:
            return failure
        assert isinstance(desc, CommandDescriptor)
        params = coerce_parameters(desc.parameters, args or {})
        return self._invoke_top(snapshot, ref, input, {"parameters": params}, token=token, descriptor=desc)

    def invoke_line(self, line: str, *, token: Optional[CancellationToken] = None) -> InvocationResult:
        """执行一行 `/command --flag value` 或 `@agent text`。"""

        parsed = parse_invocation_line(line)
        snapshot = self._registry.current()
        ref = ComponentRef(parsed.tier, parsed.name)
        if parsed.tier is Tier.AGENT:
            return self._invoke_top(snapshot, ref, parsed.text, {}, token=token)
        desc, failure = self._resolve(snapshot, ref)
        if failure is not None:
            return failure
        assert isinstance(desc, CommandDescriptor)
        bound = bind_arguments(desc.parameters, parsed.tokens)
        return self._invoke_top(snapshot, ref, bound.input, {"parameters": bound.parameters}, token=token, descriptor=desc)

    def dispatch_event(
        self,
        event: TriggerEvent,
        *,
        on_result: Optional[Callable[[SkillDescriptor, InvocationResult], None]] = None,
    ) -> EventDispatch:
        """
        匹配并异步派发 Skill（立即返回，不阻塞调用方）。

        参数：
        - on_result：可选；每个 Skill 完成时回调（工作线程中调用）
        """

        snapshot = self._registry.current()
        matched = self._matcher.match(event, snapshot)
        text = _event_text(event)
        extra = {"event": {"kind": event.kind.value, "payload": dict(event.payload or {})}}

        def _run(skill: SkillDescriptor) -> InvocationResult:
            return self._invoke_top(snapshot, skill.ref, text, dict(extra), descriptor=skill)

        dispatches = self._skills.submit_all(matched, _run, on_result=on_result)
        logger.debug("event %s dispatched %d skill(s)", event.kind.value, len(dispatches))
        return EventDispatch(
            event=event,
            dispatches=tuple(dispatches),
            snapshot_version=snapshot.version,
            aggregator=self._aggregator,
        )

    # ---- pipeline ----

    def _resolve(self, snapshot: RegistrySnapshot, ref: ComponentRef) -> Tuple[Optional[Descriptor], Optional[InvocationResult]]:
        """派发前解析目标：不存在 → notFound；禁用 → disabled（均无副作用）。"""

        try:
            return _require_component(snapshot, ref), None
        except (ComponentNotFound, ComponentDisabled) as exc:
            failure = classify_invocation_exception(exc)
            logger.info("component unavailable: %s (%s)", ref, failure.status.value)
            return None, InvocationResult(status=failure.status, component=ref, reason=failure.reason)

    def _invoke_top(
        self,
        snapshot: RegistrySnapshot,
        ref: ComponentRef,
        text: str,
        extra: Dict[str, Any],
        *,
        token: Optional[CancellationToken] = None,
        descriptor: Optional[Descriptor] = None,
    ) -> InvocationResult:
        desc = descriptor
        if desc is None:
            desc, failure = self._resolve(snapshot, ref)
            if failure is not None:
                return failure
        assert desc is not None
        ctx = InvocationContext.root(
            component=ref,
            allowed_tools=desc.tools,
            timeout_sec=self._timeouts.timeout_for(desc),
            max_depth=self._config.invocation.max_depth,
            snapshot=snapshot,
            token=token,
        )
        logger.debug("invoke %s (call_id=%s, snapshot=v%s)", ref, ctx.call_id, snapshot.version)
        result = self._execute(ctx, desc, text, extra)
        return self._aggregator.aggregate(result)

    def invoke_nested(
        self,
        caller: InvocationContext,
        ref: ComponentRef,
        text: str,
        extra: Dict[str, Any],
    ) -> InvocationResult:
        """
        嵌套调用（由运行中的组件或 workflow step 发起）。

        异常：
        - InvocationTimeout：调用方已超时/被取消（嵌套调用不会开始）
        - CycleDetected / PermissionViolation：调用边非法（不会产生任何执行）
        """

        caller.checkpoint(what=f"invoke:{ref}")
        self._graph.enforce(caller, ref)
        snapshot = caller.snapshot if caller.snapshot is not None else self._registry.current()
        desc, failure = self._resolve(snapshot, ref)
        if failure is not None:
            return replace(failure, sequence=caller.counter.next())
        assert desc is not None
        child = caller.derive(component=ref, callee_tools=desc.tools, timeout_sec=self._timeouts.timeout_for(desc))
        logger.debug("nested invoke %s <- %s (call_id=%s)", ref, caller.component, child.call_id)
        return self._execute(child, desc, text, extra)

    def _execute(self, ctx: InvocationContext, desc: Descriptor, text: str, extra: Dict[str, Any]) -> InvocationResult:
        if isinstance(desc, CommandDescriptor):
            return self._execute_command(ctx, desc, text, dict(extra.get("parameters") or {}))

        max_iterations = desc.max_iterations or self._config.max_iterations_for(desc.tier_enum)

        def _body(collector: ChildCollector) -> InvocationResult:
            return self._runner.run(
                ctx,
                desc,
                input=text,
                extra=extra,
                max_iterations=max_iterations,
                collector=collector,
                invoke_nested=self.invoke_nested,
            )

        return self._timeouts.run_bounded(ctx, _body)

    # ---- commands ----

    def _execute_command(
        self,
        ctx: InvocationContext,
        cmd: CommandDescriptor,
        text: str,
        params: Dict[str, Any],
    ) -> InvocationResult:
        steps = cmd.effective_workflow()

        def _run_step(step: WorkflowStep, upstream: Mapping[str, str], wf_ctx: InvocationContext) -> InvocationResult:
            return self._run_step(wf_ctx, cmd, step, text, params, upstream)

        def _body(collector: ChildCollector) -> InvocationResult:
            run = self._workflows.run(ctx, steps, run_step=_run_step, collector=collector)
            has_dependents = {d for s in steps for d in s.depends_on}
            sinks = [run.outputs[s.id] for s in steps if s.id not in has_dependents and s.id in run.outputs]
            return InvocationResult(
                status=run.status,
                findings=collector.findings(),
                reason=run.reason,
                output="\n\n".join(sinks) if sinks else None,
                children=collector.children(),
                steps=run.steps,
            )

        def _on_timeout(collector: ChildCollector, reason: str) -> InvocationResult:
            recorded = {o.step_id: o for o in collector.steps()}
            outcomes = tuple(
                recorded.get(s.id) or StepOutcome(s.id, InvocationStatus.TIMEOUT, s.policy, reason=reason, target=s.target)
                for s in steps
            )
            return InvocationResult(
                status=InvocationStatus.TIMEOUT,
                findings=collector.findings(),
                reason=reason,
                children=collector.children(),
                steps=outcomes,
            )

        return self._timeouts.run_bounded(ctx, _body, on_timeout=_on_timeout)

    def _run_step(
        self,
        wf_ctx: InvocationContext,
        cmd: CommandDescriptor,
        step: WorkflowStep,
        text: str,
        params: Mapping[str, Any],
        upstream: Mapping[str, str],
    ) -> InvocationResult:
        """执行单个 step；任何失败都转换为结果（不抛异常）。"""

        step_text = f"{step.prompt}\n\n{text}" if step.prompt and text else (step.prompt or text)
        try:
            if step.agent:
                self._sandbox.enforce(wf_ctx, INVOKE_COMPONENT, tool=f"agent:{step.agent}")
                extra = {"command": cmd.name, "step": step.id, "parameters": dict(params), "upstream": dict(upstream)}
                return self.invoke_nested(wf_ctx, ComponentRef(Tier.AGENT, step.agent), step_text, extra)
            return self._run_task(wf_ctx, cmd, step, step_text, params, upstream)
        except Exception as exc:
            failure = classify_invocation_exception(exc)
            logger.info("step %s of %s ended with %s: %s", step.id, cmd.name, failure.status.value, failure.reason)
            return InvocationResult(
                status=failure.status,
                component=ComponentRef(Tier.AGENT, step.agent) if step.agent else None,
                reason=failure.reason,
                sequence=wf_ctx.counter.next(),
            )

    def _run_task(
        self,
        wf_ctx: InvocationContext,
        cmd: CommandDescriptor,
        step: WorkflowStep,
        text: str,
        params: Mapping[str, Any],
        upstream: Mapping[str, str],
    ) -> InvocationResult:
        task_name = str(step.task)
        with self._tasks_lock:
            fn = self._tasks.get(task_name)
        if fn is None:
            return InvocationResult(
                status=InvocationStatus.NOT_FOUND,
                reason=f"side task is not registered: {task_name}",
                sequence=wf_ctx.counter.next(),
            )

        task_ctx = replace(
            wf_ctx,
            call_id=uuid.uuid4().hex,
            token=wf_ctx.token.child(),
            sequence=wf_ctx.counter.next(),
            started_monotonic=time.monotonic(),
        )
        tctx = TaskContext(
            ctx=task_ctx,
            task=task_name,
            command=cmd.name,
            step_id=step.id,
            input=text,
            parameters=params,
            upstream=upstream,
        )
        value = run_with_deadline(task_ctx, lambda: fn(tctx), name=f"task:{task_name}")
        return InvocationResult(
            status=InvocationStatus.SUCCESS,
            findings=tctx.findings(),
            output=None if value is None else str(value),
            call_id=task_ctx.call_id,
            sequence=task_ctx.sequence,
            elapsed_ms=task_ctx.elapsed_ms(),
        )


__all__ = ["EventDispatch", "TaskContext", "TierRuntime"]
