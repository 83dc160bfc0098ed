"""
ComponentRunner：在沙箱与检查点约束下运行一个 Skill/Agent 的模型循环。

循环（每轮）：
1) checkpoint（开始模型调用之前）
2) 模型返回 FinalAnswer → 结束；返回 ToolUseRequest → 继续
3) checkpoint（开始工具调用之前）
4) 沙箱判定：拒绝 → 本调用以 permissionViolation 结束
5) `invoke-component` → 通过调用管线发起嵌套调用（同步等待）；其它能力 → ToolRegistry 派发
超过 max_iterations 仍未给出最终回答 → error。
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from tier_runtime.core.context import InvocationContext
from tier_runtime.core.contracts import ComponentRef, Finding, InvocationResult, InvocationStatus, Severity, Tier
from tier_runtime.core.deadlines import ChildCollector
from tier_runtime.core.errors import FrameworkError
from tier_runtime.llm.protocol import (
    FinalAnswer,
    ModelCollaborator,
    ModelRequest,
    ToolExchange,
    ToolUseRequest,
)
from tier_runtime.safety.capabilities import INVOKE_COMPONENT
from tier_runtime.safety.sandbox import CapabilitySandbox
from tier_runtime.tools.protocol import ToolCall
from tier_runtime.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

NestedInvoker = Callable[[InvocationContext, ComponentRef, str, Dict[str, Any]], InvocationResult]

SUCCESS_CATEGORY = "success"


def _to_finding(raw: Union[Finding, Mapping[str, Any]], *, source: str) -> Finding:
    """把模型给出的 finding（对象或 dict）规范化；source 固定为当前组件名。"""

    if isinstance(raw, Finding):
        return Finding(
            source_component=source,
            severity=raw.severity,
            message=raw.message,
            location=raw.location,
            category=raw.category,
        )
    message = str(raw.get("message") or "").strip()
    if not message:
        raise FrameworkError(code="FINDING_INVALID", message="Finding message must be non-empty.", details={"source": source})
    location = raw.get("location")
    category = raw.get("category")
    return Finding(
        source_component=source,
        severity=Severity.parse(raw.get("severity")),
        message=message,
        location=str(location) if location is not None else None,
        category=str(category) if category is not None else None,
    )


def _parse_target(args: Mapping[str, Any]) -> ComponentRef:
    """解析 invoke-component 的目标：`{tier, name}` 或 `{target: "tier:name"}`。"""

    tier_raw = args.get("tier")
    name = args.get("name")
    target = args.get("target")
    if target and not name:
        text = str(target)
        if ":" in text:
            tier_raw, name = text.split(":", 1)
        else:
            name = text
    if not name or not tier_raw:
        raise FrameworkError(
            code="INVOKE_TARGET_INVALID",
            message="invoke-component requires a target tier and name.",
            details={"args": {k: str(v) for k, v in args.items()}},
        )
    try:
        tier = Tier.parse(tier_raw)
    except ValueError:
        raise FrameworkError(
            code="INVOKE_TARGET_INVALID",
            message=f"invoke-component target has an unknown tier: {tier_raw!r}",
        ) from None
    return ComponentRef(tier=tier, name=str(name).strip())


class ComponentRunner:
    """Skill/Agent 主体执行器（无状态；可被多个调用并发复用）。"""

    def __init__(
        self,
        *,
        model: ModelCollaborator,
        tools: ToolRegistry,
        sandbox: Optional[CapabilitySandbox] = None,
    ) -> None:
        self._model = model
        self._tools = tools
        self._sandbox = sandbox or CapabilitySandbox()

    def run(
        self,
        ctx: InvocationContext,
        descriptor: Any,
        *,
        input: str,
        extra: Dict[str, Any],
        max_iterations: int,
        collector: ChildCollector,
        invoke_nested: NestedInvoker,
    ) -> InvocationResult:
        """
        运行模型循环直到最终回答、违规、超时或迭代上限。

        参数：
        - ctx：本次调用上下文
        - descriptor：Skill/Agent descriptor（只读）
        - input/extra：调用方输入与附加上下文
        - max_iterations：迭代上限
        - collector：部分结果收集器（嵌套调用结果在完成时写入）
        - invoke_nested：嵌套调用入口（经过完整调用管线）

        异常：
        - InvocationTimeout / PermissionViolation / CycleDetected：由 TimeoutManager 分类为结果状态
        """

        history: List[ToolExchange] = []
        source = descriptor.name
        for iteration in range(max_iterations):
            ctx.checkpoint(what="model")
            reply = self._model.respond(
                ModelRequest(
                    component=ctx.component,
                    model=descriptor.model,
                    instructions=descriptor.instructions,
                    input=input,
                    allowed_tools=ctx.allowed_tools,
                    iteration=iteration,
                    history=tuple(history),
                    call_id=ctx.call_id,
                    extra=dict(extra),
                )
            )

            if isinstance(reply, FinalAnswer):
                findings = tuple(_to_finding(f, source=source) for f in reply.findings)
                if not findings:
                    findings = (
                        Finding(
                            source_component=source,
                            severity=Severity.INFO,
                            message=f"{ctx.component} completed",
                            category=SUCCESS_CATEGORY,
                        ),
                    )
                return InvocationResult(
                    status=InvocationStatus.SUCCESS,
                    findings=findings,
                    output=reply.text,
                    children=collector.children(),
                )

            if not isinstance(reply, ToolUseRequest):
                raise FrameworkError(
                    code="MODEL_REPLY_INVALID",
                    message=f"Model returned an unsupported reply type: {type(reply).__name__}",
                )

            ctx.checkpoint(what=f"tool:{reply.capability}")
            capability = self._sandbox.enforce(ctx, reply.capability, tool=reply.capability)

            if capability == INVOKE_COMPONENT:
                target = _parse_target(reply.args)
                child = invoke_nested(ctx, target, str(reply.args.get("input") or ""), {})
                collector.add_child(child)
                history.append(
                    ToolExchange(
                        request=reply,
                        ok=child.ok,
                        content=child.output if child.ok and child.output is not None else (child.reason or child.status.value),
                        status=child.status.value,
                    )
                )
                continue

            result = self._tools.dispatch(
                ToolCall(call_id=uuid.uuid4().hex, name=capability, args=dict(reply.args)),
                cancel_checker=ctx.is_cancelled,
                component=str(ctx.component),
            )
            history.append(ToolExchange(request=reply, ok=result.ok, content=result.content))

        raise FrameworkError(
            code="MAX_ITERATIONS_EXCEEDED",
            message=f"{ctx.component} did not produce a final answer within {max_iterations} iterations",
            details={"max_iterations": max_iterations},
        )


__all__ = ["ComponentRunner", "SUCCESS_CATEGORY"]
