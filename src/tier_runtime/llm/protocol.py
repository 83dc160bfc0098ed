"""
外部模型协作方协议：ModelRequest → ToolUseRequest | FinalAnswer。

设计目标：
- 运行时把模型视为不透明黑盒：给定（prompt, allowed_tools），返回“请求一次工具使用”或“最终回答”
- 用单一参数对象承载请求信息，避免散落的关键字参数不断膨胀
- 嵌套调用也是一次工具使用：能力名 `invoke-component`，参数 `{tier, name, input}`
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Protocol, Sequence, Tuple, Union

from tier_runtime.core.contracts import ComponentRef, Finding
from tier_runtime.safety.capabilities import INVOKE_COMPONENT


@dataclass(frozen=True)
class ToolUseRequest:
    """
    模型请求的一次工具使用。

    字段：
    - capability：能力名（宿主工具名会被归一化）
    - args：工具参数
    """

    capability: str
    args: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def invoke(cls, tier: str, name: str, input: str = "") -> "ToolUseRequest":
        """构造一次嵌套组件调用请求。"""

        return cls(capability=INVOKE_COMPONENT, args={"tier": str(tier), "name": str(name), "input": str(input)})


@dataclass(frozen=True)
class FinalAnswer:
    """
    模型的最终回答。

    字段：
    - text：回答文本（作为 InvocationResult.output）
    - findings：结构化发现；元素为 `Finding` 或 `{severity, message, location?, category?}` dict
    """

    text: str = ""
    findings: Sequence[Union[Finding, Mapping[str, Any]]] = ()


ModelReply = Union[ToolUseRequest, FinalAnswer]


@dataclass(frozen=True)
class ToolExchange:
    """一次已完成的工具使用（回灌给模型的历史）。"""

    request: ToolUseRequest
    ok: bool
    content: str
    status: Optional[str] = None


@dataclass(frozen=True)
class ModelRequest:
    """
    ModelRequest：一次模型调用的参数包。

    字段：
    - component：当前组件
    - model：descriptor 声明的模型标识（不透明，原样传递）
    - instructions：descriptor 的指令正文（不透明）
    - input：调用方传入的输入文本
    - allowed_tools：本次调用的有效能力集合（已与祖先求交集）
    - iteration：第几轮（从 0 开始）
    - history：已完成的工具使用
    - call_id：调用 id
    - extra：附加上下文（例如 Command 参数、上游 step 输出）
    """

    component: ComponentRef
    model: str
    instructions: str
    input: str
    allowed_tools: FrozenSet[str]
    iteration: int = 0
    history: Tuple[ToolExchange, ...] = ()
    call_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def prompt(self) -> str:
        if self.instructions and self.input:
            return f"{self.instructions}\n\n{self.input}"
        return self.instructions or self.input


class ModelCollaborator(Protocol):
    """外部模型协作方抽象（同步调用；延迟无上限，由调用 deadline 约束）。"""

    def respond(self, request: ModelRequest) -> ModelReply:
        """返回一次工具使用请求或最终回答。"""

        ...


def validate_model_collaborator(model: Any) -> None:
    """
    校验 ModelCollaborator 协议（fail-fast）。

    异常：
    - ValueError：缺少 `respond(request)` 或签名含额外必填参数
    """

    fn = getattr(model, "respond", None)
    if not callable(fn):
        raise ValueError("ModelCollaborator protocol mismatch: missing respond(request: ModelRequest)")
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):
        return
    params = [p for p in sig.parameters.values() if p.name not in ("self", "cls")]
    if not params:
        raise ValueError("ModelCollaborator.respond must accept a `request` parameter")
    for p in params[1:]:
        if p.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if p.default is inspect.Parameter.empty:
            raise ValueError("ModelCollaborator.respond must accept only `request`")


__all__ = [
    "FinalAnswer",
    "ModelCollaborator",
    "ModelReply",
    "ModelRequest",
    "ToolExchange",
    "ToolUseRequest",
    "validate_model_collaborator",
]
