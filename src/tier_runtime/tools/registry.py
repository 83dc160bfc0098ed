"""
ToolRegistry：按能力名注册与派发工具。

说明：
- 派发是 fail-closed 的：未注册的能力返回 `not_found`，handler 抛出的 `UserError` 映射为 `validation`。
- 沙箱判定不在这里：ComponentRunner 在派发前已经通过 `CapabilitySandbox` 放行。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Optional

from tier_runtime.core.errors import UserError
from tier_runtime.safety.capabilities import normalize_capability
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], ToolResult]


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（派发层注入）。

    字段：
    - workspace_root：相对路径解析基准目录；文件类工具不得访问其外部
    - max_file_bytes：read 默认最大读取字节数
    - max_search_results：search 默认最大返回条数
    - cancel_checker：可选；长时间工具在循环中轮询（协作式取消）
    - component：可选；发起调用的组件（`tier:name`，用于日志）
    """

    workspace_root: Path
    max_file_bytes: int = 256 * 1024
    max_search_results: int = 200
    cancel_checker: Optional[Callable[[], bool]] = None
    component: Optional[str] = None

    def resolve_path(self, path: str) -> Path:
        """
        将 path 解析为绝对路径，并限制在 workspace_root 下。

        异常：
        - `UserError`：当路径逃逸 workspace_root 时抛出
        """

        root = Path(self.workspace_root).resolve()
        p = Path(path)
        if not p.is_absolute():
            p = root / p
        p = p.resolve()
        if not p.is_relative_to(root):
            raise UserError(f"path escapes workspace root: {p}", code="PATH_OUTSIDE_WORKSPACE")
        return p

    def cancelled(self) -> bool:
        return bool(self.cancel_checker is not None and self.cancel_checker())


class ToolRegistry:
    """工具注册表（键为规范能力名）。"""

    def __init__(self, *, ctx: ToolExecutionContext) -> None:
        self._ctx = ctx
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    @property
    def ctx(self) -> ToolExecutionContext:
        return self._ctx

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        参数：
        - spec：工具规格（name 按能力名归一化）
        - handler：工具执行函数
        - override：是否允许覆盖；默认 False（重复注册抛 UserError）
        """

        name = normalize_capability(spec.name)
        if name in self._specs and not override:
            raise UserError(f"tool already registered: {name}", code="TOOL_DUPLICATE")
        self._specs[name] = spec
        self._handlers[name] = handler

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        try:
            return self._specs[normalize_capability(name)]
        except KeyError as e:
            raise UserError(f"tool not registered: {name}", code="TOOL_NOT_FOUND") from e

    def has(self, name: str) -> bool:
        return normalize_capability(name) in self._handlers

    def list_specs(self) -> list[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def dispatch(
        self,
        call: ToolCall,
        *,
        cancel_checker: Optional[Callable[[], bool]] = None,
        component: Optional[str] = None,
    ) -> ToolResult:
        """
        派发执行一个 ToolCall。

        参数：
        - call：工具调用
        - cancel_checker/component：本次调用的取消轮询与发起方（覆盖注册表级上下文）
        """

        name = normalize_capability(call.name)
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult.error_payload(error_kind="not_found", stderr=f"tool not registered: {call.name}", data={"tool": call.name})

        ctx = replace(self._ctx, cancel_checker=cancel_checker or self._ctx.cancel_checker, component=component)
        logger.debug("dispatch tool %s for %s (call_id=%s)", name, component, call.call_id)
        try:
            return handler(call, ctx)
        except UserError as e:
            return ToolResult.error_payload(error_kind="validation", stderr=e.message)
        except OSError as e:
            return ToolResult.error_payload(error_kind="unknown", stderr=str(e))


__all__ = ["ToolExecutionContext", "ToolHandler", "ToolRegistry"]
