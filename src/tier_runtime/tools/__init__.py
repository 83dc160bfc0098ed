"""工具协议、注册表与内置工具。"""

from __future__ import annotations

from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext, ToolRegistry

__all__ = ["ToolCall", "ToolExecutionContext", "ToolRegistry", "ToolResult", "ToolResultPayload", "ToolSpec"]
