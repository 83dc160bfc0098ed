"""
Tool 协议：ToolSpec / ToolCall / ToolResult。

说明：
- 工具按规范能力名（`read/write/edit/search/...`）注册与派发；能力名同时是沙箱判定的键。
- ToolResult 的 `content` 是 JSON 字符串（便于直接回灌给模型协作方），`details` 是结构化 payload。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolSpec(BaseModel):
    """工具规格（名称即规范能力名）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class ToolCall:
    """
    一次工具调用（已解析 arguments）。

    字段：
    - call_id：调用 id
    - name：能力名（宿主工具名会被归一化）
    - args：参数
    """

    call_id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """工具执行结果的结构化 payload。"""

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    # not_found / permission / validation / cancelled / unknown
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class ToolResult:
    """工具执行结果。"""

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        details = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(details, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=details,
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
    ) -> "ToolResult":
        """构造失败结果（ok=false；stderr 作为 message）。"""

        payload = ToolResultPayload(ok=False, stderr=stderr, data=data, duration_ms=duration_ms, error_kind=error_kind)
        return cls.from_payload(payload, message=stderr)

    @property
    def stdout(self) -> str:
        return str((self.details or {}).get("stdout") or "")


__all__ = ["ToolCall", "ToolResult", "ToolResultPayload", "ToolSpec"]
