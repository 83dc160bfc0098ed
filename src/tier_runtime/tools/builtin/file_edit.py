"""
内置工具：edit（在 workspace 内的文本文件中做精确字符串替换）。
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tier_runtime.core.errors import UserError
from tier_runtime.safety.capabilities import EDIT
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext


class _FileEditArgs(BaseModel):
    """edit 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    old: str = Field(min_length=1)
    new: str
    replace_all: bool = False


FILE_EDIT_SPEC = ToolSpec(
    name=EDIT,
    description="Replace an exact string in a text file inside the workspace.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "old": {"type": "string", "description": "exact text to replace (must be unique unless replace_all)"},
            "new": {"type": "string"},
            "replace_all": {"type": "boolean"},
        },
        "required": ["path", "old", "new"],
        "additionalProperties": False,
    },
)


def file_edit(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 edit。

    约束：
    - `old` 必须存在；未指定 replace_all 时必须唯一
    """

    start = time.monotonic()
    try:
        args = _FileEditArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not p.is_file():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"file not found: {args.path}", data={"path": args.path})

    text = p.read_text(encoding="utf-8")
    count = text.count(args.old)
    if count == 0:
        return ToolResult.error_payload(error_kind="validation", stderr="old text not found", data={"path": args.path})
    if count > 1 and not args.replace_all:
        return ToolResult.error_payload(
            error_kind="validation",
            stderr=f"old text is not unique ({count} matches)",
            data={"path": args.path, "matches": count},
        )

    updated = text.replace(args.old, args.new) if args.replace_all else text.replace(args.old, args.new, 1)
    p.write_text(updated, encoding="utf-8")
    replaced = count if args.replace_all else 1
    payload = ToolResultPayload(
        ok=True,
        stdout=f"replaced {replaced} occurrence(s)",
        exit_code=0,
        duration_ms=int((time.monotonic() - start) * 1000),
        data={"path": str(args.path), "replacements": replaced},
    )
    return ToolResult.from_payload(payload)
