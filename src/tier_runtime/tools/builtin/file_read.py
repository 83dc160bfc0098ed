"""
内置工具：read（读取 workspace 内的文本文件）。
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tier_runtime.core.errors import UserError
from tier_runtime.safety.capabilities import READ
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext


class _FileReadArgs(BaseModel):
    """read 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    max_bytes: Optional[int] = Field(default=None, ge=1, description="最大读取字节数（可选）")


FILE_READ_SPEC = ToolSpec(
    name=READ,
    description="Read a text file inside the workspace (may be truncated).",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "file path (relative to the workspace root)"},
            "max_bytes": {"type": "integer", "minimum": 1},
        },
        "required": ["path"],
        "additionalProperties": False,
    },
)


def _read_text_with_limit(path: Path, *, max_bytes: int, marker: bytes) -> tuple[str, bool]:
    """
    读取文件内容并在超出 max_bytes 时进行 head+tail 截断。

    返回：
    - text：UTF-8 解码文本（非法字节替换）
    - truncated：是否发生截断
    """

    st = path.stat()
    if st.st_size <= max_bytes:
        return path.read_bytes().decode("utf-8", errors="replace"), False

    head_len = max_bytes // 2
    tail_len = max_bytes - head_len
    with path.open("rb") as f:
        head = f.read(head_len)
        f.seek(-tail_len, os.SEEK_END)
        tail = f.read(tail_len)
    return (head + marker + tail).decode("utf-8", errors="replace"), True


def file_read(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 read。

    返回：
    - ok=true：details.stdout 为读取到的文本内容（可能截断）
    - ok=false：error_kind 指示 not_found/permission/validation 等
    """

    start = time.monotonic()
    try:
        args = _FileReadArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not p.is_file():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"file not found: {args.path}", data={"path": args.path})

    max_bytes = args.max_bytes if args.max_bytes is not None else ctx.max_file_bytes
    try:
        text, truncated = _read_text_with_limit(p, max_bytes=max_bytes, marker=b"\n...<truncated>\n")
    except OSError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolResult.error_payload(error_kind="unknown", stderr=str(e), duration_ms=duration_ms)

    payload = ToolResultPayload(
        ok=True,
        stdout=text,
        exit_code=0,
        duration_ms=int((time.monotonic() - start) * 1000),
        truncated=truncated,
        data={"path": str(args.path)},
    )
    return ToolResult.from_payload(payload)
