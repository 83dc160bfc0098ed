"""
内置工具：write（整体覆盖写 workspace 内的文本文件）。
"""

from __future__ import annotations

import time

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from tier_runtime.core.errors import UserError
from tier_runtime.safety.capabilities import WRITE
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext


class _FileWriteArgs(BaseModel):
    """write 输入参数。"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    path: str
    content: str
    create_dirs: bool = Field(
        default=True,
        validation_alias=AliasChoices("create_dirs", "mkdirs"),
        description="是否自动创建父目录（默认 true；兼容 mkdirs 别名）",
    )


FILE_WRITE_SPEC = ToolSpec(
    name=WRITE,
    description="Create or overwrite a text file inside the workspace.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string", "description": "full file content"},
            "create_dirs": {"type": "boolean"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
)


def file_write(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """执行 write；成功时 details.data 给出写入字节数。"""

    start = time.monotonic()
    try:
        args = _FileWriteArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    try:
        if args.create_dirs:
            p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(args.content, encoding="utf-8")
    except PermissionError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolResult.error_payload(error_kind="permission", stderr=str(e), duration_ms=duration_ms)
    except OSError as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolResult.error_payload(error_kind="unknown", stderr=str(e), duration_ms=duration_ms)

    wrote_bytes = len(args.content.encode("utf-8"))
    payload = ToolResultPayload(
        ok=True,
        stdout=f"wrote {wrote_bytes} bytes",
        exit_code=0,
        duration_ms=int((time.monotonic() - start) * 1000),
        data={"path": str(args.path), "bytes": wrote_bytes},
    )
    return ToolResult.from_payload(payload)
