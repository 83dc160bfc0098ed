"""
内置工具：search（在 workspace 内按正则搜索文本文件，可选 glob 过滤）。
"""

from __future__ import annotations

import re
import time
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tier_runtime.core.errors import UserError
from tier_runtime.safety.capabilities import SEARCH
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolResultPayload, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext


class _FileSearchArgs(BaseModel):
    """search 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(min_length=1)
    path: str = "."
    glob: Optional[str] = None
    ignore_case: bool = False
    max_results: Optional[int] = Field(default=None, ge=1)


FILE_SEARCH_SPEC = ToolSpec(
    name=SEARCH,
    description="Search text files inside the workspace with a regular expression.",
    parameters={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "regular expression"},
            "path": {"type": "string", "description": "directory or file to search (default: workspace root)"},
            "glob": {"type": "string", "description": "optional file name filter, e.g. *.py"},
            "ignore_case": {"type": "boolean"},
            "max_results": {"type": "integer", "minimum": 1},
        },
        "required": ["pattern"],
        "additionalProperties": False,
    },
)


def _iter_files(base: Path, glob: Optional[str]) -> Iterator[Path]:
    if base.is_file():
        yield base
        return
    for p in sorted(base.rglob("*")):
        if not p.is_file() or any(part.startswith(".") for part in p.relative_to(base).parts):
            continue
        if glob and not fnmatchcase(p.name, glob):
            continue
        yield p


def file_search(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 search。

    返回：
    - ok=true：details.stdout 为 `path:line:text` 行列表；details.data.matches 为命中条数
    - 取消信号置位时提前停止并标记 truncated
    """

    start = time.monotonic()
    try:
        args = _FileSearchArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        regex = re.compile(args.pattern, re.IGNORECASE if args.ignore_case else 0)
    except re.error as e:
        return ToolResult.error_payload(error_kind="validation", stderr=f"invalid pattern: {e}")

    try:
        base = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)
    if not base.exists():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"path not found: {args.path}", data={"path": args.path})

    root = Path(ctx.workspace_root).resolve()
    limit = args.max_results or ctx.max_search_results
    lines: list[str] = []
    truncated = False
    for f in _iter_files(base, args.glob):
        if ctx.cancelled():
            truncated = True
            break
        try:
            text = f.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        rel = f.relative_to(root).as_posix()
        for lineno, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                lines.append(f"{rel}:{lineno}:{line}")
                if len(lines) >= limit:
                    truncated = True
                    break
        if truncated:
            break

    payload = ToolResultPayload(
        ok=True,
        stdout="\n".join(lines),
        exit_code=0,
        duration_ms=int((time.monotonic() - start) * 1000),
        truncated=truncated,
        data={"matches": len(lines)},
    )
    return ToolResult.from_payload(payload)
