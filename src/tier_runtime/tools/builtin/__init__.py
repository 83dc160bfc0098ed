"""
内置工具集合（read / write / edit / search）。

说明：
- 只绑定文件类能力；`execute-external-process`、`web` 等能力需要宿主自行注册 handler。
"""

from __future__ import annotations

from tier_runtime.tools.builtin.file_edit import FILE_EDIT_SPEC, file_edit
from tier_runtime.tools.builtin.file_read import FILE_READ_SPEC, file_read
from tier_runtime.tools.builtin.file_search import FILE_SEARCH_SPEC, file_search
from tier_runtime.tools.builtin.file_write import FILE_WRITE_SPEC, file_write
from tier_runtime.tools.registry import ToolRegistry

_BUILTIN_TOOL_ENTRIES = [
    (FILE_READ_SPEC, file_read),
    (FILE_WRITE_SPEC, file_write),
    (FILE_EDIT_SPEC, file_edit),
    (FILE_SEARCH_SPEC, file_search),
]


def register_builtin_tools(registry: ToolRegistry, *, override: bool = False) -> None:
    """
    注册 builtin tools。

    参数：
    - registry：工具注册表
    - override：是否允许覆盖同名工具（默认 False）
    """

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler, override=override)


__all__ = ["register_builtin_tools"]
