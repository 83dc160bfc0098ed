from __future__ import annotations

from pathlib import Path

import pytest

from tier_runtime.core.errors import UserError
from tier_runtime.tools.builtin import register_builtin_tools
from tier_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from tier_runtime.tools.registry import ToolExecutionContext, ToolRegistry


def _registry(tmp_path: Path, **ctx_kwargs) -> ToolRegistry:
    reg = ToolRegistry(ctx=ToolExecutionContext(workspace_root=tmp_path, **ctx_kwargs))
    register_builtin_tools(reg)
    return reg


def _call(reg: ToolRegistry, name: str, **args) -> ToolResult:
    return reg.dispatch(ToolCall(call_id="c1", name=name, args=args))


def test_builtin_tools_are_registered_by_capability(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    assert [s.name for s in reg.list_specs()] == ["read", "write", "edit", "search"]
    assert reg.has("Grep")
    assert reg.get_spec("Read").name == "read"
    with pytest.raises(UserError):
        reg.get_spec("bash")
    with pytest.raises(UserError):
        register_builtin_tools(reg)


def test_unknown_tool_is_not_found(tmp_path: Path) -> None:
    result = _call(_registry(tmp_path), "Bash", command="ls")
    assert not result.ok
    assert result.error_kind == "not_found"


def test_write_then_read(tmp_path: Path) -> None:
    reg = _registry(tmp_path)

    wrote = _call(reg, "write", path="pkg/a.txt", content="hello\nworld\n")
    assert wrote.ok
    assert wrote.details["data"] == {"path": "pkg/a.txt", "bytes": 12}

    read = _call(reg, "Read", path="pkg/a.txt")
    assert read.ok
    assert read.stdout == "hello\nworld\n"
    assert read.details["truncated"] is False


def test_write_without_parent_creation_fails(tmp_path: Path) -> None:
    result = _call(_registry(tmp_path), "write", path="missing/a.txt", content="x", mkdirs=False)
    assert not result.ok
    assert not (tmp_path / "missing").exists()


def test_read_truncates_large_files(tmp_path: Path) -> None:
    (tmp_path / "big.txt").write_text("a" * 50 + "b" * 50, encoding="utf-8")
    result = _call(_registry(tmp_path), "read", path="big.txt", max_bytes=20)
    assert result.details["truncated"] is True
    assert result.stdout.startswith("a" * 10)
    assert result.stdout.endswith("b" * 10)
    assert "<truncated>" in result.stdout


@pytest.mark.parametrize("path", ["../outside.txt", "/etc/passwd"])
def test_paths_outside_workspace_are_denied(tmp_path: Path, path: str) -> None:
    ws = tmp_path / "ws"
    ws.mkdir()
    result = _call(_registry(ws), "read", path=path)
    assert not result.ok
    assert result.error_kind == "permission"


def test_read_missing_file_and_bad_args(tmp_path: Path) -> None:
    reg = _registry(tmp_path)
    assert _call(reg, "read", path="nope.txt").error_kind == "not_found"
    assert _call(reg, "read", path="a", extra=1).error_kind == "validation"


def test_edit_requires_unique_match_unless_replace_all(tmp_path: Path) -> None:
    target = tmp_path / "a.py"
    target.write_text("x = 1\nx = 1\n", encoding="utf-8")
    reg = _registry(tmp_path)

    ambiguous = _call(reg, "edit", path="a.py", old="x = 1", new="x = 2")
    assert ambiguous.error_kind == "validation"
    assert ambiguous.details["data"]["matches"] == 2

    missing = _call(reg, "MultiEdit", path="a.py", old="y = 1", new="y = 2")
    assert missing.error_kind == "validation"

    done = _call(reg, "edit", path="a.py", old="x = 1", new="x = 2", replace_all=True)
    assert done.ok
    assert done.details["data"]["replacements"] == 2
    assert target.read_text(encoding="utf-8") == "x = 2\nx = 2\n"


def test_search_lists_matches_with_glob_and_limit(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "a.py").write_text("import os\nTODO: fix\n", encoding="utf-8")
    (tmp_path / "src" / "b.txt").write_text("todo later\n", encoding="utf-8")
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "c.py").write_text("TODO hidden\n", encoding="utf-8")
    reg = _registry(tmp_path)

    found = _call(reg, "Grep", pattern="todo", ignore_case=True)
    assert found.ok
    assert found.stdout.splitlines() == ["src/a.py:2:TODO: fix", "src/b.txt:1:todo later"]
    assert found.details["data"] == {"matches": 2}

    only_py = _call(reg, "search", pattern="TODO", glob="*.py", path="src")
    assert only_py.stdout == "src/a.py:2:TODO: fix"

    limited = _call(reg, "search", pattern=".", max_results=1)
    assert limited.details["truncated"] is True
    assert limited.details["data"] == {"matches": 1}

    assert _call(reg, "search", pattern="(").error_kind == "validation"


def test_search_stops_when_cancelled(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("hit\n", encoding="utf-8")
    reg = _registry(tmp_path)
    result = reg.dispatch(ToolCall(call_id="c", name="search", args={"pattern": "hit"}), cancel_checker=lambda: True)
    assert result.ok
    assert result.details["truncated"] is True
    assert result.stdout == ""


def test_custom_handler_user_error_maps_to_validation(tmp_path: Path) -> None:
    reg = ToolRegistry(ctx=ToolExecutionContext(workspace_root=tmp_path))

    def _handler(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise UserError("bad input")

    reg.register(ToolSpec(name="Bash"), _handler)
    result = _call(reg, "execute-external-process")
    assert result.error_kind == "validation"
    assert result.message == "bad input"
