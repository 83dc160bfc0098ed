"""
Tier Runtime CLI（validate/match/plan）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时同样输出 JSON
- CLI 不调用外部模型：只做加载、匹配与规划

exit code：
- 0：成功
- 2：参数错误（argparse）
- 10：配置加载失败
- 11：registry 有被拒绝的 descriptor
- 12：仅有 warnings
- 20：调用行非法（未知 flag / 缺少必填参数 / 类型错误）
- 22：目标组件不存在或已禁用
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml
from pydantic import ValidationError

from tier_runtime import bootstrap
from tier_runtime.core.contracts import Tier, TriggerEvent
from tier_runtime.core.errors import FrameworkIssue, UserError
from tier_runtime.core.invocation_line import bind_arguments, parse_invocation_line
from tier_runtime.core.scheduler import workflow_layers
from tier_runtime.registry.models import CommandDescriptor
from tier_runtime.registry.snapshot import LoadReport, Registry, RegistrySnapshot
from tier_runtime.triggers.matcher import TriggerMatcher


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _resolve_workspace_root(raw: str) -> Tuple[Optional[Path], Optional[FrameworkIssue]]:
    """
    解析 workspace_root 参数为绝对路径。

    返回：
    - (workspace_root, issue)：解析失败时返回 (None, issue)
    """

    ws = Path(raw).expanduser().resolve()
    if not ws.exists() or not ws.is_dir():
        return None, FrameworkIssue(
            code="CLI_WORKSPACE_ROOT_NOT_FOUND",
            message="Workspace root is not found or not a directory.",
            details={"workspace_root": str(ws)},
        )
    return ws, None


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="tier-runtime",
        description="Tier Runtime CLI（validate/match/plan）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--root", action="append", default=[], help="Descriptor root directory (repeatable).")
        p.add_argument("--file", action="append", default=[], help="Descriptor file: md/yaml/json (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    validate = root_sub.add_parser("validate", help="Load descriptors and print the load report")
    _add_common_flags(validate)

    match = root_sub.add_parser("match", help="Evaluate a trigger event against the registry")
    _add_common_flags(match)
    group = match.add_mutually_exclusive_group(required=True)
    group.add_argument("--file-saved", default=None, help="fileSaved event: saved file path.")
    group.add_argument("--commit", action="store_true", help="commit event (use --path/--message).")
    group.add_argument("--text", default=None, help="conversationText event: free text.")
    match.add_argument("--path", action="append", default=[], help="commit: changed path (repeatable).")
    match.add_argument("--message", default="", help="commit: commit message.")

    plan = root_sub.add_parser("plan", help="Resolve an invocation line without running it")
    _add_common_flags(plan)
    plan.add_argument("line", help="Invocation line: '/command --flag value' or '@agent text'.")

    return parser


def _load_registry(
    args: argparse.Namespace,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Tuple[Optional[Registry], Optional[LoadReport], Dict[str, Any], List[FrameworkIssue]]:
    """
    解析配置并加载 registry。

    返回：
    - (registry, report, stats, issues)：配置失败时 registry/report 为 None，issues 至少包含一条
    """

    stats: Dict[str, Any] = {"workspace_root": str(Path(str(args.workspace_root)).expanduser()), "overlay_paths": []}
    ws, ws_issue = _resolve_workspace_root(str(args.workspace_root))
    if ws_issue is not None or ws is None:
        return None, None, stats, [ws_issue] if ws_issue else []
    stats["workspace_root"] = str(ws)

    try:
        resolved = bootstrap.resolve_runtime_config(
            workspace_root=ws,
            config_paths=[Path(str(p)) for p in args.config or []],
            env=env,
        )
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        issue = FrameworkIssue(code="CLI_CONFIG_LOAD_FAILED", message="Config load failed.", details={"reason": str(exc)})
        return None, None, stats, [issue]

    stats["overlay_paths"] = list(resolved.overlay_paths)
    bootstrap.configure_logging(resolved.config, env=env)

    roots = [Path(r) for r in resolved.config.registry.roots] + [_anchor(ws, r) for r in args.root or []]
    files = [Path(f) for f in resolved.config.registry.files] + [_anchor(ws, f) for f in args.file or []]
    registry = Registry(env=env)
    report = registry.load(roots=roots, files=files)
    return registry, report, stats, []


def _anchor(ws: Path, raw: str) -> Path:
    p = Path(str(raw)).expanduser()
    return p if p.is_absolute() else (ws / p)


def _config_failure(issues: List[FrameworkIssue], stats: Dict[str, Any], *, pretty: bool) -> int:
    payload = {"issues": [i.to_jsonable() for i in issues], "stats": stats}
    _dump_json_to_stdout(payload, pretty=pretty)
    return 10


def _exit_code_for_report(report: LoadReport) -> int:
    if report.errors:
        return 11
    if report.warnings:
        return 12
    return 0


def _handle_validate(args: argparse.Namespace, *, env: Optional[Mapping[str, str]] = None) -> int:
    """执行 `validate`：输出 LoadReport 与已接受的 descriptor 列表。"""

    registry, report, stats, issues = _load_registry(args, env=env)
    if registry is None or report is None:
        return _config_failure(issues, stats, pretty=bool(args.pretty))

    snapshot = registry.current()
    payload = {
        "report": report.to_jsonable(),
        "components": [
            {"tier": d.tier, "name": d.name, "enabled": d.enabled, "source": d.source} for d in snapshot.descriptors
        ],
        "stats": stats,
    }
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return _exit_code_for_report(report)


def _event_from_args(args: argparse.Namespace) -> TriggerEvent:
    if args.file_saved is not None:
        return TriggerEvent.file_saved(str(args.file_saved))
    if args.commit:
        return TriggerEvent.commit([str(p) for p in args.path or []], message=str(args.message or ""))
    return TriggerEvent.conversation(str(args.text or ""))


def _handle_match(args: argparse.Namespace, *, env: Optional[Mapping[str, str]] = None) -> int:
    """执行 `match`：输出按调度顺序排列的 Skill 列表。"""

    registry, report, stats, issues = _load_registry(args, env=env)
    if registry is None or report is None:
        return _config_failure(issues, stats, pretty=bool(args.pretty))

    event = _event_from_args(args)
    snapshot = registry.current()
    skills = TriggerMatcher().match(event, snapshot)
    payload = {
        "event": {"kind": event.kind.value, "payload": dict(event.payload)},
        "skills": [
            {"name": s.name, "priority": s.priority.value, "category": s.category} for s in skills
        ],
        "snapshot_version": snapshot.version,
        "stats": stats,
    }
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _plan_line(snapshot: RegistrySnapshot, line: str) -> Tuple[Dict[str, Any], int]:
    """
    解析调用行并解析目标（不执行）。

    返回：
    - (payload, exit_code)
    """

    try:
        parsed = parse_invocation_line(line)
    except UserError as exc:
        return {"error": exc.to_issue().to_jsonable()}, 20

    target = f"{parsed.tier.value}:{parsed.name}"
    desc = snapshot.get(parsed.tier, parsed.name)
    if desc is None:
        return {"target": target, "status": "notFound"}, 22
    if not desc.enabled:
        return {"target": target, "status": "disabled"}, 22

    if parsed.tier is Tier.AGENT:
        return {"target": target, "input": parsed.text, "tools": sorted(desc.tools)}, 0

    assert isinstance(desc, CommandDescriptor)
    try:
        bound = bind_arguments(desc.parameters, parsed.tokens)
    except UserError as exc:
        return {"target": target, "error": exc.to_issue().to_jsonable()}, 20

    steps = desc.effective_workflow()
    payload = {
        "target": target,
        "parameters": bound.parameters,
        "input": bound.input,
        "steps": [
            {"id": s.id, "target": s.target, "depends_on": list(s.depends_on), "policy": s.policy.value} for s in steps
        ],
        "layers": workflow_layers(steps),
    }
    return payload, 0


def _handle_plan(args: argparse.Namespace, *, env: Optional[Mapping[str, str]] = None) -> int:
    """执行 `plan`：输出解析后的目标、参数与 workflow 分层。"""

    registry, report, stats, issues = _load_registry(args, env=env)
    if registry is None or report is None:
        return _config_failure(issues, stats, pretty=bool(args.pretty))

    payload, code = _plan_line(registry.current(), str(args.line))
    payload["stats"] = stats
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return code


def main(argv: Optional[Sequence[str]] = None, *, env: Optional[Mapping[str, str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]
    - env：可选；环境变量映射（默认 `os.environ`，测试可注入）

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` → 0，参数错误 → 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    env = env if env is not None else os.environ
    if args.command == "validate":
        return _handle_validate(args, env=env)
    if args.command == "match":
        return _handle_match(args, env=env)
    if args.command == "plan":
        return _handle_plan(args, env=env)

    payload = {"issues": [{"code": "CLI_COMMAND_INVALID", "message": "Unknown command.", "details": {"command": args.command}}]}
    _dump_json_to_stdout(payload, pretty=bool(getattr(args, "pretty", False)))
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
