from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from tier_runtime.cli.main import main


def _write_yaml(path: Path, obj: Any) -> Path:
    """写入 YAML 文件（自动创建父目录）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(obj, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def _write_skill(dir_path: Path, *, description: str, patterns: list, priority: str = "medium") -> Path:
    """写入最小 SKILL.md fixture（name 取目录名）。"""

    dir_path.mkdir(parents=True, exist_ok=True)
    p = dir_path / "SKILL.md"
    p.write_text(
        "\n".join(
            ["---", f'description: "{description}"', f"file_patterns: {json.dumps(patterns)}", f"priority: {priority}", "---", "body", ""]
        ),
        encoding="utf-8",
    )
    return p


def _make_workspace(tmp_path: Path) -> Path:
    root = tmp_path / "components"
    _write_skill(root / "skills" / "quality" / "lint", description="Lint", patterns=["*.py"])
    _write_skill(root / "skills" / "security" / "audit", description="Audit", patterns=["src/**"], priority="high")
    _write_yaml(root / "agents" / "reviewer" / "agent.yaml", {"description": "Review code"})
    _write_yaml(root / "agents" / "scanner" / "agent.yaml", {"description": "Scan code"})
    _write_yaml(
        root / "commands" / "dev" / "review" / "command.yaml",
        {
            "description": "Review the change",
            "agents": ["scanner", "reviewer"],
            "parameters": {"strict": {"type": "boolean"}, "paths": {"type": "array"}},
            "workflow": [
                {"id": "scan", "agent": "scanner"},
                {"id": "review", "agent": "reviewer", "depends_on": ["scan"], "policy": "required"},
            ],
        },
    )
    return root


def _run_cli(args: list, capsys, env: Dict[str, str] | None = None) -> Tuple[int, Dict[str, Any]]:  # type: ignore[no-untyped-def]
    """运行 CLI 并返回 (exit_code, parsed_json)。"""

    code = main(args, env=env or {})
    out = capsys.readouterr().out
    assert out.endswith("\n")
    return code, json.loads(out)


def test_validate_lists_components(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)

    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path), "--root", "components"], capsys)

    assert code == 0
    assert obj["report"]["counts"] == {"skill": 2, "agent": 2, "command": 1}
    assert obj["report"]["errors"] == []
    assert [(c["tier"], c["name"]) for c in obj["components"]] == [
        ("skill", "lint"),
        ("skill", "audit"),
        ("agent", "reviewer"),
        ("agent", "scanner"),
        ("command", "review"),
    ]
    assert obj["stats"]["overlay_paths"] == []


def test_validate_reports_rejected_descriptors(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    root = _make_workspace(tmp_path)
    _write_yaml(root / "agents" / "broken" / "agent.yaml", {"description": ""})

    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path), "--root", "components"], capsys)

    assert code == 11
    assert len(obj["report"]["errors"]) == 1
    assert obj["report"]["counts"]["agent"] == 2


def test_validate_warnings_only(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    f = _write_yaml(tmp_path / "extra.yaml", {"skills": [{"name": "x", "description": "X", "owner": "team-a"}]})

    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path), "--file", str(f)], capsys)

    assert code == 12
    assert obj["report"]["warnings"]


def test_registry_roots_come_from_overlay_config(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)
    overlay = _write_yaml(tmp_path / "config" / "tier_runtime.yaml", {"registry": {"roots": ["components"]}})

    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path)], capsys)

    assert code == 0
    assert obj["stats"]["overlay_paths"] == [str(overlay.resolve())]
    assert obj["report"]["counts"]["command"] == 1


def test_config_failure_exit_code(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path), "--config", "missing.yaml"], capsys)
    assert code == 10
    assert obj["issues"][0]["code"] == "CLI_CONFIG_LOAD_FAILED"

    code, obj = _run_cli(["validate", "--workspace-root", str(tmp_path / "nope")], capsys)
    assert code == 10
    assert obj["issues"][0]["code"] == "CLI_WORKSPACE_ROOT_NOT_FOUND"


def test_match_file_saved_orders_skills(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)

    code, obj = _run_cli(
        ["match", "--workspace-root", str(tmp_path), "--root", "components", "--file-saved", "src/app.py"], capsys
    )

    assert code == 0
    assert obj["event"] == {"kind": "fileSaved", "payload": {"path": "src/app.py"}}
    assert [s["name"] for s in obj["skills"]] == ["audit", "lint"]
    assert obj["skills"][0] == {"name": "audit", "priority": "high", "category": "security"}


def test_match_respects_disabled_skills_env(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)

    code, obj = _run_cli(
        ["match", "--workspace-root", str(tmp_path), "--root", "components", "--commit", "--path", "a.py", "--message", "x"],
        capsys,
        env={"TIER_RUNTIME_DISABLED_SKILLS": "lint"},
    )

    assert code == 0
    assert obj["skills"] == []


def test_plan_command_line(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)

    code, obj = _run_cli(
        ["plan", "--workspace-root", str(tmp_path), "--root", "components", "/review --strict --paths a.py,b.py check it"],
        capsys,
    )

    assert code == 0
    assert obj["target"] == "command:review"
    assert obj["parameters"] == {"strict": True, "paths": ["a.py", "b.py"]}
    assert obj["input"] == "check it"
    assert obj["layers"] == [["scan"], ["review"]]
    assert obj["steps"][1] == {"id": "review", "target": "agent:reviewer", "depends_on": ["scan"], "policy": "required"}


def test_plan_agent_line(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)

    code, obj = _run_cli(["plan", "--workspace-root", str(tmp_path), "--root", "components", "@reviewer look here"], capsys)

    assert code == 0
    assert obj == {
        "target": "agent:reviewer",
        "input": "look here",
        "tools": ["*"],
        "stats": obj["stats"],
    }


def test_plan_errors(tmp_path: Path, capsys) -> None:  # type: ignore[no-untyped-def]
    _make_workspace(tmp_path)
    common = ["plan", "--workspace-root", str(tmp_path), "--root", "components"]

    code, obj = _run_cli(common + ["/review --verbose"], capsys)
    assert code == 20
    assert obj["error"]["code"] == "PARAMETER_UNKNOWN"

    code, obj = _run_cli(common + ["/ghost"], capsys)
    assert code == 22
    assert obj["status"] == "notFound"

    code, obj = _run_cli(common + ["review"], capsys)
    assert code == 20
    assert obj["error"]["code"] == "INVOCATION_LINE_INVALID"


def test_argparse_errors_return_2(capsys) -> None:  # type: ignore[no-untyped-def]
    assert main(["match"], env={}) == 2
    assert main(["bogus"], env={}) == 2
    capsys.readouterr()
