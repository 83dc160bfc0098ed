from __future__ import annotations

import logging
from pathlib import Path

from tier_runtime import bootstrap


def test_read_env_toggles_parses_values() -> None:
    toggles = bootstrap.read_env_toggles(
        {
            "TIER_RUNTIME_DEBUG": "Yes",
            "TIER_RUNTIME_DEFAULT_MODEL": " model-x ",
            "TIER_RUNTIME_DISABLED_SKILLS": "lint; format ,,",
        }
    )
    assert toggles.debug is True
    assert toggles.default_model == "model-x"
    assert toggles.disabled_skills == frozenset({"lint", "format"})


def test_read_env_toggles_blank_values_are_unset() -> None:
    toggles = bootstrap.read_env_toggles({"TIER_RUNTIME_DEBUG": "0", "TIER_RUNTIME_DEFAULT_MODEL": "   "})
    assert toggles == bootstrap.EnvToggles()


def test_discover_overlay_paths_order_and_dedup(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    (ws / "config").mkdir(parents=True)
    default_overlay = ws / "config" / "tier_runtime.yaml"
    default_overlay.write_text("{}\n", encoding="utf-8")

    env = {"TIER_RUNTIME_CONFIG_PATHS": "extra.yaml;config/tier_runtime.yaml"}
    paths = bootstrap.discover_overlay_paths(workspace_root=ws, env=env)

    assert paths == [default_overlay.resolve(), (ws / "extra.yaml").resolve()]


def test_resolve_runtime_config_anchors_registry_paths(tmp_path: Path) -> None:
    ws = tmp_path / "ws"
    (ws / "config").mkdir(parents=True)
    (ws / "config" / "tier_runtime.yaml").write_text(
        "registry:\n  roots: [components]\n  files: [/abs/agents.yaml]\nscheduler:\n  max_concurrency: 3\n",
        encoding="utf-8",
    )
    explicit = ws / "local.yaml"
    explicit.write_text("scheduler:\n  max_concurrency: 7\n", encoding="utf-8")

    resolved = bootstrap.resolve_runtime_config(workspace_root=ws, config_paths=[Path("local.yaml")], env={})

    assert resolved.config.scheduler.max_concurrency == 7
    assert resolved.config.registry.roots == [str(ws.resolve() / "components")]
    assert resolved.config.registry.files == ["/abs/agents.yaml"]
    assert resolved.overlay_paths == [str((ws / "config" / "tier_runtime.yaml").resolve()), str(explicit.resolve())]


def test_configure_logging_is_idempotent_and_honours_debug_toggle() -> None:
    pkg_logger = logging.getLogger("tier_runtime")
    before = list(pkg_logger.handlers)
    try:
        level = bootstrap.configure_logging(None, env={"TIER_RUNTIME_DEBUG": "1"})
        assert level == logging.DEBUG
        bootstrap.configure_logging(None, env={})
        ours = [h for h in pkg_logger.handlers if getattr(h, "_tier_runtime_handler", False)]
        assert len(ours) == 1
        assert pkg_logger.level == logging.WARNING
    finally:
        for h in list(pkg_logger.handlers):
            if h not in before:
                pkg_logger.removeHandler(h)
        pkg_logger.setLevel(logging.NOTSET)
